from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Tuple

from config import config, get_config_section

REQUIRED_KEYS = (
    'buy_amount_usd',
    'initial_stop_loss_pct',
    'trail_activation_profit_pct',
    'trail_delta_pct',
    'max_active_positions',
    'monitored_symbols',
)

DEFAULT_ENTRY_TOLERANCE_PCT = 0.2


class StrategyConfigError(ValueError):
    pass


@dataclass(frozen=True)
class StrategySettings:
    buy_amount_usd: float
    initial_stop_loss_pct: float
    trail_activation_profit_pct: float
    trail_delta_pct: float
    max_active_positions: int
    monitored_symbols: Tuple[str, ...] = field(default_factory=tuple)
    entry_tolerance_pct: float = DEFAULT_ENTRY_TOLERANCE_PCT

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]],
                     entry_tolerance_pct: Optional[float] = None) -> 'StrategySettings':
        if not raw:
            raise StrategyConfigError("Strategy settings are missing")
        missing = [key for key in REQUIRED_KEYS if raw.get(key) in (None, '')]
        if missing:
            raise StrategyConfigError(f"Missing strategy parameters: {', '.join(missing)}")

        try:
            settings = cls(
                buy_amount_usd=float(raw['buy_amount_usd']),
                initial_stop_loss_pct=float(raw['initial_stop_loss_pct']),
                trail_activation_profit_pct=float(raw['trail_activation_profit_pct']),
                trail_delta_pct=float(raw['trail_delta_pct']),
                max_active_positions=int(raw['max_active_positions']),
                monitored_symbols=_normalize_symbols(raw['monitored_symbols']),
                entry_tolerance_pct=float(
                    raw.get('entry_tolerance_pct')
                    if raw.get('entry_tolerance_pct') is not None
                    else (entry_tolerance_pct if entry_tolerance_pct is not None else DEFAULT_ENTRY_TOLERANCE_PCT)
                ),
            )
        except (TypeError, ValueError) as exc:
            raise StrategyConfigError(f"Invalid strategy parameter: {exc}") from exc

        for name in ('buy_amount_usd', 'initial_stop_loss_pct', 'trail_activation_profit_pct',
                     'trail_delta_pct', 'max_active_positions'):
            if getattr(settings, name) <= 0:
                raise StrategyConfigError(f"Strategy parameter {name} must be positive")
        if settings.entry_tolerance_pct < 0:
            raise StrategyConfigError("Strategy parameter entry_tolerance_pct must not be negative")
        if not settings.monitored_symbols:
            raise StrategyConfigError("No monitored symbols configured")
        return settings


def _normalize_symbols(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        value = [part for part in value.split(',')]
    symbols = []
    for item in value:
        symbol = str(item).strip().upper()
        if symbol and symbol not in symbols:
            symbols.append(symbol)
    return tuple(symbols)


SettingsProvider = Callable[[], StrategySettings]


def settings_from_config(config_obj=None) -> StrategySettings:
    """Read strategy settings from the ``strategy`` and ``decision`` config sections."""
    source = config_obj or config
    decision = get_config_section(source, 'decision')
    return StrategySettings.from_mapping(
        get_config_section(source, 'strategy'),
        entry_tolerance_pct=decision.get('entry_tolerance_pct'),
    )
