import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).with_name('config.yaml')
ENV_OVERRIDE_PREFIX = 'FOOTPRINT__'
REQUIRED_SECTIONS = ('footprint', 'strategy')

# ${NAME} or ${NAME:-fallback}; unresolved placeholders without a fallback are kept verbatim
_PLACEHOLDER = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}')


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


def _substitute(text: str) -> str:
    def _replace(match: 're.Match') -> str:
        name, fallback = match.group(1), match.group(2)
        value = os.getenv(name)
        if value is not None:
            return value
        return fallback if fallback is not None else match.group(0)

    return _PLACEHOLDER.sub(_replace, text)


class SectionProxy(Mapping):
    """Read-only view of one config section with attribute access."""

    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        value = self._data.get(name)
        if value is None:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(value)

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config:
    """YAML pipeline configuration.

    The file is chosen by argument, else ``FOOTPRINT_CONFIG``, else the
    ``config.yaml`` shipped next to this module. Environment variables of the
    form ``FOOTPRINT__<SECTION>__<KEY>`` override single scalar keys.
    """

    def __init__(self, config_path: Optional[str] = None,
                 required_sections: Iterable[str] = REQUIRED_SECTIONS):
        self.config_path = Path(config_path or os.getenv('FOOTPRINT_CONFIG') or DEFAULT_CONFIG_PATH)
        self.required_sections = tuple(required_sections)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise RuntimeError(f"Configuration root in {self.config_path} must be a mapping")

        data = self._resolve_env_vars(raw)
        self._apply_env_overrides(data)
        missing = [name for name in self.required_sections if not isinstance(data.get(name), dict)]
        if missing:
            raise RuntimeError(f"Configuration {self.config_path} is missing sections: {', '.join(missing)}")
        return data

    def _resolve_env_vars(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_vars(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_vars(item) for item in node]
        if isinstance(node, str) and '${' in node:
            return _substitute(node)
        return node

    @staticmethod
    def _apply_env_overrides(data: Dict[str, Any]) -> None:
        for env_key, raw_value in os.environ.items():
            if not env_key.startswith(ENV_OVERRIDE_PREFIX):
                continue
            parts = env_key[len(ENV_OVERRIDE_PREFIX):].lower().split('__')
            if len(parts) != 2 or not all(parts):
                continue
            section, key = parts
            target = data.setdefault(section, {})
            if isinstance(target, dict):
                target[key] = yaml.safe_load(raw_value) if raw_value else raw_value

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            value = self._data[name]
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc
        return _wrap(value)

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()
