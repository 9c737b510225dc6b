import asyncio
import logging
import math
from typing import Any, Dict, Iterable, Optional

import aiohttp

from config import config
from ingest.price_source import PriceSource, PriceUnavailableError


logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


class BinanceAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        super().__init__(f"Binance API error (status={status}, code={code}, msg={msg})")

    @property
    def retryable(self) -> bool:
        return self.status in RETRYABLE_STATUSES


class BinanceRESTClient:
    """Read-only client for public futures market-data endpoints."""

    def __init__(self, base_url: Optional[str] = None, timeout_s: float = 15, max_retries: int = 2):
        exchange_cfg = config.get('exchange', {})
        self.base_url = (base_url or exchange_cfg.get("rest_url") or "https://fapi.binance.com").rstrip("/")
        api_key = exchange_cfg.get("api_key")
        # Unresolved ${VAR} placeholders mean no key was provided
        self.api_key: Optional[str] = str(api_key) if api_key and not str(api_key).startswith("${") else None
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.max_retries = max_retries
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                headers = {"X-MBX-APIKEY": self.api_key} if self.api_key else None
                self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
            self._session = None

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET ``path`` and return the decoded JSON body.

        Rate-limit and 5xx responses are retried up to ``max_retries`` times,
        honouring ``Retry-After`` when the exchange sends it.
        """
        attempt = 0
        while True:
            try:
                return await self._get_once(path, params)
            except BinanceAPIError as exc:
                if not exc.retryable or attempt >= self.max_retries:
                    raise
                attempt += 1
                delay = getattr(exc, 'retry_after', None) or 0.5 * 2 ** (attempt - 1)
                logger.warning("GET %s returned %s; retry %s/%s in %.1fs",
                               path, exc.status, attempt, self.max_retries, delay)
                await asyncio.sleep(delay)

    async def _get_once(self, path: str, params: Optional[Dict[str, Any]]) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        async with session.get(url, params=dict(params or {})) as resp:
            text = await resp.text()
            try:
                payload = await resp.json(content_type=None) if text else None
            except ValueError:
                payload = text

            if resp.status >= 400:
                code = msg = None
                if isinstance(payload, dict):
                    code = payload.get("code")
                    msg = payload.get("msg")
                error = BinanceAPIError(resp.status, code, msg, text)
                retry_after = resp.headers.get("Retry-After")
                if retry_after and retry_after.isdigit():
                    error.retry_after = float(retry_after)
                raise error
            return payload


def _parse_price(symbol: str, payload: Any) -> float:
    if not isinstance(payload, dict):
        raise PriceUnavailableError(symbol, "unexpected response payload")
    try:
        price = float(payload["price"])
    except (KeyError, TypeError, ValueError) as exc:
        raise PriceUnavailableError(symbol, f"malformed price: {payload!r}") from exc
    if not math.isfinite(price) or price <= 0:
        raise PriceUnavailableError(symbol, f"invalid price {price}")
    return price


class BinancePriceSource(PriceSource):
    """Latest price from the futures ``ticker/price`` endpoint."""

    def __init__(self, client: Optional[BinanceRESTClient] = None, price_path: Optional[str] = None):
        self.client = client or BinanceRESTClient()
        self.price_path = price_path or config.get('exchange', {}).get("price_path", "/fapi/v1/ticker/price")

    async def _fetch(self, symbol: Optional[str]) -> Any:
        params = {"symbol": symbol.upper()} if symbol else None
        try:
            return await self.client.get(self.price_path, params=params)
        except BinanceAPIError as exc:
            logger.error("Price request for %s failed: %s", symbol or "all symbols", exc)
            raise PriceUnavailableError(symbol or "*", str(exc)) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Price request for %s failed: %s", symbol or "all symbols", exc)
            raise PriceUnavailableError(symbol or "*", f"transport error: {exc}") from exc

    async def latest_price(self, symbol: str) -> float:
        return _parse_price(symbol, await self._fetch(symbol))

    async def latest_prices(self, symbols: Iterable[str]) -> Dict[str, float]:
        """One all-symbols ticker request for a batch; single requests for one symbol."""
        wanted = [s.upper() for s in symbols]
        if len(wanted) <= 1:
            return await super().latest_prices(wanted)
        try:
            payload = await self._fetch(None)
        except PriceUnavailableError:
            return {}
        if not isinstance(payload, list):
            logger.warning("Unexpected all-symbols ticker payload: %.200r", payload)
            return {}

        by_symbol = {str(item.get("symbol", "")).upper(): item for item in payload if isinstance(item, dict)}
        prices = {}
        for symbol in wanted:
            try:
                prices[symbol] = _parse_price(symbol, by_symbol.get(symbol))
            except PriceUnavailableError as exc:
                logger.warning("%s", exc)
        return prices

    async def close(self) -> None:
        await self.client.close()
