import asyncio
import sys

sys.path.insert(0, '.')

import aiohttp
import pytest

from analytics.aggregator import BarAggregator
from analytics.footprint import SIDE_BUY, SIDE_SELL, Trade
from ingest.binance_rest import BinanceAPIError, BinancePriceSource
from ingest.price_source import AggregatorPriceSource, PriceUnavailableError


class StubClient:
    def __init__(self, responses):
        self.responses = responses
        self.requests = []
        self.closed = False

    async def get(self, path, params=None):
        self.requests.append((path, params))
        response = self.responses[params['symbol'] if params else '*']
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        self.closed = True


def test_binance_price_source_parses_ticker():
    client = StubClient({
        'BTCUSDT': {'symbol': 'BTCUSDT', 'price': '64123.40', 'time': 1},
        'ETHUSDT': BinanceAPIError(400, -1121, 'Invalid symbol.', '{}'),
        'SOLUSDT': aiohttp.ClientConnectionError('reset'),
        'XRPUSDT': {'price': 'n/a'},
        'DOGEUSDT': {'price': '0'},
    })
    source = BinancePriceSource(client=client, price_path='/fapi/v1/ticker/price')

    async def _run():
        price = await source.latest_price('btcusdt')
        errors = []
        for symbol in ('ETHUSDT', 'SOLUSDT', 'XRPUSDT', 'DOGEUSDT'):
            with pytest.raises(PriceUnavailableError) as excinfo:
                await source.latest_price(symbol)
            errors.append(excinfo.value.symbol)
        single = await source.latest_prices(['ethusdt'])
        await source.close()
        return price, errors, single

    price, errors, single = asyncio.run(_run())
    assert price == 64123.4
    assert client.requests[0] == ('/fapi/v1/ticker/price', {'symbol': 'BTCUSDT'})
    assert errors == ['ETHUSDT', 'SOLUSDT', 'XRPUSDT', 'DOGEUSDT']
    assert single == {}
    assert client.closed


def test_binance_batch_prices_use_one_request():
    client = StubClient({'*': [
        {'symbol': 'BTCUSDT', 'price': '64123.40'},
        {'symbol': 'ETHUSDT', 'price': '3100.5'},
        {'symbol': 'XRPUSDT', 'price': 'n/a'},
    ]})
    source = BinancePriceSource(client=client, price_path='/fapi/v1/ticker/price')

    prices = asyncio.run(source.latest_prices(['BTCUSDT', 'ethusdt', 'XRPUSDT', 'SOLUSDT']))
    assert prices == {'BTCUSDT': 64123.4, 'ETHUSDT': 3100.5}
    assert client.requests == [('/fapi/v1/ticker/price', None)]

    failing = BinancePriceSource(client=StubClient({'*': BinanceAPIError(503, None, None, '')}))
    assert asyncio.run(failing.latest_prices(['BTCUSDT', 'ETHUSDT'])) == {}


def test_aggregator_price_source_prefers_live_bar():
    aggregator = BarAggregator(interval_ms=60_000, price_precision=2, history_size=10)
    source = AggregatorPriceSource(aggregator)

    async def _price(symbol):
        return await source.latest_price(symbol)

    with pytest.raises(PriceUnavailableError):
        asyncio.run(_price('BTCUSDT'))

    aggregator.ingest('BTCUSDT', Trade(1, 1_000, 100.0, 1.0, SIDE_BUY))
    aggregator.ingest('BTCUSDT', Trade(2, 2_000, 101.5, 1.0, SIDE_SELL))
    assert asyncio.run(_price('BTCUSDT')) == 101.5

    aggregator.flush()
    assert asyncio.run(_price('btcusdt')) == 101.5


class BrokenQuoteSource(AggregatorPriceSource):
    async def latest_price(self, symbol):
        if symbol == 'ETHUSDT':
            raise RuntimeError('quote feed crashed')
        return await super().latest_price(symbol)


def test_unexpected_lookup_error_only_drops_that_symbol():
    aggregator = BarAggregator(interval_ms=60_000, price_precision=2, history_size=10)
    aggregator.ingest('BTCUSDT', Trade(1, 1_000, 100.0, 1.0, SIDE_BUY))
    aggregator.ingest('SOLUSDT', Trade(2, 1_000, 150.25, 1.0, SIDE_SELL))
    source = BrokenQuoteSource(aggregator)

    prices = asyncio.run(source.latest_prices(['BTCUSDT', 'ETHUSDT', 'SOLUSDT', 'XRPUSDT']))
    assert prices == {'BTCUSDT': 100.0, 'SOLUSDT': 150.25}
