import asyncio
import sys

sys.path.insert(0, '.')

import pytest
from fastapi.testclient import TestClient

from analytics.footprint import SIDE_BUY, SIDE_SELL, Trade
from api import server
from orchestration.pipeline import FootprintPipeline
from strategy.position import Direction, NewPosition


def _refused(url, **kwargs):
    raise OSError('offline')


@pytest.fixture
def pipeline(monkeypatch):
    p = FootprintPipeline(connector=_refused)
    monkeypatch.setattr(server, 'pipeline', p)
    return p


@pytest.fixture
def client():
    # no context manager: lifespan (and the live pipeline) is not started
    return TestClient(server.app)


def _fill_bars(pipeline, symbol='BTCUSDT', bars=7):
    for i in range(bars):
        side = SIDE_BUY if i % 2 else SIDE_SELL
        pipeline.aggregator.ingest(symbol, Trade(i, i * 60_000 + 10, 100.0 + i, 1.0 + i, side))


def test_health_without_pipeline(client, monkeypatch):
    monkeypatch.setattr(server, 'pipeline', None)
    body = client.get('/health').json()
    assert body['status'] == 'healthy'
    assert body['pipeline_running'] is False
    assert client.get('/api/bars/BTCUSDT').status_code == 503


def test_bars_and_current_bar(client, pipeline):
    _fill_bars(pipeline)

    response = client.get('/api/bars/btcusdt', params={'count': 3})
    assert response.status_code == 200
    body = response.json()
    assert body['symbol'] == 'BTCUSDT'
    assert [bar['timestamp'] for bar in body['bars']] == [180_000, 240_000, 300_000]
    assert set(body['bars'][0]['priceLevels']) == {'103.00'}

    current = client.get('/api/bars/BTCUSDT/current').json()
    assert current['timestamp'] == 360_000
    assert current['close'] == 106.0

    assert client.get('/api/bars/ETHUSDT/current').status_code == 404


def test_order_flow_metrics_endpoint(client, pipeline):
    assert client.get('/api/metrics/BTCUSDT').status_code == 404

    _fill_bars(pipeline)
    body = client.get('/api/metrics/BTCUSDT').json()
    metrics = body['metrics']
    assert body['symbol'] == 'BTCUSDT'
    assert metrics['sessionPoc'] == 105.0
    # live bar is a single sell print: flat price, negative delta
    assert metrics['latestBarCharacter'] == 'Delta Sell'
    assert set(metrics) >= {'sessionVah', 'sessionVal', 'sessionVwap', 'divergenceSignals',
                            'imbalanceReversalSignal'}


def test_positions_include_unrealized_pnl(client, pipeline):
    _fill_bars(pipeline, bars=2)
    asyncio.run(pipeline.store.create_position(
        NewPosition('BTCUSDT', Direction.LONG, 100.0, 2.0, 98.5, entry_reason='test')
    ))

    body = client.get('/api/positions').json()
    assert body['closed'] == []
    position = body['open'][0]
    assert position['direction'] == 'LONG'
    assert position['status'] == 'ENTRY_ACTIVE'
    assert position['unrealized_pnl'] == pytest.approx(2.0)


def test_stream_actions(client, pipeline):
    assert client.post('/api/stream', json={'action': 'start'}).status_code == 400
    assert client.post('/api/stream', json={'action': 'pause'}).status_code == 400

    _fill_bars(pipeline, bars=1)
    response = client.post('/api/stream', json={'action': 'stop'})
    assert response.json() == {'status': 'stopped'}
    assert pipeline.aggregator.current_bar('BTCUSDT') is None
    assert len(pipeline.aggregator.latest_bars('BTCUSDT')) == 1
