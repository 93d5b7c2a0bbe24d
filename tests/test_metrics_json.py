import pytest

from trakke import app as quart_app_module
from trakke import metrics
from trakke.config import get_config
from tests.fakes import FakeRedis


@pytest.mark.asyncio
async def test_metrics_endpoint(monkeypatch):
    fake_redis = FakeRedis()
    # Ensure the app startup will pick up our fake redis (patch aioredis.from_url)
    monkeypatch.setattr(get_config(), 'redis_url', 'redis://fake:6379/0')
    monkeypatch.setattr(quart_app_module.aioredis, 'from_url', lambda url: fake_redis)

    # recorded before startup, so kept in memory and merged into the summary
    await metrics.increment('cache.miss', 2)

    app = quart_app_module.create_app()
    async with app.test_app() as test_app:
        await metrics.increment('cache.hit')
        await metrics.increment('cache.miss')
        await metrics.observe_latency('pipeline.load_ms', 100.0)
        await metrics.observe_latency('pipeline.load_ms', 120.0)
        assert fake_redis.store['metrics:counter:cache.hit'] == 1

        async with test_app.test_client() as client:
            resp = await client.get('/metrics/json')
            assert resp.status_code == 200
            data = await resp.get_json()
            assert data['counters'].get('cache.hit') == 1
            assert data['counters'].get('cache.miss') == 3
            assert 'pipeline.load_ms' in data['latencies']
            assert data['latencies']['pipeline.load_ms']['count'] == 2
            assert data['latencies']['pipeline.load_ms']['avg_ms'] == 110.0


@pytest.mark.asyncio
async def test_memory_metrics_without_redis():
    await metrics.increment('source.calls')
    await metrics.increment('source.calls', 4)
    await metrics.observe_latency('pipeline.load_ms', 50.0)
    data = await metrics.get_metrics()
    assert data['counters'] == {'source.calls': 5}
    assert data['latencies']['pipeline.load_ms']['p50_ms'] == 50.0


class BrokenRedis(FakeRedis):
    async def incrby(self, key, amount):
        raise metrics.aioredis.ConnectionError("down")


@pytest.mark.asyncio
async def test_redis_failure_falls_back_to_memory():
    metrics.configure_redis(client=BrokenRedis())
    await metrics.increment('category.failed')
    data = await metrics.get_metrics()
    assert data['counters']['category.failed'] == 1
