"""
Lightweight async metrics helpers that write counters and latency samples to Redis.
Serves a small JSON summary without requiring Prometheus.

Design:
- Counters: Redis INCRBY on key `metrics:counter:{name}`
- Latency samples: LPUSH to `metrics:lat:{name}`, LTRIM to keep last 1000 samples
- get_metrics() aggregates counters and computes simple stats for lat samples (count, avg, p50)
- Without a configured Redis, values are kept in-memory (process-local) for testing/dev.

Counter names used by the pipeline: cache.hit, cache.miss, source.calls,
source.rate_limited, category.failed, normalize.rejected, pipeline.truncated.
Latency series: pipeline.load_ms.
"""

from typing import Dict, Any, Optional
import logging
import statistics

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

_MEM_COUNTERS: Dict[str, int] = {}
_MEM_LATS: Dict[str, list] = {}

_redis_client: Optional[aioredis.Redis] = None


def configure_redis(url: Optional[str] = None, client: Optional[aioredis.Redis] = None) -> None:
    """Point metrics at a Redis instance, or back at process memory when both are None."""
    global _redis_client
    if client is not None:
        _redis_client = client
    elif url:
        _redis_client = aioredis.from_url(url)
        logger.info(f"[METRICS] writing metrics to {url}")
    else:
        _redis_client = None


def reset_memory_metrics() -> None:
    _MEM_COUNTERS.clear()
    _MEM_LATS.clear()


def _mem_increment(name: str, amount: int) -> None:
    _MEM_COUNTERS[name] = _MEM_COUNTERS.get(name, 0) + amount


def _mem_observe(name: str, ms: float, max_samples: int) -> None:
    _MEM_LATS.setdefault(name, []).insert(0, ms)
    if len(_MEM_LATS[name]) > max_samples:
        _MEM_LATS[name] = _MEM_LATS[name][:max_samples]


def _lat_stats(vals: list) -> Dict[str, float]:
    return {
        'count': len(vals),
        'avg_ms': sum(vals) / len(vals),
        'p50_ms': float(statistics.median(vals)),
    }


def _decode(k) -> str:
    return k.decode() if isinstance(k, (bytes, bytearray)) else k


async def increment(name: str, amount: int = 1) -> None:
    """Increment a named counter by amount"""
    rc = _redis_client
    if rc is None:
        _mem_increment(name, amount)
        return
    try:
        await rc.incrby(f"metrics:counter:{name}", amount)
    except aioredis.RedisError as e:
        # best-effort fallback to memory
        logger.debug(f"[METRICS] redis increment failed for {name}: {e}")
        _mem_increment(name, amount)


async def observe_latency(name: str, ms: float, max_samples: int = 1000) -> None:
    """Record a latency sample (milliseconds) for a named metric"""
    rc = _redis_client
    if rc is None:
        _mem_observe(name, ms, max_samples)
        return
    key = f"metrics:lat:{name}"
    try:
        await rc.lpush(key, str(ms))
        await rc.ltrim(key, 0, max_samples - 1)
    except aioredis.RedisError as e:
        logger.debug(f"[METRICS] redis latency write failed for {name}: {e}")
        _mem_observe(name, ms, max_samples)


async def get_metrics() -> Dict[str, Any]:
    """Return a JSON-serializable dict of metrics: counters and simple latency stats

    Prefers Redis-backed metrics when configured, merged with any in-memory
    values recorded while Redis was unreachable.
    """
    out: Dict[str, Any] = {"counters": {}, "latencies": {}}
    rc = _redis_client
    raw_lat_vals: Dict[str, list] = {}

    if rc is not None:
        try:
            # KEYS is fine for the handful of metric names used here
            for k in await rc.keys('metrics:counter:*'):
                key = _decode(k)
                v = await rc.get(key)
                out['counters'][key.split(':', 2)[-1]] = int(v) if v is not None else 0
            for k in await rc.keys('metrics:lat:*'):
                key = _decode(k)
                vals = await rc.lrange(key, 0, -1)
                raw_lat_vals[key.split(':', 2)[-1]] = [float(v) for v in vals]
        except aioredis.RedisError as e:
            logger.warning(f"[METRICS] redis read failed, serving in-memory metrics: {e}")
            out = {"counters": {}, "latencies": {}}
            raw_lat_vals = {}

    for n, v in _MEM_COUNTERS.items():
        out['counters'][n] = out['counters'].get(n, 0) + v

    names = set(raw_lat_vals) | set(_MEM_LATS)
    for n in names:
        combined = list(_MEM_LATS.get(n, [])) + raw_lat_vals.get(n, [])
        if combined:
            out['latencies'][n] = _lat_stats(combined)
    return out
