# model/ratelimit/__init__.py
from typing import Dict, Optional
import redis.asyncio as redis

from ... import config
from ._base import Bucket, BUCKET_ORDER_CREATE, BUCKET_ORDER_QUERY

BACKEND = config.RATE_LIMIT_BACKEND  # 'memory' | 'redis'

if BACKEND == "redis":
    from ._redis import RateGovernor as _RateGovernor
else:
    from ._memory import RateGovernor as _RateGovernor


# Factory keeps server.py simple and constructor-agnostic:
def new_governor(buckets: Dict[str, Bucket], *,
                 r: Optional[redis.Redis] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "RateGovernor(redis) requires r=redis.Redis"
            )
        return _RateGovernor(buckets, r=r)
    return _RateGovernor(buckets)


RateGovernor = _RateGovernor
__all__ = [
    "RateGovernor", "new_governor", "Bucket", "BACKEND",
    "BUCKET_ORDER_CREATE", "BUCKET_ORDER_QUERY",
]
