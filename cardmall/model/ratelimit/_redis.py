from __future__ import annotations
import math
from typing import Dict
import redis.asyncio as redis

from ...helpers import UNKNOWN_CLIENT
from ._base import Bucket


# ---- keys
def k_bucket(bucket: str, key: str) -> str: return f"rl:{bucket}:{key}"


class RateGovernor:
    """Fixed-window counters shared by every worker through Redis."""

    def __init__(self, buckets: Dict[str, Bucket], *, r: redis.Redis) -> None:
        self.buckets = dict(buckets)
        self.r = r

    async def consume(self, bucket: str, key: str) -> bool:
        if key == UNKNOWN_CLIENT:
            return True
        cfg = self.buckets[bucket]
        k = k_bucket(bucket, key)
        # the first call of a window creates the key with its TTL
        pipe = self.r.pipeline(transaction=True)
        pipe.set(k, 0, ex=max(1, math.ceil(cfg.duration)), nx=True)
        pipe.incr(k)
        _, used = await pipe.execute()
        return int(used) <= cfg.points
