from __future__ import annotations
import threading
import time
from typing import Callable, Dict, Tuple

from ...helpers import UNKNOWN_CLIENT
from ._base import Bucket


class RateGovernor:
    """
    Process-local fixed-window counters keyed by (bucket, client).

    A window opens on the first consume for a key and lasts `duration`
    seconds; inside it exactly `points` calls succeed. State is lost on
    restart.
    """

    def __init__(self, buckets: Dict[str, Bucket],
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.buckets = dict(buckets)
        self.clock = clock
        # (bucket, key) -> [used, reset_at]
        self._state: Dict[Tuple[str, str], list] = {}
        self._lock = threading.Lock()
        self._sweeps = 0

    async def consume(self, bucket: str, key: str) -> bool:
        if key == UNKNOWN_CLIENT:
            return True
        cfg = self.buckets[bucket]
        now = self.clock()
        with self._lock:
            entry = self._state.get((bucket, key))
            if entry is None or now >= entry[1]:
                entry = [0, now + cfg.duration]
                self._state[(bucket, key)] = entry
            entry[0] += 1
            allowed = entry[0] <= cfg.points
            self._maybe_prune(now)
        return allowed

    def _maybe_prune(self, now: float) -> None:
        # drop expired windows every 1000 calls; caller holds the lock
        self._sweeps += 1
        if self._sweeps < 1000:
            return
        self._sweeps = 0
        dead = [k for k, (_, reset_at) in self._state.items()
                if now >= reset_at]
        for k in dead:
            del self._state[k]
