"""
Sharded in-process mutexes.

Used around write paths that must serialize per key:
- attribution creation per user
- risk recomputation per actor
- payout request writes per actor, including risk enforcement

Reads never take these locks. When both are needed, risk is taken before
payout.
"""
import threading
import zlib
from contextlib import contextmanager


class ShardedLock:
    """A fixed pool of locks selected by a stable hash of the key."""

    def __init__(self, shards: int = 64):
        if shards < 1:
            raise ValueError("shards must be positive")
        self._locks = [threading.Lock() for _ in range(shards)]

    def _index(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    def for_key(self, key: str) -> threading.Lock:
        return self._locks[self._index(key)]

    @contextmanager
    def hold(self, key: str):
        lock = self.for_key(key)
        with lock:
            yield


ATTRIBUTION_LOCKS = ShardedLock()
RISK_LOCKS = ShardedLock()
PAYOUT_LOCKS = ShardedLock()
