# expiring_cache.py
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from models import PoolSnapshot

logger = logging.getLogger(__name__)

ALL_POOLS_KEY = 'pools:all'

_MISSING = object()


def pool_key(pool_name: str) -> str:
    return f'pool:{pool_name}'


@dataclass(slots=True)
class CacheEntry:
    value: Any
    expire_at: float


class ExpiringCache:
    """
    Key/value store with a per-entry TTL.

    Expiry has two independent paths: every read checks the entry's deadline
    (authoritative), and when an event loop is running an eviction is scheduled
    with call_later to reclaim memory for keys nobody reads again.
    """
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def set(self, key: str, value: Any, ttl: float) -> None:
        entry = CacheEntry(value=value, expire_at=self._clock() + ttl)
        self._entries[key] = entry
        self._cancel_timer(key)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timers[key] = loop.call_later(ttl, self._evict_if_current, key, entry)

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        if self._clock() >= entry.expire_at:
            self.delete(key)
            return default
        return entry.value

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)
        self._cancel_timer(key)

    def clear(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._live_keys())

    def stats(self) -> dict:
        keys = self._live_keys()
        return {"size": len(keys), "keys": keys}

    def _live_keys(self) -> List[str]:
        # Entries past their deadline whose eviction timer has not fired yet are not counted
        now = self._clock()
        return [key for key, entry in self._entries.items() if now < entry.expire_at]

    def _evict_if_current(self, key: str, entry: CacheEntry) -> None:
        # A later set() replaced the entry this timer was armed for
        if self._entries.get(key) is not entry:
            return
        self._timers.pop(key, None)
        self._entries.pop(key, None)

    def _cancel_timer(self, key: str) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()


class PoolCache(ExpiringCache):
    """Pool snapshot storage: one entry per pool plus the denormalized all-pools entry."""

    def __init__(self, pool_ttl: float = 5.0, clock: Callable[[], float] = time.monotonic):
        super().__init__(clock=clock)
        self.pool_ttl = pool_ttl

    def set_pool_state(self, pool_name: str, snapshot: PoolSnapshot) -> None:
        self.set(pool_key(pool_name), snapshot, self.pool_ttl)

    def get_pool_state(self, pool_name: str) -> Optional[PoolSnapshot]:
        return self.get(pool_key(pool_name))

    def set_round_results(self, snapshots: Dict[str, PoolSnapshot]) -> None:
        """
        Writes every snapshot of one polling round, then the aggregate.
        Runs without awaiting, so no reader can observe a half-written round.
        """
        for pool_name, snapshot in snapshots.items():
            self.set_pool_state(pool_name, snapshot)
        self.set_all_pools_state(snapshots)

    def set_all_pools_state(self, snapshots: Dict[str, PoolSnapshot]) -> None:
        self.set(ALL_POOLS_KEY, dict(snapshots), self.pool_ttl)

    def get_all_pools_state(self) -> Optional[Dict[str, PoolSnapshot]]:
        aggregate = self.get(ALL_POOLS_KEY)
        if aggregate is None:
            return None
        return dict(aggregate)

    def assemble_pools_state(self, pool_names: Iterable[str]) -> Dict[str, PoolSnapshot]:
        """Per-pool fallback for when the aggregate entry has expired on its own"""
        assembled = {}
        for name in pool_names:
            snapshot = self.get_pool_state(name)
            if snapshot is not None:
                assembled[name] = snapshot
        return assembled
