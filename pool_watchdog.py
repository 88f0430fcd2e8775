# pool_watchdog.py
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from expiring_cache import PoolCache
from models import ConfigError, FetchResult, FetchStatus, HealthLevel, HealthState, PoolSnapshot
from pool_reader import ChainStateReader, PoolRegistry

logger = logging.getLogger(__name__)

DOWN_MESSAGE = 'Devnet is currently offline. Please try again in 2 hours.'
UNSTABLE_MESSAGE = 'Devnet is unstable. Transactions are temporarily disabled, please retry in about a minute.'
UP_MESSAGE = 'Devnet is operational.'


@dataclass
class RoundSummary:
    """What one polling round saw, before it was applied to the health state"""
    started_at: float
    snapshots: Dict[str, PoolSnapshot] = field(default_factory=dict)
    not_found: List[str] = field(default_factory=list)
    transient: List[str] = field(default_factory=list)
    failure_count: int = 0

    @property
    def success_count(self) -> int:
        return len(self.snapshots)


class PoolWatchdog:
    """
    Polls every configured pool on a fixed interval, keeps the pool cache warm
    and owns the upstream HealthState that gates write operations.

    Nothing here raises to its caller except an UnknownPoolError from
    force_refresh, which means the deployment itself is misconfigured.
    """
    def __init__(self, reader: ChainStateReader, cache: PoolCache, registry: PoolRegistry,
                 health: Optional[HealthState] = None, lock_threshold: int = 3,
                 down_threshold: int = 20, poll_interval: float = 3.0, audit=None,
                 clock: Callable[[], float] = time.time,
                 monotonic: Callable[[], float] = time.monotonic):
        if down_threshold <= lock_threshold:
            raise ConfigError("down threshold must be greater than lock threshold")
        self.reader = reader
        self.cache = cache
        self.registry = registry
        self.health = health if health is not None else HealthState()
        self.lock_threshold = lock_threshold
        self.down_threshold = down_threshold
        self.poll_interval = poll_interval
        self.audit = audit
        self._clock = clock
        self._monotonic = monotonic
        self._round_running = False
        self._task: Optional[asyncio.Task] = None
        self.last_round: Optional[RoundSummary] = None

    @classmethod
    def from_settings(cls, settings, reader: ChainStateReader, cache: PoolCache,
                      registry: PoolRegistry, audit=None) -> "PoolWatchdog":
        return cls(
            reader, cache, registry,
            lock_threshold=settings.lock_threshold,
            down_threshold=settings.down_threshold,
            poll_interval=settings.poll_interval,
            audit=audit,
        )

    # ---- polling loop ----

    @property
    def round_in_progress(self) -> bool:
        return self._round_running

    async def run_round(self) -> Optional[RoundSummary]:
        """
        One polling round: fan out to every pool, wait for all of them, then
        apply the outcome to the cache and health state in one synchronous step.
        Returns None when another round is still in flight.
        """
        if self._round_running:
            logger.debug("Previous pool round still running, skipping tick")
            return None

        self._round_running = True
        try:
            summary = RoundSummary(started_at=self._clock())
            try:
                names = self.registry.names
                results = await asyncio.gather(
                    *(self.reader.fetch_pool(name) for name in names),
                    return_exceptions=True,
                )
                for name, result in zip(names, results):
                    self._classify(summary, name, result)
            except Exception:
                logger.exception("Pool round failed unexpectedly")
                summary.snapshots.clear()
                summary.not_found.clear()
                summary.transient = self.registry.names

            self._apply_round(summary)
            summary.failure_count = self.health.failure_count
            self.last_round = summary
            return summary
        finally:
            self._round_running = False

    def _classify(self, summary: RoundSummary, name: str, result) -> None:
        if isinstance(result, FetchResult):
            if result.status is FetchStatus.OK:
                summary.snapshots[name] = result.snapshot
                logger.debug(f"Updated {name} pool state")
            elif result.status is FetchStatus.NOT_FOUND:
                summary.not_found.append(name)
            else:
                summary.transient.append(name)
            return
        # fetch_pool is not supposed to raise; anything it does counts as transient
        logger.error(f"Error updating {name} pool: {result!r}")
        summary.transient.append(name)

    def _apply_round(self, summary: RoundSummary) -> None:
        health = self.health
        if summary.success_count > 0:
            self.cache.set_round_results(summary.snapshots)
            was_degraded = health.locked or health.down
            previous = health.failure_count
            health.clear()
            if was_degraded:
                logger.warning(f"Devnet recovered after {previous} failed rounds - transactions unlocked")
                self._audit("recovered", f"{summary.success_count} pools answered")
            logger.debug(f"Updated {summary.success_count} pools in cache")
            return

        if not summary.transient:
            # Nothing answered but nothing failed either: pools not initialized yet
            logger.warning(f"No pool data yet: {', '.join(summary.not_found)} not initialized on chain")
            return

        health.failure_count += 1
        logger.warning(
            f"Pool fetch failed {health.failure_count}/{self.down_threshold} - "
            f"{len(summary.transient)} transient, {len(summary.not_found)} not found"
        )

        if health.failure_count >= self.lock_threshold and not health.locked:
            health.locked = True
            logger.warning("TRANSACTIONS LOCKED - Devnet appears unstable")
            self._audit("locked")

        if health.failure_count >= self.down_threshold and not health.down:
            health.down = True
            logger.error("DEVNET IS DOWN - Entering maintenance mode")
            self._audit("down")

    async def run_forever(self):
        """Serialized rounds on a fixed cadence. A round that overruns is not queued twice."""
        logger.info(f"Pool watchdog started for {len(self.registry)} pools every {self.poll_interval}s")
        while True:
            started = self._monotonic()
            try:
                await self.run_round()
            except Exception:
                logger.exception("Pool watchdog round escaped its handler")
            elapsed = self._monotonic() - started
            await asyncio.sleep(max(0.0, self.poll_interval - elapsed))

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def trigger_round(self) -> bool:
        """Manual round for operators. False when a round is already running."""
        if self._round_running:
            return False
        logger.info("Manual update triggered for all pools")
        await self.run_round()
        return True

    # ---- out-of-band refresh and admin ----

    async def force_refresh(self, pool_name: str) -> Optional[PoolSnapshot]:
        """
        Re-reads one pool right after a write landed. Only that pool's entry is
        touched; the aggregate and the failure counter wait for the next round.
        """
        self.registry.get(pool_name)
        logger.debug(f"Force refreshing {pool_name} pool...")
        try:
            result = await self.reader.fetch_pool(pool_name)
        except Exception as e:
            logger.error(f"Error force refreshing {pool_name} pool: {e!r}")
            return None

        if result.status is FetchStatus.OK:
            self.cache.set_pool_state(pool_name, result.snapshot)
            logger.debug(f"Force refreshed {pool_name} pool successfully")
            return result.snapshot

        logger.warning(f"Failed to force refresh {pool_name} pool ({result.status.value}: {result.error})")
        return None

    def reset(self, actor: str = "admin") -> None:
        previous = (self.health.failure_count, self.health.locked, self.health.down)
        self.health.clear()
        logger.warning(
            f"Devnet status manually reset by {actor} "
            f"(was failures={previous[0]} locked={previous[1]} down={previous[2]})"
        )
        self._audit("manual_reset", f"by {actor}; was failures={previous[0]} locked={previous[1]} down={previous[2]}")

    # ---- read side ----

    @property
    def is_transactions_locked(self) -> bool:
        return self.health.locked

    @property
    def is_down(self) -> bool:
        return self.health.down

    @property
    def failure_count(self) -> int:
        return self.health.failure_count

    def get_all_pools_from_cache(self) -> Optional[Dict[str, PoolSnapshot]]:
        return self.cache.get_all_pools_state()

    def get_pool_from_cache(self, pool_name: str) -> Optional[PoolSnapshot]:
        self.registry.get(pool_name)
        return self.cache.get_pool_state(pool_name)

    def get_pools_view(self) -> Dict[str, PoolSnapshot]:
        """
        Live per-pool entries laid over the aggregate. A force refresh only
        rewrites its own pool's entry, so the aggregate alone can be one write behind.
        """
        live = self.cache.assemble_pools_state(self.registry.names)
        aggregate = self.cache.get_all_pools_state()
        if aggregate is None:
            return live
        return {**aggregate, **live}

    def status(self) -> dict:
        status = {
            "isDown": self.health.down,
            "isTransactionsLocked": self.health.locked,
            "failureCount": self.health.failure_count,
            "maxFailures": self.lock_threshold,
            "maxDowntime": self.down_threshold,
        }
        if self.last_round is not None:
            status.update({
                "lastRoundAt": int(self.last_round.started_at * 1000),
                "lastSuccessCount": self.last_round.success_count,
                "lastNotFoundCount": len(self.last_round.not_found),
                "lastTransientCount": len(self.last_round.transient),
            })
        return status

    def devnet_status(self) -> dict:
        level = self.health.level
        message = {
            HealthLevel.DOWN: DOWN_MESSAGE,
            HealthLevel.UNSTABLE: UNSTABLE_MESSAGE,
            HealthLevel.UP: UP_MESSAGE,
        }[level]
        return {"status": level.value, "message": message, "failureCount": self.health.failure_count}

    def _audit(self, event: str, detail: str = ""):
        if self.audit is None:
            return
        try:
            self.audit.record(event, self.health.failure_count, self.health.locked, self.health.down, detail)
        except Exception as e:
            logger.error(f"Could not queue audit record for {event}: {e}")
