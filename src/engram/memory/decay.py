"""Time-based importance decay.

Memories that have not been accessed for a while slowly lose effective
importance and are eventually deactivated. The pass also settles access
state: retrieval hits recorded since the previous pass become visible to
ranking. Each record is updated on its own
with an optimistic compare-and-update, so a pass can run alongside retrieval
and writes without any global lock.
"""

from __future__ import annotations

import asyncio
import logging
import time

from engram.config import DecayConfig
from engram.errors import InvalidRecord, StoreUnavailable
from engram.memory.models import DecayReport, MemoryRecord
from engram.memory.store import MemoryStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class DecayScheduler:
    """Runs decay passes on demand or periodically on an asyncio task.

    Example:
        >>> decay = DecayScheduler(store, DecayConfig())
        >>> report = await decay.run_decay_pass()
        >>> decay.start(interval_seconds=3600)
        >>> await decay.stop()
    """

    def __init__(self, store: MemoryStore, config: DecayConfig | None = None) -> None:
        """Initialize the scheduler.

        Args:
            store: Memory store to decay.
            config: Decay configuration. If None, uses defaults.
        """
        self._store = store
        self._config = config or DecayConfig()
        self._task: asyncio.Task[None] | None = None
        self._wakeup: asyncio.Event | None = None
        self._running = False
        self.last_report: DecayReport | None = None

    @property
    def running(self) -> bool:
        """Whether the periodic task is active."""
        return self._task is not None and not self._task.done()

    async def run_decay_pass(self, user_id: str | None = None, now: float | None = None) -> DecayReport:
        """Attenuate stale records and deactivate those that became irrelevant.

        Args:
            user_id: Limit the pass to one user. All users when None.
            now: Reference time (defaults to the current time).

        Returns:
            Counters for the pass.

        Raises:
            StoreUnavailable: If the list of records cannot be read.
        """
        now = time.time() if now is None else now
        report = DecayReport(started_at=time.time())

        user_ids = [user_id] if user_id is not None else await self._store.list_user_ids(active_only=True)
        for uid in user_ids:
            for record in await self._store.get_active_by_user(uid):
                report.scanned += 1
                await self._decay_record(record, now, report)

        report.finished_at = time.time()
        self.last_report = report
        logger.info(
            f"Decay pass: scanned={report.scanned} decayed={report.decayed} "
            f"deactivated={report.deactivated} settled={report.settled} skipped={report.skipped} errors={report.errors}"
        )
        return report

    async def _decay_record(self, record: MemoryRecord, now: float, report: DecayReport) -> None:
        cfg = self._config
        if (record.settled_accessed_at, record.settled_access_count) != (record.last_accessed_at, record.access_count):
            if not await self._settle(record, report):
                return

        last_seen = record.last_accessed_at or record.created_at or now
        if now - last_seen < cfg.staleness_days * SECONDS_PER_DAY:
            report.skipped += 1
            return

        new_factor = max(cfg.decay_floor, record.decay_factor * cfg.attenuation)
        deactivate = record.importance * new_factor < cfg.deactivation_threshold
        if new_factor >= record.decay_factor and not deactivate:
            # Already at the floor
            report.skipped += 1
            return

        mutation: dict[str, object] = {"decay_factor": new_factor}
        if deactivate:
            mutation["is_active"] = False

        expected = {
            "decay_factor": record.decay_factor,
            "last_accessed_at": record.last_accessed_at,
            "is_active": True,
        }

        try:
            applied = await self._store.compare_and_update(record.user_id, record.id, expected, mutation)
        except (StoreUnavailable, InvalidRecord) as e:
            report.errors += 1
            logger.error(f"Failed to decay memory {record.id}: {e}")
            return

        if not applied:
            # Touched or changed since it was read; the next pass sees the new state
            logger.debug(f"Memory {record.id} changed during decay, skipping")
            report.skipped += 1
            return

        report.decayed += 1
        if deactivate:
            report.deactivated += 1
            logger.debug(f"Deactivated memory {record.id} (effective importance {record.importance * new_factor:.3f})")

    async def _settle(self, record: MemoryRecord, report: DecayReport) -> bool:
        """Copy live access state into the settled fields used for ranking."""
        expected = {
            "last_accessed_at": record.last_accessed_at,
            "access_count": record.access_count,
            "is_active": True,
        }
        mutation = {
            "settled_accessed_at": record.last_accessed_at,
            "settled_access_count": record.access_count,
        }
        try:
            applied = await self._store.compare_and_update(record.user_id, record.id, expected, mutation)
        except (StoreUnavailable, InvalidRecord) as e:
            report.errors += 1
            logger.error(f"Failed to settle access state of memory {record.id}: {e}")
            return False

        if not applied:
            logger.debug(f"Memory {record.id} changed while settling, skipping")
            report.skipped += 1
            return False

        record.settled_accessed_at = record.last_accessed_at
        record.settled_access_count = record.access_count
        report.settled += 1
        return True

    def start(self, interval_seconds: float | None = None) -> None:
        """Run a decay pass now and then every interval_seconds.

        Raises:
            ValueError: If the interval is not positive.
        """
        interval = self._config.interval_seconds if interval_seconds is None else interval_seconds
        if interval <= 0:
            raise ValueError("interval_seconds must be positive")
        if self.running:
            return

        self._running = True
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self._main_loop(interval), name="engram-decay")
        logger.info(f"Decay scheduler started (every {interval:.0f}s)")

    async def stop(self) -> None:
        """Stop the periodic task and wait for an in-progress pass to finish."""
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
            logger.info("Decay scheduler stopped")

    async def _main_loop(self, interval: float) -> None:
        assert self._wakeup is not None
        while self._running:
            try:
                await self.run_decay_pass()
            except StoreUnavailable as e:
                logger.error(f"Decay pass failed: {e}")

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
