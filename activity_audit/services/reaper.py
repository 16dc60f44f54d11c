"""
Retention reaper: background housekeeping for the audit trail.

One pass:
1. Marks records left PENDING past the ceiling as TIMEOUT
   (the process that owned them crashed or lost its finalization)
2. Rescores actors active in the trailing risk window
3. Deletes expired records that are not permanent

A pass is idempotent: running it twice over the same state does
the work once. The loop runs on a daemon thread and sleeps on an
Event, so stop() wakes it immediately. Tests call run_once() with
a fake clock instead of starting the thread.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta

from activity_audit.clock import Clock, utc_now
from activity_audit.config import Settings, get_settings
from activity_audit.services.record_store import RecordStore
from activity_audit.services.risk_scorer import RiskScorer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReapResult:
    deleted: int = 0
    timed_out: int = 0
    rescored: int = 0


class RetentionReaper:

    def __init__(
        self,
        store: RecordStore,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        risk_scorer: RiskScorer | None = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock
        self.risk_scorer = risk_scorer
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> ReapResult:
        now = self.clock()
        ceiling = timedelta(seconds=self.settings.PENDING_CEILING_SECONDS)

        timed_out = self.store.timeout_stale_pending(now - ceiling)
        if timed_out:
            logger.warning("Marked %d stale PENDING records as TIMEOUT", timed_out)

        rescored = 0
        if self.risk_scorer is not None:
            rescored = self.risk_scorer.rescore_recent(now)

        deleted = self.store.delete_expired(now)

        result = ReapResult(deleted=deleted, timed_out=timed_out, rescored=rescored)
        logger.info(
            "Reaper pass: deleted=%d timed_out=%d rescored=%d",
            result.deleted, result.timed_out, result.rescored,
        )
        return result

    # --- Background loop ---

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="retention-reaper", daemon=True
        )
        self._thread.start()
        logger.info(
            "Retention reaper started (interval=%ss)",
            self.settings.REAPER_INTERVAL_SECONDS,
        )

    def stop(self, timeout: float | None = 10) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Retention reaper stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Reaper pass failed")
            self._stop.wait(self.settings.REAPER_INTERVAL_SECONDS)
