"""Periodic housekeeping for quotas and session analytics.

Quota windows roll lazily on the next consume, so the sweep is not needed
for correctness. It keeps stored rows tidy for reporting: rolls expired
windows, prunes stale anonymous ledgers, closes idle sessions and drains
the drift queue.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from metering.config import settings
from metering.database import SessionLocal
from metering.schemas import ReconciliationResult
from metering.services.quota_ledger import QuotaLedger
from metering.services.session_aggregator import SessionAggregator

logger = logging.getLogger(__name__)

RECONCILE_LOOKBACK = timedelta(days=1)


@dataclass
class SweepReport:
    windows_rolled: int = 0
    anonymous_pruned: int = 0
    sessions_closed: int = 0
    sessions_reconciled: int = 0


class ResetScheduler:
    """Runs sweeps on demand or on an APScheduler background thread."""

    def __init__(
        self,
        ledger: QuotaLedger,
        aggregator: SessionAggregator,
        session_factory=SessionLocal,
    ):
        self.ledger = ledger
        self.aggregator = aggregator
        self.session_factory = session_factory
        self._scheduler: Optional[BackgroundScheduler] = None

    def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one housekeeping pass in a fresh database session.

        Rolling a window here goes through the same conditional update as
        consumption, so a sweep racing with a consume rolls it once.
        """
        now = now or self.ledger.clock.now()
        report = SweepReport()
        db = self.session_factory()
        try:
            for user_id in self.ledger.expired_window_user_ids(db, now):
                if self.ledger.roll_window(db, user_id, now):
                    report.windows_rolled += 1
            report.anonymous_pruned = self.ledger.prune_anonymous_usage(db, now)
            report.sessions_closed = self.aggregator.close_idle_sessions(db, now)
            report.sessions_reconciled = len(self.aggregator.reconcile_pending(db))
        finally:
            db.close()

        logger.info(
            "Sweep finished: %d window(s) rolled, %d anonymous ledger(s) pruned, "
            "%d session(s) closed, %d session(s) reconciled",
            report.windows_rolled,
            report.anonymous_pruned,
            report.sessions_closed,
            report.sessions_reconciled,
        )
        return report

    def run_reconciliation(
        self,
        now: Optional[datetime] = None,
        lookback: Optional[timedelta] = RECONCILE_LOOKBACK,
    ) -> List[ReconciliationResult]:
        """Reconcile queued drift, then every session active within ``lookback``.

        A ``lookback`` of None reconciles every session.
        """
        now = now or self.aggregator.clock.now()
        since = datetime.min if lookback is None else now - lookback
        db = self.session_factory()
        try:
            results = self.aggregator.reconcile_pending(db)
            results += self.aggregator.reconcile_recent(db, since)
        finally:
            db.close()

        corrected = sum(1 for r in results if r.corrected)
        logger.info(
            "Reconciliation finished: %d session(s) checked, %d corrected",
            len(results),
            corrected,
        )
        return results

    def _sweep_job(self):
        try:
            self.run_sweep()
        except Exception as e:
            logger.error("Scheduled sweep failed: %s", e, exc_info=True)

    def _reconcile_job(self):
        try:
            self.run_reconciliation()
        except Exception as e:
            logger.error("Scheduled reconciliation failed: %s", e, exc_info=True)

    def start(self) -> BackgroundScheduler:
        """Register the interval jobs and start the background scheduler."""
        if self._scheduler is not None:
            return self._scheduler

        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self._sweep_job,
            IntervalTrigger(minutes=settings.RESET_SWEEP_INTERVAL_MINUTES),
            id="quota_reset_sweep",
            replace_existing=True,
        )
        scheduler.add_job(
            self._reconcile_job,
            IntervalTrigger(minutes=settings.RECONCILE_INTERVAL_MINUTES),
            id="session_reconciliation",
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Scheduler started (sweep every %d min, reconciliation every %d min)",
            settings.RESET_SWEEP_INTERVAL_MINUTES,
            settings.RECONCILE_INTERVAL_MINUTES,
        )
        return scheduler

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Scheduler stopped")
