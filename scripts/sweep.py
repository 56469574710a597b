"""CLI script to run one quota and session housekeeping sweep.

Usage:
    python scripts/sweep.py [--database-url sqlite:///./metering.db] [--reconcile-all]

Rolls expired quota windows, prunes stale anonymous ledgers and closes idle
sessions. Meant for cron when the in-process scheduler is disabled. With
--reconcile-all, also rebuilds the rollups of every session from its
records.
"""

import argparse
import logging
import sys
from pathlib import Path

# Ensure project root is in the Python path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy.orm import sessionmaker

from metering.config import settings
from metering.database import Base, _build_engine
from metering.services.errors import StorageUnavailableError
from metering.services.quota_ledger import QuotaLedger
from metering.services.reset_scheduler import ResetScheduler
from metering.services.session_aggregator import SessionAggregator

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main(args=None):
    """Main entry point for the sweep CLI script.

    Args:
        args: Command-line arguments (defaults to sys.argv if None).

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    parser = argparse.ArgumentParser(
        description="Roll expired quota windows and tidy session analytics"
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Database URL (default: uses DATABASE_URL env var or sqlite:///./metering.db)",
    )
    parser.add_argument(
        "--reconcile-all",
        action="store_true",
        help="Also rebuild the rollups of every session from its records",
    )

    parsed_args = parser.parse_args(args)

    database_url = parsed_args.database_url or settings.DATABASE_URL
    db_engine = _build_engine(database_url)
    Base.metadata.create_all(bind=db_engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)

    scheduler = ResetScheduler(QuotaLedger(), SessionAggregator(), session_factory=Session)
    try:
        report = scheduler.run_sweep()
        logger.info("Sweep report: %s", report)
        if parsed_args.reconcile_all:
            results = scheduler.run_reconciliation(lookback=None)
            corrected = sum(1 for r in results if r.corrected)
            logger.info(
                "Reconciled %d session(s), %d corrected", len(results), corrected
            )
        return 0

    except StorageUnavailableError as e:
        logger.error("Database unavailable: %s", e)
        return 1
    except Exception as e:
        logger.error("Unexpected error during sweep: %s", e)
        return 1
    finally:
        db_engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
