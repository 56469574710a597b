"""CLI script to backfill session telemetry from a CSV export.

Usage:
    python scripts/ingest.py --csv telemetry.csv [--database-url sqlite:///./metering.db]

The CSV needs the columns session_id, kind (page_view, event or chat_turn),
occurred_at (ISO timestamp) and payload (JSON object). Rows are replayed in
timestamp order through the session aggregator, so session rollups are
updated as if the telemetry had arrived live. Tables are created if they
don't exist.
"""

import argparse
import logging
import sys
import time
from pathlib import Path

# Ensure project root is in the Python path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy.orm import sessionmaker

from metering.config import settings
from metering.database import Base, _build_engine
from metering.services.ingestion import ingest_telemetry

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main(args=None):
    """Main entry point for the ingestion CLI script.

    Args:
        args: Command-line arguments (defaults to sys.argv if None).

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    parser = argparse.ArgumentParser(
        description="Backfill session telemetry from a CSV export"
    )
    parser.add_argument(
        "--csv",
        type=str,
        required=True,
        help="Path to the CSV file to ingest",
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Database URL (default: uses DATABASE_URL env var or sqlite:///./metering.db)",
    )

    parsed_args = parser.parse_args(args)

    csv_path = Path(parsed_args.csv)
    if not csv_path.exists():
        logger.error("CSV file not found: %s", csv_path)
        return 1

    database_url = parsed_args.database_url or settings.DATABASE_URL
    db_engine = _build_engine(database_url)
    Base.metadata.create_all(bind=db_engine)
    Session = sessionmaker(bind=db_engine)
    session = Session()

    try:
        logger.info("Starting telemetry backfill from: %s", csv_path)
        start_time = time.time()

        count = ingest_telemetry(csv_path=str(csv_path), session=session)

        elapsed = time.time() - start_time
        logger.info("Successfully ingested %d records in %.2f seconds", count, elapsed)
        return 0

    except FileNotFoundError as e:
        logger.error("File not found: %s", e)
        return 1
    except ValueError as e:
        logger.error("Data validation error: %s", e)
        return 1
    except Exception as e:
        logger.error("Unexpected error during ingestion: %s", e)
        return 1
    finally:
        session.close()
        db_engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
