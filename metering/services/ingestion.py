"""Telemetry backfill from CSV exports.

This module loads a CSV export of client telemetry (for example events
that were buffered while the API was unreachable) and replays it through
the SessionAggregator, so rollups, exit pages and idle session splits come
out exactly as if the records had arrived live.
"""

import json
import logging
from typing import Optional

import pandas as pd
from pydantic import ValidationError
from sqlalchemy.orm import Session

from metering.schemas import TelemetryKind
from metering.services.session_aggregator import PAYLOAD_MODELS, SessionAggregator

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = {"session_id", "kind", "occurred_at", "payload"}
PROGRESS_EVERY = 1000


def parse_payload(raw) -> dict:
    """Decode the JSON payload column of one row.

    Empty cells decode to an empty payload.

    Raises:
        ValueError: If the cell is not a JSON object.
    """
    if raw is None or (isinstance(raw, float) and pd.isna(raw)):
        return {}
    text = str(raw).strip()
    if not text:
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON payload {text[:80]!r}: {e.msg}")
    if not isinstance(value, dict):
        raise ValueError(f"Payload must be a JSON object, got {type(value).__name__}")
    return value


def validate_dataframe(df: pd.DataFrame) -> None:
    """Validate that the DataFrame has all required columns.

    Args:
        df: The pandas DataFrame to validate.

    Raises:
        ValueError: If required columns are missing.
    """
    df.columns = df.columns.str.strip()
    missing = REQUIRED_COLUMNS - set(df.columns)
    if missing:
        raise ValueError(f"Missing required columns: {missing}")


def _prepare(df: pd.DataFrame) -> pd.DataFrame:
    df["session_id"] = df["session_id"].astype(str).str.strip()
    df["kind"] = df["kind"].astype(str).str.strip()
    if "user_id" in df.columns:
        df["user_id"] = [
            None if pd.isna(value) or not str(value).strip() else str(value).strip()
            for value in df["user_id"]
        ]
    else:
        df["user_id"] = None

    unknown = set(df["kind"]) - {k.value for k in TelemetryKind}
    if unknown:
        raise ValueError(f"Unknown telemetry kinds: {sorted(unknown)}")

    df["occurred_at"] = pd.to_datetime(df["occurred_at"], utc=True, errors="coerce")
    if df["occurred_at"].isna().any():
        raise ValueError("Invalid or missing values in the occurred_at column")
    df["occurred_at"] = df["occurred_at"].dt.tz_convert(None)

    records = []
    for position, (kind, raw) in enumerate(zip(df["kind"], df["payload"])):
        model = PAYLOAD_MODELS[TelemetryKind(kind)]
        try:
            records.append(model.model_validate(parse_payload(raw)))
        except (ValidationError, ValueError) as e:
            raise ValueError(f"Row {position + 1}: invalid {kind} payload: {e}")
    df["record"] = pd.Series(records, index=df.index, dtype=object)

    return df.sort_values("occurred_at", kind="mergesort")


def ingest_telemetry(
    csv_path: str,
    session: Session,
    aggregator: Optional[SessionAggregator] = None,
) -> int:
    """Replay a telemetry CSV export through the aggregator.

    Every row is validated before anything is written, then rows are
    recorded in timestamp order. Each row counts as session activity at its
    own ``occurred_at``, so idle splits match the original timeline. An
    optional ``user_id`` column attributes rows to a user.

    Args:
        csv_path: Path to the CSV file to ingest.
        session: SQLAlchemy database session.
        aggregator: Aggregator to record through. A default one is created
            if omitted.

    Returns:
        The number of records written.

    Raises:
        FileNotFoundError: If the CSV file does not exist.
        ValueError: If the CSV file has invalid structure or data.
    """
    aggregator = aggregator or SessionAggregator()

    logger.info("Reading CSV file: %s", csv_path)
    df = pd.read_csv(csv_path, dtype=str)
    validate_dataframe(df)

    if df.empty:
        logger.warning("CSV file is empty (no data rows): %s", csv_path)
        return 0

    df = _prepare(df)

    total = 0
    for row in df.itertuples(index=False):
        aggregator.record(
            session,
            row.session_id,
            row.kind,
            row.record,
            row.occurred_at.to_pydatetime(),
            user_id=row.user_id,
            active_at=row.occurred_at.to_pydatetime(),
        )
        total += 1
        if total % PROGRESS_EVERY == 0:
            logger.info("Recorded %d/%d rows", total, len(df))

    logger.info("Ingestion complete. Total records written: %d", total)
    return total
