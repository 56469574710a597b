"""Session telemetry endpoints.

Provides endpoints for:
- Opening a session
- Recording a batch of page views, events and chat turns
- Ending a session
- Reading a session's rollups
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import ValidationError
from sqlalchemy.orm import Session

from metering.config import settings
from metering.database import get_db
from metering.dependencies import get_aggregator, get_identity, get_request_context
from metering.schemas import (
    ErrorResponse,
    SessionStartRequest,
    SessionSummary,
    TelemetryBatch,
    TelemetryBatchResponse,
)
from metering.services.errors import StorageUnavailableError
from metering.services.identity import AuthenticatedUser, Identity, RequestContext
from metering.services.session_aggregator import SessionAggregator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/telemetry", tags=["Telemetry"])


@router.post(
    "/sessions",
    response_model=SessionSummary,
    summary="Open an analytics session",
    responses={503: {"model": ErrorResponse, "description": "Storage unavailable"}},
)
def start_session(
    body: Optional[SessionStartRequest] = None,
    user_agent: Optional[str] = Header(None),
    ctx: RequestContext = Depends(get_request_context),
    identity: Identity = Depends(get_identity),
    aggregator: SessionAggregator = Depends(get_aggregator),
    db: Session = Depends(get_db),
) -> SessionSummary:
    body = body or SessionStartRequest()
    user_id = identity.user_id if isinstance(identity, AuthenticatedUser) else None
    return aggregator.start_session(
        db,
        session_id=body.session_id,
        user_id=user_id,
        visitor_id=ctx.session_id,
        ip_address=ctx.ip_address,
        user_agent=body.user_agent or user_agent,
        started_at=body.started_at,
    )


@router.post(
    "/events",
    response_model=TelemetryBatchResponse,
    summary="Record a batch of telemetry",
    description=(
        f"Accepts up to {settings.MAX_EVENTS_PER_BATCH} page views, events and chat "
        "turns. Invalid items are reported in `errors` and do not fail the batch. "
        "`session_ids` lists the session each record landed in, which differs from "
        "the submitted id when that session had ended or gone idle."
    ),
    responses={400: {"model": ErrorResponse, "description": "Batch too large"}},
)
def record_events(
    batch: TelemetryBatch,
    user_agent: Optional[str] = Header(None),
    ctx: RequestContext = Depends(get_request_context),
    identity: Identity = Depends(get_identity),
    aggregator: SessionAggregator = Depends(get_aggregator),
    db: Session = Depends(get_db),
) -> TelemetryBatchResponse:
    if len(batch.events) > settings.MAX_EVENTS_PER_BATCH:
        raise HTTPException(
            status_code=400,
            detail=(
                f"Batch of {len(batch.events)} events exceeds the maximum of "
                f"{settings.MAX_EVENTS_PER_BATCH}"
            ),
        )

    user_id = identity.user_id if isinstance(identity, AuthenticatedUser) else None
    session_ids = []
    errors = []
    for index, item in enumerate(batch.events):
        try:
            session_ids.append(
                aggregator.record(
                    db,
                    item.session_id,
                    item.kind,
                    item.payload,
                    item.occurred_at,
                    user_id=user_id,
                    visitor_id=ctx.session_id,
                    ip_address=ctx.ip_address,
                    user_agent=user_agent,
                )
            )
        except ValidationError as e:
            errors.append(f"events[{index}]: invalid {item.kind.value} payload: {e}")
        except StorageUnavailableError as e:
            errors.append(f"events[{index}]: {e}")

    if errors:
        logger.warning("Telemetry batch had %d rejected item(s)", len(errors))
    return TelemetryBatchResponse(
        processed=len(session_ids), session_ids=session_ids, errors=errors
    )


@router.post(
    "/sessions/{session_id}/end",
    response_model=SessionSummary,
    summary="End a session",
    responses={404: {"model": ErrorResponse, "description": "Session not found"}},
)
def end_session(
    session_id: str,
    aggregator: SessionAggregator = Depends(get_aggregator),
    db: Session = Depends(get_db),
) -> SessionSummary:
    summary = aggregator.end_session(db, session_id)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    return summary


@router.get(
    "/sessions/{session_id}",
    response_model=SessionSummary,
    summary="Get a session's rollups",
    responses={404: {"model": ErrorResponse, "description": "Session not found"}},
)
def get_session(
    session_id: str,
    aggregator: SessionAggregator = Depends(get_aggregator),
    db: Session = Depends(get_db),
) -> SessionSummary:
    summary = aggregator.get_session_summary(db, session_id)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    return summary
