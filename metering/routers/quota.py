"""Generation quota endpoints.

Provides endpoints for:
- Charging a generation against the caller's quota
- Reading the caller's remaining quota
- Refunding a generation that did not complete
- Changing a user's subscription tier (admin)
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from metering.database import get_db
from metering.dependencies import get_identity, get_ledger, require_admin
from metering.schemas import (
    ConsumeRequest,
    ConsumeResult,
    ErrorResponse,
    QuotaExceededResponse,
    QuotaStatus,
    RefundRequest,
    TierUpdateRequest,
)
from metering.services.identity import Identity
from metering.services.quota_ledger import QuotaLedger

router = APIRouter(prefix="/api/v1/quota", tags=["Quota"])


@router.post(
    "/consume",
    response_model=ConsumeResult,
    summary="Charge a generation against the caller's quota",
    description=(
        "Atomically checks the caller's remaining quota and charges `cost` units. "
        "Authenticated users are charged against their monthly window, anonymous "
        "visitors against the lifetime cap of their session cookie."
    ),
    responses={
        429: {"model": QuotaExceededResponse, "description": "Quota exhausted"},
        503: {"model": ErrorResponse, "description": "Quota storage unavailable"},
    },
)
def consume(
    body: Optional[ConsumeRequest] = None,
    identity: Identity = Depends(get_identity),
    ledger: QuotaLedger = Depends(get_ledger),
    db: Session = Depends(get_db),
) -> ConsumeResult:
    cost = body.cost if body else 1
    return ledger.check_and_consume(db, identity, cost)


@router.get(
    "/status",
    response_model=QuotaStatus,
    summary="Get the caller's quota",
    responses={503: {"model": ErrorResponse, "description": "Quota storage unavailable"}},
)
def quota_status(
    identity: Identity = Depends(get_identity),
    ledger: QuotaLedger = Depends(get_ledger),
    db: Session = Depends(get_db),
) -> QuotaStatus:
    return ledger.get_quota_status(db, identity)


@router.post(
    "/refund",
    response_model=QuotaStatus,
    summary="Give back units for a generation that failed or was cancelled",
    responses={503: {"model": ErrorResponse, "description": "Quota storage unavailable"}},
)
def refund(
    body: Optional[RefundRequest] = None,
    identity: Identity = Depends(get_identity),
    ledger: QuotaLedger = Depends(get_ledger),
    db: Session = Depends(get_db),
) -> QuotaStatus:
    cost = body.cost if body else 1
    return ledger.refund(db, identity, cost)


@router.put(
    "/users/{user_id}/tier",
    response_model=QuotaStatus,
    summary="Change a user's subscription tier",
    dependencies=[Depends(require_admin)],
    responses={
        400: {"model": ErrorResponse, "description": "Invalid user id"},
        403: {"model": ErrorResponse, "description": "Missing or wrong admin token"},
    },
)
def update_tier(
    user_id: str,
    body: TierUpdateRequest,
    ledger: QuotaLedger = Depends(get_ledger),
    db: Session = Depends(get_db),
) -> QuotaStatus:
    """Move a user to another tier. The current window's usage is kept."""
    try:
        return ledger.set_subscription_tier(db, user_id, body.tier, body.monthly_limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
