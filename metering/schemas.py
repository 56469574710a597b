"""Pydantic schemas for API request validation and response serialization."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class QuotaStatus(BaseModel):
    """Generation quota for one identity."""

    identity_kind: Literal["authenticated", "anonymous"] = Field(
        ..., description="Whether the quota belongs to a user or an anonymous session"
    )
    tier: str = Field(..., description="Subscription tier, or 'anonymous'")
    limit: int = Field(..., description="Generations allowed in the current window")
    used: int = Field(..., description="Generations consumed in the current window")
    remaining: int = Field(..., description="Generations left in the current window")
    reset_at: Optional[datetime] = Field(
        None,
        description="Start of the next window (UTC). Null means no reset is scheduled",
    )


class ConsumeResult(QuotaStatus):
    """Quota state after a successful consume."""

    cost: int = Field(..., description="Units charged by this call")


class ConsumeRequest(BaseModel):
    """Body for the consume endpoint."""

    cost: int = Field(1, ge=1, description="Units to charge atomically")


class RefundRequest(BaseModel):
    """Body for the refund endpoint."""

    cost: int = Field(1, ge=1, description="Units to give back")


class TierUpdateRequest(BaseModel):
    """Admin request to change a user's subscription tier."""

    tier: Literal["free", "paid"] = Field(..., description="New subscription tier")
    monthly_limit: Optional[int] = Field(
        None, ge=0, description="Override for the tier's default monthly limit"
    )


class QuotaExceededResponse(BaseModel):
    """Returned with HTTP 429 when a consume would pass the limit."""

    detail: str = Field(..., description="Human readable message")
    limit: int = Field(..., description="Generations allowed in the current window")
    used: int = Field(..., description="Generations consumed in the current window")
    reset_at: Optional[datetime] = Field(
        None, description="When the window resets. Null means it never resets"
    )
    tier: str = Field(..., description="Subscription tier, or 'anonymous'")


class TelemetryKind(str, Enum):
    PAGE_VIEW = "page_view"
    EVENT = "event"
    CHAT_TURN = "chat_turn"


class PageViewPayload(BaseModel):
    page_path: str = Field(..., min_length=1, max_length=2048)
    page_title: Optional[str] = Field(None, max_length=512)
    referrer: Optional[str] = Field(None, max_length=2048)
    time_on_page: Optional[int] = Field(None, ge=0)
    scroll_depth: Optional[int] = Field(None, ge=0, le=100)


class EventPayload(BaseModel):
    event_type: str = Field(..., min_length=1, max_length=64)
    event_action: str = Field(..., min_length=1, max_length=128)
    event_category: Optional[str] = Field(None, max_length=128)
    event_label: Optional[str] = Field(None, max_length=255)
    event_value: Optional[float] = None
    page_path: Optional[str] = Field(None, max_length=2048)
    element_id: Optional[str] = Field(None, max_length=255)
    element_type: Optional[str] = Field(None, max_length=64)
    non_interaction: bool = Field(
        False, description="Events flagged non-interaction do not cancel a bounce"
    )
    metadata: Optional[Dict[str, Any]] = None


class ChatTurnPayload(BaseModel):
    conversation_id: str = Field(..., min_length=1, max_length=255)
    action: str = Field("message_sent", min_length=1, max_length=64)
    tokens_used: Optional[int] = Field(None, ge=0)
    error_occurred: bool = False
    session_duration: Optional[int] = Field(None, ge=0)
    selected_article: Optional[str] = Field(None, max_length=255)
    selected_content_type: Optional[str] = Field(None, max_length=64)


class TelemetryEventIn(BaseModel):
    """One queued telemetry item from the client beacon."""

    session_id: str = Field(..., min_length=1, max_length=64)
    kind: TelemetryKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = Field(
        None, description="Client timestamp (UTC). Defaults to server time"
    )


class TelemetryBatch(BaseModel):
    events: List[TelemetryEventIn]


class TelemetryBatchResponse(BaseModel):
    processed: int = Field(..., description="Number of records written")
    session_ids: List[str] = Field(
        ..., description="Session each processed record was written to, in order"
    )
    errors: List[str] = Field(default_factory=list)


class SessionStartRequest(BaseModel):
    session_id: Optional[str] = Field(None, min_length=1, max_length=64)
    user_agent: Optional[str] = Field(None, max_length=512)
    started_at: Optional[datetime] = None


class ChatAnalyticsSummary(BaseModel):
    conversation_id: str
    message_count: int
    tokens_used: int
    error_count: int
    started_at: datetime
    ended_at: Optional[datetime] = None
    session_duration: Optional[int] = None


class SessionSummary(BaseModel):
    """Read-only view of a session and its rollups."""

    id: str
    user_id: Optional[str] = None
    visitor_id: Optional[str] = None
    device_type: str
    started_at: datetime
    last_active_at: datetime
    ended_at: Optional[datetime] = None
    is_active: bool
    duration_seconds: int
    page_views: int
    events_count: int
    bounce: bool
    exit_page: Optional[str] = Field(
        None, description="Path of the newest page view, the current exit page"
    )
    previous_session_id: Optional[str] = None
    next_session_id: Optional[str] = None
    conversations: List[ChatAnalyticsSummary] = Field(default_factory=list)


class ReconciliationResult(BaseModel):
    """Outcome of rebuilding one session's rollups from its records."""

    session_id: str
    corrected: bool
    page_views: int
    events_count: int
    bounce: bool


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str = Field(..., description="Error message")
