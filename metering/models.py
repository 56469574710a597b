"""SQLAlchemy ORM models for the Usage Metering Service."""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from metering.database import Base
from metering.services.clock import utcnow


class UserQuota(Base):
    """Monthly generation quota for an authenticated user.

    Attributes:
        user_id: Identifier issued by the auth provider.
        subscription_tier: ``free`` or ``paid``.
        monthly_limit: Generations allowed per window.
        used: Generations consumed in the current window.
        reset_at: Start of the next window. NULL until the first consume
                  opens a window.
    """

    __tablename__ = "user_quotas"

    user_id = Column(String(255), primary_key=True)
    subscription_tier = Column(String(20), nullable=False, default="free")
    monthly_limit = Column(Integer, nullable=False)
    used = Column(Integer, nullable=False, default=0)
    reset_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("used >= 0", name="ck_user_quotas_used_non_negative"),
        Index("idx_user_quotas_reset_at", "reset_at"),
    )

    def __repr__(self):
        return (
            f"<UserQuota(user_id={self.user_id!r}, used={self.used}, "
            f"limit={self.monthly_limit}, reset_at={self.reset_at})>"
        )


class AnonymousUsage(Base):
    """Lifetime generation counter for an anonymous visitor session.

    Keyed by the session cookie only. The IP address is kept for abuse
    heuristics and is never used to look a ledger up.
    """

    __tablename__ = "anonymous_usage"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(255), nullable=False, unique=True)
    ip_address = Column(String(45), nullable=True)
    used = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_used_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("used >= 0", name="ck_anonymous_usage_used_non_negative"),
        Index("idx_anonymous_usage_ip", "ip_address"),
        Index("idx_anonymous_usage_last_used_at", "last_used_at"),
    )

    def __repr__(self):
        return f"<AnonymousUsage(session_id={self.session_id!r}, used={self.used})>"


class AnalyticsSession(Base):
    """One continuous visit, with rollup counters derived from its records.

    ``page_views``, ``events_count`` and ``interactions_count`` cache the
    counts of the session's PageView / AnalyticsEvent rows and are rebuilt by
    reconciliation when they drift. ``last_page_view_id`` points at the
    newest page view, the current exit page candidate.
    """

    __tablename__ = "user_sessions"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(255), nullable=True)
    visitor_id = Column(String(255), nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(512), nullable=True)
    device_type = Column(String(16), nullable=False, default="UNKNOWN")
    started_at = Column(DateTime, nullable=False)
    last_active_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    page_views = Column(Integer, nullable=False, default=0)
    events_count = Column(Integer, nullable=False, default=0)
    interactions_count = Column(Integer, nullable=False, default=0)
    bounce = Column(Boolean, nullable=False, default=False)
    last_page_view_id = Column(Integer, nullable=True)
    previous_session_id = Column(String(64), nullable=True)
    next_session_id = Column(String(64), nullable=True)

    __table_args__ = (
        Index("idx_user_sessions_user_id", "user_id"),
        Index("idx_user_sessions_last_active_at", "last_active_at"),
    )

    def __repr__(self):
        return (
            f"<AnalyticsSession(id={self.id!r}, page_views={self.page_views}, "
            f"events_count={self.events_count}, ended_at={self.ended_at})>"
        )


class PageView(Base):
    """A single page load inside a session. Immutable apart from ``exit_page``."""

    __tablename__ = "page_views"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), nullable=False)
    user_id = Column(String(255), nullable=True)
    page_path = Column(String(2048), nullable=False)
    page_title = Column(String(512), nullable=True)
    referrer = Column(String(2048), nullable=True)
    time_on_page = Column(Integer, nullable=True)
    scroll_depth = Column(Integer, nullable=True)
    exit_page = Column(Boolean, nullable=False, default=True)
    occurred_at = Column(DateTime, nullable=False)

    __table_args__ = (Index("idx_page_views_session_id", "session_id", "id"),)

    def __repr__(self):
        return f"<PageView(session_id={self.session_id!r}, page_path={self.page_path!r})>"


class AnalyticsEvent(Base):
    """An interaction event (click, copy, like...) inside a session."""

    __tablename__ = "analytics_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), nullable=False)
    user_id = Column(String(255), nullable=True)
    event_type = Column(String(64), nullable=False)
    event_action = Column(String(128), nullable=False)
    event_category = Column(String(128), nullable=True)
    event_label = Column(String(255), nullable=True)
    event_value = Column(Float, nullable=True)
    page_path = Column(String(2048), nullable=True)
    element_id = Column(String(255), nullable=True)
    element_type = Column(String(64), nullable=True)
    non_interaction = Column(Boolean, nullable=False, default=False)
    properties = Column(JSON, nullable=True)
    occurred_at = Column(DateTime, nullable=False)

    __table_args__ = (Index("idx_analytics_events_session_id", "session_id"),)

    def __repr__(self):
        return (
            f"<AnalyticsEvent(session_id={self.session_id!r}, "
            f"event_type={self.event_type!r}, event_action={self.event_action!r})>"
        )


class ChatTurn(Base):
    """A single chat interaction (message, end of conversation, error)."""

    __tablename__ = "chat_turns"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), nullable=False)
    user_id = Column(String(255), nullable=True)
    conversation_id = Column(String(255), nullable=False)
    action = Column(String(64), nullable=False)
    tokens_used = Column(Integer, nullable=True)
    error_occurred = Column(Boolean, nullable=False, default=False)
    session_duration = Column(Integer, nullable=True)
    occurred_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_chat_turns_conversation", "session_id", "conversation_id"),
    )

    def __repr__(self):
        return (
            f"<ChatTurn(conversation_id={self.conversation_id!r}, "
            f"action={self.action!r})>"
        )


class ChatAnalytics(Base):
    """Per-conversation rollup of chat turns."""

    __tablename__ = "chat_analytics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), nullable=False)
    user_id = Column(String(255), nullable=True)
    conversation_id = Column(String(255), nullable=False)
    selected_article = Column(String(255), nullable=True)
    selected_content_type = Column(String(64), nullable=True)
    message_count = Column(Integer, nullable=False, default=0)
    tokens_used = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    session_duration = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "session_id", "conversation_id", name="uq_chat_analytics_conversation"
        ),
    )

    def __repr__(self):
        return (
            f"<ChatAnalytics(conversation_id={self.conversation_id!r}, "
            f"message_count={self.message_count})>"
        )
