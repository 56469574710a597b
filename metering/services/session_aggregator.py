"""Session telemetry aggregation.

Telemetry records (page views, analytics events, chat turns) are an
append-only log and the source of truth. Each session row caches rollups of
its log: ``page_views``, ``events_count``, bounce and the exit page pointer,
and chat turns roll up into a per-conversation ChatAnalytics row.

``record`` writes in two steps. The record is committed first; the rollup
update runs in its own transaction with atomic ``col = col + 1`` updates.
If the rollup step fails the request still succeeds: the session is queued
as drift and the reconciliation pass rebuilds its rollups from the log.
"""

import logging
import re
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import case, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from metering.config import settings
from metering.models import (
    AnalyticsEvent,
    AnalyticsSession,
    ChatAnalytics,
    ChatTurn,
    PageView,
)
from metering.schemas import (
    ChatAnalyticsSummary,
    ChatTurnPayload,
    EventPayload,
    PageViewPayload,
    ReconciliationResult,
    SessionSummary,
    TelemetryKind,
)
from metering.services.clock import SystemClock
from metering.services.errors import storage_errors

logger = logging.getLogger(__name__)

PAYLOAD_MODELS = {
    TelemetryKind.PAGE_VIEW: PageViewPayload,
    TelemetryKind.EVENT: EventPayload,
    TelemetryKind.CHAT_TURN: ChatTurnPayload,
}

MESSAGE_SENT = "message_sent"
CONVERSATION_ENDED = "conversation_ended"


@dataclass
class AggregationDrift:
    """A session whose rollups may no longer match its records."""

    session_id: str
    kind: str
    reason: str
    detected_at: datetime


class DriftQueue:
    """Thread-safe set of sessions awaiting reconciliation."""

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Dict[str, AggregationDrift] = {}

    def push(self, drift: AggregationDrift) -> None:
        with self._lock:
            self._pending.setdefault(drift.session_id, drift)

    def drain(self) -> List[AggregationDrift]:
        with self._lock:
            items = list(self._pending.values())
            self._pending.clear()
        return items

    def __contains__(self, session_id) -> bool:
        with self._lock:
            return session_id in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


def detect_device_type(user_agent: Optional[str]) -> str:
    """Classify a user agent as MOBILE, TABLET, DESKTOP or UNKNOWN."""
    if not user_agent:
        return "UNKNOWN"
    ua = user_agent.lower()
    if re.search(r"mobile|android|iphone|ipod", ua):
        return "MOBILE"
    if re.search(r"ipad|tablet", ua):
        return "TABLET"
    if re.search(r"windows|mac|linux", ua):
        return "DESKTOP"
    return "UNKNOWN"


def new_session_id() -> str:
    return uuid.uuid4().hex


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class SessionAggregator:
    """Records telemetry and maintains session rollups."""

    def __init__(self, clock=None, idle_timeout: Optional[timedelta] = None, drift_queue=None):
        self.clock = clock or SystemClock()
        self.idle_timeout = idle_timeout or timedelta(
            minutes=settings.SESSION_IDLE_TIMEOUT_MINUTES
        )
        self.drift_queue = drift_queue if drift_queue is not None else DriftQueue()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(
        self,
        db: Session,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        visitor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> SessionSummary:
        """Open a session. Starting an id that already exists returns it unchanged."""
        session_id = session_id or new_session_id()
        started_at = _as_naive_utc(started_at) if started_at else self.clock.now()

        with storage_errors(db, "session start"):
            self._open(
                db,
                id=session_id,
                user_id=user_id,
                visitor_id=visitor_id,
                ip_address=ip_address,
                user_agent=user_agent,
                device_type=detect_device_type(user_agent),
                started_at=started_at,
            )
        return self.get_session_summary(db, session_id)

    def _open(self, db: Session, **values) -> None:
        """Insert a new session row and commit. An existing row with the same id wins."""
        values.setdefault("last_active_at", values["started_at"])
        try:
            with db.begin_nested():
                db.execute(
                    insert(AnalyticsSession).values(
                        page_views=0,
                        events_count=0,
                        interactions_count=0,
                        bounce=False,
                        **values,
                    )
                )
        except IntegrityError:
            logger.debug("Session %s already exists", values["id"])
        db.commit()

    def end_session(
        self, db: Session, session_id: str, ended_at: Optional[datetime] = None
    ) -> Optional[SessionSummary]:
        """Mark a session ended. ``ended_at`` is only ever set once."""
        ended_at = _as_naive_utc(ended_at) if ended_at else self.clock.now()
        with storage_errors(db, "session end"):
            result = db.execute(
                update(AnalyticsSession)
                .where(
                    AnalyticsSession.id == session_id,
                    AnalyticsSession.ended_at.is_(None),
                )
                .values(ended_at=ended_at)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        if result.rowcount:
            logger.info("Session %s ended at %s", session_id, ended_at)
        return self.get_session_summary(db, session_id)

    def close_idle_sessions(self, db: Session, now: Optional[datetime] = None) -> int:
        """End every open session idle for longer than the timeout.

        Each session is closed at ``last_active_at + timeout``, the same
        boundary ``record`` uses when it rolls over a stale session.
        """
        now = now or self.clock.now()
        closed = 0
        with storage_errors(db, "idle session sweep"):
            stale = db.execute(
                select(AnalyticsSession.id, AnalyticsSession.last_active_at).where(
                    AnalyticsSession.ended_at.is_(None),
                    AnalyticsSession.last_active_at < now - self.idle_timeout,
                )
            ).all()
            for row in stale:
                result = db.execute(
                    update(AnalyticsSession)
                    .where(
                        AnalyticsSession.id == row.id,
                        AnalyticsSession.ended_at.is_(None),
                        AnalyticsSession.last_active_at == row.last_active_at,
                    )
                    .values(ended_at=row.last_active_at + self.idle_timeout)
                    .execution_options(synchronize_session=False)
                )
                closed += result.rowcount
            db.commit()
        if closed:
            logger.info("Closed %d idle session(s)", closed)
        return closed

    def _live_session(self, db: Session, session_id: str, now: datetime, context: dict) -> str:
        """Return the id of the session activity at ``now`` belongs to.

        Unknown ids are opened on the spot from ``context`` (owner, visitor,
        IP and user agent of the request). Ended or idle sessions are never
        written to; the record follows (or creates) their successor.
        """
        current_id = session_id
        while True:
            row = db.execute(
                select(
                    AnalyticsSession.id,
                    AnalyticsSession.user_id,
                    AnalyticsSession.visitor_id,
                    AnalyticsSession.ip_address,
                    AnalyticsSession.user_agent,
                    AnalyticsSession.device_type,
                    AnalyticsSession.last_active_at,
                    AnalyticsSession.ended_at,
                )
                .where(AnalyticsSession.id == current_id)
                .with_for_update()
            ).first()

            if row is None:
                self._open(db, id=current_id, started_at=now, **context)
                continue
            if row.ended_at is None and now - row.last_active_at <= self.idle_timeout:
                return row.id
            current_id = self._successor(db, row, now)

    def _successor(self, db: Session, stale, now: datetime) -> str:
        """Close ``stale`` if still open and return the id of its successor.

        The successor pointer is claimed with a conditional update, so under
        concurrent records exactly one successor is created.
        """
        if stale.ended_at is None:
            db.execute(
                update(AnalyticsSession)
                .where(AnalyticsSession.id == stale.id, AnalyticsSession.ended_at.is_(None))
                .values(ended_at=stale.last_active_at + self.idle_timeout)
                .execution_options(synchronize_session=False)
            )

        successor_id = new_session_id()
        claimed = db.execute(
            update(AnalyticsSession)
            .where(
                AnalyticsSession.id == stale.id,
                AnalyticsSession.next_session_id.is_(None),
            )
            .values(next_session_id=successor_id)
            .execution_options(synchronize_session=False)
        ).rowcount

        if claimed:
            logger.info("Session %s is closed; continuing in %s", stale.id, successor_id)
            self._open(
                db,
                id=successor_id,
                user_id=stale.user_id,
                visitor_id=stale.visitor_id,
                ip_address=stale.ip_address,
                user_agent=stale.user_agent,
                device_type=stale.device_type,
                started_at=now,
                previous_session_id=stale.id,
            )
            return successor_id

        existing = db.execute(
            select(AnalyticsSession.next_session_id).where(AnalyticsSession.id == stale.id)
        ).scalar_one()
        db.commit()
        return existing

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(
        self,
        db: Session,
        session_id: str,
        kind,
        payload,
        occurred_at: Optional[datetime] = None,
        user_id: Optional[str] = None,
        visitor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        active_at: Optional[datetime] = None,
    ) -> str:
        """Append one telemetry record and update the session rollups.

        Session state (idle check, ``last_active_at``, start of a new
        session) follows the server clock. The client's ``occurred_at`` is
        only stored on the record, so a skewed client clock cannot close or
        extend a session.

        Args:
            db: Database session.
            session_id: Session the client believes it is in.
            kind: TelemetryKind (or its string value).
            payload: Dict or payload model for the kind.
            occurred_at: Client timestamp stored on the record. Defaults to
                the activity time.
            user_id: Resolved user id of the caller, None for anonymous
                callers. Stored on the record and on a session opened here.
            visitor_id: Anonymous session cookie of the caller.
            ip_address: Client IP of the caller.
            user_agent: User agent of the caller.
            active_at: When the activity counts as happening for session
                state. Defaults to now; backfills pass the replayed time.

        Returns:
            The id of the session the record was written to. Differs from
            ``session_id`` when that session had ended or gone idle.

        Raises:
            pydantic.ValidationError: The payload is invalid for the kind.
            StorageUnavailableError: The record itself could not be written.
        """
        kind = TelemetryKind(kind)
        model = PAYLOAD_MODELS[kind]
        data = payload if isinstance(payload, model) else model.model_validate(payload)
        now = _as_naive_utc(active_at) if active_at else self.clock.now()
        ts = _as_naive_utc(occurred_at) if occurred_at else now
        context = {
            "user_id": user_id,
            "visitor_id": visitor_id,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "device_type": detect_device_type(user_agent),
        }

        with storage_errors(db, "telemetry write"):
            live_id = self._live_session(db, session_id, now, context)
            record_id = self._append(db, live_id, user_id, kind, data, ts)
            db.commit()

        try:
            self._apply_rollup(db, live_id, kind, data, record_id, ts, now, user_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(
                "Rollup update failed for session %s (%s); queued for reconciliation: %s",
                live_id,
                kind.value,
                e,
            )
            self.drift_queue.push(
                AggregationDrift(
                    session_id=live_id,
                    kind=kind.value,
                    reason=str(e),
                    detected_at=self.clock.now(),
                )
            )
        return live_id

    def _append(
        self,
        db: Session,
        session_id: str,
        user_id: Optional[str],
        kind: TelemetryKind,
        data: BaseModel,
        ts: datetime,
    ) -> int:
        if kind is TelemetryKind.PAGE_VIEW:
            record = PageView(
                session_id=session_id,
                user_id=user_id,
                page_path=data.page_path,
                page_title=data.page_title,
                referrer=data.referrer,
                time_on_page=data.time_on_page,
                scroll_depth=data.scroll_depth,
                exit_page=True,
                occurred_at=ts,
            )
        elif kind is TelemetryKind.EVENT:
            record = AnalyticsEvent(
                session_id=session_id,
                user_id=user_id,
                event_type=data.event_type,
                event_action=data.event_action,
                event_category=data.event_category,
                event_label=data.event_label,
                event_value=data.event_value,
                page_path=data.page_path,
                element_id=data.element_id,
                element_type=data.element_type,
                non_interaction=data.non_interaction,
                properties=data.metadata,
                occurred_at=ts,
            )
        else:
            record = ChatTurn(
                session_id=session_id,
                user_id=user_id,
                conversation_id=data.conversation_id,
                action=data.action,
                tokens_used=data.tokens_used,
                error_occurred=data.error_occurred,
                session_duration=data.session_duration,
                occurred_at=ts,
            )
        db.add(record)
        db.flush()
        return record.id

    def _apply_rollup(
        self,
        db: Session,
        session_id: str,
        kind: TelemetryKind,
        data: BaseModel,
        record_id: int,
        ts: datetime,
        now: datetime,
        user_id: Optional[str],
    ) -> None:
        values = {
            "last_active_at": case(
                (AnalyticsSession.last_active_at < now, now),
                else_=AnalyticsSession.last_active_at,
            )
        }

        if kind is TelemetryKind.PAGE_VIEW:
            pointer = db.execute(
                select(AnalyticsSession.last_page_view_id)
                .where(AnalyticsSession.id == session_id)
                .with_for_update()
            ).scalar()
            if pointer is None or record_id > pointer:
                if pointer is not None:
                    self._clear_exit_page(db, pointer)
                values["last_page_view_id"] = record_id
            else:
                self._clear_exit_page(db, record_id)
            values["page_views"] = AnalyticsSession.page_views + 1
            values["bounce"] = case(
                (
                    (AnalyticsSession.page_views == 0)
                    & (AnalyticsSession.interactions_count == 0),
                    True,
                ),
                else_=False,
            )
        elif kind is TelemetryKind.EVENT:
            values["events_count"] = AnalyticsSession.events_count + 1
            if not data.non_interaction:
                values["interactions_count"] = AnalyticsSession.interactions_count + 1
                values["bounce"] = False
        else:
            self._roll_up_chat_turn(db, session_id, user_id, data, ts)

        db.execute(
            update(AnalyticsSession)
            .where(AnalyticsSession.id == session_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()

    def _clear_exit_page(self, db: Session, page_view_id: int) -> None:
        db.execute(
            update(PageView)
            .where(PageView.id == page_view_id)
            .values(exit_page=False)
            .execution_options(synchronize_session=False)
        )

    def _roll_up_chat_turn(
        self,
        db: Session,
        session_id: str,
        user_id: Optional[str],
        data: ChatTurnPayload,
        ts: datetime,
    ) -> None:
        conversation = (
            ChatAnalytics.session_id == session_id,
            ChatAnalytics.conversation_id == data.conversation_id,
        )
        exists = db.execute(select(ChatAnalytics.id).where(*conversation)).first()
        if exists is None:
            try:
                with db.begin_nested():
                    db.add(
                        ChatAnalytics(
                            session_id=session_id,
                            user_id=user_id,
                            conversation_id=data.conversation_id,
                            selected_article=data.selected_article,
                            selected_content_type=data.selected_content_type,
                            message_count=0,
                            tokens_used=0,
                            error_count=0,
                            started_at=ts,
                        )
                    )
            except IntegrityError:
                logger.debug("Conversation %s opened concurrently", data.conversation_id)

        values = {}
        if data.action == MESSAGE_SENT:
            values["message_count"] = ChatAnalytics.message_count + 1
            if data.tokens_used:
                values["tokens_used"] = ChatAnalytics.tokens_used + data.tokens_used
        elif data.action == CONVERSATION_ENDED:
            values["ended_at"] = func.coalesce(ChatAnalytics.ended_at, ts)
            if data.session_duration is not None:
                values["session_duration"] = data.session_duration
        if data.error_occurred:
            values["error_count"] = ChatAnalytics.error_count + 1
        if values:
            db.execute(
                update(ChatAnalytics)
                .where(*conversation)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_session(self, db: Session, session_id: str) -> Optional[ReconciliationResult]:
        """Rebuild a session's rollups from its records.

        Returns:
            The reconciled figures, or None if the session does not exist.
        """
        with storage_errors(db, "session reconciliation"):
            current = db.execute(
                select(
                    AnalyticsSession.page_views,
                    AnalyticsSession.events_count,
                    AnalyticsSession.interactions_count,
                    AnalyticsSession.bounce,
                    AnalyticsSession.last_page_view_id,
                    AnalyticsSession.last_active_at,
                )
                .where(AnalyticsSession.id == session_id)
                .with_for_update()
            ).first()
            if current is None:
                db.rollback()
                return None

            page_views, latest_page_view, latest_view_at = db.execute(
                select(func.count(PageView.id), func.max(PageView.id), func.max(PageView.occurred_at))
                .where(PageView.session_id == session_id)
            ).one()
            events_count, interactions, latest_event_at = db.execute(
                select(
                    func.count(AnalyticsEvent.id),
                    func.coalesce(
                        func.sum(case((AnalyticsEvent.non_interaction.is_(False), 1), else_=0)),
                        0,
                    ),
                    func.max(AnalyticsEvent.occurred_at),
                ).where(AnalyticsEvent.session_id == session_id)
            ).one()
            latest_turn_at = db.execute(
                select(func.max(ChatTurn.occurred_at)).where(ChatTurn.session_id == session_id)
            ).scalar()
            interactions = int(interactions)
            bounce = page_views == 1 and interactions == 0

            corrected = (
                current.page_views,
                current.events_count,
                current.interactions_count,
                bool(current.bounce),
                current.last_page_view_id,
            ) != (page_views, events_count, interactions, bounce, latest_page_view)

            if latest_page_view is not None:
                flipped = db.execute(
                    update(PageView)
                    .where(
                        PageView.session_id == session_id,
                        PageView.id != latest_page_view,
                        PageView.exit_page.is_(True),
                    )
                    .values(exit_page=False)
                    .execution_options(synchronize_session=False)
                ).rowcount
                flipped += db.execute(
                    update(PageView)
                    .where(PageView.id == latest_page_view, PageView.exit_page.is_(False))
                    .values(exit_page=True)
                    .execution_options(synchronize_session=False)
                ).rowcount
                corrected = corrected or flipped > 0

            corrected = self._reconcile_conversations(db, session_id) or corrected

            # Record times are client clocks; never move activity past now.
            now = self.clock.now()
            last_active_at = max(
                [current.last_active_at]
                + [
                    min(t, now)
                    for t in (latest_view_at, latest_event_at, latest_turn_at)
                    if t is not None
                ]
            )
            db.execute(
                update(AnalyticsSession)
                .where(AnalyticsSession.id == session_id)
                .values(
                    page_views=page_views,
                    events_count=events_count,
                    interactions_count=interactions,
                    bounce=bounce,
                    last_page_view_id=latest_page_view,
                    last_active_at=last_active_at,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()

        if corrected:
            logger.warning(
                "Reconciled drifted session %s: page_views %d->%d, events_count %d->%d",
                session_id,
                current.page_views,
                page_views,
                current.events_count,
                events_count,
            )
        return ReconciliationResult(
            session_id=session_id,
            corrected=corrected,
            page_views=page_views,
            events_count=events_count,
            bounce=bounce,
        )

    def _reconcile_conversations(self, db: Session, session_id: str) -> bool:
        """Rebuild ChatAnalytics rows from chat turns. Returns True if anything changed."""
        rows = db.execute(
            select(
                ChatTurn.conversation_id,
                func.min(ChatTurn.occurred_at).label("started_at"),
                func.min(ChatTurn.user_id).label("user_id"),
                func.coalesce(
                    func.sum(case((ChatTurn.action == MESSAGE_SENT, 1), else_=0)), 0
                ).label("message_count"),
                func.coalesce(
                    func.sum(
                        case(
                            (ChatTurn.action == MESSAGE_SENT, func.coalesce(ChatTurn.tokens_used, 0)),
                            else_=0,
                        )
                    ),
                    0,
                ).label("tokens_used"),
                func.coalesce(
                    func.sum(case((ChatTurn.error_occurred.is_(True), 1), else_=0)), 0
                ).label("error_count"),
                func.min(
                    case((ChatTurn.action == CONVERSATION_ENDED, ChatTurn.occurred_at), else_=None)
                ).label("ended_at"),
            )
            .where(ChatTurn.session_id == session_id)
            .group_by(ChatTurn.conversation_id)
        ).all()

        changed = False
        for row in rows:
            aggregate = db.execute(
                select(ChatAnalytics).where(
                    ChatAnalytics.session_id == session_id,
                    ChatAnalytics.conversation_id == row.conversation_id,
                )
            ).scalar_one_or_none()
            if aggregate is None:
                aggregate = ChatAnalytics(
                    session_id=session_id,
                    user_id=row.user_id,
                    conversation_id=row.conversation_id,
                    started_at=row.started_at,
                )
                db.add(aggregate)
                changed = True

            expected = {
                "message_count": int(row.message_count),
                "tokens_used": int(row.tokens_used),
                "error_count": int(row.error_count),
                "ended_at": row.ended_at,
            }
            for field, value in expected.items():
                if getattr(aggregate, field) != value:
                    setattr(aggregate, field, value)
                    changed = True
        db.flush()
        return changed

    def reconcile_pending(self, db: Session) -> List[ReconciliationResult]:
        """Reconcile every session queued as drifted."""
        results = []
        pending = self.drift_queue.drain()
        for index, drift in enumerate(pending):
            try:
                result = self.reconcile_session(db, drift.session_id)
            except Exception:
                for unreconciled in pending[index:]:
                    self.drift_queue.push(unreconciled)
                raise
            if result is not None:
                results.append(result)
        return results

    def reconcile_recent(self, db: Session, since: datetime) -> List[ReconciliationResult]:
        """Reconcile every session active since ``since``."""
        with storage_errors(db, "recent session scan"):
            session_ids = db.execute(
                select(AnalyticsSession.id).where(AnalyticsSession.last_active_at >= since)
            ).scalars().all()
            db.commit()
        results = []
        for session_id in session_ids:
            result = self.reconcile_session(db, session_id)
            if result is not None:
                results.append(result)
        return results

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    def get_session_summary(self, db: Session, session_id: str) -> Optional[SessionSummary]:
        """Session rollups and chat aggregates, without mutating anything."""
        now = self.clock.now()
        with storage_errors(db, "session summary"):
            session = db.execute(
                select(AnalyticsSession)
                .where(AnalyticsSession.id == session_id)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if session is None:
                db.commit()
                return None

            exit_page = None
            if session.last_page_view_id is not None:
                exit_page = db.execute(
                    select(PageView.page_path).where(PageView.id == session.last_page_view_id)
                ).scalar()

            conversations = db.execute(
                select(ChatAnalytics)
                .where(ChatAnalytics.session_id == session_id)
                .order_by(ChatAnalytics.started_at, ChatAnalytics.id)
                .execution_options(populate_existing=True)
            ).scalars().all()

            end = session.ended_at or session.last_active_at
            summary = SessionSummary(
                id=session.id,
                user_id=session.user_id,
                visitor_id=session.visitor_id,
                device_type=session.device_type,
                started_at=session.started_at,
                last_active_at=session.last_active_at,
                ended_at=session.ended_at,
                is_active=(
                    session.ended_at is None
                    and now - session.last_active_at <= self.idle_timeout
                ),
                duration_seconds=max(0, int((end - session.started_at).total_seconds())),
                page_views=session.page_views,
                events_count=session.events_count,
                bounce=bool(session.bounce),
                exit_page=exit_page,
                previous_session_id=session.previous_session_id,
                next_session_id=session.next_session_id,
                conversations=[
                    ChatAnalyticsSummary(
                        conversation_id=c.conversation_id,
                        message_count=c.message_count,
                        tokens_used=c.tokens_used,
                        error_count=c.error_count,
                        started_at=c.started_at,
                        ended_at=c.ended_at,
                        session_duration=c.session_duration,
                    )
                    for c in conversations
                ],
            )
            db.commit()
        return summary
