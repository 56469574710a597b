"""Quota ledger for AI generation usage.

Authenticated users get a monthly window (limit / used / reset_at on their
quota row). Anonymous visitors get a fixed lifetime cap keyed by session id.
Both go through ``check_and_consume``, which charges a cost atomically:
the account row is locked for the whole read-roll-check-increment sequence
and the increment itself is a conditional ``UPDATE ... WHERE used + cost <=
limit``, so two concurrent callers can never both pass on the last unit.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from metering.config import settings
from metering.models import AnonymousUsage, UserQuota
from metering.schemas import ConsumeResult, QuotaStatus
from metering.services.clock import SystemClock, start_of_next_period
from metering.services.errors import (
    IdentityInvalidError,
    QuotaExceededError,
    storage_errors,
)
from metering.services.identity import AnonymousVisitor, AuthenticatedUser

logger = logging.getLogger(__name__)

ANONYMOUS_TIER = "anonymous"
MAX_KEY_LENGTH = 255


def _validate_cost(cost) -> None:
    if isinstance(cost, bool) or not isinstance(cost, int) or cost <= 0:
        raise ValueError(f"cost must be a positive integer, got {cost!r}")


def _validate_identity(identity) -> None:
    if isinstance(identity, AuthenticatedUser):
        key = identity.user_id
    elif isinstance(identity, AnonymousVisitor):
        key = identity.session_id
    else:
        logger.error("Rejected malformed identity: %r", identity)
        raise IdentityInvalidError(f"Unsupported identity type: {type(identity).__name__}")

    if not isinstance(key, str) or not key.strip() or len(key) > MAX_KEY_LENGTH:
        logger.error("Rejected malformed identity: %r", identity)
        raise IdentityInvalidError(f"Malformed identity key: {key!r}")


class QuotaLedger:
    """Atomic check-and-consume over authenticated and anonymous quota rows."""

    def __init__(
        self,
        clock=None,
        reset_policy: Optional[str] = None,
        anonymous_limit: Optional[int] = None,
    ):
        self.clock = clock or SystemClock()
        self.reset_policy = reset_policy or settings.QUOTA_RESET_POLICY
        self.anonymous_limit = (
            settings.ANONYMOUS_GENERATION_LIMIT if anonymous_limit is None else anonymous_limit
        )

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def check_and_consume(self, db: Session, identity, cost: int = 1) -> ConsumeResult:
        """Charge ``cost`` units against the identity's quota.

        Args:
            db: Database session.
            identity: AuthenticatedUser or AnonymousVisitor.
            cost: Positive number of units, charged all-or-nothing.

        Returns:
            ConsumeResult with the remaining quota after the charge.

        Raises:
            QuotaExceededError: The charge does not fit. Nothing was mutated.
            IdentityInvalidError: The identity is malformed.
            StorageUnavailableError: The database failed. Nothing was charged.
            ValueError: ``cost`` is not a positive integer.
        """
        _validate_cost(cost)
        _validate_identity(identity)
        now = self.clock.now()

        with storage_errors(db, "quota consume"):
            if isinstance(identity, AuthenticatedUser):
                return self._consume_authenticated(db, identity.user_id, cost, now)
            return self._consume_anonymous(db, identity, cost, now)

    def _lock_user_account(self, db: Session, user_id: str, now: datetime):
        """Load the user's quota row under lock, creating it on first use."""
        query = (
            select(
                UserQuota.created_at,
                UserQuota.reset_at,
                UserQuota.subscription_tier,
            )
            .where(UserQuota.user_id == user_id)
            .with_for_update()
        )
        account = db.execute(query).first()
        if account is not None:
            return account

        try:
            with db.begin_nested():
                db.add(
                    UserQuota(
                        user_id=user_id,
                        subscription_tier="free",
                        monthly_limit=settings.tier_limit("free"),
                        used=0,
                        reset_at=None,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            # Created concurrently; the locked select below waits for it.
            logger.debug("Quota row for %s created concurrently", user_id)
        return db.execute(query).one()

    def _roll(
        self,
        db: Session,
        user_id: str,
        anchor: datetime,
        now: datetime,
        include_unstarted: bool,
    ) -> bool:
        """Roll the window if it has expired. Returns True if this call rolled it.

        The WHERE clause re-checks the boundary, so a roll that raced with
        another one matches no row and is a no-op.
        """
        due = UserQuota.reset_at <= now
        if include_unstarted:
            due = or_(UserQuota.reset_at.is_(None), due)
        result = db.execute(
            update(UserQuota)
            .where(UserQuota.user_id == user_id, due)
            .values(
                used=0,
                reset_at=start_of_next_period(now, self.reset_policy, anchor),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _consume_authenticated(
        self, db: Session, user_id: str, cost: int, now: datetime
    ) -> ConsumeResult:
        account = self._lock_user_account(db, user_id, now)
        if account.reset_at is None or now >= account.reset_at:
            if self._roll(db, user_id, account.created_at, now, include_unstarted=True):
                logger.info("Opened new quota window for user %s", user_id)

        row = db.execute(
            update(UserQuota)
            .where(
                UserQuota.user_id == user_id,
                UserQuota.used + cost <= UserQuota.monthly_limit,
            )
            .values(used=UserQuota.used + cost, updated_at=now)
            .returning(
                UserQuota.used,
                UserQuota.monthly_limit,
                UserQuota.reset_at,
                UserQuota.subscription_tier,
            )
            .execution_options(synchronize_session=False)
        ).first()

        if row is None:
            current = db.execute(
                select(
                    UserQuota.used,
                    UserQuota.monthly_limit,
                    UserQuota.reset_at,
                    UserQuota.subscription_tier,
                ).where(UserQuota.user_id == user_id)
            ).one()
            db.rollback()
            logger.info(
                "Quota exceeded for user %s: used=%d limit=%d cost=%d",
                user_id,
                current.used,
                current.monthly_limit,
                cost,
            )
            raise QuotaExceededError(
                limit=current.monthly_limit,
                used=current.used,
                reset_at=current.reset_at,
                tier=current.subscription_tier,
            )

        db.commit()
        return ConsumeResult(
            identity_kind="authenticated",
            tier=row.subscription_tier,
            limit=row.monthly_limit,
            used=row.used,
            remaining=row.monthly_limit - row.used,
            reset_at=row.reset_at,
            cost=cost,
        )

    def _ensure_anonymous_account(
        self, db: Session, visitor: AnonymousVisitor, now: datetime
    ) -> None:
        exists = db.execute(
            select(AnonymousUsage.id).where(AnonymousUsage.session_id == visitor.session_id)
        ).first()
        if exists is not None:
            return
        try:
            with db.begin_nested():
                db.add(
                    AnonymousUsage(
                        session_id=visitor.session_id,
                        ip_address=visitor.ip_address,
                        used=0,
                        created_at=now,
                        last_used_at=now,
                    )
                )
        except IntegrityError:
            logger.debug("Anonymous ledger for %s created concurrently", visitor.session_id)

    def _consume_anonymous(
        self, db: Session, visitor: AnonymousVisitor, cost: int, now: datetime
    ) -> ConsumeResult:
        self._ensure_anonymous_account(db, visitor, now)

        values = {"used": AnonymousUsage.used + cost, "last_used_at": now}
        if visitor.ip_address:
            values["ip_address"] = visitor.ip_address
        row = db.execute(
            update(AnonymousUsage)
            .where(
                AnonymousUsage.session_id == visitor.session_id,
                AnonymousUsage.used + cost <= self.anonymous_limit,
            )
            .values(**values)
            .returning(AnonymousUsage.used)
            .execution_options(synchronize_session=False)
        ).first()

        if row is None:
            used = db.execute(
                select(AnonymousUsage.used).where(
                    AnonymousUsage.session_id == visitor.session_id
                )
            ).scalar_one()
            db.rollback()
            logger.info(
                "Anonymous quota exceeded for session %s: used=%d limit=%d",
                visitor.session_id,
                used,
                self.anonymous_limit,
            )
            raise QuotaExceededError(
                limit=self.anonymous_limit, used=used, reset_at=None, tier=ANONYMOUS_TIER
            )

        if visitor.ip_address:
            self._flag_ip_abuse(db, visitor.ip_address)
        db.commit()
        return ConsumeResult(
            identity_kind="anonymous",
            tier=ANONYMOUS_TIER,
            limit=self.anonymous_limit,
            used=row.used,
            remaining=self.anonymous_limit - row.used,
            reset_at=None,
            cost=cost,
        )

    def _flag_ip_abuse(self, db: Session, ip_address: str) -> None:
        total = self.anonymous_usage_for_ip(db, ip_address)
        if total > settings.ANONYMOUS_IP_ALERT_THRESHOLD:
            logger.warning(
                "Anonymous generations from %s reached %d across sessions",
                ip_address,
                total,
            )

    # ------------------------------------------------------------------
    # Compensation and administration
    # ------------------------------------------------------------------

    def refund(self, db: Session, identity, cost: int = 1) -> QuotaStatus:
        """Give back ``cost`` units. Never goes below zero.

        Consumption is not refunded automatically when a request is
        cancelled; this is the explicit compensating call.
        """
        _validate_cost(cost)
        _validate_identity(identity)
        now = self.clock.now()

        with storage_errors(db, "quota refund"):
            if isinstance(identity, AuthenticatedUser):
                model, key = UserQuota, UserQuota.user_id == identity.user_id
                values = {"updated_at": now}
            else:
                model, key = AnonymousUsage, AnonymousUsage.session_id == identity.session_id
                values = {}
            db.execute(
                update(model)
                .where(key)
                .values(used=case((model.used > cost, model.used - cost), else_=0), **values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        logger.info("Refunded %d unit(s) to %r", cost, identity)
        return self.get_quota_status(db, identity)

    def roll_window(
        self,
        db: Session,
        user_id: str,
        now: Optional[datetime] = None,
        include_unstarted: bool = False,
    ) -> bool:
        """Roll one user's window if it is due. Same roll-or-noop as consume.

        Returns:
            True if this call rolled the window.
        """
        now = now or self.clock.now()
        with storage_errors(db, "quota window roll"):
            account = db.execute(
                select(UserQuota.created_at, UserQuota.reset_at)
                .where(UserQuota.user_id == user_id)
                .with_for_update()
            ).first()
            if account is None:
                db.rollback()
                return False
            rolled = self._roll(db, user_id, account.created_at, now, include_unstarted)
            db.commit()
        return rolled

    def expired_window_user_ids(self, db: Session, now: Optional[datetime] = None) -> List[str]:
        """Users whose window has passed its reset boundary."""
        now = now or self.clock.now()
        with storage_errors(db, "expired window scan"):
            rows = db.execute(
                select(UserQuota.user_id).where(UserQuota.reset_at <= now)
            ).scalars().all()
            db.commit()
        return list(rows)

    def set_subscription_tier(
        self,
        db: Session,
        user_id: str,
        tier: str,
        monthly_limit: Optional[int] = None,
    ) -> QuotaStatus:
        """Move a user to ``tier``, with the tier's limit unless overridden."""
        identity = AuthenticatedUser(user_id=user_id)
        _validate_identity(identity)
        limit = settings.tier_limit(tier) if monthly_limit is None else monthly_limit
        if limit < 0:
            raise ValueError("monthly_limit must not be negative")
        now = self.clock.now()

        with storage_errors(db, "tier update"):
            self._lock_user_account(db, user_id, now)
            db.execute(
                update(UserQuota)
                .where(UserQuota.user_id == user_id)
                .values(subscription_tier=tier, monthly_limit=limit, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        logger.info("User %s moved to tier %s (limit=%d)", user_id, tier, limit)
        return self.get_quota_status(db, identity)

    def prune_anonymous_usage(
        self,
        db: Session,
        now: Optional[datetime] = None,
        retention_days: Optional[int] = None,
    ) -> int:
        """Delete anonymous ledgers inactive for longer than the retention period."""
        now = now or self.clock.now()
        days = settings.ANONYMOUS_RETENTION_DAYS if retention_days is None else retention_days
        cutoff = now - timedelta(days=days)
        with storage_errors(db, "anonymous ledger pruning"):
            result = db.execute(
                delete(AnonymousUsage)
                .where(AnonymousUsage.last_used_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    def anonymous_usage_for_ip(self, db: Session, ip_address: str) -> int:
        """Total anonymous generations recorded from one IP, across sessions."""
        total = db.execute(
            select(func.coalesce(func.sum(AnonymousUsage.used), 0)).where(
                AnonymousUsage.ip_address == ip_address
            )
        ).scalar()
        return int(total or 0)

    def get_quota_status(self, db: Session, identity) -> QuotaStatus:
        """Current quota for an identity, without mutating anything.

        A window that has expired or not started yet is reported as it will
        look after the next consume rolls it: nothing used, resetting at the
        start of the following period.
        """
        _validate_identity(identity)
        now = self.clock.now()

        with storage_errors(db, "quota status"):
            if isinstance(identity, AnonymousVisitor):
                used = db.execute(
                    select(AnonymousUsage.used).where(
                        AnonymousUsage.session_id == identity.session_id
                    )
                ).scalar()
                db.commit()
                used = used or 0
                return QuotaStatus(
                    identity_kind="anonymous",
                    tier=ANONYMOUS_TIER,
                    limit=self.anonymous_limit,
                    used=used,
                    remaining=max(0, self.anonymous_limit - used),
                    reset_at=None,
                )

            account = db.execute(
                select(
                    UserQuota.used,
                    UserQuota.monthly_limit,
                    UserQuota.reset_at,
                    UserQuota.subscription_tier,
                    UserQuota.created_at,
                ).where(UserQuota.user_id == identity.user_id)
            ).first()
            db.commit()

        if account is None:
            limit = settings.tier_limit("free")
            return QuotaStatus(
                identity_kind="authenticated",
                tier="free",
                limit=limit,
                used=0,
                remaining=limit,
                reset_at=start_of_next_period(now, self.reset_policy, now),
            )

        used, reset_at = account.used, account.reset_at
        if reset_at is None or now >= reset_at:
            used = 0
            reset_at = start_of_next_period(now, self.reset_policy, account.created_at)
        return QuotaStatus(
            identity_kind="authenticated",
            tier=account.subscription_tier,
            limit=account.monthly_limit,
            used=used,
            remaining=max(0, account.monthly_limit - used),
            reset_at=reset_at,
        )
