"""Exceptions raised by the metering services."""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class QuotaError(Exception):
    """Base class for quota ledger failures."""


class QuotaExceededError(QuotaError):
    """The requested cost does not fit in the remaining quota.

    An expected business outcome: callers render an upgrade or wait prompt
    from the attached figures.
    """

    def __init__(self, limit: int, used: int, reset_at: Optional[datetime], tier: str):
        self.limit = limit
        self.used = used
        self.reset_at = reset_at
        self.tier = tier
        super().__init__(
            f"Generation limit reached ({used}/{limit}, tier={tier}, reset_at={reset_at})"
        )


class IdentityInvalidError(QuotaError):
    """The identity handed to the ledger is malformed."""


class StorageUnavailableError(QuotaError):
    """The database could not complete the operation. Callers fail closed."""


class IdentityError(Exception):
    """Base class for identity resolution failures."""


class AmbiguousIdentityError(IdentityError):
    """An auth token was presented but could not be validated.

    ``fallback`` holds the anonymous identity the request should proceed
    under, or None when the request carries no session to fall back to.
    """

    def __init__(self, message: str, fallback=None):
        self.fallback = fallback
        super().__init__(message)


class MissingIdentityError(IdentityError):
    """The request carries neither a valid token nor a session id."""


@contextmanager
def storage_errors(db, action: str):
    """Roll back and surface database failures as StorageUnavailableError."""
    try:
        yield
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Storage failure during %s: %s", action, e)
        raise StorageUnavailableError(f"Storage unavailable during {action}") from e
