"""Shared utility functions.

utcnow:           timezone-aware "now" used by every service
as_utc:           normalise datetimes read back from the database
parse_datetime:   lenient request-body datetime parsing (returns None on bad input)
commit_or_raise:  commit the unit of work or roll back and raise PersistenceError
"""
import logging
from datetime import date, datetime, time, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from portal.core.exceptions import PersistenceError
from portal.models import db

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return ``value`` as an aware UTC datetime.

    SQLite hands back naive datetimes even for ``DateTime(timezone=True)``
    columns; every stored timestamp is written in UTC, so naive values are
    tagged rather than converted.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return value


def parse_datetime(value):
    """Parse an ISO date or datetime string to an aware UTC datetime.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (midnight UTC)
    - YYYY-MM-DDTHH:MM:SS[+offset|Z]
    - DD.MM.YYYY
    """
    if not value:
        return None
    if isinstance(value, (datetime, date)):
        return as_utc(value)
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(raw))
    except (ValueError, TypeError):
        pass
    try:
        return as_utc(datetime.strptime(raw, "%d.%m.%Y"))
    except (ValueError, TypeError):
        return None


def commit_or_raise(operation: str) -> None:
    """Commit the current session; on failure roll back and raise PersistenceError.

    IntegrityError is logged at WARNING (constraint races), everything else
    with a traceback.
    """
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error during %s: %s", operation, exc.orig)
        raise PersistenceError(operation, exc) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Database error during %s", operation)
        raise PersistenceError(operation, exc) from exc
