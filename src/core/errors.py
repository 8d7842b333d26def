"""
Error Taxonomy

Every failure the engine distinguishes derives from AnalyticsError:

- ValidationError: malformed or incomplete envelope, rejected at the
  ingestion boundary and never persisted.
- TransientWriteConflict: a concurrent increment lost a lock or
  serialization race; retried internally.
- PersistenceError: storage unavailable or a write failed for a
  non-transient reason.
- ClientTransportError: the capture client could not deliver an envelope.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError


class AnalyticsError(Exception):
    """Base class for analytics engine errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(AnalyticsError):
    """Envelope failed validation; the caller should not retry"""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, {"errors": errors or []})
        self.errors = errors or []


class TransientWriteConflict(AnalyticsError):
    """Concurrent writers raced on the same aggregate row"""


class PersistenceError(AnalyticsError):
    """Storage layer unavailable or write rejected"""


class ClientTransportError(AnalyticsError):
    """Capture client failed to deliver an envelope"""


# PostgreSQL: serialization_failure, deadlock_detected, lock_not_available
_TRANSIENT_PG_CODES = {"40001", "40P01", "55P03"}
_TRANSIENT_SQLITE_MESSAGES = ("database is locked", "database table is locked")


def _pg_code(exc: DBAPIError) -> Optional[str]:
    orig = exc.orig
    for attr in ("sqlstate", "pgcode"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)
    return None


def classify_db_error(exc: SQLAlchemyError) -> AnalyticsError:
    """Map a SQLAlchemy error to TransientWriteConflict or PersistenceError."""
    if isinstance(exc, DBAPIError):
        if _pg_code(exc) in _TRANSIENT_PG_CODES:
            return TransientWriteConflict(str(exc.orig), {"code": _pg_code(exc)})
        if isinstance(exc, OperationalError):
            text = str(exc.orig).lower()
            if any(message in text for message in _TRANSIENT_SQLITE_MESSAGES):
                return TransientWriteConflict(str(exc.orig))
    return PersistenceError(str(exc), {"error_type": type(exc).__name__})
