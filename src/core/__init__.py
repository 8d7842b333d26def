"""
Core Module

Error taxonomy and clock helpers shared by ingestion, aggregation and capture.
"""
from .errors import (
    AnalyticsError,
    ValidationError,
    TransientWriteConflict,
    PersistenceError,
    ClientTransportError,
)
from .time import utc_now, to_utc_naive

__all__ = [
    "AnalyticsError",
    "ValidationError",
    "TransientWriteConflict",
    "PersistenceError",
    "ClientTransportError",
    "utc_now",
    "to_utc_naive",
]
