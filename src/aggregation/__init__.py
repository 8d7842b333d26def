"""
Aggregation Module

Folds accepted facts into the daily rollup tables.
"""
from .aggregator import RollupAggregator
from .deltas import ContentDelta, EngagementDelta, KeywordSample, SessionSummary
from .funnels import (
    DatabaseFunnelProgressStore,
    FunnelTracker,
    InMemoryFunnelProgressStore,
    RedisFunnelProgressStore,
)
from .replay import replay_raw_events
from .sessions import DatabaseSessionLedger, ReplaySessionLedger
from .sweep import SessionExpirySweeper

__all__ = [
    "RollupAggregator",
    "ContentDelta",
    "EngagementDelta",
    "KeywordSample",
    "SessionSummary",
    "FunnelTracker",
    "DatabaseFunnelProgressStore",
    "InMemoryFunnelProgressStore",
    "RedisFunnelProgressStore",
    "replay_raw_events",
    "DatabaseSessionLedger",
    "ReplaySessionLedger",
    "SessionExpirySweeper",
]
