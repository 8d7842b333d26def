"""
Derived Fields

One pure function per rollup kind turning additive counters into ratio
fields. The aggregator calls these after every increment and the reporting
API calls them on summed rows, so a ratio is only ever computed here.

Ratios are bounded to [0, 1] and fall back to 0.0 when the denominator is 0.
"""

from typing import Any, Dict, List, Mapping, Sequence


def safe_ratio(numerator: Any, denominator: Any) -> float:
    den = float(denominator or 0)
    if den <= 0:
        return 0.0
    return float(numerator or 0) / den


def bounded_ratio(numerator: Any, denominator: Any) -> float:
    """safe_ratio clamped to [0, 1]"""
    return min(1.0, max(0.0, safe_ratio(numerator, denominator)))


def daily_metric_derived(counters: Mapping[str, Any]) -> Dict[str, float]:
    sessions = counters.get("sessions") or 0
    return {
        "bounce_rate": bounded_ratio(counters.get("bounce_sessions"), sessions),
        "avg_session_duration": max(0.0, safe_ratio(counters.get("total_session_seconds"), sessions)),
    }


def content_performance_derived(counters: Mapping[str, Any]) -> Dict[str, float]:
    impressions = counters.get("impressions") or 0
    engaged = (
        (counters.get("clicks") or 0)
        + (counters.get("social_shares") or 0)
        + (counters.get("comment_count") or 0)
    )
    return {
        "ctr": bounded_ratio(counters.get("clicks"), impressions),
        "engagement_rate": bounded_ratio(engaged, impressions),
        "conversion_rate": bounded_ratio(counters.get("conversion_count"), impressions),
        "avg_time_on_content": max(0.0, safe_ratio(counters.get("total_time_on_content"), impressions)),
    }


def funnel_daily_derived(counters: Mapping[str, Any]) -> Dict[str, float]:
    return {
        "conversion_rate": bounded_ratio(counters.get("completions"), counters.get("entrances")),
        "avg_time_to_conversion": max(
            0.0, safe_ratio(counters.get("total_seconds_to_conversion"), counters.get("completions"))
        ),
    }


def keyword_sample_derived(counters: Mapping[str, Any]) -> Dict[str, float]:
    return {"ctr": bounded_ratio(counters.get("clicks"), counters.get("impressions"))}


def funnel_drop_offs(entrances: int, completions: int) -> int:
    return max(0, (entrances or 0) - (completions or 0))


def step_drop_offs(step_conversions: Sequence[int]) -> List[int]:
    """Drop-off between each step and the next; the last step has none."""
    return [
        max(0, step_conversions[i] - step_conversions[i + 1])
        for i in range(len(step_conversions) - 1)
    ]
