"""
Unit Tests - Derived Fields
"""
import random

import pytest

from src.aggregation.derived import (
    bounded_ratio,
    content_performance_derived,
    daily_metric_derived,
    funnel_daily_derived,
    funnel_drop_offs,
    keyword_sample_derived,
    safe_ratio,
    step_drop_offs,
)


class TestRatios:
    """Tests for the ratio helpers"""

    def test_zero_denominator_is_zero(self):
        assert safe_ratio(5, 0) == 0.0
        assert safe_ratio(5, None) == 0.0
        assert bounded_ratio(3, 0) == 0.0

    def test_bounded_ratio_clamps(self):
        """Counters that raced past their denominator still report at most 1"""
        assert bounded_ratio(7, 5) == 1.0
        assert bounded_ratio(-1, 5) == 0.0
        assert bounded_ratio(1, 4) == pytest.approx(0.25)


class TestDailyMetricDerived:
    """Tests for DailyMetric derived fields"""

    def test_no_sessions(self):
        derived = daily_metric_derived({"page_views": 10, "sessions": 0})

        assert derived == {"bounce_rate": 0.0, "avg_session_duration": 0.0}

    def test_bounce_and_duration(self):
        derived = daily_metric_derived({
            "sessions": 4,
            "bounce_sessions": 1,
            "total_session_seconds": 200,
        })

        assert derived["bounce_rate"] == pytest.approx(0.25)
        assert derived["avg_session_duration"] == pytest.approx(50.0)

    def test_single_bouncing_session(self):
        derived = daily_metric_derived({"sessions": 1, "bounce_sessions": 1, "total_session_seconds": 42})

        assert derived["bounce_rate"] == 1.0
        assert derived["avg_session_duration"] == 42.0


class TestContentPerformanceDerived:
    """Tests for ContentPerformanceScore derived fields"""

    def test_ctr(self):
        derived = content_performance_derived({"impressions": 1, "clicks": 1})

        assert derived["ctr"] == 1.0
        assert derived["engagement_rate"] == 1.0
        assert derived["conversion_rate"] == 0.0

    def test_zero_impressions(self):
        derived = content_performance_derived({"impressions": 0, "clicks": 3, "social_shares": 2})

        assert all(value == 0.0 for value in derived.values())

    def test_ratios_bounded(self):
        derived = content_performance_derived({
            "impressions": 2,
            "clicks": 3,
            "social_shares": 4,
            "conversion_count": 5,
            "total_time_on_content": 90,
        })

        assert derived["ctr"] == 1.0
        assert derived["engagement_rate"] == 1.0
        assert derived["conversion_rate"] == 1.0
        assert derived["avg_time_on_content"] == pytest.approx(45.0)


class TestFunnelDerived:
    """Tests for funnel derived fields and drop-offs"""

    def test_conversion_rate_and_time(self):
        derived = funnel_daily_derived({"entrances": 4, "completions": 1, "total_seconds_to_conversion": 120})

        assert derived["conversion_rate"] == pytest.approx(0.25)
        assert derived["avg_time_to_conversion"] == pytest.approx(120.0)

    def test_no_entrances(self):
        assert funnel_daily_derived({})["conversion_rate"] == 0.0

    def test_drop_offs(self):
        assert funnel_drop_offs(1, 0) == 1
        assert funnel_drop_offs(0, 0) == 0
        assert step_drop_offs([1, 1, 0]) == [0, 1]
        assert step_drop_offs([]) == []


def test_keyword_ctr():
    assert keyword_sample_derived({"clicks": 2, "impressions": 8})["ctr"] == pytest.approx(0.25)
    assert keyword_sample_derived({"clicks": 2, "impressions": 0})["ctr"] == 0.0


RATIO_FIELDS = {
    daily_metric_derived: (["sessions", "bounce_sessions", "total_session_seconds"], ["bounce_rate"]),
    content_performance_derived: (
        ["impressions", "clicks", "social_shares", "comment_count", "conversion_count", "total_time_on_content"],
        ["ctr", "engagement_rate", "conversion_rate"],
    ),
    funnel_daily_derived: (["entrances", "completions", "total_seconds_to_conversion"], ["conversion_rate"]),
    keyword_sample_derived: (["clicks", "impressions"], ["ctr"]),
}


def random_counter(rng: random.Random):
    """Mostly small counts, with zeros, missing values and the odd negative"""
    return rng.choice([0, None, -1, rng.randint(0, 5), rng.randint(0, 10_000), rng.uniform(0, 50)])


@pytest.mark.parametrize("derive", list(RATIO_FIELDS), ids=lambda fn: fn.__name__)
def test_generated_counters_keep_ratios_in_unit_interval(derive):
    rng = random.Random(derive.__name__)
    counter_names, ratio_names = RATIO_FIELDS[derive]

    for _ in range(2000):
        counters = {name: random_counter(rng) for name in counter_names if rng.random() > 0.1}
        derived = derive(counters)

        for name in ratio_names:
            assert 0.0 <= derived[name] <= 1.0, (name, counters)
        assert all(value >= 0.0 for value in derived.values()), counters


def test_generated_step_counts_give_non_negative_drop_offs():
    rng = random.Random(7)
    for _ in range(500):
        steps = sorted((rng.randint(0, 50) for _ in range(rng.randint(0, 6))), reverse=True)
        entrances = steps[0] if steps else 0
        completions = steps[-1] if steps else 0

        assert all(drop >= 0 for drop in step_drop_offs(steps))
        assert sum(step_drop_offs(steps)) == funnel_drop_offs(entrances, completions)
