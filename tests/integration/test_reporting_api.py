"""
Integration Tests - Reporting Endpoints
"""
from datetime import date, datetime, timedelta

import pytest

from src.aggregation import ContentDelta, EngagementDelta, KeywordSample
from src.database.models import RawEvent

DAY = date(2025, 3, 1)
PERIOD = {"start_date": "2025-03-01", "end_date": "2025-03-07"}


@pytest.fixture
async def seeded(aggregator):
    """Two days of traffic for tenant 7 on two devices"""
    await aggregator.apply_engagement(EngagementDelta(
        tenant_id=7, metric_date=DAY, device_type="desktop", page_views=3, unique_visitors=2, new_users=2,
    ))
    await aggregator.apply_engagement(EngagementDelta(
        tenant_id=7, metric_date=DAY, device_type="mobile", page_views=1, unique_visitors=1, new_users=1,
    ))
    await aggregator.apply_engagement(EngagementDelta(
        tenant_id=7, metric_date=DAY, device_type="desktop", session_id="S1", session_seconds=100, bounce=0.0,
    ))
    await aggregator.apply_engagement(EngagementDelta(
        tenant_id=7, metric_date=DAY, device_type="mobile", session_id="S2", session_seconds=20, bounce=1.0,
    ))
    await aggregator.apply_engagement(EngagementDelta(
        tenant_id=7, metric_date=DAY + timedelta(days=1), device_type="desktop", page_views=5,
    ))
    # Another tenant never leaks into tenant 7's reports
    await aggregator.apply_engagement(EngagementDelta(tenant_id=8, metric_date=DAY, page_views=50))


class TestTrafficSummary:
    """Tests for GET /api/analytics/reports/summary"""

    async def test_per_day_and_totals(self, client, seeded):
        response = await client.get("/api/analytics/reports/summary", params={"tenant_id": 7, **PERIOD})

        assert response.status_code == 200
        body = response.json()
        assert [day["date"] for day in body["days"]] == ["2025-03-01", "2025-03-02"]

        first = body["days"][0]
        assert first["page_views"] == 4
        assert first["sessions"] == 2
        assert first["bounce_rate"] == pytest.approx(0.5)
        assert first["avg_session_duration"] == pytest.approx(60.0)

        assert body["totals"]["page_views"] == 9
        assert body["totals"]["unique_visitors"] == 3

    async def test_start_after_end_rejected(self, client):
        response = await client.get("/api/analytics/reports/summary", params={
            "tenant_id": 7, "start_date": "2025-03-07", "end_date": "2025-03-01",
        })

        assert response.status_code == 400

    async def test_tenant_required(self, client):
        response = await client.get("/api/analytics/reports/summary", params=PERIOD)

        assert response.status_code == 400

    async def test_device_breakdown(self, client, seeded):
        response = await client.get("/api/analytics/reports/devices", params={"tenant_id": 7, **PERIOD})

        devices = {row["device_type"]: row for row in response.json()}
        assert devices["desktop"]["page_views"] == 8
        assert devices["mobile"]["bounce_rate"] == pytest.approx(1.0)
        assert devices["desktop"]["share"] + devices["mobile"]["share"] == pytest.approx(1.0)


class TestTopContent:
    """Tests for GET /api/analytics/reports/top-content"""

    async def test_ranked_by_ctr(self, client, aggregator):
        for content_id, impressions, clicks in [(1, 10, 1), (2, 4, 3), (3, 0, 0)]:
            await aggregator.apply_content(ContentDelta(
                tenant_id=7, content_type="question", content_id=content_id, score_date=DAY,
                impressions=impressions, clicks=clicks,
            ))

        response = await client.get(
            "/api/analytics/reports/top-content", params={"tenant_id": 7, "metric": "ctr", **PERIOD}
        )

        ranked = response.json()
        assert [item["content_id"] for item in ranked] == [2, 1, 3]
        assert ranked[0]["ctr"] == pytest.approx(0.75)
        assert ranked[2]["ctr"] == 0.0

    async def test_ratio_recomputed_across_days(self, client, aggregator):
        await aggregator.apply_content(ContentDelta(
            tenant_id=7, content_type="answer", content_id=5, score_date=DAY, impressions=1, clicks=1,
        ))
        await aggregator.apply_content(ContentDelta(
            tenant_id=7, content_type="answer", content_id=5, score_date=DAY + timedelta(days=1), impressions=3,
        ))

        response = await client.get("/api/analytics/reports/top-content", params={"tenant_id": 7, **PERIOD})

        item = response.json()[0]
        assert item["impressions"] == 4
        assert item["ctr"] == pytest.approx(0.25)

    async def test_unknown_metric_rejected(self, client):
        response = await client.get(
            "/api/analytics/reports/top-content", params={"tenant_id": 7, "metric": "bogus"}
        )

        assert response.status_code == 400


class TestFunnelReport:
    """Tests for GET /api/analytics/reports/funnels/{id}"""

    async def test_visit_signup_without_purchase(self, client, aggregator, signup_funnel):
        started = datetime(2025, 3, 1, 9, 0)
        for action in ("Visit", "SignUp"):
            await aggregator.apply_interaction(RawEvent(
                tenant_id=7, event_type="click", action=action, session_id="S1", occurred_at=started,
            ))

        response = await client.get(
            f"/api/analytics/reports/funnels/{signup_funnel.id}", params={"tenant_id": 7, **PERIOD}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["steps"] == ["Visit", "SignUp", "Purchase"]
        day = body["days"][0]
        assert day["entrances"] == 1
        assert day["completions"] == 0
        assert day["drop_offs"] == 1
        assert day["step_conversions"] == [1, 1, 0]
        assert day["step_drop_offs"] == [0, 1]
        assert day["conversion_rate"] == 0.0

    async def test_other_tenant_gets_404(self, client, signup_funnel):
        response = await client.get(
            f"/api/analytics/reports/funnels/{signup_funnel.id}", params={"tenant_id": 8, **PERIOD}
        )

        assert response.status_code == 404


class TestKeywordReport:
    """Tests for GET /api/analytics/reports/keywords/{id}"""

    async def test_history(self, client, aggregator, tracked_keyword):
        await aggregator.apply_keyword_sample(KeywordSample(7, tracked_keyword.id, DAY, 12))
        await aggregator.apply_keyword_sample(KeywordSample(7, tracked_keyword.id, DAY + timedelta(days=1), 9))

        response = await client.get(
            f"/api/analytics/reports/keywords/{tracked_keyword.id}", params={"tenant_id": 7, **PERIOD}
        )

        body = response.json()
        assert body["keyword"] == "forum software"
        assert [(s["position"], s["change"]) for s in body["samples"]] == [(12, None), (9, 3)]


class TestExport:
    """Tests for GET /api/analytics/reports/export"""

    async def test_csv(self, client, seeded):
        response = await client.get("/api/analytics/reports/export", params={"tenant_id": 7, **PERIOD})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        lines = response.text.strip().splitlines()
        assert lines[0].startswith("date,page_views")
        assert len(lines) == 3

    async def test_json(self, client, seeded):
        response = await client.get(
            "/api/analytics/reports/export", params={"tenant_id": 7, "format": "json", **PERIOD}
        )

        assert response.status_code == 200
        assert "attachment" in response.headers["content-disposition"]
        assert "page_views" in response.text


class TestLocations:
    """Tests for GET /api/analytics/reports/locations"""

    async def test_traffic_by_location(self, client, aggregator):
        for location, page_views in [("DE", 6), ("US", 2), (None, 2)]:
            await aggregator.apply_engagement(EngagementDelta(
                tenant_id=7, metric_date=DAY, device_type="desktop", location=location, page_views=page_views,
            ))

        response = await client.get("/api/analytics/reports/locations", params={"tenant_id": 7, **PERIOD})

        assert response.status_code == 200
        rows = response.json()
        assert [(row["location"], row["page_views"]) for row in rows] == [("DE", 6), ("US", 2), ("unknown", 2)]
        assert rows[0]["share"] == pytest.approx(0.6)

    async def test_empty_period(self, client):
        response = await client.get("/api/analytics/reports/locations", params={"tenant_id": 7, **PERIOD})

        assert response.json() == []


class TestReferrers:
    """Tests for GET /api/analytics/reports/referrers"""

    async def test_ranked_with_share(self, client, aggregator):
        referrers = ["https://www.google.com/", "https://google.com/?q=x", "https://t.co/abc", None, "https://google.com/"]
        for n, referrer in enumerate(referrers):
            await aggregator.apply_interaction(RawEvent(
                tenant_id=7, event_type="page_view", session_id=f"S{n}", referrer=referrer,
                occurred_at=datetime(2025, 3, 2, 9, 0),
            ))
        # Outside the period and another tenant
        await aggregator.apply_interaction(RawEvent(
            tenant_id=7, event_type="page_view", session_id="late", referrer="https://t.co/",
            occurred_at=datetime(2025, 4, 1, 9, 0),
        ))
        await aggregator.apply_interaction(RawEvent(
            tenant_id=8, event_type="page_view", session_id="other", referrer="https://t.co/",
            occurred_at=datetime(2025, 3, 2, 9, 0),
        ))

        response = await client.get("/api/analytics/reports/referrers", params={"tenant_id": 7, **PERIOD})

        assert response.status_code == 200
        assert response.json() == [
            {"source": "google.com", "visits": 3, "share": 0.75},
            {"source": "t.co", "visits": 1, "share": 0.25},
        ]

    async def test_limit(self, client, aggregator):
        for n, host in enumerate(["a.example", "b.example", "b.example"]):
            await aggregator.apply_interaction(RawEvent(
                tenant_id=7, event_type="page_view", session_id=f"S{n}", referrer=f"https://{host}/",
                occurred_at=datetime(2025, 3, 2, 9, 0),
            ))

        response = await client.get(
            "/api/analytics/reports/referrers", params={"tenant_id": 7, "limit": 1, **PERIOD}
        )

        assert response.json() == [{"source": "b.example", "visits": 2, "share": pytest.approx(0.6667)}]


class TestEventCounts:
    """Tests for GET /api/analytics/reports/events/counts"""

    async def test_counts_by_type(self, client, ingestion_pipeline):
        day = datetime(2025, 3, 3, 12, 0)
        events = [
            RawEvent(tenant_id=7, event_type="page_view", session_id="S1", occurred_at=day),
            RawEvent(tenant_id=7, event_type="page_view", session_id="S2", occurred_at=day),
            RawEvent(tenant_id=7, event_type="search", label="themes", occurred_at=day),
            RawEvent(tenant_id=7, event_type="search", label="late", occurred_at=datetime(2025, 3, 7, 23, 59)),
            RawEvent(tenant_id=7, event_type="search", label="too late", occurred_at=datetime(2025, 3, 8, 0, 0)),
            RawEvent(tenant_id=8, event_type="search", occurred_at=day),
            EngagementDelta(tenant_id=7, metric_date=day.date(), page_views=1).to_raw_event(),
        ]
        for event in events:
            await ingestion_pipeline.ingest(event)

        response = await client.get("/api/analytics/reports/events/counts", params={"tenant_id": 7, **PERIOD})

        assert response.status_code == 200
        assert response.json() == [
            {"event_type": "page_view", "count": 2},
            {"event_type": "search", "count": 2},
        ]
