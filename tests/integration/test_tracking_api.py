"""
Integration Tests - Tracking Endpoints
"""
import asyncio

import pytest
from sqlalchemy import select

from src.core import PersistenceError
from src.database.models import ContentPerformanceScore, KeywordRankingSample
from tests.helpers import count_raw_events, daily_totals


def page_view_payload(session_id: str, event_id: str, **overrides) -> dict:
    payload = {
        "tenantId": 7,
        "eventType": "page_view",
        "timestamp": "2025-03-01T12:00:00Z",
        "sessionId": session_id,
        "eventId": event_id,
        "path": "/forum",
        "deviceType": "desktop",
    }
    payload.update(overrides)
    return payload


def engagement_payload(event_id: str, **overrides) -> dict:
    payload = {
        "tenantId": 7,
        "date": "2025-03-01",
        "pageViews": 1,
        "uniqueVisitors": 1,
        "newUsers": 1,
        "deviceType": "desktop",
        "eventId": event_id,
    }
    payload.update(overrides)
    return payload


class TestTrackEvent:
    """Tests for POST /api/analytics/track-event"""

    async def test_recorded(self, client, test_db):
        response = await client.post("/api/analytics/track-event", json=page_view_payload("S1", "e1"))

        assert response.status_code == 201
        assert response.json() == {"success": True, "status": "recorded"}
        assert await count_raw_events(test_db, event_type="page_view", tenant_id=7) == 1

    async def test_missing_event_type_is_rejected_and_not_stored(self, client, test_db):
        payload = page_view_payload("S1", "e1")
        del payload["eventType"]

        response = await client.post("/api/analytics/track-event", json=payload)

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["errors"]
        assert await count_raw_events(test_db) == 0
        assert (await daily_totals(test_db, 7))["page_views"] == 0

    async def test_reserved_event_type_rejected(self, client, test_db):
        response = await client.post(
            "/api/analytics/track-event", json=page_view_payload("S1", "e1", eventType="engagement")
        )

        assert response.status_code == 400
        assert await count_raw_events(test_db) == 0

    @pytest.mark.parametrize("timestamp", [1740830400, "1740830400"])
    async def test_numeric_timestamp_rejected(self, client, test_db, timestamp):
        response = await client.post(
            "/api/analytics/track-event", json=page_view_payload("S1", "e1", timestamp=timestamp)
        )

        assert response.status_code == 400
        assert await count_raw_events(test_db) == 0

    async def test_duplicate_event_id(self, client, test_db):
        payload = {
            "tenantId": 7,
            "eventType": "content_view",
            "timestamp": "2025-03-01T12:00:00Z",
            "sessionId": "S1",
            "eventId": "dup-1",
        }

        first = await client.post("/api/analytics/track-event", json=payload)
        second = await client.post("/api/analytics/track-event", json=payload)

        assert first.json()["status"] == "recorded"
        assert second.status_code == 201
        assert second.json()["status"] == "duplicate"
        assert await count_raw_events(test_db) == 1
        assert (await daily_totals(test_db, 7))["content_views"] == 1

    async def test_device_from_user_agent_header(self, client, test_db):
        payload = page_view_payload("S1", "e1")
        del payload["deviceType"]

        await client.post(
            "/api/analytics/track-event",
            json=payload,
            headers={"User-Agent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148"},
        )

        assert await count_raw_events(test_db, device_type="mobile") == 1

    async def test_storage_failure_goes_to_outbox(self, client, ingestion_pipeline, monkeypatch, test_db):
        async def failing_persist(event):
            raise PersistenceError("database unavailable")

        monkeypatch.setattr(ingestion_pipeline, "persist", failing_persist)

        response = await client.post("/api/analytics/track-event", json=page_view_payload("S1", "e1"))

        assert response.status_code == 201
        assert response.json()["status"] == "queued"
        assert ingestion_pipeline.outbox.depth == 1

    async def test_outbox_redelivery(self, ingestion_pipeline, test_db):
        from src.ingestion.normalize import normalize_event
        from src.ingestion.schemas import TrackEventRequest

        event = normalize_event(TrackEventRequest.model_validate(page_view_payload("S1", "e1")))
        ingestion_pipeline.outbox.put(event)

        assert await ingestion_pipeline.outbox.flush(ingestion_pipeline.redeliver) == 1
        assert await count_raw_events(test_db) == 1


class TestTrackEngagement:
    """Tests for POST /api/analytics/track-user-engagement"""

    async def test_two_concurrent_sessions(self, client, test_db):
        responses = await asyncio.gather(
            client.post("/api/analytics/track-user-engagement", json=engagement_payload("a1", sessionId="S1")),
            client.post("/api/analytics/track-user-engagement", json=engagement_payload("b1", sessionId="S2")),
        )

        assert [r.status_code for r in responses] == [201, 201]
        totals = await daily_totals(test_db, 7)
        assert totals["page_views"] == 2
        assert totals["unique_visitors"] == 2
        assert await count_raw_events(test_db, event_type="engagement") == 2

    async def test_session_end_delta(self, client, test_db):
        await client.post("/api/analytics/track-user-engagement", json=engagement_payload(
            "e2", pageViews=0, uniqueVisitors=0, newUsers=0,
            sessionId="S1", avgSessionDuration=42, bounceRate=1,
        ))

        totals = await daily_totals(test_db, 7)
        assert totals["sessions"] == 1
        assert totals["bounce_sessions"] == 1
        assert totals["total_session_seconds"] == 42

    async def test_negative_counter_rejected(self, client, test_db):
        response = await client.post(
            "/api/analytics/track-user-engagement", json=engagement_payload("e1", pageViews=-1)
        )

        assert response.status_code == 400
        assert await count_raw_events(test_db) == 0


class TestTrackContentPerformance:
    """Tests for POST /api/analytics/track-content-performance"""

    async def test_impression_and_click(self, client, test_db):
        base = {"tenantId": 7, "contentType": "question", "contentId": 42, "scoreDate": "2025-03-01"}

        await client.post("/api/analytics/track-content-performance", json={**base, "impressions": 1, "eventId": "c1"})
        await client.post("/api/analytics/track-content-performance", json={**base, "clicks": 1, "eventId": "c2"})

        row = (await test_db.execute(select(ContentPerformanceScore))).scalar_one()
        assert (row.impressions, row.clicks, row.ctr) == (1, 1, 1.0)

    async def test_missing_content_id_rejected(self, client):
        response = await client.post(
            "/api/analytics/track-content-performance",
            json={"tenantId": 7, "contentType": "question", "scoreDate": "2025-03-01"},
        )

        assert response.status_code == 400


class TestKeywordRankings:
    """Tests for POST /api/analytics/keyword-rankings"""

    async def test_sample_recorded(self, client, tracked_keyword, test_db):
        response = await client.post("/api/analytics/keyword-rankings", json={
            "tenantId": 7, "keywordId": tracked_keyword.id, "date": "2025-03-01", "position": 5,
        })

        assert response.status_code == 201
        sample = (await test_db.execute(select(KeywordRankingSample))).scalar_one()
        assert sample.position == 5

    async def test_keyword_of_other_tenant_rejected(self, client, tracked_keyword, test_db):
        response = await client.post("/api/analytics/keyword-rankings", json={
            "tenantId": 8, "keywordId": tracked_keyword.id, "date": "2025-03-01", "position": 5,
        })

        assert response.status_code == 400
        assert await count_raw_events(test_db) == 0


async def test_health(client):
    response = await client.get("/api/v1/health")

    assert response.status_code == 200
    body = response.json()
    assert body["checks"]["database"]["status"] == "healthy"
    assert body["checks"]["redis"]["status"] == "disabled"


async def test_metrics_exposed(client):
    await client.post("/api/analytics/track-event", json={"tenantId": 7})

    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "analytics_events_rejected_total" in response.text
