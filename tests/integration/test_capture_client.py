"""
Integration Tests - Capture Client against the ingestion API
"""
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from src.capture import CaptureClient, HttpTransport, SeenBeforeStore
from src.database.models import ContentPerformanceScore, DailyMetric, RawEvent
from tests.helpers import count_raw_events, daily_totals

CHROME_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36"


@pytest.fixture
def transport(api_client) -> HttpTransport:
    return HttpTransport(client=api_client)


@pytest.fixture
def make_client(transport):
    clients = []

    def factory(**kwargs) -> CaptureClient:
        kwargs.setdefault("tenant_id", 7)
        kwargs.setdefault("seen_before", SeenBeforeStore())
        kwargs.setdefault("user_agent", CHROME_UA)
        capture = CaptureClient(transport=transport, **kwargs)
        clients.append(capture)
        return capture

    yield factory

    for capture in clients:
        capture.stop_heartbeat()


class TestSessionLifecycle:
    """Tests for a complete capture session"""

    async def test_single_page_bounce(self, make_client, transport, test_db):
        capture = make_client()
        capture.initialize("/forum")
        capture.flush_session(now=capture.context.started_at + timedelta(seconds=42))
        await transport.drain()

        totals = await daily_totals(test_db, 7)
        assert totals["page_views"] == 1
        assert totals["sessions"] == 1
        assert totals["bounce_sessions"] == 1
        assert totals["total_session_seconds"] == pytest.approx(42.0)

        row = (await test_db.execute(select(DailyMetric))).scalar_one()
        assert row.device_type == "desktop"
        assert row.bounce_rate == 1.0
        assert row.avg_session_duration == pytest.approx(42.0)
        assert transport.failures == 0

    async def test_flush_runs_once(self, make_client, transport, test_db):
        capture = make_client()
        capture.initialize("/forum")
        capture.flush_session()
        capture.flush_session()
        await capture.close()

        assert await count_raw_events(test_db, event_type="session_end") == 1
        assert (await daily_totals(test_db, 7))["sessions"] == 1

    async def test_multi_page_session_is_not_a_bounce(self, make_client, transport, test_db):
        capture = make_client()
        capture.initialize("/forum")
        capture.record_page_view("/forum/7/question/1")
        await capture.close()

        totals = await daily_totals(test_db, 7)
        assert totals["page_views"] == 2
        assert totals["sessions"] == 1
        assert totals["bounce_sessions"] == 0

    async def test_tenant_resolved_from_path(self, make_client, transport, test_db):
        capture = make_client(tenant_id=None)
        capture.initialize("/forum/12/question/9")
        await capture.close()

        assert capture.tenant_id == 12
        assert (await daily_totals(test_db, 12))["page_views"] == 1

    async def test_returning_visitor(self, make_client, transport, test_db, tmp_path):
        flag = str(tmp_path / "seen")

        first = make_client(seen_before=SeenBeforeStore(flag))
        first.initialize("/forum")
        await first.close()
        second = make_client(seen_before=SeenBeforeStore(flag))
        second.initialize("/forum")
        second.record_page_view("/forum/7/thread/3")
        await second.close()

        totals = await daily_totals(test_db, 7)
        assert totals["page_views"] == 3
        assert totals["unique_visitors"] == 1
        assert totals["new_users"] == 1
        assert totals["returning_users"] == 1
        assert totals["sessions"] == 2

    async def test_heartbeat_updates_session_activity(self, make_client, transport, test_db):
        capture = make_client()
        capture.initialize("/forum")
        capture.send_heartbeat()
        await capture.close()

        assert await count_raw_events(test_db, event_type="session_heartbeat") == 1


class TestContentSignals:
    """Tests for content interactions"""

    async def test_view_then_click(self, make_client, transport, test_db):
        capture = make_client()
        capture.initialize("/forum/7/question/42")
        capture.record_content_view("question", 42, title="How do I migrate?")
        await transport.drain()
        capture.record_content_click("question", 42)
        await capture.close()

        row = (await test_db.execute(select(ContentPerformanceScore))).scalar_one()
        assert (row.impressions, row.clicks) == (1, 1)
        assert row.ctr == pytest.approx(1.0)
        assert row.title == "How do I migrate?"

        totals = await daily_totals(test_db, 7)
        assert totals["content_views"] == 1
        assert totals["content_clicks"] == 1

    async def test_search_and_form(self, make_client, transport, test_db):
        capture = make_client()
        capture.initialize("/forum")
        capture.record_search("moderation tools", results_count=12)
        capture.record_form_submission("signup", form_id=3)
        await capture.close()

        search = (await test_db.execute(select(RawEvent).where(RawEvent.event_type == "search"))).scalar_one()
        assert search.label == "moderation tools"
        assert search.numeric_value == 12
        assert await count_raw_events(test_db, event_type="form_submit") == 1
        assert (await daily_totals(test_db, 7))["search_queries"] == 1

    async def test_tagged_element(self, make_client, transport, test_db):
        capture = make_client()
        capture.initialize("/forum")
        capture.track_element({
            "data-track-category": "cta",
            "data-track-action": "SignUp",
            "data-track-label": "header",
            "data-track-value": "2",
        })
        capture.track_element({"class": "plain-link"})
        await capture.close()

        clicks = (await test_db.execute(select(RawEvent).where(RawEvent.event_type == "click"))).scalars().all()
        assert len(clicks) == 1
        assert (clicks[0].category, clicks[0].action, clicks[0].numeric_value) == ("cta", "SignUp", 2.0)


class TestDeliveryFailures:
    """The capture client never raises into the host"""

    async def test_unreachable_api(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://analytics.invalid/api")
        transport = HttpTransport(client=http)
        capture = CaptureClient(tenant_id=7, transport=transport, seen_before=SeenBeforeStore())

        capture.initialize("/forum")
        await capture.close()
        await http.aclose()

        # page_view + engagement, then session_end + engagement
        assert transport.failures == 4

    async def test_rejected_envelope_counted(self, transport):
        ok = await transport.deliver("/analytics/track-event", {"tenantId": 7})

        assert ok is False
        assert transport.failures == 1
