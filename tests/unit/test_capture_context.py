"""
Unit Tests - Capture Session Context and Envelopes
"""
import atexit
import hashlib
from datetime import timedelta

import pytest

from src.capture import CaptureClient, SeenBeforeStore, SessionContext, resolve_tenant_id
from src.capture.client import TRACK_CONTENT_ROUTE, TRACK_ENGAGEMENT_ROUTE, TRACK_EVENT_ROUTE


class RecordingTransport:
    """Collects envelopes instead of posting them"""

    def __init__(self):
        self.sent = []

    def send(self, route, payload):
        self.sent.append((route, payload))

    def send_blocking(self, route, payload):
        self.sent.append((route, payload))
        return True

    async def drain(self):
        pass

    def events(self, event_type=None):
        return [
            payload for route, payload in self.sent
            if route == TRACK_EVENT_ROUTE and event_type in (None, payload["eventType"])
        ]

    def routed(self, route):
        return [payload for r, payload in self.sent if r == route]


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def capture(transport):
    client = CaptureClient(tenant_id=7, transport=transport, seen_before=SeenBeforeStore())
    yield client
    client.context.flushed = True


class TestResolveTenant:
    """Tests for tenant resolution"""

    @pytest.mark.parametrize("path,stored,expected", [
        ("/forum/12", None, 12),
        ("/forum/12/question/5/slug", 3, 12),
        ("/forum", 3, 3),
        ("/about", None, 1),
        (None, None, 1),
    ])
    def test_resolution_order(self, path, stored, expected):
        assert resolve_tenant_id(path, stored) == expected


class TestSessionContext:
    """Tests for per-session identity"""

    def test_event_ids_are_deterministic(self):
        context = SessionContext(tenant_id=1, session_id="abc")

        first = context.next_event_id()
        second = context.next_event_id()

        assert first == hashlib.sha256(b"abc:1").hexdigest()[:32]
        assert second == hashlib.sha256(b"abc:2").hexdigest()[:32]
        assert len(first) == 32

    def test_sessions_do_not_share_state(self):
        a, b = SessionContext(tenant_id=1), SessionContext(tenant_id=1)
        a.page_view_count += 1

        assert a.session_id != b.session_id
        assert b.page_view_count == 0

    def test_elapsed_never_negative(self):
        context = SessionContext(tenant_id=1)

        assert context.elapsed_seconds(context.started_at - timedelta(seconds=5)) == 0.0
        assert context.elapsed_seconds(context.started_at + timedelta(seconds=5)) == 5.0

    def test_seen_before_file(self, tmp_path):
        path = tmp_path / "nested" / "seen"

        assert not SeenBeforeStore(str(path)).seen()
        SeenBeforeStore(str(path)).mark()
        assert SeenBeforeStore(str(path)).seen()


class TestCaptureEnvelopes:
    """Tests for the envelopes a session emits"""

    def test_page_view_for_new_visitor(self, capture, transport):
        capture.initialize("/forum")

        assert transport.events("page_view")[0]["path"] == "/forum"
        engagement = transport.routed(TRACK_ENGAGEMENT_ROUTE)[0]
        assert (engagement["pageViews"], engagement["uniqueVisitors"], engagement["newUsers"]) == (1, 1, 1)
        assert engagement["returningUsers"] == 0

    def test_every_envelope_identified(self, capture, transport):
        capture.initialize("/forum")
        capture.record_content_view("question", 9)

        ids = [payload["eventId"] for _, payload in transport.sent]
        assert len(ids) == len(set(ids)) == 4
        assert all(payload["tenantId"] == 7 for _, payload in transport.sent)
        assert all(payload["sessionId"] == capture.session_id for _, payload in transport.sent)

    def test_content_view_shape(self, capture, transport):
        capture.record_content_view("question", 9, title="Why?")

        event = transport.events("content_view")[0]
        assert (event["category"], event["action"], event["label"]) == ("question", "view", "9")
        assert event["extra"] == {"contentType": "question", "contentId": 9}
        content = transport.routed(TRACK_CONTENT_ROUTE)[0]
        assert (content["impressions"], content["clicks"], content["title"]) == (1, 0, "Why?")

    def test_session_summary(self, capture, transport):
        capture.initialize("/forum")
        capture.flush_session(now=capture.context.started_at + timedelta(seconds=30))

        end = transport.events("session_end")[0]
        assert end["value"] == 30.0
        assert end["extra"] == {"pageViewCount": 1, "uniquePageCount": 1}
        summary = transport.routed(TRACK_ENGAGEMENT_ROUTE)[-1]
        assert summary["avgSessionDuration"] == 30.0
        assert summary["bounceRate"] == 1.0
        assert summary["pageViews"] == 0

    def test_conversion_credits_content(self, capture, transport):
        capture.record_conversion("signup", value=1.0, content_type="thread", content_id=3)

        assert transport.events("conversion")[0]["action"] == "signup"
        assert transport.routed(TRACK_CONTENT_ROUTE)[0]["conversionCount"] == 1

    def test_untagged_element_ignored(self, capture, transport):
        capture.track_element({"id": "nav"})

        assert transport.sent == []

    def test_referrer_sent_with_landing_view_only(self, capture, transport):
        capture.initialize("/forum", referrer="https://www.google.com/search?q=forum")
        capture.record_page_view("/forum/7/question/1/slug")

        views = transport.events("page_view")
        assert views[0]["referrer"] == "https://www.google.com/search?q=forum"
        assert "referrer" not in views[1]


class TestExitHook:
    """Tests for the interpreter-exit flush hook"""

    async def test_close_removes_exit_hook(self, capture, monkeypatch):
        registered = []
        monkeypatch.setattr(atexit, "register", registered.append)
        monkeypatch.setattr(atexit, "unregister", registered.remove)

        capture.initialize("/forum")
        assert registered == [capture._flush_at_exit]

        await capture.close()
        assert registered == []

    def test_hook_installed_once(self, capture, monkeypatch):
        registered = []
        monkeypatch.setattr(atexit, "register", registered.append)

        capture.initialize("/forum")
        capture.initialize("/forum/7")

        assert len(registered) == 1
