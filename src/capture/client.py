"""
Capture Client

Records page views, interactions and content signals for one visitor
session and ships them to the ingestion API as tracking envelopes.

Every public method is fire-and-forget: delivery runs in background tasks
and failures are logged by the transport, never raised to the caller.
"""

import asyncio
import atexit
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional

import structlog

from src.config import get_settings
from src.core import utc_now
from src.capture.context import SeenBeforeStore, SessionContext, resolve_tenant_id
from src.capture.transport import HttpTransport
from src.capture.useragent import classify_browser, classify_device

logger = structlog.get_logger(__name__)
settings = get_settings()

TRACK_EVENT_ROUTE = "/analytics/track-event"
TRACK_ENGAGEMENT_ROUTE = "/analytics/track-user-engagement"
TRACK_CONTENT_ROUTE = "/analytics/track-content-performance"

_TRACK_ATTRIBUTES = ("category", "action", "label", "value")


class CaptureClient:
    """
    Session-scoped tracker.

    Args:
        tenant_id: Forum the session belongs to; resolved from the first
            path when omitted
        transport: Delivery backend (an HttpTransport on the configured URL
            by default)
        seen_before: Persisted returning-visitor flag
        user_agent: Visitor user agent, classified into device and browser
        location: Coarse visitor location
        heartbeat_interval: Seconds between heartbeats while visible
    """

    def __init__(
        self,
        tenant_id: Optional[int] = None,
        transport: Optional[HttpTransport] = None,
        seen_before: Optional[SeenBeforeStore] = None,
        user_agent: Optional[str] = None,
        location: Optional[str] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self._explicit_tenant = tenant_id
        self.context = SessionContext(tenant_id=tenant_id or resolve_tenant_id())
        self.transport = transport or HttpTransport()
        self.seen_before = seen_before or SeenBeforeStore(settings.capture.seen_before_path)
        self.user_agent = user_agent or ""
        self.device_type = classify_device(self.user_agent)
        self.browser = classify_browser(self.user_agent)
        self.location = location
        self.heartbeat_interval = heartbeat_interval or settings.sessions.heartbeat_interval_seconds
        self.visible = True
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._exit_hook_installed = False

    @property
    def session_id(self) -> str:
        return self.context.session_id

    @property
    def tenant_id(self) -> int:
        return self.context.tenant_id

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(self, path: str = "/", referrer: Optional[str] = None) -> None:
        """
        Start the session, record the landing page view and install the exit hook.

        ``referrer`` is where the visitor came from (the browser's
        ``document.referrer``), attributed to the landing page view only.
        """
        if self._explicit_tenant is None:
            self.context.tenant_id = resolve_tenant_id(path, self.context.tenant_id)
        self.context.started_at = utc_now()

        if not self._exit_hook_installed:
            atexit.register(self._flush_at_exit)
            self._exit_hook_installed = True

        self.record_page_view(path, referrer=referrer)
        logger.debug("Capture session started", session_id=self.session_id, tenant_id=self.tenant_id)

    def flush_session(self, now: Optional[datetime] = None) -> None:
        """
        Emit the session summary.

        Sends ``session_end`` plus an engagement delta carrying the session
        duration and bounce contribution. Runs at most once per session.
        """
        if self.context.flushed:
            return
        self.context.flushed = True
        self.stop_heartbeat()

        duration = self.context.elapsed_seconds(now)
        self.track_event(
            "session_end",
            value=duration,
            extra={
                "pageViewCount": self.context.page_view_count,
                "uniquePageCount": len(self.context.visited_paths),
            },
            timestamp=now,
        )
        self.track_engagement(
            avg_session_duration=duration,
            bounce_rate=1.0 if self.context.is_bounce else 0.0,
            metric_date=self.context.started_at.date(),
        )

    async def close(self) -> None:
        """Flush the session, wait for every pending delivery and remove the exit hook."""
        self.flush_session()
        await self.transport.drain()
        if self._exit_hook_installed:
            atexit.unregister(self._flush_at_exit)
            self._exit_hook_installed = False

    def _flush_at_exit(self) -> None:
        if self.context.flushed:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.flush_session()

    # =========================================================================
    # Heartbeat
    # =========================================================================

    def start_heartbeat(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    def set_visibility(self, visible: bool) -> None:
        """Heartbeats only run while the page is visible."""
        self.visible = visible
        if visible and not self.context.flushed:
            self.start_heartbeat()
        else:
            self.stop_heartbeat()

    def send_heartbeat(self) -> None:
        self.track_event(
            "session_heartbeat",
            extra={
                "durationSeconds": self.context.elapsed_seconds(),
                "pageViewCount": self.context.page_view_count,
            },
        )

    async def _heartbeat_loop(self) -> None:
        while self.visible and not self.context.flushed:
            await asyncio.sleep(self.heartbeat_interval)
            self.send_heartbeat()

    # =========================================================================
    # Interactions
    # =========================================================================

    def record_page_view(self, path: str, referrer: Optional[str] = None) -> None:
        self.context.page_view_count += 1
        self.context.visited_paths.add(path)
        self.track_event("page_view", path=path, referrer=referrer)

        seen = self.seen_before.seen()
        first_view = self.context.page_view_count == 1
        self.track_engagement(
            page_views=1,
            unique_visitors=0 if seen else 1,
            new_users=0 if seen else 1,
            returning_users=1 if seen and first_view else 0,
        )
        if not seen:
            self.seen_before.mark()

    def record_content_view(self, content_type: str, content_id: int, title: Optional[str] = None,
                            url: Optional[str] = None) -> None:
        self._content_event("content_view", content_type, content_id)
        self.track_content_performance(content_type, content_id, title=title, url=url, impressions=1)

    def record_content_click(self, content_type: str, content_id: int) -> None:
        self._content_event("content_click", content_type, content_id)
        self.track_content_performance(content_type, content_id, clicks=1)

    def record_social_share(self, content_type: str, content_id: int, platform: Optional[str] = None) -> None:
        self._content_event("social_share", content_type, content_id, platform=platform)
        self.track_content_performance(content_type, content_id, social_shares=1)

    def record_form_submission(self, form_name: str, form_id: Optional[int] = None) -> None:
        self.track_event(
            "form_submit",
            category="form",
            action="submit",
            label=form_name,
            value=float(form_id) if form_id is not None else None,
        )

    def record_conversion(self, conversion_type: str, value: Optional[float] = None,
                          content_type: Optional[str] = None, content_id: Optional[int] = None) -> None:
        extra: Dict[str, Any] = {"conversionType": conversion_type}
        if content_type and content_id:
            extra.update({"contentType": content_type, "contentId": content_id})
        self.track_event("conversion", category="conversion", action=conversion_type, value=value, extra=extra)
        if content_type and content_id:
            self.track_content_performance(content_type, content_id, conversion_count=1)

    def record_search(self, query: str, results_count: Optional[int] = None) -> None:
        value = float(results_count) if results_count is not None else None
        self.track_event("search", category="search", action="query", label=query, value=value)

    def track_element(self, attributes: Mapping[str, Any]) -> None:
        """Emit a ``click`` for an element tagged with ``data-track-*`` attributes."""
        tags = {name: attributes.get(f"data-track-{name}") for name in _TRACK_ATTRIBUTES}
        if not any(tags.values()):
            return
        value = tags["value"]
        try:
            value = float(value) if value not in (None, "") else None
        except (TypeError, ValueError):
            value = None
        self.track_event("click", category=tags["category"], action=tags["action"], label=tags["label"], value=value)

    def _content_event(self, event_type: str, content_type: str, content_id: int, **extra: Any) -> None:
        payload_extra = {"contentType": content_type, "contentId": content_id}
        payload_extra.update({k: v for k, v in extra.items() if v is not None})
        self.track_event(
            event_type,
            category=content_type,
            action=event_type.split("_", 1)[-1],
            label=str(content_id),
            extra=payload_extra,
        )

    # =========================================================================
    # Envelopes
    # =========================================================================

    def track_event(
        self,
        event_type: str,
        path: Optional[str] = None,
        category: Optional[str] = None,
        action: Optional[str] = None,
        label: Optional[str] = None,
        value: Optional[float] = None,
        extra: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
        referrer: Optional[str] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "eventType": event_type,
            "timestamp": (timestamp or utc_now()).isoformat(),
            "deviceType": self.device_type,
            "browser": self.browser,
        }
        optional = {
            "path": path,
            "referrer": referrer,
            "location": self.location,
            "category": category,
            "action": action,
            "label": label,
            "value": value,
            "extra": extra,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        self._send(TRACK_EVENT_ROUTE, payload)

    def track_engagement(
        self,
        page_views: int = 0,
        unique_visitors: int = 0,
        new_users: int = 0,
        returning_users: int = 0,
        avg_session_duration: Optional[float] = None,
        bounce_rate: Optional[float] = None,
        metric_date: Optional[date] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "date": (metric_date or utc_now().date()).isoformat(),
            "pageViews": page_views,
            "uniqueVisitors": unique_visitors,
            "newUsers": new_users,
            "returningUsers": returning_users,
            "deviceType": self.device_type,
        }
        if avg_session_duration is not None:
            payload["avgSessionDuration"] = avg_session_duration
        if bounce_rate is not None:
            payload["bounceRate"] = bounce_rate
        if self.location:
            payload["location"] = self.location
        self._send(TRACK_ENGAGEMENT_ROUTE, payload)

    def track_content_performance(
        self,
        content_type: str,
        content_id: int,
        title: Optional[str] = None,
        url: Optional[str] = None,
        impressions: int = 0,
        clicks: int = 0,
        social_shares: int = 0,
        conversion_count: int = 0,
    ) -> None:
        payload: Dict[str, Any] = {
            "contentType": content_type,
            "contentId": content_id,
            "scoreDate": utc_now().date().isoformat(),
            "impressions": impressions,
            "clicks": clicks,
            "socialShares": social_shares,
            "conversionCount": conversion_count,
        }
        if title:
            payload["title"] = title
        if url:
            payload["url"] = url
        self._send(TRACK_CONTENT_ROUTE, payload)

    def _send(self, route: str, payload: Dict[str, Any]) -> None:
        payload.update({
            "tenantId": self.context.tenant_id,
            "sessionId": self.context.session_id,
            "eventId": self.context.next_event_id(),
        })
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop at interpreter exit; deliver inline
            self.transport.send_blocking(route, payload)
            return
        self.transport.send(route, payload)
