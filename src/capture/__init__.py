"""
Capture Module

Client-side event capture: session context, envelope delivery and
user-agent classification.
"""
from .client import CaptureClient
from .context import SeenBeforeStore, SessionContext, resolve_tenant_id
from .transport import HttpTransport
from .useragent import classify_browser, classify_device

__all__ = [
    "CaptureClient",
    "SeenBeforeStore",
    "SessionContext",
    "resolve_tenant_id",
    "HttpTransport",
    "classify_browser",
    "classify_device",
]
