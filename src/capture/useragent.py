"""
User-agent classification shared by the capture client and the ingestion
endpoint (which falls back to the request's User-Agent header).
"""

import re
from typing import Optional

_TABLET = re.compile(r"(tablet|ipad|playbook|silk)|(android(?!.*mobi))", re.IGNORECASE)
_MOBILE = re.compile(
    r"Mobile|Android|iP(hone|od)|IEMobile|BlackBerry|Kindle|Silk-Accelerated|(hpw|web)OS|Opera M(obi|ini)"
)

# Checked in order; the first marker found wins
_BROWSER_MARKERS = (
    (("Firefox",), "Firefox"),
    (("SamsungBrowser",), "Samsung"),
    (("Opera", "OPR"), "Opera"),
    (("Trident",), "IE"),
    (("Edge",), "Edge"),
    (("Chrome",), "Chrome"),
    (("Safari",), "Safari"),
)


def classify_device(user_agent: Optional[str]) -> str:
    """Return ``tablet``, ``mobile`` or ``desktop``."""
    ua = user_agent or ""
    if _TABLET.search(ua):
        return "tablet"
    if _MOBILE.search(ua):
        return "mobile"
    return "desktop"


def classify_browser(user_agent: Optional[str]) -> str:
    ua = user_agent or ""
    for markers, browser in _BROWSER_MARKERS:
        if any(marker in ua for marker in markers):
            return browser
    return "Unknown"
