"""User agent parsing for the signature audit trail."""

import re
from typing import Any

_MOBILE_RE = re.compile(r"mobile|android|iphone", re.IGNORECASE)
_TABLET_RE = re.compile(r"tablet|ipad", re.IGNORECASE)
_EDGE_RE = re.compile(r"edge|edg/", re.IGNORECASE)


def get_device_info(user_agent: str | None) -> dict[str, Any]:
    """Classify a user agent into a coarse device type and browser family."""
    ua = user_agent or ""
    info: dict[str, Any] = {"user_agent": ua}

    if _TABLET_RE.search(ua):
        info["type"] = "tablet"
    elif _MOBILE_RE.search(ua):
        info["type"] = "mobile"
    elif ua:
        info["type"] = "desktop"
    else:
        info["type"] = "unknown"

    lowered = ua.lower()
    if _EDGE_RE.search(ua):
        info["browser"] = "Edge"
    elif "firefox" in lowered:
        info["browser"] = "Firefox"
    elif "chrome" in lowered:
        info["browser"] = "Chrome"
    elif "safari" in lowered:
        info["browser"] = "Safari"
    else:
        info["browser"] = "Unknown"

    return info
