"""Event capture and buffering.

Main Components:
- CaptureBuffer: console/network sequences, exchange records, dumps
- PageMonitor: Playwright page subscriptions with request correlation
- dump: artifact writers (cookies by domain, capped DOM, screenshot)
"""

from .buffer import CaptureBuffer, DEFAULT_IGNORE_PATTERNS, HOT_RELOAD_PATTERNS
from .dump import DOM_DUMP_MAX_BYTES, DumpTarget, group_cookies_by_domain, truncate_html
from .page_monitor import PageMonitor

__all__ = [
    "CaptureBuffer",
    "DEFAULT_IGNORE_PATTERNS",
    "HOT_RELOAD_PATTERNS",
    "DOM_DUMP_MAX_BYTES",
    "DumpTarget",
    "group_cookies_by_domain",
    "truncate_html",
    "PageMonitor",
]
