"""Exception types for browsermonitor.

Errors fall into four groups: transient connectivity (retried, then sent to
diagnostics), environment misconfiguration (reported with a remediation
command), mid-session transient page errors (logged and ignored) and fatal
errors (logged, then shutdown).
"""

import re
from typing import Optional


TRANSIENT_PAGE_ERROR = re.compile(r"Execution context was destroyed|Target closed|Protocol error")


class BrowserMonitorError(Exception):
    """Base class for browsermonitor errors."""


class EndpointUnreachableError(BrowserMonitorError):
    """The browser's /json/version endpoint did not answer."""

    def __init__(self, endpoint: str, reason: str = ""):
        self.endpoint = endpoint
        self.reason = reason
        message = f"Cannot reach Chrome debug endpoint {endpoint}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ConnectionFailedError(BrowserMonitorError):
    """All connection attempts were exhausted."""

    def __init__(self, host: str, port: int, attempts: int, last_error: Optional[BaseException] = None):
        self.host = host
        self.port = port
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Cannot connect to Chrome at http://{host}:{port} after {attempts} attempts"
            + (f": {last_error}" if last_error else "")
        )


class BrowserNotFoundError(BrowserMonitorError):
    """No browser executable could be located."""


class NoPageError(BrowserMonitorError):
    """The session has no monitored page."""


class PageIndexError(BrowserMonitorError):
    """A page index outside the current page list was requested."""

    def __init__(self, index: int, count: int):
        self.index = index
        self.count = count
        super().__init__(f"Invalid page index {index}: expected 1..{count}")


class ElementNotFoundError(BrowserMonitorError):
    """No element matched a selector on the monitored page."""

    def __init__(self, selector: str):
        self.selector = selector
        super().__init__(f"No element matches selector: {selector}")


class PageCommandNotAllowedError(BrowserMonitorError):
    """A page command outside the allow-list was requested."""

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Page command not allowed: {method}")


def is_transient_page_error(error: object) -> bool:
    """Check whether an error is a recoverable navigation/target error."""
    message = str(error) if error is not None else ""
    return bool(TRANSIENT_PAGE_ERROR.search(message))
