"""Connection to a running browser over the Chrome DevTools Protocol.

This module provides the SessionConnector class that opens a CDP connection
with bounded retries, plus the page-listing helpers used to pick the page a
session monitors.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from playwright.async_api import Browser, Page, Playwright

from ..exceptions import ConnectionFailedError, EndpointUnreachableError, NoPageError

logger = logging.getLogger(__name__)

INTERNAL_URL_SCHEMES = (
    "chrome://",
    "chrome-extension://",
    "devtools://",
    "moz-extension://",
    "extension://",
)

DEVTOOLS_EXTENSION_MARKERS = (
    "react-devtools",
    "redux-devtools",
    "__react_devtools__",
)

BLANK_URLS = ("about:blank", "")

PageChooser = Callable[[List[Page]], Awaitable[Optional[int]]]


def is_user_page_url(url: str) -> bool:
    """Check whether a URL belongs to a user page rather than browser internals."""
    if url.startswith(INTERNAL_URL_SCHEMES):
        return False
    return not any(marker in url for marker in DEVTOOLS_EXTENSION_MARKERS)


def is_blank_url(url: str) -> bool:
    return url in BLANK_URLS


def all_pages(browser: Browser) -> List[Page]:
    """Every page across every context of a connected browser."""
    return [page for context in browser.contexts for page in context.pages]


def filter_user_pages(pages: List[Page]) -> List[Page]:
    """Drop internal pages, keeping discovery order.

    Falls back to the unfiltered list if filtering leaves nothing. Blank
    pages are dropped only when a non-blank candidate remains.
    """
    candidates = [page for page in pages if is_user_page_url(page.url)]
    if not candidates:
        return list(pages)

    non_blank = [page for page in candidates if not is_blank_url(page.url)]
    if non_blank:
        return non_blank
    return candidates


def list_user_pages(browser: Browser) -> List[Page]:
    return filter_user_pages(all_pages(browser))


async def select_page(pages: List[Page], chooser: Optional[PageChooser] = None) -> Page:
    """Pick the page to monitor.

    A single candidate is selected without asking. Otherwise ``chooser``
    is awaited for a 0-based index; ``None`` or an out-of-range answer
    selects the first candidate.

    Raises:
        NoPageError: If there are no pages at all
    """
    if not pages:
        raise NoPageError("No pages available in browser")

    if len(pages) == 1 or chooser is None:
        return pages[0]

    index = await chooser(pages)
    if index is None or not 0 <= index < len(pages):
        logger.debug(f"No valid page choice ({index}), using first page")
        return pages[0]
    return pages[index]


async def fetch_version_info(host: str, port: int, timeout: float = 3.0) -> Dict[str, Any]:
    """Query the browser's /json/version metadata endpoint.

    Raises:
        EndpointUnreachableError: If the endpoint does not answer with JSON
    """
    endpoint = f"http://{host}:{port}/json/version"
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(endpoint)
            response.raise_for_status()
            return response.json()
    except httpx.TimeoutException:
        raise EndpointUnreachableError(endpoint, "timed out")
    except httpx.HTTPError as e:
        raise EndpointUnreachableError(endpoint, str(e) or type(e).__name__)
    except ValueError as e:
        raise EndpointUnreachableError(endpoint, f"invalid response: {e}")


async def is_endpoint_reachable(host: str, port: int, timeout: float = 3.0) -> bool:
    try:
        await fetch_version_info(host, port, timeout)
        return True
    except EndpointUnreachableError:
        return False


class SessionConnector:
    """Opens a CDP connection to a browser with bounded retries."""

    def __init__(
        self,
        playwright: Playwright,
        attempts: int = 5,
        delay: float = 1.5,
        probe_timeout: float = 3.0,
        connect_timeout: float = 30000,
    ):
        """Initialize connector.

        Args:
            playwright: Started Playwright instance
            attempts: Connection attempts before giving up
            delay: Seconds between attempts
            probe_timeout: Timeout of the /json/version probe in seconds
            connect_timeout: CDP connect timeout in milliseconds
        """
        self.playwright = playwright
        self.attempts = attempts
        self.delay = delay
        self.probe_timeout = probe_timeout
        self.connect_timeout = connect_timeout
        self.version_info: Optional[Dict[str, Any]] = None

    async def connect(self, host: str, port: int) -> Browser:
        """Connect to the browser at host:port.

        Each attempt first probes /json/version so an unreachable endpoint
        is reported as such rather than as a generic connection error.

        Raises:
            ConnectionFailedError: After all attempts failed
        """
        endpoint = f"http://{host}:{port}"
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.attempts + 1):
            try:
                self.version_info = await fetch_version_info(host, port, self.probe_timeout)
                logger.debug(f"Browser endpoint answered: {self.version_info.get('Browser', 'unknown')}")

                browser = await self.playwright.chromium.connect_over_cdp(endpoint, timeout=self.connect_timeout)
                logger.info(f"Connected to {endpoint} (attempt {attempt}/{self.attempts})")
                return browser

            except EndpointUnreachableError as e:
                last_error = e
                logger.warning(f"Attempt {attempt}/{self.attempts}: {e}")
            except Exception as e:
                last_error = e
                logger.warning(f"Attempt {attempt}/{self.attempts}: connection to {endpoint} failed: {e}")

            if attempt < self.attempts:
                await asyncio.sleep(self.delay)

        raise ConnectionFailedError(host, port, self.attempts, last_error)
