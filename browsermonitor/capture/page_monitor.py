"""Page event subscriptions for the monitored page.

This module provides the PageMonitor class that hooks into Playwright page
events (console, page errors, request lifecycle) and feeds them into a
CaptureBuffer, assigning correlation ids to network exchanges. Exactly one
PageMonitor is attached at a time; detaching removes every listener before
a new page is subscribed.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from playwright.async_api import ConsoleMessage, Page, Request, Response

from ..models.capture import ConsoleEntry, ConsoleLevel, NetworkExchange, format_timestamp
from .buffer import CaptureBuffer

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 50000
TEXT_CONTENT_TYPES = ('text', 'json', 'xml', 'javascript')


def _now_iso() -> str:
    return datetime.now().isoformat(timespec='milliseconds')


class PageMonitor:
    """Subscribes to one page's events and records them in a buffer."""

    def __init__(
        self,
        page: Page,
        buffer: CaptureBuffer,
        is_paused: Optional[Callable[[], bool]] = None,
        label: str = "Page",
    ):
        """Initialize page monitor.

        Args:
            page: Playwright page to observe
            buffer: Destination buffer
            is_paused: Returns True while capture is paused
            label: Label used in log messages
        """
        self.page = page
        self.buffer = buffer
        self.is_paused = is_paused or (lambda: False)
        self.label = label
        self.attached = False

        # id(request) -> (request, sequence id, buffer generation); removed when the request settles
        self._requests: Dict[int, Tuple[Request, str, int]] = {}
        self._handlers = {
            "console": self._on_console,
            "pageerror": self._on_page_error,
            "request": self._on_request,
            "response": self._on_response,
            "requestfailed": self._on_request_failed,
            "requestfinished": self._on_request_finished,
        }

    def attach(self) -> None:
        """Install all page listeners."""
        if self.attached:
            return
        for event, handler in self._handlers.items():
            self.page.on(event, handler)
        self.attached = True
        logger.debug(f"{self.label} monitor attached: {self._page_url()}")

    def detach(self) -> None:
        """Remove all page listeners; late callbacks are dropped."""
        if not self.attached:
            return
        self.attached = False
        for event, handler in self._handlers.items():
            try:
                self.page.remove_listener(event, handler)
            except Exception as e:
                logger.debug(f"Failed to remove {event} listener: {e}")
        self._requests.clear()
        logger.debug(f"{self.label} monitor detached: {self._page_url()}")

    def _page_url(self) -> str:
        try:
            return self.page.url
        except Exception:
            return "<closed>"

    # Console

    async def _on_console(self, message: ConsoleMessage) -> None:
        if not self.attached or self.is_paused():
            return
        try:
            if message.type == "clear":
                await self.buffer.clear_console()
                return

            text = message.text
            if self.buffer.should_ignore(text):
                return

            entry = ConsoleEntry.from_playwright_message(message, hot_reload=self.buffer.is_hot_reload(text))
            await self.buffer.log_console(entry)
        except Exception as e:
            logger.error(f"Error processing console message: {e}")

    async def _on_page_error(self, error) -> None:
        if not self.attached or self.is_paused():
            return
        try:
            text = str(error)
            if self.buffer.should_ignore(text):
                return
            await self.buffer.log_console(ConsoleEntry(level=ConsoleLevel.PAGE_ERROR, text=text))
        except Exception as e:
            logger.error(f"Error processing page error: {e}")

    # Network

    def _lookup(self, request: Request) -> Optional[str]:
        """Sequence id of a recorded request from the current buffer generation."""
        record = self._requests.get(id(request))
        if record is None or record[0] is not request:
            return None
        _, request_id, generation = record
        if generation != self.buffer.generation:
            return None
        return request_id

    def _forget(self, request: Request) -> None:
        record = self._requests.get(id(request))
        if record is not None and record[0] is request:
            del self._requests[id(request)]

    async def _on_request(self, request: Request) -> None:
        if not self.attached or self.is_paused():
            return
        try:
            request_id = self.buffer.next_request_id()
            self._requests[id(request)] = (request, request_id, self.buffer.generation)

            headers = {}
            try:
                headers = dict(request.headers)
            except Exception as e:
                logger.debug(f"Failed to extract request headers: {e}")

            post_data = None
            try:
                if request.method.upper() in ('POST', 'PUT', 'PATCH'):
                    post_data = request.post_data
            except Exception as e:
                logger.debug(f"Failed to extract request body: {e}")

            exchange = NetworkExchange(
                id=request_id,
                timestamp=_now_iso(),
                method=request.method,
                url=request.url,
                resource_type=request.resource_type,
                headers=headers,
                post_data=post_data,
            )
            await self.buffer.save_exchange(exchange)
            await self.buffer.log_network(
                f"[{format_timestamp()}] [{request_id}] {request.method} {request.url} ({request.resource_type})"
            )
        except Exception as e:
            logger.error(f"Error processing request start: {e}")

    async def _on_response(self, response: Response) -> None:
        if not self.attached:
            return
        request = response.request
        request_id = self._lookup(request)
        if request_id is None:
            return
        generation = self.buffer.generation

        try:
            updates = {
                'status': response.status,
                'status_text': response.status_text,
                'response_timestamp': _now_iso(),
            }
            try:
                updates['response_headers'] = dict(response.headers)
            except Exception as e:
                logger.debug(f"Failed to extract response headers: {e}")

            body = await self._read_text_body(response)
            if body is not None:
                updates['response_body'] = body

            # The page may have been switched away while the body was read
            if not self.attached or self.buffer.generation != generation:
                return

            await self.buffer.update_exchange(request_id, updates)
            await self.buffer.log_network(
                f"[{format_timestamp()}] [{request_id}] {response.status} {response.status_text} "
                f"{request.method} {request.url}"
            )
        except Exception as e:
            logger.error(f"Error processing response: {e}")

    async def _read_text_body(self, response: Response) -> Optional[str]:
        """Small text response bodies only."""
        try:
            headers = response.headers
            content_type = headers.get('content-type', '').lower()
            content_length = int(headers.get('content-length', 0))
            if 0 < content_length < MAX_BODY_BYTES and any(t in content_type for t in TEXT_CONTENT_TYPES):
                return await response.text()
        except Exception as e:
            logger.debug(f"Failed to extract response body: {e}")
        return None

    async def _on_request_failed(self, request: Request) -> None:
        if not self.attached:
            return
        request_id = self._lookup(request)
        self._forget(request)
        if request_id is None:
            return

        try:
            failure = request.failure or "Unknown error"
            await self.buffer.update_exchange(request_id, {
                'failed': True,
                'failure': failure,
                'failure_timestamp': _now_iso(),
            })
            await self.buffer.log_network(
                f"[{format_timestamp()}] [{request_id}] FAILED {request.method} {request.url} - {failure}"
            )
        except Exception as e:
            logger.error(f"Error processing request failure: {e}")

    async def _on_request_finished(self, request: Request) -> None:
        self._forget(request)

    def __repr__(self) -> str:
        return f"PageMonitor(url={self._page_url()!r}, attached={self.attached}, tracked={len(self._requests)})"
