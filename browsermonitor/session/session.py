"""Monitoring session state and command dispatch.

This module provides the MonitorSession class, the single shared state
object of a monitoring run. Keyboard and HTTP commands both go through
MonitorSession.execute(), which serializes them with one lock so the pause
flag, the monitored page and the buffers are never mutated concurrently.
"""

import asyncio
import logging
import signal
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright
from pydantic import BaseModel, Field

from ..capture import CaptureBuffer, DumpTarget, PageMonitor
from ..exceptions import ElementNotFoundError, NoPageError, PageIndexError, is_transient_page_error
from ..models import BridgeState, CaptureState, ExitType, SessionMode, SessionStatus
from .connector import filter_user_pages, list_user_pages
from .page_commands import get_computed_styles, run_page_command

logger = logging.getLogger(__name__)

REMINDER_INTERVAL = 5

KEYBOARD_HELP = "d=dump  c=clear  s=status  p=pause/resume  t=switch tab  h=help  q=quit  k=quit+close browser"

HTTP_HELP = {
    "GET /dump": "Write console, network, cookies, DOM and screenshot to files",
    "GET /status": "Session status and buffer counts",
    "GET /stop": "Pause capture",
    "GET /start": "Resume capture",
    "GET /clear": "Clear all buffers",
    "GET /tabs": "List open tabs",
    "GET /tab?index=N": "Switch monitored tab (1-based)",
    "GET /computed-styles?selector=S": "Computed styles of the first matching element",
    "POST /puppeteer": "Run an allow-listed page command: {\"method\": ..., \"args\": [...]}",
}


class Command(str, Enum):
    """Commands accepted from the keyboard and the HTTP control surface."""
    DUMP = "dump"
    CLEAR = "clear"
    STATUS = "status"
    TOGGLE_PAUSE = "toggle_pause"
    STOP = "stop"
    START = "start"
    SWITCH_PAGE = "switch_page"
    LIST_PAGES = "list_pages"
    LIST_TABS = "list_tabs"
    PAGE_COMMAND = "page_command"
    COMPUTED_STYLES = "computed_styles"
    HELP = "help"


class CommandResult(BaseModel):
    """Outcome of one dispatched command."""
    command: Command
    success: bool = True
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    reminder: Optional[str] = None


def reminder_text(http_host: Optional[str] = None, http_port: Optional[int] = None) -> str:
    text = f"Commands: {KEYBOARD_HELP}"
    if http_port:
        text += f" | HTTP API: http://{http_host or '127.0.0.1'}:{http_port}/"
    return text


ShutdownHook = Callable[[], Awaitable[None]]


class MonitorSession:
    """Shared state of one monitoring run."""

    def __init__(
        self,
        buffer: CaptureBuffer,
        mode: SessionMode,
        playwright: Optional[Playwright] = None,
        browser: Optional[Browser] = None,
        context: Optional[BrowserContext] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        bridge: Optional[BridgeState] = None,
        pid_file: Optional[Path] = None,
        http_host: Optional[str] = None,
        http_port: Optional[int] = None,
        notice: Optional[Callable[[str], None]] = None,
    ):
        """Initialize session.

        Args:
            buffer: Capture buffer owned by this session
            mode: Launch or attach
            playwright: Started Playwright instance, stopped on shutdown
            browser: CDP-connected browser (attach mode, or cross-host launch)
            context: Persistent context (native launch)
            host: Browser control host
            port: Browser control port
            bridge: Cross-host bridge state
            pid_file: PID file removed on shutdown
            http_host: HTTP control host, shown in reminders
            http_port: HTTP control port, shown in reminders
            notice: Prints dimmed transient notices to the operator
        """
        self.buffer = buffer
        self.mode = mode
        self.playwright = playwright
        self.browser = browser
        self.context = context
        self.host = host
        self.port = port
        self.bridge = bridge
        self.pid_file = pid_file
        self.http_host = http_host
        self.http_port = http_port
        self.notice = notice or (lambda text: logger.info(text))

        self.page: Optional[Page] = None
        self.monitor: Optional[PageMonitor] = None
        self.paused = False
        self.completed_commands = 0
        self.exit_code: Optional[int] = None

        self._lock = asyncio.Lock()
        self._shutdown_started = False
        self._shutdown_hooks: List[ShutdownHook] = []
        self._exit_future: Optional[asyncio.Future] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None

    # State

    def is_paused(self) -> bool:
        return self.paused

    @property
    def state(self) -> CaptureState:
        return CaptureState.PAUSED if self.paused else CaptureState.CAPTURING

    @property
    def shutting_down(self) -> bool:
        return self._shutdown_started

    @property
    def exit_future(self) -> asyncio.Future:
        if self._exit_future is None:
            self._exit_future = asyncio.get_running_loop().create_future()
        return self._exit_future

    def pages(self) -> List[Page]:
        """Open user pages in discovery order."""
        if self.browser is not None:
            return list_user_pages(self.browser)
        if self.context is not None:
            return filter_user_pages(self.context.pages)
        return []

    def status(self) -> SessionStatus:
        monitored_url = None
        if self.page is not None:
            try:
                monitored_url = self.page.url
            except Exception as e:
                logger.debug(f"Monitored page URL unavailable: {e}")

        return SessionStatus(
            mode=self.mode,
            output_mode=self.buffer.output_mode,
            state=self.state,
            target=f"{self.host}:{self.port}" if self.host and self.port else None,
            monitored_url=monitored_url,
            monitored_pages=len(self.pages()),
            stats=self.buffer.get_stats(),
            output_dir=str(self.buffer.paths.output_dir),
        )

    # Monitored page

    def attach_page(self, page: Page) -> PageMonitor:
        """Make ``page`` the only monitored page.

        The previous monitor is detached before the new one is attached.
        """
        self.detach_page()
        self.monitor = PageMonitor(page, self.buffer, self.is_paused)
        self.monitor.attach()
        self.page = page
        return self.monitor

    def detach_page(self) -> None:
        if self.monitor is not None:
            self.monitor.detach()
        self.monitor = None
        self.page = None

    async def switch_page(self, page: Page) -> None:
        self.attach_page(page)
        try:
            await page.bring_to_front()
        except Exception as e:
            logger.debug(f"bring_to_front failed: {e}")
        await self.buffer.print_console_separator("TAB SWITCHED")
        await self.buffer.print_network_separator("TAB SWITCHED")
        logger.info(f"Now monitoring: {page.url}")

    def watch_new_pages(self, context: BrowserContext) -> None:
        """Log tabs opened during the session; they are not monitored."""
        def on_page(page: Page) -> None:
            self.notice(f"New tab opened: {page.url or 'about:blank'} (press t to switch)")

        context.on("page", on_page)

    # Commands

    async def execute(self, command: Command, **params: Any) -> CommandResult:
        """Run one command against the session.

        Both command sources call this; commands run one at a time.
        """
        async with self._lock:
            result = await self._dispatch(Command(command), params)

        self.completed_commands += 1
        if self.completed_commands % REMINDER_INTERVAL == 0:
            result.reminder = reminder_text(self.http_host, self.http_port)
        return result

    async def _dispatch(self, command: Command, params: Dict[str, Any]) -> CommandResult:
        if command == Command.DUMP:
            targets = params.get("targets")
            if targets is not None:
                targets = [DumpTarget(t) for t in targets]
            dump = await self.buffer.dump(self.page, targets)
            return CommandResult(
                command=command,
                success=not dump.errors,
                message=f"Dumped {len(dump.paths)} artifacts to {self.buffer.paths.output_dir}",
                data=dump.model_dump(),
            )

        if command == Command.CLEAR:
            await self.buffer.clear()
            return CommandResult(command=command, message="All buffers cleared")

        if command == Command.STATUS:
            return CommandResult(command=command, data=self.status().model_dump(mode="json"))

        if command == Command.TOGGLE_PAUSE:
            self.paused = not self.paused
            return self._capture_state_result(command)

        if command == Command.STOP:
            self.paused = True
            return self._capture_state_result(command)

        if command == Command.START:
            self.paused = False
            return self._capture_state_result(command)

        if command in (Command.LIST_PAGES, Command.LIST_TABS):
            tabs = await self._describe_pages(include_monitored=command == Command.LIST_TABS)
            return CommandResult(command=command, message=f"{len(tabs)} tabs", data={"tabs": tabs})

        if command == Command.SWITCH_PAGE:
            pages = self.pages()
            index = int(params["index"])
            if not 1 <= index <= len(pages):
                raise PageIndexError(index, len(pages))
            page = pages[index - 1]
            await self.switch_page(page)
            return CommandResult(
                command=command,
                message=f"Switched to tab {index}",
                data={"index": index, "url": page.url},
            )

        if command == Command.PAGE_COMMAND:
            page = self._require_page()
            method = params["method"]
            result = await run_page_command(page, method, params.get("args"))
            return CommandResult(command=command, message=method, data={"method": method, "result": result})

        if command == Command.COMPUTED_STYLES:
            page = self._require_page()
            selector = params["selector"]
            styles = await get_computed_styles(page, selector)
            if styles is None:
                raise ElementNotFoundError(selector)
            return CommandResult(command=command, data={"selector": selector, **styles})

        return CommandResult(
            command=Command.HELP,
            message=reminder_text(self.http_host, self.http_port),
            data={"keys": KEYBOARD_HELP, "endpoints": HTTP_HELP},
        )

    def _capture_state_result(self, command: Command) -> CommandResult:
        message = "Capture paused" if self.paused else "Capture resumed"
        logger.info(message)
        return CommandResult(command=command, message=message, data={"state": self.state.value})

    def _require_page(self) -> Page:
        if self.page is None:
            raise NoPageError("No page is being monitored")
        return self.page

    async def _describe_pages(self, include_monitored: bool) -> List[Dict[str, Any]]:
        tabs = []
        for index, page in enumerate(self.pages(), start=1):
            try:
                title = await page.title()
            except Exception as e:
                logger.debug(f"Title unavailable for tab {index}: {e}")
                title = ""
            tab = {"index": index, "url": page.url, "title": title}
            if include_monitored:
                tab["monitored"] = page is self.page
            tabs.append(tab)
        return tabs

    # Lifecycle

    def add_shutdown_hook(self, hook: ShutdownHook) -> None:
        """Register a coroutine run first on shutdown, in registration order."""
        self._shutdown_hooks.append(hook)

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, 0)
            except (NotImplementedError, RuntimeError) as e:
                logger.debug(f"Cannot install handler for {sig.name}: {e}")

    def start_hard_timeout(self, loop: asyncio.AbstractEventLoop, timeout_ms: int) -> None:
        if timeout_ms <= 0:
            return

        def expire():
            self.notice(f"Hard timeout ({timeout_ms} ms) reached, shutting down")
            self.request_shutdown(1)

        self._timeout_handle = loop.call_later(timeout_ms / 1000, expire)

    def handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        """Loop exception handler: transient page errors are ignored, others are fatal."""
        exc = context.get("exception")
        message = context.get("message", "")
        if is_transient_page_error(exc) or is_transient_page_error(message):
            self.notice(f"(page navigated or closed, continuing: {exc or message})")
            return

        logger.error(f"Unhandled error: {message}", exc_info=exc)
        self.request_shutdown(1)

    def request_shutdown(self, code: int = 0, exit_type: ExitType = ExitType.DISCONNECT) -> None:
        """Schedule shutdown from a synchronous callback."""
        if self._shutdown_started:
            return
        asyncio.ensure_future(self.shutdown(code, exit_type))

    async def shutdown(self, code: int = 0, exit_type: ExitType = ExitType.DISCONNECT) -> None:
        """Tear the session down once; later calls return immediately."""
        if self._shutdown_started:
            return
        self._shutdown_started = True
        self.exit_code = code
        logger.info(f"Shutting down (code={code}, exit={exit_type.value})")

        if self._timeout_handle is not None:
            self._timeout_handle.cancel()

        for hook in self._shutdown_hooks:
            try:
                await hook()
            except Exception as e:
                logger.warning(f"Shutdown hook failed: {e}")

        self.detach_page()
        await self._release_browser(exit_type)

        if self.playwright is not None:
            try:
                await self.playwright.stop()
            except Exception as e:
                logger.debug(f"Error stopping Playwright: {e}")

        if self.pid_file is not None:
            try:
                self.pid_file.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove PID file {self.pid_file}: {e}")

        if not self.exit_future.done():
            self.exit_future.set_result(code)

    async def _release_browser(self, exit_type: ExitType) -> None:
        try:
            if self.browser is not None:
                if exit_type == ExitType.CLOSE:
                    cdp = await self.browser.new_browser_cdp_session()
                    await cdp.send("Browser.close")
                    logger.info("Browser closed")
                await self.browser.close()
            elif self.context is not None:
                await self.context.close()
                logger.info("Browser closed")
        except Exception as e:
            logger.warning(f"Error releasing browser: {e}")

    async def wait(self) -> int:
        """Block until shutdown completes; returns the exit code."""
        return await self.exit_future

    def __repr__(self) -> str:
        return (
            f"MonitorSession(mode={self.mode.value}, state={self.state.value}, "
            f"target={self.host}:{self.port}, commands={self.completed_commands})"
        )
