"""Monitor runners for open, join and interactive modes.

This module provides the MonitorRunner class that wires the pieces of a
monitoring run together: settings, the network bridge (cross-host only),
the session connector, the capture buffer, the HTTP control server and the
keyboard. Each run_* coroutine returns a process exit code.
"""

import asyncio
import json
import logging
from enum import IntEnum
from pathlib import Path
from typing import List, Optional

from playwright.async_api import Page, Playwright, async_playwright

from .. import terminal
from ..bridge import (
    NetworkBridgeResolver,
    create_host_inspector,
    detect_cross_host_environment,
    find_browser_pid,
    find_free_port,
    manual_launch_command,
    resolve_connect_host,
)
from ..capture import CaptureBuffer
from ..control import ControlServer, ControlState, KeyboardController, KeyReader, create_app
from ..diagnostics import apply_port_proxy_fix, run_diagnostics
from ..exceptions import BrowserNotFoundError, ConnectionFailedError, NoPageError
from ..models import BridgeState, BrowserInstance, OutputMode, SessionMode
from ..session import MonitorSession, SessionConnector, is_endpoint_reachable, list_user_pages, select_page
from ..session.session import reminder_text
from ..settings import MonitorSettings, ProjectPaths

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000
LAUNCH_SETTLE_SECONDS = 2.5
SCAN_PORTS = range(9222, 9230)

NATIVE_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--ignore-certificate-errors",
    "--disable-gpu",
    "--disable-software-rasterizer",
    "--disable-session-crashed-bubble",
]


class ExitCode(IntEnum):
    """CLI exit codes."""
    SUCCESS = 0
    RUNTIME_ERROR = 1
    CONFIG_ERROR = 3
    CONNECTION_ERROR = 4


def write_profile_preferences(profile_dir: Path) -> None:
    """Disable session restore and the crash bubble for a dedicated profile."""
    prefs_file = Path(profile_dir) / "Default" / "Preferences"
    try:
        prefs_file.parent.mkdir(parents=True, exist_ok=True)
        prefs = {}
        if prefs_file.exists():
            try:
                prefs = json.loads(prefs_file.read_text(encoding="utf-8"))
            except ValueError:
                prefs = {}
        prefs.setdefault("session", {})["restore_on_startup"] = 5
        prefs.setdefault("profile", {})["exit_type"] = "Normal"
        prefs_file.write_text(json.dumps(prefs, indent=2), encoding="utf-8")
    except OSError as e:
        logger.debug(f"Could not configure profile preferences: {e}")


class MonitorRunner:
    """Runs one monitoring session in the current event loop."""

    def __init__(
        self,
        settings: MonitorSettings,
        paths: ProjectPaths,
        host: Optional[str] = None,
        reader: Optional[KeyReader] = None,
    ):
        """Initialize runner.

        Args:
            settings: Effective settings
            paths: Project paths
            host: Explicit browser host (overrides gateway detection)
            reader: Keyboard reader (stdin by default)
        """
        self.settings = settings
        self.paths = paths
        self.explicit_host = host
        self.reader = reader or KeyReader()
        self.cross_host = detect_cross_host_environment()
        self.inspector = create_host_inspector(self.cross_host)
        self.resolver = NetworkBridgeResolver(self.inspector, paths.root, cross_host=self.cross_host)
        self.control = ControlState()
        self.server: Optional[ControlServer] = None

    @property
    def output_mode(self) -> OutputMode:
        return OutputMode.IMMEDIATE if self.settings.realtime else OutputMode.BUFFERED

    def connect_host(self) -> str:
        if self.explicit_host:
            return self.explicit_host
        if self.cross_host:
            return resolve_connect_host()
        return "localhost"

    async def _make_buffer(self) -> CaptureBuffer:
        buffer = CaptureBuffer(self.paths, self.output_mode, self.settings.ignore_patterns)
        await buffer.prepare_output()
        return buffer

    async def _start_server(self) -> None:
        if self.server is not None:
            return
        self.server = ControlServer(create_app(self.control), self.settings.http_host, self.settings.http_port)
        if not await self.server.start():
            terminal.warning(f"HTTP API unavailable on port {self.settings.http_port}; keyboard control only")

    async def _choose_page(self, pages: List[Page]) -> Optional[int]:
        terminal.info(f"{len(pages)} tabs open, select which to monitor:")
        terminal.print_tabs([{"index": i, "url": p.url} for i, p in enumerate(pages, start=1)])
        return await self.reader.choose("Monitor tab", len(pages))

    async def _run_session(self, session: MonitorSession) -> int:
        """Hand the session to both command sources and wait for shutdown."""
        loop = asyncio.get_running_loop()
        keyboard = KeyboardController(session, self.reader)

        session.add_shutdown_hook(keyboard.stop)
        if self.server is not None:
            session.add_shutdown_hook(self.server.stop)
        session.install_signal_handlers(loop)
        loop.set_exception_handler(session.handle_loop_exception)
        session.start_hard_timeout(loop, self.settings.hard_timeout)

        self.control.session = session
        keyboard.start()

        terminal.success("Ready")
        terminal.notice(reminder_text(self.settings.http_host, self.settings.http_port if self.server else None))
        code = await session.wait()
        self.control.session = None
        return code

    # Open mode

    async def run_open(self, url: Optional[str] = None) -> int:
        """Launch a browser with a dedicated profile, navigate and monitor."""
        self.reader.start()
        try:
            return await self._open(url)
        finally:
            self.reader.stop()

    async def _open(self, url: Optional[str]) -> int:
        url = url or self.settings.default_url
        await self._start_server()
        buffer = await self._make_buffer()
        playwright = await async_playwright().start()

        try:
            if self.cross_host:
                session = await self._launch_cross_host(playwright, buffer, url)
            else:
                session = await self._launch_native(playwright, buffer)
        except BrowserNotFoundError as e:
            terminal.error(str(e))
            await self._abort(playwright)
            return ExitCode.CONFIG_ERROR
        except ConnectionFailedError as e:
            await self._abort(playwright)
            return await self._handle_connect_failure(e, e.host, e.port)
        except Exception as e:
            logger.error(f"Failed to launch browser: {e}", exc_info=True)
            terminal.error(f"Failed to launch browser: {e}")
            await self._abort(playwright)
            return ExitCode.RUNTIME_ERROR

        try:
            page = self._initial_page(session)
            if page is None:
                page = await session.context.new_page() if session.context else await session.browser.contexts[0].new_page()
            page.set_default_timeout(DEFAULT_TIMEOUT_MS)
            page.set_default_navigation_timeout(self.settings.navigation_timeout)
            session.attach_page(page)

            await buffer.print_network_separator("NAVIGATION STARTED")
            terminal.info(f"Navigating to {url} ...")
            await page.goto(url, wait_until="domcontentloaded", timeout=self.settings.navigation_timeout)
            await buffer.print_console_separator("PAGE LOADED - Listening for console output")
            await buffer.print_network_separator("PAGE LOADED - Listening for network requests")

            for other in session.pages():
                if other is not page and not other.is_closed():
                    try:
                        await other.close()
                    except Exception as e:
                        logger.debug(f"Could not close extra tab: {e}")
        except Exception as e:
            logger.error(f"Navigation failed: {e}")
            terminal.error(f"Navigation to {url} failed: {e}")
            await session.shutdown(ExitCode.RUNTIME_ERROR)
            await self._stop_server()
            return ExitCode.RUNTIME_ERROR

        return await self._run_session(session)

    def _initial_page(self, session: MonitorSession) -> Optional[Page]:
        pages = session.context.pages if session.context else [p for c in session.browser.contexts for p in c.pages]
        return next((p for p in pages if p.url == "about:blank"), pages[0] if pages else None)

    async def _launch_native(self, playwright: Playwright, buffer: CaptureBuffer) -> MonitorSession:
        profile_dir = self.paths.chrome_profile_dir
        write_profile_preferences(profile_dir)

        args = list(NATIVE_LAUNCH_ARGS)
        options = {}
        if self.settings.headless:
            options["viewport"] = {"width": 1920, "height": 1080}
        else:
            args.append("--start-maximized")
            options["no_viewport"] = True

        context = await playwright.chromium.launch_persistent_context(
            str(profile_dir),
            headless=self.settings.headless,
            args=args,
            ignore_https_errors=True,
            **options,
        )

        pid = find_browser_pid(str(profile_dir))
        if pid:
            self.paths.pid_file.write_text(str(pid), encoding="utf-8")
            terminal.info(f"Browser PID {pid} (PID file: {self.paths.pid_file})")
            terminal.notice(f"If stuck: kill -9 $(cat {self.paths.pid_file})")

        session = MonitorSession(
            buffer,
            SessionMode.LAUNCH,
            playwright=playwright,
            context=context,
            pid_file=self.paths.pid_file,
            http_host=self.settings.http_host,
            http_port=self.settings.http_port,
            notice=terminal.notice,
        )
        session.watch_new_pages(context)
        terminal.success(f"Browser launched (profile: {profile_dir})")
        return session

    async def _launch_cross_host(self, playwright: Playwright, buffer: CaptureBuffer, url: str) -> MonitorSession:
        browser_path = self.resolver.detect_browser_path()
        if not browser_path:
            raise BrowserNotFoundError("Chrome not found on the Windows host. Install Chrome (or Chrome Canary) and try again.")

        killed = await self.resolver.terminate_managed_instances()
        if killed:
            await asyncio.sleep(1)

        instances = await self.resolver.discover_running_instances()
        port = await self._claim_port(find_free_port(instances, self.settings.debug_port), instances)
        profile_dir = await self.resolver.profile_dir()

        if not await self.resolver.launch_browser_process(browser_path, port, profile_dir):
            terminal.error("Failed to launch Chrome automatically. Start it manually:")
            terminal.command(manual_launch_command(browser_path, port, profile_dir))
            await self.reader.prompt("Press Enter when Chrome is running...")

        await asyncio.sleep(LAUNCH_SETTLE_SECONDS)
        bridge = await self._ensure_bridge(port, profile_dir)

        host = self.connect_host()
        browser = await SessionConnector(playwright).connect(host, port)
        session = MonitorSession(
            buffer,
            SessionMode.LAUNCH,
            playwright=playwright,
            browser=browser,
            host=host,
            port=port,
            bridge=bridge,
            http_host=self.settings.http_host,
            http_port=self.settings.http_port,
            notice=terminal.notice,
        )
        for context in browser.contexts:
            session.watch_new_pages(context)
        terminal.success(f"Connected to Chrome on the Windows host (port {port})")
        terminal.notice("Separate Chrome profile: you may need to log in to websites.")
        return session

    async def _claim_port(self, port: int, instances: List[BrowserInstance]) -> int:
        """Clear a stale forwarding rule on ``port``, or move to the next free port."""
        if not await self.resolver.is_port_blocked(port):
            return port

        terminal.info(f"Port {port} is in use, checking for port proxy...")
        removed = await self.resolver.remove_forwarding_rule_if_exists(port)
        if not removed and await self.resolver.is_port_blocked(port):
            terminal.warning(f"Port {port} is blocked, trying next available...")
            port = find_free_port(instances, port + 1)
            if await self.resolver.is_port_blocked(port):
                await self.resolver.remove_forwarding_rule_if_exists(port)
        return port

    async def _ensure_bridge(self, port: int, profile_dir: str) -> BridgeState:
        outcome = await self.resolver.ensure_forwarding_rule(port)
        if not outcome.installed:
            terminal.warning("Could not install the port forwarding rule. In PowerShell (Admin):")
            terminal.command(outcome.manual_command)
        return BridgeState(
            cross_host=True,
            gateway_address=self.connect_host(),
            port=port,
            forward_type=outcome.forward_type,
            profile_dir=profile_dir,
        )

    # Join mode

    async def run_join(self, port: Optional[int] = None) -> int:
        """Attach to a running browser and monitor one of its tabs."""
        self.reader.start()
        try:
            return await self._join(port)
        finally:
            self.reader.stop()

    async def _join(self, port: Optional[int]) -> int:
        port = port or self.settings.debug_port
        host = self.connect_host()

        bridge = None
        if self.cross_host:
            prepared = await self._prepare_cross_host_join(host, port)
            if prepared is None:
                return ExitCode.SUCCESS
            port, bridge = prepared

        await self._start_server()
        buffer = await self._make_buffer()
        playwright = await async_playwright().start()

        try:
            browser = await SessionConnector(playwright).connect(host, port)
        except ConnectionFailedError as e:
            await self._abort(playwright)
            return await self._handle_connect_failure(e, host, port)

        session = MonitorSession(
            buffer,
            SessionMode.ATTACH,
            playwright=playwright,
            browser=browser,
            host=host,
            port=port,
            bridge=bridge,
            http_host=self.settings.http_host,
            http_port=self.settings.http_port,
            notice=terminal.notice,
        )

        try:
            page = await select_page(list_user_pages(browser), self._choose_page)
        except NoPageError:
            terminal.error("No tabs found in browser")
            await session.shutdown(ExitCode.RUNTIME_ERROR)
            await self._stop_server()
            return ExitCode.RUNTIME_ERROR

        session.attach_page(page)
        for context in browser.contexts:
            session.watch_new_pages(context)
        terminal.success(f"Connected to http://{host}:{port}, monitoring {page.url}")

        await buffer.print_console_separator("CONNECTED - Listening for console output")
        await buffer.print_network_separator("CONNECTED - Listening for network requests")
        return await self._run_session(session)

    async def _prepare_cross_host_join(self, host: str, port: int):
        """Find, or offer to launch, this project's browser on the host.

        Returns:
            Tuple of (port, BridgeState), or None if the operator declined
        """
        browser_path = self.resolver.detect_browser_path()
        profile_dir = await self.resolver.profile_dir()
        instances = await self.resolver.discover_running_instances()
        match = self.resolver.match(instances)

        if instances:
            listing = ", ".join(
                f"port {i.port}{'*' if match.instance is i else ''}" for i in instances
            )
            terminal.info(f"Instances: {listing}")
        elif self.resolver.browser_running:
            terminal.warning("Chrome is running without a debugging port")

        if match.instance is not None:
            port = match.instance.port
            if not match.tier.is_confident:
                terminal.warning(
                    f"No Chrome for this project; port {port} uses profile {match.instance.profile} "
                    f"({match.tier.value} match)"
                )
                if not await self.reader.confirm("Connect to it anyway?", default=True):
                    return None
            if await is_endpoint_reachable(host, port, timeout=2.0):
                return port, BridgeState(cross_host=True, gateway_address=host, port=port, profile_dir=profile_dir)

            terminal.warning("Chrome found but not accessible from WSL")
            terminal.notice("Port proxy required (Chrome M113+ binds to 127.0.0.1 only)")
            bridge = await self._ensure_bridge(port, profile_dir)
            return port, bridge

        port = find_free_port(instances, port)
        if browser_path:
            terminal.info(f"No Chrome for this project. Port {port}, profile {profile_dir}")
            if await self.reader.confirm("Launch Chrome for this project?", default=True):
                port = await self._claim_port(port, instances)
                await self.resolver.terminate_managed_instances()
                terminal.info(f"Launching Chrome on port {port}...")
                if await self.resolver.launch_browser_process(browser_path, port, profile_dir):
                    await asyncio.sleep(LAUNCH_SETTLE_SECONDS)
                    return port, await self._ensure_bridge(port, profile_dir)
                terminal.error("Failed to launch Chrome automatically")

        terminal.warning("Start Chrome on Windows, then press Enter. In PowerShell (Admin):")
        terminal.command(manual_launch_command(browser_path or "chrome.exe", port, profile_dir))
        terminal.command(
            f"netsh interface portproxy add v4tov4 listenport={port} listenaddress=0.0.0.0 "
            f"connectport={port} connectaddress=127.0.0.1"
        )
        await self.reader.prompt("Press Enter when Chrome is running...")
        return port, BridgeState(cross_host=True, gateway_address=host, port=port, profile_dir=profile_dir)

    async def _handle_connect_failure(self, error: ConnectionFailedError, host: str, port: int) -> int:
        terminal.error(f"Cannot connect to Chrome at http://{host}:{port}")
        logger.debug(f"Last connection error: {error.last_error}")

        if not self.cross_host:
            terminal.warning("Make sure Chrome is running with remote debugging enabled:")
            terminal.command(f"google-chrome --remote-debugging-port={port}")
            terminal.command(f"chrome.exe --remote-debugging-port={port}")
            terminal.command(
                f"/Applications/Google\\ Chrome.app/Contents/MacOS/Google\\ Chrome --remote-debugging-port={port}"
            )
            terminal.warning("If connecting from a remote server, create an SSH reverse tunnel first:")
            terminal.command(f"ssh -R {port}:localhost:{port} user@this-server")
            return ExitCode.CONNECTION_ERROR

        diagnosis = await run_diagnostics(
            self.inspector,
            host,
            port,
            cross_host=True,
            browser_path=self.resolver.detect_browser_path(),
            profile_dir=await self.resolver.profile_dir(),
        )
        terminal.print_diagnostics(diagnosis)

        if diagnosis.has_port_proxy_conflict and await self.reader.confirm(
            "Do you want me to fix this automatically? (remove port proxy, restart Chrome)"
        ):
            outcome = await apply_port_proxy_fix(self.resolver, diagnosis, diagnosis.conflict_port or port)
            for message in outcome.errors:
                terminal.warning(message)
            if outcome.rule_removed:
                terminal.success(f"Port proxy for port {outcome.port} removed")
            if outcome.terminated_pids:
                terminal.success(f"Stopped Chrome (PIDs {', '.join(map(str, outcome.terminated_pids))})")
            terminal.info("Fix applied. Run browsermonitor again.")
            return ExitCode.SUCCESS

        return ExitCode.CONNECTION_ERROR

    # Interactive mode

    async def run_interactive(self) -> int:
        """Menu: open a browser, join a running one, or quit."""
        self.reader.start()
        try:
            terminal.info("")
            terminal.info("  o  open Chrome with a fresh profile")
            terminal.info("  j  join a running Chrome")
            terminal.info("  q  quit")
            choice = (await self.reader.prompt("Choose [o/j/q]:", "o")).lower()

            if choice.startswith("o"):
                url = await self.reader.prompt(f"URL [{self.settings.default_url}]:", self.settings.default_url)
                return await self._open(url)
            if choice.startswith("j"):
                return await self._join(await self._ask_join_port())
            return ExitCode.SUCCESS
        finally:
            self.reader.stop()

    async def _ask_join_port(self) -> int:
        ports = await self.scan_join_candidates()
        if not ports:
            terminal.warning(f"No Chrome with remote debugging found; trying port {self.settings.debug_port}")
            return self.settings.debug_port
        if len(ports) == 1:
            return ports[0]

        for index, port in enumerate(ports, start=1):
            terminal.info(f"  [{index}] port {port}")
        index = await self.reader.choose("Join instance", len(ports))
        return ports[index] if index is not None else ports[0]

    async def scan_join_candidates(self) -> List[int]:
        """Debugging ports of running browsers that could be joined."""
        if self.cross_host:
            return [instance.port for instance in await self.resolver.discover_running_instances()]

        host = self.connect_host()
        found = []
        for port in SCAN_PORTS:
            if await is_endpoint_reachable(host, port, timeout=0.8):
                found.append(port)
        return found

    async def _stop_server(self) -> None:
        if self.server is not None:
            await self.server.stop()
            self.server = None

    async def _abort(self, playwright: Playwright) -> None:
        await self._stop_server()
        try:
            await playwright.stop()
        except Exception as e:
            logger.debug(f"Error stopping Playwright: {e}")
