"""Network bridge resolver.

Makes a browser's remote-debugging port reachable from the monitor when the
two run on different network namespaces (a WSL guest and its Windows host):
finds or launches the browser on the host, matches running instances to the
current project, and provisions the host port-forwarding rule.
"""

import logging
import shutil
import sys
from pathlib import Path
from typing import List, Optional

from ..models.bridge import (
    BrowserInstance,
    ForwardingOutcome,
    ForwardType,
    MatchTier,
    ProjectMatch,
)
from .environment import LEGACY_PROFILE_MARKER, MANAGED_MARKERS, PROFILE_MARKER, project_id
from .inspector import HostInspector
from .polling import Detected, poll_with_backoff

logger = logging.getLogger(__name__)

PORT_SCAN_RANGE = 100
LOOPBACK_ADDRESSES = ("127.0.0.1", "::1")

WINDOWS_MOUNT = Path("/mnt/c")
WINDOWS_CHROME_PATHS = [
    r"C:\Program Files\Google\Chrome\Application\chrome.exe",
    r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
]
NATIVE_CHROME_COMMANDS = ["google-chrome", "google-chrome-stable", "chromium", "chromium-browser"]
MACOS_CHROME_PATH = "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"


def match_instance_to_project(instances: List[BrowserInstance], project: str) -> ProjectMatch:
    """Tiered matching of browser instances to a project.

    Tiers, best first: exact profile-id match, legacy naming convention,
    first externally bound instance, first instance at all. Profiles are
    compared case-insensitively. Only the first two tiers count as found;
    the fallbacks still name a candidate instance. The result is
    deterministic for the same inputs.

    Args:
        instances: Discovered instances, in discovery order
        project: Project id (``<name>_<hash>``)

    Returns:
        ProjectMatch with the chosen instance and its tier
    """
    if not instances:
        return ProjectMatch(found=False, tier=MatchTier.NONE)

    project = project.lower()
    project_name = project.rsplit("_", 1)[0]

    for instance in instances:
        profile = instance.profile.lower()
        if project in profile and any(marker in profile for marker in MANAGED_MARKERS):
            return ProjectMatch(found=True, instance=instance, tier=MatchTier.EXACT)

    legacy_markers = (".puppeteer-profile", PROFILE_MARKER, LEGACY_PROFILE_MARKER)
    for instance in instances:
        profile = instance.profile.lower()
        if project_name in profile and any(marker in profile for marker in legacy_markers):
            return ProjectMatch(found=True, instance=instance, tier=MatchTier.LEGACY)

    for instance in instances:
        if instance.bind_address == "0.0.0.0":
            return ProjectMatch(found=False, instance=instance, tier=MatchTier.ACCESSIBLE)

    return ProjectMatch(found=False, instance=instances[0], tier=MatchTier.FIRST)


def find_free_port(instances: List[BrowserInstance], start_port: int) -> int:
    """First port from ``start_port`` not claimed by a discovered instance.

    Scans 100 ports; if all are claimed, returns ``start_port`` even though
    it may collide.
    """
    used = {instance.port for instance in instances}
    for port in range(start_port, start_port + PORT_SCAN_RANGE):
        if port not in used:
            return port
    logger.warning(f"No free debug port in {start_port}-{start_port + PORT_SCAN_RANGE - 1}, reusing {start_port}")
    return start_port


def is_managed_profile(command_line: str) -> bool:
    """Whether a command line carries this tool's profile marker."""
    return any(marker in command_line for marker in MANAGED_MARKERS)


def manual_forwarding_command(port: int, connect_address: str = "127.0.0.1") -> str:
    forward_type = ForwardType.V4TOV6 if connect_address == "::1" else ForwardType.V4TOV4
    return (
        f"netsh interface portproxy add {forward_type.value} listenport={port} "
        f"listenaddress=0.0.0.0 connectport={port} connectaddress={connect_address}"
    )


def manual_launch_command(browser_path: str, port: int, profile_dir: str) -> str:
    return f"\"{browser_path}\" --remote-debugging-port={port} --user-data-dir=\"{profile_dir}\""


class NetworkBridgeResolver:
    """Locates, launches and exposes the browser for one project."""

    def __init__(
        self,
        inspector: HostInspector,
        project_root: Path,
        cross_host: bool = False,
        windows_mount: Path = WINDOWS_MOUNT,
    ):
        """Initialize resolver.

        Args:
            inspector: Host inspector for the machine running the browser
            project_root: Project directory (drives the profile identity)
            cross_host: Whether the browser runs on the other side of a guest/host boundary
            windows_mount: Where the host's C: drive is mounted in the guest
        """
        self.inspector = inspector
        self.project_root = Path(project_root).resolve()
        self.cross_host = cross_host
        self.windows_mount = windows_mount
        self.project_id = project_id(self.project_root)
        self.browser_running = False

    async def discover_running_instances(self) -> List[BrowserInstance]:
        """Browser processes with a debugging port, de-duplicated by port."""
        processes = await self.inspector.list_browser_processes()
        self.browser_running = bool(processes)
        instances = await self.inspector.list_browser_instances() if processes else []
        logger.debug(f"Discovered {len(instances)} debuggable browser instance(s)")
        return instances

    def match(self, instances: List[BrowserInstance]) -> ProjectMatch:
        return match_instance_to_project(instances, self.project_id)

    async def profile_dir(self) -> str:
        """Dedicated profile directory; never the operator's default profile."""
        if self.cross_host:
            app_data = await self.inspector.local_app_data()
            if app_data:
                return f"{app_data}\\{PROFILE_MARKER}\\{self.project_id}"
            return f"C:\\Temp\\{PROFILE_MARKER}\\{self.project_id}"
        return str(self.project_root / ".browsermonitor" / ".chrome-profile")

    def _windows_to_guest_path(self, windows_path: str) -> Path:
        relative = windows_path.split(":", 1)[1].lstrip("\\").replace("\\", "/")
        return self.windows_mount / relative

    def detect_browser_path(self) -> Optional[str]:
        """Locate a Chrome executable on the machine that will run it."""
        if self.cross_host:
            users_dir = self.windows_mount / "Users"
            if users_dir.exists():
                for canary in sorted(users_dir.glob("*/AppData/Local/Google/Chrome SxS/Application/chrome.exe")):
                    user = canary.relative_to(users_dir).parts[0]
                    return f"C:\\Users\\{user}\\AppData\\Local\\Google\\Chrome SxS\\Application\\chrome.exe"
            for windows_path in WINDOWS_CHROME_PATHS:
                if self._windows_to_guest_path(windows_path).exists():
                    return windows_path
            return None

        for command in NATIVE_CHROME_COMMANDS:
            found = shutil.which(command)
            if found:
                return found
        if sys.platform == "darwin" and Path(MACOS_CHROME_PATH).exists():
            return MACOS_CHROME_PATH
        return None

    async def is_port_blocked(self, port: int) -> bool:
        return bool(await self.inspector.listening_addresses(port))

    async def remove_forwarding_rule_if_exists(self, port: int) -> bool:
        """Delete any forwarding rule listening on ``port``.

        Returns:
            True if a rule existed and was removed
        """
        rules = [r for r in await self.inspector.list_forwarding_rules() if r.listen_port == port]
        if not rules:
            return False
        removed = True
        for rule in rules:
            removed &= await self.inspector.delete_forwarding_rule(port, rule.forward_type, rule.listen_address)
        if removed:
            logger.info(f"Removed forwarding rule for port {port}")
        return removed

    async def ensure_forwarding_rule(
        self,
        port: int,
        target_address: Optional[str] = None,
        poll_interval: float = 0.5,
        poll_attempts: int = 10,
    ) -> ForwardingOutcome:
        """Idempotently install the forwarding rule matching the browser's bind address.

        Stale rules for the port are deleted first. The browser binds its
        port asynchronously after launch, so the loopback address is polled
        for; if it never shows up, IPv4 is assumed. Failure to add the rule
        is returned with the manual command, never raised.

        Args:
            port: Remote debugging port
            target_address: Known loopback address; skips polling
            poll_interval: Seconds between bind checks
            poll_attempts: Number of bind checks

        Returns:
            ForwardingOutcome
        """
        for forward_type in (ForwardType.V4TOV4, ForwardType.V4TOV6):
            await self.inspector.delete_forwarding_rule(port, forward_type)

        bind_detected = target_address is not None
        if target_address is None:
            async def loopback_listener():
                addresses = await self.inspector.listening_addresses(port)
                for address in LOOPBACK_ADDRESSES:
                    if address in addresses:
                        return address
                return None

            result = await poll_with_backoff(loopback_listener, interval=poll_interval, attempts=poll_attempts)
            if isinstance(result, Detected):
                target_address = result.value
                bind_detected = True
                logger.debug(f"Browser bound to {target_address}:{port} after {result.attempts} check(s)")
            else:
                target_address = "127.0.0.1"
                logger.debug(f"Bind address for port {port} not detected, assuming 127.0.0.1")

        forward_type = ForwardType.V4TOV6 if target_address == "::1" else ForwardType.V4TOV4
        installed = await self.inspector.add_forwarding_rule(port, target_address, forward_type)

        if installed:
            logger.info(f"Forwarding 0.0.0.0:{port} -> {target_address}:{port} ({forward_type.value})")
            return ForwardingOutcome(
                installed=True,
                port=port,
                forward_type=forward_type,
                bind_address=target_address,
                bind_detected=bind_detected,
            )

        return ForwardingOutcome(
            installed=False,
            port=port,
            forward_type=ForwardType.NONE,
            bind_address=target_address,
            bind_detected=bind_detected,
            manual_command=manual_forwarding_command(port, target_address),
        )

    async def launch_browser_process(
        self,
        browser_path: str,
        port: int,
        profile_dir: str,
        url: Optional[str] = None,
    ) -> bool:
        """Start the browser with an explicit debugging port and dedicated profile.

        Does not retry.
        """
        args = [
            f"--remote-debugging-port={port}",
            f"--user-data-dir={profile_dir}",
            "--disable-session-crashed-bubble",
            "--start-maximized",
        ]
        if url:
            args.append(url)

        logger.info(f"Launching browser on port {port} with profile {profile_dir}")
        return await self.inspector.start_process(browser_path, args)

    async def terminate_managed_instances(self, only_managed: bool = True) -> List[int]:
        """Kill browser processes launched by this tool.

        Only processes whose command line carries the profile marker are
        touched, regardless of ``only_managed``.

        Returns:
            PIDs whose process tree was terminated
        """
        if not only_managed:
            logger.warning("Refusing to terminate unmanaged browser processes; limiting to managed instances")

        killed = []
        for process in await self.inspector.list_browser_processes():
            if not is_managed_profile(process.command_line):
                continue
            if await self.inspector.kill_process_tree(process.pid):
                killed.append(process.pid)

        if killed:
            logger.info(f"Terminated managed browser process(es): {killed}")
        return killed
