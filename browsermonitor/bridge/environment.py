"""Host environment detection for the network bridge.

Decides whether the monitor runs inside a virtualized guest (WSL) while the
browser runs on the host, and works out the address and profile identity
the bridge needs.
"""

import hashlib
import logging
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

PROC_VERSION = Path("/proc/version")
RESOLV_CONF = Path("/etc/resolv.conf")

PROFILE_MARKER = "browsermonitor"
LEGACY_PROFILE_MARKER = "puppeteer-monitor"
MANAGED_MARKERS = (PROFILE_MARKER, LEGACY_PROFILE_MARKER)


def detect_cross_host_environment(proc_version: Path = PROC_VERSION) -> bool:
    """Check kernel signals for a WSL guest.

    Args:
        proc_version: Path of the kernel version file

    Returns:
        True if /proc/version mentions microsoft or wsl
    """
    try:
        release = proc_version.read_text(encoding='utf-8', errors='ignore').lower()
    except OSError:
        return False
    return "microsoft" in release or "wsl" in release


def _gateway_from_ip_route() -> Optional[str]:
    try:
        result = subprocess.run(
            ["ip", "route", "show", "default"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"ip route failed: {e}")
        return None

    if result.returncode != 0:
        return None

    # default via <IP> dev eth0 ...
    parts = result.stdout.strip().split()
    if len(parts) >= 3 and parts[0] == "default" and parts[1] == "via":
        return parts[2]
    return None


def _nameserver_from_resolv_conf(resolv_conf: Path) -> Optional[str]:
    try:
        for line in resolv_conf.read_text(encoding='utf-8').splitlines():
            line = line.strip()
            if line.startswith("nameserver"):
                parts = line.split()
                if len(parts) >= 2:
                    return parts[1]
    except OSError:
        pass
    return None


def resolve_host_gateway_address(
    proc_version: Path = PROC_VERSION,
    resolv_conf: Path = RESOLV_CONF,
) -> Optional[str]:
    """Best-effort address of the host as seen from the guest.

    Returns:
        Gateway address, or None when not cross-host or undetectable
    """
    if not detect_cross_host_environment(proc_version):
        return None

    address = _gateway_from_ip_route() or _nameserver_from_resolv_conf(resolv_conf)
    if address:
        logger.debug(f"Resolved host gateway address: {address}")
    else:
        logger.warning("Could not determine host gateway address from guest")
    return address


def resolve_connect_host(explicit_host: Optional[str] = None) -> str:
    """Host used to reach the browser's control port."""
    if explicit_host:
        return explicit_host
    return resolve_host_gateway_address() or "localhost"


def project_id(project_root: Path) -> str:
    """Stable identifier for a project: name plus a short path hash."""
    root = Path(project_root).resolve()
    digest = hashlib.sha1(str(root).encode('utf-8')).hexdigest()[:8]
    return f"{root.name}_{digest}"
