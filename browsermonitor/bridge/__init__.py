"""Network bridge between the monitor and a browser on another host.

Main Components:
- environment: cross-host detection, gateway address, project identity
- inspector: HostInspector interface with Windows (from WSL) and local implementations
- polling: bounded poll-with-backoff returning Detected or TimedOut
- resolver: instance discovery and matching, forwarding rules, browser launch
"""

from .environment import (
    detect_cross_host_environment,
    resolve_host_gateway_address,
    resolve_connect_host,
    project_id,
    PROFILE_MARKER,
)
from .inspector import (
    HostInspector,
    WindowsHostInspector,
    LocalHostInspector,
    create_host_inspector,
    find_browser_pid,
    parse_browser_command_line,
    parse_browser_instances,
    parse_netstat_listeners,
    parse_portproxy_table,
)
from .polling import Detected, TimedOut, poll_with_backoff
from .resolver import (
    NetworkBridgeResolver,
    match_instance_to_project,
    find_free_port,
    is_managed_profile,
    manual_forwarding_command,
    manual_launch_command,
)

__all__ = [
    "detect_cross_host_environment",
    "resolve_host_gateway_address",
    "resolve_connect_host",
    "project_id",
    "PROFILE_MARKER",
    "HostInspector",
    "WindowsHostInspector",
    "LocalHostInspector",
    "create_host_inspector",
    "find_browser_pid",
    "parse_browser_command_line",
    "parse_browser_instances",
    "parse_netstat_listeners",
    "parse_portproxy_table",
    "Detected",
    "TimedOut",
    "poll_with_backoff",
    "NetworkBridgeResolver",
    "match_instance_to_project",
    "find_free_port",
    "is_managed_profile",
    "manual_forwarding_command",
    "manual_launch_command",
]
