"""Connection diagnostics.

This module provides the ordered probe sequence run after a failed
connection attempt. Each probe inspects one aspect of the environment
(browser processes, sockets, launch arguments, firewall, forwarding rules,
stray rules, connectivity) and records what it found in a shared context;
run_diagnostics() then classifies the failure into a DiagnosticResult.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from ..bridge.inspector import HostInspector
from ..bridge.resolver import is_managed_profile, manual_forwarding_command, manual_launch_command
from ..exceptions import EndpointUnreachableError
from ..models import (
    BrowserInstance,
    DiagnosticResult,
    ForwardingRule,
    ProbeResult,
    ProbeStatus,
    ProcessInfo,
)
from ..session.connector import fetch_version_info

logger = logging.getLogger(__name__)

STRAY_RULE_SCAN_RANGE = (9222, 9322)


@dataclass
class DiagnosticContext:
    """Facts gathered by the probes, in probe order."""
    inspector: HostInspector
    host: str
    port: int
    cross_host: bool = False
    browser_path: Optional[str] = None
    profile_dir: Optional[str] = None

    processes: List[ProcessInfo] = field(default_factory=list)
    instances: List[BrowserInstance] = field(default_factory=list)
    listeners: List[str] = field(default_factory=list)
    port_instance: Optional[BrowserInstance] = None
    other_port: Optional[int] = None
    firewall_allows: Optional[bool] = None
    port_rules: List[ForwardingRule] = field(default_factory=list)
    stray_rules: List[ForwardingRule] = field(default_factory=list)
    conflict: bool = False
    reachable: bool = False


class DiagnosticProbe(ABC):
    """Abstract base class for diagnostic probes."""

    def __init__(self, name: str, timeout: float = 10.0):
        """Initialize probe.

        Args:
            name: Name of the probe
            timeout: Timeout for the probe in seconds
        """
        self.name = name
        self.timeout = timeout

    @abstractmethod
    async def probe(self, ctx: DiagnosticContext) -> ProbeResult:
        """Inspect the environment and update ``ctx``.

        Returns:
            ProbeResult
        """

    def result(self, status: ProbeStatus, message: str, **details) -> ProbeResult:
        return ProbeResult(name=self.name, status=status, message=message, details=details)

    async def run_probe(self, ctx: DiagnosticContext) -> ProbeResult:
        """Run probe with timeout and error handling."""
        start_time = time.time()

        try:
            result = await asyncio.wait_for(self.probe(ctx), timeout=self.timeout)
        except asyncio.TimeoutError:
            result = self.result(ProbeStatus.FAILED, f"Probe timed out after {self.timeout}s")
        except Exception as e:
            logger.error(f"Diagnostic probe {self.name} failed: {e}", exc_info=True)
            result = self.result(ProbeStatus.FAILED, f"Probe failed: {e}", error=str(e))

        result.duration_ms = round((time.time() - start_time) * 1000, 2)
        return result


class BrowserProcessProbe(DiagnosticProbe):
    """Browser processes on the host."""

    def __init__(self):
        super().__init__("browser_processes")

    async def probe(self, ctx: DiagnosticContext) -> ProbeResult:
        ctx.processes = await ctx.inspector.list_browser_processes()
        ctx.instances = await ctx.inspector.list_browser_instances() if ctx.processes else []

        if not ctx.processes:
            return self.result(ProbeStatus.FAILED, "No Chrome process is running")

        managed = [p.pid for p in ctx.processes if is_managed_profile(p.command_line)]
        return self.result(
            ProbeStatus.OK,
            f"{len(ctx.processes)} Chrome process(es), {len(ctx.instances)} with a debugging port",
            managed_pids=managed,
            debug_ports=[i.port for i in ctx.instances],
        )


class ListeningSocketProbe(DiagnosticProbe):
    """Listeners on the requested port."""

    def __init__(self):
        super().__init__("listening_sockets")

    async def probe(self, ctx: DiagnosticContext) -> ProbeResult:
        ctx.listeners = await ctx.inspector.listening_addresses(ctx.port)
        if not ctx.listeners:
            return self.result(ProbeStatus.FAILED, f"Nothing is listening on port {ctx.port}")
        return self.result(
            ProbeStatus.OK,
            f"Listening on port {ctx.port}: {', '.join(ctx.listeners)}",
            addresses=ctx.listeners,
        )


class LaunchArgumentsProbe(DiagnosticProbe):
    """Debugging port in the launch arguments of running browsers."""

    def __init__(self):
        super().__init__("launch_arguments")

    async def probe(self, ctx: DiagnosticContext) -> ProbeResult:
        if not ctx.processes:
            return self.result(ProbeStatus.SKIPPED, "No browser processes to inspect")

        ctx.port_instance = next((i for i in ctx.instances if i.port == ctx.port), None)
        if ctx.port_instance is not None:
            return self.result(
                ProbeStatus.OK,
                f"Chrome was started with --remote-debugging-port={ctx.port} "
                f"(bind {ctx.port_instance.bind_address})",
                bind_address=ctx.port_instance.bind_address,
            )

        managed = [i for i in ctx.instances if is_managed_profile(i.command_line or i.profile)]
        others = managed or ctx.instances
        if others:
            ctx.other_port = others[0].port
            return self.result(
                ProbeStatus.WARNING,
                f"Chrome uses debugging port {ctx.other_port}, not {ctx.port}",
                ports=[i.port for i in others],
            )

        return self.result(ProbeStatus.FAILED, "Chrome is running without --remote-debugging-port")


class FirewallProbe(DiagnosticProbe):
    """Inbound firewall allowance for the port."""

    def __init__(self):
        super().__init__("firewall")

    async def probe(self, ctx: DiagnosticContext) -> ProbeResult:
        if not ctx.cross_host:
            return self.result(ProbeStatus.SKIPPED, "Not applicable on a single host")

        ctx.firewall_allows = await ctx.inspector.firewall_allows(ctx.port)
        if ctx.firewall_allows is None:
            return self.result(ProbeStatus.SKIPPED, "Firewall state could not be read")
        if ctx.firewall_allows:
            return self.result(ProbeStatus.OK, f"An inbound allow rule covers port {ctx.port}")
        return self.result(ProbeStatus.WARNING, f"No inbound allow rule for port {ctx.port}")


class ForwardingRuleProbe(DiagnosticProbe):
    """Forwarding rule for the port and whether its target is alive."""

    def __init__(self):
        super().__init__("forwarding_rule")

    async def probe(self, ctx: DiagnosticContext) -> ProbeResult:
        if not ctx.cross_host:
            return self.result(ProbeStatus.SKIPPED, "Not applicable on a single host")

        rules = await ctx.inspector.list_forwarding_rules()
        ctx.port_rules = [r for r in rules if r.listen_port == ctx.port]
        ctx.stray_rules = [r for r in rules if r.listen_port != ctx.port]

        if not ctx.port_rules:
            return self.result(ProbeStatus.WARNING, f"No forwarding rule for port {ctx.port}")

        dead = []
        for rule in ctx.port_rules:
            if rule.connect_port == ctx.port:
                targets = ctx.listeners
            else:
                targets = await ctx.inspector.listening_addresses(rule.connect_port)
            if rule.connect_address not in targets:
                dead.append(rule)

        descriptions = [
            f"{r.listen_address}:{r.listen_port} -> {r.connect_address}:{r.connect_port} ({r.forward_type.value})"
            for r in ctx.port_rules
        ]
        if dead:
            ctx.conflict = True
            return self.result(
                ProbeStatus.FAILED,
                f"Forwarding rule points at a port nothing listens on: {descriptions[0]}",
                rules=descriptions,
            )
        return self.result(ProbeStatus.OK, f"Forwarding rule active: {descriptions[0]}", rules=descriptions)


class StrayRuleProbe(DiagnosticProbe):
    """Forwarding rules for other debug ports."""

    def __init__(self, port_range=STRAY_RULE_SCAN_RANGE):
        super().__init__("stray_rules")
        self.port_range = port_range

    async def probe(self, ctx: DiagnosticContext) -> ProbeResult:
        if not ctx.cross_host:
            return self.result(ProbeStatus.SKIPPED, "Not applicable on a single host")

        low, high = self.port_range
        stray = sorted({r.listen_port for r in ctx.stray_rules if low <= r.listen_port < high})
        if stray:
            return self.result(
                ProbeStatus.WARNING,
                f"Forwarding rules for other debug ports: {', '.join(map(str, stray))}",
                ports=stray,
            )
        return self.result(ProbeStatus.OK, f"No other forwarding rules in {low}-{high - 1}")


class ConnectivityProbe(DiagnosticProbe):
    """Direct request to the /json/version endpoint."""

    def __init__(self, timeout: float = 3.0):
        super().__init__("connectivity", timeout=timeout + 1)
        self.request_timeout = timeout

    async def probe(self, ctx: DiagnosticContext) -> ProbeResult:
        try:
            info = await fetch_version_info(ctx.host, ctx.port, self.request_timeout)
        except EndpointUnreachableError as e:
            return self.result(ProbeStatus.FAILED, str(e))

        ctx.reachable = True
        return self.result(
            ProbeStatus.OK,
            f"http://{ctx.host}:{ctx.port}/json/version answered ({info.get('Browser', 'unknown')})",
        )


def default_probes() -> List[DiagnosticProbe]:
    return [
        BrowserProcessProbe(),
        ListeningSocketProbe(),
        LaunchArgumentsProbe(),
        FirewallProbe(),
        ForwardingRuleProbe(),
        StrayRuleProbe(),
        ConnectivityProbe(),
    ]


def firewall_rule_command(port: int) -> str:
    return (
        f"netsh advfirewall firewall add rule name=\"Chrome Debug {port}\" "
        f"dir=in action=allow protocol=TCP localport={port}"
    )


def portproxy_delete_command(port: int) -> str:
    return f"netsh interface portproxy delete v4tov4 listenport={port} listenaddress=0.0.0.0"


def classify(ctx: DiagnosticContext, probes: List[ProbeResult]) -> DiagnosticResult:
    """Summarize probe findings into a DiagnosticResult."""
    actual_port = None
    if ctx.other_port is not None:
        actual_port = ctx.other_port
    elif ctx.conflict:
        actual_port = ctx.port

    suggested_fix = None
    if not ctx.reachable:
        if ctx.conflict:
            suggested_fix = portproxy_delete_command(ctx.port)
        elif ctx.port_instance is None and ctx.browser_path and ctx.profile_dir:
            suggested_fix = manual_launch_command(ctx.browser_path, ctx.port, ctx.profile_dir)
        elif ctx.cross_host and ctx.firewall_allows is False:
            suggested_fix = firewall_rule_command(ctx.port)
        elif ctx.cross_host and ctx.port_instance is not None and not ctx.port_rules:
            loopback = "::1" if "::1" in ctx.listeners else "127.0.0.1"
            suggested_fix = manual_forwarding_command(ctx.port, loopback)

    return DiagnosticResult(
        reachable=ctx.reachable,
        has_port_proxy_conflict=ctx.conflict,
        actual_port=actual_port,
        conflict_port=ctx.port if ctx.conflict else None,
        suggested_fix=suggested_fix,
        probes=probes,
    )


async def run_diagnostics(
    inspector: HostInspector,
    host: str,
    port: int,
    cross_host: bool = False,
    browser_path: Optional[str] = None,
    profile_dir: Optional[str] = None,
    probes: Optional[List[DiagnosticProbe]] = None,
) -> DiagnosticResult:
    """Run the probe sequence in order and classify the failure.

    Args:
        inspector: Host inspector for the machine running the browser
        host: Address the monitor connects to
        port: Requested debugging port
        cross_host: Whether forwarding rules and firewall apply
        browser_path: Browser executable, for a launch suggestion
        profile_dir: Dedicated profile, for a launch suggestion
        probes: Probe sequence (default: the full sequence)

    Returns:
        DiagnosticResult
    """
    ctx = DiagnosticContext(
        inspector=inspector,
        host=host,
        port=port,
        cross_host=cross_host,
        browser_path=browser_path,
        profile_dir=profile_dir,
    )

    results = []
    for probe in probes or default_probes():
        result = await probe.run_probe(ctx)
        logger.debug(f"Probe {result.name}: {result.status.value} - {result.message}")
        results.append(result)

    diagnosis = classify(ctx, results)
    logger.info(
        f"Diagnostics for {host}:{port}: reachable={diagnosis.reachable}, "
        f"conflict={diagnosis.has_port_proxy_conflict}, actual_port={diagnosis.actual_port}"
    )
    return diagnosis
