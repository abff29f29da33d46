"""Unit tests for connection diagnostics and the port-proxy fix."""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from browsermonitor.bridge import NetworkBridgeResolver
from browsermonitor.diagnostics import DiagnosticProbe, apply_port_proxy_fix, run_diagnostics
from browsermonitor.diagnostics import probes as probes_module
from browsermonitor.exceptions import EndpointUnreachableError
from browsermonitor.models import DiagnosticResult, ForwardingRule, ForwardType, ProbeStatus, ProcessInfo
from tests.fakes import FakeHostInspector


MANAGED_CHROME = (
    "chrome.exe --remote-debugging-port=9223 "
    "--user-data-dir=C:\\Users\\dev\\AppData\\Local\\browsermonitor\\shop_1a2b3c4d"
)


def stale_rule(port=9222):
    return ForwardingRule(
        listen_address="0.0.0.0",
        listen_port=port,
        connect_address="127.0.0.1",
        connect_port=port,
        forward_type=ForwardType.V4TOV4,
    )


def unreachable():
    return patch.object(
        probes_module,
        "fetch_version_info",
        AsyncMock(side_effect=EndpointUnreachableError("http://172.20.0.1:9222/json/version", "timed out")),
    )


class TestProbeRunner:
    """Tests for DiagnosticProbe.run_probe."""

    @pytest.mark.asyncio
    async def test_probe_exception_becomes_failed_result(self):
        class BrokenProbe(DiagnosticProbe):
            async def probe(self, ctx):
                raise RuntimeError("netstat.exe not found")

        result = await BrokenProbe("broken").run_probe(None)

        assert result.status == ProbeStatus.FAILED
        assert "netstat.exe not found" in result.message
        assert result.duration_ms is not None

    @pytest.mark.asyncio
    async def test_probe_timeout(self):
        class SlowProbe(DiagnosticProbe):
            async def probe(self, ctx):
                await asyncio.sleep(1)

        result = await SlowProbe("slow", timeout=0.01).run_probe(None)

        assert result.status == ProbeStatus.FAILED
        assert "timed out" in result.message


class TestDiagnostics:
    """Tests for run_diagnostics classification."""

    @pytest.mark.asyncio
    async def test_port_proxy_conflict(self):
        # The rule's own listener holds 0.0.0.0:9222; Chrome moved to 9223
        inspector = FakeHostInspector(
            processes=[ProcessInfo(pid=100, command_line=MANAGED_CHROME)],
            listeners={9222: ["0.0.0.0"], 9223: ["127.0.0.1"]},
            rules=[stale_rule(9222)],
        )

        with unreachable():
            result = await run_diagnostics(inspector, "172.20.0.1", 9222, cross_host=True)

        assert result.reachable is False
        assert result.has_port_proxy_conflict is True
        assert result.actual_port == 9223
        assert result.conflict_port == 9222
        assert result.suggested_fix == "netsh interface portproxy delete v4tov4 listenport=9222 listenaddress=0.0.0.0"
        assert [p.name for p in result.probes] == [
            "browser_processes",
            "listening_sockets",
            "launch_arguments",
            "firewall",
            "forwarding_rule",
            "stray_rules",
            "connectivity",
        ]

    @pytest.mark.asyncio
    async def test_live_rule_is_not_a_conflict(self):
        inspector = FakeHostInspector(
            processes=[ProcessInfo(pid=100, command_line="chrome.exe --remote-debugging-port=9222")],
            listeners={9222: ["0.0.0.0", "127.0.0.1"]},
            rules=[stale_rule(9222)],
        )

        with patch.object(probes_module, "fetch_version_info", AsyncMock(return_value={"Browser": "Chrome/120"})):
            result = await run_diagnostics(inspector, "172.20.0.1", 9222, cross_host=True)

        assert result.reachable is True
        assert result.has_port_proxy_conflict is False
        assert result.suggested_fix is None

    @pytest.mark.asyncio
    async def test_no_browser_suggests_launch(self):
        inspector = FakeHostInspector()

        with unreachable():
            result = await run_diagnostics(
                inspector,
                "172.20.0.1",
                9222,
                cross_host=True,
                browser_path="C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
                profile_dir="C:\\Temp\\browsermonitor\\shop",
            )

        assert result.probes[0].status == ProbeStatus.FAILED
        assert "--remote-debugging-port=9222" in result.suggested_fix
        assert result.actual_port is None

    @pytest.mark.asyncio
    async def test_missing_rule_suggests_forwarding(self):
        inspector = FakeHostInspector(
            processes=[ProcessInfo(pid=100, command_line="chrome.exe --remote-debugging-port=9222")],
            listeners={9222: ["::1"]},
        )

        with unreachable():
            result = await run_diagnostics(inspector, "172.20.0.1", 9222, cross_host=True)

        assert result.suggested_fix.startswith("netsh interface portproxy add v4tov6 listenport=9222")

    @pytest.mark.asyncio
    async def test_stray_rules_reported(self):
        inspector = FakeHostInspector(rules=[stale_rule(9225), stale_rule(8080)])

        with unreachable():
            result = await run_diagnostics(inspector, "172.20.0.1", 9222, cross_host=True)

        stray = next(p for p in result.probes if p.name == "stray_rules")
        assert stray.status == ProbeStatus.WARNING
        assert stray.details["ports"] == [9225]

    @pytest.mark.asyncio
    async def test_single_host_skips_bridge_probes(self):
        inspector = FakeHostInspector(
            processes=[ProcessInfo(pid=100, command_line="chrome --remote-debugging-port=9222")],
            listeners={9222: ["127.0.0.1"]},
        )

        with unreachable():
            result = await run_diagnostics(inspector, "localhost", 9222, cross_host=False)

        statuses = {p.name: p.status for p in result.probes}
        assert statuses["firewall"] == ProbeStatus.SKIPPED
        assert statuses["forwarding_rule"] == ProbeStatus.SKIPPED
        assert result.has_port_proxy_conflict is False


class TestPortProxyFix:
    """Tests for apply_port_proxy_fix."""

    @pytest.mark.asyncio
    async def test_fix_removes_rule_and_stops_managed_chrome(self, tmp_path):
        inspector = FakeHostInspector(
            processes=[
                ProcessInfo(pid=100, command_line=MANAGED_CHROME),
                ProcessInfo(pid=200, command_line="chrome.exe --profile-directory=Default"),
            ],
            listeners={9222: ["0.0.0.0"], 9223: ["127.0.0.1"]},
            rules=[stale_rule(9222)],
        )
        resolver = NetworkBridgeResolver(inspector, tmp_path, cross_host=True)

        with unreachable():
            diagnosis = await run_diagnostics(inspector, "172.20.0.1", 9222, cross_host=True)
        outcome = await apply_port_proxy_fix(resolver, diagnosis, 9222)

        assert outcome.rule_removed is True
        assert outcome.terminated_pids == [100]
        assert inspector.rules == []
        assert (9222, ForwardType.V4TOV6) in inspector.deleted

    @pytest.mark.asyncio
    async def test_fix_without_conflict_changes_nothing(self, tmp_path):
        inspector = FakeHostInspector(
            processes=[ProcessInfo(pid=100, command_line=MANAGED_CHROME)],
            rules=[stale_rule(9222)],
        )
        resolver = NetworkBridgeResolver(inspector, tmp_path, cross_host=True)

        outcome = await apply_port_proxy_fix(resolver, DiagnosticResult(has_port_proxy_conflict=False), 9222)

        assert outcome.rule_removed is False
        assert outcome.errors
        assert inspector.deleted == []
        assert inspector.killed == []
