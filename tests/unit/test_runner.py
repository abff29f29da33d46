"""Unit tests for MonitorRunner decision paths that run without a browser."""

import io
import json

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from browsermonitor.cli import ExitCode, MonitorRunner
from browsermonitor.cli import runner as runner_module
from browsermonitor.cli.runner import write_profile_preferences
from browsermonitor.control import KeyReader
from browsermonitor.diagnostics import probes as probes_module
from browsermonitor.exceptions import ConnectionFailedError, EndpointUnreachableError
from browsermonitor.models import DiagnosticResult, ForwardingRule, ForwardType, ProcessInfo
from browsermonitor.settings import MonitorSettings
from tests.fakes import FakeHostInspector


HOST = "172.20.0.1"
MOVED_CHROME = (
    "chrome.exe --remote-debugging-port=9223 "
    "--user-data-dir=C:\\Users\\dev\\AppData\\Local\\browsermonitor\\shop_1a2b3c4d"
)


def make_runner(paths, inspector=None, cross_host=False, stdin=""):
    inspector = inspector or FakeHostInspector()
    with patch.object(runner_module, "detect_cross_host_environment", return_value=cross_host), \
            patch.object(runner_module, "create_host_inspector", return_value=inspector):
        runner = MonitorRunner(MonitorSettings(), paths, host=HOST, reader=KeyReader(io.StringIO(stdin)))
    runner.reader.start()
    return runner


class TestProfilePreferences:
    """Tests for write_profile_preferences."""

    def test_existing_preferences_are_kept(self, tmp_path):
        prefs_file = tmp_path / "Default" / "Preferences"
        prefs_file.parent.mkdir(parents=True)
        prefs_file.write_text(json.dumps({"browser": {"theme": "dark"}, "profile": {"name": "dev"}}))

        write_profile_preferences(tmp_path)

        prefs = json.loads(prefs_file.read_text())
        assert prefs["browser"] == {"theme": "dark"}
        assert prefs["profile"] == {"name": "dev", "exit_type": "Normal"}
        assert prefs["session"]["restore_on_startup"] == 5

    def test_corrupt_preferences_replaced(self, tmp_path):
        prefs_file = tmp_path / "Default" / "Preferences"
        prefs_file.parent.mkdir(parents=True)
        prefs_file.write_text("{truncated")

        write_profile_preferences(tmp_path)

        assert json.loads(prefs_file.read_text())["profile"]["exit_type"] == "Normal"


def test_exit_codes():
    assert {code.name: code.value for code in ExitCode} == {
        "SUCCESS": 0,
        "RUNTIME_ERROR": 1,
        "CONFIG_ERROR": 3,
        "CONNECTION_ERROR": 4,
    }


class TestJoinCandidates:
    """Tests for port scanning in interactive join."""

    @pytest.mark.asyncio
    async def test_native_scan_probes_range(self, project_paths):
        runner = make_runner(project_paths)
        reachable = AsyncMock(side_effect=lambda host, port, timeout: port in (9222, 9225))

        with patch.object(runner_module, "is_endpoint_reachable", reachable):
            ports = await runner.scan_join_candidates()

        assert ports == [9222, 9225]
        assert reachable.await_count == 8

    @pytest.mark.asyncio
    async def test_cross_host_scan_uses_inspector(self, project_paths):
        inspector = FakeHostInspector(processes=[
            ProcessInfo(pid=1, command_line="chrome.exe --remote-debugging-port=9224"),
        ])
        runner = make_runner(project_paths, inspector, cross_host=True)

        assert await runner.scan_join_candidates() == [9224]

    @pytest.mark.asyncio
    async def test_no_candidates_falls_back_to_debug_port(self, project_paths):
        runner = make_runner(project_paths)

        with patch.object(runner_module, "is_endpoint_reachable", AsyncMock(return_value=False)):
            assert await runner._ask_join_port() == 9222


class TestCrossHostJoin:
    """Tests for instance matching before a cross-host join."""

    @pytest.mark.asyncio
    async def test_exact_match_reachable(self, project_paths):
        runner = make_runner(project_paths, cross_host=True)
        profile = f"C:\\Users\\dev\\AppData\\Local\\browsermonitor\\{runner.resolver.project_id}"
        runner.inspector.processes = [
            ProcessInfo(pid=1, command_line=f"chrome.exe --remote-debugging-port=9226 --user-data-dir={profile}"),
        ]

        with patch.object(runner.resolver, "detect_browser_path", return_value=None), \
                patch.object(runner_module, "is_endpoint_reachable", AsyncMock(return_value=True)):
            port, bridge = await runner._prepare_cross_host_join(HOST, 9222)

        assert port == 9226
        assert bridge.cross_host is True
        assert bridge.connect_host == HOST

    @pytest.mark.asyncio
    async def test_unreachable_match_installs_forwarding(self, project_paths):
        inspector = FakeHostInspector(
            processes=[ProcessInfo(pid=1, command_line="chrome.exe --remote-debugging-port=9222")],
            listeners={9222: ["127.0.0.1"]},
        )
        runner = make_runner(project_paths, inspector, cross_host=True)

        with patch.object(runner.resolver, "detect_browser_path", return_value=None), \
                patch.object(runner_module, "is_endpoint_reachable", AsyncMock(return_value=False)):
            port, bridge = await runner._prepare_cross_host_join(HOST, 9222)

        assert port == 9222
        assert bridge.forward_type == ForwardType.V4TOV4
        assert inspector.rules[0].connect_address == "127.0.0.1"

    @pytest.mark.asyncio
    async def test_no_browser_waits_for_operator(self, project_paths):
        runner = make_runner(project_paths, cross_host=True)

        with patch.object(runner.resolver, "detect_browser_path", return_value=None):
            port, bridge = await runner._prepare_cross_host_join(HOST, 9222)

        assert port == 9222
        assert runner.inspector.started == []


class TestConnectFailure:
    """Tests for connection-failure handling."""

    @pytest.mark.asyncio
    async def test_native_failure_prints_help(self, project_paths):
        runner = make_runner(project_paths)
        error = ConnectionFailedError("localhost", 9222, 5, OSError("refused"))

        assert await runner._handle_connect_failure(error, "localhost", 9222) == ExitCode.CONNECTION_ERROR

    @pytest.mark.asyncio
    async def test_conflict_not_fixed_without_confirmation(self, project_paths):
        inspector = FakeHostInspector(
            listeners={9222: ["0.0.0.0"]},
            rules=[ForwardingRule(listen_address="0.0.0.0", listen_port=9222,
                                  connect_address="127.0.0.1", connect_port=9222)],
        )
        runner = make_runner(project_paths, inspector, cross_host=True)
        error = ConnectionFailedError(HOST, 9222, 5)
        unreachable = AsyncMock(side_effect=EndpointUnreachableError(f"http://{HOST}:9222/json/version"))

        with patch.object(probes_module, "fetch_version_info", unreachable), \
                patch.object(runner.resolver, "detect_browser_path", return_value=None):
            code = await runner._handle_connect_failure(error, HOST, 9222)

        assert code == ExitCode.CONNECTION_ERROR
        assert inspector.deleted == []

    @pytest.mark.asyncio
    async def test_confirmed_fix_exits_cleanly(self, project_paths):
        inspector = FakeHostInspector(
            listeners={9222: ["0.0.0.0"]},
            rules=[ForwardingRule(listen_address="0.0.0.0", listen_port=9222,
                                  connect_address="127.0.0.1", connect_port=9222)],
        )
        runner = make_runner(project_paths, inspector, cross_host=True)
        runner.reader.confirm = AsyncMock(return_value=True)
        unreachable = AsyncMock(side_effect=EndpointUnreachableError(f"http://{HOST}:9222/json/version"))

        with patch.object(probes_module, "fetch_version_info", unreachable), \
                patch.object(runner.resolver, "detect_browser_path", return_value=None):
            code = await runner._handle_connect_failure(ConnectionFailedError(HOST, 9222, 5), HOST, 9222)

        assert code == ExitCode.SUCCESS
        assert inspector.rules == []

    @pytest.mark.asyncio
    async def test_fix_targets_the_conflicting_port(self, project_paths):
        # Chrome moved to 9223; the stale rule still holds 9222
        inspector = FakeHostInspector(
            processes=[ProcessInfo(pid=7, command_line=MOVED_CHROME)],
            listeners={9222: ["0.0.0.0"], 9223: ["127.0.0.1"]},
            rules=[ForwardingRule(listen_address="0.0.0.0", listen_port=9222,
                                  connect_address="127.0.0.1", connect_port=9222)],
        )
        runner = make_runner(project_paths, inspector, cross_host=True)
        runner.reader.confirm = AsyncMock(return_value=True)
        unreachable = AsyncMock(side_effect=EndpointUnreachableError(f"http://{HOST}:9222/json/version"))

        with patch.object(probes_module, "fetch_version_info", unreachable), \
                patch.object(runner.resolver, "detect_browser_path", return_value=None):
            code = await runner._handle_connect_failure(ConnectionFailedError(HOST, 9222, 5), HOST, 9222)

        assert code == ExitCode.SUCCESS
        assert {port for port, _ in inspector.deleted} == {9222}
        assert inspector.rules == []


class TestOpenConnectFailure:
    """Tests for connection failures after a cross-host launch."""

    @pytest.mark.asyncio
    async def test_failure_runs_diagnostics_and_offers_fix(self, project_paths):
        inspector = FakeHostInspector(
            listeners={9222: ["0.0.0.0"]},
            rules=[ForwardingRule(listen_address="0.0.0.0", listen_port=9222,
                                  connect_address="127.0.0.1", connect_port=9222)],
        )
        runner = make_runner(project_paths, inspector, cross_host=True)
        runner.reader.confirm = AsyncMock(return_value=True)
        playwright = MagicMock()
        playwright.stop = AsyncMock()
        starter = MagicMock(return_value=MagicMock(start=AsyncMock(return_value=playwright)))
        unreachable = AsyncMock(side_effect=EndpointUnreachableError(f"http://{HOST}:9222/json/version"))
        diagnostics = AsyncMock(wraps=runner_module.run_diagnostics)

        with patch.object(runner_module, "async_playwright", starter), \
                patch.object(runner_module, "run_diagnostics", diagnostics), \
                patch.object(runner, "_start_server", AsyncMock()), \
                patch.object(runner, "_launch_cross_host", AsyncMock(side_effect=ConnectionFailedError(HOST, 9222, 5))), \
                patch.object(probes_module, "fetch_version_info", unreachable), \
                patch.object(runner.resolver, "detect_browser_path", return_value=None):
            code = await runner._open("https://localhost:4000/")

        assert code == ExitCode.SUCCESS
        diagnostics.assert_awaited_once()
        assert diagnostics.await_args.args[1:3] == (HOST, 9222)
        assert inspector.rules == []
        playwright.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_declined_fix_exits_with_connection_error(self, project_paths):
        runner = make_runner(project_paths, FakeHostInspector(), cross_host=True)
        playwright = MagicMock()
        playwright.stop = AsyncMock()
        starter = MagicMock(return_value=MagicMock(start=AsyncMock(return_value=playwright)))
        diagnostics = AsyncMock(return_value=DiagnosticResult(has_port_proxy_conflict=False))

        with patch.object(runner_module, "async_playwright", starter), \
                patch.object(runner_module, "run_diagnostics", diagnostics), \
                patch.object(runner, "_start_server", AsyncMock()), \
                patch.object(runner, "_launch_cross_host", AsyncMock(side_effect=ConnectionFailedError(HOST, 9222, 5))), \
                patch.object(runner.resolver, "detect_browser_path", return_value=None):
            code = await runner._open(None)

        assert code == ExitCode.CONNECTION_ERROR
        diagnostics.assert_awaited_once()
