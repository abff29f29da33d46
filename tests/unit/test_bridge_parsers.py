"""Unit tests for host inspector output parsers and environment detection."""

import subprocess

import pytest
from unittest.mock import MagicMock, patch

from browsermonitor.bridge import (
    detect_cross_host_environment,
    parse_browser_command_line,
    parse_browser_instances,
    parse_netstat_listeners,
    parse_portproxy_table,
    project_id,
    resolve_host_gateway_address,
)
from browsermonitor.bridge.inspector import _parse_cim_processes, parse_firewall_allows_port, start_process_script
from browsermonitor.models import ForwardType, ProcessInfo


NETSTAT_OUTPUT = """
Active Connections

  Proto  Local Address          Foreign Address        State           PID
  TCP    0.0.0.0:135            0.0.0.0:0              LISTENING       1024
  TCP    127.0.0.1:9222         0.0.0.0:0              LISTENING       5512
  TCP    0.0.0.0:9222           0.0.0.0:0              LISTENING       4
  TCP    127.0.0.1:9222         127.0.0.1:50123        ESTABLISHED     5512
  TCP    [::1]:9223             [::]:0                 LISTENING       6120
  UDP    0.0.0.0:9222           *:*                                    800
"""

PORTPROXY_OUTPUT = """
Listen on ipv4:             Connect to ipv4:

Address         Port        Address         Port
--------------- ----------  --------------- ----------
0.0.0.0         9222        127.0.0.1       9222

Listen on ipv4:             Connect to ipv6:

Address         Port        Address         Port
--------------- ----------  --------------- ----------
0.0.0.0         9223        ::1             9223
"""

FIREWALL_OUTPUT = """
Rule Name:                            Chrome Debug 9222
----------------------------------------------------------------------
Enabled:                              Yes
Direction:                            In
Profiles:                             Domain,Private,Public
LocalPort:                            9222
Action:                               Allow

Rule Name:                            Disabled 9230
----------------------------------------------------------------------
Enabled:                              No
Direction:                            In
LocalPort:                            9230
Action:                               Allow
"""


class TestCommandLineParsing:
    """Tests for browser command-line parsing."""

    def test_full_command_line(self):
        instance = parse_browser_command_line(
            'chrome.exe --remote-debugging-port=9223 --remote-debugging-address=0.0.0.0 '
            '--user-data-dir="C:\\Users\\dev\\AppData\\Local\\browsermonitor\\shop_1a2b3c4d"',
            pid=42,
        )

        assert instance.port == 9223
        assert instance.bind_address == "0.0.0.0"
        assert instance.profile == "C:\\Users\\dev\\AppData\\Local\\browsermonitor\\shop_1a2b3c4d"
        assert instance.pid == 42

    def test_defaults(self):
        instance = parse_browser_command_line("chrome --remote-debugging-port=9222")

        assert instance.bind_address == "127.0.0.1"
        assert instance.profile == "default"

    @pytest.mark.parametrize("command_line", ["", "chrome.exe --type=renderer", "chrome --user-data-dir=/tmp/x"])
    def test_no_debugging_port(self, command_line):
        assert parse_browser_command_line(command_line) is None

    def test_instances_deduplicated_by_port(self):
        processes = [
            ProcessInfo(pid=1, command_line="chrome --remote-debugging-port=9222 --user-data-dir=/a"),
            ProcessInfo(pid=2, command_line="chrome --type=gpu --remote-debugging-port=9222 --user-data-dir=/a"),
            ProcessInfo(pid=3, command_line="chrome --type=renderer"),
            ProcessInfo(pid=4, command_line="chrome --remote-debugging-port=9223 --user-data-dir=/b"),
        ]

        instances = parse_browser_instances(processes)

        assert [(i.port, i.pid) for i in instances] == [(9222, 1), (9223, 4)]

    def test_cim_json_single_object(self):
        processes = _parse_cim_processes(
            '{"ProcessId": 10, "Name": "chrome.exe", "CommandLine": "chrome.exe --remote-debugging-port=9222"}'
        )

        assert len(processes) == 1
        assert processes[0].pid == 10

    def test_cim_json_empty(self):
        assert _parse_cim_processes("   ") == []


class TestNetstatParsing:
    """Tests for netstat listener parsing."""

    def test_listening_addresses(self):
        assert parse_netstat_listeners(NETSTAT_OUTPUT, 9222) == ["127.0.0.1", "0.0.0.0"]

    def test_ipv6_listener(self):
        assert parse_netstat_listeners(NETSTAT_OUTPUT, 9223) == ["::1"]

    def test_no_listener(self):
        assert parse_netstat_listeners(NETSTAT_OUTPUT, 9999) == []


class TestPortproxyParsing:
    """Tests for portproxy table parsing."""

    def test_both_rule_types(self):
        rules = parse_portproxy_table(PORTPROXY_OUTPUT)

        assert len(rules) == 2
        assert rules[0].listen_port == 9222
        assert rules[0].connect_address == "127.0.0.1"
        assert rules[0].forward_type == ForwardType.V4TOV4
        assert rules[1].connect_address == "::1"
        assert rules[1].forward_type == ForwardType.V4TOV6

    def test_empty_table(self):
        assert parse_portproxy_table("") == []


class TestFirewallParsing:
    """Tests for firewall rule parsing."""

    def test_enabled_allow_rule(self):
        assert parse_firewall_allows_port(FIREWALL_OUTPUT, 9222) is True

    def test_disabled_rule_does_not_count(self):
        assert parse_firewall_allows_port(FIREWALL_OUTPUT, 9230) is False

    def test_missing_rule(self):
        assert parse_firewall_allows_port(FIREWALL_OUTPUT, 9300) is False


class TestEnvironment:
    """Tests for cross-host detection and project identity."""

    def test_detects_wsl(self, tmp_path):
        version = tmp_path / "version"
        version.write_text("Linux version 5.15.90.1-microsoft-standard-WSL2")

        assert detect_cross_host_environment(version) is True

    def test_native_linux(self, tmp_path):
        version = tmp_path / "version"
        version.write_text("Linux version 6.5.0-generic (buildd@ubuntu)")

        assert detect_cross_host_environment(version) is False

    def test_missing_version_file(self, tmp_path):
        assert detect_cross_host_environment(tmp_path / "missing") is False

    def test_project_id_is_stable(self, tmp_path):
        project = tmp_path / "shop"
        project.mkdir()

        first = project_id(project)
        assert first == project_id(project)
        assert first.startswith("shop_")
        assert len(first.split("_")[-1]) == 8

    def test_project_id_differs_by_path(self, tmp_path):
        (tmp_path / "a" / "shop").mkdir(parents=True)
        (tmp_path / "b" / "shop").mkdir(parents=True)

        assert project_id(tmp_path / "a" / "shop") != project_id(tmp_path / "b" / "shop")


class TestGatewayResolution:
    """Tests for the host gateway address lookup."""

    @pytest.fixture
    def wsl_version(self, tmp_path):
        version = tmp_path / "version"
        version.write_text("Linux version 5.15.90.1-microsoft-standard-WSL2")
        return version

    def test_default_route(self, wsl_version, tmp_path):
        route = MagicMock(returncode=0, stdout="default via 172.20.0.1 dev eth0 proto kernel\n")

        with patch("browsermonitor.bridge.environment.subprocess.run", return_value=route):
            address = resolve_host_gateway_address(wsl_version, tmp_path / "resolv.conf")

        assert address == "172.20.0.1"

    def test_falls_back_to_nameserver(self, wsl_version, tmp_path):
        resolv = tmp_path / "resolv.conf"
        resolv.write_text("# generated\nnameserver 172.29.64.1\n")

        with patch("browsermonitor.bridge.environment.subprocess.run", side_effect=subprocess.TimeoutExpired("ip", 5)):
            address = resolve_host_gateway_address(wsl_version, resolv)

        assert address == "172.29.64.1"

    def test_native_host_has_no_gateway(self, tmp_path):
        version = tmp_path / "version"
        version.write_text("Linux version 6.5.0-generic")

        assert resolve_host_gateway_address(version, tmp_path / "resolv.conf") is None


class TestStartProcessScript:
    """Tests for the PowerShell launch command."""

    def test_profile_with_space_is_quoted(self):
        script = start_process_script(
            r"C:\Program Files\Google\Chrome\Application\chrome.exe",
            ["--remote-debugging-port=9222", r"--user-data-dir=C:\Users\Jane Doe\AppData\Local\browsermonitor\app_1234abcd"],
        )

        assert script == (
            r"Start-Process -FilePath 'C:\Program Files\Google\Chrome\Application\chrome.exe' "
            r"-ArgumentList '--remote-debugging-port=9222',"
            r"""'--user-data-dir="C:\Users\Jane Doe\AppData\Local\browsermonitor\app_1234abcd"'"""
        )

    def test_single_quotes_are_doubled(self):
        script = start_process_script(r"C:\Apps\chrome.exe", [r"--user-data-dir=C:\Users\O'Brien\profile"])

        assert script == r"Start-Process -FilePath 'C:\Apps\chrome.exe' -ArgumentList '--user-data-dir=C:\Users\O''Brien\profile'"

    def test_launched_profile_parses_back(self):
        script = start_process_script("chrome.exe", [r"--user-data-dir=C:\Users\Jane Doe\app_1234abcd"])
        argument = script.split("-ArgumentList ", 1)[1].strip("'")

        instance = parse_browser_command_line(f"chrome.exe --remote-debugging-port=9222 {argument}")

        assert instance.profile == r"C:\Users\Jane Doe\app_1234abcd"

    def test_no_arguments(self):
        assert start_process_script("chrome.exe", []) == "Start-Process -FilePath 'chrome.exe'"
