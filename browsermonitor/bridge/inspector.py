"""Host inspectors: process, socket, firewall and forwarding-rule access.

The bridge resolver and diagnostics talk to the host only through the
HostInspector interface. WindowsHostInspector drives the Windows host from a
WSL guest by shelling out to its utilities; LocalHostInspector uses psutil
for a browser running on the same machine. All output parsing lives in the
module-level parse_* functions.
"""

import asyncio
import json
import logging
import re
import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import psutil

from ..models.bridge import BrowserInstance, ForwardingRule, ForwardType, ProcessInfo

logger = logging.getLogger(__name__)

PORT_ARG_RE = re.compile(r"--remote-debugging-port=(\d+)")
ADDRESS_ARG_RE = re.compile(r"--remote-debugging-address=([^\s'\"]+)")
PROFILE_ARG_RE = re.compile(r"--user-data-dir=(?:\"([^\"]+)\"|'([^']+)'|([^\s]+))")

BROWSER_PROCESS_NAMES = ("chrome", "chromium", "google-chrome", "msedge")


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def parse_browser_command_line(command_line: str, pid: Optional[int] = None) -> Optional[BrowserInstance]:
    """Extract port, bind address and profile from a browser command line.

    Returns:
        BrowserInstance, or None if the command line has no debugging port
    """
    if not command_line:
        return None
    port_match = PORT_ARG_RE.search(command_line)
    if not port_match:
        return None

    address_match = ADDRESS_ARG_RE.search(command_line)
    profile_match = PROFILE_ARG_RE.search(command_line)
    profile = "default"
    if profile_match:
        profile = next(group for group in profile_match.groups() if group)

    return BrowserInstance(
        port=int(port_match.group(1)),
        bind_address=address_match.group(1) if address_match else "127.0.0.1",
        profile=profile,
        pid=pid,
        command_line=command_line,
    )


def parse_browser_instances(processes: List[ProcessInfo]) -> List[BrowserInstance]:
    """Parse debugging instances, de-duplicated by port.

    One browser presents many subprocesses with the same arguments; the
    first entry seen for a port wins.
    """
    instances: List[BrowserInstance] = []
    seen_ports = set()
    for process in processes:
        instance = parse_browser_command_line(process.command_line, process.pid)
        if instance is None or instance.port in seen_ports:
            continue
        seen_ports.add(instance.port)
        instances.append(instance)
    return instances


def parse_netstat_listeners(output: str, port: int) -> List[str]:
    """Addresses in LISTENING state on ``port`` from ``netstat -ano`` output."""
    addresses = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 4 or parts[0].upper() != "TCP" or "LISTEN" not in parts[3].upper():
            continue
        local = parts[1]
        host, _, local_port = local.rpartition(":")
        if local_port != str(port):
            continue
        host = host.strip("[]")
        if host not in addresses:
            addresses.append(host)
    return addresses


def parse_portproxy_table(output: str) -> List[ForwardingRule]:
    """Rules from ``netsh interface portproxy show all`` output."""
    rules = []
    forward_type = ForwardType.V4TOV4
    for line in output.splitlines():
        lowered = line.lower()
        if "listen on" in lowered and "connect to" in lowered:
            if "listen on ipv4" in lowered and "connect to ipv6" in lowered:
                forward_type = ForwardType.V4TOV6
            else:
                forward_type = ForwardType.V4TOV4
            continue

        parts = line.split()
        if len(parts) == 4 and parts[1].isdigit() and parts[3].isdigit():
            rules.append(ForwardingRule(
                listen_address=parts[0],
                listen_port=int(parts[1]),
                connect_address=parts[2],
                connect_port=int(parts[3]),
                forward_type=forward_type,
            ))
    return rules


def parse_firewall_allows_port(output: str, port: int) -> bool:
    """Check ``netsh advfirewall firewall show rule`` output for an enabled allow rule."""
    blocks = re.split(r"\r?\n\s*\r?\n", output)
    for block in blocks:
        fields = {}
        for line in block.splitlines():
            key, sep, value = line.partition(":")
            if sep:
                fields[key.strip().lower()] = value.strip()
        local_ports = fields.get("localport", "")
        ports = {p.strip() for p in local_ports.split(",")}
        if str(port) not in ports:
            continue
        if fields.get("action", "").lower() == "allow" and fields.get("enabled", "yes").lower() == "yes":
            return True
    return False


def _parse_cim_processes(output: str) -> List[ProcessInfo]:
    output = output.strip()
    if not output:
        return []
    data = json.loads(output)
    if isinstance(data, dict):
        data = [data]
    processes = []
    for item in data:
        processes.append(ProcessInfo(
            pid=int(item.get("ProcessId") or 0),
            name=item.get("Name") or "chrome.exe",
            command_line=item.get("CommandLine") or "",
        ))
    return processes


# ---------------------------------------------------------------------------
# PowerShell
# ---------------------------------------------------------------------------

def powershell_literal(value: str) -> str:
    """Single-quoted PowerShell string; embedded quotes are doubled."""
    return "'" + value.replace("'", "''") + "'"


def quote_browser_argument(arg: str) -> str:
    """Double-quote the value of an argument that contains whitespace.

    Start-Process joins -ArgumentList with spaces, so an unquoted
    ``--user-data-dir=C:\\Users\\Jane Doe\\...`` would be split in two.
    """
    if not any(ch.isspace() for ch in arg) or arg.startswith("\""):
        return arg
    name, sep, value = arg.partition("=")
    if sep and name.startswith("--"):
        return f'{name}="{value}"'
    return f'"{arg}"'


def start_process_script(executable: str, args: List[str]) -> str:
    """Build the Start-Process command that launches ``executable`` detached."""
    argument_list = ",".join(powershell_literal(quote_browser_argument(arg)) for arg in args)
    script = f"Start-Process -FilePath {powershell_literal(executable)}"
    if argument_list:
        script += f" -ArgumentList {argument_list}"
    return script


# ---------------------------------------------------------------------------
# Inspectors
# ---------------------------------------------------------------------------

class HostInspector(ABC):
    """Narrow interface to the machine that runs the browser."""

    @abstractmethod
    async def list_browser_processes(self) -> List[ProcessInfo]:
        """List browser processes with their command lines."""

    @abstractmethod
    async def listening_addresses(self, port: int) -> List[str]:
        """Addresses with a TCP listener on ``port``."""

    @abstractmethod
    async def list_forwarding_rules(self) -> List[ForwardingRule]:
        """Current port-forwarding rules."""

    @abstractmethod
    async def delete_forwarding_rule(
        self,
        port: int,
        forward_type: ForwardType = ForwardType.V4TOV4,
        listen_address: str = "0.0.0.0",
    ) -> bool:
        """Delete a rule; an absent rule counts as success."""

    @abstractmethod
    async def add_forwarding_rule(self, port: int, connect_address: str, forward_type: ForwardType) -> bool:
        """Forward 0.0.0.0:port to connect_address:port."""

    @abstractmethod
    async def firewall_allows(self, port: int) -> Optional[bool]:
        """Whether an inbound allow rule covers ``port``; None if unknown."""

    @abstractmethod
    async def start_process(self, executable: str, args: List[str]) -> bool:
        """Start a detached process."""

    @abstractmethod
    async def kill_process_tree(self, pid: int) -> bool:
        """Terminate a process and its children."""

    async def local_app_data(self) -> Optional[str]:
        """Host LOCALAPPDATA directory, where applicable."""
        return None

    async def list_browser_instances(self) -> List[BrowserInstance]:
        return parse_browser_instances(await self.list_browser_processes())


class WindowsHostInspector(HostInspector):
    """Inspects the Windows host from a WSL guest via its .exe utilities."""

    PROCESS_QUERY = (
        "Get-CimInstance Win32_Process -Filter \"Name='chrome.exe'\" | "
        "Select-Object ProcessId,Name,CommandLine | ConvertTo-Json -Compress"
    )
    # netsh messages that mean the rule was not there to delete
    ABSENT_RULE_MARKERS = ("cannot find", "not found", "does not exist")

    def __init__(self, command_timeout: float = 10.0):
        self.command_timeout = command_timeout
        self.last_stderr = ""

    async def _run(self, *args: str, timeout: Optional[float] = None) -> Tuple[int, str, str]:
        """Run a host utility and capture its output."""
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.debug(f"Failed to run {args[0]}: {e}")
            self.last_stderr = str(e)
            return 127, "", str(e)

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout or self.command_timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            self.last_stderr = f"{args[0]} timed out"
            return -1, "", self.last_stderr

        out = stdout.decode('utf-8', errors='replace')
        err = stderr.decode('utf-8', errors='replace')
        self.last_stderr = err.strip()
        return process.returncode, out, err

    async def _powershell(self, script: str) -> Tuple[int, str, str]:
        return await self._run("powershell.exe", "-NoProfile", "-NonInteractive", "-Command", script)

    async def list_browser_processes(self) -> List[ProcessInfo]:
        code, out, err = await self._powershell(self.PROCESS_QUERY)
        if code != 0:
            logger.debug(f"Process query failed: {err.strip()}")
            return []
        try:
            return _parse_cim_processes(out)
        except (ValueError, TypeError) as e:
            logger.warning(f"Could not parse process list: {e}")
            return []

    async def listening_addresses(self, port: int) -> List[str]:
        code, out, _ = await self._run("netstat.exe", "-ano")
        if code != 0:
            return []
        return parse_netstat_listeners(out, port)

    async def list_forwarding_rules(self) -> List[ForwardingRule]:
        code, out, _ = await self._run("netsh.exe", "interface", "portproxy", "show", "all")
        if code != 0:
            return []
        return parse_portproxy_table(out)

    async def delete_forwarding_rule(
        self,
        port: int,
        forward_type: ForwardType = ForwardType.V4TOV4,
        listen_address: str = "0.0.0.0",
    ) -> bool:
        code, out, err = await self._run(
            "netsh.exe", "interface", "portproxy", "delete", forward_type.value,
            f"listenport={port}", f"listenaddress={listen_address}",
        )
        if code == 0:
            return True
        message = f"{out} {err}".lower()
        if any(marker in message for marker in self.ABSENT_RULE_MARKERS):
            return True
        logger.debug(f"portproxy delete {forward_type.value} {port} failed: {message.strip()}")
        return False

    async def add_forwarding_rule(self, port: int, connect_address: str, forward_type: ForwardType) -> bool:
        code, out, err = await self._run(
            "netsh.exe", "interface", "portproxy", "add", forward_type.value,
            f"listenport={port}", "listenaddress=0.0.0.0",
            f"connectport={port}", f"connectaddress={connect_address}",
        )
        if code != 0:
            logger.warning(f"portproxy add failed: {(out or err).strip()}")
        return code == 0

    async def firewall_allows(self, port: int) -> Optional[bool]:
        code, out, _ = await self._run(
            "netsh.exe", "advfirewall", "firewall", "show", "rule", "name=all", "dir=in",
            timeout=20,
        )
        if code != 0:
            return None
        return parse_firewall_allows_port(out, port)

    async def start_process(self, executable: str, args: List[str]) -> bool:
        code, _, err = await self._powershell(start_process_script(executable, args))
        if code != 0:
            logger.error(f"Start-Process failed: {err.strip()}")
        return code == 0

    async def kill_process_tree(self, pid: int) -> bool:
        code, _, err = await self._run("taskkill.exe", "/PID", str(pid), "/T", "/F")
        if code != 0:
            logger.debug(f"taskkill {pid} failed: {err.strip()}")
        return code == 0

    async def local_app_data(self) -> Optional[str]:
        code, out, _ = await self._run("cmd.exe", "/c", "echo %LOCALAPPDATA%")
        value = out.strip()
        if code != 0 or not value or "%" in value:
            return None
        return value


class LocalHostInspector(HostInspector):
    """Inspects the local machine with psutil."""

    def _browser_processes(self) -> List[ProcessInfo]:
        processes = []
        for proc in psutil.process_iter(['pid', 'name', 'cmdline']):
            try:
                name = (proc.info.get('name') or '').lower()
                if not any(browser in name for browser in BROWSER_PROCESS_NAMES):
                    continue
                cmdline = proc.info.get('cmdline') or []
                processes.append(ProcessInfo(
                    pid=proc.info['pid'],
                    name=proc.info.get('name') or '',
                    command_line=" ".join(cmdline),
                ))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return processes

    def _listening_addresses(self, port: int) -> List[str]:
        addresses = []
        try:
            connections = psutil.net_connections(kind='tcp')
        except psutil.AccessDenied:
            logger.warning("Access denied reading socket table")
            return []
        for conn in connections:
            if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port:
                if conn.laddr.ip not in addresses:
                    addresses.append(conn.laddr.ip)
        return addresses

    async def list_browser_processes(self) -> List[ProcessInfo]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._browser_processes)

    async def listening_addresses(self, port: int) -> List[str]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._listening_addresses, port)

    async def list_forwarding_rules(self) -> List[ForwardingRule]:
        return []

    async def delete_forwarding_rule(
        self,
        port: int,
        forward_type: ForwardType = ForwardType.V4TOV4,
        listen_address: str = "0.0.0.0",
    ) -> bool:
        return True

    async def add_forwarding_rule(self, port: int, connect_address: str, forward_type: ForwardType) -> bool:
        logger.debug("Port forwarding is not used on a local host")
        return False

    async def firewall_allows(self, port: int) -> Optional[bool]:
        return None

    async def start_process(self, executable: str, args: List[str]) -> bool:
        try:
            subprocess.Popen(
                [executable, *args],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
            return True
        except OSError as e:
            logger.error(f"Failed to start {executable}: {e}")
            return False

    async def kill_process_tree(self, pid: int) -> bool:
        try:
            parent = psutil.Process(pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return False

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass
        _, alive = psutil.wait_procs(procs, timeout=3)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        return True


def find_browser_pid(profile_dir: str) -> Optional[int]:
    """PID of the main browser process using ``profile_dir``."""
    for proc in psutil.process_iter(['pid', 'cmdline']):
        try:
            cmdline = " ".join(proc.info.get('cmdline') or [])
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if f"--user-data-dir={profile_dir}" in cmdline and "--type=" not in cmdline:
            return proc.info['pid']
    return None


def create_host_inspector(cross_host: bool) -> HostInspector:
    """Inspector for the machine that runs the browser."""
    return WindowsHostInspector() if cross_host else LocalHostInspector()
