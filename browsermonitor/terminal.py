"""Operator-facing terminal output.

Status blocks, command results, tab lists and remediation commands are
printed here with typer so the rest of the package only deals in models.
"""

from typing import Any, Dict, List

import typer

from .models import DiagnosticResult, ProbeStatus, SessionStatus

PROBE_ICONS = {
    ProbeStatus.OK: "✅",
    ProbeStatus.WARNING: "⚠️ ",
    ProbeStatus.FAILED: "❌",
    ProbeStatus.SKIPPED: "⏭️ ",
}


def info(message: str) -> None:
    typer.echo(message)


def success(message: str) -> None:
    typer.secho(f"✅ {message}", fg=typer.colors.GREEN)


def warning(message: str) -> None:
    typer.secho(f"⚠️  {message}", fg=typer.colors.YELLOW)


def error(message: str) -> None:
    typer.secho(f"❌ {message}", fg=typer.colors.RED, err=True)


def notice(message: str) -> None:
    """Dimmed continuation notice for transient mid-session events."""
    typer.secho(message, dim=True)


def command(cmd: str) -> None:
    """Print a command the operator should run."""
    typer.secho(f"    {cmd}", fg=typer.colors.CYAN)


def print_status(status: SessionStatus) -> None:
    state = "⏸️  PAUSED" if status.paused else "🔴 CAPTURING"
    typer.echo("")
    typer.secho("Session status", bold=True)
    typer.echo(f"  State:       {state}")
    typer.echo(f"  Mode:        {status.mode.value if status.mode else '-'} ({status.output_mode.value})")
    typer.echo(f"  Browser:     {status.target or '-'}")
    typer.echo(f"  Monitoring:  {status.monitored_url or '-'}")
    typer.echo(f"  Open tabs:   {status.monitored_pages}")
    typer.echo(f"  Console:     {status.stats.console_entries} entries")
    typer.echo(f"  Network:     {status.stats.network_entries} lines, {status.stats.request_details} requests")
    typer.echo(f"  Output:      {status.output_dir or '-'}")
    typer.echo("")


def print_tabs(tabs: List[Dict[str, Any]]) -> None:
    for tab in tabs:
        marker = "*" if tab.get("monitored") else " "
        title = f" - {tab['title']}" if tab.get("title") else ""
        typer.echo(f" {marker} [{tab['index']}] {tab['url']}{title}")


def print_dump(data: Dict[str, Any]) -> None:
    counts = data.get("counts", {})
    for kind, path in data.get("paths", {}).items():
        count = counts.get(kind)
        suffix = f" ({count})" if count is not None else ""
        typer.echo(f"  {kind:<11} {path}{suffix}")
    for kind, message in data.get("errors", {}).items():
        typer.secho(f"  {kind:<11} failed: {message}", fg=typer.colors.RED)


def print_diagnostics(result: DiagnosticResult) -> None:
    typer.echo("")
    typer.secho("Connection diagnostics", bold=True)
    for probe in result.probes:
        icon = PROBE_ICONS.get(probe.status, "  ")
        typer.echo(f"  {icon} {probe.name:<22} {probe.message}")
    typer.echo("")
    typer.echo(f"  Reachable:            {'yes' if result.reachable else 'no'}")
    typer.echo(f"  Port proxy conflict:  {'yes' if result.has_port_proxy_conflict else 'no'}")
    if result.actual_port is not None:
        typer.echo(f"  Actual port:          {result.actual_port}")
    if result.suggested_fix:
        typer.echo("  Suggested fix:")
        command(result.suggested_fix)
    typer.echo("")

