#!/usr/bin/env python3
"""Main CLI entry point for browsermonitor using Typer.

Commands start a monitoring run (open, join or the interactive menu),
initialize project settings, and inspect the browser environment without
starting a session.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml
from typing_extensions import Annotated

from .. import __version__, terminal
from ..bridge import (
    NetworkBridgeResolver,
    create_host_inspector,
    detect_cross_host_environment,
    resolve_connect_host,
)
from ..control import KeyReader
from ..diagnostics import apply_port_proxy_fix, run_diagnostics
from ..settings import (
    MonitorSettings,
    ProjectPaths,
    is_initialized,
    load_settings,
    save_settings,
)
from .runner import ExitCode, MonitorRunner


app = typer.Typer(
    name="browsermonitor",
    help="browsermonitor - capture browser console and network activity for coding agents",
    add_completion=False,
)


def configure_logging(verbose: bool = False, debug: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(project_root: Path, config: Optional[Path] = None, **overrides) -> MonitorSettings:
    try:
        return load_settings(project_root, config, overrides)
    except (FileNotFoundError, ValueError) as e:
        typer.echo(f"❌ Configuration error: {e}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)


@app.callback()
def main():
    """
    browsermonitor - browser console and network monitor.

    Opens or joins a Chrome session, buffers console output and network
    traffic, and dumps them to files on demand (keyboard or HTTP API).
    """
    pass


@app.command(name="version")
def show_version():
    """Show version information."""
    typer.echo(f"browsermonitor v{__version__}")


@app.command()
def run(
    url: Annotated[
        Optional[str],
        typer.Argument(help="URL to open (open mode)")
    ] = None,

    open_browser: Annotated[
        bool,
        typer.Option("--open", help="Launch a new browser and navigate to URL")
    ] = False,

    join: Annotated[
        Optional[int],
        typer.Option("--join", help="Attach to a running browser on this debugging port")
    ] = None,

    port: Annotated[
        Optional[int],
        typer.Option("--port", help="HTTP control API port")
    ] = None,

    host: Annotated[
        Optional[str],
        typer.Option("--host", help="Browser host (default: auto-detected)")
    ] = None,

    realtime: Annotated[
        Optional[bool],
        typer.Option("--realtime/--buffered", help="Write events to files immediately")
    ] = None,

    headless: Annotated[
        Optional[bool],
        typer.Option("--headless/--headed", help="Run the launched browser without GUI")
    ] = None,

    timeout: Annotated[
        Optional[int],
        typer.Option("--timeout", help="Hard timeout in ms; force exit after this long (0 = disabled)")
    ] = None,

    nav_timeout: Annotated[
        Optional[int],
        typer.Option("--nav-timeout", help="Navigation timeout in ms (0 = no limit)")
    ] = None,

    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Configuration file path")
    ] = None,

    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose output")
    ] = False,

    debug: Annotated[
        bool,
        typer.Option("--debug", help="Enable debug logging")
    ] = False,
):
    """
    Monitor a browser session.

    Without --open or --join an interactive menu is shown.

    Examples:
        browsermonitor run --open https://localhost:4000/
        browsermonitor run --join 9222
        browsermonitor run --open --realtime --headless
    """
    configure_logging(verbose, debug)

    if join is not None and not 1 <= join <= 65535:
        typer.echo(f"❌ Invalid port for --join: {join} (expected 1-65535)", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)
    if open_browser and join is not None:
        typer.echo("❌ Use either --open or --join, not both", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    project_root = Path.cwd()
    first_run = not is_initialized(project_root)
    settings = _load(
        project_root,
        config,
        http_port=port,
        realtime=realtime,
        headless=headless,
        hard_timeout=timeout,
        navigation_timeout=nav_timeout,
    )
    if first_run and config is None:
        settings_file = save_settings(project_root, settings)
        typer.echo(f"✅ Created {settings_file}")

    paths = ProjectPaths.from_root(project_root)
    paths.ensure_directories()

    async def _run() -> int:
        runner = MonitorRunner(settings, paths, host=host)
        if open_browser or (url and join is None):
            return await runner.run_open(url)
        if join is not None:
            return await runner.run_join(join)
        return await runner.run_interactive()

    try:
        exit_code = asyncio.run(_run())
    except KeyboardInterrupt:
        exit_code = ExitCode.SUCCESS

    raise typer.Exit(code=int(exit_code))


@app.command()
def init(
    url: Annotated[
        Optional[str],
        typer.Option("--url", help="Default URL for open mode")
    ] = None,

    force: Annotated[
        bool,
        typer.Option("--force", help="Overwrite existing settings")
    ] = False,
):
    """Create .browsermonitor/ and settings.json in the current directory."""
    project_root = Path.cwd()
    if is_initialized(project_root) and not force:
        typer.echo(f"⚠️  Already initialized: {ProjectPaths.from_root(project_root).settings_file}")
        return

    settings = MonitorSettings(default_url=url) if url else MonitorSettings()
    settings_file = save_settings(project_root, settings)
    ProjectPaths.from_root(project_root).ensure_directories()
    typer.echo(f"✅ Created {settings_file}")


@app.command()
def diagnose(
    port: Annotated[
        Optional[int],
        typer.Option("--port", help="Browser debugging port")
    ] = None,

    host: Annotated[
        Optional[str],
        typer.Option("--host", help="Browser host (default: auto-detected)")
    ] = None,

    fix: Annotated[
        bool,
        typer.Option("--fix", help="Offer to remove a stale port proxy and restart Chrome")
    ] = False,

    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose output")
    ] = False,
):
    """Diagnose why the browser's debugging port is not reachable."""
    configure_logging(verbose)
    project_root = Path.cwd()
    settings = _load(project_root, debug_port=port)

    async def _diagnose() -> int:
        cross_host = detect_cross_host_environment()
        inspector = create_host_inspector(cross_host)
        resolver = NetworkBridgeResolver(inspector, project_root, cross_host=cross_host)
        target = host or (resolve_connect_host() if cross_host else "localhost")

        result = await run_diagnostics(
            inspector,
            target,
            settings.debug_port,
            cross_host=cross_host,
            browser_path=resolver.detect_browser_path(),
            profile_dir=await resolver.profile_dir(),
        )
        terminal.print_diagnostics(result)

        if fix and result.has_port_proxy_conflict:
            reader = KeyReader()
            reader.start()
            try:
                confirmed = await reader.confirm(
                    "Do you want me to fix this automatically? (remove port proxy, restart Chrome)"
                )
            finally:
                reader.stop()
            if confirmed:
                outcome = await apply_port_proxy_fix(resolver, result, result.conflict_port or settings.debug_port)
                for message in outcome.errors:
                    terminal.warning(message)
                if outcome.rule_removed:
                    terminal.success(f"Port proxy for port {outcome.port} removed")
                return ExitCode.SUCCESS if outcome.rule_removed else ExitCode.RUNTIME_ERROR

        return ExitCode.SUCCESS if result.reachable else ExitCode.CONNECTION_ERROR

    raise typer.Exit(code=int(asyncio.run(_diagnose())))


@app.command()
def instances():
    """List browsers with a debugging port and the match for this project."""
    project_root = Path.cwd()

    async def _instances():
        cross_host = detect_cross_host_environment()
        resolver = NetworkBridgeResolver(create_host_inspector(cross_host), project_root, cross_host=cross_host)
        found = await resolver.discover_running_instances()
        return resolver, found, resolver.match(found)

    resolver, found, match = asyncio.run(_instances())

    typer.echo(f"Project id: {resolver.project_id}")
    if not found:
        typer.echo("No browser with a remote debugging port found")
        if resolver.browser_running:
            typer.echo("⚠️  Chrome is running, but without --remote-debugging-port")
        return

    for instance in found:
        marker = "*" if match.instance is not None and match.instance.port == instance.port else " "
        typer.echo(f" {marker} port {instance.port:<5} {instance.bind_address:<10} {instance.profile}")
    if match.instance is not None:
        typer.echo(f"Match: port {match.instance.port} ({match.tier.value})")


@app.command(name="config")
def show_config(
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (yaml, json)")
    ] = "yaml",

    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Configuration file path")
    ] = None,
):
    """Print the effective settings."""
    settings = _load(Path.cwd(), config)
    data = settings.to_file_dict()

    if format == "json":
        typer.echo(json.dumps(data, indent=2))
    elif format == "yaml":
        typer.echo(yaml.safe_dump(data, sort_keys=False).rstrip())
    else:
        typer.echo(f"❌ Unknown format '{format}'. Valid values: yaml, json", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    typer.echo(f"# Sources: {', '.join(settings.loaded_from)}")


if __name__ == "__main__":
    app()
