"""Command-line interface for browsermonitor.

Main Components:
- main: Typer application (run, init, diagnose, instances, config, version)
- runner: MonitorRunner for open, join and interactive modes
"""

from .runner import ExitCode, MonitorRunner

__all__ = [
    "ExitCode",
    "MonitorRunner",
]
