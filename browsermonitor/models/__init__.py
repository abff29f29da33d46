"""Data models for browsermonitor.

Pydantic models shared by the capture buffer, the control plane, the
network bridge resolver and diagnostics.
"""

from .capture import (
    SessionMode,
    OutputMode,
    CaptureState,
    ExitType,
    ConsoleLevel,
    ConsoleEntry,
    NetworkExchange,
    BufferStats,
    DumpResult,
    SessionStatus,
    format_timestamp,
    format_full_timestamp,
)
from .bridge import (
    ForwardType,
    MatchTier,
    ProcessInfo,
    BrowserInstance,
    ProjectMatch,
    ForwardingRule,
    ForwardingOutcome,
    BridgeState,
    ProbeStatus,
    ProbeResult,
    DiagnosticResult,
    FixOutcome,
)

__all__ = [
    "SessionMode",
    "OutputMode",
    "CaptureState",
    "ExitType",
    "ConsoleLevel",
    "ConsoleEntry",
    "NetworkExchange",
    "BufferStats",
    "DumpResult",
    "SessionStatus",
    "format_timestamp",
    "format_full_timestamp",
    "ForwardType",
    "MatchTier",
    "ProcessInfo",
    "BrowserInstance",
    "ProjectMatch",
    "ForwardingRule",
    "ForwardingOutcome",
    "BridgeState",
    "ProbeStatus",
    "ProbeResult",
    "DiagnosticResult",
    "FixOutcome",
]
