"""Pydantic models for the host/guest network bridge and diagnostics."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class ForwardType(str, Enum):
    """Kind of port-forwarding rule on the host."""
    NONE = "none"
    V4TOV4 = "v4tov4"
    V4TOV6 = "v4tov6"


class MatchTier(str, Enum):
    """Confidence of a browser-instance match, best first."""
    EXACT = "exact"
    LEGACY = "legacy"
    ACCESSIBLE = "accessible"
    FIRST = "first"
    NONE = "none"

    @property
    def is_confident(self) -> bool:
        """Exact and legacy matches are specific to this project."""
        return self in (MatchTier.EXACT, MatchTier.LEGACY)


class ProcessInfo(BaseModel):
    """A host process as reported by a host inspector."""
    pid: int
    name: str = ""
    command_line: str = ""


class BrowserInstance(BaseModel):
    """A browser process started with a remote debugging port."""
    port: int
    bind_address: str = "127.0.0.1"
    profile: str = "default"
    pid: Optional[int] = None
    command_line: str = ""

    @property
    def label(self) -> str:
        return f"{self.port} - {self.profile}"


class ProjectMatch(BaseModel):
    """Result of matching discovered instances to a project."""
    found: bool = False
    instance: Optional[BrowserInstance] = None
    tier: MatchTier = MatchTier.NONE


class ForwardingRule(BaseModel):
    """A host port-forwarding rule."""
    listen_address: str
    listen_port: int
    connect_address: str
    connect_port: int
    forward_type: ForwardType = ForwardType.V4TOV4


class ForwardingOutcome(BaseModel):
    """Result of ensure_forwarding_rule; failures are data, not exceptions."""
    installed: bool
    port: int
    forward_type: ForwardType = ForwardType.NONE
    bind_address: Optional[str] = None
    bind_detected: bool = False
    manual_command: Optional[str] = None


class BridgeState(BaseModel):
    """Cross-host bridge state for one session."""
    cross_host: bool = False
    gateway_address: Optional[str] = None
    port: Optional[int] = None
    forward_type: ForwardType = ForwardType.NONE
    profile_dir: Optional[str] = None

    @property
    def connect_host(self) -> str:
        if self.cross_host and self.gateway_address:
            return self.gateway_address
        return "localhost"


class ProbeStatus(str, Enum):
    """Outcome of one diagnostic probe."""
    OK = "ok"
    WARNING = "warning"
    FAILED = "failed"
    SKIPPED = "skipped"


class ProbeResult(BaseModel):
    """Outcome of a single environment probe."""
    name: str
    status: ProbeStatus
    message: str = ""
    details: dict = Field(default_factory=dict)
    duration_ms: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.status == ProbeStatus.OK


class DiagnosticResult(BaseModel):
    """Structured classification of a connection failure."""
    reachable: bool = False
    has_port_proxy_conflict: bool = False
    actual_port: Optional[int] = None
    conflict_port: Optional[int] = None
    suggested_fix: Optional[str] = None
    probes: List[ProbeResult] = Field(default_factory=list)


class FixOutcome(BaseModel):
    """What the automatic port-proxy remedy did."""
    port: int
    rule_removed: bool = False
    terminated_pids: List[int] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
