"""Pydantic models for captured browser telemetry.

This module defines the data models used by the capture buffer and the
control plane, including console entries, correlated network exchanges,
buffer statistics and dump results.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


SEPARATOR_WIDTH = 80


class SessionMode(str, Enum):
    """How the monitor obtained its browser."""
    LAUNCH = "launch"
    ATTACH = "attach"


class OutputMode(str, Enum):
    """Where captured entries go as they arrive."""
    BUFFERED = "buffered"
    IMMEDIATE = "immediate"


class CaptureState(str, Enum):
    """Capture state machine for a session."""
    CAPTURING = "capturing"
    PAUSED = "paused"


class ExitType(str, Enum):
    """What shutdown does with the browser."""
    DISCONNECT = "disconnect"
    CLOSE = "close"


class ConsoleLevel(str, Enum):
    """Console entry levels."""
    LOG = "log"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    DEBUG = "debug"
    TRACE = "trace"
    PAGE_ERROR = "pageerror"
    MONITOR = "monitor"


def format_timestamp(moment: Optional[datetime] = None) -> str:
    """Short wall-clock timestamp used in log lines."""
    moment = moment or datetime.now()
    return moment.strftime("%H:%M:%S.") + f"{moment.microsecond // 1000:03d}"


def format_full_timestamp(moment: Optional[datetime] = None) -> str:
    """Date and time timestamp used in network separators."""
    moment = moment or datetime.now()
    return moment.strftime("%Y-%m-%d %H:%M:%S")


class ConsoleEntry(BaseModel):
    """One console line captured from the monitored page."""

    timestamp: datetime = Field(default_factory=datetime.now)
    level: ConsoleLevel = Field(default=ConsoleLevel.LOG)
    text: str = Field(description="Console message text")
    location: Optional[str] = Field(default=None, description="Source url:line of the message")
    hot_reload: bool = Field(default=False, description="Matched a hot-reload noise pattern")

    @field_validator('level', mode='before')
    @classmethod
    def normalize_level(cls, v):
        if isinstance(v, ConsoleLevel):
            return v
        level_map = {
            'warning': ConsoleLevel.WARN,
            'assert': ConsoleLevel.ERROR,
            'dir': ConsoleLevel.LOG,
            'table': ConsoleLevel.LOG,
        }
        value = str(v).lower()
        if value in level_map:
            return level_map[value]
        try:
            return ConsoleLevel(value)
        except ValueError:
            return ConsoleLevel.LOG

    @classmethod
    def from_playwright_message(cls, message, hot_reload: bool = False) -> "ConsoleEntry":
        """Build an entry from a Playwright ConsoleMessage."""
        location = None
        try:
            loc = message.location or {}
            if loc.get('url'):
                location = f"{loc['url']}:{loc.get('lineNumber', 0)}"
        except Exception:
            location = None

        return cls(
            level=message.type,
            text=message.text,
            location=location,
            hot_reload=hot_reload,
        )

    @classmethod
    def separator(cls, title: str) -> List["ConsoleEntry"]:
        """Three monitor lines framing a timestamped title."""
        line = "=" * SEPARATOR_WIDTH
        return [
            cls(level=ConsoleLevel.MONITOR, text=line),
            cls(level=ConsoleLevel.MONITOR, text=f"[{format_timestamp()}] *** {title} ***"),
            cls(level=ConsoleLevel.MONITOR, text=line),
        ]

    def to_line(self) -> str:
        """Render as a console.log line."""
        if self.level == ConsoleLevel.MONITOR:
            return self.text
        return f"[{format_timestamp(self.timestamp)}] [{self.level.value.upper()}] {self.text}"


class NetworkExchange(BaseModel):
    """One correlated request/response/failure record.

    Records are built by merging: the request event creates the record and
    response or failure events merge their keys into it. Unknown keys are
    kept so that merges never drop data.
    """

    model_config = ConfigDict(extra="allow")

    id: str = Field(description="Zero-padded sequence id, fixed at request start")
    timestamp: Optional[str] = Field(default=None, description="Request start time (ISO 8601)")
    method: Optional[str] = None
    url: Optional[str] = None
    resource_type: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    post_data: Optional[str] = None

    # Response
    status: Optional[int] = None
    status_text: Optional[str] = None
    response_headers: Optional[Dict[str, str]] = None
    response_timestamp: Optional[str] = None
    response_body: Optional[str] = None

    # Failure
    failed: bool = False
    failure: Optional[str] = None

    def merge(self, updates: Dict[str, Any]) -> "NetworkExchange":
        """Return a copy with the supplied keys overridden.

        The id is never changed by a merge.
        """
        data = self.model_dump()
        data.update({k: v for k, v in updates.items() if k != 'id'})
        return NetworkExchange(**data)

    def to_json_dict(self) -> Dict[str, Any]:
        """Serializable form used for per-exchange files."""
        return self.model_dump(mode='json')


class BufferStats(BaseModel):
    """Counts of buffered entries."""
    console_entries: int = 0
    network_entries: int = 0
    request_details: int = 0


class DumpResult(BaseModel):
    """Paths written and counts produced by a dump."""
    paths: Dict[str, str] = Field(default_factory=dict)
    counts: Dict[str, int] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)

    @property
    def written(self) -> List[str]:
        return list(self.paths.values())


class SessionStatus(BaseModel):
    """Snapshot of session state for the status command."""
    mode: Optional[SessionMode] = None
    output_mode: OutputMode = OutputMode.BUFFERED
    state: CaptureState = CaptureState.CAPTURING
    target: Optional[str] = None
    monitored_url: Optional[str] = None
    monitored_pages: int = 0
    stats: BufferStats = Field(default_factory=BufferStats)
    output_dir: Optional[str] = None

    @property
    def paused(self) -> bool:
        return self.state == CaptureState.PAUSED
