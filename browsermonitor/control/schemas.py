"""Request and response schemas for the HTTP control surface."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class PageCommandRequest(BaseModel):
    """Body of POST /puppeteer."""

    method: str = Field(
        ...,
        description="Allow-listed page command name",
        examples=["goto", "click", "title"]
    )

    args: List[Any] = Field(
        default_factory=list,
        description="Positional arguments; a trailing object carries options"
    )


class ErrorResponse(BaseModel):
    """Standard error response schema.

    This schema provides consistent error information across all control
    endpoints.
    """

    error: str = Field(
        ...,
        description="Error code or type"
    )

    message: str = Field(
        ...,
        description="Human-readable error message"
    )

    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Additional error details"
    )

    request_id: Optional[str] = Field(
        default=None,
        description="Unique request identifier for tracking"
    )

    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the error occurred"
    )


class HealthResponse(BaseModel):
    """Liveness of the control server and whether a session is attached."""

    status: Literal['healthy', 'waiting'] = Field(
        ...,
        description="'waiting' until a browser session is attached"
    )

    version: str = Field(
        ...,
        description="browsermonitor version"
    )

    session_attached: bool = Field(
        ...,
        description="Whether commands can be executed"
    )

    uptime_seconds: float = Field(
        ...,
        description="Seconds since the control server started"
    )

    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="Response time"
    )
