"""FastAPI application for the local HTTP control surface.

This module builds the control app: a router with one endpoint per session
command, a request-id logging middleware and exception handlers that map
session errors onto status codes with a consistent ErrorResponse body.
"""

import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..exceptions import (
    ElementNotFoundError,
    NoPageError,
    PageCommandNotAllowedError,
    PageIndexError,
)
from ..session.session import HTTP_HELP, Command, MonitorSession
from .schemas import ErrorResponse, HealthResponse, PageCommandRequest

logger = logging.getLogger(__name__)


class ControlState:
    """Holds the session the HTTP surface drives; None until one is attached."""

    def __init__(self, session: Optional[MonitorSession] = None):
        self.session = session
        self.started_at = time.time()


def get_session(request: Request) -> MonitorSession:
    """Dependency returning the attached session, or 503 before one exists."""
    session = request.app.state.control.session
    if session is None:
        raise HTTPException(status_code=503, detail="No browser session attached yet")
    if session.shutting_down:
        raise HTTPException(status_code=503, detail="Session is shutting down")
    return session


router = APIRouter(
    tags=["Control"],
    responses={
        403: {"model": ErrorResponse, "description": "Page command not allowed"},
        409: {"model": ErrorResponse, "description": "No monitored page"},
        503: {"model": ErrorResponse, "description": "No session attached"},
    }
)


async def _run(session: MonitorSession, command: Command, **params: Any) -> Dict[str, Any]:
    result = await session.execute(command, **params)
    return result.model_dump(mode='json')


@router.get("/dump", summary="Dump buffers and page artifacts to files")
async def dump(session: MonitorSession = Depends(get_session)):
    return await _run(session, Command.DUMP)


@router.get("/status", summary="Session status")
async def status(session: MonitorSession = Depends(get_session)):
    return await _run(session, Command.STATUS)


@router.get("/stop", summary="Pause capture")
async def stop(session: MonitorSession = Depends(get_session)):
    return await _run(session, Command.STOP)


@router.get("/start", summary="Resume capture")
async def start(session: MonitorSession = Depends(get_session)):
    return await _run(session, Command.START)


@router.get("/clear", summary="Clear all buffers")
async def clear(session: MonitorSession = Depends(get_session)):
    return await _run(session, Command.CLEAR)


@router.get("/tabs", summary="List open tabs")
async def tabs(session: MonitorSession = Depends(get_session)):
    return await _run(session, Command.LIST_TABS)


@router.get("/tab", summary="Switch the monitored tab")
async def switch_tab(
    index: int = Query(..., description="1-based tab index from /tabs"),
    session: MonitorSession = Depends(get_session),
):
    return await _run(session, Command.SWITCH_PAGE, index=index)


@router.get("/computed-styles", summary="Computed styles of an element")
async def computed_styles(
    selector: str = Query(..., min_length=1, description="CSS selector"),
    session: MonitorSession = Depends(get_session),
):
    return await _run(session, Command.COMPUTED_STYLES, selector=selector)


@router.post("/puppeteer", summary="Run an allow-listed page command")
async def page_command(body: PageCommandRequest, session: MonitorSession = Depends(get_session)):
    return await _run(session, Command.PAGE_COMMAND, method=body.method, args=body.args)


def _error(request: Request, status_code: int, error: str, message: str,
           details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=error,
            message=message,
            details=details,
            request_id=getattr(request.state, "request_id", None),
            timestamp=datetime.utcnow()
        ).model_dump(mode='json')
    )


def create_app(control: Optional[ControlState] = None) -> FastAPI:
    """Create and configure the control application.

    Args:
        control: Shared holder of the session; a fresh empty one by default

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title="browsermonitor control",
        description="Local control surface for a browsermonitor session",
        version=__version__,
    )
    app.state.control = control or ControlState()

    @app.middleware("http")
    async def add_request_id_and_logging(request: Request, call_next):
        """Add request ID and logging middleware."""
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.time()
        logger.info(f"Request started: {request.method} {request.url.path} [{request_id}]")

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        duration = time.time() - start_time
        logger.info(
            f"Request completed: {request.method} {request.url.path} - {response.status_code} "
            f"({round(duration * 1000, 2)} ms) [{request_id}]"
        )
        return response

    @app.exception_handler(PageCommandNotAllowedError)
    async def not_allowed_handler(request: Request, exc: PageCommandNotAllowedError):
        return _error(request, 403, "command_not_allowed", str(exc), {"method": exc.method})

    @app.exception_handler(NoPageError)
    async def no_page_handler(request: Request, exc: NoPageError):
        return _error(request, 409, "no_page", str(exc))

    @app.exception_handler(PageIndexError)
    async def page_index_handler(request: Request, exc: PageIndexError):
        return _error(request, 400, "invalid_index", str(exc), {"index": exc.index, "tabs": exc.count})

    @app.exception_handler(ElementNotFoundError)
    async def element_not_found_handler(request: Request, exc: ElementNotFoundError):
        return _error(request, 404, "element_not_found", str(exc), {"selector": exc.selector})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _error(request, 400, "bad_request", str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors with detailed information."""
        errors = []
        for error in exc.errors():
            errors.append({
                "field": " -> ".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            })
        return _error(request, 422, "validation_error", "Request validation failed",
                      {"validation_errors": errors})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions with consistent error format."""
        return _error(request, exc.status_code, f"http_{exc.status_code}", str(exc.detail))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"Unhandled exception in request {request_id}: {exc}", exc_info=True)
        return _error(request, 500, "internal_server_error", str(exc) or "An unexpected error occurred")

    @app.get("/health", response_model=HealthResponse, tags=["System"], summary="Health check")
    async def health_check(request: Request):
        control_state = request.app.state.control
        attached = control_state.session is not None
        return HealthResponse(
            status="healthy" if attached else "waiting",
            version=__version__,
            session_attached=attached,
            uptime_seconds=time.time() - control_state.started_at,
        )

    @app.get("/", tags=["System"], summary="API help")
    async def root():
        return {
            "message": "browsermonitor HTTP API",
            "version": __version__,
            "endpoints": HTTP_HELP,
        }

    app.include_router(router)
    return app
