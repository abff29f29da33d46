"""uvicorn server running inside the monitor's event loop."""

import asyncio
import contextlib
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI

logger = logging.getLogger(__name__)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn.Server that leaves SIGINT/SIGTERM to the monitor."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class ControlServer:
    """Serves the control app as a task in the running loop."""

    def __init__(self, app: FastAPI, host: str = "127.0.0.1", port: int = 60001, log_level: str = "warning"):
        self.app = app
        self.host = host
        self.port = port
        self.log_level = log_level
        self.failed = False
        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/"

    @property
    def running(self) -> bool:
        return self._server is not None and self._server.started and not self._task.done()

    async def start(self, startup_timeout: float = 5.0) -> bool:
        """Start serving; returns False if the server did not come up."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
            lifespan="off",
            access_log=False,
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._serve())

        deadline = asyncio.get_running_loop().time() + startup_timeout
        while not self._server.started and not self._task.done():
            if asyncio.get_running_loop().time() > deadline:
                logger.error(f"HTTP server did not start within {startup_timeout}s")
                return False
            await asyncio.sleep(0.05)

        if self._server.started:
            logger.info(f"HTTP API listening on {self.url}")
        return self._server.started

    async def _serve(self) -> None:
        try:
            await self._server.serve()
        except SystemExit:
            # uvicorn exits when it cannot bind
            self.failed = True
            logger.error(f"HTTP server failed to bind {self.host}:{self.port}")

    async def stop(self, timeout: float = 5.0) -> None:
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("HTTP server did not stop in time, cancelling")
            self._task.cancel()
        logger.debug("HTTP server stopped")
