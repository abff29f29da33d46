"""Control plane: keyboard and HTTP command sources.

Main Components:
- api: FastAPI control app (create_app, ControlState)
- server: uvicorn server embedded in the monitor's event loop
- keyboard: stdin key reader, prompts and key-to-command mapping
"""

from .api import ControlState, create_app
from .keyboard import KeyboardController, KeyReader
from .server import ControlServer

__all__ = [
    "ControlState",
    "create_app",
    "KeyboardController",
    "KeyReader",
    "ControlServer",
]
