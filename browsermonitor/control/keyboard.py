"""Keyboard command source.

KeyReader owns stdin for the whole run: single keypresses in cbreak mode
on a terminal, whole lines otherwise. Prompts (tab choice, yes/no) go
through the same reader so they never compete with the command loop.
"""

import asyncio
import logging
import os
import sys
from typing import Callable, Dict, List, Optional, TextIO

from ..exceptions import BrowserMonitorError
from ..models import ExitType, SessionStatus
from ..session.session import Command, CommandResult, MonitorSession
from .. import terminal

logger = logging.getLogger(__name__)

KEY_COMMANDS: Dict[str, Command] = {
    "d": Command.DUMP,
    "c": Command.CLEAR,
    "s": Command.STATUS,
    "p": Command.TOGGLE_PAUSE,
    "h": Command.HELP,
}

QUIT_KEYS: Dict[str, ExitType] = {
    "q": ExitType.DISCONNECT,
    "k": ExitType.CLOSE,
}

ENTER_KEYS = ("\r", "\n")


class KeyReader:
    """Reads keys (TTY) or lines (pipe) from stdin without blocking the loop."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdin
        try:
            self.interactive = self.stream.isatty()
        except (AttributeError, ValueError):
            self.interactive = False

        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._fd: Optional[int] = None
        self._saved_attrs = None
        self._partial = ""
        self.started = False

    def start(self) -> None:
        if self.started:
            return
        self._loop = asyncio.get_running_loop()
        if self.interactive:
            import termios
            import tty

            self._fd = self.stream.fileno()
            self._saved_attrs = termios.tcgetattr(self._fd)
            tty.setcbreak(self._fd)
            self._loop.add_reader(self._fd, self._on_readable)
        else:
            self._start_line_reader()
        self.started = True

    def stop(self) -> None:
        if not self.started:
            return
        self.started = False
        if self._fd is not None:
            self._loop.remove_reader(self._fd)
            if self._saved_attrs is not None:
                import termios

                termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_attrs)
                self._saved_attrs = None
            self._fd = None

    def _on_readable(self) -> None:
        data = os.read(self._fd, 64).decode("utf-8", errors="ignore")
        # Escape sequences are arrow/function keys or Alt+key
        if not data or data.startswith("\x1b"):
            return
        for char in data:
            self._queue.put_nowait(char)

    def _start_line_reader(self) -> None:
        try:
            fd = self.stream.fileno()
            self._loop.add_reader(fd, self._on_line_readable)
            self._fd = fd
        except (AttributeError, OSError, ValueError, NotImplementedError):
            # Regular files and in-memory streams are read eagerly
            for line in self.stream.read().splitlines():
                self._queue.put_nowait(line.strip())
            self._queue.put_nowait(None)

    def _on_line_readable(self) -> None:
        data = os.read(self._fd, 4096).decode("utf-8", errors="ignore")
        if not data:
            self._loop.remove_reader(self._fd)
            self._fd = None
            if self._partial.strip():
                self._queue.put_nowait(self._partial.strip())
            self._partial = ""
            self._queue.put_nowait(None)
            return

        *lines, self._partial = (self._partial + data).split("\n")
        for line in lines:
            self._queue.put_nowait(line.strip())

    async def read_key(self) -> Optional[str]:
        """Next key (or line); None once input is exhausted."""
        return await self._queue.get()

    async def prompt(self, question: str, default: str = "") -> str:
        """Read a line of input; non-interactive input answers with the default."""
        if not self.interactive:
            terminal.info(f"{question} {default}")
            return default

        sys.stdout.write(f"{question} ")
        sys.stdout.flush()
        chars: List[str] = []
        while True:
            char = await self.read_key()
            if char is None or char in ENTER_KEYS:
                break
            if char in ("\x7f", "\b"):
                if chars:
                    chars.pop()
                    sys.stdout.write("\b \b")
            elif char.isprintable():
                chars.append(char)
                sys.stdout.write(char)
            sys.stdout.flush()
        sys.stdout.write("\n")
        answer = "".join(chars).strip()
        return answer or default

    async def confirm(self, question: str, default: bool = False) -> bool:
        suffix = "[Y/n]" if default else "[y/N]"
        answer = await self.prompt(f"{question} {suffix}", "y" if default else "n")
        return answer.lower().startswith("y")

    async def choose(self, question: str, count: int) -> Optional[int]:
        """Ask for a 1-based choice; returns a 0-based index or None."""
        answer = await self.prompt(f"{question} [1-{count}]", "1")
        try:
            index = int(answer) - 1
        except ValueError:
            return None
        return index if 0 <= index < count else None


class KeyboardController:
    """Maps keypresses onto session commands."""

    def __init__(self, session: MonitorSession, reader: KeyReader,
                 on_quit: Optional[Callable[[ExitType], None]] = None):
        self.session = session
        self.reader = reader
        self.on_quit = on_quit
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self.reader.start()
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self.reader.stop()
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None

    async def run(self) -> None:
        while True:
            key = await self.reader.read_key()
            if key is None:
                logger.info("Keyboard input closed; HTTP API remains available")
                return
            try:
                await self.handle_key(key)
            except BrowserMonitorError as e:
                terminal.error(str(e))
            except Exception as e:
                logger.error(f"Keyboard command failed: {e}")

    async def handle_key(self, key: str) -> None:
        key = key[:1].lower() if key else ""

        if key in QUIT_KEYS:
            exit_type = QUIT_KEYS[key]
            terminal.info("Closing browser..." if exit_type == ExitType.CLOSE else "Disconnecting...")
            if self.on_quit is not None:
                self.on_quit(exit_type)
            else:
                self.session.request_shutdown(0, exit_type)
            return

        if key == "t":
            await self.switch_tab()
            return

        command = KEY_COMMANDS.get(key)
        if command is None:
            return
        self.render(await self.session.execute(command))

    async def switch_tab(self) -> None:
        listing = await self.session.execute(Command.LIST_TABS)
        tabs = listing.data.get("tabs", [])
        if not tabs:
            terminal.warning("No tabs available")
            return

        terminal.print_tabs(tabs)
        index = await self.reader.choose("Switch to tab", len(tabs))
        if index is None:
            terminal.info("Tab switch cancelled")
            return
        self.render(await self.session.execute(Command.SWITCH_PAGE, index=index + 1))

    def render(self, result: CommandResult) -> None:
        if result.command == Command.STATUS:
            terminal.print_status(SessionStatus(**result.data))
        elif result.command == Command.DUMP:
            terminal.success(result.message)
            terminal.print_dump(result.data)
        elif result.command == Command.HELP:
            terminal.info(result.message)
        elif result.success:
            terminal.success(result.message)
        else:
            terminal.error(result.message)

        if result.reminder:
            terminal.notice(result.reminder)
