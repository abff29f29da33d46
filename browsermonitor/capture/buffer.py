"""Capture buffer for console, network and per-request detail.

This module provides the CaptureBuffer class that owns everything a
monitoring session records: console entries, network summary lines, the
request-id counter and the per-exchange detail records. In buffered mode
entries live in memory until dumped; in immediate mode every append is also
written to disk as it arrives.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

import aiofiles
from playwright.async_api import Page

from ..models.capture import (
    BufferStats,
    ConsoleEntry,
    DumpResult,
    NetworkExchange,
    OutputMode,
    SEPARATOR_WIDTH,
    format_full_timestamp,
    format_timestamp,
)
from ..settings import ProjectPaths
from .dump import (
    DOM_DUMP_MAX_BYTES,
    DumpTarget,
    dump_cookies,
    dump_dom,
    dump_screenshot,
    recreate_directory,
    write_json,
    write_text,
)

logger = logging.getLogger(__name__)

DEFAULT_IGNORE_PATTERNS = [
    "Download the React DevTools",
    "DevTools failed to load source map",
]

HOT_RELOAD_PATTERNS = [
    "[vite]",
    "[HMR]",
    "[WDS]",
    "[Fast Refresh]",
    "hot-update",
    "webpack-dev-server",
]


class CaptureBuffer:
    """Buffers and persists captured console and network data."""

    DOM_DUMP_MAX_BYTES = DOM_DUMP_MAX_BYTES

    def __init__(
        self,
        paths: ProjectPaths,
        output_mode: OutputMode = OutputMode.BUFFERED,
        ignore_patterns: Optional[Iterable[str]] = None,
    ):
        """Initialize capture buffer.

        Args:
            paths: Project paths (destination of dumps and immediate writes)
            output_mode: Buffered (dump on demand) or immediate (write as captured)
            ignore_patterns: Console substrings to drop, merged with the defaults
        """
        self.paths = paths
        self.output_mode = output_mode
        self.ignore_patterns: List[str] = [*DEFAULT_IGNORE_PATTERNS, *(ignore_patterns or [])]

        self.console: List[ConsoleEntry] = []
        self.network: List[str] = []
        self.exchanges: Dict[str, NetworkExchange] = {}
        self.request_counter = 0
        # Bumped by clear(); exchanges from an older generation are stale
        self.generation = 0

        self._io_lock = asyncio.Lock()

    @property
    def immediate(self) -> bool:
        return self.output_mode == OutputMode.IMMEDIATE

    # Identifiers and filters

    def next_request_id(self) -> str:
        """Allocate the next zero-padded sequence id."""
        self.request_counter += 1
        return f"{self.request_counter:03d}"

    def should_ignore(self, text: str) -> bool:
        return any(pattern in text for pattern in self.ignore_patterns)

    def is_hot_reload(self, text: str) -> bool:
        return any(pattern in text for pattern in HOT_RELOAD_PATTERNS)

    # Console

    async def log_console(self, entry: ConsoleEntry) -> None:
        """Record one console entry."""
        self.console.append(entry)
        if self.immediate:
            async with self._io_lock:
                await self._append(self.paths.console_log, entry.to_line())

    async def clear_console(self) -> None:
        """Empty the console log (page called console.clear())."""
        self.console.clear()
        if self.immediate:
            async with self._io_lock:
                await write_text(self.paths.console_log, "")
        logger.debug(f"Console buffer cleared ({format_timestamp()})")

    async def print_console_separator(self, title: str) -> None:
        for entry in ConsoleEntry.separator(title):
            await self.log_console(entry)

    # Network

    async def log_network(self, line: str) -> None:
        """Record one network summary line."""
        self.network.append(line)
        if self.immediate:
            async with self._io_lock:
                await self._append(self.paths.network_log, line)

    async def print_network_separator(self, title: str) -> None:
        line = "=" * SEPARATOR_WIDTH
        for text in (line, f"[{format_full_timestamp()}] {title}", line):
            await self.log_network(text)

    async def save_exchange(self, exchange: NetworkExchange) -> None:
        """Store a new exchange record."""
        if not self.immediate:
            self.exchanges[exchange.id] = exchange
            return

        async with self._io_lock:
            await write_json(self._exchange_path(exchange.id), exchange.to_json_dict())

    async def update_exchange(self, exchange_id: str, updates: Dict[str, Any]) -> None:
        """Merge ``updates`` into an existing exchange.

        Keys not mentioned in ``updates`` are kept. In immediate mode this is
        a read-modify-write of the exchange file; if the file cannot be read
        the update is saved as a fresh record.
        """
        if not self.immediate:
            existing = self.exchanges.get(exchange_id)
            if existing is None:
                self.exchanges[exchange_id] = NetworkExchange(**{**updates, 'id': exchange_id})
            else:
                self.exchanges[exchange_id] = existing.merge(updates)
            return

        path = self._exchange_path(exchange_id)
        async with self._io_lock:
            try:
                async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                    existing = json.loads(await f.read())
                merged = {**existing, **updates, 'id': existing.get('id', exchange_id)}
            except (OSError, ValueError) as e:
                logger.debug(f"Exchange {exchange_id} unreadable ({e}), saving update as new record")
                merged = {**updates, 'id': exchange_id}
            await write_json(path, merged)

    def get_exchange(self, exchange_id: str) -> Optional[NetworkExchange]:
        return self.exchanges.get(exchange_id)

    # Lifecycle

    async def prepare_output(self) -> None:
        """Reset on-disk logs at session start in immediate mode."""
        self.paths.output_dir.mkdir(parents=True, exist_ok=True)
        if self.immediate:
            async with self._io_lock:
                await write_text(self.paths.console_log, "")
                await write_text(self.paths.network_log, "")
                recreate_directory(self.paths.network_dir)

    async def clear(self) -> None:
        """Empty all buffers and reset the sequence counter to zero."""
        self.console.clear()
        self.network.clear()
        self.exchanges.clear()
        self.request_counter = 0
        self.generation += 1

        # network.log is append-only across clears; a summary line from a
        # request already in flight can still be appended after this point
        if self.immediate:
            async with self._io_lock:
                await write_text(self.paths.console_log, "")
                recreate_directory(self.paths.network_dir)

        logger.info(f"All buffers cleared ({format_timestamp()})")

    def get_stats(self) -> BufferStats:
        return BufferStats(
            console_entries=len(self.console),
            network_entries=len(self.network),
            request_details=len(self.exchanges) if not self.immediate else self.request_counter,
        )

    async def dump(
        self,
        page: Optional[Page] = None,
        targets: Optional[Iterable[DumpTarget]] = None,
    ) -> DumpResult:
        """Write the requested artifacts to files.

        Buffers are never cleared by a dump. Page artifacts (cookies, DOM,
        screenshot) need a page and are skipped without one. In immediate
        mode the console and network logs are already on disk.

        Args:
            page: Monitored page for cookies, DOM and screenshot
            targets: Artifact kinds to write (default: all)

        Returns:
            DumpResult with written paths and counts
        """
        wanted = list(targets) if targets is not None else list(DumpTarget)
        result = DumpResult()
        self.paths.output_dir.mkdir(parents=True, exist_ok=True)

        if not self.immediate:
            if DumpTarget.CONSOLE in wanted:
                lines = [entry.to_line() for entry in self.console]
                await write_text(self.paths.console_log, "\n".join(lines) + ("\n" if lines else ""))
                result.paths[DumpTarget.CONSOLE.value] = str(self.paths.console_log)
                result.counts[DumpTarget.CONSOLE.value] = len(lines)

            if DumpTarget.NETWORK in wanted:
                lines = list(self.network)
                await write_text(self.paths.network_log, "\n".join(lines) + ("\n" if lines else ""))
                result.paths[DumpTarget.NETWORK.value] = str(self.paths.network_log)
                result.counts[DumpTarget.NETWORK.value] = len(lines)

            if DumpTarget.REQUESTS in wanted:
                exchanges = list(self.exchanges.values())
                recreate_directory(self.paths.network_dir)
                for exchange in exchanges:
                    await write_json(self._exchange_path(exchange.id), exchange.to_json_dict())
                result.paths[DumpTarget.REQUESTS.value] = str(self.paths.network_dir)
                result.counts[DumpTarget.REQUESTS.value] = len(exchanges)
        else:
            for target, path in (
                (DumpTarget.CONSOLE, self.paths.console_log),
                (DumpTarget.NETWORK, self.paths.network_log),
                (DumpTarget.REQUESTS, self.paths.network_dir),
            ):
                if target in wanted:
                    result.paths[target.value] = str(path)

        if page is not None:
            await self._dump_page_artifacts(page, wanted, result)

        logger.info(f"Dump complete: {result.counts}")
        return result

    async def _dump_page_artifacts(self, page: Page, wanted: List[DumpTarget], result: DumpResult) -> None:
        if DumpTarget.COOKIES in wanted:
            try:
                domains, count = await dump_cookies(page, self.paths.cookies_dir)
                result.paths[DumpTarget.COOKIES.value] = str(self.paths.cookies_dir)
                result.counts[DumpTarget.COOKIES.value] = count
                result.counts["cookie_domains"] = domains
            except Exception as e:
                logger.error(f"Cookie dump failed: {e}")
                result.errors[DumpTarget.COOKIES.value] = str(e)

        if DumpTarget.DOM in wanted:
            try:
                size, truncated = await dump_dom(page, self.paths.dom_html, self.DOM_DUMP_MAX_BYTES)
                result.paths[DumpTarget.DOM.value] = str(self.paths.dom_html)
                result.counts[DumpTarget.DOM.value] = size
                if truncated:
                    result.counts["dom_truncated"] = 1
            except Exception as e:
                logger.error(f"DOM dump failed: {e}")
                result.errors[DumpTarget.DOM.value] = str(e)

        if DumpTarget.SCREENSHOT in wanted:
            try:
                size = await dump_screenshot(page, self.paths.screenshot)
                result.paths[DumpTarget.SCREENSHOT.value] = str(self.paths.screenshot)
                result.counts[DumpTarget.SCREENSHOT.value] = size
            except Exception as e:
                logger.error(f"Screenshot failed: {e}")
                result.errors[DumpTarget.SCREENSHOT.value] = str(e)

    def _exchange_path(self, exchange_id: str):
        return self.paths.network_dir / f"{exchange_id}.json"

    async def _append(self, path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, 'a', encoding='utf-8') as f:
            await f.write(line + "\n")

    def __repr__(self) -> str:
        stats = self.get_stats()
        return (
            f"CaptureBuffer(mode={self.output_mode.value}, "
            f"console={stats.console_entries}, "
            f"network={stats.network_entries}, "
            f"requests={stats.request_details}, "
            f"counter={self.request_counter})"
        )
