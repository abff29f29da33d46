"""Artifact writers for buffer dumps.

Each writer produces one artifact kind from the buffer or the monitored
page and overwrites the previous artifact in place.
"""

import json
import logging
import re
import shutil
from collections import OrderedDict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Tuple

import aiofiles
from playwright.async_api import Page

logger = logging.getLogger(__name__)

DOM_DUMP_MAX_BYTES = 2 * 1024 * 1024

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]")


class DumpTarget(str, Enum):
    """Artifact kinds a dump can produce."""
    CONSOLE = "console"
    NETWORK = "network"
    REQUESTS = "requests"
    COOKIES = "cookies"
    DOM = "dom"
    SCREENSHOT = "screenshot"


async def write_text(path: Path, content: str) -> None:
    """Overwrite a text file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, 'w', encoding='utf-8') as f:
        await f.write(content)


async def write_json(path: Path, data: Any) -> None:
    await write_text(path, json.dumps(data, indent=2, default=str))


def recreate_directory(directory: Path) -> None:
    """Empty a directory by removing and recreating it."""
    if directory.exists():
        shutil.rmtree(directory)
    directory.mkdir(parents=True, exist_ok=True)


def cookie_filename(domain: str) -> str:
    """File name for one cookie domain."""
    name = _UNSAFE_FILENAME_RE.sub("_", domain.lstrip(".")) or "unknown"
    return f"{name}.json"


def group_cookies_by_domain(cookies: List[Dict[str, Any]]) -> "OrderedDict[str, List[Dict[str, Any]]]":
    """Group cookies by domain with any leading dot stripped."""
    grouped: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
    for cookie in cookies:
        domain = (cookie.get('domain') or 'unknown').lstrip('.')
        grouped.setdefault(domain, []).append(cookie)
    return grouped


async def dump_cookies(page: Page, cookies_dir: Path) -> Tuple[int, int]:
    """Write one JSON file per cookie domain.

    Args:
        page: Monitored page; cookies are read from its browser context
        cookies_dir: Destination directory (recreated)

    Returns:
        Tuple of (domains written, cookies written)
    """
    cookies = await page.context.cookies()
    grouped = group_cookies_by_domain(cookies)

    recreate_directory(cookies_dir)
    for domain, domain_cookies in grouped.items():
        await write_json(cookies_dir / cookie_filename(domain), domain_cookies)

    logger.debug(f"Dumped {len(cookies)} cookies across {len(grouped)} domains")
    return len(grouped), len(cookies)


def truncate_html(html: str, max_bytes: int = DOM_DUMP_MAX_BYTES) -> Tuple[str, bool]:
    """Cap serialized HTML at ``max_bytes``; oversize content is truncated, not rejected."""
    encoded = html.encode('utf-8')
    if len(encoded) <= max_bytes:
        return html, False

    omitted = len(encoded) - max_bytes
    kept = encoded[:max_bytes].decode('utf-8', errors='ignore')
    return kept + f"\n<!-- browsermonitor: DOM truncated, {omitted} bytes omitted -->\n", True


async def dump_dom(page: Page, dom_path: Path, max_bytes: int = DOM_DUMP_MAX_BYTES) -> Tuple[int, bool]:
    """Write the page's full HTML.

    Returns:
        Tuple of (bytes of original HTML, whether it was truncated)
    """
    html = await page.content()
    content, truncated = truncate_html(html, max_bytes)
    await write_text(dom_path, content)
    if truncated:
        logger.warning(f"DOM snapshot truncated to {max_bytes} bytes")
    return len(html.encode('utf-8')), truncated


async def dump_screenshot(page: Page, screenshot_path: Path) -> int:
    """Write a viewport screenshot.

    Returns:
        Size of the PNG in bytes
    """
    screenshot_path.parent.mkdir(parents=True, exist_ok=True)
    data = await page.screenshot(path=str(screenshot_path), full_page=False)
    return len(data) if data else 0
