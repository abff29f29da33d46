"""Allow-listed page commands for the control plane.

Commands are named the way agent instructions and existing scripts call
them (``goto``, ``waitForSelector``, ``setViewport`` ...) and are mapped
onto the Playwright page API. Anything not in ALLOWED_PAGE_COMMANDS is
rejected before the page is touched.
"""

import base64
import logging
from typing import Any, Dict, List, Optional

from playwright.async_api import Page, Response

from ..exceptions import PageCommandNotAllowedError

logger = logging.getLogger(__name__)

ALLOWED_PAGE_COMMANDS = frozenset({
    "goto",
    "reload",
    "goBack",
    "goForward",
    "focus",
    "click",
    "hover",
    "type",
    "waitForSelector",
    "setViewport",
    "setDefaultTimeout",
    "setDefaultNavigationTimeout",
    "title",
    "url",
    "content",
    "pdf",
    "screenshot",
})

# Option names accepted in camelCase and their Playwright keyword
OPTION_NAMES = {
    "waitUntil": "wait_until",
    "timeout": "timeout",
    "delay": "delay",
    "button": "button",
    "clickCount": "click_count",
    "fullPage": "full_page",
    "type": "type",
    "quality": "quality",
    "omitBackground": "omit_background",
    "format": "format",
    "printBackground": "print_background",
    "landscape": "landscape",
    "scale": "scale",
    "width": "width",
    "height": "height",
}

WAIT_UNTIL_VALUES = {
    "networkidle0": "networkidle",
    "networkidle2": "networkidle",
}


def is_allowed(method: str) -> bool:
    return method in ALLOWED_PAGE_COMMANDS


def _options(args: List[Any], position: int) -> Dict[str, Any]:
    """Keyword options from the dict at ``args[position]``, if present."""
    if len(args) <= position or not isinstance(args[position], dict):
        return {}

    options = {}
    for key, value in args[position].items():
        name = OPTION_NAMES.get(key, key)
        if name == "wait_until":
            value = WAIT_UNTIL_VALUES.get(value, value)
        options[name] = value
    return options


def _arg(args: List[Any], position: int, name: str) -> Any:
    if len(args) <= position:
        raise ValueError(f"Missing argument '{name}'")
    return args[position]


def serialize_result(value: Any) -> Any:
    """Make a command result JSON-safe."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return {"encoding": "base64", "data": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, Response):
        return {"url": value.url, "status": value.status, "ok": value.ok}
    if isinstance(value, dict):
        return {k: serialize_result(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_result(v) for v in value]
    return str(value)


async def run_page_command(page: Page, method: str, args: Optional[List[Any]] = None) -> Any:
    """Run one allow-listed command against a page.

    Args:
        page: Monitored page
        method: Command name
        args: Positional arguments; a trailing dict carries options

    Returns:
        JSON-safe command result

    Raises:
        PageCommandNotAllowedError: If ``method`` is not allow-listed
        ValueError: If a required argument is missing
    """
    if not is_allowed(method):
        raise PageCommandNotAllowedError(method)

    args = list(args or [])
    logger.info(f"Page command: {method} {args}")

    if method == "goto":
        result = await page.goto(_arg(args, 0, "url"), **_options(args, 1))
    elif method == "reload":
        result = await page.reload(**_options(args, 0))
    elif method == "goBack":
        result = await page.go_back(**_options(args, 0))
    elif method == "goForward":
        result = await page.go_forward(**_options(args, 0))
    elif method == "focus":
        result = await page.focus(_arg(args, 0, "selector"), **_options(args, 1))
    elif method == "click":
        result = await page.click(_arg(args, 0, "selector"), **_options(args, 1))
    elif method == "hover":
        result = await page.hover(_arg(args, 0, "selector"), **_options(args, 1))
    elif method == "type":
        result = await page.type(_arg(args, 0, "selector"), str(_arg(args, 1, "text")), **_options(args, 2))
    elif method == "waitForSelector":
        options = _options(args, 1)
        if options.pop("visible", False):
            options["state"] = "visible"
        if options.pop("hidden", False):
            options["state"] = "hidden"
        handle = await page.wait_for_selector(_arg(args, 0, "selector"), **options)
        result = handle is not None
    elif method == "setViewport":
        viewport = _arg(args, 0, "viewport")
        await page.set_viewport_size({"width": int(viewport["width"]), "height": int(viewport["height"])})
        result = page.viewport_size
    elif method == "setDefaultTimeout":
        page.set_default_timeout(float(_arg(args, 0, "timeout")))
        result = None
    elif method == "setDefaultNavigationTimeout":
        page.set_default_navigation_timeout(float(_arg(args, 0, "timeout")))
        result = None
    elif method == "title":
        result = await page.title()
    elif method == "url":
        result = page.url
    elif method == "content":
        result = await page.content()
    elif method == "pdf":
        result = await page.pdf(**_options(args, 0))
    else:  # screenshot
        result = await page.screenshot(**_options(args, 0))

    return serialize_result(result)


COMPUTED_STYLES_SCRIPT = """
(selector) => {
    const element = document.querySelector(selector);
    if (!element) {
        return null;
    }
    const computed = window.getComputedStyle(element);
    const styles = {};
    for (const name of computed) {
        styles[name] = computed.getPropertyValue(name);
    }
    return {
        tagName: element.tagName.toLowerCase(),
        id: element.id || null,
        className: typeof element.className === 'string' ? element.className : null,
        styles: styles,
    };
}
"""


async def get_computed_styles(page: Page, selector: str) -> Optional[Dict[str, Any]]:
    """Computed styles of the first element matching ``selector``, or None."""
    return await page.evaluate(COMPUTED_STYLES_SCRIPT, selector)
