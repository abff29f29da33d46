"""Browser sessions: connecting, page selection and command dispatch.

Main Components:
- connector: endpoint probing, connect-with-retry and user-page filtering
- page_commands: allow-listed page methods invoked over HTTP
- session: MonitorSession, the single dispatcher for keyboard and HTTP commands
"""

from .connector import (
    SessionConnector,
    fetch_version_info,
    filter_user_pages,
    is_endpoint_reachable,
    is_user_page_url,
    list_user_pages,
    select_page,
)
from .page_commands import ALLOWED_PAGE_COMMANDS, get_computed_styles, run_page_command
from .session import Command, CommandResult, MonitorSession

__all__ = [
    "SessionConnector",
    "fetch_version_info",
    "filter_user_pages",
    "is_endpoint_reachable",
    "is_user_page_url",
    "list_user_pages",
    "select_page",
    "ALLOWED_PAGE_COMMANDS",
    "get_computed_styles",
    "run_page_command",
    "Command",
    "CommandResult",
    "MonitorSession",
]
