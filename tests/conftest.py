"""Shared test fixtures and configuration for browsermonitor tests."""

import pytest
from pathlib import Path
import sys
from unittest.mock import AsyncMock, MagicMock

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from browsermonitor.capture import CaptureBuffer
from browsermonitor.models import OutputMode
from browsermonitor.settings import ProjectPaths


@pytest.fixture
def project_paths(tmp_path):
    """Project paths rooted in a temporary directory."""
    paths = ProjectPaths.from_root(tmp_path)
    paths.ensure_directories()
    return paths


@pytest.fixture
def buffer(project_paths):
    """Buffered-mode capture buffer."""
    return CaptureBuffer(project_paths, OutputMode.BUFFERED)


@pytest.fixture
def immediate_buffer(project_paths):
    """Immediate-mode capture buffer."""
    return CaptureBuffer(project_paths, OutputMode.IMMEDIATE)


def make_page(url="https://example.com/", title="Example"):
    """Mock Playwright page with event registration and common methods."""
    page = MagicMock()
    page.url = url
    page.title = AsyncMock(return_value=title)
    page.is_closed = MagicMock(return_value=False)
    page.bring_to_front = AsyncMock()
    page.content = AsyncMock(return_value="<html><body>ok</body></html>")
    page.screenshot = AsyncMock(return_value=b"\x89PNG")
    page.evaluate = AsyncMock(return_value=None)
    page.goto = AsyncMock(return_value=None)
    page.context.cookies = AsyncMock(return_value=[])
    return page


@pytest.fixture
def page_factory():
    """Factory for mock pages with a given URL."""
    return make_page


@pytest.fixture
def mock_page():
    """Single mock page."""
    return make_page()


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "api: HTTP control API tests")
    config.addinivalue_line("markers", "slow: Slow tests")
