"""Unit tests for the session connector and page selection."""

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from browsermonitor.exceptions import ConnectionFailedError, EndpointUnreachableError, NoPageError
from browsermonitor.session import connector
from browsermonitor.session.connector import (
    SessionConnector,
    fetch_version_info,
    filter_user_pages,
    is_endpoint_reachable,
    is_user_page_url,
    list_user_pages,
    select_page,
)


def mock_transport(handler):
    """Patch httpx.AsyncClient so requests go to ``handler``."""
    real_client = httpx.AsyncClient

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    return patch.object(connector.httpx, "AsyncClient", side_effect=factory)


class TestPageFiltering:
    """Tests for user-page filtering."""

    @pytest.mark.parametrize("url,expected", [
        ("https://example.com/", True),
        ("http://localhost:4000/dashboard", True),
        ("chrome://newtab/", False),
        ("chrome-extension://abc/popup.html", False),
        ("devtools://devtools/bundled/inspector.html", False),
        ("https://example.com/react-devtools/panel.html", False),
    ])
    def test_is_user_page_url(self, url, expected):
        assert is_user_page_url(url) is expected

    def test_internal_pages_removed(self, page_factory):
        pages = [page_factory("chrome://newtab/"), page_factory("https://example.com/"), page_factory("devtools://x")]

        assert [p.url for p in filter_user_pages(pages)] == ["https://example.com/"]

    def test_blank_pages_dropped_when_real_page_exists(self, page_factory):
        pages = [page_factory("about:blank"), page_factory("https://example.com/")]

        assert [p.url for p in filter_user_pages(pages)] == ["https://example.com/"]

    def test_blank_page_kept_when_only_candidate(self, page_factory):
        pages = [page_factory("about:blank"), page_factory("chrome://newtab/")]

        assert [p.url for p in filter_user_pages(pages)] == ["about:blank"]

    def test_falls_back_to_all_pages(self, page_factory):
        pages = [page_factory("chrome://newtab/"), page_factory("chrome://settings/")]

        assert filter_user_pages(pages) == pages

    def test_list_user_pages_spans_contexts(self, page_factory):
        first, second = MagicMock(), MagicMock()
        first.pages = [page_factory("https://a.example.com/")]
        second.pages = [page_factory("https://b.example.com/")]
        browser = MagicMock()
        browser.contexts = [first, second]

        assert [p.url for p in list_user_pages(browser)] == ["https://a.example.com/", "https://b.example.com/"]


class TestSelectPage:
    """Tests for select_page."""

    @pytest.mark.asyncio
    async def test_no_pages_raises(self):
        with pytest.raises(NoPageError):
            await select_page([])

    @pytest.mark.asyncio
    async def test_single_page_selected_without_asking(self, page_factory):
        page = page_factory()
        chooser = AsyncMock()

        assert await select_page([page], chooser) is page
        chooser.assert_not_called()

    @pytest.mark.asyncio
    async def test_chooser_index_used(self, page_factory):
        pages = [page_factory("https://a/"), page_factory("https://b/")]

        assert await select_page(pages, AsyncMock(return_value=1)) is pages[1]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("answer", [None, 5, -1])
    async def test_invalid_choice_selects_first(self, answer, page_factory):
        pages = [page_factory("https://a/"), page_factory("https://b/")]

        assert await select_page(pages, AsyncMock(return_value=answer)) is pages[0]


class TestVersionProbe:
    """Tests for the /json/version probe."""

    @pytest.mark.asyncio
    async def test_returns_version_info(self):
        def handler(request):
            assert request.url.path == "/json/version"
            return httpx.Response(200, json={"Browser": "Chrome/120.0"})

        with mock_transport(handler):
            info = await fetch_version_info("localhost", 9222)

        assert info["Browser"] == "Chrome/120.0"

    @pytest.mark.asyncio
    async def test_connection_error_is_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with mock_transport(handler):
            with pytest.raises(EndpointUnreachableError):
                await fetch_version_info("localhost", 9222)
            assert await is_endpoint_reachable("localhost", 9222) is False

    @pytest.mark.asyncio
    async def test_non_json_is_unreachable(self):
        with mock_transport(lambda request: httpx.Response(200, text="<html>")):
            with pytest.raises(EndpointUnreachableError, match="invalid response"):
                await fetch_version_info("localhost", 9222)

    @pytest.mark.asyncio
    async def test_error_status_is_unreachable(self):
        with mock_transport(lambda request: httpx.Response(404)):
            assert await is_endpoint_reachable("localhost", 9222) is False


class TestSessionConnector:
    """Tests for connect-with-retry."""

    @pytest.fixture
    def playwright(self):
        playwright = MagicMock()
        playwright.chromium.connect_over_cdp = AsyncMock(return_value=MagicMock(name="browser"))
        return playwright

    @pytest.mark.asyncio
    async def test_connects_after_probe(self, playwright):
        with patch.object(connector, "fetch_version_info", AsyncMock(return_value={"Browser": "Chrome"})):
            browser = await SessionConnector(playwright, delay=0).connect("localhost", 9222)

        assert browser is playwright.chromium.connect_over_cdp.return_value
        playwright.chromium.connect_over_cdp.assert_awaited_once()
        assert playwright.chromium.connect_over_cdp.call_args.args[0] == "http://localhost:9222"

    @pytest.mark.asyncio
    async def test_retries_until_probe_succeeds(self, playwright):
        probe = AsyncMock(side_effect=[
            EndpointUnreachableError("http://localhost:9222/json/version", "timed out"),
            {"Browser": "Chrome"},
        ])
        with patch.object(connector, "fetch_version_info", probe), \
                patch.object(connector.asyncio, "sleep", AsyncMock()) as sleep:
            connector_ = SessionConnector(playwright, attempts=3, delay=1.5)
            await connector_.connect("localhost", 9222)

        assert probe.await_count == 2
        sleep.assert_awaited_once_with(1.5)
        assert connector_.version_info == {"Browser": "Chrome"}

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_never_connects(self, playwright):
        probe = AsyncMock(side_effect=EndpointUnreachableError("http://localhost:9222/json/version", "refused"))
        with patch.object(connector, "fetch_version_info", probe), \
                patch.object(connector.asyncio, "sleep", AsyncMock()):
            with pytest.raises(ConnectionFailedError) as exc_info:
                await SessionConnector(playwright, attempts=3).connect("localhost", 9222)

        assert probe.await_count == 3
        playwright.chromium.connect_over_cdp.assert_not_called()
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, EndpointUnreachableError)

    @pytest.mark.asyncio
    async def test_cdp_failure_is_retried(self, playwright):
        playwright.chromium.connect_over_cdp = AsyncMock(side_effect=Exception("WebSocket error"))
        with patch.object(connector, "fetch_version_info", AsyncMock(return_value={})), \
                patch.object(connector.asyncio, "sleep", AsyncMock()):
            with pytest.raises(ConnectionFailedError):
                await SessionConnector(playwright, attempts=2).connect("localhost", 9222)

        assert playwright.chromium.connect_over_cdp.await_count == 2
