"""Tests for the HTML fetcher."""

import httpx
import pytest

from promomail.exceptions import FetchError
from promomail.services.fetcher import STANDARD_LIMIT, is_valid_url, truncate_body
from tests.fakes import mock_fetcher


class TestTruncateBody:
    """Size cap and marker."""

    def test_short_body_untouched(self):
        assert truncate_body("abc", 10) == ("abc", False)

    def test_marker_records_original_length(self):
        text, truncated = truncate_body("x" * 150_000, 100_000)
        assert truncated
        assert text.startswith("x" * 100_000)
        assert text.endswith("[... truncated ... original length: 150000 characters]")


class TestIsValidUrl:
    def test_accepts_http_and_https(self):
        assert is_valid_url("http://shop.example/p/1")
        assert is_valid_url("https://shop.example/p/1")

    def test_rejects_other_schemes(self):
        assert not is_valid_url("ftp://shop.example/file")
        assert not is_valid_url("javascript:alert(1)")
        assert not is_valid_url("not a url")


class TestFetch:
    """Tool-path fetches never raise."""

    @pytest.mark.asyncio
    async def test_truncated_fetch_diagnostics(self):
        fetcher = mock_fetcher(lambda request: httpx.Response(200, text="a" * 150_000))

        result = await fetcher.fetch("https://shop.example/p/1", STANDARD_LIMIT)

        assert result.ok
        assert result.diagnostics.was_truncated is True
        assert result.diagnostics.size_chars == 150_000
        assert result.diagnostics.http_status == 200
        assert len(result.diagnostics.preview) == 500
        assert "150000" in result.content[STANDARD_LIMIT:]
        assert result.content.endswith("characters]")

    @pytest.mark.asyncio
    async def test_sends_browser_headers(self):
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, text="<html></html>")

        await mock_fetcher(handler).fetch("https://shop.example/p/1")

        assert "Mozilla/5.0" in seen["user-agent"]
        assert seen["accept"].startswith("text/html")

    @pytest.mark.asyncio
    async def test_http_error_becomes_text(self):
        fetcher = mock_fetcher(lambda request: httpx.Response(503, text="down"))

        result = await fetcher.fetch("https://shop.example/p/1")

        assert not result.ok
        assert result.content.startswith("Error fetching URL: HTTP 503")
        assert result.diagnostics.http_status == 503

    @pytest.mark.asyncio
    async def test_network_error_becomes_text(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await mock_fetcher(handler).fetch("https://shop.example/p/1")

        assert result.content == "Error fetching URL: connection refused"
        assert result.diagnostics.error == "connection refused"

    @pytest.mark.asyncio
    async def test_invalid_url_is_not_requested(self):
        calls = []
        fetcher = mock_fetcher(lambda request: calls.append(request) or httpx.Response(200))

        result = await fetcher.fetch("file:///etc/passwd")

        assert not result.ok
        assert calls == []

    @pytest.mark.asyncio
    async def test_follows_redirects(self):
        def handler(request):
            if request.url.path == "/old":
                return httpx.Response(301, headers={"location": "https://shop.example/new"})
            return httpx.Response(200, text="<html>moved</html>")

        result = await mock_fetcher(handler).fetch("https://shop.example/old")

        assert result.content == "<html>moved</html>"

    @pytest.mark.asyncio
    async def test_unusable_host_becomes_text(self):
        calls = []
        fetcher = mock_fetcher(lambda request: calls.append(request) or httpx.Response(200))

        result = await fetcher.fetch("https://shÿop..example/p")

        assert not result.ok
        assert result.content.startswith("Error fetching URL: Invalid IDNA hostname")
        assert calls == []


class TestFetchHtml:
    """Caller-owned fetches raise FetchError."""

    @pytest.mark.asyncio
    async def test_returns_full_body(self):
        fetcher = mock_fetcher(lambda request: httpx.Response(200, text="b" * 150_000))
        assert len(await fetcher.fetch_html("https://shop.example/p/1")) == 150_000

    @pytest.mark.asyncio
    async def test_non_2xx_raises(self):
        fetcher = mock_fetcher(lambda request: httpx.Response(404, text="missing"))

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch_html("https://shop.example/p/1")

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_unusable_host_raises_fetch_error(self):
        fetcher = mock_fetcher(lambda request: httpx.Response(200, text="<html></html>"))

        with pytest.raises(FetchError, match="Invalid IDNA hostname"):
            await fetcher.fetch_html("https://shÿop..example/p")
