import logging
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

from promomail.config import settings
from promomail.exceptions import FetchError

logger = logging.getLogger(__name__)

# Body size budgets (characters) for tool results
COMPACT_LIMIT = 50_000
STANDARD_LIMIT = 100_000
EXTENDED_LIMIT = 200_000

PREVIEW_CHARS = 500


def is_valid_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def truncate_body(body: str, max_chars: int) -> tuple[str, bool]:
    """Cut body to max_chars, appending a marker that records the original length."""
    if len(body) <= max_chars:
        return body, False
    marker = f"\n\n[... truncated ... original length: {len(body)} characters]"
    return body[:max_chars] + marker, True


@dataclass
class FetchDiagnostics:
    url: str
    http_status: int | None = None
    size_chars: int = 0
    was_truncated: bool = False
    preview: str = ""
    error: str | None = None


@dataclass
class FetchResult:
    content: str
    diagnostics: FetchDiagnostics

    @property
    def ok(self) -> bool:
        return self.diagnostics.error is None


class HtmlFetcher:
    """GET product pages with a browser-like user agent."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client
        self.headers = {
            "User-Agent": settings.user_agent,
            "Accept": settings.accept_header,
        }

    async def fetch(self, url: str, max_chars: int = STANDARD_LIMIT) -> FetchResult:
        """Fetch a page for an LLM tool call. Never raises: failures become the content."""
        diagnostics = FetchDiagnostics(url=url)

        if not is_valid_url(url):
            diagnostics.error = f"Unsupported URL: {url!r}"
            return FetchResult(f"Error fetching URL: {diagnostics.error}", diagnostics)

        try:
            resp = await self._get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning("Fetch failed for %s: %s", url, e)
            diagnostics.error = str(e) or e.__class__.__name__
            return FetchResult(f"Error fetching URL: {diagnostics.error}", diagnostics)

        diagnostics.http_status = resp.status_code
        if not resp.is_success:
            diagnostics.error = f"HTTP {resp.status_code} {resp.reason_phrase}".strip()
            logger.warning("Fetch of %s returned %s", url, diagnostics.error)
            return FetchResult(f"Error fetching URL: {diagnostics.error}", diagnostics)

        html = resp.text
        content, truncated = truncate_body(html, max_chars)
        diagnostics.size_chars = len(html)
        diagnostics.was_truncated = truncated
        diagnostics.preview = html[:PREVIEW_CHARS]

        logger.info(
            "Fetched %s: status=%d size=%d truncated=%s",
            url, resp.status_code, len(html), truncated,
        )
        return FetchResult(content, diagnostics)

    async def fetch_html(self, url: str) -> str:
        """Fetch a full page for a caller that owns the fetch. Raises FetchError."""
        if not is_valid_url(url):
            raise FetchError(f"Unsupported URL: {url!r}")
        try:
            resp = await self._get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise FetchError(str(e) or e.__class__.__name__) from e
        if not resp.is_success:
            raise FetchError(
                f"HTTP {resp.status_code} {resp.reason_phrase}".strip(),
                status_code=resp.status_code,
            )
        return resp.text

    async def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, headers=self.headers, follow_redirects=True)
        async with httpx.AsyncClient(timeout=settings.fetch_timeout) as client:
            return await client.get(url, headers=self.headers, follow_redirects=True)
