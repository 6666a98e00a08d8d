"""HTTP client for downloading ICS calendar feeds."""

import asyncio
import logging
from typing import Any, Optional

import httpx

from .. import __version__
from .exceptions import ICSAuthError, ICSFetchError, ICSNetworkError, ICSTimeoutError
from .models import ICSResponse

logger = logging.getLogger(__name__)


class ICSFetcher:
    """Async HTTP client for downloading ICS feeds.

    Non-2xx responses and network failures surface as :class:`ICSFetchError`
    subclasses; the caller decides whether the run can continue.
    """

    def __init__(self, settings: Any, client: Optional[httpx.AsyncClient] = None):
        """Initialize ICS fetcher.

        Args:
            settings: Application settings (``request_timeout``, ``max_retries``,
                ``retry_backoff_factor``, ``app_name``)
            client: Pre-built client, mainly for tests; closed by its owner
        """
        self.settings = settings
        self.client: Optional[httpx.AsyncClient] = client
        self._owns_client = client is None

        logger.debug("ICS fetcher initialized")

    async def __aenter__(self) -> "ICSFetcher":
        """Async context manager entry."""
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self._close_client()

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client exists."""
        if self.client is None or self.client.is_closed:
            timeout = httpx.Timeout(
                connect=10.0, read=self.settings.request_timeout, write=10.0, pool=30.0
            )
            self.client = httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=True,
                headers={
                    "User-Agent": f"{self.settings.app_name}/{__version__} ICS-Client",
                    "Accept": "text/calendar, text/plain, */*",
                },
            )
            self._owns_client = True
        return self.client

    async def _close_client(self) -> None:
        """Close HTTP client if this fetcher created it."""
        if self.client is not None and self._owns_client and not self.client.is_closed:
            await self.client.aclose()
        if self._owns_client:
            self.client = None

    async def fetch(self, url: str, headers: Optional[dict[str, str]] = None) -> ICSResponse:
        """Download feed content.

        Args:
            url: HTTP(S) feed URL
            headers: Extra request headers

        Returns:
            Successful response with the feed text

        Raises:
            ICSAuthError: On 401/403
            ICSTimeoutError: If every attempt timed out
            ICSNetworkError: If every attempt failed at the network level
            ICSFetchError: On any other non-2xx status or empty body
        """
        if not url or not url.lower().startswith(("http://", "https://", "webcal://")):
            raise ICSFetchError(f"Unsupported feed URL: {url!r}")
        if url.lower().startswith("webcal://"):
            url = "https://" + url[len("webcal://") :]

        try:
            response = await self._make_request_with_retry(url, headers or {})
        except httpx.TimeoutException as e:
            logger.error(f"Timeout fetching ICS from {url}: {e}")
            raise ICSTimeoutError(f"Request timeout after {self.settings.request_timeout}s") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"HTTP error fetching ICS from {url}: {status}")
            if status in (401, 403):
                raise ICSAuthError(f"Feed access denied (HTTP {status})", status) from e
            raise ICSFetchError(f"HTTP {status}: {e.response.reason_phrase}", status) from e
        except httpx.HTTPError as e:
            logger.error(f"Network error fetching ICS from {url}: {e}")
            raise ICSNetworkError(f"Network error: {e}") from e

        return self._create_response(response)

    async def fetch_text(self, url: str) -> str:
        """Download feed content and return it as text (raises like :meth:`fetch`)."""
        response = await self.fetch(url)
        return response.content or ""

    async def _make_request_with_retry(self, url: str, headers: dict[str, str]) -> httpx.Response:
        """Make HTTP request, retrying timeouts and network errors with backoff."""
        client = await self._ensure_client()
        max_retries = getattr(self.settings, "max_retries", 2)
        backoff_factor = getattr(self.settings, "retry_backoff_factor", 1.5)

        for attempt in range(max_retries + 1):
            try:
                response = await client.get(url, headers=headers)
                response.raise_for_status()
                logger.debug(f"Fetched ICS from {url} (attempt {attempt + 1})")
                return response
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                if attempt >= max_retries:
                    logger.error(f"All retry attempts failed for {url}")
                    raise
                backoff_time = backoff_factor**attempt
                logger.warning(
                    f"Request failed (attempt {attempt + 1}/{max_retries + 1}), "
                    f"retrying in {backoff_time:.1f}s: {e}"
                )
                await asyncio.sleep(backoff_time)

        raise ICSFetchError("Maximum retries exceeded")

    def _create_response(self, http_response: httpx.Response) -> ICSResponse:
        """Create ICS response from HTTP response.

        Raises:
            ICSFetchError: If the body is empty.
        """
        headers = dict(http_response.headers)
        content = http_response.text

        content_type = headers.get("content-type", "").lower()
        if content_type and not any(ct in content_type for ct in ["text/calendar", "text/plain"]):
            logger.warning(f"Unexpected content type: {content_type}")

        if not content or not content.strip():
            raise ICSFetchError("Empty content received", http_response.status_code)

        if "BEGIN:VCALENDAR" not in content:
            logger.warning("Content does not appear to be valid ICS format")

        logger.debug(f"Fetched ICS content ({len(content)} bytes)")
        return ICSResponse(
            success=True,
            content=content,
            status_code=http_response.status_code,
            headers=headers,
            etag=headers.get("etag"),
            last_modified=headers.get("last-modified"),
        )
