"""Google Calendar implementation of the target calendar store."""

import asyncio
import logging
import random
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import httplib2
from google.auth.exceptions import GoogleAuthError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..timezone import TimezoneService
from ..utils.helpers import jittered_delay
from .exceptions import (
    StoreError,
    StoreNotFoundError,
    StorePermissionError,
    StoreRateLimitError,
    StoreTransientError,
)

logger = logging.getLogger(__name__)

MAX_RESULTS_PER_PAGE = 2500
MAX_BACKOFF_SECONDS = 30.0

ServiceFactory = Callable[[], Any]


def build_service(credentials: Any) -> Any:
    """Build a Calendar v3 API client for ready-to-use credentials."""
    return build("calendar", "v3", credentials=credentials, cache_discovery=False)


def _error_content(error: HttpError) -> str:
    content = getattr(error, "content", b"") or b""
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="ignore")
    return str(content)


def is_rate_limit_error(error: HttpError) -> bool:
    """Check whether an API error is a quota/rate-limit rejection."""
    status = getattr(getattr(error, "resp", None), "status", None)
    if status == 429:
        return True
    if status in (403, 400):
        content = _error_content(error)
        return "rateLimitExceeded" in content or "userRateLimitExceeded" in content
    return False


def map_http_error(error: HttpError, calendar_id: Optional[str] = None) -> StoreError:
    """Translate a Google API error into the store exception taxonomy."""
    status = getattr(getattr(error, "resp", None), "status", None)
    try:
        status = int(status) if status is not None else None
    except (TypeError, ValueError):
        status = None
    message = f"Google Calendar API error {status}: {error}"

    if is_rate_limit_error(error):
        return StoreRateLimitError(message, status, calendar_id)
    if status in (401, 403):
        return StorePermissionError(message, status, calendar_id)
    if status in (404, 410):
        return StoreNotFoundError(message, status, calendar_id)
    if status is not None and status >= 500:
        return StoreTransientError(message, status, calendar_id)
    return StoreError(message, status, calendar_id)


class GoogleCalendarStore:
    """Calendar store backed by the Google Calendar v3 API.

    ``service_factory`` is the credential collaborator: it returns a ready API
    client (already refreshed) for each call, so token lifecycle stays outside
    this class. The blocking client runs in a worker thread.

    Rate-limit rejections are retried here with exponential backoff and jitter;
    every other failure is raised as a :class:`StoreError` for the caller to
    record.
    """

    def __init__(
        self,
        service_factory: ServiceFactory,
        settings: Any = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.service_factory = service_factory
        self.max_attempts = getattr(settings, "store_max_attempts", 5)
        self.api_delay = getattr(settings, "store_api_delay", 0.0)
        self._sleep = sleep

    @classmethod
    def from_credentials(
        cls, credentials_provider: Callable[[], Any], settings: Any = None
    ) -> "GoogleCalendarStore":
        """Create a store from a callable returning valid google-auth credentials."""
        return cls(lambda: build_service(credentials_provider()), settings)

    async def _execute(
        self, build_request: Callable[[Any], Any], op_desc: str, calendar_id: str
    ) -> Any:
        attempt = 0
        backoff = 1.0
        while True:
            attempt += 1
            delay = jittered_delay(self.api_delay)
            if delay:
                await self._sleep(delay)
            try:
                service = self.service_factory()
                return await asyncio.to_thread(lambda: build_request(service).execute())
            except HttpError as e:
                if is_rate_limit_error(e) and attempt < self.max_attempts:
                    wait = backoff + random.uniform(0.0, 1.0)
                    logger.warning(
                        f"Rate-limited on {op_desc}, sleeping {wait:.1f}s (attempt {attempt})"
                    )
                    await self._sleep(wait)
                    backoff = min(backoff * 2.0, MAX_BACKOFF_SECONDS)
                    continue
                raise map_http_error(e, calendar_id) from e
            except GoogleAuthError as e:
                raise StorePermissionError(
                    f"Credentials rejected during {op_desc}: {e}", 401, calendar_id
                ) from e
            except (httplib2.HttpLib2Error, OSError) as e:
                raise StoreTransientError(
                    f"Transport error during {op_desc}: {e}", None, calendar_id
                ) from e

    async def list_events(
        self, calendar_id: str, time_min: datetime, time_max: datetime
    ) -> list[dict[str, Any]]:
        """List single events in the window, following pagination."""
        events: list[dict[str, Any]] = []
        page_token: Optional[str] = None

        while True:
            token = page_token

            def request(service: Any, token: Optional[str] = token) -> Any:
                return service.events().list(
                    calendarId=calendar_id,
                    timeMin=TimezoneService.format_instant(time_min),
                    timeMax=TimezoneService.format_instant(time_max),
                    maxResults=MAX_RESULTS_PER_PAGE,
                    singleEvents=True,
                    orderBy="startTime",
                    showDeleted=False,
                    pageToken=token,
                )

            response = await self._execute(request, "events.list", calendar_id)
            events.extend(response.get("items", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.debug(f"Listed {len(events)} events from calendar {calendar_id}")
        return events

    async def create_event(self, calendar_id: str, body: dict[str, Any]) -> str:
        response = await self._execute(
            lambda service: service.events().insert(calendarId=calendar_id, body=body),
            "events.insert",
            calendar_id,
        )
        return str(response["id"])

    async def update_event(self, calendar_id: str, event_id: str, body: dict[str, Any]) -> None:
        await self._execute(
            lambda service: service.events().update(
                calendarId=calendar_id, eventId=event_id, body=body
            ),
            "events.update",
            calendar_id,
        )

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        await self._execute(
            lambda service: service.events().delete(calendarId=calendar_id, eventId=event_id),
            "events.delete",
            calendar_id,
        )
