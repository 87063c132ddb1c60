"""Rate-limit aware, retrying, paginating client for the remote lifelog API."""

from __future__ import annotations

import random
import time
from datetime import date, datetime, timezone
from typing import Any, Callable, Mapping

import httpx

from lifelogd.cache.bounded import date_key, lifelog_key, recent_key, search_key
from lifelogd.cache.registry import CacheRegistry
from lifelogd.core.config import ApiSettings
from lifelogd.core.logging import Logger, get_logger

from .errors import (
    MissingApiKeyError,
    RemoteApiError,
    RemoteResponseFormatError,
    RemoteTimeoutError,
)
from .models import Lifelog

__all__ = ["IngestionClient"]

_JITTER_RATIO = 0.2
_SEARCH_SCAN_FLOOR = 100
_USER_AGENT = "lifelogd/0.1"


def _format_bound(value: date | datetime) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.strftime("%Y-%m-%d %H:%M:%S")
    return value.isoformat()


def _extract_page(body: Any) -> tuple[list[Mapping[str, Any]], str | None]:
    """Return the lifelog objects and the next cursor from a response body.

    Raises:
        RemoteResponseFormatError: If the body matches no known shape.
    """

    if isinstance(body, list):
        return [item for item in body if isinstance(item, Mapping)], None
    if not isinstance(body, Mapping):
        raise RemoteResponseFormatError(
            f"Unexpected response type: {type(body).__name__}",
            code="UNEXPECTED_FORMAT",
        )

    data = body.get("data")
    if isinstance(data, Mapping):
        if isinstance(data.get("lifelogs"), list):
            items = list(data["lifelogs"])
        elif isinstance(data.get("lifelog"), Mapping):
            items = [data["lifelog"]]
        else:
            raise RemoteResponseFormatError(
                "Response data carries neither 'lifelogs' nor 'lifelog'",
                code="UNEXPECTED_FORMAT",
            )
    elif isinstance(data, list):
        items = list(data)
    elif "id" in body:
        items = [body]
    else:
        raise RemoteResponseFormatError(
            "Response body carries no lifelog data",
            code="UNEXPECTED_FORMAT",
        )

    cursor: str | None = None
    meta = body.get("meta")
    if isinstance(meta, Mapping) and isinstance(meta.get("lifelogs"), Mapping):
        cursor = meta["lifelogs"].get("nextCursor")
    pagination = body.get("pagination")
    if cursor is None and isinstance(pagination, Mapping):
        if pagination.get("hasMore", True):
            cursor = pagination.get("nextCursor")

    return [item for item in items if isinstance(item, Mapping)], cursor or None


class IngestionClient:
    """Facade over the remote lifelog API.

    Transient failures (timeouts, network errors, 429 and 5xx) are retried
    with exponential backoff; permanent failures surface immediately as
    :class:`RemoteApiError`. Structured lookups and free-text searches are
    memoized in the injected :class:`CacheRegistry`.
    """

    def __init__(
        self,
        *,
        settings: ApiSettings,
        caches: CacheRegistry | None = None,
        http_client: httpx.Client | None = None,
        logger: Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        if not settings.api_key:
            raise MissingApiKeyError(
                "An API key is required; set LIMITLESS_API_KEY or api.api_key."
            )
        self.settings = settings
        self.caches = caches
        self.logger = logger or get_logger(__name__, component="ingest")
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._client = http_client or httpx.Client(
            base_url=settings.base_url,
            timeout=settings.timeout,
        )
        self._client.headers.update(
            {
                "X-API-Key": settings.api_key,
                "Accept": "application/json",
                "User-Agent": _USER_AGENT,
            }
        )

    # ------------------------------------------------------------------#
    # Public API
    # ------------------------------------------------------------------#
    def get_lifelog(self, lifelog_id: str) -> Lifelog | None:
        """Fetch a single lifelog; returns ``None`` when it does not exist."""

        key = lifelog_key(lifelog_id)
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        try:
            body = self._request(
                "GET",
                f"/lifelogs/{lifelog_id}",
                params=self._content_params(),
            )
        except RemoteApiError as exc:
            if exc.status_code == 404:
                return None
            raise

        items, _ = _extract_page(body)
        if not items:
            return None
        lifelog = Lifelog.from_api(items[0])
        self._cache_set(key, lifelog)
        return lifelog

    def list_lifelogs_by_date(
        self,
        day: date,
        *,
        limit: int | None = None,
    ) -> list[Lifelog]:
        """Return every lifelog recorded on ``day`` (all pages)."""

        key = date_key(day.isoformat(), {"limit": limit})
        cached = self._cache_get(key)
        if cached is not None:
            return list(cached)

        records = self._paginate(
            {"date": day.isoformat(), "direction": "asc"},
            limit=limit,
        )
        self._cache_set(key, tuple(records))
        return records

    def list_lifelogs_by_range(
        self,
        start: date | datetime,
        end: date | datetime,
        *,
        limit: int | None = None,
        direction: str = "asc",
    ) -> list[Lifelog]:
        """Return lifelogs between ``start`` and ``end``; never cached."""

        return self._paginate(
            {
                "start": _format_bound(start),
                "end": _format_bound(end),
                "direction": direction,
            },
            limit=limit,
        )

    def list_recent_lifelogs(self, *, limit: int = 10) -> list[Lifelog]:
        key = recent_key({"limit": limit})
        cached = self._cache_get(key)
        if cached is not None:
            return list(cached)

        records = self._paginate({"direction": "desc"}, limit=limit)
        self._cache_set(key, tuple(records))
        return records

    def search_lifelogs(self, term: str, *, limit: int = 20) -> list[Lifelog]:
        """Case-insensitive substring search over recent lifelogs."""

        needle = term.strip().lower()
        if not needle:
            return []

        key = search_key(needle, {"limit": limit})
        if self.caches is not None:
            cached = self.caches.search.get(key)
            if cached is not None:
                return list(cached)

        scan = self.list_recent_lifelogs(
            limit=max(limit * 5, _SEARCH_SCAN_FLOOR)
        )
        matches = [
            record
            for record in scan
            if needle in record.title.lower() or needle in record.content.lower()
        ][:limit]

        if self.caches is not None:
            self.caches.search.set(key, tuple(matches))
        return matches

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "IngestionClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------#
    # Internal helpers
    # ------------------------------------------------------------------#
    def _cache_get(self, key: str) -> Any:
        if self.caches is None:
            return None
        return self.caches.lookups.get(key)

    def _cache_set(self, key: str, value: Any) -> None:
        if self.caches is not None:
            self.caches.lookups.set(key, value)

    def _content_params(self) -> dict[str, str]:
        return {
            "includeMarkdown": "true",
            "includeHeadings": "true",
            "timezone": self.settings.timezone,
        }

    def _paginate(
        self,
        params: Mapping[str, Any],
        *,
        limit: int | None,
    ) -> list[Lifelog]:
        collected: list[Lifelog] = []
        cursor: str | None = None
        pages = 0

        while True:
            remaining = None if limit is None else limit - len(collected)
            if remaining is not None and remaining <= 0:
                break
            page_size = self.settings.page_size
            if remaining is not None:
                page_size = min(page_size, remaining)

            query: dict[str, Any] = {
                **self._content_params(),
                **params,
                "limit": page_size,
            }
            if cursor:
                query["cursor"] = cursor

            body = self._request("GET", "/lifelogs", params=query)
            items, cursor = _extract_page(body)
            pages += 1
            collected.extend(Lifelog.from_api(item) for item in items)

            if not cursor or not items:
                break

        self.logger.debug(
            "ingest-paginated",
            params={key: value for key, value in params.items()},
            pages=pages,
            records=len(collected),
        )
        return collected if limit is None else collected[:limit]

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        attempts = 0
        max_attempts = self.settings.max_retries + 1

        while True:
            attempts += 1
            retry_after: float | None = None
            try:
                response = self._client.request(method, path, params=params)
            except httpx.TimeoutException as exc:
                error: RemoteApiError = RemoteTimeoutError(
                    f"Request to {path} timed out: {exc}"
                )
                retryable = True
            except httpx.TransportError as exc:
                error = RemoteApiError(
                    f"Network error calling {path}: {exc}",
                    code="NETWORK_ERROR",
                )
                retryable = True
            else:
                if response.is_success:
                    return self._decode(response)
                error = self._error_from_response(response)
                retryable = error.retryable
                retry_after = self._retry_after(response)

            if not retryable or attempts >= max_attempts:
                self.logger.warning(
                    "ingest-request-failed",
                    method=method,
                    path=path,
                    attempts=attempts,
                    status_code=error.status_code,
                    code=error.code,
                    error=error.message,
                )
                raise error

            delay = self._compute_backoff(attempt=attempts)
            if retry_after is not None:
                delay = min(max(delay, retry_after), self.settings.retry_delay_cap)
            self.logger.info(
                "ingest-request-retry",
                method=method,
                path=path,
                attempt=attempts,
                max_attempts=max_attempts,
                retry_delay=delay,
                status_code=error.status_code,
            )
            self._sleep(delay)

    def _compute_backoff(self, *, attempt: int) -> float:
        base = self.settings.retry_delay * (2 ** (attempt - 1))
        base = min(base, self.settings.retry_delay_cap)
        jitter = 1.0 + self._rng.uniform(-_JITTER_RATIO, _JITTER_RATIO)
        return round(max(base * jitter, 0.0), 2)

    @staticmethod
    def _retry_after(response: httpx.Response) -> float | None:
        raw = response.headers.get("Retry-After")
        if raw is None:
            return None
        try:
            return max(float(raw), 0.0)
        except ValueError:
            return None

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteResponseFormatError(
                f"Response from {response.request.url.path} is not JSON",
                status_code=response.status_code,
                code="INVALID_JSON",
            ) from exc

    @staticmethod
    def _error_from_response(response: httpx.Response) -> RemoteApiError:
        message = response.reason_phrase or f"HTTP {response.status_code}"
        code: str | None = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, Mapping) and isinstance(body.get("error"), Mapping):
            detail = body["error"]
            message = str(detail.get("message") or message)
            raw_code = detail.get("code")
            code = str(raw_code) if raw_code is not None else None
        return RemoteApiError(
            message,
            status_code=response.status_code,
            code=code,
        )
