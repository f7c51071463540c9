"""GitHub REST API client for repository issues."""

import asyncio
import json
import logging
import time
from datetime import datetime
from typing import Any

import aiohttp
from pydantic import ValidationError

from config.config import TrackerConfig
from core.errors.exceptions import (
    DecodeError,
    ListingTruncatedError,
    RateLimitError,
    TransportError,
)
from core.logging.context import get_log_context
from core.resilience.retry import RetryConfig, with_retry_async
from issue_pipeline.schemas.issues import Issue, format_rfc3339

logger = logging.getLogger(__name__)

GITHUB_ACCEPT = "application/vnd.github+json"


def _truncate(body: str, limit: int = 500) -> str:
    return body[:limit] + "..." if len(body) > limit else body


def parse_retry_after(headers: Any, now: float | None = None) -> float | None:
    """Seconds to wait from Retry-After, falling back to X-RateLimit-Reset (epoch seconds)."""
    retry_after = headers.get("Retry-After")
    if retry_after:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            pass

    reset = headers.get("X-RateLimit-Reset")
    if reset:
        try:
            now = time.time() if now is None else now
            return max(0.0, float(reset) - now)
        except ValueError:
            pass

    return None


def _is_rate_limited(status: int, headers: Any) -> bool:
    if status == 429:
        return True
    return status == 403 and headers.get("X-RateLimit-Remaining") == "0"


class GitHubIssuesClient:
    """Fetches open issues updated since a point in time.

    Follows the Link rel="next" header until the listing is exhausted or
    max_pages is reached. Each page request is retried for transient
    failures; rate limiting is surfaced to the caller unretried so the
    poller can honour retry_after.
    """

    def __init__(
        self,
        config: TrackerConfig,
        session: aiohttp.ClientSession | None = None,
    ):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.issues_url = f"{self.base_url}/repos/{config.owner}/{config.repo}/issues"

        self._headers = {"Accept": GITHUB_ACCEPT}
        if config.token:
            self._headers["Authorization"] = f"token {config.token}"

        self._session = session
        self._owns_session = session is None
        self._closed = False

        retry_config = RetryConfig(
            max_attempts=config.max_attempts,
            base_delay=1.0,
            max_delay=10.0,
            never_retry={RateLimitError},
        )
        self._fetch_page_with_retry = with_retry_async(retry_config)(self._fetch_page)

        logger.info(
            "GitHubIssuesClient initialized",
            extra={
                "http_url": self.issues_url,
                "authenticated": bool(config.token),
                "max_attempts": config.max_attempts,
            },
        )

    async def __aenter__(self) -> "GitHubIssuesClient":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._closed:
            raise RuntimeError("GitHubIssuesClient is closed, cannot create new session")
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        self._closed = True
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            await asyncio.sleep(0)
        self._session = None

    async def fetch_issues(self, since: datetime) -> list[Issue]:
        """Return open issues updated at or after since, across all pages.

        Raises:
            TransportError: Connection failure, timeout or unexpected status
            RateLimitError: Tracker throttled the request
            DecodeError: Response body is not a JSON list of issues
            ListingTruncatedError: More pages remain after max_pages; the
                caller must not treat the partial listing as complete
        """
        since_param = format_rfc3339(since.replace(microsecond=0))
        url: str | None = self.issues_url
        params: dict[str, Any] | None = {
            "since": since_param,
            "state": "open",
            "per_page": self.config.per_page,
        }

        issues: list[Issue] = []
        page = 0
        start_time = time.perf_counter()

        while url is not None:
            if page >= self.config.max_pages:
                logger.error(
                    "Issue listing has more pages than max_pages allows",
                    extra={"pages": page, "since": since_param, "http_url": url},
                )
                raise ListingTruncatedError(
                    f"Issue listing since {since_param} exceeds max_pages={page}",
                    context={"since": since_param, "pages": page, "next_url": url},
                )

            page += 1
            page_issues, url = await self._fetch_page_with_retry(url, params, page)
            issues.extend(page_issues)
            # The next link already carries the query string
            params = None

        logger.info(
            "Fetched issues",
            extra={
                **{k: v for k, v in get_log_context().items() if v},
                "since": since_param,
                "issues_fetched": len(issues),
                "pages": page,
                "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
            },
        )
        return issues

    async def _fetch_page(
        self,
        url: str,
        params: dict[str, Any] | None,
        page: int,
    ) -> tuple[list[Issue], str | None]:
        session = await self._ensure_session()
        start_time = time.perf_counter()

        try:
            async with session.get(
                url,
                params=params,
                headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
            ) as response:
                body = await response.read()
                duration_ms = round((time.perf_counter() - start_time) * 1000, 2)

                if not 200 <= response.status < 300:
                    self._raise_for_status(
                        response.status,
                        response.headers,
                        body.decode("utf-8", errors="replace"),
                        url,
                        page,
                    )

                next_link = response.links.get("next")
                next_url = str(next_link["url"]) if next_link else None

        except asyncio.TimeoutError as e:
            logger.warning(
                "Issue listing request timed out",
                extra={"http_url": url, "page": page},
            )
            raise TransportError(
                f"Timeout after {self.config.timeout_seconds}s listing issues",
                cause=e,
                context={"url": url, "page": page},
            ) from e
        except aiohttp.ClientError as e:
            logger.warning(
                "Issue listing connection error",
                extra={"http_url": url, "page": page, "error": str(e)},
            )
            raise TransportError(
                f"Connection error listing issues: {e}",
                cause=e,
                context={"url": url, "page": page},
            ) from e

        issues = self._decode_page(body, page)

        logger.debug(
            "Issue page fetched",
            extra={
                "http_url": url,
                "http_status": response.status,
                "page": page,
                "issues_fetched": len(issues),
                "duration_ms": duration_ms,
            },
        )
        return issues, next_url

    def _raise_for_status(
        self, status: int, headers: Any, body: str, url: str, page: int
    ) -> None:
        if _is_rate_limited(status, headers):
            retry_after = parse_retry_after(headers)
            logger.warning(
                "Tracker rate limit hit",
                extra={
                    "http_status": status,
                    "http_url": url,
                    "page": page,
                    "retry_after": retry_after,
                },
            )
            raise RateLimitError(
                f"Tracker rate limited request (HTTP {status})",
                retry_after=retry_after,
                status_code=status,
                context={"url": url, "page": page},
            )

        logger.warning(
            "Issue listing request failed",
            extra={
                "http_status": status,
                "http_url": url,
                "page": page,
                "response_body": _truncate(body),
            },
        )
        raise TransportError(
            f"Tracker returned HTTP {status}",
            status_code=status,
            context={"url": url, "page": page},
        )

    @staticmethod
    def _decode_page(body: bytes, page: int) -> list[Issue]:
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecodeError(
                "Issue listing is not valid UTF-8 JSON", cause=e, context={"page": page}
            ) from e

        if not isinstance(payload, list):
            raise DecodeError(
                f"Issue listing must be a JSON array, got {type(payload).__name__}",
                context={"page": page},
            )

        try:
            return [Issue.model_validate(item) for item in payload]
        except ValidationError as e:
            raise DecodeError(
                "Issue listing item failed validation", cause=e, context={"page": page}
            ) from e
