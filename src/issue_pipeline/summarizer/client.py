"""
Chat completion client that turns an issue into a short summary.

One request per issue, no internal retries: a failed summarization leaves
the source record uncommitted and the worker's redelivery handles it.
"""

import asyncio
import json
import logging
import time
from datetime import UTC, datetime
from typing import Any

import aiohttp

from config.config import SummarizerConfig
from core.errors.exceptions import (
    MalformedResponseError,
    MissingCredentialError,
    RateLimitError,
    TransportError,
    UpstreamError,
)
from core.logging import log_with_context
from issue_pipeline.common.metrics import observe_summarizer_request
from issue_pipeline.schemas.issues import Issue, SummarizedIssue
from issue_pipeline.tracker.client import parse_retry_after

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = (
    "Summarize this GitHub issue in 2-3 sentences:\n\n"
    "Title: {title}\n"
    "Body: {body}\n\n"
    "Summary:"
)

MAX_LOGGED_BODY = 500


def build_prompt(issue: Issue) -> str:
    return PROMPT_TEMPLATE.format(title=issue.title, body=issue.body)


def extract_summary(payload: Any) -> str:
    """Pull choices[0].message.content out of a chat completion response.

    Raises:
        MalformedResponseError: Naming the first field that is missing or
            has the wrong shape
    """
    if not isinstance(payload, dict):
        raise MalformedResponseError("body", "is not a JSON object")

    choices = payload.get("choices")
    if not isinstance(choices, list):
        raise MalformedResponseError("choices", "missing or not a list")
    if not choices:
        raise MalformedResponseError("choices", "is empty")

    first = choices[0]
    if not isinstance(first, dict):
        raise MalformedResponseError("choices[0]", "is not an object")

    message = first.get("message")
    if not isinstance(message, dict):
        raise MalformedResponseError("choices[0].message", "missing or not an object")

    content = message.get("content")
    if not isinstance(content, str):
        raise MalformedResponseError("choices[0].message.content", "missing or not a string")

    summary = content.strip()
    if not summary:
        raise MalformedResponseError("choices[0].message.content", "is empty")

    return summary


class SummarizerClient:
    """Async client for an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        config: SummarizerConfig,
        session: aiohttp.ClientSession | None = None,
    ):
        if not config.api_key:
            raise MissingCredentialError("OPENAI_API_KEY")

        self.config = config
        self.completions_url = f"{config.base_url.rstrip('/')}/chat/completions"
        self._auth_header = f"Bearer {config.api_key}"
        self._session = session
        self._owns_session = session is None
        self._closed = False

        logger.info(
            "SummarizerClient initialized",
            extra={
                "http_url": self.completions_url,
                "model": config.model,
                "timeout_seconds": config.timeout_seconds,
            },
        )

    async def __aenter__(self) -> "SummarizerClient":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._closed:
            raise RuntimeError("SummarizerClient is closed, cannot create new session")
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        self._closed = True
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            await asyncio.sleep(0)
        self._session = None

    def build_request(self, issue: Issue) -> dict[str, Any]:
        return {
            "model": self.config.model,
            "messages": [{"role": "user", "content": build_prompt(issue)}],
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }

    async def summarize(self, issue: Issue) -> SummarizedIssue:
        """Summarize one issue.

        Raises:
            TransportError: Connection failure or timeout
            RateLimitError: HTTP 429
            UpstreamError: Any other non-2xx status
            MalformedResponseError: Response missing the completion content
        """
        session = await self._ensure_session()
        start_time = time.perf_counter()
        status_label = "error"

        try:
            async with session.post(
                self.completions_url,
                json=self.build_request(issue),
                headers={"Authorization": self._auth_header},
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
            ) as response:
                body = await response.read()
                status_label = str(response.status)

                if response.status == 429:
                    retry_after = parse_retry_after(response.headers)
                    raise RateLimitError(
                        "Summarizer rate limited request (HTTP 429)",
                        retry_after=retry_after,
                        status_code=429,
                        context={"issue_id": issue.id},
                    )

                if not 200 <= response.status < 300:
                    truncated = body.decode("utf-8", errors="replace")[:MAX_LOGGED_BODY]
                    log_with_context(
                        logger,
                        logging.WARNING,
                        "Summarizer request failed",
                        issue_id=issue.id,
                        http_status=response.status,
                        response_body=truncated,
                    )
                    raise UpstreamError(
                        response.status,
                        body=truncated,
                        context={"issue_id": issue.id},
                    )

        except asyncio.TimeoutError as e:
            status_label = "timeout"
            raise TransportError(
                f"Summarizer timed out after {self.config.timeout_seconds}s",
                cause=e,
                context={"issue_id": issue.id},
            ) from e
        except aiohttp.ClientError as e:
            raise TransportError(
                f"Summarizer connection error: {e}",
                cause=e,
                context={"issue_id": issue.id},
            ) from e
        finally:
            observe_summarizer_request(time.perf_counter() - start_time, status_label)

        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedResponseError("body", "is not valid UTF-8 JSON", cause=e) from e

        summary = extract_summary(payload)
        enriched = SummarizedIssue.from_issue(issue, summary, processed_at=datetime.now(UTC))

        log_with_context(
            logger,
            logging.DEBUG,
            "Issue summarized",
            issue_id=issue.id,
            issue_number=issue.number,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
        return enriched
