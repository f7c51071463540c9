"""Watermark stores for the issue poller.

The watermark is the lower bound passed as `since` on the next fetch. Only
the poller writes it, and only after a successful fetch. Stores refuse to
move it backward so a slow cycle can never reopen an already covered window.

Usage:
    store = create_watermark_store(config.poller)

    watermark = await store.load()
    since = watermark.since if watermark else initial_watermark(24).since

    await store.save(Watermark(since=cycle_start))
    await store.close()
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Protocol

from config.config import PollerConfig
from issue_pipeline.common.metrics import update_watermark
from issue_pipeline.schemas.issues import format_rfc3339

logger = logging.getLogger(__name__)


def _parse_timestamp(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


@dataclass
class Watermark:
    """Lower bound for the next issue fetch."""

    since: datetime
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self):
        if self.since.tzinfo is None:
            self.since = self.since.replace(tzinfo=UTC)

    def to_dict(self) -> dict:
        return {
            "since": format_rfc3339(self.since),
            "updated_at": format_rfc3339(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Watermark":
        updated_at = data.get("updated_at")
        return cls(
            since=_parse_timestamp(data["since"]),
            updated_at=_parse_timestamp(updated_at) if updated_at else datetime.now(UTC),
        )


def initial_watermark(lookback_hours: float, now: datetime | None = None) -> Watermark:
    """Watermark for a first run: lookback_hours before now."""
    now = now or datetime.now(UTC)
    return Watermark(since=now - timedelta(hours=lookback_hours))


class WatermarkStore(Protocol):
    async def load(self) -> Watermark | None:
        """Return the stored watermark, or None if there is none."""
        ...

    async def save(self, watermark: Watermark) -> bool:
        """Persist watermark. Returns False if refused or the write failed."""
        ...

    async def close(self) -> None:
        ...


class InMemoryWatermarkStore:
    """Process-local store. Restarts fall back to the initial lookback."""

    def __init__(self, initial: Watermark | None = None):
        self._current = initial

    async def load(self) -> Watermark | None:
        return self._current

    async def save(self, watermark: Watermark) -> bool:
        if self._current is not None and watermark.since < self._current.since:
            logger.warning(
                "Refusing to move watermark backward",
                extra={
                    "since": format_rfc3339(watermark.since),
                    "current": format_rfc3339(self._current.since),
                },
            )
            return False
        self._current = watermark
        update_watermark(watermark.since.timestamp())
        return True

    async def close(self) -> None:
        pass


class JsonWatermarkStore:
    """Local JSON file store.

    Uses atomic write pattern (write to temp file, then os.replace).
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._current: Watermark | None = None

        logger.info(
            "JsonWatermarkStore initialized",
            extra={"path": str(self._path)},
        )

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> Watermark | None:
        if not self._path.exists():
            logger.info("No watermark file found", extra={"path": str(self._path)})
            return None

        try:
            with open(self._path) as f:
                data = json.load(f)
            watermark = Watermark.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(
                "Failed to load watermark, starting from initial lookback",
                extra={"path": str(self._path), "error": str(e)},
            )
            return None

        self._current = watermark
        update_watermark(watermark.since.timestamp())
        logger.info(
            "Loaded watermark from JSON file",
            extra={"path": str(self._path), "since": format_rfc3339(watermark.since)},
        )
        return watermark

    async def save(self, watermark: Watermark) -> bool:
        if self._current is not None and watermark.since < self._current.since:
            logger.warning(
                "Refusing to move watermark backward",
                extra={
                    "since": format_rfc3339(watermark.since),
                    "current": format_rfc3339(self._current.since),
                },
            )
            return False

        watermark.updated_at = datetime.now(UTC)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self._path.with_suffix(".tmp")
            with open(temp_path, "w") as f:
                json.dump(watermark.to_dict(), f, indent=2)
            os.replace(temp_path, self._path)
        except OSError as e:
            logger.error(
                "Failed to save watermark",
                extra={"path": str(self._path), "error": str(e)},
            )
            return False

        self._current = watermark
        update_watermark(watermark.since.timestamp())
        logger.debug(
            "Saved watermark to JSON file",
            extra={"path": str(self._path), "since": format_rfc3339(watermark.since)},
        )
        return True

    async def close(self) -> None:
        pass


def create_watermark_store(config: PollerConfig) -> WatermarkStore:
    if config.watermark_store == "memory":
        return InMemoryWatermarkStore()
    return JsonWatermarkStore(config.watermark_path)
