"""
Issue and summarized issue message schemas.

Issue is both the tracker's REST representation (extra fields ignored) and
the value written to the source topic. SummarizedIssue is the value written
to the derived topic once the summarizer has produced a summary.
"""

from datetime import UTC, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def format_rfc3339(timestamp: datetime) -> str:
    """Render an aware or naive (assumed UTC) datetime as RFC3339 with a Z suffix."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)
    return timestamp.astimezone(UTC).isoformat().replace("+00:00", "Z")


class Issue(BaseModel):
    """Schema for a tracker issue.

    Attributes:
        id: Tracker-global issue id, used as the partition key
        number: Repository-local issue number
        title: Issue title
        body: Issue body; the tracker sends null for an empty body
        html_url: Browser URL of the issue
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int = Field(..., description="Tracker-global issue id")
    number: int = Field(..., description="Repository-local issue number")
    title: str = Field(..., description="Issue title")
    body: str = Field(default="", description="Issue body (empty when null)")
    html_url: str = Field(default="", description="Browser URL of the issue")

    @field_validator("body", "html_url", mode="before")
    @classmethod
    def null_to_empty(cls, v: Optional[str]) -> str:
        return "" if v is None else v

    @property
    def key(self) -> str:
        """Kafka record key for this issue."""
        return str(self.id)


class SummarizedIssue(BaseModel):
    """Schema for an issue enriched with its summary.

    Always built through from_issue() so id, number, title and html_url are
    carried forward from the source issue unchanged.
    """

    id: int = Field(..., description="Tracker-global issue id (same as source)")
    number: int = Field(..., description="Repository-local issue number")
    title: str = Field(..., description="Issue title")
    summary: str = Field(..., min_length=1, description="Generated summary")
    html_url: str = Field(default="", description="Browser URL of the issue")
    original_body: str = Field(default="", description="Body the summary was generated from")
    processed_at: datetime = Field(..., description="When the summary was produced (UTC)")

    @field_validator("summary")
    @classmethod
    def summary_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("summary cannot be empty or whitespace")
        return v

    @field_validator("processed_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @field_serializer("processed_at")
    def serialize_processed_at(self, timestamp: datetime) -> str:
        return format_rfc3339(timestamp)

    @property
    def key(self) -> str:
        return str(self.id)

    @classmethod
    def from_issue(
        cls,
        issue: Issue,
        summary: str,
        processed_at: Optional[datetime] = None,
    ) -> "SummarizedIssue":
        return cls(
            id=issue.id,
            number=issue.number,
            title=issue.title,
            summary=summary,
            html_url=issue.html_url,
            original_body=issue.body,
            processed_at=processed_at or datetime.now(UTC),
        )

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "examples": [
                {
                    "id": 2468013579,
                    "number": 812,
                    "title": "Crash on boot",
                    "summary": "The system crashes during boot after the latest update.",
                    "html_url": "https://github.com/bootc-dev/bootc/issues/812",
                    "original_body": "Steps to reproduce...",
                    "processed_at": "2026-01-05T10:31:15Z",
                }
            ]
        },
    )
