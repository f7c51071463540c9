"""Message schemas for the source, derived and dead-letter topics."""

from issue_pipeline.schemas.dlq import DeadLetterMessage
from issue_pipeline.schemas.issues import Issue, SummarizedIssue, format_rfc3339

__all__ = [
    "Issue",
    "SummarizedIssue",
    "DeadLetterMessage",
    "format_rfc3339",
]
