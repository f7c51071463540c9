"""
Pipeline workers.

- IssuePoller: tracker -> source topic, watermark driven
- IssueSummarizerWorker: source topic -> summarizer -> derived topic
"""

from issue_pipeline.workers.issue_poller import IssuePoller, PollCycleResult
from issue_pipeline.workers.summarizer_worker import (
    IssueSummarizerWorker,
    RecordOutcome,
    RecordResult,
    RecordState,
)

__all__ = [
    "IssuePoller",
    "PollCycleResult",
    "IssueSummarizerWorker",
    "RecordOutcome",
    "RecordResult",
    "RecordState",
]
