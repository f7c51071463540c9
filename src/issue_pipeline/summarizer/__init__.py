"""Issue summarization via a chat completion API."""

from issue_pipeline.summarizer.client import (
    SummarizerClient,
    build_prompt,
    extract_summary,
)

__all__ = ["SummarizerClient", "build_prompt", "extract_summary"]
