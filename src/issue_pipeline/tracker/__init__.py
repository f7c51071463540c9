"""Issue tracker (GitHub) client."""

from issue_pipeline.tracker.client import GitHubIssuesClient, parse_retry_after

__all__ = ["GitHubIssuesClient", "parse_retry_after"]
