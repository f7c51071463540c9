"""
Issue summarization pipeline.

Polls a GitHub repository for new and updated issues, publishes them to
Kafka, summarizes each one with a chat completion model and republishes the
summary with at-least-once delivery.

Run with: python -m issue_pipeline --help
"""

__version__ = "0.1.0"
