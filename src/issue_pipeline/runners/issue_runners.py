"""Runner functions for the issue poller and summarizer workers."""

import asyncio
import logging
from typing import Optional

from config.config import PipelineConfig
from core.logging import log_worker_startup
from issue_pipeline.runners.common import execute_worker_with_shutdown

logger = logging.getLogger(__name__)


async def run_issue_poller(
    pipeline_config: PipelineConfig,
    shutdown_event: asyncio.Event,
    run_once: bool = False,
    instance_id: Optional[str] = None,
) -> None:
    """Poll the tracker and publish issues until shutdown (or once)."""
    from issue_pipeline.workers.issue_poller import IssuePoller

    log_worker_startup(
        logger,
        "issue-poller",
        kafka_bootstrap_servers=pipeline_config.kafka.bootstrap_servers,
        output_topic=pipeline_config.kafka.source_topic,
        extra_config={
            "Repository": f"{pipeline_config.tracker.owner}/{pipeline_config.tracker.repo}",
            "Poll interval (s)": pipeline_config.poller.poll_interval_seconds,
            "Mode": "once" if run_once else "loop",
        },
    )

    poller = IssuePoller(pipeline_config, run_once=run_once, instance_id=instance_id)
    await execute_worker_with_shutdown(
        poller,
        stage_name="issue-poller",
        shutdown_event=shutdown_event,
        run_method="run",
        instance_id=instance_id,
    )


async def run_issue_summarizer(
    pipeline_config: PipelineConfig,
    shutdown_event: asyncio.Event,
    run_once: bool = False,
    instance_id: Optional[str] = None,
) -> None:
    """Consume, summarize and republish issues until shutdown.

    run_once is accepted for a uniform runner signature; the summarizer
    always runs until stopped.
    """
    from issue_pipeline.workers.summarizer_worker import IssueSummarizerWorker

    log_worker_startup(
        logger,
        "issue-summarizer",
        kafka_bootstrap_servers=pipeline_config.kafka.bootstrap_servers,
        input_topic=pipeline_config.kafka.source_topic,
        output_topic=pipeline_config.kafka.derived_topic,
        consumer_group=pipeline_config.kafka.group_id,
        extra_config={
            "Model": pipeline_config.summarizer.model,
            "Max delivery attempts": pipeline_config.processing.max_delivery_attempts,
        },
    )

    # Raises MissingCredentialError before any connection is attempted
    worker = IssueSummarizerWorker(pipeline_config, instance_id=instance_id)
    await execute_worker_with_shutdown(
        worker,
        stage_name="issue-summarizer",
        shutdown_event=shutdown_event,
        instance_id=instance_id,
    )
