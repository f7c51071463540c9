"""Worker registry for mapping CLI worker names to runner functions."""

import asyncio
from typing import Any, Optional

from config.config import PipelineConfig
from issue_pipeline.runners import issue_runners

WORKER_REGISTRY: dict[str, dict[str, Any]] = {
    "poller": {
        "runner": issue_runners.run_issue_poller,
        "supports_once": True,
    },
    "summarizer": {
        "runner": issue_runners.run_issue_summarizer,
        "supports_once": False,
    },
}


async def run_worker_from_registry(
    worker_name: str,
    pipeline_config: PipelineConfig,
    shutdown_event: asyncio.Event,
    run_once: bool = False,
    instance_id: Optional[str] = None,
) -> None:
    """Run a worker by looking it up in the registry.

    Raises:
        ValueError: If worker not found in registry
    """
    entry = WORKER_REGISTRY.get(worker_name)
    if entry is None:
        raise ValueError(
            f"Unknown worker: {worker_name}. "
            f"Available workers: {', '.join(sorted(WORKER_REGISTRY))}"
        )

    await entry["runner"](
        pipeline_config=pipeline_config,
        shutdown_event=shutdown_event,
        run_once=run_once,
        instance_id=instance_id,
    )
