"""Worker runners: lifecycle, startup retry and shutdown wiring."""

from issue_pipeline.runners.common import execute_worker_with_shutdown
from issue_pipeline.runners.registry import WORKER_REGISTRY, run_worker_from_registry

__all__ = [
    "WORKER_REGISTRY",
    "execute_worker_with_shutdown",
    "run_worker_from_registry",
]
