"""
pytest configuration for issue pipeline tests.

Adds src directory to Python path for imports and resets logging context
between tests.
"""

import os
import sys
from pathlib import Path

import pytest

# Keep developer credentials and config paths out of the tests
for _var in (
    "ISSUE_PIPELINE_CONFIG",
    "KAFKA_BOOTSTRAP_SERVERS",
    "GITHUB_TOKEN",
    "GITHUB_OWNER",
    "GITHUB_REPO",
    "OPENAI_API_KEY",
):
    os.environ.pop(_var, None)

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))

from core.logging.context import clear_log_context  # noqa: E402
from core.logging.kafka_context import clear_kafka_context  # noqa: E402


@pytest.fixture(autouse=True)
def clean_log_context():
    clear_log_context()
    clear_kafka_context()
    yield
    clear_log_context()
    clear_kafka_context()
