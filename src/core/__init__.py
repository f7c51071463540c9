"""
Core library: Reusable, infrastructure-agnostic components.

Modules:
    errors      - Error classification and exception hierarchy
    logging     - Structured JSON logging with context propagation
    resilience  - Retry with exponential backoff and jitter

Design Principles:
    - No dependencies on Kafka topics or remote API shapes
    - All modules are independently testable
    - Async-first where applicable
"""

from .types import ErrorCategory

__version__ = "0.1.0"

__all__ = [
    "ErrorCategory",
]
