"""
Core types shared across modules.

Provides the error category enum used by the exception hierarchy, the
retry policy and the metrics labels.
"""

from enum import Enum


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures that may succeed later
                   (e.g., connection resets, timeouts, 429/5xx responses)
        AUTH: Credential was rejected by the remote service (401)
        PERMANENT: Failures that will not succeed on retry
                   (e.g., malformed payloads, 4xx responses, bad configuration)
        UNKNOWN: Unclassified errors, retried conservatively
    """

    TRANSIENT = "transient"
    AUTH = "auth"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


__all__ = [
    "ErrorCategory",
]
