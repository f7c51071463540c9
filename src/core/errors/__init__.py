"""Pipeline exception hierarchy and retry classification."""

from core.errors.exceptions import (
    RETRYABLE_CATEGORIES,
    AuthError,
    ConfigurationError,
    DecodeError,
    KafkaError,
    ListingTruncatedError,
    MalformedResponseError,
    MissingCredentialError,
    PermanentError,
    PipelineError,
    RateLimitError,
    SerializationError,
    ThrottlingError,
    TransientError,
    TransportError,
    UpstreamError,
    classify_exception,
    classify_http_status,
    wrap_exception,
)
from core.types import ErrorCategory

__all__ = [
    "ErrorCategory",
    "RETRYABLE_CATEGORIES",
    "PipelineError",
    "AuthError",
    "TransientError",
    "PermanentError",
    "ThrottlingError",
    "TransportError",
    "RateLimitError",
    "UpstreamError",
    "KafkaError",
    "DecodeError",
    "MalformedResponseError",
    "ListingTruncatedError",
    "SerializationError",
    "ConfigurationError",
    "MissingCredentialError",
    "classify_http_status",
    "classify_exception",
    "wrap_exception",
]
