"""
Exceptions raised by the tracker client, summarizer client and Kafka wrappers.

Every exception carries an ErrorCategory. Workers look only at the category
(via is_retryable) to choose between redelivery and dead-lettering, never at
aiohttp or aiokafka exception types.
"""

from core.types import ErrorCategory

RETRYABLE_CATEGORIES = frozenset(
    {ErrorCategory.TRANSIENT, ErrorCategory.AUTH, ErrorCategory.UNKNOWN}
)


class PipelineError(Exception):
    """
    Root of the pipeline's exception tree.

    Attributes:
        message: What went wrong
        category: Retry classification; subclasses override it
        cause: Underlying library exception, if any
        context: Identifiers useful when reading the log (issue id, offset, ...)
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context = context or {}

    @property
    def is_retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES

    def __str__(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message} | Caused by: {self.cause}"


class AuthError(PipelineError):
    category = ErrorCategory.AUTH


class TransientError(PipelineError):
    """Failure expected to clear up on its own; worth another attempt."""

    category = ErrorCategory.TRANSIENT


class PermanentError(PipelineError):
    """Retrying the same input will fail the same way."""

    category = ErrorCategory.PERMANENT


class ThrottlingError(TransientError):
    """The remote side is shedding load. retry_after is its requested wait in seconds."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.retry_after = retry_after


class TransportError(TransientError):
    """No usable HTTP or broker response: refused, reset, timed out."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.status_code = status_code


class RateLimitError(ThrottlingError):
    """HTTP 429, or GitHub's 403 with X-RateLimit-Remaining: 0."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        status_code: int | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, retry_after=retry_after, cause=cause, context=context)
        self.status_code = status_code


class UpstreamError(PipelineError):
    """
    Non-2xx answer from the summarization service.

    Categorized per instance from the status code: 5xx/408/429 are
    transient, 401 is auth, other 4xx are permanent.
    """

    def __init__(
        self,
        status_code: int,
        body: str = "",
        message: str | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message or f"Upstream returned HTTP {status_code}", cause, context)
        self.status_code = status_code
        self.body = body
        self.category = classify_http_status(status_code)


class KafkaError(TransientError):
    """Commit, seek or fetch against the broker failed."""


class DecodeError(PermanentError):
    """Bytes or JSON that do not parse into the expected model."""


class MalformedResponseError(DecodeError):
    def __init__(
        self,
        field: str,
        detail: str = "missing or invalid",
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(f"Malformed response: {field} {detail}", cause, context)
        self.field = field


class ListingTruncatedError(PermanentError):
    """A paginated listing had more pages than the client may fetch."""


class SerializationError(PermanentError):
    """A value could not be encoded for publishing."""


class ConfigurationError(PermanentError):
    """Startup configuration is invalid or incomplete."""


class MissingCredentialError(ConfigurationError):
    def __init__(self, credential: str, cause: Exception | None = None):
        super().__init__(f"Missing credential: {credential}", cause, {"credential": credential})
        self.credential = credential


# Substrings of exception type names or messages that mean "try again later"
TRANSIENT_MARKERS = (
    "timeout",
    "connection",
    "throttl",
    "rate limit",
    "temporarily unavailable",
    "service unavailable",
    "429",
    "502",
    "503",
    "504",
)


def classify_http_status(status_code: int) -> ErrorCategory:
    if 200 <= status_code < 300:
        return ErrorCategory.UNKNOWN
    if status_code == 401:
        return ErrorCategory.AUTH
    if status_code in (408, 429) or status_code >= 500:
        return ErrorCategory.TRANSIENT
    if 400 <= status_code < 500:
        return ErrorCategory.PERMANENT
    return ErrorCategory.UNKNOWN


def classify_exception(exc: Exception) -> ErrorCategory:
    """
    Category for any exception.

    PipelineErrors report their own. Built-in connection and timeout errors
    are transient, as is anything whose name or message matches
    TRANSIENT_MARKERS. ValueError, TypeError and KeyError are programming or
    data errors and therefore permanent. Everything else is UNKNOWN, which
    callers treat as retryable.
    """
    if isinstance(exc, PipelineError):
        return exc.category
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorCategory.TRANSIENT

    haystack = f"{type(exc).__name__} {exc}".lower()
    if any(marker in haystack for marker in TRANSIENT_MARKERS):
        return ErrorCategory.TRANSIENT
    if "401" in haystack or "unauthorized" in haystack:
        return ErrorCategory.AUTH
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return ErrorCategory.PERMANENT
    return ErrorCategory.UNKNOWN


_WRAPPERS = {
    ErrorCategory.AUTH: AuthError,
    ErrorCategory.TRANSIENT: TransientError,
    ErrorCategory.PERMANENT: PermanentError,
}


def wrap_exception(
    exc: Exception,
    default_class: type = PipelineError,
    context: dict | None = None,
) -> PipelineError:
    """
    Convert exc into the PipelineError subclass matching its category.

    PipelineErrors are returned unchanged, with context merged in.
    """
    if isinstance(exc, PipelineError):
        if context:
            exc.context.update(context)
        return exc

    context = dict(context or {})
    context.setdefault("error_type", type(exc).__name__)
    error_class = _WRAPPERS.get(classify_exception(exc), default_class)
    return error_class(str(exc), cause=exc, context=context)
