"""
Standardised error handling for CourseGen.

Every failure the orchestrator reasons about is a JobError subclass.
``retryable`` says whether a failure is worth another attempt; the exception
type picks how long to wait. Message text is never inspected.
"""

from coursegen.core.constants import ErrorCode, RETRYABLE_ERRORS


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


class ValidationError(JobError):
    """Bad input: a malformed submission or a request a provider rejects outright."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.VALIDATION, message, retryable=False)


# ── Provider failures ─────────────────────────────────────────────────

class ProviderError(JobError):
    """Base class for failures raised by a provider client."""

    def __init__(self, code: str, message: str, provider: str | None = None,
                 retryable: bool | None = None):
        self.provider = provider
        super().__init__(code, message, retryable)


class TransientProviderError(ProviderError):
    """Timeout, 5xx-equivalent or connection failure."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(ErrorCode.PROVIDER_TRANSIENT, message, provider)


class RateLimited(ProviderError):
    """No permit available, either from our limiter or from the provider itself."""

    def __init__(self, message: str, provider: str | None = None,
                 retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(ErrorCode.RATE_LIMITED, message, provider)


class QuotaExceededError(ProviderError):
    """Budget or billing cap hit; only worth retrying once the cap resets."""

    def __init__(self, message: str, provider: str | None = None,
                 reset_after: float | None = None):
        self.reset_after = reset_after
        super().__init__(ErrorCode.QUOTA_EXCEEDED, message, provider)


class MalformedResponseError(ProviderError):
    """Provider answered, but with something we cannot use."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(ErrorCode.MALFORMED_RESPONSE, message, provider, retryable=False)


# ── Orchestration failures ────────────────────────────────────────────

class CacheProducerFailed(JobError):
    """
    Delivered to callers that waited on another caller's computation.
    Carries the producer's original exception so its classification applies.
    """

    def __init__(self, key: str, cause: BaseException):
        self.key = key
        self.cause = cause
        retryable = cause.retryable if isinstance(cause, JobError) else False
        super().__init__(ErrorCode.CACHE_PRODUCER_FAILED,
                         f"Shared computation for {key[:12]} failed: {cause}",
                         retryable=retryable)


class JobCancelled(JobError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(ErrorCode.CANCELLED, f"Job {job_id} was cancelled", retryable=False)


class StageFailed(JobError):
    """A stage reached FAILED_FATAL. Wraps the last error the stage saw."""

    def __init__(self, stage: str, cause: BaseException, attempts: int):
        self.stage = stage
        self.cause = cause
        self.attempts = attempts
        code = cause.code if isinstance(cause, JobError) else ErrorCode.UNEXPECTED
        message = cause.message if isinstance(cause, JobError) else str(cause)
        super().__init__(code, f"{stage} failed after {attempts} attempt(s): {message}",
                         retryable=False)


def root_cause(error: BaseException) -> BaseException:
    """Unwrap CacheProducerFailed chains down to the producer's own exception."""
    while isinstance(error, CacheProducerFailed):
        error = error.cause
    return error
