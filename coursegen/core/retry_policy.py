"""
Stage retry policy.

``RetryPolicy.decide`` is a pure decision function: given the error a stage
attempt raised, the attempt number and how many quota deferrals the stage has
already spent, it answers "retry after N seconds" or "fatal". The executor
does the waiting; nothing here sleeps.
"""

import logging
import random
from dataclasses import dataclass

from coursegen.core.constants import (
    DEFAULT_RETRY_ATTEMPTS, DEFAULT_BACKOFF_BASE_SEC, DEFAULT_BACKOFF_MAX_SEC,
    DEFAULT_BACKOFF_JITTER, DEFAULT_RATE_LIMITED_BACKOFF_SEC,
    DEFAULT_QUOTA_RESET_SEC, DEFAULT_QUOTA_MAX_DEFERRALS,
)
from coursegen.core.error_codes import (
    JobCancelled, JobError, QuotaExceededError, RateLimited, root_cause,
)

logger = logging.getLogger(__name__)


class Classification:
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    QUOTA = "quota"
    FATAL = "fatal"


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float
    classification: str
    reason: str

    @property
    def is_quota_deferral(self) -> bool:
        return self.retry and self.classification == Classification.QUOTA


def classify(error: BaseException) -> str:
    """
    Map an exception to a retry class. The error's ``retryable`` flag decides
    retry or fatal; its type picks the back-off flavour.
    """
    cause = root_cause(error)
    if isinstance(cause, JobCancelled) and cause is not error:
        # the job that owned a shared computation was cancelled; recompute
        return Classification.TRANSIENT
    if not isinstance(cause, JobError) or not cause.retryable:
        return Classification.FATAL
    if isinstance(cause, RateLimited):
        return Classification.RATE_LIMITED
    if isinstance(cause, QuotaExceededError):
        return Classification.QUOTA
    return Classification.TRANSIENT


class RetryPolicy:
    """Exponential back-off with jitter, bounded by an attempt ceiling."""

    def __init__(self, retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
                 base_delay: float = DEFAULT_BACKOFF_BASE_SEC,
                 max_delay: float = DEFAULT_BACKOFF_MAX_SEC,
                 jitter: float = DEFAULT_BACKOFF_JITTER,
                 rate_limited_delay: float = DEFAULT_RATE_LIMITED_BACKOFF_SEC,
                 quota_reset: float = DEFAULT_QUOTA_RESET_SEC,
                 max_deferrals: int = DEFAULT_QUOTA_MAX_DEFERRALS,
                 provider_overrides: dict | None = None,
                 rng: random.Random | None = None):
        self.retry_attempts = retry_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.rate_limited_delay = rate_limited_delay
        self.quota_reset = quota_reset
        self.max_deferrals = max_deferrals
        self.provider_overrides = provider_overrides or {}
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config, rng: random.Random | None = None) -> "RetryPolicy":
        overrides = {}
        for name, entry in config.providers.items():
            picked = {k: entry[k] for k in ('rate_limited_backoff_sec', 'quota_reset_sec')
                      if k in entry}
            if picked:
                overrides[name] = picked
        return cls(
            retry_attempts=config.get('retry_attempts'),
            base_delay=config.get('backoff_base_sec'),
            max_delay=config.get('backoff_max_sec'),
            jitter=config.get('backoff_jitter'),
            rate_limited_delay=config.get('rate_limited_backoff_sec'),
            quota_reset=config.get('quota_reset_sec'),
            max_deferrals=config.get('quota_max_deferrals'),
            provider_overrides=overrides,
            rng=rng,
        )

    # ── Delay helpers ─────────────────────────────────────────────────

    def backoff(self, attempt: int, base: float | None = None) -> float:
        """base * 2^(attempt-1) +/- jitter, capped at max_delay."""
        base = self.base_delay if base is None else base
        delay = base * (2 ** max(0, attempt - 1))
        if self.jitter:
            delay *= 1 + self._rng.uniform(-self.jitter, self.jitter)
        return max(0.0, min(self.max_delay, delay))

    def _provider_setting(self, provider: str | None, key: str, default: float) -> float:
        return float(self.provider_overrides.get(provider, {}).get(key, default))

    # ── Decision ──────────────────────────────────────────────────────

    def decide(self, error: BaseException, attempt: int, deferrals: int = 0) -> RetryDecision:
        """
        attempt is the 1-based number of the attempt that just failed.
        A stage is retried at most ``retry_attempts`` times whatever the error.
        """
        cause = root_cause(error)
        kind = classify(error)
        provider = getattr(cause, 'provider', None)

        if kind == Classification.FATAL:
            return RetryDecision(False, 0.0, kind, f"{type(cause).__name__} is not retryable")

        if attempt > self.retry_attempts:
            return RetryDecision(False, 0.0, kind,
                                 f"retry ceiling of {self.retry_attempts} reached")

        if kind == Classification.RATE_LIMITED:
            base = self._provider_setting(provider, 'rate_limited_backoff_sec',
                                          self.rate_limited_delay)
            delay = self.backoff(attempt, base)
            if cause.retry_after:
                delay = max(delay, float(cause.retry_after))
            return RetryDecision(True, delay, kind, "rate limited")

        if kind == Classification.QUOTA:
            if deferrals >= self.max_deferrals:
                return RetryDecision(False, 0.0, kind,
                                     f"quota still exhausted after {deferrals} deferral(s)")
            cool_down = cause.reset_after
            if cool_down is None:
                cool_down = self._provider_setting(provider, 'quota_reset_sec', self.quota_reset)
            return RetryDecision(True, float(cool_down), kind, "quota exceeded, deferring")

        return RetryDecision(True, self.backoff(attempt), kind, "transient provider failure")
