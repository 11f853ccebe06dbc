"""
Stage executor: drives one stage of one job to SUCCEEDED or FAILED_FATAL.

    PENDING -> RUNNING -> SUCCEEDED
                       -> FAILED_RETRYABLE -> (back-off) -> new Attempt
                       -> FAILED_FATAL

Per attempt: cache hit -> done, no permit, no provider call. Otherwise the
stage runs inside ArtifactCache.compute_if_absent, and every provider call it
makes first takes a RateLimiter permit. Failures go through RetryPolicy.
Cancellation is observed before each attempt, during back-off and when the
in-flight call returns.
"""

import logging
import threading
from typing import Any, Callable

from coursegen.core.constants import (
    AttemptOutcome, ErrorCode, StageStatus, MAX_ERROR_MESSAGE_LEN,
)
from coursegen.core.error_codes import (
    JobCancelled, JobError, ProviderError, RateLimited, StageFailed,
    ValidationError, root_cause,
)
from coursegen.core.fingerprint import stage_key
from coursegen.core.progress import stage_percentage
from coursegen.core.stages import Stage, StageContext

logger = logging.getLogger(__name__)


class StageExecutor:

    def __init__(self, db, cache, limiters, providers, policy,
                 report: Callable[[str, str, int, str], None],
                 rate_limit_wait_sec: float):
        self.db = db
        self.cache = cache
        self.limiters = limiters
        self.providers = providers
        self.policy = policy
        self._report = report
        self.rate_limit_wait_sec = rate_limit_wait_sec

    # ── Provider access (rate limited) ────────────────────────────────

    def _call_provider(self, ctx: StageContext, cancel_event: threading.Event, capability: str,
                       invoke: Callable[[Any], Any], cost_text: str | None = None):
        if cancel_event.is_set():
            raise JobCancelled(ctx.job_id)
        name = ctx.course.providers[capability]
        try:
            client = self.providers.get(name, capability)
        except KeyError as e:
            raise ValidationError(str(e))

        limiter = self.limiters.limiter(name)
        cost = limiter.settings.cost_of(cost_text)
        permit = limiter.acquire(cost, timeout=self.rate_limit_wait_sec)
        if permit is None:
            raise RateLimited(
                f"No {name} permit within {self.rate_limit_wait_sec:g}s", provider=name,
            )

        logger.debug("Job %s calling %s (%s, cost %g)", ctx.job_id, name, capability, cost)
        try:
            return invoke(client)
        except ProviderError as e:
            if e.provider is None:
                e.provider = name
            raise

    # ── State machine ─────────────────────────────────────────────────

    def execute(self, stage: Stage, ctx: StageContext, cancel_event: threading.Event):
        """Run ``stage`` for ctx.job_id and return its artifact."""
        job_id = ctx.job_id
        key = stage_key(stage.name, stage.inputs(ctx))
        ctx.call = lambda capability, invoke, cost_text=None: \
            self._call_provider(ctx, cancel_event, capability, invoke, cost_text)
        ctx.report = lambda fraction, message: \
            self._report(job_id, stage.name, stage_percentage(stage.name, fraction), message)

        record = self.db.get_stage(job_id, stage.name)
        attempt = record.attempts if record else 0
        deferrals = 0

        self.db.update_stage(job_id, stage.name, status=StageStatus.RUNNING, cache_key=key)
        ctx.progress(0.0, f"{stage.name} started")

        while True:
            if cancel_event.is_set():
                self._abandon(job_id, stage.name)
                raise JobCancelled(job_id)

            attempt += 1
            row = self.db.start_attempt(job_id, stage.name, attempt)

            cached = self.cache.get(key)
            if cached is not None:
                logger.info("Job %s %s: cache hit %s", job_id, stage.name, key[:12])
                self.db.finish_attempt(row.id, AttemptOutcome.CACHE_HIT)
                return self._succeed(ctx, stage, key, cached)

            try:
                artifact = self.cache.compute_if_absent(key, lambda: stage.run(ctx), stage.name)
            except JobCancelled:
                self.db.finish_attempt(row.id, AttemptOutcome.FAILED, ErrorCode.CANCELLED,
                                       "cancelled", retryable=False)
                self._abandon(job_id, stage.name)
                raise
            except Exception as e:
                decision = self.policy.decide(e, attempt, deferrals)
                cause = root_cause(e)
                code = cause.code if isinstance(cause, JobError) else ErrorCode.UNEXPECTED
                message = (cause.message if isinstance(cause, JobError) else str(cause))
                message = message[:MAX_ERROR_MESSAGE_LEN]
                self.db.finish_attempt(row.id, AttemptOutcome.FAILED, code, message,
                                       retryable=decision.retry)

                if not decision.retry:
                    if not isinstance(cause, JobError):
                        logger.error("Job %s %s: unexpected error", job_id, stage.name,
                                     exc_info=True)
                    logger.error("Job %s %s failed fatally on attempt %d: %s (%s)",
                                 job_id, stage.name, attempt, message, decision.reason)
                    self.db.update_stage(job_id, stage.name, status=StageStatus.FAILED_FATAL,
                                         last_error_code=code, last_error=message)
                    raise StageFailed(stage.name, cause, attempt) from e

                if decision.is_quota_deferral:
                    deferrals += 1
                self.db.update_stage(job_id, stage.name, status=StageStatus.FAILED_RETRYABLE,
                                     last_error_code=code, last_error=message)
                logger.warning("Job %s %s attempt %d failed (%s), retrying in %.2fs",
                               job_id, stage.name, attempt, code, decision.delay)
                if cancel_event.wait(decision.delay):
                    self._abandon(job_id, stage.name)
                    raise JobCancelled(job_id)
                self.db.update_stage(job_id, stage.name, status=StageStatus.RUNNING)
                continue

            self.db.finish_attempt(row.id, AttemptOutcome.SUCCEEDED)
            if cancel_event.is_set():
                # The call finished after cancel(); the job discards the result
                logger.info("Job %s cancelled during %s, discarding result", job_id, stage.name)
                self._abandon(job_id, stage.name)
                raise JobCancelled(job_id)
            return self._succeed(ctx, stage, key, artifact)

    def _succeed(self, ctx: StageContext, stage: Stage, key: str, artifact):
        self.db.save_artifact(ctx.job_id, stage.name, key, artifact)
        self.db.update_stage(ctx.job_id, stage.name, status=StageStatus.SUCCEEDED)
        ctx.outputs[stage.name] = artifact
        ctx.progress(1.0, f"{stage.name} done")
        logger.info("Job %s %s succeeded", ctx.job_id, stage.name)
        return artifact

    def _abandon(self, job_id: str, stage: str):
        self.db.update_stage(job_id, stage, status=StageStatus.PENDING)
