"""
Job Queue Manager and Worker pool.

A fixed number of worker threads pull job ids from a FIFO queue; each worker
drives one job through the stage pipeline at a time. The manager owns the
queue, the provider rate limiters, the artifact cache and the progress
tracker, and has an explicit start()/shutdown() lifecycle.

Shared state and its locks:
    _queue            queue.Queue (internally synchronised)
    _cancel_events    guarded by _lock
    _enqueued         guarded by _lock; ids currently sitting in _queue
    provider limiters one Condition per provider (rate_limiter.py)
    artifact cache    its own lock, never held across a producer (artifact_cache.py)
    database          Database._lock
"""

import json
import logging
import queue
import threading
import time
from typing import Iterator, Optional

from coursegen.core.artifact_cache import ArtifactCache
from coursegen.core.config import AppConfig
from coursegen.core.constants import (
    ErrorCode, JobStatus, StageStatus, ALL_CAPABILITIES,
    TERMINAL_STATUSES, MAX_ERROR_MESSAGE_LEN,
)
from coursegen.core.db_sqlite import Database
from coursegen.core.error_codes import JobCancelled, StageFailed, ValidationError
from coursegen.core.fingerprint import canonical_transcript, digest
from coursegen.core.models_sqlite import CourseConfig, JobSnapshot, ProgressEvent
from coursegen.core.output_writer import ManifestAssembler
from coursegen.core.progress import ProgressTracker
from coursegen.core.rate_limiter import RateLimiterSet
from coursegen.core.retry_policy import RetryPolicy
from coursegen.core.stage_executor import StageExecutor
from coursegen.core.stages import PromptBuilder, StageContext, build_pipeline
from coursegen.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

_STOP = object()
_WAIT_POLL_SEC = 0.5


class JobQueueManager:
    """
    Accepts course jobs, runs them on a bounded worker pool and answers
    status queries. Submission is validated synchronously; execution is
    asynchronous.
    """

    def __init__(self, db: Database, config: AppConfig | None = None,
                 providers: ProviderRegistry | None = None,
                 assembler=None, prompts: PromptBuilder | None = None,
                 policy: RetryPolicy | None = None):
        self.db = db
        self.config = config or AppConfig.from_dict({})
        self.providers = providers or ProviderRegistry.from_config(self.config)
        self.limiters = RateLimiterSet(self.config.providers)
        self.cache = ArtifactCache(
            db,
            ttl_sec=self.config.get('cache_ttl_sec'),
            capacity=self.config.get('cache_capacity'),
            wait_sec=self.config.get('cache_wait_sec'),
        )
        self.progress = ProgressTracker(self.config.get('progress_retention'))
        self.policy = policy or RetryPolicy.from_config(self.config)
        self.pipeline = build_pipeline(assembler or ManifestAssembler(self.config.output_root),
                                       prompts)
        self.executor = StageExecutor(
            db, self.cache, self.limiters, self.providers, self.policy,
            report=self._update_progress,
            rate_limit_wait_sec=self.config.get('rate_limit_wait_sec'),
        )

        self._queue: "queue.Queue" = queue.Queue()
        self._workers: list[threading.Thread] = []
        self._cancel_events: dict[str, threading.Event] = {}
        self._enqueued: set[str] = set()
        self._lock = threading.Lock()
        self._running = False
        self._current: dict[str, Optional[str]] = {}   # worker name -> job id

    # ── Submission ────────────────────────────────────────────────────

    def _parse_course_config(self, data) -> CourseConfig:
        """Validate a submitted course config and fill in provider defaults."""
        if not isinstance(data, dict):
            raise ValidationError("Course config must be an object")

        audience = data.get('target_audience')
        if not isinstance(audience, str) or not audience.strip():
            raise ValidationError("target_audience is required")

        max_lessons = data.get('max_lessons')
        limit = self.config.get('max_lessons_limit')
        if isinstance(max_lessons, bool) or not isinstance(max_lessons, int) \
                or not 1 <= max_lessons <= limit:
            raise ValidationError(f"max_lessons must be an integer between 1 and {limit}")

        title = data.get('title') or ""
        if not isinstance(title, str):
            raise ValidationError("title must be a string")

        voice = data.get('voice') or {}
        if not isinstance(voice, dict):
            raise ValidationError("voice must be an object")

        chosen = data.get('providers') or {}
        if not isinstance(chosen, dict):
            raise ValidationError("providers must be an object")
        unknown = set(chosen) - set(ALL_CAPABILITIES)
        if unknown:
            raise ValidationError(f"Unknown provider capabilities: {sorted(unknown)}")

        providers = {}
        for capability in ALL_CAPABILITIES:
            name = chosen.get(capability) or self.config.default_providers.get(capability)
            if not name:
                raise ValidationError(f"No {capability} provider selected")
            registered = self.providers.capability_of(name)
            if registered is None:
                raise ValidationError(f"Unknown {capability} provider {name!r}")
            if registered != capability:
                raise ValidationError(f"Provider {name!r} cannot serve {capability}")
            providers[capability] = name

        return CourseConfig(
            target_audience=audience.strip(),
            max_lessons=max_lessons,
            title=title.strip() or f"Course for {audience.strip()}",
            providers=providers,
            voice=voice,
        )

    def submit(self, transcript: str, course_config: dict) -> str:
        """Validate and enqueue a new job. Returns its id."""
        if not isinstance(transcript, str):
            raise ValidationError("Transcript must be text")
        text = canonical_transcript(transcript)
        minimum = self.config.get('min_transcript_chars')
        if len(text) < minimum:
            raise ValidationError(
                f"Transcript too short: {len(text)} characters, need at least {minimum}"
            )
        course = self._parse_course_config(course_config)

        job = self.db.create_job(digest(text), text, course.as_dict())
        self.progress.open(job.id)
        with self._lock:
            self._cancel_events[job.id] = threading.Event()
        self._enqueue(job.id)
        logger.info("Queued job %s (%d chars, %d lessons max)",
                    job.id, len(text), course.max_lessons)
        return job.id

    def _enqueue(self, job_id: str) -> bool:
        """Put a job id on the queue unless it is already waiting there."""
        with self._lock:
            if job_id in self._enqueued:
                return False
            self._enqueued.add(job_id)
        self._queue.put(job_id)
        return True

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a job. Queued jobs are cancelled at once; running jobs stop at
        the next point control returns to the orchestrator.
        """
        job = self.db.request_cancel(job_id)
        if job is None:
            return False
        with self._lock:
            event = self._cancel_events.setdefault(job_id, threading.Event())
        event.set()
        if job.status == JobStatus.CANCELLED:
            self.progress.finish(job_id, JobStatus.CANCELLED, message="Cancelled before start")
        logger.info("Cancel requested for job %s (%s)", job_id, job.status)
        return True

    # ── Status ────────────────────────────────────────────────────────

    def status(self, job_id: str) -> JobSnapshot | None:
        job = self.db.get_job(job_id)
        if job is None:
            return None
        tracked = self.progress.percentage(job_id)
        return JobSnapshot(
            job_id=job.id,
            status=job.status,
            current_stage=job.stage,
            percentage=max(job.progress_pct, tracked or 0),
            cancel_requested=bool(job.cancel_requested),
            last_error=job.error_message,
            error_code=job.error_code,
            artifacts=tuple((a.stage, a.artifact) for a in self.db.get_artifacts(job_id)),
            stages=tuple(self.db.get_stages(job_id)),
            created_at=job.created_at,
            completed_at=job.completed_at,
        )

    def wait(self, job_id: str, timeout: float | None = None) -> JobSnapshot | None:
        """Block until the job reaches a terminal status (or timeout)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            job = self.db.get_job(job_id)
            if job is None or job.status in TERMINAL_STATUSES:
                break
            step = _WAIT_POLL_SEC
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                step = min(step, remaining)
            # The database is the fallback once the tracker has dropped the job
            self.progress.wait_terminal(job_id, step)
        return self.status(job_id)

    def subscribe(self, job_id: str, timeout: float | None = None) -> Iterator[ProgressEvent]:
        """
        Progress events for a job, ending with its terminal event. A finished
        job whose history was already dropped yields a single event rebuilt
        from the database. Raises KeyError for unknown jobs.
        """
        if self.db.get_job(job_id) is None:
            raise KeyError(job_id)
        return self.progress.subscribe(job_id, timeout,
                                       missing=lambda: self._stored_events(job_id))

    def _stored_events(self, job_id: str) -> list[ProgressEvent]:
        job = self.db.get_job(job_id)
        if job is None or job.status not in TERMINAL_STATUSES:
            return []
        return [ProgressEvent(job.id, job.stage, job.progress_pct,
                              job.error_message or job.status,
                              job.completed_at or job.updated_at, job.status)]

    def queue_depth(self) -> int:
        return self._queue.qsize()

    def active_jobs(self) -> list[str]:
        with self._lock:
            return [job_id for job_id in self._current.values() if job_id]

    def is_running(self) -> bool:
        return self._running

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self):
        """Recover persisted work and start the worker pool."""
        if self._running:
            return
        recovered = self.db.recover_interrupted()
        if recovered:
            logger.info("Resuming %d interrupted job(s)", len(recovered))

        for job in self.db.get_queued_jobs():
            self.progress.open(job.id, job.progress_pct)
            with self._lock:
                self._cancel_events.setdefault(job.id, threading.Event())
            self._enqueue(job.id)

        self.cache.purge_expired()
        self._running = True
        count = self.config.max_concurrent
        for i in range(count):
            worker = threading.Thread(target=self._worker_loop, name=f"coursegen-worker-{i}",
                                      daemon=True)
            self._workers.append(worker)
            worker.start()
        logger.info("Started %d workers (%d jobs queued)", count, self._queue.qsize())

    def shutdown(self, wait: bool = True, timeout: float | None = None):
        """
        Stop the pool. Workers finish their current job first; jobs still
        queued stay QUEUED in the database and resume on the next start().
        """
        if not self._running:
            return
        self._running = False
        # Drain pending ids so workers see the stop markers next
        try:
            while True:
                self._queue.get_nowait()
        except queue.Empty:
            pass
        with self._lock:
            self._enqueued.clear()
        for _ in self._workers:
            self._queue.put(_STOP)
        if wait:
            for worker in self._workers:
                worker.join(timeout)
        self._workers = []
        logger.info("Worker pool stopped")

    # ── Worker loop ───────────────────────────────────────────────────

    def _worker_loop(self):
        """Main worker loop: one job at a time until a stop marker arrives."""
        name = threading.current_thread().name
        while True:
            job_id = self._queue.get()
            if job_id is _STOP:
                break
            with self._lock:
                self._enqueued.discard(job_id)
                self._current[name] = job_id
            try:
                self._process_job(job_id)
            except Exception as e:
                logger.error("Worker loop error on job %s: %s", job_id, e, exc_info=True)
            finally:
                with self._lock:
                    self._current[name] = None

    def _update_progress(self, job_id: str, stage: str | None, pct: int, message: str):
        if self.progress.report(job_id, stage, pct, message):
            self.db.update_job(job_id, progress_pct=pct)

    def _finish(self, job_id: str, status: str, stage: str | None,
                message: str = "", **extra):
        self.db.update_job_status(job_id, status, stage=stage, **extra)
        self.progress.finish(job_id, status, stage, message)
        with self._lock:
            self._cancel_events.pop(job_id, None)

    # ── Job processing pipeline ───────────────────────────────────────

    def _process_job(self, job_id: str):
        """Process a single job through the full pipeline."""
        job = self.db.get_job(job_id)
        if job is None:
            return
        if not self.db.claim_job(job_id):
            # Cancelled while waiting, or already picked up
            job = self.db.get_job(job_id)
            if job is not None and job.status in TERMINAL_STATUSES:
                self.progress.finish(job_id, job.status, job.stage)
                with self._lock:
                    self._cancel_events.pop(job_id, None)
            return

        with self._lock:
            cancel_event = self._cancel_events.setdefault(job_id, threading.Event())
        if job.cancel_requested:
            cancel_event.set()

        course = CourseConfig(**json.loads(job.course_config))
        ctx = StageContext(
            job_id=job_id,
            course=course,
            transcript=self.db.get_transcript(job.transcript_ref) or "",
            transcript_ref=job.transcript_ref,
        )
        # Resume: artifacts of stages that already succeeded are reused as-is
        for artifact in self.db.get_artifacts(job_id):
            ctx.outputs[artifact.stage] = artifact.artifact

        self.progress.open(job_id, job.progress_pct)
        logger.info("Job %s started", job_id)
        current = None

        try:
            for stage in self.pipeline:
                current = stage.name
                if cancel_event.is_set():
                    raise JobCancelled(job_id)
                record = self.db.get_stage(job_id, stage.name)
                if record and record.status == StageStatus.SUCCEEDED and stage.name in ctx.outputs:
                    logger.info("Job %s %s already done, skipping", job_id, stage.name)
                    continue
                self.db.update_job(job_id, stage=stage.name)
                self.executor.execute(stage, ctx, cancel_event)

            stages = self.db.get_stages(job_id)
            if any(s.status != StageStatus.SUCCEEDED for s in stages):
                raise RuntimeError("Pipeline ended with unfinished stages")
            self._update_progress(job_id, current, 100, "Course ready")
            self._finish(job_id, JobStatus.COMPLETED, current, "Course ready")
            logger.info("Job %s completed", job_id)

        except JobCancelled:
            logger.info("Job %s cancelled at %s", job_id, current)
            self._finish(job_id, JobStatus.CANCELLED, current, "Cancelled")

        except StageFailed as e:
            # Partial result: artifacts of earlier stages stay attached to the job
            self._finish(job_id, JobStatus.FAILED, current, e.message,
                         error_code=e.code,
                         error_message=e.message[:MAX_ERROR_MESSAGE_LEN])

        except Exception as e:
            logger.error("Unexpected error processing job %s: %s", job_id, e, exc_info=True)
            self._finish(job_id, JobStatus.FAILED, current, str(e),
                         error_code=ErrorCode.UNEXPECTED,
                         error_message=str(e)[:MAX_ERROR_MESSAGE_LEN])
