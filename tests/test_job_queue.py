#!/usr/bin/env python3
"""
End-to-end tests for the job queue manager.
Jobs run on real worker threads against scripted fake providers; back-off
delays are configured down to milliseconds so retries stay fast.
"""

import sys
import json
import tempfile
import threading
import time
from collections import Counter
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from coursegen.core.config import AppConfig
from coursegen.core.constants import (
    AttemptOutcome, ErrorCode, JobStage, JobStatus, StageStatus,
)
from coursegen.core.db_sqlite import Database
from coursegen.core.diagnostics import get_diagnostics
from coursegen.core.error_codes import (
    QuotaExceededError, TransientProviderError, ValidationError,
)
from coursegen.core.job_queue import JobQueueManager
from coursegen.providers.registry import ProviderRegistry

TRANSCRIPT = "\n\n".join(
    f"Part {i}. Something worth teaching about topic {i}, with an example." for i in range(4)
)
COURSE = {'target_audience': "new engineers", 'max_lessons': 3}
LESSONS = [{'title': "One", 'body': "First lesson"}, {'title': "Two", 'body': "Second lesson"}]
TIMEOUT = 15


# ── Fake providers ────────────────────────────────────────────────────

class FakeContent:
    """Scripted content provider. Failures are exception factories keyed by task."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls = Counter()
        self.failures: dict[str, list] = {}   # task -> one-shot failures, in order
        self.always: dict[str, object] = {}   # task -> failure raised on every call
        self.lessons_text = json.dumps({'lessons': LESSONS})
        self._lock = threading.Lock()

    def generate(self, prompt, options):
        task = options['task']
        with self._lock:
            self.calls[task] += 1
            plan = self.failures.get(task)
            error = plan.pop(0)() if plan else None
            if error is None and task in self.always:
                error = self.always[task]()
        if self.delay:
            time.sleep(self.delay)
        if error is not None:
            raise error
        if task == 'analyze':
            return "- outline of the talk"
        return self.lessons_text


class FakeVoice:

    def __init__(self):
        self.calls = 0
        self.result = None   # overrides the returned reference when set
        self._lock = threading.Lock()

    def synthesize(self, text, voice_config):
        with self._lock:
            self.calls += 1
        if self.result is not None:
            return self.result
        return f"audio://fake/{text}"


class FakeMedia:
    """Optionally blocks inside render() until ``release`` is set."""

    def __init__(self, gated: bool = False):
        self.gated = gated
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0
        self.always = None
        self._lock = threading.Lock()

    def render(self, slide_spec, audio_ref):
        with self._lock:
            self.calls += 1
        if self.gated:
            self.entered.set()
            self.release.wait(TIMEOUT)
        if self.always is not None:
            raise self.always()
        return f"video://fake/{slide_spec['lesson_index']}"


class JobQueueTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        self.db = Database(self.root / "jobs.db")
        self.content = FakeContent()
        self.voice = FakeVoice()
        self.media = FakeMedia()
        self.managers = []

    def tearDown(self):
        self.media.release.set()
        for manager in self.managers:
            manager.shutdown(wait=True, timeout=TIMEOUT)
        self.db.close()
        self.tmpdir.cleanup()

    def _registry(self) -> ProviderRegistry:
        registry = ProviderRegistry()
        registry.register('fake-content', 'content', self.content)
        registry.register('fake-voice', 'voice', self.voice)
        registry.register('fake-media', 'media', self.media)
        return registry

    def _manager(self, start: bool = True, rates: dict | None = None,
                 **overrides) -> JobQueueManager:
        rates = rates or {}
        providers = {
            name: {'kind': 'fake', 'capability': capability,
                   'rate': rates.get(name, {'capacity': 100, 'refill_per_sec': 100})}
            for name, capability in (('fake-content', 'content'),
                                     ('fake-voice', 'voice'),
                                     ('fake-media', 'media'))
        }
        values = {
            'output_root': str(self.root / "courses"),
            'min_transcript_chars': 20,
            'retry_attempts': 3,
            'backoff_base_sec': 0.01,
            'backoff_max_sec': 0.05,
            'backoff_jitter': 0,
            'rate_limited_backoff_sec': 0.01,
            'quota_reset_sec': 0.01,
            'rate_limit_wait_sec': 1.0,
            'max_concurrent': 3,
            'providers': providers,
            'default_providers': {'content': 'fake-content', 'voice': 'fake-voice',
                                  'media': 'fake-media'},
        }
        values.update(overrides)
        manager = JobQueueManager(self.db, AppConfig.from_dict(values),
                                  providers=self._registry())
        self.managers.append(manager)
        if start:
            manager.start()
        return manager


class TestHappyPath(JobQueueTestCase):
    """Jobs that run straight through."""

    def test_job_completes_all_stages(self):
        manager = self._manager()
        job_id = manager.submit(TRANSCRIPT, COURSE)
        snapshot = manager.wait(job_id, TIMEOUT)

        self.assertEqual(snapshot.status, JobStatus.COMPLETED)
        self.assertEqual(snapshot.percentage, 100)
        self.assertEqual(len(snapshot.artifacts), 4)
        for record in snapshot.stages:
            self.assertEqual(record.status, StageStatus.SUCCEEDED)
            self.assertEqual(record.attempts, 1)

        manifest = json.loads(Path(snapshot.artifact(JobStage.ASSEMBLE)['manifest_path']).read_text())
        self.assertEqual(manifest['title'], "Course for new engineers")
        self.assertEqual([l['video_ref'] for l in manifest['lessons']],
                         ["video://fake/0", "video://fake/1"])

    def test_progress_is_monotonic_and_finite(self):
        manager = self._manager()
        job_id = manager.submit(TRANSCRIPT, COURSE)
        manager.wait(job_id, TIMEOUT)

        events = list(manager.progress.subscribe(job_id, timeout=TIMEOUT))
        percentages = [e.percentage for e in events]
        self.assertEqual(percentages, sorted(percentages))
        self.assertEqual(events[-1].status, JobStatus.COMPLETED)
        self.assertEqual(events[-1].percentage, 100)

    def test_finished_job_history_is_bounded(self):
        manager = self._manager(progress_retention=2, max_concurrent=1)
        job_ids = [manager.submit(f"{TRANSCRIPT}\n\nVariant {i}.", COURSE) for i in range(5)]
        for job_id in job_ids:
            self.assertEqual(manager.wait(job_id, TIMEOUT).status, JobStatus.COMPLETED)
        manager.shutdown(wait=True, timeout=TIMEOUT)

        self.assertLessEqual(manager.progress.tracked(), 2)
        events = list(manager.subscribe(job_ids[0], timeout=TIMEOUT))
        self.assertEqual(len(events), 1)
        self.assertEqual(events[-1].status, JobStatus.COMPLETED)
        self.assertEqual(events[-1].percentage, 100)
        self.assertEqual(manager.status(job_ids[0]).percentage, 100)

    def test_local_providers_end_to_end(self):
        config = AppConfig.from_dict({'output_root': str(self.root / "courses"),
                                      'min_transcript_chars': 20})
        manager = JobQueueManager(self.db, config)
        self.managers.append(manager)
        manager.start()
        job_id = manager.submit(TRANSCRIPT, {'target_audience': "analysts", 'max_lessons': 2,
                                             'title': "Local Course"})
        snapshot = manager.wait(job_id, TIMEOUT)

        self.assertEqual(snapshot.status, JobStatus.COMPLETED)
        self.assertEqual(snapshot.artifact(JobStage.ASSEMBLE)['lesson_count'], 2)

    def test_diagnostics(self):
        manager = self._manager()
        manager.wait(manager.submit(TRANSCRIPT, COURSE), TIMEOUT)
        info = get_diagnostics(manager)
        self.assertEqual(info['jobs'][JobStatus.COMPLETED], 1)
        self.assertEqual(info['cache']['producer_calls'], 4)
        self.assertEqual(info['providers']['fake-media'], 'media')
        self.assertIn('fake-content', info['rate_limiters'])


class TestSubmission(JobQueueTestCase):
    """Synchronous validation at submit time."""

    def test_rejects_bad_input(self):
        manager = self._manager(start=False)
        bad_courses = [
            None,
            {'max_lessons': 3},
            {'target_audience': "  ", 'max_lessons': 3},
            {'target_audience': "devs"},
            {'target_audience': "devs", 'max_lessons': 0},
            {'target_audience': "devs", 'max_lessons': 21},
            {'target_audience': "devs", 'max_lessons': "3"},
            {'target_audience': "devs", 'max_lessons': True},
            {**COURSE, 'providers': {'content': 'nope'}},
            {**COURSE, 'providers': {'voice': 'fake-content'}},
            {**COURSE, 'providers': {'smell': 'fake-content'}},
        ]
        for course in bad_courses:
            with self.subTest(course=course):
                with self.assertRaises(ValidationError):
                    manager.submit(TRANSCRIPT, course)

        with self.assertRaises(ValidationError):
            manager.submit("too short", COURSE)
        with self.assertRaises(ValidationError):
            manager.submit(None, COURSE)
        self.assertEqual(self.db.get_all_jobs(), [])

    def test_unknown_job(self):
        manager = self._manager(start=False)
        self.assertIsNone(manager.status("missing"))
        self.assertFalse(manager.cancel("missing"))
        with self.assertRaises(KeyError):
            manager.subscribe("missing")

    def test_job_enqueued_once(self):
        manager = self._manager(start=False)
        job_id = manager.submit(TRANSCRIPT, COURSE)
        self.assertFalse(manager._enqueue(job_id))
        self.assertEqual(manager.queue_depth(), 1)

        # start() re-reads QUEUED jobs from the database without doubling them
        manager.start()
        self.assertEqual(manager.wait(job_id, TIMEOUT).status, JobStatus.COMPLETED)
        self.assertEqual(self.content.calls['analyze'], 1)
        self.assertEqual(len(self.db.get_attempts(job_id, JobStage.ANALYZE)), 1)

    def test_cancelled_job_is_not_claimed(self):
        manager = self._manager(start=False)
        job_id = manager.submit(TRANSCRIPT, COURSE)
        self.assertTrue(manager.cancel(job_id))
        # A worker that dequeues the id afterwards leaves it alone
        manager._process_job(job_id)
        snapshot = manager.status(job_id)
        self.assertEqual(snapshot.status, JobStatus.CANCELLED)
        self.assertIsNone(snapshot.current_stage)
        self.assertEqual(self.db.get_attempts(job_id), [])


class TestRetries(JobQueueTestCase):
    """Failure classification and retry ceilings."""

    def test_transient_failures_then_success(self):
        self.content.failures['lessons'] = [lambda: TransientProviderError("blip")] * 2
        manager = self._manager()
        snapshot = manager.wait(manager.submit(TRANSCRIPT, COURSE), TIMEOUT)

        self.assertEqual(snapshot.status, JobStatus.COMPLETED)
        self.assertEqual(snapshot.stage_record(JobStage.GENERATE_CONTENT).attempts, 3)
        attempts = self.db.get_attempts(snapshot.job_id, JobStage.GENERATE_CONTENT)
        self.assertEqual([a.outcome for a in attempts],
                         [AttemptOutcome.FAILED, AttemptOutcome.FAILED, AttemptOutcome.SUCCEEDED])
        self.assertEqual(attempts[0].error_code, ErrorCode.PROVIDER_TRANSIENT)
        self.assertEqual(self.content.calls['lessons'], 3)

    def test_transient_retried_exactly_retry_attempts_times(self):
        self.content.always['lessons'] = lambda: TransientProviderError("down")
        manager = self._manager()
        snapshot = manager.wait(manager.submit(TRANSCRIPT, COURSE), TIMEOUT)

        self.assertEqual(snapshot.status, JobStatus.FAILED)
        self.assertEqual(snapshot.error_code, ErrorCode.PROVIDER_TRANSIENT)
        self.assertEqual(self.content.calls['lessons'], 4)
        self.assertEqual(snapshot.stage_record(JobStage.GENERATE_CONTENT).status,
                         StageStatus.FAILED_FATAL)

    def test_validation_error_never_retried(self):
        self.content.failures['lessons'] = [lambda: ValidationError("prompt rejected")]
        manager = self._manager()
        snapshot = manager.wait(manager.submit(TRANSCRIPT, COURSE), TIMEOUT)

        self.assertEqual(snapshot.status, JobStatus.FAILED)
        self.assertEqual(snapshot.error_code, ErrorCode.VALIDATION)
        self.assertEqual(self.content.calls['lessons'], 1)
        # Partial result: the finished stage stays attached
        self.assertIsNotNone(snapshot.artifact(JobStage.ANALYZE))
        self.assertIsNone(snapshot.artifact(JobStage.GENERATE_CONTENT))
        self.assertEqual(snapshot.stage_record(JobStage.GENERATE_MEDIA).status,
                         StageStatus.PENDING)

    def test_malformed_response_is_fatal(self):
        self.content.lessons_text = "Sure! Here are some lessons."
        manager = self._manager()
        snapshot = manager.wait(manager.submit(TRANSCRIPT, COURSE), TIMEOUT)

        self.assertEqual(snapshot.status, JobStatus.FAILED)
        self.assertEqual(snapshot.error_code, ErrorCode.MALFORMED_RESPONSE)
        self.assertEqual(self.content.calls['lessons'], 1)

    def test_non_string_media_reference_is_malformed(self):
        self.voice.result = b"raw-audio-bytes"
        manager = self._manager()
        failed = manager.wait(manager.submit(TRANSCRIPT, COURSE), TIMEOUT)

        self.assertEqual(failed.status, JobStatus.FAILED)
        self.assertEqual(failed.error_code, ErrorCode.MALFORMED_RESPONSE)
        self.assertEqual(self.voice.calls, 1)
        self.assertEqual(manager.cache.stats()['in_flight'], 0)

        # The same work is free to run again once the provider behaves
        self.voice.result = None
        retried = manager.wait(manager.submit(TRANSCRIPT, COURSE), TIMEOUT)
        self.assertEqual(retried.status, JobStatus.COMPLETED)
        self.assertEqual(self.content.calls['lessons'], 1)

    def test_unexpected_exception_is_fatal(self):
        self.content.failures['analyze'] = [lambda: RuntimeError("bug")]
        manager = self._manager()
        snapshot = manager.wait(manager.submit(TRANSCRIPT, COURSE), TIMEOUT)

        self.assertEqual(snapshot.status, JobStatus.FAILED)
        self.assertEqual(snapshot.error_code, ErrorCode.UNEXPECTED)
        self.assertEqual(self.content.calls['analyze'], 1)

    def test_quota_deferred_then_fatal(self):
        self.content.always['analyze'] = lambda: QuotaExceededError("cap", reset_after=0.01)
        manager = self._manager(retry_attempts=5, quota_max_deferrals=2)
        snapshot = manager.wait(manager.submit(TRANSCRIPT, COURSE), TIMEOUT)

        self.assertEqual(snapshot.status, JobStatus.FAILED)
        self.assertEqual(snapshot.error_code, ErrorCode.QUOTA_EXCEEDED)
        self.assertEqual(self.content.calls['analyze'], 3)

    def test_no_permit_is_rate_limited(self):
        manager = self._manager(retry_attempts=1, rate_limit_wait_sec=0.05,
                                rates={'fake-content': {'capacity': 1, 'refill_per_sec': 0}})
        snapshot = manager.wait(manager.submit(TRANSCRIPT, COURSE), TIMEOUT)

        self.assertEqual(snapshot.status, JobStatus.FAILED)
        self.assertEqual(snapshot.error_code, ErrorCode.RATE_LIMITED)
        self.assertEqual(self.content.calls['analyze'], 1)
        self.assertEqual(self.content.calls['lessons'], 0)
        self.assertEqual(snapshot.stage_record(JobStage.GENERATE_CONTENT).attempts, 2)


class TestSharing(JobQueueTestCase):
    """Identical work is computed once."""

    def test_identical_concurrent_jobs_share_provider_calls(self):
        self.content.delay = 0.2
        manager = self._manager(start=False)
        first = manager.submit(TRANSCRIPT, COURSE)
        second = manager.submit(TRANSCRIPT, COURSE)
        manager.start()

        self.assertEqual(manager.wait(first, TIMEOUT).status, JobStatus.COMPLETED)
        self.assertEqual(manager.wait(second, TIMEOUT).status, JobStatus.COMPLETED)
        self.assertEqual(self.content.calls['analyze'], 1)
        self.assertEqual(self.content.calls['lessons'], 1)
        self.assertEqual(self.voice.calls, len(LESSONS))
        self.assertEqual(self.media.calls, len(LESSONS))

    def test_resubmission_resumes_from_cache(self):
        self.media.always = lambda: ValidationError("bad slide")
        manager = self._manager()
        failed = manager.wait(manager.submit(TRANSCRIPT, COURSE), TIMEOUT)
        self.assertEqual(failed.status, JobStatus.FAILED)
        self.assertEqual(failed.stage_record(JobStage.GENERATE_MEDIA).status,
                         StageStatus.FAILED_FATAL)

        self.media.always = None
        reformatted = TRANSCRIPT.replace("\n\n", "  \r\n\r\n\r\n")
        retried = manager.wait(manager.submit(reformatted, COURSE), TIMEOUT)

        self.assertEqual(retried.status, JobStatus.COMPLETED)
        self.assertEqual(self.content.calls['analyze'], 1)
        self.assertEqual(self.content.calls['lessons'], 1)
        analyze = self.db.get_attempts(retried.job_id, JobStage.ANALYZE)
        self.assertEqual([a.outcome for a in analyze], [AttemptOutcome.CACHE_HIT])


class TestCancellation(JobQueueTestCase):

    def test_cancel_during_media(self):
        self.media.gated = True
        manager = self._manager()
        job_id = manager.submit(TRANSCRIPT, COURSE)
        self.assertTrue(self.media.entered.wait(TIMEOUT))

        self.assertTrue(manager.cancel(job_id))
        in_flight = manager.status(job_id)
        self.assertEqual(in_flight.status, JobStatus.RUNNING)
        self.assertTrue(in_flight.cancel_requested)

        self.media.release.set()
        snapshot = manager.wait(job_id, TIMEOUT)
        self.assertEqual(snapshot.status, JobStatus.CANCELLED)
        self.assertEqual(self.media.calls, 1)
        self.assertIsNone(snapshot.artifact(JobStage.GENERATE_MEDIA))
        self.assertIsNone(snapshot.artifact(JobStage.ASSEMBLE))
        self.assertEqual(snapshot.stage_record(JobStage.ASSEMBLE).status, StageStatus.PENDING)
        self.assertEqual(self.db.get_attempts(job_id, JobStage.ASSEMBLE), [])
        self.assertFalse(manager.cancel(job_id))

    def test_cancel_queued_job(self):
        self.media.gated = True
        manager = self._manager(max_concurrent=1)
        running = manager.submit(TRANSCRIPT, COURSE)
        self.assertTrue(self.media.entered.wait(TIMEOUT))
        waiting = manager.submit(TRANSCRIPT + "\n\nOne more part.", COURSE)

        self.assertTrue(manager.cancel(waiting))
        self.assertEqual(manager.status(waiting).status, JobStatus.CANCELLED)

        self.media.release.set()
        self.assertEqual(manager.wait(running, TIMEOUT).status, JobStatus.COMPLETED)
        self.assertEqual(manager.wait(waiting, TIMEOUT).status, JobStatus.CANCELLED)
        self.assertEqual(self.db.get_attempts(waiting), [])


class TestRestart(JobQueueTestCase):
    """Persisted jobs survive a process restart."""

    def test_interrupted_job_resumes_after_last_finished_stage(self):
        first = self._manager(start=False)
        job_id = first.submit(TRANSCRIPT, COURSE)
        # State left behind by a crash halfway through GENERATE_CONTENT
        self.db.update_job_status(job_id, JobStatus.RUNNING, stage=JobStage.GENERATE_CONTENT)
        self.db.save_artifact(job_id, JobStage.ANALYZE, "saved", {'analysis': "- saved outline"})
        self.db.update_stage(job_id, JobStage.ANALYZE, status=StageStatus.SUCCEEDED)
        self.db.update_stage(job_id, JobStage.GENERATE_CONTENT, status=StageStatus.RUNNING)
        self.db.start_attempt(job_id, JobStage.GENERATE_CONTENT, 1)

        second = self._manager()
        snapshot = second.wait(job_id, TIMEOUT)

        self.assertEqual(snapshot.status, JobStatus.COMPLETED)
        self.assertEqual(self.content.calls['analyze'], 0)
        self.assertEqual(self.content.calls['lessons'], 1)
        self.assertEqual(snapshot.artifact(JobStage.ANALYZE), {'analysis': "- saved outline"})
        attempts = self.db.get_attempts(job_id, JobStage.GENERATE_CONTENT)
        self.assertEqual([a.attempt_no for a in attempts], [1, 2])
        self.assertEqual([a.outcome for a in attempts],
                         [AttemptOutcome.FAILED, AttemptOutcome.SUCCEEDED])

    def test_shutdown_keeps_queued_jobs(self):
        self.media.gated = True
        manager = self._manager(max_concurrent=1)
        running = manager.submit(TRANSCRIPT, COURSE)
        self.assertTrue(self.media.entered.wait(TIMEOUT))
        queued = manager.submit(TRANSCRIPT + "\n\nOne more part.", COURSE)

        threading.Timer(0.2, self.media.release.set).start()
        manager.shutdown(wait=True, timeout=TIMEOUT)
        self.assertEqual(self.db.get_job(running).status, JobStatus.COMPLETED)
        self.assertEqual(self.db.get_job(queued).status, JobStatus.QUEUED)

        restarted = self._manager()
        self.assertEqual(restarted.wait(queued, TIMEOUT).status, JobStatus.COMPLETED)


if __name__ == "__main__":
    unittest.main()
