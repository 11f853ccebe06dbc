"""
Job progress tracking.

``report`` is the only write path for job progress. Percentages are
job-level and never move backwards: a lower value than the last accepted one
is logged and dropped. Each job's events form a finite sequence that ends
with the event carrying its terminal status.
"""

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator

from coursegen.core.constants import (
    DEFAULT_PROGRESS_RETENTION, PROGRESS_BANDS, TERMINAL_STATUSES,
)
from coursegen.core.models_sqlite import ProgressEvent

logger = logging.getLogger(__name__)


def stage_percentage(stage: str, fraction: float) -> int:
    """Map progress within a stage (0.0-1.0) onto the job-level percentage."""
    low, high = PROGRESS_BANDS[stage]
    fraction = max(0.0, min(1.0, fraction))
    return int(low + (high - low) * fraction)


class _JobProgress:
    __slots__ = ('percentage', 'events', 'status')

    def __init__(self, percentage: int):
        self.percentage = percentage
        self.events: list[ProgressEvent] = []
        self.status: str | None = None


class ProgressTracker:

    """
    Holds the event history of every live job plus the ``retain_terminal``
    most recently finished ones. Older finished jobs are dropped; their final
    state lives on in the database.
    """

    def __init__(self, retain_terminal: int = DEFAULT_PROGRESS_RETENTION):
        self.retain_terminal = max(1, retain_terminal)
        self._cond = threading.Condition()
        self._jobs: dict[str, _JobProgress] = {}
        self._finished: "OrderedDict[str, None]" = OrderedDict()

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def open(self, job_id: str, initial_pct: int = 0):
        """Start tracking a job, resuming from its persisted percentage."""
        with self._cond:
            if job_id not in self._jobs:
                self._jobs[job_id] = _JobProgress(initial_pct)

    def report(self, job_id: str, stage: str | None, percentage: int, message: str = "") -> bool:
        """Record progress. Returns False if the update was dropped."""
        with self._cond:
            state = self._jobs.setdefault(job_id, _JobProgress(0))
            if state.status is not None:
                logger.debug("Ignoring progress for finished job %s", job_id)
                return False
            if percentage < state.percentage:
                logger.warning("Dropping regressive progress for job %s: %d%% < %d%% (%s)",
                               job_id, percentage, state.percentage, message)
                return False
            state.percentage = percentage
            state.events.append(ProgressEvent(job_id, stage, percentage, message, self._now()))
            self._cond.notify_all()
            return True

    def finish(self, job_id: str, status: str, stage: str | None = None, message: str = ""):
        """Close the job's event sequence with its terminal status."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal status")
        with self._cond:
            state = self._jobs.setdefault(job_id, _JobProgress(0))
            if state.status is not None:
                return
            state.status = status
            state.events.append(ProgressEvent(job_id, stage, state.percentage,
                                              message or status, self._now(), status))
            self._finished[job_id] = None
            while len(self._finished) > self.retain_terminal:
                evicted, _ = self._finished.popitem(last=False)
                self._jobs.pop(evicted, None)
                logger.debug("Dropped progress history of job %s", evicted)
            self._cond.notify_all()

    def latest(self, job_id: str) -> ProgressEvent | None:
        with self._cond:
            state = self._jobs.get(job_id)
            if state is None or not state.events:
                return None
            return state.events[-1]

    def percentage(self, job_id: str) -> int | None:
        with self._cond:
            state = self._jobs.get(job_id)
            return state.percentage if state else None

    def events(self, job_id: str) -> list[ProgressEvent]:
        with self._cond:
            state = self._jobs.get(job_id)
            return list(state.events) if state else []

    def subscribe(self, job_id: str, timeout: float | None = None,
                  missing: Callable[[], Iterable[ProgressEvent]] | None = None
                  ) -> Iterator[ProgressEvent]:
        """
        Yield the job's events from the start, then live ones as they arrive.
        The sequence ends after the terminal event, or when no new event shows
        up within ``timeout`` seconds.

        For a job with no history here, the events come from ``missing`` when
        given; otherwise KeyError is raised.
        """
        with self._cond:
            state = self._jobs.get(job_id)
        if state is None:
            if missing is None:
                raise KeyError(job_id)
            yield from missing()
            return

        index = 0
        while True:
            with self._cond:
                if index >= len(state.events):
                    if state.status is not None:
                        return
                    if not self._cond.wait_for(
                            lambda: len(state.events) > index or state.status is not None,
                            timeout=timeout):
                        return
                pending = state.events[index:]
                index = len(state.events)
            for event in pending:
                yield event
                if event.status is not None:
                    return

    def wait_terminal(self, job_id: str, timeout: float | None = None) -> str | None:
        """Block until the job finishes. Returns its status, or None on timeout."""
        with self._cond:
            self._cond.wait_for(
                lambda: job_id in self._jobs and self._jobs[job_id].status is not None,
                timeout=timeout,
            )
            state = self._jobs.get(job_id)
            return state.status if state else None

    def tracked(self) -> int:
        with self._cond:
            return len(self._jobs)
