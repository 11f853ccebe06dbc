"""
Diagnostics: orchestrator health and resource usage.
"""

import logging

from coursegen.core.constants import APP_VERSION, JobStatus

logger = logging.getLogger(__name__)


def job_counts(db) -> dict:
    """Number of jobs per status."""
    counts = {status: 0 for status in (JobStatus.QUEUED, JobStatus.RUNNING,
                                       JobStatus.COMPLETED, JobStatus.FAILED,
                                       JobStatus.CANCELLED)}
    for job in db.get_all_jobs():
        counts[job.status] = counts.get(job.status, 0) + 1
    return counts


def get_diagnostics(manager) -> dict:
    """Gather all diagnostic information for a running JobQueueManager."""
    return {
        "version": APP_VERSION,
        "workers_running": manager.is_running(),
        "max_concurrent": manager.config.max_concurrent,
        "queue_depth": manager.queue_depth(),
        "active_jobs": manager.active_jobs(),
        "jobs": job_counts(manager.db),
        "providers": {name: manager.providers.capability_of(name)
                      for name in manager.providers.names()},
        "rate_limiters": manager.limiters.stats(),
        "cache": {**manager.cache.stats(),
                  "entries_persisted": manager.db.count_cache_entries()},
    }
