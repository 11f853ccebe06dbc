"""
SQLite database layer for CourseGen.
Thread-safe via check_same_thread=False + explicit locking.

Every worker thread shares the one connection; all statements run under
``Database._lock`` so multi-statement updates are never interleaved.
"""

import json
import sqlite3
import threading
import uuid
import logging
from datetime import datetime, timezone
from pathlib import Path

from coursegen.core.constants import (
    DB_PATH, JobStatus, StageStatus, STAGE_SEQUENCE, TERMINAL_STATUSES,
)
from coursegen.core.models_sqlite import (
    Attempt, CacheEntry, Job, JobArtifact, StageRecord,
)

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS transcripts (
    ref TEXT PRIMARY KEY,
    text TEXT NOT NULL,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    transcript_ref TEXT NOT NULL,
    course_config TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'QUEUED',
    stage TEXT,
    progress_pct INTEGER DEFAULT 0,
    cancel_requested INTEGER DEFAULT 0,
    error_code TEXT,
    error_message TEXT,
    created_at TEXT,
    started_at TEXT,
    updated_at TEXT,
    completed_at TEXT,
    FOREIGN KEY (transcript_ref) REFERENCES transcripts(ref)
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at);

CREATE TABLE IF NOT EXISTS job_stages (
    job_id TEXT NOT NULL,
    idx INTEGER NOT NULL,
    stage TEXT NOT NULL,
    status TEXT DEFAULT 'PENDING',
    attempts INTEGER DEFAULT 0,
    last_error_code TEXT,
    last_error TEXT,
    cache_key TEXT,
    started_at TEXT,
    completed_at TEXT,
    PRIMARY KEY (job_id, stage),
    FOREIGN KEY (job_id) REFERENCES jobs(id)
);

CREATE TABLE IF NOT EXISTS attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    stage TEXT NOT NULL,
    attempt_no INTEGER NOT NULL,
    started_at TEXT,
    ended_at TEXT,
    outcome TEXT,
    error_code TEXT,
    error_message TEXT,
    retryable INTEGER DEFAULT 0,
    FOREIGN KEY (job_id) REFERENCES jobs(id)
);

CREATE INDEX IF NOT EXISTS idx_attempts_job_stage ON attempts(job_id, stage);

CREATE TABLE IF NOT EXISTS job_artifacts (
    job_id TEXT NOT NULL,
    stage TEXT NOT NULL,
    cache_key TEXT NOT NULL,
    artifact TEXT NOT NULL,
    created_at TEXT,
    PRIMARY KEY (job_id, stage),
    FOREIGN KEY (job_id) REFERENCES jobs(id)
);

CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    stage TEXT,
    artifact TEXT NOT NULL,
    created_at REAL NOT NULL
);
"""


class Database:
    """SQLite database wrapper for CourseGen."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._lock = threading.RLock()
        self._ensure_dirs()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(_CREATE_TABLES)
            # Set schema version
            cur.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )
            self.conn.commit()

    def close(self):
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job(**dict(row))

    @staticmethod
    def _row_to_stage(row: sqlite3.Row) -> StageRecord:
        return StageRecord(**dict(row))

    def _fetchone(self, sql: str, params: tuple = ()):
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()):
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
            return cur

    # ── Job CRUD ──────────────────────────────────────────────────────

    def create_job(self, transcript_ref: str, transcript_text: str,
                   course_config: dict) -> Job:
        """Insert a QUEUED job plus one PENDING record per stage."""
        job_id = str(uuid.uuid4())
        now = self._now()
        job = Job(
            id=job_id,
            transcript_ref=transcript_ref,
            course_config=json.dumps(course_config, sort_keys=True),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self.conn.execute(
                "INSERT OR IGNORE INTO transcripts (ref, text, created_at) VALUES (?, ?, ?)",
                (transcript_ref, transcript_text, now),
            )
            self.conn.execute(
                """INSERT INTO jobs
                   (id, transcript_ref, course_config, status, progress_pct,
                    cancel_requested, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (job.id, job.transcript_ref, job.course_config, job.status,
                 job.progress_pct, job.cancel_requested, job.created_at, job.updated_at),
            )
            self.conn.executemany(
                "INSERT INTO job_stages (job_id, idx, stage, status) VALUES (?, ?, ?, ?)",
                [(job_id, idx, stage, StageStatus.PENDING)
                 for idx, stage in enumerate(STAGE_SEQUENCE)],
            )
            self.conn.commit()
        return job

    def get_job(self, job_id: str) -> Job | None:
        row = self._fetchone("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return self._row_to_job(row) if row else None

    def get_all_jobs(self) -> list[Job]:
        rows = self._fetchall("SELECT * FROM jobs ORDER BY created_at DESC, rowid DESC")
        return [self._row_to_job(r) for r in rows]

    def get_jobs_by_status(self, status: str) -> list[Job]:
        """Oldest first, so re-enqueueing keeps FIFO admission order."""
        rows = self._fetchall(
            "SELECT * FROM jobs WHERE status = ? ORDER BY created_at ASC, rowid ASC",
            (status,),
        )
        return [self._row_to_job(r) for r in rows]

    def get_queued_jobs(self) -> list[Job]:
        return self.get_jobs_by_status(JobStatus.QUEUED)

    def get_transcript(self, ref: str) -> str | None:
        row = self._fetchone("SELECT text FROM transcripts WHERE ref = ?", (ref,))
        return row['text'] if row else None

    def update_job(self, job_id: str, **kwargs):
        kwargs['updated_at'] = self._now()
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [job_id]
        self._write(f"UPDATE jobs SET {sets} WHERE id = ?", tuple(vals))

    def update_job_status(self, job_id: str, status: str, stage: str | None = None,
                          progress_pct: int | None = None, **extra):
        fields = {'status': status}
        if stage is not None:
            fields['stage'] = stage
        if progress_pct is not None:
            fields['progress_pct'] = progress_pct
        if status == JobStatus.RUNNING:
            with self._lock:
                job = self.get_job(job_id)
                if job and not job.started_at:
                    fields['started_at'] = self._now()
                fields.update(extra)
                self.update_job(job_id, **fields)
            return
        if status in TERMINAL_STATUSES:
            fields['completed_at'] = self._now()
        fields.update(extra)
        self.update_job(job_id, **fields)

    def claim_job(self, job_id: str) -> bool:
        """
        Move a job from QUEUED to RUNNING. Returns False, leaving the row
        untouched, when the job is no longer QUEUED (e.g. cancelled meanwhile).
        """
        now = self._now()
        cur = self._write(
            "UPDATE jobs SET status = ?, started_at = COALESCE(started_at, ?), updated_at = ? "
            "WHERE id = ? AND status = ?",
            (JobStatus.RUNNING, now, now, job_id, JobStatus.QUEUED),
        )
        return cur.rowcount == 1

    def request_cancel(self, job_id: str) -> Job | None:
        """
        Atomically flag a job for cancellation.
        QUEUED jobs go straight to CANCELLED; RUNNING jobs only get the flag and
        are finalised by their worker. Returns the updated job, or None when the
        job is unknown or already terminal.
        """
        with self._lock:
            job = self.get_job(job_id)
            if job is None or job.status in TERMINAL_STATUSES:
                return None
            if job.status == JobStatus.QUEUED:
                self.update_job_status(job_id, JobStatus.CANCELLED, cancel_requested=1)
            else:
                self.update_job(job_id, cancel_requested=1)
            return self.get_job(job_id)

    def recover_interrupted(self) -> list[str]:
        """
        Bring jobs left behind by a crashed process back to a runnable state.
        RUNNING jobs become QUEUED (or CANCELLED if a cancel was pending) and
        their RUNNING stage records go back to PENDING. Returns the ids requeued.
        """
        requeued = []
        with self._lock:
            for job in self.get_jobs_by_status(JobStatus.RUNNING):
                self.conn.execute(
                    "UPDATE job_stages SET status = ? WHERE job_id = ? AND status IN (?, ?)",
                    (StageStatus.PENDING, job.id,
                     StageStatus.RUNNING, StageStatus.FAILED_RETRYABLE),
                )
                self.conn.execute(
                    "UPDATE attempts SET ended_at = ?, outcome = ?, error_message = ? "
                    "WHERE job_id = ? AND ended_at IS NULL",
                    (self._now(), "FAILED", "Interrupted by process restart", job.id),
                )
                self.conn.commit()
                if job.cancel_requested:
                    self.update_job_status(job.id, JobStatus.CANCELLED)
                else:
                    self.update_job(job.id, status=JobStatus.QUEUED)
                    requeued.append(job.id)
        return requeued

    def delete_job(self, job_id: str):
        with self._lock:
            for table in ("attempts", "job_artifacts", "job_stages"):
                self.conn.execute(f"DELETE FROM {table} WHERE job_id = ?", (job_id,))
            self.conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            self.conn.commit()

    # ── Stage CRUD ────────────────────────────────────────────────────

    def get_stages(self, job_id: str) -> list[StageRecord]:
        rows = self._fetchall(
            "SELECT * FROM job_stages WHERE job_id = ? ORDER BY idx", (job_id,),
        )
        return [self._row_to_stage(r) for r in rows]

    def get_stage(self, job_id: str, stage: str) -> StageRecord | None:
        row = self._fetchone(
            "SELECT * FROM job_stages WHERE job_id = ? AND stage = ?", (job_id, stage),
        )
        return self._row_to_stage(row) if row else None

    def update_stage(self, job_id: str, stage: str, **kwargs):
        if kwargs.get('status') == StageStatus.RUNNING and 'started_at' not in kwargs:
            kwargs['started_at'] = self._now()
        if kwargs.get('status') in (StageStatus.SUCCEEDED, StageStatus.FAILED_FATAL):
            kwargs.setdefault('completed_at', self._now())
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [job_id, stage]
        self._write(
            f"UPDATE job_stages SET {sets} WHERE job_id = ? AND stage = ?", tuple(vals),
        )

    # ── Attempts ──────────────────────────────────────────────────────

    def start_attempt(self, job_id: str, stage: str, attempt_no: int) -> Attempt:
        """Open a new Attempt row and bump the stage's attempt counter."""
        now = self._now()
        with self._lock:
            cur = self.conn.execute(
                "INSERT INTO attempts (job_id, stage, attempt_no, started_at) VALUES (?, ?, ?, ?)",
                (job_id, stage, attempt_no, now),
            )
            self.conn.execute(
                "UPDATE job_stages SET attempts = ? WHERE job_id = ? AND stage = ?",
                (attempt_no, job_id, stage),
            )
            self.conn.commit()
        return Attempt(id=cur.lastrowid, job_id=job_id, stage=stage,
                       attempt_no=attempt_no, started_at=now)

    def finish_attempt(self, attempt_id: int, outcome: str,
                       error_code: str | None = None,
                       error_message: str | None = None,
                       retryable: bool = False):
        self._write(
            """UPDATE attempts SET ended_at = ?, outcome = ?, error_code = ?,
               error_message = ?, retryable = ? WHERE id = ?""",
            (self._now(), outcome, error_code, error_message,
             1 if retryable else 0, attempt_id),
        )

    def get_attempts(self, job_id: str, stage: str | None = None) -> list[Attempt]:
        if stage is None:
            rows = self._fetchall(
                "SELECT * FROM attempts WHERE job_id = ? ORDER BY id", (job_id,),
            )
        else:
            rows = self._fetchall(
                "SELECT * FROM attempts WHERE job_id = ? AND stage = ? ORDER BY id",
                (job_id, stage),
            )
        return [Attempt(**dict(r)) for r in rows]

    # ── Job artifacts ─────────────────────────────────────────────────

    def save_artifact(self, job_id: str, stage: str, cache_key: str, artifact):
        self._write(
            """INSERT OR REPLACE INTO job_artifacts
               (job_id, stage, cache_key, artifact, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (job_id, stage, cache_key, json.dumps(artifact), self._now()),
        )

    def get_artifacts(self, job_id: str) -> list[JobArtifact]:
        """Artifacts in stage order."""
        rows = self._fetchall(
            """SELECT a.* FROM job_artifacts a
               JOIN job_stages s ON s.job_id = a.job_id AND s.stage = a.stage
               WHERE a.job_id = ? ORDER BY s.idx""",
            (job_id,),
        )
        return [
            JobArtifact(job_id=r['job_id'], stage=r['stage'], cache_key=r['cache_key'],
                        artifact=json.loads(r['artifact']), created_at=r['created_at'])
            for r in rows
        ]

    # ── Artifact cache entries ────────────────────────────────────────

    def put_cache_entry(self, entry: CacheEntry) -> bool:
        """Insert-or-ignore: an existing entry is never overwritten."""
        cur = self._write(
            "INSERT OR IGNORE INTO cache_entries (key, stage, artifact, created_at) VALUES (?, ?, ?, ?)",
            (entry.key, entry.stage, json.dumps(entry.artifact), entry.created_at),
        )
        return cur.rowcount == 1

    def get_cache_entry(self, key: str) -> CacheEntry | None:
        row = self._fetchone("SELECT * FROM cache_entries WHERE key = ?", (key,))
        if not row:
            return None
        return CacheEntry(key=row['key'], stage=row['stage'],
                          artifact=json.loads(row['artifact']),
                          created_at=row['created_at'])

    def delete_cache_entry(self, key: str) -> bool:
        cur = self._write("DELETE FROM cache_entries WHERE key = ?", (key,))
        return cur.rowcount > 0

    def delete_cache_entries_before(self, cutoff: float) -> int:
        cur = self._write("DELETE FROM cache_entries WHERE created_at < ?", (cutoff,))
        return cur.rowcount

    def count_cache_entries(self) -> int:
        row = self._fetchone("SELECT COUNT(*) AS n FROM cache_entries")
        return row['n']
