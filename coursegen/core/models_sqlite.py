"""
SQLite data models (plain dataclasses) for CourseGen.
"""

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class CourseConfig:
    target_audience: str
    max_lessons: int
    title: str = ""
    providers: dict = field(default_factory=dict)   # capability -> provider name
    voice: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            'target_audience': self.target_audience,
            'max_lessons': self.max_lessons,
            'title': self.title,
            'providers': dict(self.providers),
            'voice': dict(self.voice),
        }


@dataclass
class Job:
    id: str                          # UUID
    transcript_ref: str              # sha256 of the canonical transcript
    course_config: str               # JSON, see CourseConfig
    status: str = "QUEUED"
    stage: Optional[str] = None
    progress_pct: int = 0
    cancel_requested: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


@dataclass
class StageRecord:
    job_id: str
    idx: int
    stage: str
    status: str = "PENDING"
    attempts: int = 0
    last_error_code: Optional[str] = None
    last_error: Optional[str] = None
    cache_key: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


@dataclass
class Attempt:
    job_id: str
    stage: str
    attempt_no: int
    started_at: str
    id: Optional[int] = None
    ended_at: Optional[str] = None
    outcome: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retryable: int = 0


@dataclass
class JobArtifact:
    job_id: str
    stage: str
    cache_key: str
    artifact: Any
    created_at: Optional[str] = None


@dataclass
class CacheEntry:
    key: str
    stage: Optional[str]
    artifact: Any
    created_at: float                # epoch seconds, compared against the TTL


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    stage: Optional[str]
    percentage: int
    message: str
    timestamp: str
    status: Optional[str] = None     # set on the final event of a job


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only view of a job handed to callers outside the orchestrator."""
    job_id: str
    status: str
    current_stage: Optional[str]
    percentage: int
    cancel_requested: bool
    last_error: Optional[str]
    error_code: Optional[str]
    artifacts: tuple = ()            # (stage, artifact) pairs in stage order
    stages: tuple = ()               # StageRecord per stage
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    def artifact(self, stage: str):
        for name, value in self.artifacts:
            if name == stage:
                return value
        return None

    def stage_record(self, stage: str) -> Optional[StageRecord]:
        for record in self.stages:
            if record.stage == stage:
                return record
        return None
