"""
Shared constants for CourseGen.
Single source of truth, imported by every other module.
"""

import os
import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "CourseGen"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_DATA_DIR = pathlib.Path(os.environ.get("COURSEGEN_HOME", HOME / ".coursegen"))
DEFAULT_OUTPUT_ROOT = APP_DATA_DIR / "courses"
LOG_DIR = APP_DATA_DIR / "logs"
DB_PATH = APP_DATA_DIR / "coursegen.db"
CONFIG_PATH = APP_DATA_DIR / "config.json"

# ── Job status values ─────────────────────────────────────────────────
class JobStatus:
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}

# ── Job stage values (ordered) ────────────────────────────────────────
class JobStage:
    ANALYZE = "ANALYZE"
    GENERATE_CONTENT = "GENERATE_CONTENT"
    GENERATE_MEDIA = "GENERATE_MEDIA"
    ASSEMBLE = "ASSEMBLE"

STAGE_SEQUENCE = (
    JobStage.ANALYZE,
    JobStage.GENERATE_CONTENT,
    JobStage.GENERATE_MEDIA,
    JobStage.ASSEMBLE,
)

# Bumping this invalidates every previously cached artifact
STAGE_VERSION = 1

# ── Stage status ──────────────────────────────────────────────────────
class StageStatus:
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED_RETRYABLE = "FAILED_RETRYABLE"
    FAILED_FATAL = "FAILED_FATAL"

# ── Attempt outcome ───────────────────────────────────────────────────
class AttemptOutcome:
    SUCCEEDED = "SUCCEEDED"
    CACHE_HIT = "CACHE_HIT"
    FAILED = "FAILED"

# ── Provider capabilities ─────────────────────────────────────────────
class Capability:
    CONTENT = "content"
    VOICE = "voice"
    MEDIA = "media"

ALL_CAPABILITIES = (Capability.CONTENT, Capability.VOICE, Capability.MEDIA)

class RateUnit:
    CALLS = "calls"
    CHARS = "chars"

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    VALIDATION = "ERR_VALIDATION"
    MALFORMED_RESPONSE = "ERR_MALFORMED_RESPONSE"
    CANCELLED = "ERR_CANCELLED"
    UNEXPECTED = "ERR_UNEXPECTED"

    # Retryable
    PROVIDER_TRANSIENT = "ERR_PROVIDER_TRANSIENT"
    RATE_LIMITED = "ERR_RATE_LIMITED"
    QUOTA_EXCEEDED = "ERR_QUOTA_EXCEEDED"

    # Wrapper, takes its retryability from the cause
    CACHE_PRODUCER_FAILED = "ERR_CACHE_PRODUCER_FAILED"

RETRYABLE_ERRORS = {
    ErrorCode.PROVIDER_TRANSIENT,
    ErrorCode.RATE_LIMITED,
    ErrorCode.QUOTA_EXCEEDED,
}

# ── Orchestration defaults ────────────────────────────────────────────
DEFAULT_MAX_CONCURRENT = 3
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_SEC = 1.0
DEFAULT_BACKOFF_MAX_SEC = 60.0
DEFAULT_BACKOFF_JITTER = 0.1          # +/- 10% of the computed delay
DEFAULT_RATE_LIMITED_BACKOFF_SEC = 5.0
DEFAULT_QUOTA_RESET_SEC = 3600.0
DEFAULT_QUOTA_MAX_DEFERRALS = 2
DEFAULT_RATE_LIMIT_WAIT_SEC = 10.0

# Token bucket used when a provider entry carries no "rate" block
DEFAULT_RATE_CAPACITY = 60
DEFAULT_RATE_REFILL_PER_SEC = 1.0
DEFAULT_BUDGET_WINDOW_SEC = 60.0

# ── Artifact cache defaults ───────────────────────────────────────────
DEFAULT_CACHE_TTL_SEC = 7 * 24 * 3600
DEFAULT_CACHE_CAPACITY = 1000
DEFAULT_CACHE_WAIT_SEC = 0            # 0 = wait for the producer's own timeout

# ── Progress retention ───────────────────────────────────────────────
DEFAULT_PROGRESS_RETENTION = 1000   # finished jobs whose events stay in memory

# ── Submission validation ────────────────────────────────────────────
MIN_TRANSCRIPT_CHARS = 200
MAX_LESSONS_LIMIT = 20
DEFAULT_MAX_LESSONS = 5

# ── Progress mapping (job-level % band per stage) ─────────────────────
PROGRESS_BANDS = {
    JobStage.ANALYZE: (0, 20),
    JobStage.GENERATE_CONTENT: (20, 55),
    JobStage.GENERATE_MEDIA: (55, 90),
    JobStage.ASSEMBLE: (90, 100),
}

# ── HTTP providers ────────────────────────────────────────────────────
HTTP_DEFAULT_TIMEOUT_SEC = 120

# ── Misc ──────────────────────────────────────────────────────────────
MAX_ERROR_MESSAGE_LEN = 2000

# Characters forbidden in folder names
UNSAFE_FILENAME_CHARS = r'[<>:"/\\|?*\x00-\x1f]'
MAX_FOLDER_NAME_LEN = 120
