"""
Security utilities for CourseGen.
- Path traversal protection
- Folder name sanitization
- API key lookup (environment only, never logged)
"""

import os
import re
import pathlib
import logging

from coursegen.core.constants import (
    UNSAFE_FILENAME_CHARS,
    MAX_FOLDER_NAME_LEN,
)

logger = logging.getLogger(__name__)


# ── Filename / path safety ────────────────────────────────────────────

def sanitize_title(title: str) -> str:
    """Sanitize a course title for use as a folder name."""
    if not title:
        return ""
    # Replace unsafe characters with underscore
    safe = re.sub(UNSAFE_FILENAME_CHARS, '_', title)
    # Remove path traversal sequences
    safe = safe.replace('..', '')
    # Collapse multiple underscores/spaces
    safe = re.sub(r'[_\s]+', ' ', safe).strip()
    # Truncate
    if len(safe) > MAX_FOLDER_NAME_LEN:
        safe = safe[:MAX_FOLDER_NAME_LEN].rstrip()
    # Remove leading/trailing dots (hidden folders)
    safe = safe.strip('.')
    return safe if safe else ""


def safe_output_path(output_root: pathlib.Path, title: str, suffix: str) -> pathlib.Path:
    """
    Build a safe output folder path ``<root>/<title>-<suffix>``. Enforces that
    realpath(result) stays under realpath(output_root); falls back to
    'course-<suffix>' otherwise.
    """
    sanitized = sanitize_title(title)
    folder = f"{sanitized}-{suffix}" if sanitized else f"course-{suffix}"

    candidate = output_root / folder
    try:
        real_root = output_root.resolve(strict=False)
        real_candidate = candidate.resolve(strict=False)
        if real_root not in real_candidate.parents:
            raise ValueError("Path traversal detected")
    except (OSError, ValueError):
        candidate = output_root / f"course-{suffix}"

    return candidate


# ── Credentials ───────────────────────────────────────────────────────

def get_api_key(env_var: str) -> str | None:
    """Read a provider API key from the environment."""
    value = os.environ.get(env_var, "").strip()
    if not value:
        logger.warning("API key variable %s is not set", env_var)
        return None
    return value
