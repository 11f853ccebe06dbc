"""
Application configuration manager.
Stores settings in a JSON file under the app data directory.
"""

import json
import logging
from pathlib import Path

from coursegen.core.constants import (
    CONFIG_PATH, DB_PATH, DEFAULT_OUTPUT_ROOT, Capability,
    DEFAULT_MAX_CONCURRENT, DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_BACKOFF_BASE_SEC, DEFAULT_BACKOFF_MAX_SEC, DEFAULT_BACKOFF_JITTER,
    DEFAULT_RATE_LIMITED_BACKOFF_SEC, DEFAULT_QUOTA_RESET_SEC,
    DEFAULT_QUOTA_MAX_DEFERRALS, DEFAULT_RATE_LIMIT_WAIT_SEC,
    DEFAULT_CACHE_TTL_SEC, DEFAULT_CACHE_CAPACITY, DEFAULT_CACHE_WAIT_SEC,
    DEFAULT_PROGRESS_RETENTION,
    MIN_TRANSCRIPT_CHARS, MAX_LESSONS_LIMIT,
)

logger = logging.getLogger(__name__)

# Validation bounds: key -> (type, min, max, default)
_BOUNDS = {
    'max_concurrent': (int, 1, 32, DEFAULT_MAX_CONCURRENT),
    'retry_attempts': (int, 0, 10, DEFAULT_RETRY_ATTEMPTS),
    'backoff_base_sec': (float, 0.0, 300.0, DEFAULT_BACKOFF_BASE_SEC),
    'backoff_max_sec': (float, 0.0, 3600.0, DEFAULT_BACKOFF_MAX_SEC),
    'backoff_jitter': (float, 0.0, 1.0, DEFAULT_BACKOFF_JITTER),
    'rate_limited_backoff_sec': (float, 0.0, 3600.0, DEFAULT_RATE_LIMITED_BACKOFF_SEC),
    'quota_reset_sec': (float, 0.0, 31 * 24 * 3600.0, DEFAULT_QUOTA_RESET_SEC),
    'quota_max_deferrals': (int, 0, 20, DEFAULT_QUOTA_MAX_DEFERRALS),
    'rate_limit_wait_sec': (float, 0.0, 600.0, DEFAULT_RATE_LIMIT_WAIT_SEC),
    'cache_ttl_sec': (int, 0, 365 * 24 * 3600, DEFAULT_CACHE_TTL_SEC),
    'cache_capacity': (int, 1, 1_000_000, DEFAULT_CACHE_CAPACITY),
    'cache_wait_sec': (float, 0.0, 24 * 3600.0, DEFAULT_CACHE_WAIT_SEC),
    'progress_retention': (int, 1, 1_000_000, DEFAULT_PROGRESS_RETENTION),
    'min_transcript_chars': (int, 1, 1_000_000, MIN_TRANSCRIPT_CHARS),
    'max_lessons_limit': (int, 1, 200, MAX_LESSONS_LIMIT),
}

_DEFAULTS = {
    'output_root': str(DEFAULT_OUTPUT_ROOT),
    'db_path': str(DB_PATH),
    # Named provider instances. "kind" picks the client variant.
    'providers': {
        'local-content': {'kind': 'local', 'capability': Capability.CONTENT},
        'local-voice': {'kind': 'local', 'capability': Capability.VOICE},
        'local-media': {'kind': 'local', 'capability': Capability.MEDIA},
    },
    'default_providers': {
        Capability.CONTENT: 'local-content',
        Capability.VOICE: 'local-voice',
        Capability.MEDIA: 'local-media',
    },
}
_DEFAULTS.update({key: bounds[3] for key, bounds in _BOUNDS.items()})


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()

    @classmethod
    def from_dict(cls, values: dict) -> "AppConfig":
        """In-memory config (never written to disk). Used by tests and embedding."""
        config = cls.__new__(cls)
        config.path = None
        config._data = dict(_DEFAULTS)
        for key, value in values.items():
            config._data[key] = config._validate(key, value)
        return config

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except Exception as e:
                logger.warning("Failed to load config: %s", e)

    def save(self):
        """Persist config to disk."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _BOUNDS:
            kind, low, high, default = _BOUNDS[key]
            try:
                value = kind(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return default
            return max(low, min(high, value))

        if key in ('providers', 'default_providers'):
            if not isinstance(value, dict):
                logger.warning("Invalid %s %r, using default", key, value)
                return dict(_DEFAULTS[key])
            if key == 'default_providers':
                return dict(value)
            providers = {}
            for name, entry in value.items():
                if not isinstance(entry, dict) or not entry.get('kind') or not entry.get('capability'):
                    logger.warning("Ignoring provider %r: needs 'kind' and 'capability'", name)
                    continue
                providers[name] = dict(entry)
            return providers

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    # ── Typed accessors ───────────────────────────────────────────────

    @property
    def output_root(self) -> Path:
        return Path(self._data.get('output_root', str(DEFAULT_OUTPUT_ROOT)))

    @property
    def db_path(self) -> Path:
        return Path(self._data.get('db_path', str(DB_PATH)))

    @property
    def max_concurrent(self) -> int:
        return self._data['max_concurrent']

    @property
    def retry_attempts(self) -> int:
        return self._data['retry_attempts']

    @property
    def providers(self) -> dict:
        return self._data['providers']

    @property
    def default_providers(self) -> dict:
        return self._data['default_providers']

    def provider_settings(self, name: str) -> dict:
        return self.providers.get(name, {})
