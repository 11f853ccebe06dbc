"""
Deterministic fingerprints used as artifact cache keys.

Two stage runs are "identical" when their canonical inputs hash the same.
Canonical inputs are JSON with sorted keys and compact separators; the
transcript itself is canonicalised first so whitespace-only edits
(line endings, indentation, trailing spaces, blank-line runs) do not
defeat the cache while any change to the words does.
"""

import hashlib
import json
import re
import unicodedata

from coursegen.core.constants import STAGE_VERSION

_SPACE_RUN = re.compile(r'[ \t\f\v]+')
_BLANK_RUN = re.compile(r'\n{3,}')


def canonical_transcript(text: str) -> str:
    """Normalise a transcript for hashing and storage."""
    text = unicodedata.normalize('NFC', text or "")
    text = text.replace('\r\n', '\n').replace('\r', '\n')
    lines = [_SPACE_RUN.sub(' ', line).strip() for line in text.split('\n')]
    text = '\n'.join(lines)
    text = _BLANK_RUN.sub('\n\n', text)
    return text.strip()


def canonical_json(data) -> str:
    return json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":"))


def digest(data) -> str:
    """sha256 over the canonical JSON form of any JSON-serialisable value."""
    if isinstance(data, str):
        payload = data
    else:
        payload = canonical_json(data)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def transcript_ref(text: str) -> str:
    return digest(canonical_transcript(text))


def stage_key(stage: str, inputs: dict) -> str:
    """Cache key for one stage run."""
    return digest({"stage": stage, "version": STAGE_VERSION, "inputs": inputs})
