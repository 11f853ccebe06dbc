"""
Provider registry: named client instances, built from configuration.

Config entries look like::

    "providers": {
        "openai-content": {"kind": "http", "capability": "content",
                           "endpoint": "https://...", "api_key_env": "OPENAI_KEY",
                           "rate": {"capacity": 60, "refill_per_sec": 1}},
        "local-voice": {"kind": "local", "capability": "voice"}
    }

The orchestrator resolves clients by (name, capability) only; it never
branches on a provider's name or kind.
"""

import logging
import threading

from coursegen.core.constants import Capability, HTTP_DEFAULT_TIMEOUT_SEC
from coursegen.providers.base import ContentProvider, MediaProvider, VoiceProvider
from coursegen.providers.http_json import (
    HttpContentProvider, HttpMediaProvider, HttpVoiceProvider,
)
from coursegen.providers.local import (
    LocalContentProvider, LocalMediaProvider, LocalVoiceProvider,
)

logger = logging.getLogger(__name__)

_PROTOCOLS = {
    Capability.CONTENT: ContentProvider,
    Capability.VOICE: VoiceProvider,
    Capability.MEDIA: MediaProvider,
}


def _local(capability: str, name: str, entry: dict):
    cls = {
        Capability.CONTENT: LocalContentProvider,
        Capability.VOICE: LocalVoiceProvider,
        Capability.MEDIA: LocalMediaProvider,
    }[capability]
    return cls(name)


def _http(capability: str, name: str, entry: dict):
    cls = {
        Capability.CONTENT: HttpContentProvider,
        Capability.VOICE: HttpVoiceProvider,
        Capability.MEDIA: HttpMediaProvider,
    }[capability]
    return cls(name, entry.get('endpoint'), entry.get('api_key_env'),
               float(entry.get('timeout_sec', HTTP_DEFAULT_TIMEOUT_SEC)))


PROVIDER_KINDS = {
    'local': _local,
    'http': _http,
}


class ProviderRegistry:

    def __init__(self):
        self._clients: dict[str, tuple[str, object]] = {}
        self._lock = threading.Lock()

    def register(self, name: str, capability: str, client):
        protocol = _PROTOCOLS.get(capability)
        if protocol is None:
            raise ValueError(f"Unknown capability {capability!r}")
        if not isinstance(client, protocol):
            raise TypeError(f"{type(client).__name__} does not implement {protocol.__name__}")
        with self._lock:
            self._clients[name] = (capability, client)

    def get(self, name: str, capability: str):
        with self._lock:
            entry = self._clients.get(name)
        if entry is None:
            raise KeyError(f"Provider {name!r} is not registered")
        if entry[0] != capability:
            raise KeyError(f"Provider {name!r} is a {entry[0]} provider, not {capability}")
        return entry[1]

    def capability_of(self, name: str) -> str | None:
        with self._lock:
            entry = self._clients.get(name)
        return entry[0] if entry else None

    def names(self, capability: str | None = None) -> list[str]:
        with self._lock:
            return sorted(n for n, (cap, _) in self._clients.items()
                          if capability is None or cap == capability)

    @classmethod
    def from_config(cls, config) -> "ProviderRegistry":
        registry = cls()
        for name, entry in config.providers.items():
            factory = PROVIDER_KINDS.get(entry['kind'])
            if factory is None:
                logger.warning("Skipping provider %s: unknown kind %r", name, entry['kind'])
                continue
            capability = entry['capability']
            if capability not in _PROTOCOLS:
                logger.warning("Skipping provider %s: unknown capability %r", name, capability)
                continue
            registry.register(name, capability, factory(capability, name, entry))
        return registry
