"""
Provider capability interfaces.

The orchestrator only ever talks to these protocols. Concrete clients
(local dry-run, HTTP) are interchangeable variants chosen by configuration.
Every method raises a ProviderError subclass on failure.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class ContentProvider(Protocol):
    """Language-model text generation."""

    def generate(self, prompt: str, options: dict) -> str: ...


@runtime_checkable
class VoiceProvider(Protocol):
    """Text-to-speech. Returns a reference to the produced audio."""

    def synthesize(self, text: str, voice_config: dict) -> str: ...


@runtime_checkable
class MediaProvider(Protocol):
    """Slide/video rendering. Returns a reference to the produced video."""

    def render(self, slide_spec: dict, audio_ref: str) -> str: ...
