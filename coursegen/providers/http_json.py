"""
JSON-over-HTTP provider clients.

One POST per call. HTTP failures are translated into the orchestrator's
error taxonomy here; retrying is left entirely to the stage RetryPolicy.

    timeout / connection error / 5xx  -> TransientProviderError
    429                               -> RateLimited (honours Retry-After)
    402                               -> QuotaExceededError
    other 4xx                         -> ValidationError
    unparseable body / missing field  -> MalformedResponseError
"""

import json
import logging

import requests

from coursegen.core.constants import HTTP_DEFAULT_TIMEOUT_SEC
from coursegen.core.error_codes import (
    MalformedResponseError, QuotaExceededError, RateLimited,
    TransientProviderError, ValidationError,
)
from coursegen.core.security_utils import get_api_key

logger = logging.getLogger(__name__)


def _retry_after(resp: requests.Response) -> float | None:
    value = resp.headers.get('Retry-After')
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class HttpJsonClient:
    """Shared request/response handling for the HTTP capability clients."""

    def __init__(self, name: str, endpoint: str, api_key_env: str | None = None,
                 timeout_sec: float = HTTP_DEFAULT_TIMEOUT_SEC,
                 session: requests.Session | None = None):
        if not endpoint:
            raise ValueError(f"Provider {name} needs an 'endpoint'")
        self.name = name
        self.endpoint = endpoint
        self.api_key_env = api_key_env
        self.timeout_sec = timeout_sec
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key_env:
            api_key = get_api_key(self.api_key_env)
            if not api_key:
                raise ValidationError(
                    f"API key for {self.name} not found (set ${self.api_key_env})"
                )
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def post(self, payload: dict, result_field: str) -> str:
        try:
            resp = self.session.post(
                self.endpoint,
                headers=self._headers(),
                data=json.dumps(payload),
                timeout=self.timeout_sec,
            )
        except requests.exceptions.Timeout:
            raise TransientProviderError(f"{self.name} request timed out", provider=self.name)
        except requests.exceptions.ConnectionError:
            raise TransientProviderError(f"Network error connecting to {self.name}",
                                         provider=self.name)
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(f"{self.name} request failed: {e}", provider=self.name)

        if resp.status_code == 429:
            retry_after = _retry_after(resp)
            logger.warning("%s rate limited (429), retry after %s", self.name, retry_after)
            raise RateLimited(f"{self.name} returned 429", provider=self.name,
                              retry_after=retry_after)

        if resp.status_code == 402:
            raise QuotaExceededError(f"{self.name} quota exhausted (402)", provider=self.name,
                                     reset_after=_retry_after(resp))

        if resp.status_code >= 500:
            raise TransientProviderError(f"{self.name} returned {resp.status_code}",
                                         provider=self.name)

        if resp.status_code != 200:
            # Sanitize error message (never echo headers, they carry the key)
            error_body = resp.text[:300] if resp.text else "No response body"
            raise ValidationError(f"{self.name} rejected request ({resp.status_code}): {error_body}")

        try:
            body = resp.json()
        except ValueError:
            raise MalformedResponseError(f"Failed to parse {self.name} response JSON",
                                         provider=self.name)

        value = body.get(result_field) if isinstance(body, dict) else None
        if not isinstance(value, str) or not value.strip():
            raise MalformedResponseError(f"{self.name} response has no '{result_field}'",
                                         provider=self.name)
        return value


class HttpContentProvider(HttpJsonClient):

    def generate(self, prompt: str, options: dict) -> str:
        # transcript is already embedded in the prompt
        options = {k: v for k, v in options.items() if k != 'transcript'}
        return self.post({"prompt": prompt, "options": options}, "text")


class HttpVoiceProvider(HttpJsonClient):

    def synthesize(self, text: str, voice_config: dict) -> str:
        return self.post({"text": text, "voice": voice_config}, "audio_ref")


class HttpMediaProvider(HttpJsonClient):

    def render(self, slide_spec: dict, audio_ref: str) -> str:
        return self.post({"slide": slide_spec, "audio_ref": audio_ref}, "video_ref")
