"""ElevenLabs text-to-speech client.

The API key is read from ELEVENLABS_API_KEY unless passed explicitly and is
never logged.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Mapping

import requests

from domain.timecard import (
    SPEECH_CONFIG_CODE,
    SpeechSynthesisError,
    TimecardValidationError,
)

LOGGER = logging.getLogger("render_timecard_video.speech")

DEFAULT_BASE_URL = "https://api.elevenlabs.io"
DEFAULT_VOICE_ID = "bEO1KL2a6EuyUqmMnd8o"
DEFAULT_MODEL_ID = "eleven_multilingual_v2"
DEFAULT_STABILITY = 0.5
DEFAULT_SIMILARITY_BOOST = 0.75
DEFAULT_TIMEOUT_SECONDS = 30.0
PLACEHOLDER_API_KEY = "YOUR_ELEVENLABS_API_KEY_HERE"


@dataclass(frozen=True)
class VoiceSettings:
    stability: float = DEFAULT_STABILITY
    similarity_boost: float = DEFAULT_SIMILARITY_BOOST


@dataclass(frozen=True)
class SpeechConfig:
    """Validated ElevenLabs request settings."""

    api_key: str
    voice_id: str = DEFAULT_VOICE_ID
    model_id: str = DEFAULT_MODEL_ID
    base_url: str = DEFAULT_BASE_URL
    voice_settings: VoiceSettings = VoiceSettings()
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if not self.api_key or self.api_key == PLACEHOLDER_API_KEY:
            raise TimecardValidationError(
                SPEECH_CONFIG_CODE,
                "missing ElevenLabs API key; set ELEVENLABS_API_KEY",
            )
        if not self.voice_id.strip() or not self.model_id.strip():
            raise TimecardValidationError(
                SPEECH_CONFIG_CODE, "voice_id and model_id must be non-empty"
            )
        if self.timeout_seconds <= 0:
            raise TimecardValidationError(
                SPEECH_CONFIG_CODE, "timeout_seconds must be positive"
            )


def _env(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name)
    if value is None or value == "":
        return None
    return value


def load_speech_config(
    *,
    api_key: str | None = None,
    voice_id: str | None = None,
    model_id: str | None = None,
    timeout_seconds: float | None = None,
    environ: Mapping[str, str] | None = None,
) -> SpeechConfig:
    """Build a SpeechConfig from explicit values, then environment variables."""
    environ = os.environ if environ is None else environ
    return SpeechConfig(
        api_key=api_key or _env(environ, "ELEVENLABS_API_KEY") or "",
        voice_id=voice_id or _env(environ, "ELEVENLABS_VOICE_ID") or DEFAULT_VOICE_ID,
        model_id=model_id or _env(environ, "ELEVENLABS_MODEL_ID") or DEFAULT_MODEL_ID,
        base_url=_env(environ, "ELEVENLABS_BASE_URL") or DEFAULT_BASE_URL,
        timeout_seconds=timeout_seconds or DEFAULT_TIMEOUT_SECONDS,
    )


def extract_error_message(response: requests.Response) -> str:
    """Return the service's detail message, or a status-based fallback."""
    fallback = f"API Error: {response.status_code}"
    try:
        payload = response.json()
    except ValueError:
        return fallback
    if not isinstance(payload, dict):
        return fallback
    detail = payload.get("detail")
    if isinstance(detail, dict) and detail.get("message"):
        return str(detail["message"])
    if isinstance(detail, str) and detail:
        return detail
    return fallback


class SpeechClient:
    """Synthesises speech audio (MP3 bytes) for a single line of text."""

    def __init__(
        self, config: SpeechConfig, session: requests.Session | None = None
    ) -> None:
        self.config = config
        self.session = session if session is not None else requests.Session()

    def build_payload(self, text: str) -> dict[str, object]:
        return {
            "text": text,
            "model_id": self.config.model_id,
            "voice_settings": {
                "stability": self.config.voice_settings.stability,
                "similarity_boost": self.config.voice_settings.similarity_boost,
            },
        }

    def synthesize(self, text: str) -> bytes:
        """Return compressed audio for text or raise SpeechSynthesisError."""
        url = f"{self.config.base_url}/v1/text-to-speech/{self.config.voice_id}"
        headers = {
            "Accept": "audio/mpeg",
            "Content-Type": "application/json",
            "xi-api-key": self.config.api_key,
        }
        LOGGER.info(
            "render_timecard_video.speech.request: voice=%s model=%s chars=%d",
            self.config.voice_id,
            self.config.model_id,
            len(text),
        )
        try:
            response = self.session.post(
                url,
                headers=headers,
                json=self.build_payload(text),
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise SpeechSynthesisError(f"speech request failed: {exc}") from exc

        if not response.ok:
            raise SpeechSynthesisError(
                extract_error_message(response), status_code=response.status_code
            )
        audio_bytes = response.content
        if not audio_bytes:
            raise SpeechSynthesisError(
                "speech service returned no audio", status_code=response.status_code
            )
        return audio_bytes
