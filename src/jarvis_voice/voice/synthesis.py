"""Remote speech synthesis for the Jarvis voice session.

Provides:
- sanitize_for_speech: strips text that makes synthesized speech unstable
- GeminiSpeechClient: requests base64 PCM16 audio over httpx
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
import structlog

from jarvis_voice.errors.codes import ErrorCode
from jarvis_voice.utils.config import SynthesisConfig
from jarvis_voice.voice.errors import EmptyAudioPayloadError, SynthesisError
from jarvis_voice.voice.generation import raise_for_collaborator_status

logger = structlog.get_logger(__name__)

DEFAULT_ACKNOWLEDGMENT = "Command acknowledged."

_MARKDOWN_MARKERS = re.compile(r"[*_#~`>]")
_MARKDOWN_LINKS = re.compile(r"\[.*?\]\(.*?\)")
_EMOJI = re.compile(
    "["
    "\U0001F600-\U0001F64F"
    "\U0001F300-\U0001F5FF"
    "\U0001F680-\U0001F6FF"
    "\U0001F1E0-\U0001F1FF"
    "\u2600-\u26FF"
    "\u2700-\u27BF"
    "]"
)
_STRUCTURAL = re.compile(r"[{}|\[\]\\]")
_WHITESPACE = re.compile(r"\s+")


def sanitize_for_speech(text: str | None, fallback: str = DEFAULT_ACKNOWLEDGMENT) -> str:
    """Strip markdown, links, emoji and brackets, collapsing whitespace.

    Never raises and never returns an empty string: when nothing speakable
    is left, the acknowledgment phrase is returned instead.
    """
    if not text:
        return fallback
    cleaned = _MARKDOWN_MARKERS.sub("", str(text))
    cleaned = _MARKDOWN_LINKS.sub("", cleaned)
    cleaned = _EMOJI.sub("", cleaned)
    cleaned = _STRUCTURAL.sub(" ", cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned or fallback


class SpeechClient(Protocol):
    """The remote speech-synthesis service.

    Returns base64 PCM16 audio; raises SynthesisError (including
    EmptyAudioPayloadError) on failure.
    """

    async def synthesize(self, text: str) -> str: ...


@dataclass
class GeminiSpeechClient:
    """Speech client for the Gemini TTS generateContent endpoint."""

    api_key: str
    config: SynthesisConfig = field(default_factory=SynthesisConfig)
    transport: httpx.AsyncBaseTransport | None = None

    _client: httpx.AsyncClient | None = field(default=None, repr=False)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                headers={"x-goog-api-key": self.api_key},
                transport=self.transport,
            )
        return self._client

    async def synthesize(self, text: str) -> str:
        body: dict[str, Any] = {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {
                        "prebuiltVoiceConfig": {"voiceName": self.config.voice}
                    }
                },
            },
        }

        client = await self._get_client()
        try:
            response = await client.post(
                f"/models/{self.config.model}:generateContent", json=body
            )
        except httpx.TransportError as e:
            raise SynthesisError(
                f"Synthesis request failed: {e}",
                code=ErrorCode.NETWORK_ERROR,
                original_error=e,
            ) from e
        raise_for_collaborator_status(response, SynthesisError)

        data = response.json()
        candidate = (data.get("candidates") or [{}])[0]
        for part in (candidate.get("content") or {}).get("parts") or []:
            audio = (part.get("inlineData") or {}).get("data")
            if audio:
                return audio
        raise EmptyAudioPayloadError()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
