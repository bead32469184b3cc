"""Command dispatch to the text-generation service.

CommandDispatcher sends a user utterance plus a bounded window of recent
history, retrying 429/500/transport failures with exponential backoff.
GeminiGenerationClient speaks the generateContent REST protocol over httpx.
"""

from __future__ import annotations

from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import httpx
import structlog

from jarvis_voice.errors.codes import ErrorCode
from jarvis_voice.utils.config import GenerationConfig, RetryConfig
from jarvis_voice.voice.errors import CollaboratorError, GenerationError
from jarvis_voice.voice.history import ChatMessage, Role
from jarvis_voice.voice.recovery import RetryPolicy, with_retry

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GenerationResult:
    """Response text plus any citation URIs."""

    text: str
    sources: tuple[str, ...] = ()


class DispatchOutcome(Enum):
    """Classified result of a dispatch as seen by the turn controller."""

    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class DispatchReply:
    """Outcome of CommandDispatcher.submit(); never carries an exception."""

    outcome: DispatchOutcome
    result: GenerationResult | None = None
    code: ErrorCode | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == DispatchOutcome.SUCCESS


class GenerationClient(Protocol):
    """The remote text-generation service.

    history holds (role, content) pairs oldest first. Raises
    GenerationError (or an httpx error) on failure.
    """

    async def generate(
        self, utterance: str, history: Sequence[tuple[str, str]]
    ) -> GenerationResult: ...


def clean_sources(uris: Sequence[str | None]) -> tuple[str, ...]:
    """Drop empty and repeated URIs, keeping first-seen order."""
    seen: dict[str, None] = {}
    for uri in uris:
        if uri and uri.strip():
            seen.setdefault(uri.strip(), None)
    return tuple(seen)


def raise_for_collaborator_status(
    response: httpx.Response, error_cls: type[CollaboratorError]
) -> None:
    """Turn a non-2xx response into a classified collaborator error."""
    if response.is_success:
        return
    code = ErrorCode.from_status(response.status_code)
    raise error_cls(
        f"{response.request.url.path} returned {response.status_code}",
        code=code,
        status_code=response.status_code,
    )


@dataclass
class GeminiGenerationClient:
    """Generation client for the Gemini generateContent endpoint."""

    api_key: str
    config: GenerationConfig = field(default_factory=GenerationConfig)
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

    async def generate(
        self, utterance: str, history: Sequence[tuple[str, str]]
    ) -> GenerationResult:
        contents = [
            {"role": "user" if role == "user" else "model", "parts": [{"text": content}]}
            for role, content in history
        ]
        contents.append({"role": "user", "parts": [{"text": utterance}]})

        body: dict[str, Any] = {
            "contents": contents,
            "systemInstruction": {"parts": [{"text": self.config.system_instruction}]},
            "generationConfig": {"thinkingConfig": {"thinkingBudget": 0}},
        }
        if self.config.search_grounding:
            body["tools"] = [{"googleSearch": {}}]

        client = await self._get_client()
        try:
            response = await client.post(
                f"/models/{self.config.model}:generateContent", json=body
            )
        except httpx.TransportError as e:
            raise GenerationError(
                f"Generation request failed: {e}",
                code=ErrorCode.NETWORK_ERROR,
                original_error=e,
            ) from e
        raise_for_collaborator_status(response, GenerationError)

        data = response.json()
        candidate = (data.get("candidates") or [{}])[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if not part.get("thought"))
        chunks = (candidate.get("groundingMetadata") or {}).get("groundingChunks") or []
        sources = [(chunk.get("web") or {}).get("uri") for chunk in chunks]
        return GenerationResult(text=text.strip(), sources=clean_sources(sources))

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


@dataclass
class CommandDispatcher:
    """Sends one user turn to the generation service.

    Only the last history_window messages travel with the utterance.
    Transient failures are retried per the retry config; any other
    failure propagates after a single attempt.
    """

    client: GenerationClient
    retry: RetryConfig = field(default_factory=RetryConfig)
    history_window: int = 4
    empty_response_text: str = "Neural link unstable. Please repeat."
    sleep: Callable[[float], Coroutine[Any, Any, None]] | None = None

    @property
    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry.max_attempts,
            initial_delay_seconds=self.retry.initial_delay_seconds,
            backoff_factor=self.retry.backoff_factor,
            max_delay_seconds=self.retry.max_delay_seconds,
        )

    def recent_history(self, history: Sequence[ChatMessage]) -> list[tuple[str, str]]:
        if self.history_window <= 0:
            return []
        window = history[-self.history_window :]
        return [
            ("user" if m.role == Role.USER else "assistant", m.content) for m in window
        ]

    async def dispatch(
        self, utterance: str, recent_history: Sequence[ChatMessage] = ()
    ) -> GenerationResult:
        """Send the utterance and return the response text and sources."""
        history = self.recent_history(recent_history)
        logger.info("dispatch_started", history_size=len(history))
        logger.debug("dispatch_utterance", utterance=utterance)

        kwargs = {"sleep": self.sleep} if self.sleep is not None else {}
        result = await with_retry(
            lambda: self.client.generate(utterance, history),
            self.policy,
            failure_type="dispatch",
            **kwargs,
        )

        text = result.text.strip() if result.text else ""
        if not text:
            logger.warning("dispatch_empty_response")
            text = self.empty_response_text
        logger.info("dispatch_completed", text_length=len(text), sources=len(result.sources))
        return GenerationResult(text=text, sources=clean_sources(result.sources))

    async def submit(
        self, utterance: str, recent_history: Sequence[ChatMessage] = ()
    ) -> DispatchReply:
        """Dispatch and classify the outcome instead of raising."""
        try:
            result = await self.dispatch(utterance, recent_history)
        except CollaboratorError as e:
            logger.error(
                "dispatch_failed",
                code=e.code.value,
                status_code=e.status_code,
                error=str(e),
            )
            return DispatchReply(DispatchOutcome.FAILED, code=e.code)
        except httpx.HTTPError as e:
            logger.error("dispatch_failed", code=ErrorCode.NETWORK_ERROR.value, error=str(e))
            return DispatchReply(DispatchOutcome.FAILED, code=ErrorCode.NETWORK_ERROR)
        except Exception as e:
            logger.exception("dispatch_failed_unexpected", error=str(e))
            return DispatchReply(DispatchOutcome.FAILED, code=ErrorCode.INTERNAL_ERROR)
        return DispatchReply(DispatchOutcome.SUCCESS, result=result)
