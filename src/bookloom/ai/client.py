"""Async generation client built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .orchestration.types import (
    Fragment,
    FragmentCallback,
    GenerationConfig,
    GenerationRequest,
    GenerationResult,
    ToolCall,
)

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (
    APIError,
    APIStatusError,
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_tokens: int | None = None
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class _StreamState:
    """Accumulates one streamed completion."""

    text: List[str] = field(default_factory=list)
    reasoning: List[str] = field(default_factory=list)
    tool_calls: Dict[int, Dict[str, str]] = field(default_factory=dict)
    emitted: bool = False

    def tool_call(self, index: int) -> Dict[str, str]:
        return self.tool_calls.setdefault(index, {"id": "", "name": "", "arguments": ""})


class AIClient:
    """Async client exposing the task loop's generation function.

    ``generate`` matches :data:`~bookloom.ai.orchestration.types.GenerateFunction`
    so a bound method can be handed straight to the runner:

        client = AIClient(settings)
        runner = DocumentTaskRunner(kind=TRANSLATION, generate=client.generate)
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def generate(
        self,
        config: GenerationConfig,
        request: GenerationRequest,
        on_fragment: FragmentCallback | None = None,
    ) -> GenerationResult:
        """Stream one completion, forwarding fragments as they arrive.

        Args:
            config: Per-turn configuration; ``config.cancel`` stops the stream.
            request: Conversation and tool definitions.
            on_fragment: Receives text and reasoning deltas.

        Returns:
            The aggregated text, tool calls and reasoning of the completion.
        """

        payload = self._build_chat_payload(request, config)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        state = _StreamState()
        async for attempt in self._retrying(can_retry=lambda: not state.emitted):
            with attempt:
                state = _StreamState()
                async with self._client.chat.completions.stream(**payload) as stream:
                    async for event in stream:
                        if config.cancel.cancelled:
                            LOGGER.debug("Generation cancelled mid-stream: %s", config.cancel.reason)
                            break
                        self._consume_event(event, state, on_fragment)
        return self._build_result(state)

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
        )

    def _retrying(self, *, can_retry: Callable[[], bool]) -> AsyncRetrying:
        # Retrying after fragments went out would replay them to the caller.
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS) & retry_if_exception(lambda _exc: can_retry()),
        )

    def _build_chat_payload(self, request: GenerationRequest, config: GenerationConfig) -> Dict[str, Any]:
        messages = request.chat_messages()
        if not messages:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": messages,
        }
        if request.tools:
            payload["tools"] = [dict(tool) for tool in request.tools]
        if config.temperature is not None:
            payload["temperature"] = config.temperature
        if self._settings.max_tokens is not None:
            payload["max_tokens"] = self._settings.max_tokens
        if self._settings.metadata:
            payload["metadata"] = dict(self._settings.metadata)
        return payload

    def _consume_event(
        self,
        event: ChatCompletionStreamEvent[Any],
        state: _StreamState,
        on_fragment: FragmentCallback | None,
    ) -> None:
        event_type = getattr(event, "type", None)
        if event_type == "chunk":
            self._consume_chunk(getattr(event, "chunk", None), state, on_fragment)
            return
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if delta_text:
                state.text.append(str(delta_text))
                self._emit(on_fragment, Fragment(text=str(delta_text)), state)
            return
        if event_type == "tool_calls.function.arguments.done":
            index = getattr(event, "index", None)
            if index is None:
                return
            entry = state.tool_call(int(index))
            entry["name"] = getattr(event, "name", None) or entry["name"]
            entry["arguments"] = getattr(event, "arguments", None) or entry["arguments"]

    def _consume_chunk(self, chunk: Any, state: _StreamState, on_fragment: FragmentCallback | None) -> None:
        """Pick up reasoning deltas and tool-call ids from the raw chunk."""

        choices = getattr(chunk, "choices", None) or ()
        for choice in choices:
            delta = getattr(choice, "delta", None)
            if delta is None:
                continue
            reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
            if isinstance(reasoning, str) and reasoning:
                state.reasoning.append(reasoning)
                self._emit(on_fragment, Fragment(reasoning=reasoning), state)
            for tool_delta in getattr(delta, "tool_calls", None) or ():
                index = getattr(tool_delta, "index", None)
                if index is None:
                    continue
                entry = state.tool_call(int(index))
                call_id = getattr(tool_delta, "id", None)
                if call_id:
                    entry["id"] = call_id
                function = getattr(tool_delta, "function", None)
                name = getattr(function, "name", None) if function is not None else None
                if name:
                    entry["name"] = name

    def _emit(self, on_fragment: FragmentCallback | None, fragment: Fragment, state: _StreamState) -> None:
        state.emitted = True
        if on_fragment is not None:
            on_fragment(fragment)

    def _build_result(self, state: _StreamState) -> GenerationResult:
        calls = []
        for index in sorted(state.tool_calls):
            entry = state.tool_calls[index]
            if not entry["name"]:
                LOGGER.debug("Dropping unnamed tool call at index %s", index)
                continue
            calls.append(
                ToolCall.from_raw(
                    call_id=entry["id"] or f"call_{index}",
                    name=entry["name"],
                    arguments=entry["arguments"],
                )
            )
        return GenerationResult(
            text="".join(state.text),
            tool_calls=tuple(calls),
            reasoning="".join(state.reasoning) or None,
        )

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result


__all__ = ["AIClient", "ClientSettings"]
