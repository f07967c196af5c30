"""Async model client built around OpenAI-compatible endpoints.

:class:`AIClient` implements the
:class:`~mcplink.orchestration.model_types.ModelClient` contract consumed by
the engine: ``stream_respond`` yields normalized :class:`ModelChunk` values and
``respond`` returns a :class:`ModelReply`.
"""

from __future__ import annotations

import inspect
import json
import logging
import math
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Protocol, Sequence, cast

import httpx
import tiktoken
from openai import APIConnectionError, APIStatusError, AsyncOpenAI, RateLimitError
from openai.types.chat import ChatCompletionMessageParam
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .orchestration.model_types import ModelChunk, ModelReply
from .orchestration.types import Message, ToolCall, Usage

__all__ = [
    "TokenCounterProtocol",
    "ApproxByteCounter",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "ClientSettings",
    "AIClient",
    "ModelChunk",
    "ModelReply",
]

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4

_RETRYABLE_ERRORS = (
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)


# -----------------------------------------------------------------------------
# Token Counting
# -----------------------------------------------------------------------------


class TokenCounterProtocol(Protocol):
    """Anything that can count the tokens of a string for one model."""

    def count(self, text: str) -> int:
        ...


class ApproxByteCounter:
    """UTF-8 byte length divided by a fixed bytes-per-token ratio."""

    def __init__(self, *, model_name: str | None = None, bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._ratio = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        size = len(text.encode("utf-8", errors="ignore")) if text else 0
        return math.ceil(size / self._ratio)


class TiktokenCounter:
    """Exact counts from the model's tiktoken encoding (``cl100k_base`` when unknown)."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        if encoding_name:
            self._encoding = tiktoken.get_encoding(encoding_name)
        else:
            try:
                self._encoding = tiktoken.encoding_for_model(model_name)
            except KeyError:
                LOGGER.debug("No tiktoken encoding registered for %s; using cl100k_base", model_name)
                self._encoding = tiktoken.get_encoding("cl100k_base")
        self._approx = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text, disallowed_special=()))
        except ValueError:
            LOGGER.debug("tiktoken could not encode text for %s; approximating", self.model_name, exc_info=True)
            return self._approx.count(text)


class TokenCounterRegistry:
    """Model name (case-insensitive) to token counter, with a byte-ratio fallback."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._by_model: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> TokenCounterRegistry:
        """Process-wide registry shared by clients created without one."""
        if cls._shared is None:
            cls._shared = cls()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = _model_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._by_model[key] = counter

    def has(self, model_name: str | None) -> bool:
        return _model_key(model_name) in self._by_model

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        return self._by_model.get(_model_key(model_name), self._fallback)

    def count(self, model_name: str | None, text: str) -> int:
        return self.get(model_name).count(text)


def _model_key(model_name: str | None) -> str:
    return (model_name or "").strip().lower()


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ClientSettings:
    """Settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    temperature: float | None = None
    include_usage: bool = True
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> ClientSettings:
        """Build settings from ``MCPLINK_BASE_URL``, ``MCPLINK_API_KEY`` and ``MCPLINK_MODEL``."""
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {
            "base_url": env.get("MCPLINK_BASE_URL", "https://api.openai.com/v1"),
            "api_key": env.get("MCPLINK_API_KEY", ""),
            "model": env.get("MCPLINK_MODEL", "gpt-4o-mini"),
            "debug_logging": env.get("MCPLINK_DEBUG_LOGGING", "").strip().lower() in {"1", "true", "yes", "on"},
        }
        values.update(overrides)
        return cls(**values)


@dataclass(slots=True)
class _PendingToolCall:
    """Tool call assembled from streamed deltas, keyed by index."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments: List[str] = field(default_factory=list)


class AIClient:
    """Async client providing streaming helpers with retry semantics."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()
        self._register_default_token_counter()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def model(self) -> str:
        return self._settings.model

    async def stream_respond(
        self,
        messages: Sequence[Message | Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        **options: Any,
    ) -> AsyncIterator[ModelChunk]:
        """Stream a chat completion as normalized chunks.

        Connection failures are retried only while nothing has been yielded;
        once a chunk reached the caller the error propagates.
        """
        chat_messages = self._coerce_messages(messages)
        payload = self._build_chat_payload(chat_messages, tools, options)
        payload["stream"] = True
        if self._settings.include_usage:
            payload["stream_options"] = {"include_usage": True}
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(chat_messages),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        emitted = False
        async for attempt in self._retrying(lambda: not emitted):
            with attempt:
                stream = await self._client.chat.completions.create(**payload)
                pending: dict[int, _PendingToolCall] = {}
                generated: list[str] = []
                usage: Usage | None = None
                try:
                    async for raw in stream:
                        raw_usage = getattr(raw, "usage", None)
                        if raw_usage is not None:
                            usage = self._usage_from(raw_usage)
                        for chunk in self._normalize_chunk(raw, pending):
                            if chunk.text:
                                generated.append(chunk.text)
                            emitted = True
                            yield chunk
                finally:
                    await _close_quietly(stream)

                for call in sorted(pending.values(), key=lambda item: item.index):
                    arguments_text = "".join(call.arguments)
                    generated.append(arguments_text)
                    emitted = True
                    yield ModelChunk(
                        type="tool-call",
                        tool_call_id=call.call_id or f"call_{call.index}",
                        tool_name=call.name or "",
                        arguments=self._parse_arguments(call.name, arguments_text),
                    )
                if usage is None:
                    usage = self._estimate_usage(chat_messages, "".join(generated))
                emitted = True
                yield ModelChunk(type="finish", usage=usage)

    async def respond(
        self,
        messages: Sequence[Message | Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        **options: Any,
    ) -> ModelReply:
        """Run a non-streaming chat completion."""
        chat_messages = self._coerce_messages(messages)
        payload = self._build_chat_payload(chat_messages, tools, options)
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        async for attempt in self._retrying(lambda: True):
            with attempt:
                response = await self._client.chat.completions.create(**payload)
        choices = getattr(response, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        text = getattr(message, "content", None) or ""
        calls: list[ToolCall] = []
        for index, raw_call in enumerate(getattr(message, "tool_calls", None) or []):
            function = getattr(raw_call, "function", None)
            name = getattr(function, "name", None) or ""
            calls.append(
                ToolCall(
                    id=getattr(raw_call, "id", None) or f"call_{index}",
                    name=name,
                    arguments=self._parse_arguments(name, getattr(function, "arguments", None) or ""),
                )
            )
        raw_usage = getattr(response, "usage", None)
        usage = self._usage_from(raw_usage) if raw_usage is not None else self._estimate_usage(chat_messages, text)
        return ModelReply(text=text, tool_calls=tuple(calls), usage=usage)

    def count_tokens(self, text: str, *, model: str | None = None) -> int:
        if not text:
            return 0
        return self._token_registry.count(model or self._settings.model, text)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""
        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    # -- internals ------------------------------------------------------------

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _register_default_token_counter(self) -> None:
        model_name = (self._settings.model or "").strip()
        if not model_name or self._token_registry.has(model_name):
            return
        try:
            counter: TokenCounterProtocol = TiktokenCounter(model_name)
        except Exception as exc:  # pragma: no cover - encoding files unavailable offline
            LOGGER.debug("Failed to initialize tiktoken counter for %s: %s", model_name, exc)
            counter = ApproxByteCounter(model_name=model_name)
        self._token_registry.register(model_name, counter)

    def _retrying(self, may_retry: Any) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=(
                (retry_if_exception_type(_RETRYABLE_ERRORS) | retry_if_exception(_is_server_error))
                & retry_if_exception(lambda _exc: may_retry())
            ),
        )

    def _coerce_messages(self, messages: Sequence[Message | Mapping[str, Any]]) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            if isinstance(message, Message):
                normalized.extend(cast(List[ChatCompletionMessageParam], message.to_chat_params()))
            elif isinstance(message, Mapping):
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            else:
                raise TypeError("Messages must be Message instances or mapping-like objects")
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        messages: Sequence[ChatCompletionMessageParam],
        tools: Sequence[Mapping[str, Any]] | None,
        options: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
        }
        if tools:
            payload["tools"] = [dict(tool) for tool in tools]
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        for key, value in options.items():
            if value is not None:
                payload[key] = value
        return payload

    def _normalize_chunk(self, raw: Any, pending: dict[int, _PendingToolCall]) -> list[ModelChunk]:
        chunks: list[ModelChunk] = []
        for choice in getattr(raw, "choices", None) or []:
            delta = getattr(choice, "delta", None)
            if delta is None:
                continue
            reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
            if isinstance(reasoning, str) and reasoning:
                chunks.append(ModelChunk(type="reasoning-delta", text=reasoning))
            content = getattr(delta, "content", None)
            if content:
                chunks.append(ModelChunk(type="text-delta", text=str(content)))
            refusal = getattr(delta, "refusal", None)
            if refusal:
                chunks.append(ModelChunk(type="text-delta", text=str(refusal)))
            for tool_delta in getattr(delta, "tool_calls", None) or []:
                index = getattr(tool_delta, "index", None)
                index = len(pending) if index is None else int(index)
                call = pending.setdefault(index, _PendingToolCall(index=index))
                call.call_id = call.call_id or getattr(tool_delta, "id", None)
                function = getattr(tool_delta, "function", None)
                name = getattr(function, "name", None)
                if name:
                    call.name = name
                fragment = getattr(function, "arguments", None) or ""
                if fragment:
                    call.arguments.append(fragment)
                chunks.append(
                    ModelChunk(
                        type="tool-call-delta",
                        tool_call_id=call.call_id or f"call_{index}",
                        tool_name=call.name,
                        args_delta=fragment,
                    )
                )
        return chunks

    @staticmethod
    def _parse_arguments(name: str | None, text: str) -> dict[str, Any]:
        if not text or not text.strip():
            return {}
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            LOGGER.warning("Tool %s arguments are not valid JSON; using empty arguments", name)
            return {}
        if not isinstance(parsed, dict):
            LOGGER.warning("Tool %s arguments are not a JSON object; using empty arguments", name)
            return {}
        return parsed

    @staticmethod
    def _usage_from(raw_usage: Any) -> Usage:
        prompt = int(getattr(raw_usage, "prompt_tokens", 0) or 0)
        completion = int(getattr(raw_usage, "completion_tokens", 0) or 0)
        total = int(getattr(raw_usage, "total_tokens", 0) or 0) or prompt + completion
        return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def _estimate_usage(self, messages: Sequence[ChatCompletionMessageParam], completion: str) -> Usage:
        prompt_text = json.dumps(list(messages), ensure_ascii=False, default=str)
        prompt = self.count_tokens(prompt_text)
        generated = self.count_tokens(completion)
        return Usage(prompt_tokens=prompt, completion_tokens=generated, total_tokens=prompt + generated)

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)


def _is_server_error(exc: BaseException) -> bool:
    return isinstance(exc, APIStatusError) and exc.status_code >= 500


async def _close_quietly(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception:  # pragma: no cover
        LOGGER.debug("Failed to close model stream", exc_info=True)
