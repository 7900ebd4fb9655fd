"""Chat transports.

A :class:`ChatTransport` sends a rendered prompt to a model, streams the
answer through a :class:`~agentloop.accumulator.ChoiceStream` (which
drives the caller's finished callback) and returns a
:data:`FetchResult`.  Transport failures are returned, not raised.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Union

import httpx
import openai
from openai import AsyncOpenAI

from agentloop.accumulator import APIChoice, ChoiceStream, FinishedCallback
from agentloop.adapters import AnthropicMessagesAdapter, ChoicesChunkAdapter
from agentloop.cancellation import NONE, CancellationToken
from agentloop.config import LoopSettings
from agentloop.errors import StreamParseError
from agentloop.instrumentation import (
    completion_span,
    record_error,
    record_fetch_result,
    record_usage,
)
from agentloop.message import AssistantMessage, Message, MessageRole, ToolMessage, to_wire
from agentloop.sse import iter_sse_json
from agentloop.streaming import ToolCall, Usage

logger = logging.getLogger(__name__)

ANTHROPIC_API_VERSION = "2023-06-01"


@dataclass
class FetchSuccess:
    value: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    request_id: str = ""
    finish_reason: str = "stop"


@dataclass
class RateLimited:
    reason: str
    request_id: str = ""
    retry_after: float | None = None


@dataclass
class InvalidAuth:
    reason: str
    request_id: str = ""


@dataclass
class FetchCancelled:
    reason: str = "Cancelled"
    request_id: str = ""


@dataclass
class FetchFailed:
    reason: str
    request_id: str = ""
    status_code: int | None = None


FetchResult = Union[FetchSuccess, RateLimited, InvalidAuth, FetchCancelled, FetchFailed]


class ChatTransport(ABC):
    """Sends messages to a model and streams the response.

    ``request_options`` may carry ``tools`` in the OpenAI function
    format; transports translate as needed.
    """

    system: str = "unknown"
    model: str = ""

    @abstractmethod
    async def fetch(
        self,
        messages: list[Message],
        finished_cb: FinishedCallback | None = None,
        request_options: dict | None = None,
        token: CancellationToken = NONE,
    ) -> FetchResult:
        ...


async def _collect(stream: ChoiceStream) -> list[APIChoice]:
    return [choice async for choice in stream]


def _to_result(
    choices: list[APIChoice], usage: Usage | None, request_id: str,
    token: CancellationToken,
) -> FetchResult:
    if token.cancelled:
        return FetchCancelled(request_id=request_id)
    if not choices:
        return FetchFailed("Response contained no choices", request_id=request_id)
    choice = choices[0]
    return FetchSuccess(
        value=choice.completion_text,
        tool_calls=choice.tool_calls,
        usage=usage or choice.usage,
        request_id=request_id,
        finish_reason=choice.finish_reason,
    )


def _status_to_result(status: int, body: str, request_id: str) -> FetchResult:
    if status == 429:
        return RateLimited(body, request_id=request_id)
    if status in (401, 403):
        return InvalidAuth(body, request_id=request_id)
    return FetchFailed(f"HTTP {status}: {body}", request_id=request_id, status_code=status)


# ----------------------------------------------------------------------
# OpenAI-compatible chat completions
# ----------------------------------------------------------------------


class OpenAIChatTransport(ChatTransport):
    """Streaming chat completions through the ``openai`` SDK.

    Works against any OpenAI-compatible endpoint (OpenRouter, vLLM) via
    ``base_url``.
    """

    system = "openai"

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 600.0,
        client: AsyncOpenAI | None = None,
    ):
        self.model = model
        if client is None:
            client = AsyncOpenAI(
                api_key=api_key or os.getenv("OPENAI_API_KEY"),
                base_url=base_url,
                max_retries=5,
                timeout=timeout,
            )
        self.client = client

    @classmethod
    def from_settings(cls, settings: LoopSettings) -> OpenAIChatTransport:
        return cls(
            model=settings.openai_model,
            api_key=settings.openai_api_key or None,
            base_url=settings.openai_base_url,
            timeout=settings.request_timeout,
        )

    async def fetch(
        self,
        messages: list[Message],
        finished_cb: FinishedCallback | None = None,
        request_options: dict | None = None,
        token: CancellationToken = NONE,
    ) -> FetchResult:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_wire(messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        tools = (request_options or {}).get("tools")
        if tools:
            kwargs["tools"] = tools

        async with completion_span(self.system, self.model) as span:
            result = await self._stream(span, kwargs, finished_cb, token)
            record_fetch_result(span, result)
            return result

    async def _stream(self, span, kwargs, finished_cb, token) -> FetchResult:
        try:
            stream = await self.client.chat.completions.create(**kwargs)
        except openai.RateLimitError as e:
            record_error(span, e)
            return RateLimited(str(e), request_id=e.request_id or "")
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            record_error(span, e)
            return InvalidAuth(str(e), request_id=e.request_id or "")
        except openai.APIStatusError as e:
            record_error(span, e)
            return FetchFailed(
                str(e), request_id=e.request_id or "", status_code=e.status_code,
            )
        except openai.APIConnectionError as e:
            record_error(span, e)
            return FetchFailed(str(e))

        request_id = stream.response.headers.get("x-request-id", "")
        adapter = ChoicesChunkAdapter()
        choices = ChoiceStream(
            adapter.adapt(_chunk_dicts(stream)),
            finished_cb,
            request_id=request_id,
            cancel_token=token,
            expected_choices=1,
        )
        try:
            collected = await _collect(choices)
        except openai.APIError as e:
            record_error(span, e)
            return FetchFailed(str(e), request_id=request_id)
        finally:
            await stream.close()

        record_usage(span, adapter.usage, self.model)
        return _to_result(collected, adapter.usage, request_id, token)


async def _chunk_dicts(stream) -> AsyncIterator[dict]:
    async for chunk in stream:
        yield chunk.model_dump(exclude_none=True)


# ----------------------------------------------------------------------
# Anthropic Messages API
# ----------------------------------------------------------------------


def _anthropic_tools(tools: list[dict]) -> list[dict]:
    converted = []
    for t in tools:
        function = t.get("function", t)
        converted.append({
            "name": function["name"],
            "description": function.get("description") or "",
            "input_schema": function.get("parameters") or {"type": "object", "properties": {}},
        })
    return converted


def _tool_input(arguments: str) -> dict:
    try:
        parsed = json.loads(arguments or "{}")
    except json.JSONDecodeError:
        logger.warning(f"Sending unparseable tool arguments as empty input: {arguments[:100]!r}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def anthropic_messages(messages: list[Message]) -> tuple[str, list[dict]]:
    """Split out the system prompt and convert to Anthropic message dicts.

    Consecutive tool results are merged into a single user message.
    """
    system_parts: list[str] = []
    converted: list[dict] = []
    for m in messages:
        if m.role == MessageRole.SYSTEM:
            system_parts.append(m.content)
        elif isinstance(m, ToolMessage):
            block = {
                "type": "tool_result",
                "tool_use_id": m.tool_call_id.external_id,
                "content": m.content,
            }
            last = converted[-1] if converted else None
            if (
                last is not None
                and last["role"] == "user"
                and isinstance(last["content"], list)
                and all(b.get("type") == "tool_result" for b in last["content"])
            ):
                last["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
        elif isinstance(m, AssistantMessage):
            blocks: list[dict] = []
            thinking = m.thinking
            if thinking is not None and thinking.encrypted:
                if thinking.redacted:
                    blocks.append({"type": "redacted_thinking", "data": thinking.encrypted})
                else:
                    blocks.append({
                        "type": "thinking",
                        "thinking": thinking.text,
                        "signature": thinking.encrypted,
                    })
            if m.content:
                blocks.append({"type": "text", "text": m.content})
            for tc in m.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": tc.external_id,
                    "name": tc.name,
                    "input": _tool_input(tc.arguments),
                })
            converted.append({"role": "assistant", "content": blocks})
        else:
            converted.append({"role": m.role.value, "content": m.content})
    return "\n\n".join(system_parts), converted


class AnthropicMessagesTransport(ChatTransport):
    """Streaming Anthropic Messages API over ``httpx`` and SSE."""

    system = "anthropic"

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str = "https://api.anthropic.com",
        max_tokens: int = 8192,
        timeout: float = 600.0,
        http: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        if http is None:
            api_key = api_key or os.getenv("ANTHROPIC_API_KEY", "")
            if not api_key:
                logger.warning("ANTHROPIC_API_KEY is not set, API calls will fail")
            http = httpx.AsyncClient(
                base_url=base_url,
                headers={
                    "anthropic-version": ANTHROPIC_API_VERSION,
                    "content-type": "application/json",
                    "x-api-key": api_key,
                },
                timeout=httpx.Timeout(timeout, connect=10.0),
            )
        self._http = http

    @classmethod
    def from_settings(cls, settings: LoopSettings) -> AnthropicMessagesTransport:
        return cls(
            model=settings.anthropic_model,
            api_key=settings.anthropic_api_key or None,
            base_url=settings.anthropic_base_url,
            max_tokens=settings.anthropic_max_tokens,
            timeout=settings.request_timeout,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def build_payload(
        self, messages: list[Message], request_options: dict | None = None,
    ) -> dict:
        system_prompt, converted = anthropic_messages(messages)
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": converted,
            "stream": True,
        }
        if system_prompt:
            payload["system"] = system_prompt
        tools = (request_options or {}).get("tools")
        if tools:
            payload["tools"] = _anthropic_tools(tools)
        return payload

    async def fetch(
        self,
        messages: list[Message],
        finished_cb: FinishedCallback | None = None,
        request_options: dict | None = None,
        token: CancellationToken = NONE,
    ) -> FetchResult:
        payload = self.build_payload(messages, request_options)

        async with completion_span(self.system, self.model) as span:
            result = await self._stream(span, payload, finished_cb, token)
            record_fetch_result(span, result)
            return result

    async def _stream(self, span, payload, finished_cb, token) -> FetchResult:
        try:
            async with self._http.stream("POST", "/v1/messages", json=payload) as response:
                request_id = response.headers.get("request-id", "")
                if response.status_code != 200:
                    body = (await response.aread()).decode(errors="replace")[:500]
                    logger.warning(f"Anthropic API error ({response.status_code}): {body}")
                    return _status_to_result(response.status_code, body, request_id)

                adapter = AnthropicMessagesAdapter()
                choices = ChoiceStream(
                    adapter.adapt(iter_sse_json(response.aiter_lines())),
                    finished_cb,
                    request_id=request_id,
                    cancel_token=token,
                    expected_choices=1,
                )
                collected = await _collect(choices)
        except StreamParseError as e:
            record_error(span, e)
            return FetchFailed(str(e))
        except httpx.HTTPError as e:
            record_error(span, e)
            return FetchFailed(f"{type(e).__name__}: {e}")

        if adapter.errors and not token.cancelled:
            error = adapter.errors[0]
            logger.warning(f"Anthropic stream error ({error.code}): {error.message}")
            if error.code == "rate_limit_error":
                return RateLimited(error.message, request_id=request_id)
            return FetchFailed(error.message, request_id=request_id)

        record_usage(span, adapter.usage, adapter.model or self.model)
        return _to_result(collected, adapter.usage, request_id, token)
