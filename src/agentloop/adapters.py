"""Provider-specific adapters feeding :class:`~agentloop.accumulator.ChoiceStream`.

Each adapter consumes decoded JSON events and returns zero or more
:class:`ChoiceChunk` records.  Adapters hold the per-request state that
is specific to a wire format (open content blocks, partial tool calls,
token usage); everything shared lives in the accumulator.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterable, AsyncIterator

from agentloop.streaming import (
    BeginToolCall,
    ChoiceChunk,
    ResponseDelta,
    StreamError,
    ThinkingDelta,
    ToolCall,
    ToolCallAccumulator,
    ToolCallFragment,
    Usage,
)

logger = logging.getLogger(__name__)


def _compute_prompt_tokens(
    input_tokens: int, cache_creation: int, cache_read: int,
) -> int:
    prompt_tokens = input_tokens + cache_creation + cache_read
    if prompt_tokens < cache_read:
        logger.warning(
            f"Prompt token total {prompt_tokens} is smaller than "
            f"cache-read tokens {cache_read}"
        )
    return prompt_tokens


class AnthropicMessagesAdapter:
    """Adapter for the Anthropic Messages streaming event shape.

    Always reports a single choice (index 0).
    """

    def __init__(self) -> None:
        self.message_id: str = ""
        self.model: str = ""
        self.stop_reason: str | None = None
        self.usage: Usage | None = None
        self.errors: list[StreamError] = []
        self._has_text = False
        self._tool_calls = ToolCallAccumulator()
        self._thinking: dict[int, dict[str, str]] = {}
        self._input_tokens = 0
        self._cache_creation = 0
        self._cache_read = 0

    async def adapt(
        self, events: AsyncIterable[dict],
    ) -> AsyncIterator[ChoiceChunk]:
        async for event in events:
            for chunk in self.push(event):
                yield chunk

    def push(self, event: dict) -> list[ChoiceChunk]:
        event_type = event.get("type")
        handler = {
            "message_start": self._message_start,
            "content_block_start": self._block_start,
            "content_block_delta": self._block_delta,
            "content_block_stop": self._block_stop,
            "message_delta": self._message_delta,
            "message_stop": self._message_stop,
            "error": self._error,
        }.get(event_type)
        if handler is None:
            if event_type != "ping":
                logger.debug(f"Ignoring stream event {event_type!r}")
            return []
        return handler(event)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _message_start(self, event: dict) -> list[ChoiceChunk]:
        message = event.get("message") or {}
        self.message_id = message.get("id", "")
        self.model = message.get("model", "")
        self._update_usage(message.get("usage") or {})
        return []

    def _block_start(self, event: dict) -> list[ChoiceChunk]:
        index = event.get("index", 0)
        block = event.get("content_block") or {}
        block_type = block.get("type")
        chunks: list[ChoiceChunk] = []

        if block_type == "tool_use":
            if self._has_text:
                chunks.append(_text_chunk(" "))
            call_id = block.get("id") or str(uuid.uuid4())
            name = block.get("name", "")
            self._tool_calls.begin(index, call_id, name)
            chunks.append(ChoiceChunk(delta=ResponseDelta(
                begin_tool_calls=[BeginToolCall(name=name, id=call_id)],
            )))
        elif block_type == "thinking":
            self._thinking[index] = {"text": "", "signature": ""}
        elif block_type == "redacted_thinking":
            chunks.append(ChoiceChunk(delta=ResponseDelta(
                thinking=ThinkingDelta(
                    id=f"thinking_{index}",
                    encrypted=block.get("data", ""),
                    redacted=True,
                ),
            )))
        elif block_type == "text" and block.get("text"):
            self._has_text = True
            chunks.append(_text_chunk(block["text"]))
        return chunks

    def _block_delta(self, event: dict) -> list[ChoiceChunk]:
        index = event.get("index", 0)
        delta = event.get("delta") or {}
        delta_type = delta.get("type")

        if delta_type == "text_delta":
            text = delta.get("text", "")
            if not text:
                return []
            self._has_text = True
            return [_text_chunk(text)]
        if delta_type == "thinking_delta":
            thinking = self._thinking.get(index)
            if thinking is None:
                return []
            thinking["text"] += delta.get("thinking", "")
            return [ChoiceChunk(delta=ResponseDelta(
                thinking=ThinkingDelta(
                    id=f"thinking_{index}", text=delta.get("thinking", ""),
                ),
            ))]
        if delta_type == "signature_delta":
            thinking = self._thinking.get(index)
            if thinking is not None:
                thinking["signature"] += delta.get("signature", "")
            return []
        if delta_type == "input_json_delta":
            self._tool_calls.append(index, delta.get("partial_json", ""))
            return []
        return []

    def _block_stop(self, event: dict) -> list[ChoiceChunk]:
        index = event.get("index", 0)
        chunks: list[ChoiceChunk] = []
        tool_call = self._tool_calls.stop(index)
        if tool_call is not None:
            chunks.append(_tool_calls_chunk([tool_call]))
        thinking = self._thinking.pop(index, None)
        if thinking and thinking["signature"]:
            chunks.append(ChoiceChunk(delta=ResponseDelta(
                thinking=ThinkingDelta(
                    id=f"thinking_{index}",
                    encrypted=thinking["signature"],
                ),
            )))
        return chunks

    def _message_delta(self, event: dict) -> list[ChoiceChunk]:
        delta = event.get("delta") or {}
        if delta.get("stop_reason"):
            self.stop_reason = delta["stop_reason"]
        if event.get("usage"):
            self._update_usage(event["usage"])
        return []

    def _message_stop(self, event: dict) -> list[ChoiceChunk]:
        chunks: list[ChoiceChunk] = []
        leftover = self._tool_calls.finalize()
        if leftover:
            logger.warning(
                f"{len(leftover)} tool call(s) never received a stop event"
            )
            chunks.append(_tool_calls_chunk(leftover))
        chunks.append(ChoiceChunk(
            finish_reason=self.stop_reason or "stop",
            delta=ResponseDelta(usage=self.usage),
        ))
        return chunks

    def _error(self, event: dict) -> list[ChoiceChunk]:
        error = event.get("error") or {}
        stream_error = StreamError(
            message=error.get("message") or "Unknown error",
            code=error.get("type", "unknown"),
            agent="anthropic",
        )
        self.errors.append(stream_error)
        return [ChoiceChunk(delta=ResponseDelta(errors=[stream_error]))]

    def _update_usage(self, usage: dict) -> None:
        # Later events are authoritative; keep earlier values for fields
        # they omit.
        if usage.get("input_tokens") is not None:
            self._input_tokens = usage["input_tokens"]
        if usage.get("cache_creation_input_tokens") is not None:
            self._cache_creation = usage["cache_creation_input_tokens"]
        if usage.get("cache_read_input_tokens") is not None:
            self._cache_read = usage["cache_read_input_tokens"]
        completion = usage.get("output_tokens")
        if completion is None:
            completion = self.usage.completion_tokens if self.usage else 0
        prompt = _compute_prompt_tokens(
            self._input_tokens, self._cache_creation, self._cache_read,
        )
        self.usage = Usage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
            cached_tokens=self._cache_read,
            cache_creation_tokens=self._cache_creation,
        )


class ChoicesChunkAdapter:
    """Adapter for ``{"choices": [...]}`` chunks.

    Handles both the legacy completions shape (``choice.text``) and the
    chat shape (``choice.delta.content`` / ``choice.delta.tool_calls``).
    """

    def __init__(self) -> None:
        self.usage: Usage | None = None
        self.response_id: str = ""
        self._tool_calls: dict[int, ToolCallAccumulator] = {}
        self._has_text: dict[int, bool] = {}

    async def adapt(
        self, events: AsyncIterable[dict],
    ) -> AsyncIterator[ChoiceChunk]:
        async for event in events:
            for chunk in self.push(event):
                yield chunk

    def push(self, event: dict) -> list[ChoiceChunk]:
        if event.get("id"):
            self.response_id = event["id"]
        if event.get("usage"):
            self._update_usage(event["usage"])

        chunks: list[ChoiceChunk] = []
        for choice in event.get("choices") or []:
            chunks.extend(self._push_choice(choice))
        return chunks

    def _push_choice(self, choice: dict) -> list[ChoiceChunk]:
        index = choice.get("index", 0)
        delta = choice.get("delta") or {}
        text = choice.get("text")
        if text is None:
            text = delta.get("content") or ""
        finish_reason = choice.get("finish_reason")
        accumulator = self._tool_calls.setdefault(index, ToolCallAccumulator())
        chunks: list[ChoiceChunk] = []

        reasoning = delta.get("reasoning_content")
        if reasoning:
            chunks.append(ChoiceChunk(index=index, delta=ResponseDelta(
                thinking=ThinkingDelta(id=f"reasoning_{index}", text=reasoning),
            )))

        for raw in delta.get("tool_calls") or []:
            function = raw.get("function") or {}
            fragment = ToolCallFragment(
                index=raw.get("index", 0),
                call_id=raw.get("id"),
                name=function.get("name"),
                arguments_delta=function.get("arguments"),
            )
            if fragment.index not in accumulator:
                if self._has_text.get(index):
                    chunks.append(_text_chunk(" ", index))
                chunks.append(ChoiceChunk(index=index, delta=ResponseDelta(
                    begin_tool_calls=[BeginToolCall(
                        name=fragment.name or "", id=fragment.call_id,
                    )],
                )))
            accumulator.feed(fragment)

        tool_calls = accumulator.finalize() if finish_reason else []
        annotations = choice.get("annotations")
        if text or finish_reason or tool_calls or annotations:
            if text:
                self._has_text[index] = True
            chunks.append(ChoiceChunk(
                index=index,
                text=text,
                finish_reason=finish_reason,
                delta=ResponseDelta(text=text, tool_calls=tool_calls),
                annotations=annotations,
            ))
        return chunks

    def _update_usage(self, usage: dict) -> None:
        details = usage.get("prompt_tokens_details") or {}
        cached = details.get("cached_tokens") or 0
        prompt = usage.get("prompt_tokens") or 0
        if prompt < cached:
            logger.warning(
                f"Prompt token total {prompt} is smaller than "
                f"cache-read tokens {cached}"
            )
        self.usage = Usage(
            prompt_tokens=prompt,
            completion_tokens=usage.get("completion_tokens") or 0,
            total_tokens=usage.get("total_tokens") or 0,
            cached_tokens=cached,
        )


def _text_chunk(text: str, index: int = 0) -> ChoiceChunk:
    return ChoiceChunk(index=index, text=text, delta=ResponseDelta(text=text))


def _tool_calls_chunk(tool_calls: list[ToolCall]) -> ChoiceChunk:
    return ChoiceChunk(delta=ResponseDelta(tool_calls=tool_calls))
