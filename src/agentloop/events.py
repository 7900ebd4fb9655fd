"""Display events emitted while the loop runs, and the sinks that take them."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class StreamEvent:
    """Base for all display events."""


@dataclass
class MarkdownEvent(StreamEvent):
    """Token-level text from the model, or a message for the user."""

    content: str = ""


@dataclass
class ThinkingEvent(StreamEvent):
    content: str = ""


@dataclass
class ProgressEvent(StreamEvent):
    message: str = ""


@dataclass
class ReferenceEvent(StreamEvent):
    """Something the prompt referenced, e.g. a file."""

    reference: Any = None


@dataclass
class WarningEvent(StreamEvent):
    message: str = ""


@dataclass
class ConfirmationEvent(StreamEvent):
    """Asks the user to confirm before continuing.

    ``data`` is returned to the caller with the user's choice.
    """

    title: str = ""
    message: str = ""
    data: dict = field(default_factory=dict)
    buttons: list[str] = field(default_factory=list)


@dataclass
class UsageEvent(StreamEvent):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    prompt_token_details: dict = field(default_factory=dict)


@dataclass
class PullRequestEvent(StreamEvent):
    """A tool announced a pull request."""

    uri: str = ""
    title: str = ""
    description: str = ""
    author: str = ""
    link_tag: str = ""


class DisplaySink(ABC):
    """Receives display events for one response.

    ``finalize`` is called exactly once per loop iteration, on every
    exit path.
    """

    @abstractmethod
    def push(self, event: StreamEvent) -> None:
        ...

    def markdown(self, content: str) -> None:
        self.push(MarkdownEvent(content=content))

    def thinking(self, content: str) -> None:
        self.push(ThinkingEvent(content=content))

    def progress(self, message: str) -> None:
        self.push(ProgressEvent(message=message))

    def reference(self, reference: Any) -> None:
        self.push(ReferenceEvent(reference=reference))

    def warning(self, message: str) -> None:
        self.push(WarningEvent(message=message))

    def confirmation(
        self, title: str, message: str, data: dict, buttons: list[str],
    ) -> None:
        self.push(ConfirmationEvent(
            title=title, message=message, data=data, buttons=buttons,
        ))

    def usage(
        self, prompt_tokens: int, completion_tokens: int,
        prompt_token_details: dict | None = None,
    ) -> None:
        self.push(UsageEvent(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            prompt_token_details=prompt_token_details or {},
        ))

    async def finalize(self) -> None:
        """Flush anything buffered.  Default is a no-op."""


class RecordingSink(DisplaySink):
    """Sink that keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[StreamEvent] = []
        self.finalize_count = 0

    def push(self, event: StreamEvent) -> None:
        self.events.append(event)

    async def finalize(self) -> None:
        self.finalize_count += 1

    @property
    def text(self) -> str:
        return "".join(
            e.content for e in self.events if isinstance(e, MarkdownEvent)
        )

    def of_type(self, event_type: type[StreamEvent]) -> list[StreamEvent]:
        return [e for e in self.events if isinstance(e, event_type)]


class SinkParticipant(DisplaySink):
    """Decorator over another sink; forwards everything by default.

    Subclass and override :meth:`push` to observe or rewrite events.
    """

    def __init__(self, inner: DisplaySink):
        self.inner = inner

    def push(self, event: StreamEvent) -> None:
        self.inner.push(event)

    async def finalize(self) -> None:
        # The dispatcher finalizes every sink in the chain itself.
        pass
