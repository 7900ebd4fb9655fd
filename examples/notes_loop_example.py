"""Interactive example: a note-taking assistant on the tool-calling loop.

Demonstrates:
- Defining tools with @tool (including context-aware tools)
- Registering tools in a ToolRegistry
- Running one DefaultToolCallingLoop per user turn
- Streaming the response to the terminal through a DisplaySink

Usage:
    uv run --env-file=.env examples/notes_loop_example.py --provider openai --model gpt-4o-mini --trace
    uv run --env-file=.env examples/notes_loop_example.py --provider anthropic
"""

import argparse
import asyncio

from agentloop.config import LoopSettings, configure_logging
from agentloop.context import BuildPromptContext
from agentloop.conversation import Conversation
from agentloop.events import (
    ConfirmationEvent,
    DisplaySink,
    MarkdownEvent,
    ProgressEvent,
    StreamEvent,
    WarningEvent,
)
from agentloop.loop import DefaultToolCallingLoop, LoopOptions
from agentloop.provider import (
    AnthropicMessagesTransport,
    ChatTransport,
    FetchSuccess,
    OpenAIChatTransport,
)
from agentloop.renderer import TranscriptPromptRenderer
from agentloop.summarizer import BackgroundSummarizer
from agentloop.telemetry import TelemetrySession
from agentloop.tools import ToolRegistry, tool

NOTES: dict[str, str] = {}


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from agentloop.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


def make_transport(provider: str, settings: LoopSettings) -> ChatTransport:
    if provider == "anthropic":
        return AnthropicMessagesTransport.from_settings(settings)
    return OpenAIChatTransport.from_settings(settings)


class TerminalSink(DisplaySink):
    def push(self, event: StreamEvent) -> None:
        if isinstance(event, MarkdownEvent):
            print(event.content, end="", flush=True)
        elif isinstance(event, ProgressEvent):
            print(f"\n[{event.message}]")
        elif isinstance(event, WarningEvent):
            print(f"\n! {event.message}")
        elif isinstance(event, ConfirmationEvent):
            print(f"\n? {event.title} {event.message}")

    async def finalize(self) -> None:
        print()


@tool
def add_note(title: str, content: str):
    """Save a note with the given title and content."""
    NOTES[title] = content
    return f"Saved note '{title}'."


@tool
def get_note(title: str):
    """Retrieve a note by title."""
    note = NOTES.get(title)
    if note is None:
        return f"No note found with title '{title}'."
    return note


@tool
def list_notes(context: BuildPromptContext):
    """List all saved note titles."""
    if context.sink is not None:
        context.sink.progress(f"{len(NOTES)} note(s) stored")
    if not NOTES:
        return "No notes yet."
    return ", ".join(NOTES.keys())


@tool
def delete_note(title: str):
    """Delete a note by title."""
    if title not in NOTES:
        return f"No note found with title '{title}'."
    del NOTES[title]
    return f"Deleted note '{title}'."


async def main():
    parser = argparse.ArgumentParser(description="Notes agent")
    parser.add_argument("--provider", choices=["openai", "anthropic"], default="openai")
    parser.add_argument("--model", default=None)
    parser.add_argument("--trace", action="store_true")
    args = parser.parse_args()

    settings = LoopSettings()
    if args.model:
        settings.openai_model = args.model
        settings.anthropic_model = args.model
    configure_logging(settings)
    if args.trace:
        setup_tracing("notes-agent")

    transport = make_transport(args.provider, settings)
    registry = ToolRegistry([add_note, get_note, list_notes, delete_note])
    renderer = TranscriptPromptRenderer(
        system_prompt=(
            "You are a helpful note-taking assistant. "
            "Use the provided tools to manage the user's notes. "
            "When the user asks to save, find, list, or delete notes, "
            "always use the appropriate tool."
        ),
        registry=registry,
        max_prompt_tokens=settings.model_max_prompt_tokens,
    )
    summarizer = BackgroundSummarizer(settings.model_max_prompt_tokens)
    telemetry = TelemetrySession(settings.telemetry_cache_capacity)
    conversation = Conversation()
    sink = TerminalSink()

    print("Note-taking Assistant\n")

    while True:
        try:
            user_input = input("You: ")
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            break

        conversation.add_turn(user_input)
        loop = DefaultToolCallingLoop(
            LoopOptions.from_settings(conversation, settings),
            renderer=renderer,
            transport=transport,
            registry=registry,
            summarizer=summarizer,
            telemetry=telemetry,
            settings=settings,
        )
        print("Assistant: ", end="")
        result = await loop.run(sink)
        if not isinstance(result.response, FetchSuccess):
            print(f"[request failed: {result.response}]\n")


if __name__ == "__main__":
    asyncio.run(main())
