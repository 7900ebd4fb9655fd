"""Optional OpenTelemetry tracing for the tool-calling loop.

Spans follow the GenAI semantic conventions: one ``invoke_agent`` span
per loop run, a ``chat`` span per transport fetch and an
``execute_tool`` span per tool call made while rendering.  Loop-specific
facts go under the ``agentloop.`` attribute namespace.

Call :func:`instrument` once at startup to enable tracing.  Requires
``opentelemetry-api``; without it every helper here is a no-op.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "agentloop") -> None:
    """Start emitting spans from the loop, transports and renderer.

    Configure a TracerProvider first, for example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            ConsoleSpanExporter,
            SimpleSpanProcessor,
        )

        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        trace.set_tracer_provider(provider)
        instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for tracing. "
            "Install it with: pip install agentloop[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "Tracing enabled without a TracerProvider, loop spans will be discarded"
        )
    else:
        logger.info(f"Loop tracing enabled ({tracer_name})")


def uninstrument() -> None:
    """Stop emitting spans.  Safe to call when not instrumented."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def _span(name: str, attributes: dict, client: bool = False):
    if _tracer is None:
        yield None
        return
    kwargs = {"attributes": attributes}
    if client:
        from opentelemetry.trace import SpanKind
        kwargs["kind"] = SpanKind.CLIENT
    with _tracer.start_as_current_span(name, **kwargs) as span:
        yield span


def loop_span(loop_name: str, turn_id: str, subagent_name: str | None = None):
    """Span around one ``ToolCallingLoop.run()``."""
    attributes = {
        "gen_ai.operation.name": "invoke_agent",
        "gen_ai.agent.name": subagent_name or loop_name,
        "gen_ai.conversation.id": turn_id,
    }
    if subagent_name:
        attributes["agentloop.subagent"] = True
    return _span(f"invoke_agent {attributes['gen_ai.agent.name']}", attributes)


def completion_span(system: str, model: str):
    """Span around one transport fetch."""
    return _span(
        f"chat {model}",
        {
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": system,
            "gen_ai.request.model": model,
        },
        client=True,
    )


def tool_span(tool_name: str, call_id: str):
    """Span around one tool execution."""
    return _span(
        f"execute_tool {tool_name}",
        {
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": call_id,
        },
    )


def record_usage(span, usage, response_model: str | None = None):
    if span is None or usage is None:
        return
    span.set_attribute("gen_ai.usage.input_tokens", usage.prompt_tokens)
    span.set_attribute("gen_ai.usage.output_tokens", usage.completion_tokens)
    if usage.cached_tokens:
        span.set_attribute("gen_ai.usage.cache_read.input_tokens", usage.cached_tokens)
    if response_model:
        span.set_attribute("gen_ai.response.model", response_model)


def record_fetch_result(span, result) -> None:
    """Tag a ``chat`` span with how the fetch ended.

    Rate limits, auth failures and other failures mark the span as an
    error; a cancelled fetch does not.
    """
    if span is None:
        return
    from agentloop.provider import FetchCancelled, FetchSuccess

    outcome = type(result).__name__
    span.set_attribute("agentloop.fetch.outcome", outcome)
    if result.request_id:
        span.set_attribute("gen_ai.response.id", result.request_id)
    if isinstance(result, FetchSuccess):
        span.set_attribute("gen_ai.response.finish_reasons", [result.finish_reason])
        span.set_attribute("agentloop.tool_calls", len(result.tool_calls))
    elif not isinstance(result, FetchCancelled):
        from opentelemetry.trace import StatusCode

        span.set_status(StatusCode.ERROR, result.reason)
        span.set_attribute("error.type", outcome)


def record_loop_result(span, turn, rounds: int) -> None:
    """Tag an ``invoke_agent`` span with the finished turn."""
    if span is None:
        return
    from agentloop.loop import MAX_TOOL_CALLS_EXCEEDED_KEY

    span.set_attribute("agentloop.rounds", rounds)
    span.set_attribute("agentloop.turn.status", turn.status.value)
    if turn.get_metadata(MAX_TOOL_CALLS_EXCEEDED_KEY):
        span.set_attribute("agentloop.tool_call_limit_reached", True)


def record_tool_result(span, result) -> None:
    if span is None:
        return
    span.set_attribute("agentloop.tool.is_error", result.is_error)
    if result.is_error:
        span.set_attribute("error.type", "tool_error")


def record_error(span, exception: BaseException) -> None:
    """Record *exception* on *span* and mark it as failed."""
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
