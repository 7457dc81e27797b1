"""Optional OpenTelemetry tracing.

``parley --trace`` turns it on for the CLI; library callers use
:func:`instrument`.  Spans are exported through whatever global
TracerProvider is configured, e.g. by running under
``opentelemetry-instrument``.

Three spans are emitted, named after the GenAI semantic conventions:

* ``invoke_agent <model>`` around one ``Runner`` run, with
  ``parley.tool_rounds``.
* ``chat <model>`` around each streamed request, with
  ``parley.stream.skipped_units`` and ``parley.stream.interrupted``.
* ``execute_tool <name>`` around each tool call, with
  ``parley.tool.spilled``.

Every helper yields ``None`` while tracing is off, so callers never
check whether ``opentelemetry-api`` is installed.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "parley") -> None:
    """Start emitting spans through the global TracerProvider.

    Raises:
        ImportError: ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError("Tracing needs opentelemetry-api: pip install parley[otel]")
    from opentelemetry import trace

    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info("Tracing enabled without a TracerProvider; spans are dropped")
    else:
        logger.info(f"Tracing enabled as {tracer_name}")


def uninstrument() -> None:
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


def turn_span(model: str, provider: str | None = None):
    """Span for one run of the tool loop, every round included."""
    attributes = {"gen_ai.operation.name": "invoke_agent", "gen_ai.request.model": model}
    if provider:
        attributes["gen_ai.provider.name"] = provider
    return _span(f"invoke_agent {model}", attributes)


def completion_span(provider: str, model: str, host: str | None = None):
    """Client span for one streamed provider request."""
    attributes = {
        "gen_ai.operation.name": "chat",
        "gen_ai.provider.name": provider,
        "gen_ai.request.model": model,
    }
    if host:
        attributes["server.address"] = host
    return _span(f"chat {model}", attributes, client=True)


def tool_span(tool_name: str, call_id: str):
    return _span(f"execute_tool {tool_name}", {
        "gen_ai.operation.name": "execute_tool",
        "gen_ai.tool.name": tool_name,
        "gen_ai.tool.call.id": call_id,
    })


def annotate(span, attributes: dict) -> None:
    """Set ``parley.``-prefixed attributes; no-op when *span* is ``None``."""
    if span is None:
        return
    for key, value in attributes.items():
        span.set_attribute(f"parley.{key}", value)


def record_error(span, exception: BaseException) -> None:
    """Mark *span* failed with *exception*; no-op when *span* is ``None``."""
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
