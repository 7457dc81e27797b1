import logging
import sys
from collections.abc import AsyncIterator
from dataclasses import dataclass, replace
from typing import TextIO

from parley.console import InputFn
from parley.context import ApprovalPolicy, Context
from parley.conversation import ConversationState, ConversationStore
from parley.errors import ToolNotFound, TransportError
from parley.events import RawResponseEvent, RunCompleteEvent, RunItemEvent, StreamEvent
from parley.instrumentation import annotate, record_error, tool_span, turn_span
from parley.message import Content, Message, MessageRole, TextContent, ToolCallRequest
from parley.provider import ProviderAdapter, RequestOptions
from parley.spill import spill_if_large
from parley.streaming import TurnAccumulator
from parley.tools import ToolExecutionError, ToolRegistry, parse_arguments

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """The result of a single Runner.run() invocation."""

    last_message: Message
    tool_rounds: int = 0


@dataclass
class _ToolOutcome:
    """Result of executing a single tool call."""

    output: str
    is_error: bool


class Runner:
    """Drives the request / execute / respond loop for one conversation.

    Each round streams a response from the provider.  A plain text
    answer is appended and ends the run; tool calls are executed in the
    order the model listed them, their results appended, the transcript
    saved, and the next round starts.  Nothing bounds the number of
    rounds unless ``max_rounds`` is given.

    ``run()`` drains ``iter()`` and echoes text to ``output`` as it
    arrives.  ``iter()`` is the event-level entry point.

    Args:
        provider: Adapter for the configured model provider.
        store: Where the conversation is saved after every round.
        tools: Tools the model may call. ``None`` disables tool calling.
        options: Request options; ``tools`` on it is filled from ``tools``.
        approval: Approval policy shared by every run of this session.
        input_fn: Console line reader for tool prompts.
        output: Stream for model text. Defaults to stdout.
        log_stream: Stream for tool notices. Defaults to stderr.
        suppress_output: Do not echo text or tool notices.
        max_rounds: Optional cap on tool rounds per run.
        spill_dir: Directory for oversized tool output files.
    """

    def __init__(
        self,
        provider: ProviderAdapter,
        store: ConversationStore,
        tools: ToolRegistry | None = None,
        options: RequestOptions | None = None,
        approval: ApprovalPolicy | None = None,
        input_fn: InputFn = input,
        output: TextIO | None = None,
        log_stream: TextIO | None = None,
        suppress_output: bool = False,
        max_rounds: int | None = None,
        spill_dir: str | None = None,
    ):
        self.provider = provider
        self.store = store
        self.tools = tools or ToolRegistry()
        self.options = replace(options or RequestOptions(), tools=self.tools if len(self.tools) else None)
        self.approval = approval or ApprovalPolicy()
        self.input_fn = input_fn
        self.output = output
        self.log_stream = log_stream
        self.suppress_output = suppress_output
        self.max_rounds = max_rounds
        self.spill_dir = spill_dir

    async def run(
        self, state: ConversationState, user_content: str | Content | None = None,
    ) -> RunResult:
        """Run the loop until the model answers with text."""
        out = self.output or sys.stdout
        err = self.log_stream or sys.stderr
        result: RunResult | None = None
        pending_newline = False
        async for event in self.iter(state, user_content):
            if isinstance(event, RawResponseEvent):
                if not self.suppress_output:
                    out.write(event.content)
                    out.flush()
                    pending_newline = True
                continue
            if pending_newline:
                out.write("\n")
                out.flush()
                pending_newline = False
            if isinstance(event, RunItemEvent) and not self.suppress_output:
                if event.name == "tool_call":
                    print(
                        f"[Tool: {event.data['tool_name']} with args: {event.data['arguments']}]",
                        file=err,
                    )
                elif event.name == "stream_interrupted":
                    print(f"\nStream error: {event.data['error']}", file=err)
            elif isinstance(event, RunCompleteEvent):
                result = event.result
        if result is None:
            raise RuntimeError("iter() ended without emitting RunCompleteEvent")
        return result

    async def iter(
        self, state: ConversationState, user_content: str | Content | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run the loop, yielding events as execution proceeds.

        Raises:
            TransportError: A provider request failed. Messages added by
                this run that were never saved are removed again.
            PersistenceError: The transcript could not be written.
        """
        start = len(state.messages)
        if user_content is not None:
            if isinstance(user_content, str):
                user_content = TextContent(text=user_content)
            state.messages.append(Message(role=MessageRole.USER, content=user_content))

        ctx = Context(state=state, approval=self.approval, input_fn=self.input_fn)
        rounds = 0
        async with turn_span(state.model, self.provider.name) as span:
            while True:
                turn = TurnAccumulator(default_role=self.provider.default_role)
                try:
                    async for delta in self.provider.stream(state, self.options, turn):
                        yield RawResponseEvent(content=delta)
                except TransportError as e:
                    logger.error(f"Provider request failed: {e}")
                    record_error(span, e)
                    annotate(span, {"tool_rounds": rounds})
                    if rounds == 0:
                        del state.messages[start:]
                    raise

                result = turn.finish()
                if result.interrupted is not None:
                    yield RunItemEvent(name="stream_interrupted", data={"error": str(result.interrupted)})

                # No tool calls: final text response
                if not result.tool_calls:
                    msg = Message.text_message(result.role, result.text)
                    state.messages.append(msg)
                    self.store.save(state)
                    yield RunItemEvent(name="message", data={"content": result.text})
                    annotate(span, {"tool_rounds": rounds})
                    yield RunCompleteEvent(result=RunResult(last_message=msg, tool_rounds=rounds))
                    return

                state.messages.append(Message.tool_calls(result.tool_calls))
                for call in result.tool_calls:
                    yield RunItemEvent(name="tool_call", data={
                        "tool_name": call.name, "call_id": call.id, "arguments": call.arguments,
                    })
                    outcome = await self._execute_one(call, ctx)
                    state.messages.append(Message.tool_result(call.id, outcome.output))
                    yield RunItemEvent(name="tool_result", data={
                        "tool_name": call.name, "call_id": call.id,
                        "output": outcome.output, "is_error": outcome.is_error,
                    })
                self.store.save(state)
                rounds += 1

                if self.max_rounds is not None and rounds >= self.max_rounds:
                    logger.warning(f"Stopping after {rounds} tool rounds")
                    annotate(span, {"tool_rounds": rounds})
                    yield RunCompleteEvent(result=RunResult(
                        last_message=state.messages[-1], tool_rounds=rounds,
                    ))
                    return

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _execute_one(self, call: ToolCallRequest, ctx: Context) -> _ToolOutcome:
        args = parse_arguments(call.arguments)
        logger.info(f"Calling {call.name} with {args}")
        async with tool_span(call.name, call.id) as span:
            try:
                output = await self.tools.execute(call.name, args, ctx)
            except ToolNotFound as e:
                logger.warning(f"Tool not found: {call.name}")
                record_error(span, e)
                return _ToolOutcome(output=f"Error: {e}", is_error=True)
            except ToolExecutionError as e:
                logger.info(f"Tool {call.name} failed: {e}")
                record_error(span, e)
                return _ToolOutcome(output=f"Error: {e}", is_error=True)
            except Exception as e:
                logger.exception(f"Tool {call.name} raised")
                record_error(span, e)
                return _ToolOutcome(output=f"Error: {e}", is_error=True)
            text = spill_if_large(call.name, output, self.spill_dir)
            annotate(span, {"tool.spilled": text != output})
        return _ToolOutcome(output=text, is_error=False)
