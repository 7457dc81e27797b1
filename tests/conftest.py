import io
import json

import httpx
import pytest

from parley.context import ApprovalPolicy, Context
from parley.conversation import ConversationState, ConversationStore
from parley.provider import GeminiAdapter, HTTPTransport, OpenAIAdapter, RequestOptions
from parley.runner import Runner
from parley.settings import ProviderSettings
from parley.tools import ToolRegistry, tool


# ---------------------------------------------------------------------------
# Stream body builders (OpenAI chat-completions and Gemini event shapes)
# ---------------------------------------------------------------------------

def sse_body(*events: dict, done: bool = True) -> bytes:
    """Encode events as an SSE body, optionally ended by ``[DONE]``."""
    lines = [f"data: {json.dumps(e)}\n\n" for e in events]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def text_events(*deltas: str, role: str = "assistant") -> list[dict]:
    """OpenAI events streaming ``deltas`` as assistant text."""
    events = [{"choices": [{"index": 0, "delta": {"role": role}}]}]
    events += [{"choices": [{"index": 0, "delta": {"content": d}}]} for d in deltas]
    return events


def tool_call_events(
    calls: list[tuple[str, str, dict | str]], fragment_size: int = 8,
) -> list[dict]:
    """OpenAI events streaming tool calls with fragmented arguments.

    Each item in *calls* is ``(call_id, name, args)``; ``args`` may be a
    dict or raw (possibly invalid) JSON text.
    """
    events = [{"choices": [{"index": 0, "delta": {"role": "assistant"}}]}]
    for index, (call_id, name, args) in enumerate(calls):
        raw = args if isinstance(args, str) else json.dumps(args)
        events.append({"choices": [{"index": 0, "delta": {"tool_calls": [{
            "index": index,
            "id": call_id,
            "type": "function",
            "function": {"name": name, "arguments": ""},
        }]}}]})
        for i in range(0, len(raw), fragment_size):
            events.append({"choices": [{"index": 0, "delta": {"tool_calls": [{
                "index": index,
                "function": {"arguments": raw[i:i + fragment_size]},
            }]}}]})
    return events


def gemini_text_event(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


def gemini_call_event(name: str, args: dict) -> dict:
    return {"candidates": [{"content": {
        "role": "model",
        "parts": [{"functionCall": {"name": name, "args": args}}],
    }}]}


class BrokenStream(httpx.AsyncByteStream):
    """Response body that fails after sending ``chunks``."""

    def __init__(self, *chunks: bytes):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        raise httpx.ReadError("connection reset")


# ---------------------------------------------------------------------------
# Mock HTTP API
# ---------------------------------------------------------------------------

class MockAPI:
    """Queue of canned HTTP responses served through httpx.MockTransport."""

    def __init__(self):
        self.responses: list[httpx.Response] = []
        self.requests: list[httpx.Request] = []

    def queue(self, body: bytes = b"", status_code: int = 200, stream=None) -> None:
        if stream is not None:
            self.responses.append(httpx.Response(status_code, stream=stream))
        else:
            self.responses.append(httpx.Response(status_code, content=body))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]

    def transport(self) -> HTTPTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return HTTPTransport(client=client)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@tool
def echo(text: str):
    """Echo text back."""
    return text


@tool
def ping():
    """Answer with pong."""
    return "pong"


@tool
def get_data():
    """Return structured data."""
    return {"items": [1, 2, 3]}


@tool
def big_output(size: int):
    """Return a long string."""
    return "x" * size


@tool
def failing():
    """Always raises."""
    raise RuntimeError("kaboom")


@tool
def model_of(context: Context):
    """Report the model of the running conversation."""
    return f"model={context.state.model}"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_api():
    return MockAPI()


@pytest.fixture
def openai_settings():
    return ProviderSettings(
        model="gpt-4o-mini",
        host="api.openai.com",
        endpoint="/v1/chat/completions",
        api_key_variable="OPENAI_API_KEY",
    )


@pytest.fixture
def gemini_settings():
    return ProviderSettings(
        model="gemini-1.5-flash-latest",
        host="generativelanguage.googleapis.com",
        api_key_variable="GEMINI_API_KEY",
    )


@pytest.fixture
def store(tmp_path):
    return ConversationStore(tmp_path / "transcript-1", confirm=lambda question: True)


@pytest.fixture
def state():
    return ConversationState(model="gpt-4o-mini")


@pytest.fixture
def registry():
    return ToolRegistry([echo, ping, get_data, big_output, failing, model_of])


@pytest.fixture
def make_runner(mock_api, store, openai_settings, gemini_settings, registry, tmp_path):
    """Factory fixture building a Runner against the mock API.

    ``output`` and ``log_stream`` are StringIO objects reachable as
    ``runner.output`` and ``runner.log_stream``.
    """
    def _make(
        gemini=False,
        tools=registry,
        max_rounds=None,
        suppress_output=False,
        input_fn=input,
        approval=None,
        raw_stream=False,
    ):
        if gemini:
            settings = gemini_settings.model_copy(update={"raw_stream": raw_stream})
            provider = GeminiAdapter(settings, "gemini-key", transport=mock_api.transport())
        else:
            provider = OpenAIAdapter(openai_settings, "sk-test", transport=mock_api.transport())
        return Runner(
            provider,
            store,
            tools=tools,
            options=RequestOptions(user="tester"),
            approval=approval or ApprovalPolicy(),
            input_fn=input_fn,
            output=io.StringIO(),
            log_stream=io.StringIO(),
            suppress_output=suppress_output,
            max_rounds=max_rounds,
            spill_dir=str(tmp_path),
        )
    return _make
