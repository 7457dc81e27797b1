"""Provider adapters.

A :class:`ProviderAdapter` owns everything provider specific: the
request URL and headers, the request body built from the conversation,
the stream framing, and the translation of streamed events back into
text deltas and tool-call fragments.  Two adapters exist,
:class:`OpenAIAdapter` for chat-completions style APIs and
:class:`GeminiAdapter` for ``streamGenerateContent``.
"""

from __future__ import annotations

import getpass
import json
import logging
import re
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import httpx

from parley.conversation import ConversationState
from parley.decoder import Framing, StreamDecoder
from parley.errors import TransportError
from parley.instrumentation import annotate, completion_span, record_error
from parley.message import (
    ImagePart,
    Message,
    MessageRole,
    PartsContent,
    ToolCallsContent,
    ToolResultContent,
)
from parley.settings import ProviderSettings
from parley.streaming import TurnAccumulator
from parley.tools import ToolRegistry, parse_arguments

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600.0


# ----------------------------------------------------------------------
# Request options and field omission rules
# ----------------------------------------------------------------------


def _default_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "user"


@dataclass
class RequestOptions:
    """Per-request knobs that do not live in the conversation."""

    max_tokens: int = 2048
    temperature: float = 0.6
    user: str = field(default_factory=_default_user)
    vision_detail: str = "high"
    tools: ToolRegistry | None = None


@dataclass(frozen=True)
class OmissionRule:
    """Request fields a provider rejects for some models.

    Args:
        name: Identifier for logs.
        applies: Predicate over ``(model, host, provider_name)``.
        fields: Body fields to leave out when the predicate holds.
    """

    name: str
    applies: Callable[[str, str, str], bool]
    fields: frozenset[str]


_REASONING_MODEL_RE = re.compile(r"^(o\d|gpt-5)")


def _is_openai_reasoning_model(model: str, host: str, provider_name: str) -> bool:
    return "openai" in host and bool(_REASONING_MODEL_RE.match(model))


OMISSION_RULES: tuple[OmissionRule, ...] = (
    OmissionRule(
        name="openai-reasoning",
        applies=_is_openai_reasoning_model,
        fields=frozenset({"max_tokens", "temperature"}),
    ),
    OmissionRule(
        name="mistral-user",
        applies=lambda model, host, provider_name: provider_name == "mistral",
        fields=frozenset({"user"}),
    ),
)


def omitted_fields(
    model: str,
    host: str,
    provider_name: str = "",
    rules: tuple[OmissionRule, ...] = OMISSION_RULES,
) -> frozenset[str]:
    omitted: set[str] = set()
    for rule in rules:
        if rule.applies(model, host, provider_name):
            logger.debug(f"Omission rule {rule.name} applies to {model}@{host}")
            omitted |= rule.fields
    return frozenset(omitted)


# ----------------------------------------------------------------------
# Transport
# ----------------------------------------------------------------------


class HTTPTransport:
    """Streams one POST request at a time.

    Connection failures and error statuses become :class:`TransportError`.
    Failures while reading the body are left to the decoder, which keeps
    whatever arrived before them.

    Args:
        timeout: Client timeout in seconds.
        client: Pre-built client, mainly for tests.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, client: httpx.AsyncClient | None = None):
        self.timeout = timeout
        self._client = client

    @asynccontextmanager
    async def stream(
        self,
        url: str,
        *,
        body: dict,
        headers: dict[str, str],
        params: dict[str, str] | None = None,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            async with client.stream(
                "POST", url, json=body, headers=headers, params=params,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise TransportError(
                        "Provider request failed",
                        status_code=response.status_code,
                        body=response.text,
                    )
                yield response.aiter_bytes()
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP request error: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()


# ----------------------------------------------------------------------
# Adapters
# ----------------------------------------------------------------------


def _as_list(value) -> list:
    return value if isinstance(value, list) else []


def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


class ProviderAdapter(ABC):
    """Provider-agnostic interface used by the Runner.

    Args:
        settings: Host, endpoint and model of the provider.
        api_key: Secret sent with every request.
        provider_name: Key of the provider in the settings file; some
            omission rules match on it.
        transport: HTTP transport. A fresh one is created by default.
        rules: Field omission rules for this adapter.
    """

    name = "provider"
    default_role = "assistant"

    def __init__(
        self,
        settings: ProviderSettings,
        api_key: str,
        provider_name: str = "",
        transport: HTTPTransport | None = None,
        rules: tuple[OmissionRule, ...] = OMISSION_RULES,
    ):
        self.settings = settings
        self.api_key = api_key
        self.provider_name = provider_name
        self.transport = transport or HTTPTransport()
        self.rules = rules

    @property
    def framing(self) -> Framing:
        return Framing.SSE

    def omitted(self, model: str) -> frozenset[str]:
        return omitted_fields(model, self.settings.host, self.provider_name, self.rules)

    @abstractmethod
    def url(self, model: str) -> str:
        ...

    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def params(self) -> dict[str, str] | None:
        return None

    @abstractmethod
    def build_request(self, state: ConversationState, options: RequestOptions) -> dict:
        """Translate the conversation into this provider's request body."""

    @abstractmethod
    def normalize_event(self, event: dict, turn: TurnAccumulator) -> str | None:
        """Fold one streamed event into ``turn``.

        Returns the text delta carried by the event, if any, after
        appending it to the turn.
        """

    async def stream(
        self, state: ConversationState, options: RequestOptions, turn: TurnAccumulator
    ) -> AsyncIterator[str]:
        """Send the conversation and yield text deltas as they arrive.

        Tool-call fragments and the role are collected on ``turn``.  If
        the body is cut off, ``turn.interrupted`` holds the read error.

        Raises:
            TransportError: The request could not be made or was refused.
        """
        body = self.build_request(state, options)
        decoder = StreamDecoder(self.framing)
        async with completion_span(self.name, state.model, self.settings.host) as span:
            logger.info(f"Sending {len(state.messages)} messages to {self.name} model {state.model}")
            try:
                async with self.transport.stream(
                    self.url(state.model),
                    body=body,
                    headers=self.headers(),
                    params=self.params(),
                ) as chunks:
                    async for event in decoder.decode(chunks):
                        delta = self.normalize_event(event, turn)
                        if delta:
                            yield delta
            except TransportError as e:
                record_error(span, e)
                raise
            annotate(span, {
                "stream.skipped_units": decoder.skipped,
                "stream.interrupted": decoder.error is not None,
            })
        turn.interrupted = decoder.error
        if decoder.skipped:
            logger.debug(f"Skipped {decoder.skipped} malformed stream units")


class OpenAIAdapter(ProviderAdapter):
    name = "openai"

    def url(self, model: str) -> str:
        return f"https://{self.settings.host}{self.settings.endpoint}"

    def headers(self) -> dict[str, str]:
        return {**super().headers(), "Authorization": f"Bearer {self.api_key}"}

    def build_request(self, state: ConversationState, options: RequestOptions) -> dict:
        body: dict = {
            "messages": [self._convert(m, options) for m in state.messages],
            "model": state.model,
            "stream": True,
        }
        omitted = self.omitted(state.model)
        optional = {
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "user": options.user,
        }
        for key, value in optional.items():
            if key not in omitted:
                body[key] = value
        if options.tools:
            body["tools"] = options.tools.to_openai_format()
        return body

    def _convert(self, message: Message, options: RequestOptions) -> dict:
        content = message.content
        if isinstance(content, ToolResultContent):
            return {"role": "tool", "tool_call_id": content.call_id, "content": content.text}
        if isinstance(content, ToolCallsContent):
            return {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments},
                    }
                    for call in content.calls
                ],
            }
        if isinstance(content, PartsContent):
            parts = []
            for part in content.parts:
                if isinstance(part, ImagePart):
                    parts.append({
                        "type": "image_url",
                        "image_url": {"url": part.data_url, "detail": options.vision_detail},
                    })
                else:
                    parts.append({"type": "text", "text": part.text})
            return {"role": message.role.value, "content": parts}
        return {"role": message.role.value, "content": content.text}

    def normalize_event(self, event: dict, turn: TurnAccumulator) -> str | None:
        choices = _as_list(event.get("choices"))
        if not choices:
            return None
        delta = _as_dict(_as_dict(choices[0]).get("delta"))

        role = delta.get("role")
        if isinstance(role, str):
            turn.set_role(role)

        for tc in _as_list(delta.get("tool_calls")):
            tc = _as_dict(tc)
            index = tc.get("index", 0)
            if not isinstance(index, int):
                continue
            function = _as_dict(tc.get("function"))
            turn.tool_calls.merge(
                index,
                call_id=tc.get("id") if isinstance(tc.get("id"), str) else None,
                name=function.get("name") if isinstance(function.get("name"), str) else None,
                arguments=function.get("arguments") if isinstance(function.get("arguments"), str) else None,
            )

        text = delta.get("content")
        if isinstance(text, str) and text:
            turn.append_text(text)
            return text
        return None


class GeminiAdapter(ProviderAdapter):
    name = "gemini"
    default_role = "model"

    _ROLES = {
        MessageRole.SYSTEM: "user",
        MessageRole.USER: "user",
        MessageRole.ASSISTANT: "model",
        MessageRole.TOOL: "user",
    }

    @property
    def framing(self) -> Framing:
        return Framing.JSON_OBJECTS if self.settings.raw_stream else Framing.SSE

    def url(self, model: str) -> str:
        return f"https://{self.settings.host}/v1beta/models/{model}:streamGenerateContent"

    def params(self) -> dict[str, str]:
        if self.settings.raw_stream:
            return {"key": self.api_key}
        return {"alt": "sse", "key": self.api_key}

    def build_request(self, state: ConversationState, options: RequestOptions) -> dict:
        contents = []
        call_names: dict[str, str] = {}
        for message in state.messages:
            if isinstance(message.content, ToolCallsContent):
                # Results answer the calls of the nearest preceding round.
                call_names = {call.id: call.name for call in message.content.calls}
            contents.append(self._convert(message, call_names))

        omitted = self.omitted(state.model)
        config = {}
        if "max_tokens" not in omitted:
            config["maxOutputTokens"] = options.max_tokens
        if "temperature" not in omitted:
            config["temperature"] = options.temperature

        body: dict = {
            "contents": contents,
            "generationConfig": config,
        }
        if options.tools:
            body["tools"] = [options.tools.to_gemini_format()]
        return body

    def _convert(self, message: Message, call_names: dict[str, str]) -> dict:
        role = self._ROLES[message.role]
        content = message.content
        if isinstance(content, ToolResultContent):
            return {
                "role": "user",
                "parts": [{
                    "functionResponse": {
                        "name": call_names.get(content.call_id, "tool_result"),
                        "response": {"content": content.text},
                    },
                }],
            }
        if isinstance(content, ToolCallsContent):
            return {
                "role": "model",
                "parts": [
                    {"functionCall": {"name": call.name, "args": parse_arguments(call.arguments)}}
                    for call in content.calls
                ],
            }
        if isinstance(content, PartsContent):
            parts = []
            for part in content.parts:
                if isinstance(part, ImagePart):
                    parts.append({"inlineData": {"mimeType": part.mime, "data": part.base64}})
                else:
                    parts.append({"text": part.text})
            return {"role": role, "parts": parts}
        return {"role": role, "parts": [{"text": content.text}]}

    def normalize_event(self, event: dict, turn: TurnAccumulator) -> str | None:
        deltas = []
        for candidate in _as_list(event.get("candidates")):
            content = _as_dict(_as_dict(candidate).get("content"))
            role = content.get("role")
            if isinstance(role, str):
                turn.set_role(role)
            for part in _as_list(content.get("parts")):
                part = _as_dict(part)
                call = _as_dict(part.get("functionCall"))
                if call:
                    # Gemini sends each call whole, so it takes the next free slot.
                    # Synthesized ids must stay unique across rounds.
                    index = turn.tool_calls.next_index()
                    turn.tool_calls.merge(
                        index,
                        call_id=call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                        name=call.get("name") or "",
                        arguments=json.dumps(call.get("args") or {}),
                    )
                text = part.get("text")
                if isinstance(text, str) and text and not part.get("thought"):
                    deltas.append(text)
        if not deltas:
            return None
        text = "".join(deltas)
        turn.append_text(text)
        return text


def adapter_for(
    settings: ProviderSettings,
    api_key: str,
    provider_name: str = "",
    transport: HTTPTransport | None = None,
) -> ProviderAdapter:
    """Pick the adapter matching the configured model."""
    cls = GeminiAdapter if "gemini-" in settings.model else OpenAIAdapter
    return cls(settings, api_key, provider_name=provider_name, transport=transport)
