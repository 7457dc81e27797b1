"""Streaming primitives for provider responses.

Adapters translate provider events into text deltas and tool-call
fragments merged by index.  The :class:`ToolCallAccumulator` reassembles
tool calls whose arguments arrive in pieces across multiple events, and the
:class:`TurnAccumulator` collects everything one streamed turn produced.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from parley.message import MessageRole, ToolCallRequest


@dataclass
class _PendingCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments.

    ``id`` and ``name`` keep the first non-empty value seen for an
    index.  ``arguments`` is the concatenation of every fragment in
    arrival order; no fragment is assumed to be valid JSON on its own.
    """

    def __init__(self) -> None:
        self._pending: dict[int, _PendingCall] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def merge(
        self,
        index: int,
        call_id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> None:
        tc = self._pending.setdefault(index, _PendingCall())
        if call_id and not tc.id:
            tc.id = call_id
        if name and not tc.name:
            tc.name = name
        if arguments:
            tc.arguments += arguments

    def next_index(self) -> int:
        """Smallest index above every index seen so far."""
        return max(self._pending, default=-1) + 1

    def finalize(self) -> list[ToolCallRequest]:
        """Return completed tool calls in index order and clear the buffer."""
        calls = [
            ToolCallRequest(id=tc.id, name=tc.name, arguments=tc.arguments)
            for _, tc in sorted(self._pending.items())
        ]
        self._pending.clear()
        return calls


@dataclass
class TurnResult:
    """Everything one streamed turn produced."""

    role: MessageRole
    text: str
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    interrupted: Exception | None = None


class TurnAccumulator:
    """Mutable state for one streamed turn.

    Role is captured once: the first non-empty value wins.
    """

    def __init__(self, default_role: str = "assistant") -> None:
        self.default_role = default_role
        self.role: str = ""
        self.text = ""
        self.tool_calls = ToolCallAccumulator()
        self.interrupted: Exception | None = None

    def set_role(self, role: str | None) -> None:
        if role and not self.role:
            self.role = role

    def append_text(self, delta: str) -> None:
        self.text += delta

    def finish(self) -> TurnResult:
        # Gemini streams its own "model" role.
        role = self.role or self.default_role
        if role not in ("assistant", "system", "user"):
            role = "assistant"
        return TurnResult(
            role=MessageRole(role),
            text=self.text,
            tool_calls=self.tool_calls.finalize(),
            interrupted=self.interrupted,
        )
