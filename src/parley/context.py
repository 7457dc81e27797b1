from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from parley.console import InputFn

if TYPE_CHECKING:
    from parley.conversation import ConversationState


@dataclass
class ApprovalPolicy:
    """Per-session approval state for side-effecting tools.

    ``auto_approve`` starts off and is switched on when the user answers
    ``a`` to an approval prompt.
    """

    auto_approve: bool = False


@dataclass
class Context:
    """Runtime context injected into tools that declare a ``context`` parameter.

    The Runner creates one Context per run and passes it automatically.

    Args:
        state: The conversation being driven.
        approval: Approval policy for this session.
        input_fn: Console line reader for approval and feedback prompts.
    """

    state: ConversationState
    approval: ApprovalPolicy = field(default_factory=ApprovalPolicy)
    input_fn: InputFn = input
