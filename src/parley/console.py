"""Blocking console prompts.

Every prompt takes an ``input_fn`` so callers (and tests) can replace
the terminal.  End of input counts as the default answer.
"""

from __future__ import annotations

import sys
from collections.abc import Callable

InputFn = Callable[[str], str]

APPROVE = "y"
REJECT = "n"
ALWAYS = "a"


def prompt_text(prompt: str, input_fn: InputFn = input, default: str = "") -> str:
    try:
        return input_fn(prompt)
    except EOFError:
        return default


def prompt_confirm(question: str, default: bool = True, input_fn: InputFn = input) -> bool:
    """Ask a yes/no question. An empty answer picks ``default``."""
    hint = "[Y/n]" if default else "[y/N]"
    answer = prompt_text(f"{question} {hint} ", input_fn).strip().lower()
    if not answer:
        return default
    return answer in ("y", "yes")


def prompt_approval(action: str, input_fn: InputFn = input) -> str:
    """Ask whether to run ``action``.

    Returns ``"y"``, ``"n"`` or ``"a"`` (approve for the rest of the
    session). Anything unrecognised is a rejection.
    """
    print("\n\x1b[33m> The agent wants to execute the following command:\x1b[0m", file=sys.stderr)
    print(f"\x1b[36m{action}\x1b[0m", file=sys.stderr)
    answer = prompt_text(
        "\x1b[33m> Do you approve this execution? [y/N/a]: \x1b[0m", input_fn
    ).strip().lower()
    if answer in (APPROVE, "yes"):
        return APPROVE
    if answer in (ALWAYS, "always"):
        return ALWAYS
    return REJECT
