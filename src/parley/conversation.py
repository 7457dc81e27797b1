from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from parley.console import prompt_confirm
from parley.errors import PersistenceError
from parley.message import Message
from parley.spill import THRESHOLD, byte_length

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = " [truncated]"
TRUNCATION_QUESTION = (
    "Your last message or assistant response was too large, "
    "recommend truncating history for this session?"
)


class ConversationState(BaseModel):
    model: str
    messages: list[Message] = Field(default_factory=list)


def transcript_path(
    prefix: str, directory: str | Path | None = None, pid: int | None = None
) -> Path:
    """Transcript location for the current shell.

    Keyed by the parent process id so every terminal gets its own
    running conversation.
    """
    folder = Path(directory) if directory is not None else Path(tempfile.gettempdir())
    return folder / f"{prefix}{os.getppid() if pid is None else pid}"


class ConversationStore:
    """Whole-file JSON persistence for a :class:`ConversationState`.

    Before each write the two most recent messages are checked against
    :data:`~parley.spill.THRESHOLD`.  When one is larger the user may
    choose to truncate them, which only affects the file; the live
    state keeps full content until the process exits.

    Args:
        path: The transcript file.
        confirm: Yes/no prompt used for the truncation question.
    """

    def __init__(
        self,
        path: str | Path,
        confirm: Callable[[str], bool] | None = None,
    ):
        self.path = Path(path)
        self.confirm = confirm or (lambda question: prompt_confirm(question, default=True))

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> ConversationState:
        try:
            return ConversationState.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise PersistenceError(f"Unable to read transcript {self.path}: {e}") from e

    def load_or_create(self, model: str, initial: list[Message] | None = None) -> ConversationState:
        if self.exists():
            return self.load()
        return ConversationState(model=model, messages=list(initial or []))

    def save(self, state: ConversationState) -> None:
        persisted = self._truncated_copy(state)
        try:
            self.path.write_text(persisted.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Unable to write transcript file {self.path}: {e}") from e
        logger.debug(f"Saved {len(state.messages)} messages to {self.path}")

    def clear(self) -> bool:
        """Delete the transcript. Returns whether a file was removed."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError(f"Error clearing conversation: {e}") from e
        return True

    def _truncated_copy(self, state: ConversationState) -> ConversationState:
        messages = list(state.messages)
        tail = range(max(len(messages) - 2, 0), len(messages))
        oversized = [i for i in tail if _is_oversized(messages[i])]
        if oversized and self.confirm(TRUNCATION_QUESTION):
            for i in oversized:
                messages[i] = messages[i].with_text(messages[i].text[:THRESHOLD] + TRUNCATION_MARKER)
            logger.info(f"Truncated {len(oversized)} message(s) in persisted transcript")
        return ConversationState(model=state.model, messages=messages)


def _is_oversized(message: Message) -> bool:
    text = message.text
    return text is not None and byte_length(text) > THRESHOLD


def delete_transcripts(prefix: str, directory: str | Path | None = None) -> int:
    """Remove every transcript whose file name starts with ``prefix``."""
    folder = Path(directory) if directory is not None else Path(tempfile.gettempdir())
    deleted = 0
    for path in folder.glob(f"{prefix}*"):
        if not path.is_file():
            continue
        try:
            path.unlink()
            deleted += 1
        except OSError as e:
            logger.error(f"Failed to delete {path}: {e}")
    return deleted
