"""Large tool output handling.

Outputs above :data:`THRESHOLD` bytes are written to a temp file and
replaced by a short notice, so one huge ``cat`` does not blow up the
context window or the transcript.
"""

import logging
import re
import tempfile
import time
from pathlib import Path

logger = logging.getLogger(__name__)

THRESHOLD = 32 * 1024
PREVIEW_CHARS = 2000


def byte_length(text: str) -> int:
    return len(text.encode("utf-8", errors="replace"))


def spill_if_large(
    source_label: str, text: str, directory: str | Path | None = None
) -> str:
    """Return ``text`` unchanged, or a pointer to a file holding it.

    Args:
        source_label: Where the text came from, usually the tool name.
            Used in the temp file name.
        text: The full output.
        directory: Where to write the spill file. Defaults to the
            system temp directory.

    Returns:
        The text to place in the tool result message.
    """
    byte_count = byte_length(text)
    if byte_count <= THRESHOLD:
        return text

    label = re.sub(r"[^A-Za-z0-9_.-]", "_", source_label) or "output"
    folder = Path(directory) if directory is not None else Path(tempfile.gettempdir())
    path = folder / f"tool_output_{label}_{time.time_ns()}.txt"
    try:
        path.write_text(text, encoding="utf-8")
    except OSError as e:
        logger.warning(f"Could not write large output to temp file: {e}")
        return (
            f"[Output truncated due to size ({byte_count} bytes). "
            f"Error writing temp file: {e}]\n\n{text[:THRESHOLD]}"
        )

    line_count = len(text.splitlines())
    logger.info(f"Spilled {byte_count} bytes from {source_label} to {path}")
    return (
        f"Output too large ({byte_count} bytes, {line_count} lines). "
        f"Written to temp file: {path}\n\n"
        "To read the contents, use the read_file tool with this path, "
        "in chunks using its offset and limit arguments.\n"
        f"Preview (first 2k chars):\n{text[:PREVIEW_CHARS]}\n[...]"
    )
