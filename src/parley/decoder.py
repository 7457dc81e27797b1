"""Incremental decoding of provider response bodies.

A :class:`StreamDecoder` turns raw body bytes into provider-native JSON
events.  Two framings exist:

* ``Framing.SSE`` -- ``data: <json>`` lines, ended by ``data: [DONE]``.
* ``Framing.JSON_OBJECTS`` -- bare JSON objects, each ending in ``}\\n``,
  as sent by Gemini when ``alt=sse`` is not requested.

Units that fail to parse are skipped.  Providers send keep-alives and
stray fragments, and one bad unit should not cost the whole turn.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from enum import Enum

import httpx

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


class Framing(Enum):
    SSE = "sse"
    JSON_OBJECTS = "json_objects"


class StreamDecoder:
    """Buffers body text and extracts complete JSON events.

    ``feed`` may be called with chunks split at arbitrary byte
    boundaries; multi-byte UTF-8 sequences are reassembled and invalid
    bytes are replaced rather than raising.

    Args:
        framing: How events are delimited in the body.
    """

    def __init__(self, framing: Framing = Framing.SSE):
        self.framing = framing
        self.buffer = ""
        self.done = False
        self.error: Exception | None = None
        self.skipped = 0
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes | str) -> list[dict]:
        """Append a chunk and return every event it completed."""
        if self.done:
            return []
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self.buffer += chunk
        if self.framing is Framing.SSE:
            return self._drain_lines()
        return self._drain_objects()

    def close(self) -> list[dict]:
        """Flush at end of body; a final unterminated unit is still parsed."""
        if self.done:
            return []
        self.buffer += self._utf8.decode(b"", final=True)
        if not self.buffer.endswith("\n"):
            self.buffer += "\n"
        events = self.feed("")
        if self.buffer.strip(" \t\r\n,]"):
            self._skip(self.buffer)
        self.buffer = ""
        self.done = True
        return events

    async def decode(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[dict]:
        """Decode an async byte source until the sentinel or EOF.

        A read error ends decoding early.  Events decoded before the
        failure have already been yielded and the exception is kept on
        ``self.error`` for the caller to report.
        """
        try:
            async for chunk in chunks:
                for event in self.feed(chunk):
                    yield event
                if self.done:
                    return
        except (httpx.TransportError, httpx.StreamError, OSError) as exc:
            logger.warning(f"Stream interrupted: {exc}")
            self.error = exc
            self.done = True
            return
        for event in self.close():
            yield event

    # ------------------------------------------------------------------
    # Framing
    # ------------------------------------------------------------------

    def _drain_lines(self) -> list[dict]:
        events = []
        while not self.done:
            newline = self.buffer.find("\n")
            if newline == -1:
                break
            line = self.buffer[:newline].rstrip("\r")
            self.buffer = self.buffer[newline + 1:]
            if not line.startswith(DATA_PREFIX):
                continue
            payload = line[len(DATA_PREFIX):].strip()
            if payload == DONE_SENTINEL:
                self.done = True
                self.buffer = ""
                break
            if payload:
                event = self._parse(payload)
                if event is not None:
                    events.append(event)
        return events

    def _drain_objects(self) -> list[dict]:
        events = []
        # Offsets a unit may begin at: the buffer start, then just past
        # every "}\n" that did not close a parsable unit.
        starts = [0]
        search = 0
        while True:
            end = self.buffer.find("}\n", search)
            if end == -1:
                break
            search = end + 1
            found = self._parse_unit(starts, end)
            if found is None:
                starts.append(end + 2)
                continue
            start, candidate, value = found
            if start > 0:
                self._skip(self.buffer[:start])
            self.buffer = self.buffer[end + 2:]
            starts = [0]
            search = 0
            if isinstance(value, dict):
                events.append(value)
            else:
                self._skip(candidate)
        if self.buffer.strip(" \t\r\n,]") == "":
            self.buffer = ""
        return events

    def _parse_unit(self, starts: list[int], end: int) -> tuple[int, str, object] | None:
        """Parse the earliest unit ending at ``end``.

        Gemini wraps the objects in a JSON array, so separators and
        brackets between objects are not part of any unit.  A unit that
        begins past the buffer start means the text before it was
        malformed.
        """
        for start in starts:
            candidate = self.buffer[start:end + 1].lstrip(" \t\r\n,[")
            if start > 0 and not candidate.startswith("{"):
                continue
            try:
                return start, candidate, json.loads(candidate)
            except json.JSONDecodeError:
                continue
        return None

    def _parse(self, payload: str) -> dict | None:
        try:
            value = json.loads(payload)
        except json.JSONDecodeError:
            self._skip(payload)
            return None
        if not isinstance(value, dict):
            self._skip(payload)
            return None
        return value

    def _skip(self, unit: str) -> None:
        self.skipped += 1
        logger.debug(f"Skipping malformed stream unit: {unit[:200]!r}")
