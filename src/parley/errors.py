"""Exception hierarchy for parley.

Only unrecoverable conditions are raised out of the orchestrator loop.
Tool failures are turned into ``Error:`` results for the model and
malformed stream units are skipped, so neither has an exception here
that escapes a turn.
"""

from __future__ import annotations


class ParleyError(Exception):
    """Base class for all parley errors."""


class TransportError(ParleyError):
    """The HTTP request to the provider failed.

    Args:
        message: Human readable description.
        status_code: HTTP status when the server answered, else ``None``.
        body: Response body returned with an error status, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is None:
            return base
        detail = f"API Error: {self.status_code}"
        if self.body:
            detail += f" - {self.body}"
        return f"{base} ({detail})"


class PersistenceError(ParleyError):
    """The transcript could not be written or read."""


class ToolNotFound(ParleyError):
    """The model asked for a tool that is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name
