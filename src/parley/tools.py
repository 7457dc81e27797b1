"""Tool definitions and the tool registry.

Decorate a function with :func:`tool` to expose it to the model.  The
JSON schema is derived from the signature, and parameter descriptions
are read from a Google or reST style docstring::

    @tool
    def read_file(path: str):
        \"\"\"Read a file.

        Args:
            path: The path to the file to read.
        \"\"\"

A parameter named ``context`` is never advertised; the Runner fills it
with the active :class:`~parley.context.Context`.
"""

from __future__ import annotations

import inspect
import json
import re
import types
import typing
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import BaseModel, Field

from parley.errors import ToolNotFound

CONTEXT_PARAM = "context"

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
}


class ToolExecutionError(Exception):
    """Raised by a tool body to report a failure back to the model."""


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any


def _json_type(annotation: Any) -> str:
    origin = typing.get_origin(annotation)
    if origin in (typing.Union, types.UnionType):
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        return _json_type(args[0]) if args else "null"
    return _JSON_TYPES.get(origin or annotation, "string")


_GOOGLE_SECTION = re.compile(r"^\s*(Args|Arguments|Parameters):\s*$")
_GOOGLE_PARAM = re.compile(r"^(\s*)(\w+)\s*(\([^)]*\))?\s*:\s*(.*)$")
_REST_PARAM = re.compile(r"^\s*:param\s+(?:\w+\s+)?(\w+)\s*:\s*(.*)$")


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Extract per-parameter descriptions from a docstring."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}

    lines = doc.splitlines()
    descriptions: dict[str, str] = {}

    for line in lines:
        match = _REST_PARAM.match(line)
        if match:
            descriptions[match.group(1)] = match.group(2).strip()
    if descriptions:
        return descriptions

    in_section = False
    param_indent: int | None = None
    current: str | None = None
    for line in lines:
        if _GOOGLE_SECTION.match(line):
            in_section = True
            continue
        if not in_section:
            continue
        if not line.strip():
            continue
        indent = len(line) - len(line.lstrip())
        if indent == 0:
            break
        match = _GOOGLE_PARAM.match(line)
        if match and (param_indent is None or indent == param_indent):
            param_indent = indent
            current = match.group(2)
            descriptions[current] = match.group(4).strip()
        elif current is not None:
            descriptions[current] += "\n" + line.strip()
    return descriptions


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    signature = inspect.signature(func)
    try:
        hints = typing.get_type_hints(func)
    except (NameError, TypeError):
        hints = {}
    descriptions = _parse_param_descriptions(func)

    properties = {}
    required = []
    for name, param in signature.parameters.items():
        if name == CONTEXT_PARAM:
            continue
        annotation = hints.get(name, param.annotation)
        if annotation is inspect.Parameter.empty:
            annotation = str
        properties[name] = {
            "type": _json_type(annotation),
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)

    schema = {"type": "object", "properties": properties, "required": required}
    return schema, required


class Tool(BaseModel):
    """A callable exposed to the model, plus its advertised definition."""

    model_config = {"arbitrary_types_allowed": True}

    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict

    @property
    def takes_context(self) -> bool:
        return CONTEXT_PARAM in inspect.signature(self.func).parameters

    def openai_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    def gemini_declaration(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters_schema,
        }

    async def __call__(self, **kwargs) -> ToolCallResult:
        output = self.func(**kwargs)
        if inspect.isawaitable(output):
            output = await output
        return ToolCallResult(tool_name=self.name, output=output)


def tool(
    func: Callable | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
):
    """Turn a function into a :class:`Tool`. Usable bare or with arguments."""

    def wrap(f: Callable) -> Tool:
        schema, _ = _build_parameters_schema(f)
        doc = inspect.getdoc(f) or ""
        return Tool(
            func=f,
            name=name or f.__name__,
            description=description if description is not None else doc.split("\n\n")[0].strip(),
            parameters_schema=schema,
        )

    if func is not None:
        return wrap(func)
    return wrap


class ToolRegistry:
    """Tools available for one session, keyed by name.

    Registration order is preserved and is the order the tools are
    advertised in.
    """

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for t in tools:
            self.register(t)

    def register(self, t: Tool) -> None:
        self._tools[t.name] = t

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self):
        return iter(self._tools.values())

    def to_openai_format(self) -> list[dict]:
        return [t.openai_schema() for t in self._tools.values()]

    def to_gemini_format(self) -> dict:
        return {"function_declarations": [t.gemini_declaration() for t in self._tools.values()]}

    async def execute(self, name: str, args: dict, context=None) -> str:
        """Run a tool and return its output as text.

        Raises:
            ToolNotFound: No tool is registered under ``name``.
            ToolExecutionError: The tool reported a failure.
        """
        t = self._tools.get(name)
        if t is None:
            raise ToolNotFound(name)
        params = dict(args)
        params.pop(CONTEXT_PARAM, None)
        if t.takes_context:
            params[CONTEXT_PARAM] = context
        try:
            inspect.signature(t.func).bind(**params)
        except TypeError as e:
            raise ToolExecutionError(f"Invalid arguments for {name}: {e}") from e
        result = await t(**params)
        output = result.output
        return output if isinstance(output, str) else json.dumps(output)


def parse_arguments(arguments: str) -> dict:
    """Decode streamed tool arguments, falling back to an empty object."""
    try:
        parsed = json.loads(arguments) if arguments else {}
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
