"""Tools registered for every session by default."""

from __future__ import annotations

import asyncio
import fnmatch
import html
import logging
import os
import re
from pathlib import Path
from urllib.parse import quote_plus

import httpx

from parley.console import ALWAYS, APPROVE, prompt_approval, prompt_text
from parley.context import Context
from parley.tools import ToolExecutionError, ToolRegistry, tool

logger = logging.getLogger(__name__)

SEARCH_URL = "https://lite.duckduckgo.com/lite/?q={query}"
SEARCH_TIMEOUT = httpx.Timeout(15.0, connect=5.0)
MAX_SEARCH_RESULTS = 5
USER_AGENT = "Mozilla/5.0 (compatible; parley/1.0)"

_RESULT_LINK_RE = re.compile(
    r"<a[^>]*href=[\"']([^\"']+)[\"'][^>]*class=[\"']result-link[\"'][^>]*>(.*?)</a>"
    r"|<a[^>]*class=[\"']result-link[\"'][^>]*href=[\"']([^\"']+)[\"'][^>]*>(.*?)</a>",
    re.IGNORECASE | re.DOTALL,
)
_RESULT_SNIPPET_RE = re.compile(
    r"<td[^>]*class=[\"']result-snippet[\"'][^>]*>(.*?)</td>", re.IGNORECASE | re.DOTALL
)
_TAG_RE = re.compile(r"<[^>]+>")


def _resolve(path: str) -> Path:
    return Path(os.path.expanduser(path))


@tool
def read_file(path: str, offset: int = 0, limit: int | None = None):
    """Read the contents of a file at the given path. Returns the file content as text.

    Args:
        path: The path to the file to read.
        offset: Character offset to start reading from, for reading large files in chunks.
        limit: Maximum number of characters to return. Reads to the end when omitted.
    """
    file_path = _resolve(path)
    if not file_path.exists():
        raise ToolExecutionError(f"File not found: {path}")
    try:
        text = file_path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise ToolExecutionError(f"Failed to read file '{path}': {e}") from e
    if offset or limit is not None:
        end = None if limit is None else offset + limit
        return text[offset:end]
    return text


@tool
def write_file(path: str, content: str):
    """Write content to a file at the given path. Creates the file if it doesn't exist, overwrites if it does.

    Args:
        path: The path to the file to write.
        content: The content to write to the file.
    """
    file_path = _resolve(path)
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding="utf-8")
    except OSError as e:
        raise ToolExecutionError(f"Failed to write file '{path}': {e}") from e
    return f"Successfully wrote {len(content.encode('utf-8'))} bytes to '{path}'"


@tool
def edit_file(path: str, old_text: str, new_text: str):
    """Replace one exact occurrence of a piece of text in a file. Read the file first.

    Args:
        path: The path to the file to edit.
        old_text: Text to replace. Must appear exactly once in the file.
        new_text: Replacement text.
    """
    file_path = _resolve(path)
    if not file_path.exists():
        raise ToolExecutionError(f"File not found: {path}")
    try:
        text = file_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ToolExecutionError(f"Failed to read file '{path}': {e}") from e

    count = text.count(old_text) if old_text else 0
    if count == 0:
        raise ToolExecutionError(f"Text to replace was not found in '{path}'")
    if count > 1:
        raise ToolExecutionError(
            f"Text to replace appears {count} times in '{path}'; include more surrounding context"
        )
    try:
        file_path.write_text(text.replace(old_text, new_text, 1), encoding="utf-8")
    except OSError as e:
        raise ToolExecutionError(f"Failed to write file '{path}': {e}") from e
    return f"Successfully edited '{path}'"


@tool
def search_files(path: str = ".", pattern: str | None = None):
    """Recursively search for files matching a pattern.

    Args:
        path: The directory to search in (defaults to current directory).
        pattern: Glob pattern to match file names (e.g. '*.py').
    """
    root = _resolve(path)
    if not root.is_dir():
        raise ToolExecutionError(f"Search failed: '{path}' is not a directory")
    matches = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d != ".git")
        for name in sorted(filenames):
            if pattern is None or fnmatch.fnmatch(name, pattern):
                matches.append(os.path.join(dirpath, name))
    if not matches:
        return "No files found matching the criteria."
    return "\n".join(matches)


def _clean(fragment: str) -> str:
    return html.unescape(_TAG_RE.sub("", fragment)).strip()


def parse_search_results(body: str) -> list[str]:
    """Pull title, snippet and link triples out of DuckDuckGo lite HTML."""
    links = []
    for match in _RESULT_LINK_RE.finditer(body):
        url = match.group(1) or match.group(3)
        title = match.group(2) if match.group(1) else match.group(4)
        links.append((_clean(title), html.unescape(url)))
    snippets = [_clean(s) for s in _RESULT_SNIPPET_RE.findall(body)]

    results = []
    for (title, url), snippet in zip(links, snippets):
        if title and snippet:
            results.append(f"**{title}**\n{snippet}\n{url}")
    return results[:MAX_SEARCH_RESULTS]


@tool
async def web_search(query: str):
    """Search the web for information using DuckDuckGo. Returns search results as text.

    Args:
        query: The search query.
    """
    url = SEARCH_URL.format(query=quote_plus(query))
    try:
        async with httpx.AsyncClient(timeout=SEARCH_TIMEOUT, follow_redirects=True) as client:
            response = await client.get(url, headers={"User-Agent": USER_AGENT})
            response.raise_for_status()
    except httpx.HTTPError as e:
        raise ToolExecutionError(f"Search request failed: {e}") from e

    results = parse_search_results(response.text)
    if not results:
        return f"No results found for: {query}"
    return "\n\n".join(results)


async def _run(command: str) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    return (
        proc.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


@tool
async def run_shell_command(context: Context, command: str):
    """Execute a shell command on the system. Requires explicit user approval for each execution.

    Args:
        command: The shell command to execute.
    """
    if not context.approval.auto_approve:
        answer = prompt_approval(command, context.input_fn)
        if answer == ALWAYS:
            context.approval.auto_approve = True
            logger.info("Shell commands auto-approved for the rest of the session")
        elif answer != APPROVE:
            feedback = prompt_text(
                "Command rejected. Feedback for the agent (optional): ", context.input_fn
            ).strip()
            message = "User denied command execution."
            if feedback:
                message += f" Feedback: {feedback}"
            raise ToolExecutionError(message)

    try:
        returncode, stdout, stderr = await _run(command)
    except OSError as e:
        raise ToolExecutionError(f"Failed to execute command: {e}") from e

    result = ""
    if stdout:
        result += f"Stdout:\n{stdout}\n"
    if stderr:
        result += f"Stderr:\n{stderr}\n"
    if not result:
        result = "(Command executed successfully with no output)"
    if returncode != 0:
        result += f"\nCommand failed with exit code: {returncode}"
    return result


def default_registry() -> ToolRegistry:
    return ToolRegistry([
        read_file,
        write_file,
        edit_file,
        web_search,
        search_files,
        run_shell_command,
    ])
