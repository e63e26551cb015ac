"""Generation sources -- produce ``GenerationEvent`` streams for a question.

``OpenRouterSource`` runs a small tool loop against the provider: the model
can list, read and grep files inside the collection directory, and every
call surfaces as a tool chunk moving through pending -> running -> completed.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .events import (
    Done,
    FileReferenced,
    GenerationEvent,
    ReasoningDelta,
    TextDelta,
    ToolUpdated,
    parse_event,
)
from .llm import LLMClient
from .models import Collection

logger = logging.getLogger(__name__)

_MAX_FILE_CHARS = 12000
_MAX_LIST_ENTRIES = 200
_MAX_GREP_MATCHES = 50
_MAX_GREP_FILE_BYTES = 1_000_000
_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "dist", "build"}

SYSTEM_PROMPT = """\
You answer questions about the source code in the current collection.
Use the tools to look things up before answering; prefer quoting real code
over recalling it from memory. Cite files by their collection-relative path.

{instructions}
"""


class GenerationSource(Protocol):
    """Anything that can stream answer events for a question over a collection."""

    def stream(self, question: str, collection: Collection) -> AsyncIterator[GenerationEvent]:
        ...


# Tool definitions for LLM function calling
TOOL_DEFINITIONS = [
    {
        "type": "function",
        "function": {
            "name": "list_directory",
            "description": "List files and subdirectories of a directory in the collection.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Collection-relative dir path ('.' for the root)"
                    }
                },
                "required": ["path"]
            }
        }
    },
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": "Read a file from the collection. Large files are truncated.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Collection-relative path, e.g. 'svelte/README.md'"
                    }
                },
                "required": ["path"]
            }
        }
    },
    {
        "type": "function",
        "function": {
            "name": "grep",
            "description": "Search file contents with a regular expression.",
            "parameters": {
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": "Python regular expression"
                    },
                    "path": {
                        "type": "string",
                        "description": "Collection-relative directory to search ('.' for everything)"
                    }
                },
                "required": ["pattern"]
            }
        }
    },
]


class ToolError(Exception):
    """Raised by a tool when the call cannot be served."""


@dataclass
class CollectionToolkit:
    """Read-only file access confined to one collection directory.

    Members are symlinks pointing outside the collection, so paths are
    checked lexically (no absolute paths, no ``..``) rather than by
    resolving them.
    """

    root: Path
    files_read: list[str] = field(default_factory=list)

    def _resolve(self, rel: str) -> Path:
        rel = (rel or ".").strip()
        if os.path.isabs(rel):
            raise ToolError(f"absolute paths are not allowed: {rel}")
        normalized = os.path.normpath(rel)
        if normalized == ".." or normalized.startswith(".." + os.sep):
            raise ToolError(f"path leaves the collection: {rel}")
        return self.root / normalized

    async def execute(self, tool_name: str, args: dict[str, Any]) -> str:
        """Run one tool; failures come back as ``Error: ...`` text for the model."""
        try:
            if tool_name == "list_directory":
                return self._list_directory(args.get("path", "."))
            if tool_name == "read_file":
                return self._read_file(args.get("path", ""))
            if tool_name == "grep":
                return self._grep(args.get("pattern", ""), args.get("path", "."))
            raise ToolError(f"unknown tool {tool_name!r}")
        except ToolError as exc:
            return f"Error: {exc}"
        except OSError as exc:
            logger.debug("Tool %s failed: %s", tool_name, exc)
            return f"Error: {exc}"

    def _list_directory(self, rel: str) -> str:
        target = self._resolve(rel)
        if not target.is_dir():
            raise ToolError(f"not a directory: {rel}")
        entries = []
        for child in sorted(target.iterdir(), key=lambda p: p.name):
            if child.name in _SKIP_DIRS:
                continue
            entries.append(child.name + ("/" if child.is_dir() else ""))
        if len(entries) > _MAX_LIST_ENTRIES:
            extra = len(entries) - _MAX_LIST_ENTRIES
            entries = entries[:_MAX_LIST_ENTRIES] + [f"... ({extra} more)"]
        return "\n".join(entries) or "(empty)"

    def _read_file(self, rel: str) -> str:
        target = self._resolve(rel)
        if not target.is_file():
            raise ToolError(f"file not found: {rel}")
        content = target.read_text(encoding="utf-8", errors="replace")
        self.files_read.append(os.path.normpath(rel))
        if len(content) > _MAX_FILE_CHARS:
            content = content[:_MAX_FILE_CHARS] + "\n... (truncated)"
        return content

    def _grep(self, pattern: str, rel: str) -> str:
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            raise ToolError(f"invalid pattern: {exc}") from exc
        base = self._resolve(rel)
        if not base.is_dir():
            raise ToolError(f"not a directory: {rel}")

        matches: list[str] = []
        for dirpath, dirnames, filenames in os.walk(base, followlinks=True):
            dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
            for filename in sorted(filenames):
                path = Path(dirpath) / filename
                try:
                    if path.stat().st_size > _MAX_GREP_FILE_BYTES:
                        continue
                    text = path.read_text(encoding="utf-8")
                except (OSError, UnicodeDecodeError):
                    continue
                shown = path.relative_to(self.root).as_posix()
                for lineno, line in enumerate(text.splitlines(), 1):
                    if regex.search(line):
                        matches.append(f"{shown}:{lineno}: {line.strip()[:200]}")
                        if len(matches) >= _MAX_GREP_MATCHES:
                            matches.append("... (more matches omitted)")
                            return "\n".join(matches)
        return "\n".join(matches) or "(no matches)"


@dataclass
class _PendingCall:
    id: str = ""
    name: str = ""
    arguments: str = ""
    announced: bool = False


def _parse_arguments(raw: str) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        args = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Unparseable tool arguments: %s", raw[:200])
        return {}
    return args if isinstance(args, dict) else {}


@dataclass
class OpenRouterSource:
    """Streaming tool loop over ``LLMClient``."""

    llm: LLMClient
    max_steps: int = 12

    async def stream(self, question: str, collection: Collection) -> AsyncIterator[GenerationEvent]:
        toolkit = CollectionToolkit(collection.directory_path)
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": SYSTEM_PROMPT.format(instructions=collection.instructions)},
            {"role": "user", "content": question},
        ]
        referenced: set[str] = set()

        for step in range(self.max_steps):
            text_parts: list[str] = []
            calls: dict[int, _PendingCall] = {}

            async for delta in self.llm.stream_chat(messages, tools=TOOL_DEFINITIONS):
                if delta.reasoning:
                    yield ReasoningDelta(text=delta.reasoning)
                if delta.content:
                    text_parts.append(delta.content)
                    yield TextDelta(text=delta.content)
                for fragment in delta.tool_calls:
                    call = calls.setdefault(fragment.index, _PendingCall())
                    if fragment.id:
                        call.id = fragment.id
                    if fragment.name:
                        call.name += fragment.name
                    call.arguments += fragment.arguments
                    if not call.announced and call.id and call.name:
                        call.announced = True
                        yield ToolUpdated(call_id=call.id, tool_name=call.name, status="pending")

            if not calls:
                yield Done()
                return

            ordered = [calls[i] for i in sorted(calls)]
            for index, call in enumerate(ordered):
                if not call.id:
                    call.id = f"call_{step}_{index}"
            messages.append({
                "role": "assistant",
                "content": "".join(text_parts) or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments or "{}"},
                    }
                    for call in ordered
                ],
            })

            for call in ordered:
                yield ToolUpdated(call_id=call.id, tool_name=call.name, status="running")
                read_before = len(toolkit.files_read)
                result = await toolkit.execute(call.name, _parse_arguments(call.arguments))
                yield ToolUpdated(call_id=call.id, tool_name=call.name, status="completed")
                for path in toolkit.files_read[read_before:]:
                    if path not in referenced:
                        referenced.add(path)
                        yield FileReferenced(file_id=f"file:{path}", file_path=path)
                messages.append({"role": "tool", "tool_call_id": call.id, "content": result})

            logger.debug("Step %d: %d tool call(s)", step + 1, len(ordered))

        logger.warning("Stopped after %d steps without a final answer", self.max_steps)
        yield TextDelta(text="\n\n(Stopped: reached the tool-call limit before finishing.)")
        yield Done()


@dataclass
class ReplaySource:
    """Replay a recorded JSONL log of raw events, one JSON object per line.

    Lines that are not JSON objects, or that ``parse_event`` rejects, are
    logged and skipped.
    """

    path: Path

    async def stream(self, question: str, collection: Collection | None = None) -> AsyncIterator[GenerationEvent]:
        with self.path.open(encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    raw = json.loads(line)
                    if not isinstance(raw, dict):
                        raise ValueError("not a JSON object")
                    event = parse_event(raw)
                except ValueError as exc:
                    logger.warning("%s:%d: skipping event: %s", self.path, lineno, exc)
                    continue
                if event is not None:
                    yield event
