"""Typed generation events and the parser for their raw dict form.

Raw events arrive as JSON objects whose key order is not stable and whose
field names vary between producers (``callID`` vs ``call_id``, nested
``state.status`` vs flat ``status``).  ``parse_event`` reads them by key and
returns one of the dataclasses below, or ``None`` for event types the
aggregator does not care about.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ToolUpdated:
    call_id: str
    tool_name: str
    status: str
    """Producer vocabulary; mapped to the three-state model by the aggregator."""


@dataclass(frozen=True)
class FileReferenced:
    file_id: str
    file_path: str


@dataclass(frozen=True)
class Done:
    pass


@dataclass(frozen=True)
class Error:
    message: str


GenerationEvent = Union[TextDelta, ReasoningDelta, ToolUpdated, FileReferenced, Done, Error]


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def parse_event(raw: dict[str, Any]) -> GenerationEvent | None:
    """Convert one raw event dict into a typed event.

    Raises ``ValueError`` when a known event type is missing a required field.
    """
    kind = raw.get("type")

    if kind == "text.delta":
        return TextDelta(text=str(_first(raw, "delta", "text") or ""))

    if kind == "reasoning.delta":
        return ReasoningDelta(text=str(_first(raw, "delta", "text") or ""))

    if kind == "tool.updated":
        call_id = _first(raw, "callID", "call_id", "id")
        if not call_id:
            raise ValueError("tool.updated event without a call id")
        state = raw.get("state")
        status = state.get("status") if isinstance(state, dict) else _first(raw, "status", "state")
        return ToolUpdated(
            call_id=str(call_id),
            tool_name=str(_first(raw, "tool", "toolName", "tool_name") or "unknown"),
            status=str(status or "pending"),
        )

    if kind in ("file", "file.referenced"):
        file_path = _first(raw, "filePath", "file_path", "path")
        if not file_path:
            raise ValueError("file event without a path")
        return FileReferenced(
            file_id=str(_first(raw, "id", "fileID", "file_id") or f"file:{file_path}"),
            file_path=str(file_path),
        )

    if kind == "done":
        return Done()

    if kind == "error":
        return Error(message=str(_first(raw, "error", "message") or "Unknown error"))

    return None
