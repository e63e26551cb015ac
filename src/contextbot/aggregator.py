"""ChunkAggregator -- turns generation events into an ordered chunk list.

This module is the single home of the chunk rules.  The server feeds raw
events through ``ChunkAggregator.apply`` and forwards the resulting deltas;
the terminal client rebuilds the same list from those deltas with
``apply_delta``.  Both sides therefore agree on every chunk by construction.

Rules:

* all text deltas append to one text chunk (``__text__``), all reasoning
  deltas to one reasoning chunk (``__reasoning__``);
* one tool chunk per call id; only its status changes, and only forward
  through pending -> running -> completed;
* file chunks never change once added;
* ``Done`` / ``Error`` produce no delta, they end the answer.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union

from pydantic import ValidationError

from .errors import StreamParseError
from .events import (
    Done,
    Error,
    FileReferenced,
    GenerationEvent,
    ReasoningDelta,
    TextDelta,
    ToolUpdated,
)
from .models import (
    REASONING_CHUNK_ID,
    TEXT_CHUNK_ID,
    Chunk,
    FileChunk,
    ReasoningChunk,
    TextChunk,
    ToolChunk,
    ToolStatus,
    chunk_adapter,
)

logger = logging.getLogger(__name__)

_RESERVED_IDS = frozenset({TEXT_CHUNK_ID, REASONING_CHUNK_ID})


@dataclass(frozen=True)
class AddDelta:
    chunk: Chunk

    def to_message(self) -> dict[str, Any]:
        return {"type": "add", "chunk": self.chunk.model_dump(mode="json", by_alias=True)}


@dataclass(frozen=True)
class UpdateDelta:
    id: str
    patch: dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> dict[str, Any]:
        return {"type": "update", "id": self.id, "chunk": dict(self.patch)}


ChunkDelta = Union[AddDelta, UpdateDelta]


def map_tool_status(raw: str) -> ToolStatus:
    """Fold a producer's tool status into pending / running / completed."""
    if raw == "pending":
        return ToolStatus.pending
    if raw == "running":
        return ToolStatus.running
    return ToolStatus.completed


class ChunkAggregator:
    """Per-answer state machine.  Single writer: never call ``apply`` concurrently."""

    def __init__(self) -> None:
        self._chunks: dict[str, Chunk] = {}
        self.finished = False
        self.error: str | None = None

    @property
    def chunks(self) -> list[Chunk]:
        """Snapshot of the chunk list in first-seen order."""
        return [c.model_copy() for c in self._chunks.values()]

    def apply(self, event: GenerationEvent) -> ChunkDelta | None:
        if self.finished:
            return None

        if isinstance(event, TextDelta):
            return self._append(TEXT_CHUNK_ID, TextChunk, event.text)
        if isinstance(event, ReasoningDelta):
            return self._append(REASONING_CHUNK_ID, ReasoningChunk, event.text)
        if isinstance(event, ToolUpdated):
            return self._tool(event)
        if isinstance(event, FileReferenced):
            return self._file(event)
        if isinstance(event, Done):
            self.finished = True
            return None
        if isinstance(event, Error):
            self.finished = True
            self.error = event.message
            return None
        return None

    def _append(self, chunk_id: str, cls: type[TextChunk] | type[ReasoningChunk], text: str) -> ChunkDelta | None:
        existing = self._chunks.get(chunk_id)
        if existing is None:
            chunk = cls(id=chunk_id, text=text)
            self._chunks[chunk_id] = chunk
            return AddDelta(chunk=chunk.model_copy())
        if not isinstance(existing, cls):
            logger.warning("Ignoring %s for chunk %s of another type", cls.__name__, chunk_id)
            return None
        existing.text += text  # type: ignore[union-attr]
        return UpdateDelta(id=chunk_id, patch={"text": existing.text})  # type: ignore[union-attr]

    def _tool(self, event: ToolUpdated) -> ChunkDelta | None:
        if event.call_id in _RESERVED_IDS:
            logger.warning("Ignoring tool update with reserved id %s", event.call_id)
            return None
        status = map_tool_status(event.status)
        existing = self._chunks.get(event.call_id)
        if existing is None:
            chunk = ToolChunk(id=event.call_id, tool_name=event.tool_name, status=status)
            self._chunks[event.call_id] = chunk
            return AddDelta(chunk=chunk.model_copy())
        if not isinstance(existing, ToolChunk):
            logger.warning("Ignoring tool update for non-tool chunk %s", event.call_id)
            return None
        if status.rank <= existing.status.rank:
            return None
        existing.status = status
        return UpdateDelta(id=event.call_id, patch={"status": status.value})

    def _file(self, event: FileReferenced) -> ChunkDelta | None:
        if event.file_id in _RESERVED_IDS:
            logger.warning("Ignoring file reference with reserved id %s", event.file_id)
            return None
        if event.file_id in self._chunks:
            return None
        chunk = FileChunk(id=event.file_id, file_path=event.file_path)
        self._chunks[event.file_id] = chunk
        return AddDelta(chunk=chunk)


def apply_delta(chunks: list[Chunk], delta: ChunkDelta) -> list[Chunk]:
    """Client-side reducer: return a new chunk list with *delta* applied."""
    if isinstance(delta, AddDelta):
        if any(c.id == delta.chunk.id for c in chunks):
            logger.warning("Ignoring duplicate add for chunk %s", delta.chunk.id)
            return list(chunks)
        return [*chunks, delta.chunk]

    updated: list[Chunk] = []
    found = False
    for chunk in chunks:
        if chunk.id == delta.id and not isinstance(chunk, FileChunk):
            patch = {k: v for k, v in delta.patch.items() if k not in ("id", "type", "toolName", "tool_name")}
            found = True
            try:
                chunk = chunk_adapter.validate_python({**chunk.model_dump(mode="json", by_alias=True), **patch})
            except ValidationError as exc:
                logger.warning("Ignoring invalid update for chunk %s: %s", delta.id, exc)
        updated.append(chunk)
    if not found:
        logger.warning("Ignoring update for unknown chunk %s", delta.id)
    return updated


def delta_from_message(message: dict[str, Any]) -> ChunkDelta | None:
    """Rebuild a delta from an ``add`` / ``update`` wire message; other types give ``None``.

    Raises ``StreamParseError`` when the message does not describe a valid chunk.
    """
    kind = message.get("type")
    try:
        if kind == "add":
            return AddDelta(chunk=chunk_adapter.validate_python(message["chunk"]))
        if kind == "update":
            return UpdateDelta(id=str(message["id"]), patch=dict(message.get("chunk") or {}))
    except (KeyError, TypeError, ValueError) as exc:
        raise StreamParseError(json.dumps(message, default=str), f"invalid {kind} message: {exc}") from exc
    return None


_DISPLAY_ORDER = {"reasoning": 0, "tool": 1, "text": 2, "file": 3}


def group_for_display(chunks: list[Chunk]) -> list[Chunk]:
    """Presentation order: reasoning, tools, text, files.  Stable within a type."""
    return sorted(chunks, key=lambda c: _DISPLAY_ORDER[c.type])
