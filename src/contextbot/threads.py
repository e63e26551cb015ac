"""Saved conversations and the history block prepended to follow-up questions."""

from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from .models import Chunk, TextChunk, Thread, ThreadMessage

logger = logging.getLogger(__name__)

_MENTION_RE = re.compile(r"@([A-Za-z0-9_.-]+)")
_THREAD_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_thread_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{ts}_{secrets.token_hex(3)}"


# ---------------------------------------------------------------------------
# Mentions / resources
# ---------------------------------------------------------------------------


def extract_mentions(text: str) -> list[str]:
    """``@name`` tokens in *text*, de-duplicated, in first-seen order."""
    seen: list[str] = []
    for name in _MENTION_RE.findall(text):
        name = name.rstrip(".")
        if name and name not in seen:
            seen.append(name)
    return seen


def merge_resources(current: list[str], new: list[str]) -> list[str]:
    """Union of *current* and *new*, keeping first-seen order."""
    merged = list(current)
    for name in new:
        if name not in merged:
            merged.append(name)
    return merged


# ---------------------------------------------------------------------------
# History formatting
# ---------------------------------------------------------------------------


def answer_text(chunks: list[Chunk]) -> str:
    """Text chunks of an answer joined by blank lines."""
    return "\n\n".join(c.text for c in chunks if isinstance(c, TextChunk) and c.text)


def format_history(messages: list[ThreadMessage], question: str) -> str:
    """Prefix *question* with the prior user/assistant turns of a thread.

    Canceled assistant turns and system messages are left out; ``@mentions``
    are stripped from user turns since the resources are passed separately.
    """
    parts: list[str] = []
    for message in messages:
        if message.role == "user":
            text = message.content if isinstance(message.content, str) else ""
            text = _MENTION_RE.sub("", text).strip()
            if text:
                parts.append(f"User: {text}")
        elif message.role == "assistant" and not message.canceled:
            if isinstance(message.content, str):
                text = message.content
            else:
                text = answer_text(message.content)
            if text:
                parts.append(f"Assistant: {text}")

    if not parts:
        return question
    history = "\n\n".join(parts)
    return (
        f"=== CONVERSATION HISTORY ===\n{history}\n=== END HISTORY ===\n\n"
        f"Current question: {question}"
    )


# ---------------------------------------------------------------------------
# ThreadStore
# ---------------------------------------------------------------------------


class ThreadStore:
    """One JSON file per thread under *directory*."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def _path(self, thread_id: str) -> Path:
        if not _THREAD_ID_RE.match(thread_id):
            raise ValueError(f"invalid thread id {thread_id!r}")
        return self.directory / f"{thread_id}.json"

    def create(self, thread_id: str | None = None) -> Thread:
        now = _now()
        return Thread(id=thread_id or new_thread_id(), created_at=now, last_activity_at=now)

    def load(self, thread_id: str) -> Thread | None:
        path = self._path(thread_id)
        if not path.is_file():
            return None
        try:
            return Thread.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("Could not load thread %s: %s", thread_id, exc)
            return None

    def load_or_create(self, thread_id: str | None) -> Thread:
        if thread_id:
            thread = self.load(thread_id)
            if thread is not None:
                return thread
        return self.create(thread_id)

    def save(self, thread: Thread) -> Path:
        thread.last_activity_at = _now()
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(thread.id)
        path.write_text(thread.model_dump_json(indent=2, by_alias=True), encoding="utf-8")
        return path

    def list_threads(self) -> list[Thread]:
        """Every saved thread, most recently active first."""
        if not self.directory.is_dir():
            return []
        threads: list[Thread] = []
        for path in self.directory.glob("*.json"):
            thread = self.load(path.stem)
            if thread is not None:
                threads.append(thread)
        threads.sort(key=lambda t: t.last_activity_at, reverse=True)
        return threads
