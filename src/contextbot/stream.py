"""StreamTransport -- wire messages for one answer session.

Wire format: one JSON object per SSE ``data:`` frame, discriminated by
``type``::

    {"type": "status", "status": "preparing"}
    {"type": "add", "chunk": {...}}
    {"type": "update", "id": "__text__", "chunk": {"text": "..."}}
    {"type": "done"}
    {"type": "error", "error": "..."}

Status messages only ever precede content and are never chunks.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from typing import Any

from .errors import StreamParseError
from .events import GenerationEvent
from .session import AnswerSession

logger = logging.getLogger(__name__)

WIRE_TYPES = frozenset({"status", "add", "update", "done", "error"})

THREAD_HEADER = "X-Contextbot-Thread"
"""Response header carrying the thread id of a streamed answer."""


def status_message(status: str) -> dict[str, Any]:
    return {"type": "status", "status": status}


def done_message() -> dict[str, Any]:
    return {"type": "done"}


def error_message(error: str) -> dict[str, Any]:
    return {"type": "error", "error": error}


def encode_message(message: dict[str, Any]) -> str:
    """Compact, deterministic JSON for one wire message."""
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False)


def decode_message(raw: str) -> dict[str, Any]:
    """Parse one wire message, raising ``StreamParseError`` if it is malformed."""
    try:
        message = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StreamParseError(raw, f"invalid JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise StreamParseError(raw, "message is not a JSON object")
    kind = message.get("type")
    if kind not in WIRE_TYPES:
        raise StreamParseError(raw, f"unknown message type {kind!r}")
    if kind == "add" and not isinstance(message.get("chunk"), dict):
        raise StreamParseError(raw, "add message without a chunk")
    if kind == "update" and (not isinstance(message.get("id"), str) or not isinstance(message.get("chunk"), dict)):
        raise StreamParseError(raw, "update message without id/chunk")
    return message


async def read_messages(lines: AsyncIterable[str]) -> AsyncIterator[dict[str, Any]]:
    """Decode an SSE line stream into wire messages.

    ``data:`` lines are accumulated until a blank line ends the frame.
    Malformed frames are logged and skipped; the stream continues.
    """
    data: list[str] = []

    async for line in lines:
        line = line.rstrip("\r\n")
        if line.startswith("data:"):
            data.append(line[5:].lstrip(" "))
            continue
        if line == "" and data:
            raw = "\n".join(data)
            data = []
            try:
                yield decode_message(raw)
            except StreamParseError as exc:
                logger.warning("Dropping malformed stream message: %s", exc)
        # Comments (":"), "event:", "id:" and "retry:" fields carry nothing we need.

    if data:
        raw = "\n".join(data)
        try:
            yield decode_message(raw)
        except StreamParseError as exc:
            logger.warning("Dropping malformed stream message: %s", exc)


_END = object()


async def _next_or_end(iterator: AsyncIterator[GenerationEvent]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class StreamTransport:
    """Drive one ``AnswerSession`` from an event source and emit wire messages."""

    def __init__(self, session: AnswerSession) -> None:
        self.session = session

    async def messages(
        self,
        source: Callable[[], AsyncIterable[GenerationEvent]],
        preamble: AsyncIterable[str] | Iterable[str] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield status messages, then one message per delta, then ``done`` / ``error``.

        *source* is only called once the preamble has been drained, so the
        preamble can prepare whatever the source depends on.  A failure while
        draining the preamble or reading the source ends the stream with an
        ``error`` message; nothing is retried.
        """
        session = self.session

        try:
            if preamble is not None:
                if isinstance(preamble, AsyncIterable):
                    async for status in preamble:
                        yield status_message(status)
                else:
                    for status in preamble:
                        yield status_message(status)
        except Exception as exc:
            logger.error("Stream preparation failed on thread %s: %s", session.thread_id, exc)
            session.fail(str(exc))
            yield error_message(str(exc))
            return

        iterator = source().__aiter__()
        abort_waiter = asyncio.ensure_future(session.cancel.wait_aborted())
        try:
            while session.is_active:
                next_event = asyncio.ensure_future(_next_or_end(iterator))
                finished, _ = await asyncio.wait(
                    {next_event, abort_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                if next_event not in finished:
                    next_event.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await next_event
                    session.mark_canceled()
                    return
                event = next_event.result()
                if event is _END:
                    break
                delta = session.apply(event)
                if delta is not None:
                    yield delta.to_message()
        except Exception as exc:
            logger.error("Generation failed on thread %s: %s", session.thread_id, exc)
            session.fail(str(exc))
            yield error_message(str(exc))
            return
        finally:
            abort_waiter.cancel()
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(Exception):
                    await aclose()

        if session.cancel.aborted:
            return
        if session.aggregator.error is not None:
            yield error_message(session.aggregator.error)
            return
        session.finish()
        yield done_message()


async def collect(messages: AsyncIterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Drain a message stream into a list (handy for non-streaming callers)."""
    return [m async for m in messages]
