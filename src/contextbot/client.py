"""Terminal-side consumers of the wire protocol.

``AnswerView`` rebuilds an answer's chunk list from wire messages with the
same reducer the server's aggregator is mirrored by, so local and remote
answers render identically.  ``RemoteClient`` talks to ``contextbot serve``
over HTTP.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Iterable
from typing import Any

import httpx

from .aggregator import apply_delta, delta_from_message
from .errors import RemoteError, StreamParseError
from .models import Chunk
from .stream import THREAD_HEADER, read_messages

logger = logging.getLogger(__name__)


class AnswerView:
    """Client-side state for one answer, fed one wire message at a time."""

    def __init__(self) -> None:
        self.chunks: list[Chunk] = []
        self.status: str | None = None
        self.done = False
        self.error: str | None = None

    @property
    def finished(self) -> bool:
        return self.done or self.error is not None

    def apply(self, message: dict[str, Any]) -> None:
        if self.finished:
            return
        kind = message.get("type")
        if kind == "status":
            self.status = str(message.get("status"))
        elif kind == "done":
            self.done = True
        elif kind == "error":
            self.error = str(message.get("error") or "Unknown error")
        else:
            try:
                delta = delta_from_message(message)
            except StreamParseError as exc:
                logger.warning("Dropping malformed stream message: %s", exc)
                return
            if delta is not None:
                self.chunks = apply_delta(self.chunks, delta)


def _raise_for_error(response: httpx.Response, body: bytes) -> None:
    if response.status_code < 400:
        return
    try:
        payload = json.loads(body)
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    message = payload.get("error") or payload.get("detail") or body.decode("utf-8", "replace")
    raise RemoteError(response.status_code, str(message), remote_tag=payload.get("tag"))


class RemoteClient:
    """HTTP client for a running contextbot server."""

    def __init__(self, base_url: str, *, timeout: float = 300.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self.thread_id: str | None = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def stream_question(
        self,
        question: str,
        resources: Iterable[str] | None = None,
        thread_id: str | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded wire messages for a streamed answer.

        The thread id the server assigned is available as ``self.thread_id``
        once the first message arrives.
        """
        body = {"question": question, "resources": list(resources or []), "thread_id": thread_id}
        async with self._client() as client:
            async with client.stream("POST", "/api/question/stream", json=body) as response:
                if response.status_code >= 400:
                    _raise_for_error(response, await response.aread())
                self.thread_id = response.headers.get(THREAD_HEADER, thread_id)
                async for message in read_messages(response.aiter_lines()):
                    yield message

    async def cancel(self, thread_id: str) -> str:
        async with self._client() as client:
            response = await client.post(f"/api/threads/{thread_id}/cancel")
            _raise_for_error(response, response.content)
            return str(response.json()["cancel_state"])

    async def resources(self) -> list[dict[str, Any]]:
        async with self._client() as client:
            response = await client.get("/api/resources")
            _raise_for_error(response, response.content)
            return list(response.json()["resources"])
