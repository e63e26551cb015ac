"""LLM client -- streaming wrapper around an OpenAI-compatible chat API (OpenRouter)."""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.request
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-haiku-4.5"


# ---------------------------------------------------------------------------
# Streaming data types
# ---------------------------------------------------------------------------


@dataclass
class ToolCallFragment:
    """Part of a streamed tool call; fragments with the same index belong together."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass
class StreamDelta:
    """A single chunk from an SSE stream."""

    content: str | None = None
    reasoning: str | None = None
    tool_calls: list[ToolCallFragment] = field(default_factory=list)
    finish_reason: str | None = None


def parse_stream_payload(payload: dict) -> StreamDelta | None:
    """Map one decoded ``data:`` payload onto a ``StreamDelta``."""
    if payload.get("error"):
        err = payload["error"]
        message = err.get("message") if isinstance(err, dict) else str(err)
        raise RuntimeError(f"Provider error: {message}")
    choices = payload.get("choices") or []
    if not choices:
        return None
    choice = choices[0]
    delta = choice.get("delta") or {}
    fragments = [
        ToolCallFragment(
            index=int(tc.get("index", 0)),
            id=tc.get("id"),
            name=(tc.get("function") or {}).get("name"),
            arguments=(tc.get("function") or {}).get("arguments") or "",
        )
        for tc in delta.get("tool_calls") or []
    ]
    return StreamDelta(
        content=delta.get("content") or None,
        reasoning=delta.get("reasoning") or delta.get("reasoning_content") or None,
        tool_calls=fragments,
        finish_reason=choice.get("finish_reason"),
    )


@dataclass
class LLMClient:
    """Minimal async-friendly OpenRouter client using stdlib HTTP only."""

    api_key: str
    model: str = DEFAULT_MODEL
    base_url: str = OPENROUTER_BASE_URL
    max_tokens: int = 8192
    temperature: float = 0.2
    timeout: float = 180.0
    max_concurrency: int = 6
    _sem: asyncio.Semaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._sem = asyncio.Semaphore(max(1, self.max_concurrency))

    def _json_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "contextbot",
        }

    def _stream_sync(
        self,
        messages: list[dict],
        *,
        tools: list[dict] | None = None,
    ) -> Iterator[StreamDelta]:
        """Blocking SSE reader. Yields ``StreamDelta`` objects."""
        body: dict = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if tools:
            body["tools"] = tools
        req = urllib.request.Request(
            f"{self.base_url}/chat/completions",
            data=json.dumps(body).encode("utf-8"),
            headers=self._json_headers(),
            method="POST",
        )
        try:
            resp = urllib.request.urlopen(req, timeout=self.timeout)
        except urllib.error.HTTPError as exc:
            error_body = exc.read().decode("utf-8", errors="replace")
            raise RuntimeError(
                f"OpenRouter stream error ({exc.code}): {error_body}"
            ) from exc
        except urllib.error.URLError as exc:
            raise RuntimeError(f"OpenRouter unreachable: {exc.reason}") from exc
        try:
            for raw_line in resp:
                line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line.startswith("data: "):
                    continue
                data_str = line[6:]
                if data_str.strip() == "[DONE]":
                    return
                try:
                    payload = json.loads(data_str)
                except json.JSONDecodeError:
                    continue
                delta = parse_stream_payload(payload)
                if delta is not None:
                    yield delta
        finally:
            resp.close()

    async def stream_chat(
        self,
        messages: list[dict],
        *,
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Async generator that streams deltas from the provider.

        The blocking HTTP read runs in a worker thread and hands deltas
        back through an ``asyncio.Queue``.
        """
        async with self._sem:
            queue: asyncio.Queue[StreamDelta | None] = asyncio.Queue()
            loop = asyncio.get_running_loop()

            def _run() -> None:
                try:
                    for delta in self._stream_sync(messages, tools=tools):
                        loop.call_soon_threadsafe(queue.put_nowait, delta)
                except Exception as exc:
                    loop.call_soon_threadsafe(
                        queue.put_nowait, StreamDelta(finish_reason=f"__error__:{exc}")
                    )
                finally:
                    loop.call_soon_threadsafe(queue.put_nowait, None)  # sentinel

            fut = loop.run_in_executor(None, _run)

            error_msg: str | None = None
            try:
                while True:
                    delta = await queue.get()
                    if delta is None:
                        break
                    if delta.finish_reason and delta.finish_reason.startswith("__error__:"):
                        error_msg = delta.finish_reason[10:]
                        break
                    yield delta
            finally:
                await fut

            if error_msg:
                raise RuntimeError(error_msg)
