"""ContextbotService -- one object wiring config, resources, collections and answers.

The HTTP server and the local CLI both drive questions through this class, so
a question asked either way walks the same path: pick resources, build (or
reuse) the collection, stream the answer, save the thread.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import Any

from .agent import GenerationSource, OpenRouterSource
from .collection import CollectionBuilder
from .config import LoadedConfig
from .errors import ConfigError, ResourceError
from .git import GitBackend
from .llm import LLMClient
from .models import Chunk, Collection, ResourceDefinition, SessionState, ThreadMessage
from .resources import ResourceOutcome, ResourceStore
from .session import AnswerSession, CancelState, SessionRegistry
from .stream import StreamTransport
from .threads import ThreadStore, answer_text, extract_mentions, format_history, merge_resources

logger = logging.getLogger(__name__)


def create_source(loaded: LoadedConfig) -> GenerationSource:
    """Build the generation source named by the config's provider."""
    config = loaded.config
    if config.provider != "openrouter":
        raise ConfigError(f"Unsupported provider '{config.provider}' (expected 'openrouter')")
    api_key = os.environ.get("OPENROUTER_API_KEY", "")
    if not api_key:
        raise ConfigError("OPENROUTER_API_KEY is not set. Export it or add it to a .env file.")
    return OpenRouterSource(LLMClient(api_key=api_key, model=config.model))


@dataclass
class AnswerResult:
    """Aggregated outcome of a non-streaming question."""

    thread_id: str
    answer: str
    chunks: list[Chunk]
    resources: list[str]
    collection: Collection
    state: SessionState
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "answer": self.answer,
            "chunks": [c.model_dump(mode="json", by_alias=True) for c in self.chunks],
            "resources": self.resources,
            "collection": {"key": self.collection.key, "path": str(self.collection.directory_path)},
            "state": self.state.value,
            "error": self.error,
        }


@dataclass
class AnswerStream:
    """A started answer on one thread; iterate ``messages()`` to run it."""

    service: ContextbotService
    session: AnswerSession
    question: str
    resource_names: list[str]
    collection: Collection | None = None
    history: list[ThreadMessage] = field(default_factory=list)
    _closed: bool = field(default=False, init=False, repr=False)

    @property
    def thread_id(self) -> str:
        return self.session.thread_id

    async def _preamble(self) -> AsyncIterator[str]:
        yield "preparing"
        if self.collection is None:
            yield "syncing"
            self.collection = await self.service.builder.build(self.resource_names)
        yield "ready"

    def _source(self):
        assert self.collection is not None
        prompt = format_history(self.history, self.question)
        return self.service.source.stream(prompt, self.collection)

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Wire messages for this answer; the thread is saved once the stream ends."""
        transport = StreamTransport(self.session)
        try:
            async for message in transport.messages(self._source, self._preamble()):
                yield message
        finally:
            self.close()

    def close(self) -> None:
        """Release the thread.  Safe to call more than once, or without ever iterating.

        A consumer that walks away mid-answer (or never starts reading)
        counts as a cancel.
        """
        if self._closed:
            return
        self._closed = True
        if self.session.is_active:
            self.session.mark_canceled()
        if self.collection is not None:
            self.service.record_answer(self)


class ContextbotService:
    """Long-lived owner of every collaborator a question needs.

    Parameters
    ----------
    loaded:
        The resolved config and data directory.
    source:
        Generation source; ``create_source`` builds the configured one.
        Only needed for asking questions.
    git:
        Git backend for the resource store (tests pass a fake).
    """

    def __init__(
        self,
        loaded: LoadedConfig,
        source: GenerationSource | None = None,
        *,
        git: GitBackend | None = None,
    ) -> None:
        self.loaded = loaded
        self.source = source
        self.store = ResourceStore(loaded.resources_dir, git=git)
        self.builder = CollectionBuilder(loaded.collections_dir, self.store, self._resolve)
        self.sessions = SessionRegistry()
        self.threads = ThreadStore(loaded.threads_dir)

    def _resolve(self, name: str) -> ResourceDefinition:
        return self.loaded.require_resource(name)

    # -- resources ------------------------------------------------------------

    def list_resources(self) -> list[ResourceDefinition]:
        return list(self.loaded.config.resources)

    async def sync(self, names: Iterable[str] | None = None) -> dict[str, ResourceOutcome]:
        """Bring resources up to date; each name gets its own outcome."""
        wanted = list(names) if names else self.loaded.config.resource_names()
        outcomes: dict[str, ResourceOutcome] = {}
        definitions: list[ResourceDefinition] = []
        for name in wanted:
            try:
                definitions.append(self._resolve(name))
            except ResourceError as exc:
                outcomes[name] = ResourceOutcome(name=name, error=exc)
        outcomes.update(await self.store.ensure_many(definitions))
        return {name: outcomes[name] for name in wanted if name in outcomes}

    def select_resources(
        self,
        question: str,
        requested: Iterable[str] | None,
        thread_resources: list[str] | None = None,
    ) -> list[str]:
        """Resources for a question: the thread's, plus requested, plus ``@mentions``.

        Falls back to every configured resource when nothing was named.
        """
        configured = set(self.loaded.config.resource_names())
        mentioned = [name for name in extract_mentions(question) if name in configured]
        names = merge_resources(thread_resources or [], list(requested or []))
        names = merge_resources(names, mentioned)
        if not names:
            names = self.loaded.config.resource_names()
        return names

    # -- questions ------------------------------------------------------------

    def open_stream(
        self,
        question: str,
        resources: Iterable[str] | None = None,
        thread_id: str | None = None,
    ) -> AnswerStream:
        """Start an answer on a thread.

        Raises ``ConcurrentStreamError`` when the thread already has an
        answer in flight.
        """
        if self.source is None:
            raise ConfigError("No generation source configured.")
        thread = self.threads.load_or_create(thread_id)
        names = self.select_resources(question, resources, thread.resources)
        session = self.sessions.start(thread.id)
        logger.info("Question on thread %s over %s", thread.id, ", ".join(names))
        return AnswerStream(
            service=self,
            session=session,
            question=question,
            resource_names=names,
            history=list(thread.messages),
        )

    async def ask(
        self,
        question: str,
        resources: Iterable[str] | None = None,
        thread_id: str | None = None,
    ) -> AnswerResult:
        """Answer a question without streaming.

        Collection problems raise (``CollectionError``) instead of ending up
        as an ``error`` message, so callers can tell bad input from a failed
        generation.
        """
        stream = self.open_stream(question, resources, thread_id)
        try:
            try:
                stream.collection = await self.builder.build(stream.resource_names)
            except Exception as exc:
                stream.session.fail(str(exc))
                raise
            async for _ in stream.messages():
                pass
        finally:
            stream.close()

        session = stream.session
        return AnswerResult(
            thread_id=session.thread_id,
            answer=answer_text(session.chunks),
            chunks=session.chunks,
            resources=stream.resource_names,
            collection=stream.collection,
            state=session.state,
            error=session.error,
        )

    def cancel(self, thread_id: str) -> CancelState:
        """Advance the two-stage cancel of the thread's running answer."""
        session = self.sessions.get(thread_id)
        if session is None:
            raise KeyError(thread_id)
        return session.request_cancel()

    def record_answer(self, stream: AnswerStream) -> None:
        """Append the question and its answer to the thread and save it."""
        session = stream.session
        thread = self.threads.load_or_create(session.thread_id)
        thread.resources = merge_resources(thread.resources, stream.resource_names)
        thread.messages.append(ThreadMessage(role="user", content=stream.question))
        if session.error is not None and not session.chunks:
            thread.messages.append(ThreadMessage(role="system", content=f"Error: {session.error}"))
        else:
            thread.messages.append(
                ThreadMessage(
                    role="assistant",
                    content=session.chunks,
                    canceled=session.state == SessionState.canceled,
                )
            )
        try:
            self.threads.save(thread)
        except OSError as exc:
            logger.warning("Could not save thread %s: %s", thread.id, exc)
