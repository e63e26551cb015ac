"""Answer sessions, the two-stage cancel gesture and the per-thread registry."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from .aggregator import ChunkAggregator, ChunkDelta
from .errors import ConcurrentStreamError
from .events import Done, Error, GenerationEvent
from .models import Chunk, SessionState

logger = logging.getLogger(__name__)


class CancelState(str, Enum):
    none = "none"
    pending = "pending"
    aborted = "aborted"


class CancellationController:
    """``none -> pending -> aborted``.

    The first request only arms the cancel so a single stray keypress does
    not throw away an answer in progress.  A second request (or ``confirm``)
    aborts: the local consumer stops applying deltas.  Work already running
    on the generation side is not stopped.
    """

    def __init__(self) -> None:
        self.state = CancelState.none
        self._aborted = asyncio.Event()

    @property
    def aborted(self) -> bool:
        return self.state == CancelState.aborted

    def request(self) -> CancelState:
        if self.state == CancelState.none:
            self.state = CancelState.pending
        elif self.state == CancelState.pending:
            self._abort()
        return self.state

    def confirm(self) -> CancelState:
        if self.state != CancelState.aborted:
            self._abort()
        return self.state

    def reset(self) -> None:
        """Disarm a pending cancel.  An abort is final."""
        if self.state == CancelState.pending:
            self.state = CancelState.none

    def _abort(self) -> None:
        self.state = CancelState.aborted
        self._aborted.set()

    async def wait_aborted(self) -> None:
        await self._aborted.wait()


class AnswerSession:
    """Lifecycle of one question-to-answer exchange on a thread."""

    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        self.state = SessionState.idle
        self.aggregator = ChunkAggregator()
        self.cancel = CancellationController()
        self.error: str | None = None

    @property
    def chunks(self) -> list[Chunk]:
        return self.aggregator.chunks

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.streaming, SessionState.canceling)

    def start(self) -> None:
        if self.state != SessionState.idle:
            raise RuntimeError(f"session for {self.thread_id} already started ({self.state.value})")
        self.state = SessionState.streaming

    def apply(self, event: GenerationEvent) -> ChunkDelta | None:
        """Feed one event through the aggregator unless the session has stopped."""
        if not self.is_active:
            return None
        delta = self.aggregator.apply(event)
        if isinstance(event, Done):
            self.finish()
        elif isinstance(event, Error):
            self.fail(event.message)
        return delta

    # -- cancel gesture -------------------------------------------------------

    def request_cancel(self) -> CancelState:
        if not self.is_active:
            return self.cancel.state
        state = self.cancel.request()
        self._sync_cancel_state()
        return state

    def confirm_cancel(self) -> CancelState:
        if not self.is_active:
            return self.cancel.state
        state = self.cancel.confirm()
        self._sync_cancel_state()
        return state

    def dismiss_cancel(self) -> None:
        self.cancel.reset()
        self._sync_cancel_state()

    def _sync_cancel_state(self) -> None:
        if self.cancel.state == CancelState.aborted:
            self.mark_canceled()
        elif self.cancel.state == CancelState.pending and self.state == SessionState.streaming:
            self.state = SessionState.canceling
        elif self.cancel.state == CancelState.none and self.state == SessionState.canceling:
            self.state = SessionState.streaming

    # -- terminal transitions -------------------------------------------------

    def finish(self) -> None:
        if self.is_active:
            self.state = SessionState.done

    def fail(self, message: str) -> None:
        if self.is_active:
            self.state = SessionState.errored
            self.error = message

    def mark_canceled(self) -> None:
        if self.is_active:
            self.state = SessionState.canceled
            logger.info("Answer on thread %s canceled", self.thread_id)


class SessionRegistry:
    """At most one active answer per thread."""

    def __init__(self) -> None:
        self._sessions: dict[str, AnswerSession] = {}

    def start(self, thread_id: str) -> AnswerSession:
        current = self._sessions.get(thread_id)
        if current is not None and current.is_active:
            raise ConcurrentStreamError(thread_id)
        session = AnswerSession(thread_id)
        session.start()
        self._sessions[thread_id] = session
        return session

    def get(self, thread_id: str) -> AnswerSession | None:
        return self._sessions.get(thread_id)
