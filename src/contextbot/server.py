"""FastAPI server: ask questions over resource collections, streamed as SSE."""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse
from starlette.background import BackgroundTask

from . import __version__
from .errors import CollectionError, ConcurrentStreamError, ConfigError, ContextbotError, ResourceError
from .service import ContextbotService
from .stream import THREAD_HEADER, encode_message

logger = logging.getLogger(__name__)


class QuestionRequest(BaseModel):
    question: str = Field(min_length=1)
    resources: list[str] = Field(default_factory=list)
    thread_id: str | None = None


def _error_response(exc: ContextbotError, status_code: int) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=status_code)


def create_app(service: ContextbotService) -> FastAPI:
    """Build the app around one long-lived service instance."""
    app = FastAPI(title="contextbot", version=__version__)
    app.state.service = service

    @app.exception_handler(ConcurrentStreamError)
    async def _concurrent_stream(request: Request, exc: ConcurrentStreamError) -> JSONResponse:
        return _error_response(exc, 409)

    @app.exception_handler(CollectionError)
    @app.exception_handler(ResourceError)
    @app.exception_handler(ConfigError)
    async def _bad_request(request: Request, exc: ContextbotError) -> JSONResponse:
        logger.info("Rejected request: %s", exc.message)
        return _error_response(exc, 400)

    @app.get("/")
    async def root() -> dict:
        return {"ok": True, "service": "contextbot"}

    @app.get("/api/resources")
    async def get_resources() -> JSONResponse:
        """Configured resources."""
        return JSONResponse({
            "resources": [
                r.model_dump(mode="json", exclude_none=True) for r in service.list_resources()
            ],
        })

    @app.post("/api/question")
    async def question(req: QuestionRequest) -> JSONResponse:
        """Answer a question and return the aggregated result."""
        try:
            result = await service.ask(req.question, req.resources, req.thread_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        status_code = 502 if result.error else 200
        return JSONResponse(result.to_dict(), status_code=status_code)

    @app.post("/api/question/stream")
    async def question_stream(req: QuestionRequest):
        """Answer a question as an SSE stream of wire messages."""
        try:
            stream = service.open_stream(req.question, req.resources, req.thread_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        async def event_stream():
            async for message in stream.messages():
                yield {"event": message["type"], "data": encode_message(message)}

        async def release() -> None:
            stream.close()

        # The background task also runs when the client leaves before the first event.
        return EventSourceResponse(
            event_stream(),
            headers={THREAD_HEADER: stream.thread_id},
            background=BackgroundTask(release),
        )

    @app.post("/api/threads/{thread_id}/cancel")
    async def cancel_thread(thread_id: str) -> dict:
        """First call arms the cancel, the second aborts the answer."""
        try:
            state = service.cancel(thread_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"No answer running on thread '{thread_id}'.")
        return {"thread_id": thread_id, "cancel_state": state.value}

    @app.get("/api/threads")
    async def get_threads() -> JSONResponse:
        threads = service.threads.list_threads()
        return JSONResponse({
            "threads": [
                {
                    "id": t.id,
                    "last_activity_at": t.last_activity_at,
                    "resources": t.resources,
                    "message_count": len(t.messages),
                }
                for t in threads
            ],
        })

    @app.get("/api/threads/{thread_id}")
    async def get_thread(thread_id: str) -> JSONResponse:
        try:
            thread = service.threads.load(thread_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if thread is None:
            raise HTTPException(status_code=404, detail=f"Thread '{thread_id}' not found.")
        return JSONResponse(thread.model_dump(mode="json", by_alias=True))

    return app


# ---------------------------------------------------------------------------
# Server launcher
# ---------------------------------------------------------------------------

def start_server(
    service: ContextbotService,
    host: str = "127.0.0.1",
    port: int = 8000,
) -> None:
    """Serve *service* with uvicorn until interrupted."""
    import uvicorn

    uvicorn.run(create_app(service), host=host, port=port)
