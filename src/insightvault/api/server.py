"""FastAPI application for InsightVault.

Endpoints:
- GET  /health
- POST /api/chat                        JSON answer
- POST /api/chat/stream                 server-sent events
- GET  /api/datasets/{id}/schema        inferred schema summary
- GET  /api/datasets/{id}/suggestions   starter questions
- GET  /api/datasets/{id}/summary       two-sentence description

Run with: uvicorn insightvault.api.server:create_app --factory
"""

import json
from typing import Any, AsyncIterator, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from insightvault import __version__
from insightvault.contracts import AskRequest, AskResponse, UpstreamError
from insightvault.llm.router import describe_provider
from insightvault.orchestrator.runtime import QueryEngine, build_engine

logger = structlog.get_logger(__name__)

GENERIC_ERROR = "Chat processing failed"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def sse_frame(payload: dict[str, Any]) -> str:
    """One server-sent event carrying a JSON payload."""
    return f"data: {json.dumps(payload)}\n\n"


def parse_exclude(raw: Optional[str]) -> list[str]:
    """Already-asked questions from a JSON array query parameter; malformed input is ignored."""
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(q) for q in parsed]


def create_app(
    engine: Optional[QueryEngine] = None,
    allow_origins: Optional[list[str]] = None,
) -> FastAPI:
    """Build the API application.

    Args:
        engine: Query engine (default: DuckDB-backed engine from IV_* config)
        allow_origins: CORS origins (default: local dev servers)

    Returns:
        Configured FastAPI app
    """
    engine = engine or build_engine()
    app = FastAPI(title="InsightVault API", version=__version__)
    app.state.engine = engine

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins or ["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(UpstreamError)
    async def upstream_error_handler(request: Request, exc: UpstreamError):
        logger.error("request_failed", path=request.url.path, collaborator=exc.collaborator)
        return JSONResponse(status_code=502, content={"detail": GENERIC_ERROR})

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "ok",
            "version": __version__,
            "router_mode": engine.config.router_mode,
            "llm": describe_provider(),
        }

    @app.post("/api/chat", response_model=AskResponse, response_model_by_alias=True, response_model_exclude_none=True)
    async def chat(request: AskRequest):
        """Answer a question about a dataset."""
        return await engine.ask(request)

    @app.post("/api/chat/stream")
    async def chat_stream(request: AskRequest):
        """Answer a question as server-sent events.

        Frames: ``{"chunk": text}`` ... then ``{"done": true, ...}``, or
        ``{"error": message}`` if generation fails mid-stream. Failures before
        the first frame return HTTP 502.
        """
        events = engine.ask_stream(request)
        # Planning happens before the first event; fail fast with a status code
        first = await events.__anext__()

        async def frames() -> AsyncIterator[str]:
            try:
                yield sse_frame(first)
                async for event in events:
                    yield sse_frame(event)
            except UpstreamError as e:
                logger.error("stream_failed", collaborator=e.collaborator)
                yield sse_frame({"error": GENERIC_ERROR})

        return StreamingResponse(frames(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/api/datasets/{dataset_id}/schema")
    async def dataset_schema(dataset_id: str):
        """Inferred schema summary for a dataset."""
        schema = await engine.dataset_schema(dataset_id)
        return {"dataset_id": dataset_id, **schema.to_dict()}

    @app.get("/api/datasets/{dataset_id}/suggestions")
    async def dataset_suggestions(dataset_id: str, exclude: Optional[str] = None):
        """Starter questions; ``exclude`` is a JSON array of questions already asked."""
        suggestions = await engine.suggestions(dataset_id, exclude=parse_exclude(exclude))
        return {"suggestions": suggestions}

    @app.get("/api/datasets/{dataset_id}/summary")
    async def dataset_summary(dataset_id: str):
        """Two-sentence description of a dataset."""
        return {"summary": await engine.summary(dataset_id)}

    return app
