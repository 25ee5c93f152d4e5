import asyncio
import json
import logging
import os
import time
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from widgetgen.auth import extract_client_key, require_api_key
from widgetgen.connections import (
    DEFAULT_MAX_SUGGESTIONS,
    DEFAULT_MIN_COMPATIBILITY,
    ConnectionSuggester,
    get_compatibility_label,
    suggest_common_connections,
)
from widgetgen.generator import WidgetGenerator, build_generator
from widgetgen.models import CanvasWidget, GenerationRequest, GenerationResult, ProgressUpdate

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

try:
    EVENTS_IDLE_TIMEOUT = float(os.getenv("EVENTS_IDLE_TIMEOUT", "15") or 15)
except ValueError:
    EVENTS_IDLE_TIMEOUT = 15.0

_TERMINAL_STEPS = {"complete", "failed"}


class IterateRequest(BaseModel):
    feedback: str = Field(..., min_length=1)


class VariationRequest(BaseModel):
    source_widget_id: str
    description: str = Field(..., min_length=1)


class ConnectionRequest(BaseModel):
    generated: CanvasWidget
    canvas_widgets: List[CanvasWidget] = Field(default_factory=list)
    min_compatibility: float = Field(DEFAULT_MIN_COMPATIBILITY, ge=0.0, le=1.0)
    max_suggestions: int = Field(DEFAULT_MAX_SUGGESTIONS, ge=0, le=100)


class ConfigPatch(BaseModel):
    default_provider: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    iteration_temperature: Optional[float] = None
    variation_temperature: Optional[float] = None
    enable_quality_scoring: Optional[bool] = None


def _result_response(result: GenerationResult) -> JSONResponse:
    status = 404 if result.error_kind == "not_found" else 200
    return JSONResponse(status_code=status, content=result.model_dump(mode="json"))


def _event_key(update: ProgressUpdate) -> Tuple[str, str, int, float]:
    return (update.step, update.message, update.progress, update.timestamp)


def create_app(generator: Optional[WidgetGenerator] = None) -> FastAPI:
    app = FastAPI(title="widgetgen")
    app.state.generator = generator or build_generator()
    app.state.suggester = ConnectionSuggester()

    allow_origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = str(uuid.uuid4())
        start = time.time()
        request.state.request_id = rid
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            dur_ms = int((time.time() - start) * 1000)
            log.info(
                "rid=%s method=%s path=%s status=%s dur_ms=%d",
                rid, request.method, request.url.path, getattr(response, "status_code", "?"), dur_ms,
            )

    def _generator(request: Request) -> WidgetGenerator:
        return request.app.state.generator

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/llm/status")
    def llm_status(request: Request) -> Dict[str, Any]:
        return _generator(request).providers.status()

    @app.post("/generate")
    async def generate_endpoint(
        req: GenerationRequest,
        request: Request,
        wait: bool = True,
        api_key: Optional[str] = Depends(require_api_key),
    ):
        """With wait=false the run continues in the background and 202 carries the session id."""
        client_key = extract_client_key(api_key, request.client.host if request.client else "anon")
        log.info("generate: client=%s mode=%s wait=%s", client_key, req.mode, wait)
        gen = _generator(request)
        if not wait:
            session = gen.start_generation(req)
            return JSONResponse(
                status_code=202,
                content={
                    "session_id": session.id,
                    "status": session.status,
                    "events": f"/sessions/{session.id}/events",
                },
            )
        result = await gen.generate(req)
        return _result_response(result)

    @app.post("/sessions/{session_id}/iterate")
    async def iterate_endpoint(
        session_id: str,
        req: IterateRequest,
        request: Request,
        api_key: Optional[str] = Depends(require_api_key),
    ):
        result = await _generator(request).iterate(session_id, req.feedback)
        return _result_response(result)

    @app.post("/variations")
    async def variation_endpoint(
        req: VariationRequest,
        request: Request,
        api_key: Optional[str] = Depends(require_api_key),
    ):
        result = await _generator(request).create_variation(req.source_widget_id, req.description)
        return _result_response(result)

    @app.get("/sessions/{session_id}")
    def session_endpoint(session_id: str, request: Request) -> Dict[str, Any]:
        session = _generator(request).get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        data = session.model_dump(mode="json")
        data["current_step"] = session.current_step
        data["progress"] = session.progress
        return data

    @app.post("/sessions/{session_id}/cancel")
    async def cancel_endpoint(
        session_id: str,
        request: Request,
        api_key: Optional[str] = Depends(require_api_key),
    ) -> Dict[str, Any]:
        gen = _generator(request)
        if gen.get_session(session_id) is None:
            raise HTTPException(status_code=404, detail="Session not found")
        cancelled = gen.cancel_session(session_id)
        return {"session_id": session_id, "cancelled": cancelled}

    @app.get("/sessions/{session_id}/events")
    async def events_endpoint(session_id: str, request: Request):
        """
        NDJSON stream: one line per progress update, history first, then live
        updates until the session reaches complete or failed.
        """
        gen = _generator(request)
        if gen.get_session(session_id) is None:
            raise HTTPException(status_code=404, detail="Session not found")
        queue: "asyncio.Queue[ProgressUpdate]" = asyncio.Queue()
        loop = asyncio.get_running_loop()

        # Progress can be reported from worker threads as well as the loop.
        def _push(update: ProgressUpdate) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, update)

        unsubscribe = gen.on_progress(session_id, _push)
        snapshot = gen.get_session(session_id)

        async def _iter() -> AsyncIterator[str]:
            meta = {"event": "meta", "request_id": getattr(request.state, "request_id", None), "session_id": session_id}
            yield json.dumps(meta) + "\n"
            seen: Set[Tuple[str, str, int, float]] = set()
            try:
                history = snapshot.progress_updates if snapshot else []
                for update in history:
                    seen.add(_event_key(update))
                    yield json.dumps({"event": "progress", "data": update.model_dump(mode="json")}) + "\n"
                if snapshot is None or snapshot.is_terminal:
                    return
                while True:
                    try:
                        update = await asyncio.wait_for(queue.get(), timeout=EVENTS_IDLE_TIMEOUT)
                    except asyncio.TimeoutError:
                        current = gen.get_session(session_id)
                        if current is None or current.is_terminal:
                            return
                        yield json.dumps({"event": "heartbeat", "ts": time.time()}) + "\n"
                        continue
                    if _event_key(update) in seen:
                        continue
                    yield json.dumps({"event": "progress", "data": update.model_dump(mode="json")}) + "\n"
                    if update.step in _TERMINAL_STEPS:
                        return
            finally:
                unsubscribe()

        return StreamingResponse(_iter(), media_type="application/x-ndjson")

    @app.post("/connections/suggest")
    def suggest_connections(req: ConnectionRequest, request: Request) -> Dict[str, Any]:
        suggester: ConnectionSuggester = request.app.state.suggester
        result = suggester.analyze_connections(
            req.generated,
            req.canvas_widgets,
            min_compatibility=req.min_compatibility,
            max_suggestions=req.max_suggestions,
        )
        data = result.model_dump(mode="json")
        for item in data["suggestions"]:
            label, color = get_compatibility_label(item["compatibility"])
            item["label"] = label
            item["color"] = color
        if not req.canvas_widgets:
            data["hints"] = suggest_common_connections(req.generated)
        return data

    @app.get("/metrics/summary")
    def metrics_summary(request: Request) -> Dict[str, Any]:
        return _generator(request).metrics.summary()

    @app.patch("/config")
    def update_config(
        patch: ConfigPatch,
        request: Request,
        api_key: Optional[str] = Depends(require_api_key),
    ):
        changes = patch.model_dump(exclude_none=True)
        try:
            config = _generator(request).update_config(**changes)
        except ValidationError as exc:
            return JSONResponse(status_code=422, content={"detail": exc.errors(include_url=False)})
        return config.model_dump()

    return app


app = create_app()
