"""FastAPI application for the Smart Note Collector.

Endpoints:
  GET    /api/notes                 — Filtered, paginated note list
  GET    /api/notes/{id}            — Single note
  POST   /api/notes                 — Create a note
  PUT    /api/notes/{id}            — Partial note update
  DELETE /api/notes/{id}            — Delete a note
  GET    /api/themes                — Themes with note counts
  GET    /api/themes/stats          — Theme usage summary
  GET    /api/themes/{id}           — Single theme
  POST   /api/themes                — Create a theme
  PUT    /api/themes/{id}           — Partial theme update
  DELETE /api/themes/{id}           — Delete a theme (notes move to default)
  *      /api/ai-presets/...        — AI prompt presets
  GET    /api/stats                 — Store-wide statistics
  POST   /api/backup                — Snapshot the active store
  GET    /health                    — Backend selection and totals
  GET    /metrics                   — Prometheus metrics
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Optional, Union

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from note_collector.config import settings
from note_collector.exceptions import (
    ConstraintError,
    InitializationError,
    NoteCollectorError,
    NotFoundError,
    StorageIOError,
    ValidationError,
)
from note_collector.manager import NoteCollector
from note_collector.metrics import HTTP_DURATION, HTTP_REQUESTS
from note_collector.models import (
    AIPreset,
    Note,
    NotePage,
    Stats,
    ThemeStats,
    ThemeSummary,
    decode_source,
)

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger(__name__)

# --- Global instances ---
store = NoteCollector(settings)

# Endpoints excluded from HTTP metrics
_METRICS_EXCLUDE = {"/metrics", "/openapi.json", "/docs", "/redoc"}

_ERROR_STATUS: list[tuple[type[NoteCollectorError], int]] = [
    (NotFoundError, 404),
    (ValidationError, 400),
    (ConstraintError, 400),
    (InitializationError, 503),
    (StorageIOError, 500),
]


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record HTTP request count and duration for Prometheus."""

    async def dispatch(self, request: Request, call_next):
        """Wrap each request with timing and counting."""
        if request.url.path in _METRICS_EXCLUDE:
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        # Route templates keep ids out of the label set
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        HTTP_REQUESTS.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=response.status_code,
        ).inc()
        HTTP_DURATION.labels(endpoint=endpoint).observe(elapsed)
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: select the storage backend. Shutdown: release it."""
    logger.info("Initializing storage...")
    await store.initialize()
    logger.info(
        "Storage ready: backend=%s degraded=%s", store.backend_name, store.degraded
    )
    yield
    await store.close()
    logger.info("Note collector shut down.")


app = FastAPI(title="Smart Note Collector", version="1.0.0", lifespan=lifespan)

app.add_middleware(MetricsMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NoteCollectorError)
async def store_error_handler(
    request: Request, exc: NoteCollectorError
) -> JSONResponse:
    """Map persistence errors onto HTTP status codes."""
    status = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content=exc.to_dict())


# --- Request models ---
# Fields are optional so missing values reach the store and come back as
# a 400 with a readable message instead of a 422 schema error.


class NoteCreateRequest(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    theme: Optional[str] = None
    tags: Union[list[str], str, None] = None
    source: Union[dict[str, Any], str, None] = None


class NoteUpdateRequest(NoteCreateRequest):
    pass


class ThemeRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None


class PresetRequest(BaseModel):
    name: Optional[str] = None
    prompt: Optional[str] = None
    is_default: Optional[bool] = None


# --- Notes ---


@app.get("/api/notes", response_model=NotePage)
async def list_notes(
    theme: Optional[str] = None,
    theme_id: Optional[str] = None,
    search: Optional[str] = None,
    tags: Optional[str] = None,
    page: int = 1,
    limit: Optional[int] = None,
) -> NotePage:
    """Notes newest first, filtered by theme, search term and tags."""
    return await store.list_notes(
        theme=theme_id or theme, search=search, tags=tags, page=page, limit=limit
    )


@app.get("/api/notes/{note_id}", response_model=Note)
async def get_note(note_id: str) -> Note:
    note = await store.get_note(note_id)
    if note is None:
        raise NotFoundError("note", note_id)
    return note


@app.post("/api/notes", response_model=Note, status_code=201)
async def create_note(request: NoteCreateRequest) -> Note:
    return await store.create_note(
        title=request.title,
        content=request.content,
        theme=request.theme,
        tags=request.tags,
        source=decode_source(request.source),
    )


@app.put("/api/notes/{note_id}", response_model=Note)
async def update_note(note_id: str, request: NoteUpdateRequest) -> Note:
    return await store.update_note(
        note_id,
        title=request.title,
        content=request.content,
        theme=request.theme,
        tags=request.tags,
        source=decode_source(request.source),
    )


@app.delete("/api/notes/{note_id}")
async def delete_note(note_id: str) -> dict[str, Any]:
    note = await store.delete_note(note_id)
    return {"message": "Note deleted", "note": note}


# --- Themes ---


@app.get("/api/themes", response_model=list[ThemeSummary])
async def list_themes() -> list[ThemeSummary]:
    return await store.list_themes()


@app.get("/api/themes/stats", response_model=ThemeStats)
async def theme_stats() -> ThemeStats:
    return await store.get_theme_stats()


@app.get("/api/themes/{theme_id}", response_model=ThemeSummary)
async def get_theme(theme_id: str) -> ThemeSummary:
    theme = await store.get_theme(theme_id)
    if theme is None:
        raise NotFoundError("theme", theme_id)
    return theme


@app.post("/api/themes", response_model=ThemeSummary, status_code=201)
async def create_theme(request: ThemeRequest) -> ThemeSummary:
    return await store.create_theme(
        name=request.name, description=request.description, color=request.color
    )


@app.put("/api/themes/{theme_id}", response_model=ThemeSummary)
async def update_theme(theme_id: str, request: ThemeRequest) -> ThemeSummary:
    return await store.update_theme(
        theme_id,
        name=request.name,
        description=request.description,
        color=request.color,
    )


@app.delete("/api/themes/{theme_id}")
async def delete_theme(theme_id: str) -> dict[str, Any]:
    moved = await store.delete_theme(theme_id)
    return {"message": "Theme deleted", "movedNotes": moved}


# --- AI presets ---


@app.get("/api/ai-presets")
async def list_presets() -> dict[str, list[AIPreset]]:
    return {"presets": await store.list_presets()}


@app.get("/api/ai-presets/default")
async def get_default_preset() -> dict[str, Optional[AIPreset]]:
    return {"defaultPreset": await store.get_default_preset()}


@app.delete("/api/ai-presets/default")
async def clear_default_preset() -> dict[str, str]:
    await store.set_default_preset(None)
    return {"message": "Default preset cleared"}


@app.get("/api/ai-presets/{preset_id}")
async def get_preset(preset_id: str) -> dict[str, AIPreset]:
    preset = await store.get_preset(preset_id)
    if preset is None:
        raise NotFoundError("preset", preset_id)
    return {"preset": preset}


@app.post("/api/ai-presets", status_code=201)
async def create_preset(request: PresetRequest) -> dict[str, Any]:
    preset = await store.create_preset(
        name=request.name, prompt=request.prompt, is_default=bool(request.is_default)
    )
    return {"message": "Preset created", "preset": preset}


@app.put("/api/ai-presets/{preset_id}")
async def update_preset(preset_id: str, request: PresetRequest) -> dict[str, Any]:
    preset = await store.update_preset(
        preset_id,
        name=request.name,
        prompt=request.prompt,
        is_default=request.is_default,
    )
    return {"message": "Preset updated", "preset": preset}


@app.put("/api/ai-presets/{preset_id}/default")
async def set_default_preset(preset_id: str) -> dict[str, str]:
    await store.set_default_preset(preset_id)
    return {"message": "Default preset set", "defaultPresetId": preset_id}


@app.delete("/api/ai-presets/{preset_id}")
async def delete_preset(preset_id: str) -> dict[str, str]:
    await store.delete_preset(preset_id)
    return {"message": "Preset deleted"}


# --- Maintenance ---


@app.get("/api/stats", response_model=Stats)
async def stats() -> Stats:
    return await store.get_stats()


@app.post("/api/backup")
async def backup() -> dict[str, list[str]]:
    """Write a timestamped copy of the active store."""
    files = await store.backup()
    return {"files": [str(f) for f in files]}


@app.get("/health")
async def health() -> dict[str, Any]:
    """Which backend is serving requests, and how much it holds."""
    totals = await store.get_stats()
    return {
        "status": "healthy",
        "backend": store.backend_name,
        "state": store.state.value,
        "degraded": store.degraded,
        "total_notes": totals.total_notes,
        "total_themes": totals.total_themes,
    }


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
