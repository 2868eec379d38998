"""
Study Session API: FastAPI local server for the reader front-ends.

This server provides:
- Session lifecycle (start/end/abandon) backed by SQLite
- Activity, AFK, Pomodoro and microbreak commands
- A server-sent-event stream of session snapshots
- Session history and highlight capture
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette import ServerSentEvent
from sse_starlette.sse import EventSourceResponse

from .config import Settings, get_settings
from .controller import StudySessionController
from .errors import InvalidConfig, NoActiveSession, PersistenceFailure, SessionAlreadyActive
from .logs import configure_logging, make_asyncio_exception_handler, recent_logs
from .models import SessionMode, SessionSnapshot
from .store import SqliteSessionStore
from .ticker import ApschedulerTicker

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 30.0


# ============ Request Models ============


class StartSessionRequest(BaseModel):
    book_id: str = Field(min_length=1)
    mode: SessionMode | None = None
    work_minutes: int | None = None
    break_minutes: int | None = None
    afk_timeout_minutes: int | None = None
    microbreak_interval_minutes: int | None = None
    microbreak_suppressed: bool = False


class PageViewRequest(BaseModel):
    words: int = Field(default=0, ge=0)


class MicrobreakSuppressedRequest(BaseModel):
    suppressed: bool


class HighlightRequest(BaseModel):
    book_id: str = Field(min_length=1)
    text: str
    cfi_range: str
    color: str = "yellow"
    chapter: str | None = None


# ============ App Factory ============


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    store = SqliteSessionStore(settings.db_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        asyncio.get_running_loop().set_exception_handler(
            make_asyncio_exception_handler(settings.crash_log_path)
        )

        await store.init_db()
        scheduler = AsyncIOScheduler()
        scheduler.start()
        controller = StudySessionController(
            store,
            ticker=ApschedulerTicker(scheduler),
            tick_interval_ms=settings.tick_interval_ms,
            top_highlights=settings.top_highlights,
            afk_prompt_timeout_ms=settings.afk_prompt_seconds * 1000,
        )
        scheduler.add_job(
            controller.retry_pending_writes,
            IntervalTrigger(seconds=settings.retry_seconds),
            id="retry_pending_writes",
            name="Retry failed session writes",
            max_instances=1,
            coalesce=True,
        )
        app.state.controller = controller
        app.state.store = store
        app.state.settings = settings
        logger.info(f"Study session API ready on {settings.base_url}")
        yield

        await controller.dispose()
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    app = FastAPI(
        title="Study Session API",
        description="Reading session timing engine for e-book reader front-ends",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)
    _register_routes(app)
    return app


def _controller(request: Request) -> StudySessionController:
    return request.app.state.controller


def _render(snapshot: SessionSnapshot | None, export: bool) -> dict | None:
    """Snapshot as JSON: snake_case milliseconds, or the camelCase seconds export."""
    if snapshot is None:
        return None
    return snapshot.to_export_dict() if export else snapshot.to_dict()


def _register_error_handlers(app: FastAPI) -> None:
    def handler(status_code: int):
        async def _handle(request: Request, exc: Exception) -> JSONResponse:
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})

        return _handle

    app.add_exception_handler(InvalidConfig, handler(422))
    app.add_exception_handler(SessionAlreadyActive, handler(409))
    app.add_exception_handler(NoActiveSession, handler(404))
    app.add_exception_handler(PersistenceFailure, handler(503))


def _register_routes(app: FastAPI) -> None:
    # Commands are async def on purpose: they must run on the event loop
    # thread alongside the tick job, never in the threadpool.

    # ---- Lifecycle ----

    @app.post("/api/session/start")
    async def start_session(request: Request, body: StartSessionRequest):
        settings: Settings = request.app.state.settings
        overrides = body.model_dump(
            exclude={"book_id", "microbreak_suppressed"}, exclude_none=True
        )
        config = replace(settings.default_session, **overrides)
        snapshot = await _controller(request).start(
            body.book_id, config, microbreak_suppressed=body.microbreak_suppressed
        )
        return snapshot.to_dict()

    @app.post("/api/session/end")
    async def end_session(request: Request):
        wrap_up = await _controller(request).end()
        return wrap_up.to_dict()

    @app.post("/api/session/abandon")
    async def abandon_session(request: Request):
        snapshot = await _controller(request).abandon()
        return snapshot.to_dict()

    @app.post("/api/session/afk-timeout")
    async def afk_timeout(request: Request):
        controller = _controller(request)
        wrap_up = await controller.dismiss_afk_timeout()
        if wrap_up is None:
            return {"ended": False, "snapshot": controller.snapshot().to_dict()}
        return {"ended": True, "wrap_up": wrap_up.to_dict()}

    # ---- Commands ----

    @app.post("/api/session/activity")
    async def report_activity(request: Request):
        return _controller(request).report_activity().to_dict()

    @app.post("/api/session/confirm-presence")
    async def confirm_presence(request: Request):
        return _controller(request).confirm_presence().to_dict()

    @app.post("/api/session/skip-break")
    async def skip_break(request: Request):
        return _controller(request).skip_break().to_dict()

    @app.post("/api/session/microbreak/take")
    async def microbreak_take(request: Request):
        return _controller(request).microbreak_take().to_dict()

    @app.post("/api/session/microbreak/end")
    async def microbreak_end(request: Request):
        return _controller(request).microbreak_end().to_dict()

    @app.post("/api/session/microbreak/postpone")
    async def microbreak_postpone(request: Request):
        return _controller(request).microbreak_postpone().to_dict()

    @app.post("/api/session/microbreak/disable-today")
    async def microbreak_disable_today(request: Request):
        return _controller(request).microbreak_disable_today().to_dict()

    @app.post("/api/session/microbreak/suppressed")
    async def microbreak_suppressed(request: Request, body: MicrobreakSuppressedRequest):
        return _controller(request).set_microbreak_suppressed(body.suppressed).to_dict()

    @app.post("/api/session/highlight")
    async def record_highlight(request: Request):
        return _controller(request).record_highlight().to_dict()

    @app.post("/api/session/note")
    async def record_note(request: Request):
        return _controller(request).record_note().to_dict()

    @app.post("/api/session/page")
    async def record_page_view(request: Request, body: PageViewRequest):
        return _controller(request).record_page_view(body.words).to_dict()

    # ---- Queries ----

    @app.get("/api/session/state")
    async def get_state(request: Request, export: bool = False):
        return _render(_controller(request).snapshot(), export)

    @app.get("/api/session/wrapup")
    async def get_wrap_up(request: Request):
        return _controller(request).get_wrap_up().to_dict()

    @app.get("/api/session/stream")
    async def session_stream(request: Request, export: bool = False):
        """SSE stream of snapshots. Sends the current one on connect."""
        broadcaster = _controller(request).broadcaster

        async def event_generator():
            queue = broadcaster.subscribe()
            try:
                latest = broadcaster.latest
                yield ServerSentEvent(
                    data=json.dumps(_render(latest, export)),
                    event="snapshot",
                )
                while True:
                    try:
                        snapshot = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield ServerSentEvent(
                            data=json.dumps({"timestamp": datetime.now(timezone.utc).isoformat()}),
                            event="keepalive",
                        )
                        continue
                    yield ServerSentEvent(
                        data=json.dumps(_render(snapshot, export)),
                        event="snapshot",
                    )
            except asyncio.CancelledError:
                logger.info("Snapshot stream disconnected")
            finally:
                broadcaster.unsubscribe(queue)

        return EventSourceResponse(event_generator())

    @app.get("/api/sessions")
    async def list_sessions(
        request: Request, book_id: str | None = None, limit: int = Query(50, ge=1, le=500)
    ):
        store: SqliteSessionStore = request.app.state.store
        records = await store.list_sessions(book_id=book_id, limit=limit)
        return [record.to_dict() for record in records]

    @app.post("/api/highlights")
    async def add_highlight(request: Request, body: HighlightRequest):
        store: SqliteSessionStore = request.app.state.store
        controller = _controller(request)
        highlight = await store.add_highlight(
            body.book_id, body.text, body.cfi_range, color=body.color, chapter=body.chapter
        )
        counted = controller.is_active and controller.book_id == body.book_id
        if counted:
            controller.record_highlight()
        return {"highlight": highlight.to_dict(), "counted_in_session": counted}

    # ---- Health / logs ----

    @app.get("/health")
    async def health_check(request: Request):
        controller = _controller(request)
        return {
            "status": "healthy",
            "session_state": controller.state.value,
            "pending_writes": len(controller.pending_writes),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/logs/recent")
    async def get_recent_logs(limit: int = 50):
        logs = recent_logs(limit)
        return {"logs": logs, "count": len(logs)}
