"""FastAPI application serving media ranges and processing notifications."""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import logging
import uuid
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request, WebSocket
from fastapi import status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocketDisconnect

from ..config import AppConfig
from ..errors import AccessDenied, MediaUnavailable, RangeNotSatisfiable, RecordNotFound
from ..processing.analysis import Analyzer, RandomSensitivityAnalyzer
from ..services.access import AccessPolicy, Requester, RoleAccessPolicy
from ..services.events import log_app_event, log_query
from ..services.media_store import FilesystemMediaStore, MediaStore
from ..services.notifications import NotificationBus, Subscription
from ..services.pipeline import ProcessingPipeline
from ..services.storage import MEDIA_STATES, MediaRecord, MediaRepository
from ..services.streaming import RangeStreamer, StreamPlan


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "mediahub_request_id",
    default=None,
)
_JOB_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "mediahub_job_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "mediahub_actor",
    default=None,
)

USER_ID_HEADER = "x-user-id"
USER_ROLE_HEADER = "x-user-role"


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    job_id = _JOB_ID_VAR.get()
    if job_id:
        context["job_id"] = str(job_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") not in {"http", "websocket"}:
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope_state = scope.setdefault("state", {})
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id

        headers = {key.decode("latin-1"): value.decode("latin-1") for key, value in scope.get("headers", [])}
        actor = headers.get(USER_ID_HEADER) or "anonymous"
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(actor)
        try:
            await self.app(scope, receive, send)
        finally:
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra or {})
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        for key, value in _collect_correlation_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("mediahub.events"), {})


def _log_event(
    message: str,
    *,
    media_id: Optional[str] = None,
    owner_id: Optional[str] = None,
    **fields: Any,
) -> None:
    log_app_event(
        message,
        media_id=media_id,
        owner_id=owner_id,
        fields=fields,
        correlation=_collect_correlation_context(),
        logger=EVENT_LOGGER,
    )


def _repository_event_emitter(
    action: str,
    *,
    fields: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
) -> None:
    log_query(
        action,
        fields=fields,
        duration_ms=duration_ms,
        correlation=_collect_correlation_context(),
        logger=EVENT_LOGGER,
    )


@contextlib.contextmanager
def _job_context(job_id: str) -> Iterator[None]:
    """Tag work started inside the block, including spawned tasks, with *job_id*."""

    token = _JOB_ID_VAR.set(job_id)
    try:
        yield
    finally:
        _JOB_ID_VAR.reset(token)


def _normalize_root_path(value: Optional[str]) -> str:
    if value is None:
        return ""
    normalized = value.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


def _requester_from_request(request: Request) -> Requester:
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip() or None
    role = (request.headers.get(USER_ROLE_HEADER) or "").strip().lower() or "viewer"
    return Requester(user_id=user_id, role=role)


def _serialize_media(record: MediaRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "owner_id": record.owner_id,
        "title": record.title,
        "content_type": record.content_type,
        "size_bytes": record.size_bytes,
        "state": record.state,
        "progress_percent": record.progress_percent,
        "score": record.score,
        "view_count": record.view_count,
        "metadata": record.metadata,
        "created_at": record.created_at,
        "processed_at": record.processed_at,
    }


def _attachment_filename(record: MediaRecord) -> str:
    name = PurePosixPath(record.location_ref).name or record.id
    return name.replace('"', "")


class ProcessRequest(BaseModel):
    owner_id: Optional[str] = None


def create_app(
    repository: MediaRepository,
    *,
    config: AppConfig,
    store: Optional[MediaStore] = None,
    analyzer: Optional[Analyzer] = None,
    access_policy: Optional[AccessPolicy] = None,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    configure_emitter = getattr(repository, "configure_event_emitter", None)
    if callable(configure_emitter):
        configure_emitter(_repository_event_emitter)

    media_store: MediaStore = store or FilesystemMediaStore(config.media_root)
    bus = NotificationBus(queue_size=config.notification_queue_size)
    pipeline = ProcessingPipeline(
        repository,
        bus,
        analyzer or RandomSensitivityAnalyzer(),
        total_steps=config.processing_steps,
        step_delay_seconds=config.step_delay_seconds,
        analysis_timeout_seconds=config.analysis_timeout_seconds,
    )
    streamer = RangeStreamer(
        repository,
        media_store,
        access_policy=access_policy or RoleAccessPolicy(),
        max_chunk_bytes=config.max_chunk_bytes,
        cache_max_age=config.cache_max_age,
    )

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        recovered = pipeline.recover_interrupted()
        if recovered:
            _log_event("Recovered interrupted processing runs", count=recovered)
        try:
            yield
        finally:
            await pipeline.shutdown()

    app = FastAPI(
        title="MediaHub",
        description="Range streaming and processing notifications for stored media",
        root_path=_normalize_root_path(root_path),
        lifespan=lifespan,
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
    )
    app.state.repository = repository
    app.state.notification_bus = bus
    app.state.pipeline = pipeline
    app.state.streamer = streamer

    def _require_media(media_id: str) -> MediaRecord:
        record = repository.get_media(media_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Media not found")
        return record

    async def _plan_response(
        record: MediaRecord,
        request: Request,
        *,
        count_view: bool,
    ) -> StreamPlan:
        try:
            return await run_in_threadpool(
                streamer.prepare,
                record,
                request.headers.get("range"),
                requester=_requester_from_request(request),
                count_view=count_view,
            )
        except RangeNotSatisfiable as error:
            size_bytes = error.size_bytes if error.size_bytes is not None else record.size_bytes
            raise HTTPException(
                status_code=416,
                detail=str(error),
                headers={"Content-Range": f"bytes */{size_bytes}"},
            ) from error
        except (AccessDenied, MediaUnavailable) as error:
            LOGGER.warning("Refusing media %s: %s", record.id, error)
            raise HTTPException(status_code=error.status_code, detail=str(error)) from error

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "active_runs": len(pipeline.active_tasks()),
        }

    @app.get("/api/media")
    async def list_media(
        owner_id: Optional[str] = Query(None),
        state: Optional[str] = Query(None),
    ) -> Dict[str, List[Dict[str, Any]]]:
        if state is not None and state not in MEDIA_STATES:
            raise HTTPException(status_code=400, detail=f"Unknown state '{state}'")
        records = repository.iter_media(owner_id=owner_id, state=state)
        return {"media": [_serialize_media(record) for record in records]}

    @app.get("/api/media/{media_id}")
    async def get_media(media_id: str) -> Dict[str, Any]:
        return {"media": _serialize_media(_require_media(media_id))}

    @app.post("/api/media/{media_id}/process", status_code=status.HTTP_202_ACCEPTED)
    async def process_media(
        media_id: str,
        payload: Optional[ProcessRequest] = Body(None),
    ) -> Dict[str, Any]:
        record = _require_media(media_id)
        owner_id = (payload.owner_id if payload else None) or record.owner_id
        job_id = _new_correlation_id()
        with _job_context(job_id):
            task = pipeline.start(media_id, owner_id)
        _log_event("Processing requested", media_id=media_id, scheduled=task is not None)
        return {
            "status": "scheduled" if task is not None else "already_active",
            "job_id": job_id if task is not None else None,
            "media": _serialize_media(record),
        }

    @app.post("/api/media/{media_id}/reprocess", status_code=status.HTTP_202_ACCEPTED)
    async def reprocess_media(
        media_id: str,
        payload: Optional[ProcessRequest] = Body(None),
    ) -> Dict[str, Any]:
        job_id = _new_correlation_id()
        try:
            with _job_context(job_id):
                task = pipeline.reprocess(media_id, payload.owner_id if payload else None)
        except RecordNotFound as error:
            raise HTTPException(status_code=404, detail="Media not found") from error
        _log_event("Reprocessing requested", media_id=media_id, scheduled=task is not None)
        return {
            "status": "scheduled" if task is not None else "already_active",
            "job_id": job_id if task is not None else None,
            "media": _serialize_media(_require_media(media_id)),
        }

    @app.get("/media/{media_id}")
    async def stream_media(media_id: str, request: Request) -> StreamingResponse:
        record = _require_media(media_id)
        plan = await _plan_response(record, request, count_view=True)
        return StreamingResponse(
            streamer.iter_bytes(plan),
            status_code=plan.status_code,
            headers=plan.headers,
        )

    @app.get("/media/{media_id}/download")
    async def download_media(media_id: str, request: Request) -> StreamingResponse:
        record = _require_media(media_id)
        requester = _requester_from_request(request)
        if not (requester.is_admin or requester.user_id == record.owner_id):
            raise HTTPException(status_code=403, detail="Not authorized to download this media")
        plan = await _plan_response(record, request, count_view=False)
        headers = dict(plan.headers)
        headers["Content-Disposition"] = f'attachment; filename="{_attachment_filename(record)}"'
        return StreamingResponse(
            streamer.iter_bytes(plan),
            status_code=plan.status_code,
            headers=headers,
        )

    async def _forward_events(subscription: Subscription, websocket: WebSocket) -> None:
        async for event in subscription:
            await websocket.send_json(event.to_message())

    async def _wait_for_disconnect(websocket: WebSocket) -> None:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                return

    @app.websocket("/ws/notifications/{owner_id}")
    async def notifications_channel(websocket: WebSocket, owner_id: str) -> None:
        # Subscribe before accepting so nothing published after the handshake is missed.
        subscription = bus.subscribe(owner_id)
        _log_event("Notification channel opened", owner_id=owner_id, subscription=subscription.id)
        try:
            await websocket.accept()
            sender = asyncio.create_task(_forward_events(subscription, websocket))
            receiver = asyncio.create_task(_wait_for_disconnect(websocket))
            done, pending = await asyncio.wait(
                {sender, receiver}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                    await task
            for task in done:
                error = task.exception()
                if error is not None and not isinstance(error, WebSocketDisconnect):
                    LOGGER.warning(
                        "Notification channel for owner %s closed with error: %s",
                        owner_id,
                        error,
                    )
        finally:
            bus.unsubscribe(subscription)
            _log_event(
                "Notification channel closed",
                owner_id=owner_id,
                subscription=subscription.id,
                dropped=subscription.dropped,
            )

    return app


__all__ = ["ContextualLoggerAdapter", "RequestContextMiddleware", "create_app"]
