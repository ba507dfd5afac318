from __future__ import annotations

import logging
import mimetypes
import os
import secrets
import tempfile
import threading
from collections import defaultdict, deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from time import perf_counter
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field
from redis import Redis
from starlette.concurrency import run_in_threadpool

from backend import videos
from backend.analytics import Heartbeat, record_heartbeat, session_api_payload, summarize_video_analytics
from backend.db import QUEUE_JOBS, get_database
from backend.errors import NotReady, PipelineError, QueueSaturated, StorageQuotaExceeded
from backend.idempotency import (
    InMemoryIdempotencyStore,
    fingerprint_payload,
    maybe_replay_response,
    store_idempotent_response,
)
from backend.jobs import job_api_payload, processing_queue
from backend.logging_config import configure_logging
from backend.observability import METRICS, render_prometheus_metrics
from backend.playback import request_playback
from backend.runtime_config import is_inline_notifications_enabled, load_settings, validate_runtime_environment
from backend.storage import LocalObjectStore, get_object_store
from backend.uptime import UptimeMonitor, alert_api_payload


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    validate_runtime_environment("api")
    yield


app = FastAPI(title="Video Asset Pipeline API", lifespan=app_lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

LOGGER = logging.getLogger("vap.api")


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid4())
    request.state.request_id = request_id

    started_at = perf_counter()
    response = await call_next(request)
    duration_ms = (perf_counter() - started_at) * 1000

    response.headers["x-request-id"] = request_id
    LOGGER.info(
        "request.complete",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
        },
    )
    return response


@app.exception_handler(PipelineError)
async def pipeline_error_handler(_: Request, exc: PipelineError) -> JSONResponse:
    status_code = getattr(exc, "status_code", None)
    if status_code is None:
        status_code = 503 if exc.retryable else 500
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": exc.code})


class _InMemoryRateLimiter:
    def __init__(self) -> None:
        self._events_by_key: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def allow(self, key: str, *, limit: int, window_seconds: int, now: float) -> bool:
        cutoff = now - window_seconds
        with self._lock:
            events = self._events_by_key[key]
            while events and events[0] <= cutoff:
                events.popleft()
            if len(events) >= limit:
                return False
            events.append(now)
            return True


_WRITE_RATE_LIMITER = _InMemoryRateLimiter()
_IDEMPOTENCY_STORE = InMemoryIdempotencyStore()


class CreateVideoRequest(BaseModel):
    lesson_id: Optional[str] = None
    filename: str = Field(min_length=1, max_length=255)
    content_type: Optional[str] = None


class ReplaceSourceRequest(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    content_type: Optional[str] = None


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _enforce_admin_auth(request: Request) -> None:
    expected_token = os.getenv("VAP_ADMIN_API_TOKEN", "").strip()
    if not expected_token:
        return

    authorization = request.headers.get("authorization", "")
    scheme, _, provided_token = authorization.partition(" ")

    if scheme.lower() != "bearer" or not provided_token.strip():
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header.")

    if not secrets.compare_digest(provided_token.strip(), expected_token):
        raise HTTPException(status_code=403, detail="Invalid API token.")


def _parse_positive_int_env(name: str, default: int) -> int:
    raw_value = os.getenv(name, str(default)).strip()
    try:
        parsed = int(raw_value)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer.") from exc
    if parsed <= 0:
        raise RuntimeError(f"{name} must be a positive integer.")
    return parsed


def _client_identifier(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for", "")
    if forwarded_for.strip():
        return forwarded_for.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _enforce_write_rate_limit(request: Request, *, now: Optional[float] = None) -> None:
    max_requests = _parse_positive_int_env("VAP_RATE_LIMIT_PER_MINUTE", 120)
    timestamp = now if now is not None else perf_counter()
    if not _WRITE_RATE_LIMITER.allow(
        _client_identifier(request),
        limit=max_requests,
        window_seconds=60,
        now=timestamp,
    ):
        raise HTTPException(
            status_code=429,
            detail="Too many write requests. Please retry shortly.",
        )


def _caller_id(request: Request) -> Optional[str]:
    return request.headers.get("x-user-id", "").strip() or None


def _ensure_capacity(db, settings) -> None:
    depth = processing_queue(db, settings).depth()
    if depth["running"] >= settings.worker_count and depth["queued"] > settings.queue_soft_cap:
        raise QueueSaturated("All workers are busy and the queue is over capacity. Retry later.")


def _local_store_or_404() -> LocalObjectStore:
    store = get_object_store()
    if not isinstance(store, LocalObjectStore):
        raise HTTPException(status_code=404, detail="Direct storage access is only served in local mode.")
    return store


def _verify_signed_request(store: LocalObjectStore, key: str, token: str, operation: str) -> None:
    try:
        store.verify_token(token, key, operation)
    except PermissionError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


def _queue_depth_snapshot(db) -> dict[str, int]:
    depth = processing_queue(db).depth()
    outbox = db.count_jobs_by_status(QUEUE_JOBS)
    depth["outbox_queued"] = int(outbox.get("queued", 0))
    return depth


# =========================================================================
# Videos
# =========================================================================


@app.post("/videos", status_code=201)
def create_video(request: Request, payload: CreateVideoRequest) -> JSONResponse:
    _enforce_write_rate_limit(request)
    uploader_id = _caller_id(request)
    fingerprint = fingerprint_payload({**payload.model_dump(), "uploader_id": uploader_id})
    replay = maybe_replay_response(request, _IDEMPOTENCY_STORE, scope="videos.create", fingerprint=fingerprint)
    if replay is not None:
        return JSONResponse(status_code=replay.status_code, content=replay.response_payload)

    db = get_database()
    settings = load_settings()
    _ensure_capacity(db, settings)
    grant = videos.create_video(
        db,
        get_object_store(),
        lesson_id=payload.lesson_id,
        uploader_id=uploader_id,
        filename=payload.filename,
        content_type=payload.content_type,
        settings=settings,
    )
    store_idempotent_response(
        request,
        _IDEMPOTENCY_STORE,
        scope="videos.create",
        fingerprint=fingerprint,
        response_payload=grant,
        status_code=201,
    )
    return JSONResponse(status_code=201, content=grant)


@app.post("/videos/{video_id}/finalize", status_code=202)
def finalize_video(request: Request, video_id: str) -> JSONResponse:
    _enforce_write_rate_limit(request)
    db = get_database()
    settings = load_settings()
    _ensure_capacity(db, settings)
    video = videos.finalize_upload(db, get_object_store(), video_id, settings=settings)
    return JSONResponse(status_code=202, content={"videoId": video_id, "status": video["status"]})


@app.get("/videos/{video_id}")
def get_video(video_id: str) -> dict:
    return {"video": videos.video_api_payload(videos.get_video(get_database(), video_id))}


@app.get("/videos/{video_id}/status")
def get_video_status(video_id: str) -> JSONResponse:
    status = videos.get_status(get_database(), video_id)
    return JSONResponse(status_code=202 if status["status"] == "processing" else 200, content=status)


@app.get("/videos/{video_id}/playback")
def get_playback(
    request: Request,
    video_id: str,
    include_transcript: bool = Query(default=False),
    language: Optional[str] = Query(default=None),
) -> JSONResponse:
    try:
        response = request_playback(
            get_database(),
            get_object_store(),
            video_id,
            _caller_id(request),
            include_transcript=include_transcript,
            language=language,
        )
    except NotReady as exc:
        if exc.status == "processing":
            return JSONResponse(status_code=202, content={"videoId": video_id, "status": exc.status})
        raise
    return JSONResponse(status_code=200, content=response)


@app.post("/videos/{video_id}/heartbeat")
def post_heartbeat(request: Request, video_id: str, heartbeat: Heartbeat) -> dict:
    if heartbeat.user_id is None:
        heartbeat = heartbeat.model_copy(update={"user_id": _caller_id(request)})
    session = record_heartbeat(get_database(), heartbeat.model_copy(update={"video_id": video_id}))
    return {"session": session_api_payload(session)}


@app.get("/videos/{video_id}/analytics")
def get_video_analytics(video_id: str, days: int = Query(default=30, ge=1, le=365)) -> dict:
    return summarize_video_analytics(get_database(), video_id, days=days)


@app.get("/videos/{video_id}/jobs")
def list_video_jobs(video_id: str) -> dict:
    db = get_database()
    videos.get_video(db, video_id)
    jobs = processing_queue(db).jobs_for(video_id)
    return {"videoId": video_id, "jobs": [job_api_payload(job) for job in jobs]}


# =========================================================================
# Admin
# =========================================================================


@app.post("/admin/videos/{video_id}/reset", status_code=202)
def reset_video(request: Request, video_id: str) -> JSONResponse:
    _enforce_admin_auth(request)
    video = videos.admin_reset(get_database(), video_id)
    LOGGER.info("admin.reset", extra={"video_id": video_id, "request_id": request.state.request_id})
    return JSONResponse(
        status_code=202,
        content={"videoId": video_id, "status": video["status"], "attempts": video["processing_attempts"]},
    )


@app.post("/admin/videos/{video_id}/replace-source")
def replace_video_source(request: Request, video_id: str, payload: ReplaceSourceRequest) -> dict:
    _enforce_admin_auth(request)
    return videos.replace_source(
        get_database(),
        get_object_store(),
        video_id,
        filename=payload.filename,
        content_type=payload.content_type,
    )


# =========================================================================
# Local object storage
# =========================================================================


@app.put("/storage/{key:path}")
async def upload_object(request: Request, key: str, token: str = Query(...)) -> dict:
    store = _local_store_or_404()
    _verify_signed_request(store, key, token, "write")
    content_type = request.headers.get("content-type", "application/octet-stream")
    with tempfile.TemporaryDirectory(prefix="vap-upload-") as tmp:
        spool = Path(tmp) / "object"
        written = 0
        with spool.open("wb") as handle:
            async for chunk in request.stream():
                written += len(chunk)
                if written > store.config.max_object_bytes:
                    raise HTTPException(status_code=413, detail="Object exceeds the configured size limit.")
                handle.write(chunk)
        try:
            await run_in_threadpool(store.put_file, key, spool, content_type)
        except StorageQuotaExceeded as exc:
            raise HTTPException(status_code=413, detail=str(exc)) from exc
    return {"key": key, "sizeBytes": written}


@app.api_route("/storage/{key:path}", methods=["GET", "HEAD"])
def read_object(key: str, token: str = Query(...)) -> Response:
    store = _local_store_or_404()
    _verify_signed_request(store, key, token, "read")
    if not store.exists(key):
        raise HTTPException(status_code=404, detail="Object not found.")
    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    if key.endswith(".m3u8"):
        media_type = "application/vnd.apple.mpegurl"
    return FileResponse(store.local_path(key), media_type=media_type)


# =========================================================================
# Ops
# =========================================================================


@app.get("/ops/uptime")
def ops_uptime(hours: int = Query(default=24, ge=1, le=24 * 30)) -> dict:
    monitor = UptimeMonitor(get_database(), get_object_store())
    return monitor.get_uptime_statistics(hours)


@app.get("/ops/uptime/alerts")
def ops_uptime_alerts() -> dict:
    monitor = UptimeMonitor(get_database(), get_object_store())
    return {"alerts": [alert_api_payload(alert) for alert in monitor.active_alerts()]}


@app.post("/ops/uptime/alerts/{alert_id}/resolve")
def ops_resolve_alert(request: Request, alert_id: str) -> dict:
    _enforce_admin_auth(request)
    monitor = UptimeMonitor(get_database(), get_object_store())
    return {"alert": alert_api_payload(monitor.resolve_alert(alert_id))}


@app.get("/ops/videos/stats")
def ops_video_stats() -> dict:
    return {"status": "ok", "time": _iso_now(), "videos": videos.video_stats(get_database())}


@app.get("/ops/metrics")
def ops_metrics() -> dict:
    db = get_database()
    queue_depth = _queue_depth_snapshot(db)
    return {
        "status": "ok",
        "time": _iso_now(),
        "metrics": METRICS.snapshot(queue_depth=queue_depth),
    }


@app.get("/ops/metrics/prometheus")
def ops_metrics_prometheus() -> PlainTextResponse:
    db = get_database()
    queue_depth = _queue_depth_snapshot(db)
    snapshot = METRICS.snapshot(queue_depth=queue_depth)
    return PlainTextResponse(
        content=render_prometheus_metrics(snapshot),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "time": _iso_now()}


@app.get("/health/ready")
def readiness() -> JSONResponse:
    checks: dict[str, dict[str, str]] = {}
    overall_status = "ok"

    try:
        get_database().healthcheck()
        checks["database"] = {"status": "ok"}
    except Exception as exc:
        overall_status = "degraded"
        checks["database"] = {"status": "error", "reason": str(exc)}

    if is_inline_notifications_enabled():
        checks["queue"] = {"status": "skipped", "reason": "VAP_INLINE_NOTIFICATIONS is enabled."}
    else:
        redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        try:
            Redis.from_url(redis_url).ping()
            checks["queue"] = {"status": "ok"}
        except Exception as exc:
            overall_status = "degraded"
            checks["queue"] = {"status": "error", "reason": str(exc)}

    try:
        get_object_store().healthcheck()
        checks["storage"] = {"status": "ok"}
    except Exception as exc:
        overall_status = "degraded"
        checks["storage"] = {"status": "error", "reason": str(exc)}

    status_code = 200 if overall_status == "ok" else 503
    return JSONResponse(
        status_code=status_code,
        content={
            "status": overall_status,
            "time": _iso_now(),
            "checks": checks,
        },
    )
