"""Video lifecycle: uploading -> processing -> ready | failed.

Every transition runs inside ``Database.lock_video`` so the status change,
the jobs it enqueues or supersedes and the outbox event commit together.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from backend.db import PROCESSING_JOBS
from backend.errors import InvalidTransition, UnsupportedMediaType, VideoNotFound
from backend.jobs import PIPELINE_TASKS, JobQueue, latest_jobs_by_type, outbox_queue, processing_queue, utc_now
from backend.notifications import VIDEO_AVAILABLE, VIDEO_FAILED, emit_event
from backend.observability import METRICS
from backend.payloads import ThumbnailPayload, TranscodePayload, TranscribePayload, to_document
from backend.runtime_config import PipelineSettings, load_settings
from backend.storage import (
    captions_prefix,
    hls_prefix,
    source_key,
    thumbnail_key,
)
from pipeline.media_probe import CONTENT_TYPES, extension_for


LOGGER = logging.getLogger("vap.videos")

STATUSES = ("uploading", "processing", "ready", "failed")
REQUIRED_TASKS = ("transcode", "thumbnail")

_TRANSITIONS = {
    "uploading": {"processing"},
    "processing": {"ready", "failed", "uploading"},
    "failed": {"processing", "uploading"},
    "ready": {"processing", "uploading"},
}

_DERIVED_FIELDS = {
    "thumbnail_key": None,
    "manifest_key": None,
    "duration_seconds": None,
    "width": None,
    "height": None,
    "codec": None,
    "size_bytes": None,
    "processing_error": None,
    "processing_started_at": None,
    "processing_completed_at": None,
}


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


def _transition(tx, to_status: str, fields: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    from_status = tx.video["status"]
    if to_status not in _TRANSITIONS.get(from_status, set()):
        raise InvalidTransition(f"Cannot move video from {from_status} to {to_status}.")
    video = tx.update_video({**fields, "status": to_status}, now)
    LOGGER.info(
        "video.transition",
        extra={
            "video_id": video["id"],
            "lesson_id": video.get("lesson_id"),
            "from_status": from_status,
            "status": to_status,
        },
    )
    METRICS.increment_video_transition(to_status)
    return video


def build_task_payloads(video: Dict[str, Any], settings: PipelineSettings) -> Dict[str, Dict[str, Any]]:
    video_id = video["id"]
    return {
        "thumbnail": to_document(
            ThumbnailPayload(
                source_key=video["storage_key"],
                target_key=thumbnail_key(video_id),
                at_seconds=settings.thumbnail_at_sec,
            )
        ),
        "transcode": to_document(
            TranscodePayload(source_key=video["storage_key"], target_prefix=hls_prefix(video_id))
        ),
        "transcribe": to_document(
            TranscribePayload(source_key=video["storage_key"], languages=list(settings.stt_languages))
        ),
    }


def _enqueue_tasks(
    queue: JobQueue,
    tx,
    task_types: Iterable[str],
    settings: PipelineSettings,
    now: datetime,
) -> list[str]:
    payloads = build_task_payloads(tx.video, settings)
    return [
        queue.enqueue(task_type, tx.video_id, payloads[task_type], max_retries=settings.max_retries, now=now, tx=tx)
        for task_type in task_types
    ]


def is_ready_complete(video: Dict[str, Any]) -> bool:
    return bool(
        video.get("thumbnail_key")
        and video.get("manifest_key")
        and (video.get("duration_seconds") or 0) > 0
        and video.get("width") is not None
        and video.get("height") is not None
    )


def mark_ready_if_complete(tx, outbox: JobQueue, now: datetime) -> bool:
    """Move a processing video to ``ready`` once every required task succeeded."""
    if tx.video["status"] != "processing":
        return False
    latest = latest_jobs_by_type(tx.fetch_jobs())
    if any(latest.get(task, {}).get("status") != "succeeded" for task in REQUIRED_TASKS):
        return False
    if not is_ready_complete(tx.video):
        return False
    video = _transition(tx, "ready", {"processing_completed_at": now, "processing_error": None}, now)
    emit_event(outbox, tx, VIDEO_AVAILABLE, video, now=now)
    return True


def mark_failed(tx, outbox: JobQueue, error: str, now: datetime) -> Dict[str, Any]:
    video = _transition(tx, "failed", {"processing_error": error, "processing_completed_at": now}, now)
    emit_event(outbox, tx, VIDEO_FAILED, video, error=error, now=now)
    return video


def _resolve_upload_type(filename: Optional[str], content_type: Optional[str]) -> tuple[str, str]:
    extension = extension_for(filename, content_type)
    if extension is None:
        raise UnsupportedMediaType(
            f"Unsupported video type for {filename or 'upload'!r}. "
            f"Allowed: {', '.join(sorted(CONTENT_TYPES))}."
        )
    return extension, CONTENT_TYPES[extension]


def _upload_grant(store, video: Dict[str, Any], settings: PipelineSettings, now: datetime) -> Dict[str, Any]:
    ttl = settings.signed_url_ttl_sec
    return {
        "videoId": video["id"],
        "uploadUrl": store.sign_write(video["storage_key"], video["content_type"], ttl, now=now.timestamp()),
        "uploadExpiresAt": (now + timedelta(seconds=ttl)).isoformat(),
    }


def create_video(
    db,
    store,
    *,
    lesson_id: Optional[str],
    uploader_id: Optional[str],
    filename: Optional[str],
    content_type: Optional[str] = None,
    settings: Optional[PipelineSettings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    settings = settings or load_settings()
    timestamp = now or utc_now()
    extension, resolved_type = _resolve_upload_type(filename, content_type)
    video_id = str(uuid.uuid4())
    video = db.insert_video(
        {
            "id": video_id,
            "lesson_id": lesson_id,
            "uploader_id": uploader_id,
            "storage_key": source_key(video_id, extension),
            "source_filename": filename,
            "content_type": resolved_type,
            "status": "uploading",
            "created_at": timestamp,
            "updated_at": timestamp,
        }
    )
    LOGGER.info(
        "video.created",
        extra={"video_id": video_id, "lesson_id": lesson_id, "status": "uploading"},
    )
    METRICS.increment_video_transition("uploading")
    return _upload_grant(store, video, settings, timestamp)


def finalize_upload(
    db,
    store,
    video_id: str,
    *,
    settings: Optional[PipelineSettings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    settings = settings or load_settings()
    timestamp = now or utc_now()
    queue = processing_queue(db, settings)
    with db.lock_video(video_id) as tx:
        if tx.video["status"] != "uploading":
            raise InvalidTransition(f"Video is {tx.video['status']}; only uploading videos can be finalized.")
        key = tx.video["storage_key"]
        if not store.exists(key):
            raise InvalidTransition("Source object has not been uploaded yet.")
        video = _transition(
            tx,
            "processing",
            {
                "size_bytes": store.size(key),
                "processing_started_at": timestamp,
                "processing_completed_at": None,
                "processing_attempts": 1,
                "processing_error": None,
            },
            timestamp,
        )
        _enqueue_tasks(queue, tx, PIPELINE_TASKS, settings, timestamp)
    return video


def admin_reset(
    db,
    video_id: str,
    *,
    settings: Optional[PipelineSettings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Re-run a failed or ready video.

    From ``failed`` only the tasks that have not succeeded are re-enqueued;
    from ``ready`` the whole pipeline runs again.
    """
    settings = settings or load_settings()
    timestamp = now or utc_now()
    queue = processing_queue(db, settings)
    outbox = outbox_queue(db, settings)
    with db.lock_video(video_id) as tx:
        from_status = tx.video["status"]
        if from_status not in ("failed", "ready"):
            raise InvalidTransition(f"Video is {from_status}; only failed or ready videos can be reset.")
        latest = latest_jobs_by_type(tx.fetch_jobs())
        queue.supersede(video_id, PIPELINE_TASKS, now=timestamp, tx=tx)
        if from_status == "ready":
            tasks = list(PIPELINE_TASKS)
        else:
            tasks = [task for task in PIPELINE_TASKS if latest.get(task, {}).get("status") != "succeeded"]
        _transition(
            tx,
            "processing",
            {
                "processing_error": None,
                "processing_attempts": int(tx.video.get("processing_attempts") or 0) + 1,
                "processing_started_at": timestamp,
                "processing_completed_at": None,
            },
            timestamp,
        )
        _enqueue_tasks(queue, tx, tasks, settings, timestamp)
        if not tasks:
            mark_ready_if_complete(tx, outbox, timestamp)
    return tx.video


def replace_source(
    db,
    store,
    video_id: str,
    *,
    filename: Optional[str],
    content_type: Optional[str] = None,
    settings: Optional[PipelineSettings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Send a video back to ``uploading`` with a fresh source key."""
    settings = settings or load_settings()
    timestamp = now or utc_now()
    queue = processing_queue(db, settings)
    extension, resolved_type = _resolve_upload_type(filename, content_type)
    with db.lock_video(video_id) as tx:
        previous = dict(tx.video)
        if previous["status"] == "uploading":
            raise InvalidTransition("Video is still uploading; finalize or upload to the existing URL.")
        queue.supersede(video_id, PIPELINE_TASKS, now=timestamp, tx=tx)
        tx.delete_transcripts()
        video = _transition(
            tx,
            "uploading",
            {
                **_DERIVED_FIELDS,
                "storage_key": source_key(video_id, extension),
                "source_filename": filename,
                "content_type": resolved_type,
            },
            timestamp,
        )

    store.delete_prefix(hls_prefix(video_id))
    store.delete_prefix(captions_prefix(video_id))
    if previous.get("thumbnail_key"):
        store.delete(previous["thumbnail_key"])
    if previous["storage_key"] != video["storage_key"]:
        store.delete(previous["storage_key"])
    LOGGER.info("video.derived_assets_removed", extra={"video_id": video_id, "status": "uploading"})
    return _upload_grant(store, video, settings, timestamp)


def get_video(db, video_id: str) -> Dict[str, Any]:
    video = db.fetch_video(video_id)
    if not video:
        raise VideoNotFound(f"Video {video_id} not found.")
    return video


def video_api_payload(video: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": video["id"],
        "lessonId": video.get("lesson_id"),
        "uploaderId": video.get("uploader_id"),
        "status": video.get("status"),
        "sourceFilename": video.get("source_filename"),
        "contentType": video.get("content_type"),
        "durationSeconds": video.get("duration_seconds"),
        "width": video.get("width"),
        "height": video.get("height"),
        "codec": video.get("codec"),
        "sizeBytes": video.get("size_bytes"),
        "hasThumbnail": bool(video.get("thumbnail_key")),
        "processingError": video.get("processing_error"),
        "processingAttempts": video.get("processing_attempts"),
        "processingStartedAt": _iso(video.get("processing_started_at")),
        "processingCompletedAt": _iso(video.get("processing_completed_at")),
        "createdAt": _iso(video.get("created_at")),
        "updatedAt": _iso(video.get("updated_at")),
    }


def get_status(db, video_id: str) -> Dict[str, Any]:
    video = get_video(db, video_id)
    latest = latest_jobs_by_type(db.fetch_jobs(PROCESSING_JOBS, video_id))
    stages: Dict[str, Dict[str, Any]] = {}
    for task in PIPELINE_TASKS:
        job = latest.get(task)
        stages[task] = {
            "status": job.get("status") if job else "not_started",
            "jobId": job.get("id") if job else None,
            "retryCount": job.get("retry_count") if job else 0,
            "error": job.get("error") if job else None,
            "updatedAt": _iso(job.get("updated_at")) if job else None,
        }
    succeeded = sum(1 for stage in stages.values() if stage["status"] == "succeeded")
    progress = 100 if video["status"] == "ready" else int(succeeded / len(PIPELINE_TASKS) * 100)
    return {
        "videoId": video_id,
        "status": video["status"],
        "progressPct": progress,
        "error": video.get("processing_error"),
        "attempts": video.get("processing_attempts") or 0,
        "stages": stages,
    }


def video_stats(db) -> Dict[str, int]:
    counts = db.count_videos_by_status()
    stats = {status: int(counts.get(status, 0)) for status in STATUSES}
    stats["total"] = sum(stats.values())
    return stats
