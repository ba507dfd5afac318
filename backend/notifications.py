"""Notification events for the external delivery service.

Events are written to the ``queue_jobs`` outbox inside the same transaction
as the video transition that caused them, then published to the Redis/RQ
``notifications`` queue by the notifier loop.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry

from backend.jobs import JobQueue, utc_now
from backend.payloads import NotifyPayload, NotifyResult, to_document
from backend.runtime_config import is_inline_notifications_enabled


LOGGER = logging.getLogger("vap.notifications")

NOTIFICATION_QUEUE_NAME = "notifications"
NOTIFY_TASK = "notify"
VIDEO_AVAILABLE = "video_available"
VIDEO_FAILED = "video_failed"


def get_redis_connection() -> Redis:
    return Redis.from_url(os.getenv("REDIS_URL", "redis://localhost:6379/0"))


def get_notification_queue() -> Queue:
    return Queue(name=NOTIFICATION_QUEUE_NAME, connection=get_redis_connection())


def emit_event(
    outbox: JobQueue,
    tx,
    event: str,
    video: Dict[str, Any],
    *,
    error: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    payload = NotifyPayload(
        event=event,
        video_id=video["id"],
        lesson_id=video.get("lesson_id"),
        error=error,
    )
    return outbox.enqueue(NOTIFY_TASK, video["id"], to_document(payload), now=now, tx=tx)


def deliver_notification(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """RQ task executed by the notifications worker.

    Forwards the event to ``VAP_NOTIFICATIONS_WEBHOOK_URL`` when configured.
    """
    webhook_url = os.getenv("VAP_NOTIFICATIONS_WEBHOOK_URL", "").strip()
    LOGGER.info("notification.delivering", extra={"event": event, "video_id": data.get("video_id")})
    if not webhook_url:
        return {"delivered": False, "reason": "no webhook configured"}
    response = httpx.post(webhook_url, json={"event": event, "data": data}, timeout=10.0)
    response.raise_for_status()
    return {"delivered": True, "status_code": response.status_code}


class Notifier:
    """Drains the outbox into the RQ queue (or the log in inline mode)."""

    def __init__(self, outbox: JobQueue, queue_factory=get_notification_queue, inline: Optional[bool] = None) -> None:
        self.outbox = outbox
        self._queue_factory = queue_factory
        self.inline = is_inline_notifications_enabled() if inline is None else inline
        self._queue: Optional[Queue] = None

    def _queue_handle(self) -> Queue:
        if self._queue is None:
            self._queue = self._queue_factory()
        return self._queue

    def _publish(self, job: Dict[str, Any], payload: NotifyPayload) -> NotifyResult:
        data = payload.model_dump(mode="json", exclude={"task_type", "event"})
        if self.inline:
            LOGGER.info(
                "notification.published",
                extra={"event": payload.event, "video_id": payload.video_id, "lesson_id": payload.lesson_id, "mode": "inline"},
            )
            return NotifyResult(channel="log")
        rq_job = self._queue_handle().enqueue(
            "backend.notifications.deliver_notification",
            payload.event,
            data,
            job_id=f"notify:{job['id']}",
            retry=Retry(max=3, interval=[10, 60, 300]),
            result_ttl=86400,
            failure_ttl=86400,
        )
        LOGGER.info(
            "notification.published",
            extra={"event": payload.event, "video_id": payload.video_id, "lesson_id": payload.lesson_id, "job_id": job["id"]},
        )
        return NotifyResult(channel=NOTIFICATION_QUEUE_NAME, message_id=getattr(rq_job, "id", None))

    def drain_once(self, worker_id: str, now: Optional[datetime] = None) -> bool:
        """Publish one outbox event. Returns False when the outbox is empty."""
        timestamp = now or utc_now()
        self.outbox.expire([NOTIFY_TASK], timestamp)
        job = self.outbox.lease([NOTIFY_TASK], worker_id, timestamp)
        if job is None:
            return False
        payload = NotifyPayload.model_validate(job["payload"])
        try:
            result = self._publish(job, payload)
        except (RedisError, OSError) as exc:
            self.outbox.fail(
                job,
                f"publish_failed: {exc}",
                retryable=True,
                error_code="publish_failed",
                now=utc_now(),
            )
            return True
        self.outbox.complete(job, to_document(result), now=utc_now())
        return True
