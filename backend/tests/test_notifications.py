from __future__ import annotations

import logging
import sys
from pathlib import Path

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

ROOT = Path(__file__).resolve().parents[2]
sys.path.append(str(ROOT))

import backend.notifications as notifications_module
from backend.db import QUEUE_JOBS
from backend.jobs import outbox_queue
from backend.notifications import Notifier, deliver_notification, emit_event


class FakeRQJob:
    def __init__(self, job_id: str) -> None:
        self.id = job_id


class FakeRQQueue:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.enqueued: list[tuple[tuple, dict]] = []

    def enqueue(self, *args, **kwargs):
        if self.error is not None:
            raise self.error
        self.enqueued.append((args, kwargs))
        return FakeRQJob(kwargs["job_id"])


def _outbox(fake_db):
    return outbox_queue(fake_db, rng=lambda low, high: 1.0)


def _emit(fake_db, clock, event="video_available", **kwargs) -> str:
    video = fake_db.add_video(id="video-1", status="ready", lesson_id="lesson-7")
    with fake_db.lock_video("video-1") as tx:
        return emit_event(_outbox(fake_db), tx, event, video, now=clock(), **kwargs)


def test_emit_event_writes_outbox_row(fake_db, clock):
    job_id = _emit(fake_db, clock, "video_failed", error="source_unreadable")

    row = fake_db.fetch_job(QUEUE_JOBS, job_id)
    assert row["task_type"] == "notify"
    assert row["status"] == "queued"
    assert row["payload"]["event"] == "video_failed"
    assert row["payload"]["lesson_id"] == "lesson-7"
    assert row["payload"]["error"] == "source_unreadable"


def test_emit_event_rolls_back_with_transition(fake_db, clock):
    video = fake_db.add_video(id="video-1", status="processing")

    with pytest.raises(RuntimeError):
        with fake_db.lock_video("video-1") as tx:
            emit_event(_outbox(fake_db), tx, "video_available", video, now=clock())
            raise RuntimeError("transition aborted")

    assert fake_db.fetch_jobs(QUEUE_JOBS, "video-1") == []


def test_notifier_publishes_to_rq_queue(fake_db, clock):
    job_id = _emit(fake_db, clock)
    queue = FakeRQQueue()
    notifier = Notifier(_outbox(fake_db), queue_factory=lambda: queue, inline=False)

    assert notifier.drain_once("worker-1", now=clock()) is True
    assert notifier.drain_once("worker-1", now=clock()) is False

    args, kwargs = queue.enqueued[0]
    assert args[0] == "backend.notifications.deliver_notification"
    assert args[1] == "video_available"
    assert args[2] == {"video_id": "video-1", "lesson_id": "lesson-7", "error": None}
    assert kwargs["job_id"] == f"notify:{job_id}"

    row = fake_db.fetch_job(QUEUE_JOBS, job_id)
    assert row["status"] == "succeeded"
    assert row["result"] == {"task_type": "notify", "channel": "notifications", "message_id": f"notify:{job_id}"}


def test_notifier_requeues_when_redis_is_down(fake_db, clock):
    job_id = _emit(fake_db, clock)
    queue = FakeRQQueue(error=RedisConnectionError("connection refused"))
    notifier = Notifier(_outbox(fake_db), queue_factory=lambda: queue, inline=False)

    assert notifier.drain_once("worker-1", now=clock()) is True

    row = fake_db.fetch_job(QUEUE_JOBS, job_id)
    assert row["status"] == "queued"
    assert row["retry_count"] == 1
    assert "publish_failed" in row["error"]


def test_notifier_fails_event_whose_lease_keeps_expiring(fake_db, clock):
    job_id = _emit(fake_db, clock)
    outbox = _outbox(fake_db)
    for attempt in range(4):
        assert outbox.lease(["notify"], f"crashing-notifier-{attempt}", clock())["retry_count"] == attempt
        clock.advance(901)
    notifier = Notifier(outbox, queue_factory=lambda: FakeRQQueue(), inline=False)

    assert notifier.drain_once("worker-1", now=clock()) is False

    row = fake_db.fetch_job(QUEUE_JOBS, job_id)
    assert (row["status"], row["error"]) == ("failed", "lease_expired")


def test_inline_notifier_logs_instead_of_publishing(fake_db, clock, caplog):
    job_id = _emit(fake_db, clock)

    def _no_queue():
        raise AssertionError("inline mode must not open a queue")

    notifier = Notifier(_outbox(fake_db), queue_factory=_no_queue, inline=True)
    with caplog.at_level(logging.INFO, logger="vap.notifications"):
        assert notifier.drain_once("worker-1", now=clock()) is True

    assert fake_db.fetch_job(QUEUE_JOBS, job_id)["result"]["channel"] == "log"
    published = [record for record in caplog.records if record.getMessage() == "notification.published"]
    assert published[0].video_id == "video-1"
    assert published[0].mode == "inline"


def test_deliver_notification_without_webhook(monkeypatch):
    monkeypatch.delenv("VAP_NOTIFICATIONS_WEBHOOK_URL", raising=False)

    assert deliver_notification("video_available", {"video_id": "video-1"}) == {
        "delivered": False,
        "reason": "no webhook configured",
    }


def test_deliver_notification_posts_to_webhook(monkeypatch):
    calls = []

    def _post(url, json, timeout):
        calls.append((url, json))
        return httpx.Response(202, request=httpx.Request("POST", url))

    monkeypatch.setenv("VAP_NOTIFICATIONS_WEBHOOK_URL", "https://notify.test/hook")
    monkeypatch.setattr(notifications_module.httpx, "post", _post)

    result = deliver_notification("video_failed", {"video_id": "video-1", "error": "internal"})

    assert result == {"delivered": True, "status_code": 202}
    assert calls == [("https://notify.test/hook", {"event": "video_failed", "data": {"video_id": "video-1", "error": "internal"}})]


def test_deliver_notification_raises_for_rq_retry(monkeypatch):
    monkeypatch.setenv("VAP_NOTIFICATIONS_WEBHOOK_URL", "https://notify.test/hook")
    monkeypatch.setattr(
        notifications_module.httpx,
        "post",
        lambda url, json, timeout: httpx.Response(500, request=httpx.Request("POST", url)),
    )

    with pytest.raises(httpx.HTTPStatusError):
        deliver_notification("video_available", {"video_id": "video-1"})
