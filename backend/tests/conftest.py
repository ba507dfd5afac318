"""Shared in-memory doubles for backend tests."""

from __future__ import annotations

import copy
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

ROOT = Path(__file__).resolve().parents[2]
sys.path.append(str(ROOT))

from backend.db import PROCESSING_JOBS
from backend.errors import StorageNotFound, VideoNotFound
from backend.observability import METRICS
from backend.runtime_config import load_settings
from backend.storage import ObjectStore
from pipeline.transcode import ThumbnailOutput, TranscodeOutput
from pipeline.transcribe import TranscriptOutput


T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)

_VIDEO_DEFAULTS = {
    "thumbnail_key": None,
    "manifest_key": None,
    "duration_seconds": None,
    "width": None,
    "height": None,
    "codec": None,
    "size_bytes": None,
    "processing_error": None,
    "processing_attempts": 0,
    "processing_started_at": None,
    "processing_completed_at": None,
}

_JOB_DEFAULTS = {
    "retry_count": 0,
    "max_retries": 3,
    "result": None,
    "error": None,
    "next_retry_at": None,
    "lease_token": None,
    "leased_by": None,
    "started_at": None,
    "lease_expires_at": None,
    "finished_at": None,
}


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeVideoTransaction:
    def __init__(self, db: "FakeDB", video: Dict[str, Any]) -> None:
        self._db = db
        self.video = video

    @property
    def video_id(self) -> str:
        return self.video["id"]

    def update_video(self, fields: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        row = self._db.videos[self.video_id]
        row.update(fields)
        row["updated_at"] = now
        self.video = dict(row)
        return self.video

    def fetch_jobs(self, table: str = PROCESSING_JOBS) -> list[Dict[str, Any]]:
        return self._db.fetch_jobs(table, self.video_id)

    def insert_job(self, table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._db.insert_job(table, payload)

    def complete_job(self, table, job_id, lease_token, result, now) -> bool:
        return self._db.complete_job(table, job_id, lease_token, result, now)

    def requeue_job(self, table, job_id, lease_token, **kwargs) -> bool:
        return self._db.requeue_job(table, job_id, lease_token, **kwargs)

    def fail_job(self, table, job_id, lease_token, error, now) -> bool:
        return self._db.fail_job(table, job_id, lease_token, error, now)

    def supersede_jobs(self, table, subject_id, task_types, now) -> list[str]:
        return self._db.supersede_jobs(table, subject_id, task_types, now)

    def upsert_transcript(self, payload: Dict[str, Any]) -> None:
        self._db.transcripts.setdefault(self.video_id, {})[payload["language"]] = dict(payload)

    def fetch_transcripts(self) -> list[Dict[str, Any]]:
        return self._db.fetch_transcripts(self.video_id)

    def delete_transcripts(self) -> int:
        return len(self._db.transcripts.pop(self.video_id, {}))


class FakeSessionTransaction:
    def __init__(self, db: "FakeDB", session: Optional[Dict[str, Any]]) -> None:
        self._db = db
        self.session = session

    def fetch_video(self, video_id: str) -> Optional[Dict[str, Any]]:
        return self._db.fetch_video(video_id)

    def insert_session(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._db.sessions[payload["id"]] = dict(payload)
        self.session = dict(payload)
        return self.session

    def update_session(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        row = self._db.sessions[self.session["id"]]
        row.update(fields)
        self.session = dict(row)
        return self.session


class FakeDB:
    """In-memory stand-in for ``backend.db.Database``.

    ``lock_video`` and ``lock_session`` serialise on one re-entrant lock and
    roll every table back when the block raises.
    """

    def __init__(self) -> None:
        self.videos: dict[str, dict] = {}
        self.jobs: dict[str, dict[str, dict]] = {}
        self.transcripts: dict[str, dict[str, dict]] = {}
        self.sessions: dict[str, dict] = {}
        self.probes: list[dict] = []
        self.uptime_hours: dict[datetime, dict] = {}
        self.alerts: dict[str, dict] = {}
        self._lock = threading.RLock()

    # Videos

    def add_video(self, **fields: Any) -> Dict[str, Any]:
        video_id = fields.pop("id", f"video-{len(self.videos) + 1}")
        row = {
            "id": video_id,
            "lesson_id": "lesson-42",
            "uploader_id": "user-1",
            "storage_key": f"videos/{video_id}/original.mp4",
            "source_filename": "lecture.mp4",
            "content_type": "video/mp4",
            "status": "uploading",
            "created_at": T0,
            "updated_at": T0,
            **_VIDEO_DEFAULTS,
        }
        row.update(fields)
        self.videos[video_id] = row
        return dict(row)

    def insert_video(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            row = {**_VIDEO_DEFAULTS, **payload}
            self.videos[payload["id"]] = row
            return dict(row)

    def fetch_video(self, video_id: str) -> Optional[Dict[str, Any]]:
        row = self.videos.get(video_id)
        return dict(row) if row else None

    def fetch_latest_ready_video(self) -> Optional[Dict[str, Any]]:
        ready = [row for row in self.videos.values() if row["status"] == "ready"]
        if not ready:
            return None
        ready.sort(key=lambda row: (row.get("processing_completed_at") or T0, row["updated_at"]))
        return dict(ready[-1])

    def count_videos_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for row in self.videos.values():
            counts[row["status"]] = counts.get(row["status"], 0) + 1
        return counts

    def fetch_transcripts(self, video_id: str) -> list[Dict[str, Any]]:
        rows = self.transcripts.get(video_id, {})
        return [dict(rows[language]) for language in sorted(rows)]

    def _snapshot(self):
        return copy.deepcopy((self.videos, self.jobs, self.transcripts, self.sessions))

    def _restore(self, snapshot) -> None:
        self.videos, self.jobs, self.transcripts, self.sessions = snapshot

    @contextmanager
    def lock_video(self, video_id: str):
        with self._lock:
            if video_id not in self.videos:
                raise VideoNotFound(f"Video {video_id} not found.")
            snapshot = self._snapshot()
            try:
                yield FakeVideoTransaction(self, dict(self.videos[video_id]))
            except BaseException:
                self._restore(snapshot)
                raise

    # Job queues

    def _table(self, table: str) -> dict[str, dict]:
        return self.jobs.setdefault(table, {})

    def insert_job(self, table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            row = {**_JOB_DEFAULTS, **copy.deepcopy(payload)}
            self._table(table)[row["id"]] = row
            return dict(row)

    def fetch_job(self, table: str, job_id: str) -> Optional[Dict[str, Any]]:
        row = self._table(table).get(job_id)
        return dict(row) if row else None

    def fetch_jobs(self, table: str, subject_id: str) -> list[Dict[str, Any]]:
        rows = [row for row in self._table(table).values() if row["subject_id"] == subject_id]
        rows.sort(key=lambda row: (row["created_at"], row["id"]))
        return [dict(row) for row in rows]

    def lease_job(self, table, task_types, worker_id, lease_token, now, lease_seconds):
        with self._lock:
            candidates = sorted(self._table(table).values(), key=lambda row: (row["created_at"], row["id"]))
            for row in candidates:
                if row["task_type"] not in task_types:
                    continue
                due = row["status"] == "queued" and (row["next_retry_at"] is None or row["next_retry_at"] <= now)
                expired = (
                    row["status"] == "running"
                    and row["lease_expires_at"] < now
                    and row["retry_count"] < row["max_retries"]
                )
                if not (due or expired):
                    continue
                if expired:
                    row["retry_count"] += 1
                row.update(
                    status="running",
                    started_at=now,
                    leased_by=worker_id,
                    lease_token=lease_token,
                    lease_expires_at=now + timedelta(seconds=lease_seconds[row["task_type"]]),
                    updated_at=now,
                )
                return dict(row)
            return None

    def expire_leases(self, table, task_types, error, now) -> list[Dict[str, Any]]:
        with self._lock:
            expired = []
            for row in self._table(table).values():
                if row["task_type"] not in task_types or row["status"] != "running":
                    continue
                if row["lease_expires_at"] >= now or row["retry_count"] < row["max_retries"]:
                    continue
                row.update(status="failed", error=error, lease_token=None, finished_at=now, updated_at=now)
                expired.append(dict(row))
            return expired

    def _owned(self, table: str, job_id: str, lease_token: str) -> Optional[dict]:
        row = self._table(table).get(job_id)
        if row is None or row["lease_token"] != lease_token or row["status"] != "running":
            return None
        return row

    def complete_job(self, table, job_id, lease_token, result, now) -> bool:
        with self._lock:
            row = self._owned(table, job_id, lease_token)
            if row is None:
                return False
            row.update(status="succeeded", result=result, error=None, finished_at=now, updated_at=now)
            return True

    def requeue_job(self, table, job_id, lease_token, *, error, retry_count, next_retry_at, now) -> bool:
        with self._lock:
            row = self._owned(table, job_id, lease_token)
            if row is None:
                return False
            row.update(
                status="queued",
                error=error,
                retry_count=retry_count,
                next_retry_at=next_retry_at,
                lease_token=None,
                leased_by=None,
                started_at=None,
                lease_expires_at=None,
                updated_at=now,
            )
            return True

    def fail_job(self, table, job_id, lease_token, error, now) -> bool:
        with self._lock:
            row = self._owned(table, job_id, lease_token)
            if row is None:
                return False
            row.update(status="failed", error=error, finished_at=now, updated_at=now)
            return True

    def supersede_jobs(self, table, subject_id, task_types, now) -> list[str]:
        with self._lock:
            superseded = []
            for row in self._table(table).values():
                if row["subject_id"] != subject_id or row["task_type"] not in task_types:
                    continue
                if row["status"] not in ("queued", "running"):
                    continue
                row.update(status="failed", error="superseded", lease_token=None, finished_at=now, updated_at=now)
                superseded.append(row["id"])
            return superseded

    def count_jobs_by_status(self, table: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for row in self._table(table).values():
            counts[row["status"]] = counts.get(row["status"], 0) + 1
        return counts

    # Viewer sessions

    @contextmanager
    def lock_session(self, session_id: str):
        with self._lock:
            snapshot = self._snapshot()
            session = self.sessions.get(session_id)
            try:
                yield FakeSessionTransaction(self, dict(session) if session else None)
            except BaseException:
                self._restore(snapshot)
                raise

    def close_idle_sessions(self, idle_before: datetime, now: datetime) -> int:
        with self._lock:
            closed = 0
            for row in self.sessions.values():
                if row["session_ended_at"] is None and row["last_heartbeat_at"] < idle_before:
                    row["session_ended_at"] = now
                    closed += 1
            return closed

    def fetch_sessions(self, video_id: str, since: Optional[datetime] = None) -> list[Dict[str, Any]]:
        rows = [
            dict(row)
            for row in self.sessions.values()
            if row["video_id"] == video_id and (since is None or row["session_started_at"] >= since)
        ]
        return sorted(rows, key=lambda row: row["session_started_at"])

    # Uptime

    def insert_probe(self, payload: Dict[str, Any]) -> None:
        self.probes.append(dict(payload))

    def fetch_probe_window(self, since: datetime, limit: int) -> list[Dict[str, Any]]:
        ordered = [(probe["timestamp"], index, probe) for index, probe in enumerate(self.probes)]
        ordered = [item for item in ordered if item[0] >= since]
        ordered.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [dict(item[2]) for item in ordered[:limit]]

    def record_uptime_hour(self, hour: datetime, healthy: bool, threshold_pct: float) -> Dict[str, Any]:
        row = self.uptime_hours.setdefault(
            hour,
            {"hour": hour, "total_checks": 0, "successful_checks": 0, "failed_checks": 0},
        )
        row["total_checks"] += 1
        row["successful_checks" if healthy else "failed_checks"] += 1
        row["uptime_percentage"] = row["successful_checks"] * 100.0 / row["total_checks"]
        row["meets_threshold"] = row["uptime_percentage"] >= threshold_pct
        return dict(row)

    def fetch_uptime_statistics(self, since: datetime) -> list[Dict[str, Any]]:
        return [dict(self.uptime_hours[hour]) for hour in sorted(self.uptime_hours) if hour >= since]

    def fetch_open_alert(self) -> Optional[Dict[str, Any]]:
        active = self.fetch_active_alerts()
        return active[0] if active else None

    def fetch_active_alerts(self) -> list[Dict[str, Any]]:
        rows = [dict(row) for row in self.alerts.values() if not row["resolved"]]
        return sorted(rows, key=lambda row: row["timestamp"], reverse=True)

    def insert_alert(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        row = {**payload, "resolved": False, "resolved_at": None}
        self.alerts[row["id"]] = row
        return dict(row)

    def escalate_alert(self, alert_id, severity, message, uptime_percentage, consecutive_failures):
        row = self.alerts[alert_id]
        row.update(
            severity=severity,
            message=message,
            uptime_percentage=uptime_percentage,
            consecutive_failures=consecutive_failures,
        )
        return dict(row)

    def resolve_alert(self, alert_id: str, now: datetime) -> Optional[Dict[str, Any]]:
        row = self.alerts.get(alert_id)
        if row is None:
            return None
        row["resolved"] = True
        row["resolved_at"] = row["resolved_at"] or now
        return dict(row)

    def healthcheck(self) -> None:
        return None


class FakeObjectStore(ObjectStore):
    mode = "memory"

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.deleted: list[str] = []

    def put(self, key: str, data: bytes, content_type: str) -> None:
        self.objects[key] = (bytes(data), content_type)

    def put_file(self, key: str, path: Path, content_type: str) -> None:
        self.put(key, Path(path).read_bytes(), content_type)

    def put_stream(self, key, fileobj, content_type) -> int:
        data = fileobj.read()
        self.put(key, data, content_type)
        return len(data)

    def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise StorageNotFound(f"Object not found: {key}")
        return self.objects[key][0]

    def download_to(self, key: str, target: Path) -> Path:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.get(key))
        return target

    def read_head(self, key: str, length: int) -> bytes:
        return self.get(key)[:length]

    def exists(self, key: str) -> bool:
        return key in self.objects

    def size(self, key: str) -> int:
        return len(self.get(key))

    def delete(self, key: str) -> None:
        self.objects.pop(key, None)
        self.deleted.append(key)

    def delete_prefix(self, prefix: str) -> int:
        doomed = [key for key in self.objects if key.startswith(prefix.rstrip("/") + "/")]
        for key in doomed:
            self.delete(key)
        return len(doomed)

    def sign_read(self, key, ttl_seconds=900, *, now=None) -> str:
        if key not in self.objects:
            raise StorageNotFound(f"Object not found: {key}")
        return f"https://cdn.test/{key}?op=read&ttl={ttl_seconds}&iat={int(now or 0)}"

    def sign_write(self, key, content_type, ttl_seconds=900, *, now=None) -> str:
        return f"https://cdn.test/{key}?op=write&ttl={ttl_seconds}&iat={int(now or 0)}"

    def healthcheck(self) -> None:
        return None


MP4_HEADER = b"\x00\x00\x00\x18ftypisom\x00\x00\x02\x00isomiso2" + b"\x00" * 64


class FakeTranscoder:
    """Writes placeholder renditions; ``failures`` are raised first, one per call."""

    def __init__(self, store: FakeObjectStore, *, width=1920, height=1080, duration=600.0, codec="h264") -> None:
        self.store = store
        self.width = width
        self.height = height
        self.duration = duration
        self.codec = codec
        self.failures: dict[str, list[Exception]] = {"transcode": [], "thumbnail": []}
        self.calls: list[str] = []

    def transcode(self, source_key, target_prefix, profiles=None, timeout=1800) -> TranscodeOutput:
        self.calls.append("transcode")
        if self.failures["transcode"]:
            raise self.failures["transcode"].pop(0)
        manifest = f"{target_prefix}/index.m3u8"
        self.store.put(manifest, b"#EXTM3U\n", "application/vnd.apple.mpegurl")
        self.store.put(f"{target_prefix}/720p/segment_000.ts", b"ts", "video/mp2t")
        return TranscodeOutput(
            manifest_key=manifest,
            width=self.width,
            height=self.height,
            duration_seconds=self.duration,
            codec=self.codec,
            size_bytes=self.store.size(source_key),
            renditions=["360p", "480p", "720p", "1080p"],
        )

    def thumbnail(self, source_key, target_key, at_seconds=10.0, timeout=120) -> ThumbnailOutput:
        self.calls.append("thumbnail")
        if self.failures["thumbnail"]:
            raise self.failures["thumbnail"].pop(0)
        self.store.put(target_key, b"\xff\xd8\xff", "image/jpeg")
        return ThumbnailOutput(thumbnail_key=target_key, at_seconds=at_seconds)


class FakeTranscriber:
    def __init__(self, text: str = "Welcome to the lesson.", confidence: float = 0.94) -> None:
        self.text = text
        self.confidence = confidence
        self.failures: list[Exception] = []
        self.calls = 0

    def transcribe(self, source_key, languages, timeout=1200) -> list[TranscriptOutput]:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return [
            TranscriptOutput(
                language=language,
                text=self.text,
                confidence=self.confidence,
                provider="google",
                segments=[{"startSec": 0.0, "endSec": 2.5, "text": self.text}],
            )
            for language in languages
        ]


@pytest.fixture(autouse=True)
def _reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_db() -> FakeDB:
    return FakeDB()


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def settings():
    return load_settings({"VAP_STT_LANGUAGES": "en-US"})


@pytest.fixture
def transcoder(store) -> FakeTranscoder:
    return FakeTranscoder(store)


@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber()


@pytest.fixture
def mp4_bytes() -> bytes:
    return MP4_HEADER
