from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence

from backend.db import PROCESSING_JOBS, QUEUE_JOBS
from backend.observability import METRICS
from backend.runtime_config import PipelineSettings
from pipeline.retry_utils import RetryConfig, backoff_delay, retry_config_from_env


LOGGER = logging.getLogger("vap.jobs")

PIPELINE_TASKS = ("thumbnail", "transcode", "transcribe")
SUPERSEDED = "superseded"
DEFAULT_LEASE_TIMEOUT_SEC = 900
LEASE_MARGIN_SEC = 120
LEASE_EXPIRED = "lease_expired"


def _log_job_event(event: str, **fields: Any) -> None:
    LOGGER.info(event, extra={k: v for k, v in fields.items() if v is not None})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _latency_ms(job: Dict[str, Any], now: datetime) -> Optional[float]:
    started_at = job.get("started_at")
    if not isinstance(started_at, datetime):
        return None
    return (now - started_at).total_seconds() * 1000


class JobQueue:
    """Durable retry queue backed by one job table.

    The same contract is used for video processing jobs and for the
    notification outbox. Every state change after ``lease`` is conditional on
    the lease token, so a worker whose lease was taken over can no longer
    complete or fail the job.

    A lease lasts ``lease_timeout_sec`` or, for task types listed in
    ``task_timeouts``, the driver timeout plus ``LEASE_MARGIN_SEC``, whichever
    is longer. Reclaiming an expired lease uses up one retry.

    Methods that take ``tx`` run inside an open ``lock_video`` unit of work
    when one is given, and against ``db`` otherwise.
    """

    def __init__(
        self,
        db,
        table: str = PROCESSING_JOBS,
        *,
        lease_timeout_sec: int = DEFAULT_LEASE_TIMEOUT_SEC,
        task_timeouts: Optional[Mapping[str, float]] = None,
        retry_config: Optional[RetryConfig] = None,
        rng: Optional[Callable[[float, float], float]] = None,
    ) -> None:
        self.db = db
        self.table = table
        self.lease_timeout_sec = lease_timeout_sec
        self.task_timeouts = dict(task_timeouts or {})
        self.retry_config = retry_config or retry_config_from_env()
        self._rng = rng

    def _store(self, tx):
        return tx if tx is not None else self.db

    def lease_seconds(self, task_type: str) -> float:
        driver_timeout = self.task_timeouts.get(task_type)
        if driver_timeout is None:
            return float(self.lease_timeout_sec)
        return max(float(self.lease_timeout_sec), float(driver_timeout) + LEASE_MARGIN_SEC)

    def backoff(self, retry_number: int) -> float:
        if self._rng is None:
            return backoff_delay(retry_number, self.retry_config)
        return backoff_delay(retry_number, self.retry_config, rng=self._rng)

    def enqueue(
        self,
        task_type: str,
        subject_id: str,
        payload: Dict[str, Any],
        *,
        max_retries: int = 3,
        now: Optional[datetime] = None,
        tx=None,
    ) -> str:
        timestamp = now or utc_now()
        job_id = str(uuid.uuid4())
        self._store(tx).insert_job(
            self.table,
            {
                "id": job_id,
                "subject_id": subject_id,
                "task_type": task_type,
                "status": "queued",
                "payload": payload,
                "max_retries": max_retries,
                "created_at": timestamp,
                "updated_at": timestamp,
            },
        )
        _log_job_event(
            "job.enqueued",
            queue=self.table,
            job_id=job_id,
            video_id=subject_id,
            task_type=task_type,
            status="queued",
        )
        METRICS.increment_job_status(task_type, "queued")
        return job_id

    def lease(
        self,
        task_types: Sequence[str],
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        timestamp = now or utc_now()
        job = self.db.lease_job(
            self.table,
            list(task_types),
            worker_id,
            uuid.uuid4().hex,
            timestamp,
            {task_type: self.lease_seconds(task_type) for task_type in task_types},
        )
        if job is None:
            return None
        _log_job_event(
            "job.leased",
            queue=self.table,
            job_id=job["id"],
            video_id=job.get("subject_id"),
            task_type=job["task_type"],
            worker_id=worker_id,
            retry_count=job.get("retry_count"),
            status="running",
        )
        METRICS.increment_job_status(job["task_type"], "running")
        return job

    def expire(
        self,
        task_types: Sequence[str],
        now: Optional[datetime] = None,
    ) -> list[Dict[str, Any]]:
        """Fail running jobs whose lease expired with no retries left."""
        timestamp = now or utc_now()
        expired = self.db.expire_leases(self.table, list(task_types), LEASE_EXPIRED, timestamp)
        for job in expired:
            LOGGER.warning(
                "job.failed",
                extra={
                    "queue": self.table,
                    "job_id": job["id"],
                    "video_id": job.get("subject_id"),
                    "task_type": job["task_type"],
                    "retry_count": job.get("retry_count"),
                    "error": LEASE_EXPIRED,
                    "error_code": LEASE_EXPIRED,
                    "status": "failed",
                },
            )
            METRICS.increment_job_status(job["task_type"], "failed")
            METRICS.increment_job_failure(job["task_type"], LEASE_EXPIRED)
        return expired

    def complete(
        self,
        job: Dict[str, Any],
        result: Dict[str, Any],
        *,
        now: Optional[datetime] = None,
        tx=None,
    ) -> bool:
        timestamp = now or utc_now()
        completed = self._store(tx).complete_job(self.table, job["id"], job["lease_token"], result, timestamp)
        if not completed:
            _log_job_event(
                "job.result_discarded",
                queue=self.table,
                job_id=job["id"],
                video_id=job.get("subject_id"),
                task_type=job["task_type"],
                worker_id=job.get("leased_by"),
            )
            return False
        _log_job_event(
            "job.succeeded",
            queue=self.table,
            job_id=job["id"],
            video_id=job.get("subject_id"),
            task_type=job["task_type"],
            status="succeeded",
        )
        METRICS.increment_job_status(job["task_type"], "succeeded")
        latency = _latency_ms(job, timestamp)
        if latency is not None:
            METRICS.observe_job_latency(job["task_type"], latency)
        return True

    def fail(
        self,
        job: Dict[str, Any],
        error: str,
        *,
        retryable: bool = True,
        error_code: str = "unknown",
        now: Optional[datetime] = None,
        tx=None,
    ) -> Optional[str]:
        """Requeue with backoff or fail permanently.

        Returns the job's new status, or ``None`` when the lease is stale.
        """
        timestamp = now or utc_now()
        store = self._store(tx)
        retry_count = int(job.get("retry_count") or 0)
        max_retries = int(job.get("max_retries") or 0)

        if retryable and retry_count + 1 <= max_retries:
            next_retry = retry_count + 1
            next_retry_at = timestamp + timedelta(seconds=self.backoff(next_retry))
            updated = store.requeue_job(
                self.table,
                job["id"],
                job["lease_token"],
                error=error,
                retry_count=next_retry,
                next_retry_at=next_retry_at,
                now=timestamp,
            )
            if not updated:
                return None
            _log_job_event(
                "job.retry_scheduled",
                queue=self.table,
                job_id=job["id"],
                video_id=job.get("subject_id"),
                task_type=job["task_type"],
                retry_count=next_retry,
                next_retry_at=next_retry_at.isoformat(),
                error=error,
                status="queued",
            )
            METRICS.increment_retry(job["task_type"])
            METRICS.increment_job_status(job["task_type"], "queued")
            return "queued"

        if not store.fail_job(self.table, job["id"], job["lease_token"], error, timestamp):
            return None
        LOGGER.warning(
            "job.failed",
            extra={
                "queue": self.table,
                "job_id": job["id"],
                "video_id": job.get("subject_id"),
                "task_type": job["task_type"],
                "retry_count": retry_count,
                "error": error,
                "error_code": error_code,
                "retryable": retryable,
                "status": "failed",
            },
        )
        METRICS.increment_job_status(job["task_type"], "failed")
        METRICS.increment_job_failure(job["task_type"], error_code)
        latency = _latency_ms(job, timestamp)
        if latency is not None:
            METRICS.observe_job_latency(job["task_type"], latency)
        return "failed"

    def supersede(
        self,
        subject_id: str,
        task_types: Iterable[str] = PIPELINE_TASKS,
        *,
        now: Optional[datetime] = None,
        tx=None,
    ) -> list[str]:
        timestamp = now or utc_now()
        superseded = self._store(tx).supersede_jobs(self.table, subject_id, list(task_types), timestamp)
        for job_id in superseded:
            _log_job_event("job.superseded", queue=self.table, job_id=job_id, video_id=subject_id, status="failed")
        return superseded

    def jobs_for(self, subject_id: str) -> list[Dict[str, Any]]:
        return self.db.fetch_jobs(self.table, subject_id)

    def depth(self) -> Dict[str, int]:
        counts = self.db.count_jobs_by_status(self.table)
        return {status: int(counts.get(status, 0)) for status in ("queued", "running", "succeeded", "failed")}


def processing_queue(db, settings=None, **kwargs: Any) -> JobQueue:
    settings = settings or PipelineSettings()
    task_timeouts = {
        "transcode": settings.transcode_timeout_sec,
        "transcribe": settings.transcribe_timeout_sec,
        "thumbnail": settings.thumbnail_timeout_sec,
    }
    return JobQueue(
        db,
        PROCESSING_JOBS,
        lease_timeout_sec=settings.lease_timeout_sec,
        task_timeouts=task_timeouts,
        **kwargs,
    )


def outbox_queue(db, settings=None, **kwargs: Any) -> JobQueue:
    lease_timeout = settings.lease_timeout_sec if settings is not None else DEFAULT_LEASE_TIMEOUT_SEC
    return JobQueue(db, QUEUE_JOBS, lease_timeout_sec=lease_timeout, **kwargs)


def latest_jobs_by_type(jobs: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    latest: Dict[str, Dict[str, Any]] = {}
    for job in jobs:
        task_type = job.get("task_type")
        if not task_type:
            continue
        current = latest.get(task_type)
        if current is None or (job.get("created_at"), job.get("id")) >= (current.get("created_at"), current.get("id")):
            latest[task_type] = job
    return latest


def job_api_payload(job: Dict[str, Any]) -> Dict[str, Any]:
    def _iso(value: Any) -> Any:
        return value.isoformat() if isinstance(value, datetime) else value

    return {
        "id": job["id"],
        "taskType": job.get("task_type"),
        "status": job.get("status"),
        "error": job.get("error"),
        "retryCount": job.get("retry_count"),
        "maxRetries": job.get("max_retries"),
        "nextRetryAt": _iso(job.get("next_retry_at")),
        "leasedBy": job.get("leased_by"),
        "result": job.get("result"),
        "startedAt": _iso(job.get("started_at")),
        "finishedAt": _iso(job.get("finished_at")),
        "createdAt": _iso(job.get("created_at")),
        "updatedAt": _iso(job.get("updated_at")),
    }
