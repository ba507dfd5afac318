"""Runs leased processing jobs through the transcoder and transcriber."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from backend.errors import DriverTimeout, VideoNotFound, error_code, is_retryable
from backend.jobs import (
    LEASE_EXPIRED,
    PIPELINE_TASKS,
    JobQueue,
    latest_jobs_by_type,
    outbox_queue,
    processing_queue,
    utc_now,
)
from backend.payloads import (
    ThumbnailResult,
    TranscodeResult,
    TranscribeResult,
    TranscriptEntry,
    parse_payload,
    parse_result,
    to_document,
)
from backend.runtime_config import PipelineSettings, load_settings
from backend.storage import captions_key
from backend.videos import REQUIRED_TASKS, mark_failed, mark_ready_if_complete
from pipeline.captions import render_webvtt


LOGGER = logging.getLogger("vap.orchestrator")


def run_with_timeout(operation: Callable[[], Any], timeout: float, label: str) -> Any:
    """Run a blocking driver call, abandoning it after ``timeout`` seconds.

    The abandoned call keeps running in its own thread; its outcome is ignored.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"vap-{label}")
    future = executor.submit(operation)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeout as exc:
        future.cancel()
        raise DriverTimeout(f"{label} exceeded {timeout:.0f}s") from exc
    finally:
        executor.shutdown(wait=False)


class Orchestrator:
    def __init__(
        self,
        db,
        store,
        transcoder,
        transcriber,
        settings: Optional[PipelineSettings] = None,
        *,
        queue: Optional[JobQueue] = None,
        outbox: Optional[JobQueue] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.store = store
        self.transcoder = transcoder
        self.transcriber = transcriber
        self.settings = settings or load_settings()
        self.queue = queue or processing_queue(db, self.settings)
        self.outbox = outbox or outbox_queue(db, self.settings)
        self.clock = clock

    def timeout_for(self, task_type: str) -> float:
        return float(
            {
                "transcode": self.settings.transcode_timeout_sec,
                "transcribe": self.settings.transcribe_timeout_sec,
                "thumbnail": self.settings.thumbnail_timeout_sec,
            }[task_type]
        )

    def execute(self, job: Dict[str, Any]) -> Dict[str, Any]:
        """Run the driver for ``job`` and return its result document."""
        payload = parse_payload(job["payload"])
        timeout = self.timeout_for(job["task_type"])

        if payload.task_type == "transcode":
            output = run_with_timeout(
                lambda: self.transcoder.transcode(payload.source_key, payload.target_prefix, payload.profiles, timeout),
                timeout,
                "transcode",
            )
            result = TranscodeResult(
                manifest_key=output.manifest_key,
                width=output.width,
                height=output.height,
                duration_seconds=output.duration_seconds,
                codec=output.codec,
                size_bytes=output.size_bytes,
                renditions=list(output.renditions),
            )
        elif payload.task_type == "thumbnail":
            output = run_with_timeout(
                lambda: self.transcoder.thumbnail(payload.source_key, payload.target_key, payload.at_seconds, timeout),
                timeout,
                "thumbnail",
            )
            result = ThumbnailResult(thumbnail_key=output.thumbnail_key, at_seconds=output.at_seconds)
        elif payload.task_type == "transcribe":
            outputs = run_with_timeout(
                lambda: self.transcriber.transcribe(payload.source_key, payload.languages, timeout),
                timeout,
                "transcribe",
            )
            entries = []
            for output in outputs:
                key = None
                if output.segments:
                    key = captions_key(job["subject_id"], output.language)
                    self.store.put(key, render_webvtt(output.segments).encode("utf-8"), "text/vtt")
                entries.append(
                    TranscriptEntry(
                        language=output.language,
                        text=output.text,
                        confidence=output.confidence,
                        provider=output.provider,
                        captions_key=key,
                    )
                )
            result = TranscribeResult(transcripts=entries)
        else:
            raise ValueError(f"Unsupported task type: {payload.task_type}")
        return to_document(result)

    def _apply_result(self, tx, job: Dict[str, Any], result, now: datetime) -> None:
        status = tx.video["status"]
        if result.task_type == "transcribe":
            if status not in ("processing", "ready"):
                return
            for entry in result.transcripts:
                tx.upsert_transcript(
                    {
                        "id": f"{tx.video_id}:{entry.language}",
                        "video_id": tx.video_id,
                        "language": entry.language,
                        "text": entry.text,
                        "confidence": entry.confidence,
                        "provider": entry.provider,
                        "captions_key": entry.captions_key,
                        "created_at": now,
                    }
                )
            return

        if status != "processing":
            return
        if result.task_type == "transcode":
            fields = {
                "manifest_key": result.manifest_key,
                "width": result.width,
                "height": result.height,
                "duration_seconds": result.duration_seconds,
                "codec": result.codec,
            }
            if result.size_bytes is not None:
                fields["size_bytes"] = result.size_bytes
            tx.update_video(fields, now)
        elif result.task_type == "thumbnail":
            tx.update_video({"thumbnail_key": result.thumbnail_key}, now)
        mark_ready_if_complete(tx, self.outbox, now)

    def _succeed(self, job: Dict[str, Any], document: Dict[str, Any]) -> None:
        now = self.clock()
        with self.db.lock_video(job["subject_id"]) as tx:
            if self.queue.complete(job, document, now=now, tx=tx):
                self._apply_result(tx, job, parse_result(document), now)

    def _fail(self, job: Dict[str, Any], exc: Exception) -> None:
        code = error_code(exc)
        retryable = is_retryable(exc)
        if code == "internal":
            LOGGER.error(
                "job.internal_error",
                exc_info=exc,
                extra={"job_id": job["id"], "video_id": job.get("subject_id"), "task_type": job["task_type"]},
            )
            message = "internal"
        else:
            message = f"{code}: {exc}"

        now = self.clock()
        with self.db.lock_video(job["subject_id"]) as tx:
            status = self.queue.fail(job, message, retryable=retryable, error_code=code, now=now, tx=tx)
            if status == "failed" and job["task_type"] in REQUIRED_TASKS and tx.video["status"] == "processing":
                mark_failed(tx, self.outbox, message, now)

    def fail_expired(self, now: Optional[datetime] = None) -> list[Dict[str, Any]]:
        """Fail videos whose required job lost its last lease to a dead worker."""
        timestamp = now or self.clock()
        expired = self.queue.expire(PIPELINE_TASKS, timestamp)
        for job in expired:
            if job["task_type"] not in REQUIRED_TASKS:
                continue
            message = f"{LEASE_EXPIRED}: {job['task_type']} worker lost its lease {job.get('retry_count', 0) + 1} times"
            try:
                with self.db.lock_video(job["subject_id"]) as tx:
                    latest = latest_jobs_by_type(tx.fetch_jobs()).get(job["task_type"])
                    if tx.video["status"] == "processing" and latest is not None and latest["id"] == job["id"]:
                        mark_failed(tx, self.outbox, message, timestamp)
            except VideoNotFound:
                LOGGER.warning(
                    "job.video_missing",
                    extra={"job_id": job["id"], "video_id": job.get("subject_id"), "task_type": job["task_type"]},
                )
        return expired

    def run_once(self, worker_id: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Lease and run one job. Returns the leased job, or None when idle."""
        timestamp = now or self.clock()
        self.fail_expired(timestamp)
        job = self.queue.lease(PIPELINE_TASKS, worker_id, timestamp)
        if job is None:
            return None
        try:
            try:
                document = self.execute(job)
            except Exception as exc:
                self._fail(job, exc)
            else:
                self._succeed(job, document)
        except VideoNotFound:
            LOGGER.warning(
                "job.video_missing",
                extra={"job_id": job["id"], "video_id": job.get("subject_id"), "task_type": job["task_type"]},
            )
        return job
