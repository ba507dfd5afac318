from __future__ import annotations

import argparse
import logging
import os
import socket
import threading
from typing import Callable, Optional

from redis import Redis
from rq import Worker

from backend.analytics import close_idle_sessions
from backend.db import get_database
from backend.jobs import outbox_queue, utc_now
from backend.logging_config import configure_logging
from backend.notifications import NOTIFICATION_QUEUE_NAME, Notifier
from backend.orchestrator import Orchestrator
from backend.runtime_config import PipelineSettings, load_settings, validate_runtime_environment
from backend.storage import get_object_store
from pipeline.transcode import FFmpegTranscoder
from pipeline.transcribe import Transcriber


LOGGER = logging.getLogger("vap.worker")

IDLE_SLEEP_SEC = 1.0
SWEEP_INTERVAL_SEC = 60.0


def worker_ids(count: int, hostname: Optional[str] = None, pid: Optional[int] = None) -> list[str]:
    host = hostname or socket.gethostname()
    process = pid if pid is not None else os.getpid()
    return [f"{host}:{process}:{index}" for index in range(count)]


class WorkerPool:
    """N job threads plus the outbox notifier and the idle-session sweeper.

    ``stop()`` stops leasing new work and joins every thread, so jobs already
    running finish (or hit their driver timeout) before it returns.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        count: int,
        *,
        notifier: Optional[Notifier] = None,
        sweeper: Optional[Callable[[], int]] = None,
        idle_sleep: float = IDLE_SLEEP_SEC,
        sweep_interval: float = SWEEP_INTERVAL_SEC,
    ) -> None:
        if count <= 0:
            raise ValueError("count must be positive")
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.sweeper = sweeper
        self.idle_sleep = idle_sleep
        self.sweep_interval = sweep_interval
        self.worker_ids = worker_ids(count)
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def _job_loop(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                job = self.orchestrator.run_once(worker_id)
            except Exception:
                LOGGER.exception("worker.loop_error", extra={"worker_id": worker_id})
                job = None
            if job is None:
                self._stop.wait(self.idle_sleep)

    def _notifier_loop(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                published = self.notifier.drain_once(worker_id)
            except Exception:
                LOGGER.exception("notifier.loop_error", extra={"worker_id": worker_id})
                published = False
            if not published:
                self._stop.wait(self.idle_sleep)

    def _sweeper_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.sweeper()
            except Exception:
                LOGGER.exception("sweeper.loop_error")

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for worker_id in self.worker_ids:
            self._threads.append(threading.Thread(target=self._job_loop, args=(worker_id,), name=worker_id, daemon=True))
        if self.notifier is not None:
            notifier_id = f"{self.worker_ids[0].rsplit(':', 1)[0]}:notifier"
            self._threads.append(
                threading.Thread(target=self._notifier_loop, args=(notifier_id,), name=notifier_id, daemon=True)
            )
        if self.sweeper is not None:
            self._threads.append(threading.Thread(target=self._sweeper_loop, name="vap-sweeper", daemon=True))
        for thread in self._threads:
            thread.start()
        LOGGER.info("worker.pool_started", extra={"worker_id": ",".join(self.worker_ids)})

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        LOGGER.info("worker.pool_stopped", extra={"worker_id": ",".join(self.worker_ids)})

    def wait(self) -> None:
        try:
            while any(thread.is_alive() for thread in self._threads):
                for thread in self._threads:
                    thread.join(1.0)
        except KeyboardInterrupt:
            self.stop()


def build_pool(settings: Optional[PipelineSettings] = None) -> WorkerPool:
    settings = settings or load_settings()
    db = get_database()
    store = get_object_store()
    orchestrator = Orchestrator(
        db,
        store,
        FFmpegTranscoder(store, settings.ffmpeg_bin, settings.ffprobe_bin),
        Transcriber(store, settings.stt_provider, settings.ffmpeg_bin, settings.whisper_model),
        settings,
    )
    return WorkerPool(
        orchestrator,
        settings.worker_count,
        notifier=Notifier(outbox_queue(db, settings)),
        sweeper=lambda: close_idle_sessions(db, utc_now(), idle_seconds=settings.session_idle_sec),
    )


def run_notifications_worker() -> None:
    connection = Redis.from_url(os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    worker = Worker([NOTIFICATION_QUEUE_NAME], connection=connection)
    worker.work()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Video pipeline workers.")
    parser.add_argument(
        "role",
        nargs="?",
        default="pipeline",
        choices=["pipeline", "notifications", "uptime"],
        help="pipeline: job threads; notifications: RQ delivery worker; uptime: playback monitor.",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging()
    validate_runtime_environment("worker")
    if args.role == "notifications":
        run_notifications_worker()
        return
    if args.role == "uptime":
        from backend.uptime import main as uptime_main

        uptime_main()
        return
    pool = build_pool()
    pool.start()
    pool.wait()


if __name__ == "__main__":
    main()
