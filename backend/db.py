from __future__ import annotations

import os
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from backend.errors import VideoNotFound


PROCESSING_JOBS = "video_processing_jobs"
QUEUE_JOBS = "queue_jobs"

# Job table -> column holding the subject the job works on.
_JOB_SUBJECT_COLUMNS = {
    PROCESSING_JOBS: "video_id",
    QUEUE_JOBS: "subject_id",
}

_VIDEO_COLUMNS = frozenset(
    {
        "lesson_id",
        "uploader_id",
        "storage_key",
        "source_filename",
        "content_type",
        "thumbnail_key",
        "manifest_key",
        "status",
        "duration_seconds",
        "width",
        "height",
        "codec",
        "size_bytes",
        "processing_error",
        "processing_attempts",
        "processing_started_at",
        "processing_completed_at",
    }
)

_SESSION_COLUMNS = frozenset(
    {
        "watch_time_seconds",
        "video_duration_seconds",
        "last_position_seconds",
        "completion_percentage",
        "session_completed",
        "rebuffer_count",
        "rebuffer_duration_ms",
        "device_type",
        "browser",
        "os",
        "country",
        "last_heartbeat_at",
        "session_ended_at",
    }
)


def _subject_column(table: str) -> str:
    try:
        return _JOB_SUBJECT_COLUMNS[table]
    except KeyError as exc:
        raise ValueError(f"Unknown job table: {table}") from exc


def _job_projection(table: str) -> str:
    column = _subject_column(table)
    if column == "subject_id":
        return "*"
    return f"*, {column} as subject_id"


def _assignments(fields: Dict[str, Any], allowed: frozenset) -> str:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown columns: {', '.join(sorted(unknown))}")
    return ", ".join(f"{name} = %({name})s" for name in fields)


# Job primitives shared by the autocommit and the transactional paths.

def insert_job(cur, table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    column = _subject_column(table)
    cur.execute(
        f"""
        insert into {table} (
            id, {column}, task_type, status, payload, retry_count, max_retries,
            created_at, updated_at
        ) values (
            %(id)s, %(subject_id)s, %(task_type)s, %(status)s, %(payload)s, 0, %(max_retries)s,
            %(created_at)s, %(updated_at)s
        )
        returning {_job_projection(table)};
        """,
        {**payload, "payload": Jsonb(payload["payload"])},
    )
    return cur.fetchone()


def complete_job(cur, table: str, job_id: str, lease_token: str, result: Dict[str, Any], now: datetime) -> bool:
    cur.execute(
        f"""
        update {table}
        set status = 'succeeded', result = %s, error = null, finished_at = %s, updated_at = %s
        where id = %s and lease_token = %s and status = 'running';
        """,
        (Jsonb(result), now, now, job_id, lease_token),
    )
    return cur.rowcount == 1


def requeue_job(
    cur,
    table: str,
    job_id: str,
    lease_token: str,
    *,
    error: str,
    retry_count: int,
    next_retry_at: datetime,
    now: datetime,
) -> bool:
    cur.execute(
        f"""
        update {table}
        set status = 'queued', error = %s, retry_count = %s, next_retry_at = %s,
            lease_token = null, leased_by = null, started_at = null, lease_expires_at = null,
            updated_at = %s
        where id = %s and lease_token = %s and status = 'running';
        """,
        (error, retry_count, next_retry_at, now, job_id, lease_token),
    )
    return cur.rowcount == 1


def fail_job(cur, table: str, job_id: str, lease_token: str, error: str, now: datetime) -> bool:
    cur.execute(
        f"""
        update {table}
        set status = 'failed', error = %s, finished_at = %s, updated_at = %s
        where id = %s and lease_token = %s and status = 'running';
        """,
        (error, now, now, job_id, lease_token),
    )
    return cur.rowcount == 1


def supersede_jobs(cur, table: str, subject_id: str, task_types: Sequence[str], now: datetime) -> list[str]:
    column = _subject_column(table)
    cur.execute(
        f"""
        update {table}
        set status = 'failed', error = 'superseded', lease_token = null,
            finished_at = %s, updated_at = %s
        where {column} = %s and task_type = any(%s) and status in ('queued', 'running')
        returning id;
        """,
        (now, now, subject_id, list(task_types)),
    )
    return [row["id"] for row in cur.fetchall()]


def fetch_jobs_for_subject(cur, table: str, subject_id: str) -> list[Dict[str, Any]]:
    column = _subject_column(table)
    cur.execute(
        f"select {_job_projection(table)} from {table} where {column} = %s order by created_at, id;",
        (subject_id,),
    )
    return cur.fetchall()


class VideoTransaction:
    """Unit of work holding the row lock of one video until commit."""

    def __init__(self, cur, video: Dict[str, Any]) -> None:
        self._cur = cur
        self.video = video

    @property
    def video_id(self) -> str:
        return self.video["id"]

    def update_video(self, fields: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        assignments = _assignments(fields, _VIDEO_COLUMNS)
        self._cur.execute(
            f"update videos set {assignments}, updated_at = %(updated_at)s where id = %(video_id)s returning *;",
            {**fields, "updated_at": now, "video_id": self.video_id},
        )
        self.video = self._cur.fetchone()
        return self.video

    def fetch_jobs(self, table: str = PROCESSING_JOBS) -> list[Dict[str, Any]]:
        return fetch_jobs_for_subject(self._cur, table, self.video_id)

    def insert_job(self, table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return insert_job(self._cur, table, payload)

    def complete_job(self, table: str, job_id: str, lease_token: str, result: Dict[str, Any], now: datetime) -> bool:
        return complete_job(self._cur, table, job_id, lease_token, result, now)

    def requeue_job(self, table: str, job_id: str, lease_token: str, **kwargs: Any) -> bool:
        return requeue_job(self._cur, table, job_id, lease_token, **kwargs)

    def fail_job(self, table: str, job_id: str, lease_token: str, error: str, now: datetime) -> bool:
        return fail_job(self._cur, table, job_id, lease_token, error, now)

    def supersede_jobs(self, table: str, subject_id: str, task_types: Sequence[str], now: datetime) -> list[str]:
        return supersede_jobs(self._cur, table, subject_id, task_types, now)

    def upsert_transcript(self, payload: Dict[str, Any]) -> None:
        self._cur.execute(
            """
            insert into video_transcripts (
                id, video_id, language, text, confidence, provider, captions_key, created_at
            ) values (
                %(id)s, %(video_id)s, %(language)s, %(text)s, %(confidence)s, %(provider)s,
                %(captions_key)s, %(created_at)s
            )
            on conflict (video_id, language) do update set
                text = excluded.text,
                confidence = excluded.confidence,
                provider = excluded.provider,
                captions_key = excluded.captions_key,
                created_at = excluded.created_at;
            """,
            payload,
        )

    def fetch_transcripts(self) -> list[Dict[str, Any]]:
        self._cur.execute(
            "select * from video_transcripts where video_id = %s order by language;",
            (self.video_id,),
        )
        return self._cur.fetchall()

    def delete_transcripts(self) -> int:
        self._cur.execute("delete from video_transcripts where video_id = %s;", (self.video_id,))
        return self._cur.rowcount


class SessionTransaction:
    """Unit of work serialising heartbeats of one viewer session."""

    def __init__(self, cur, session: Optional[Dict[str, Any]]) -> None:
        self._cur = cur
        self.session = session

    def fetch_video(self, video_id: str) -> Optional[Dict[str, Any]]:
        self._cur.execute("select * from videos where id = %s;", (video_id,))
        return self._cur.fetchone()

    def insert_session(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._cur.execute(
            """
            insert into video_analytics (
                id, video_id, lesson_id, user_id, watch_time_seconds, video_duration_seconds,
                last_position_seconds, completion_percentage, session_completed, rebuffer_count,
                rebuffer_duration_ms, device_type, browser, os, country, session_started_at,
                last_heartbeat_at, session_ended_at
            ) values (
                %(id)s, %(video_id)s, %(lesson_id)s, %(user_id)s, %(watch_time_seconds)s,
                %(video_duration_seconds)s, %(last_position_seconds)s, %(completion_percentage)s,
                %(session_completed)s, %(rebuffer_count)s, %(rebuffer_duration_ms)s, %(device_type)s,
                %(browser)s, %(os)s, %(country)s, %(session_started_at)s, %(last_heartbeat_at)s,
                %(session_ended_at)s
            )
            returning *;
            """,
            payload,
        )
        self.session = self._cur.fetchone()
        return self.session

    def update_session(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        assignments = _assignments(fields, _SESSION_COLUMNS)
        self._cur.execute(
            f"update video_analytics set {assignments} where id = %(session_id)s returning *;",
            {**fields, "session_id": self.session["id"]},
        )
        self.session = self._cur.fetchone()
        return self.session


@dataclass(frozen=True)
class Database:
    dsn: str

    def connect(self):
        return psycopg.connect(self.dsn, row_factory=dict_row, autocommit=True)

    def _connect_transactional(self):
        return psycopg.connect(self.dsn, row_factory=dict_row, autocommit=False)

    def healthcheck(self) -> None:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("select 1;")
                cur.fetchone()

    def migrate(self) -> None:
        migrations_dir = Path(__file__).resolve().parent / "migrations"
        migrations = sorted(migrations_dir.glob("*.sql"))
        if not migrations:
            return
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    create table if not exists schema_migrations (
                        id text primary key,
                        applied_at timestamptz not null default now()
                    );
                    """
                )
                cur.execute("select id from schema_migrations order by id;")
                applied = {row["id"] for row in cur.fetchall()}
                for migration in migrations:
                    migration_id = migration.name
                    if migration_id in applied:
                        continue
                    sql = migration.read_text(encoding="utf-8")
                    cur.execute(sql)
                    cur.execute(
                        "insert into schema_migrations (id) values (%s);",
                        (migration_id,),
                    )

    # =========================================================================
    # Videos
    # =========================================================================

    def insert_video(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    insert into videos (
                        id, lesson_id, uploader_id, storage_key, source_filename, content_type,
                        status, processing_attempts, created_at, updated_at
                    ) values (
                        %(id)s, %(lesson_id)s, %(uploader_id)s, %(storage_key)s, %(source_filename)s,
                        %(content_type)s, %(status)s, 0, %(created_at)s, %(updated_at)s
                    )
                    returning *;
                    """,
                    payload,
                )
                return cur.fetchone()

    def fetch_video(self, video_id: str) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("select * from videos where id = %s;", (video_id,))
                return cur.fetchone()

    def fetch_latest_ready_video(self) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    select * from videos
                    where status = 'ready'
                    order by processing_completed_at desc nulls last, updated_at desc
                    limit 1;
                    """
                )
                return cur.fetchone()

    def count_videos_by_status(self) -> Dict[str, int]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("select status, count(*) as total from videos group by status;")
                return {row["status"]: int(row["total"]) for row in cur.fetchall()}

    def fetch_transcripts(self, video_id: str) -> list[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "select * from video_transcripts where video_id = %s order by language;",
                    (video_id,),
                )
                return cur.fetchall()

    @contextmanager
    def lock_video(self, video_id: str) -> Iterator[VideoTransaction]:
        """Run a unit of work under ``SELECT ... FOR UPDATE`` on the video row.

        Commits on normal exit, rolls back when the block raises.
        """
        with self._connect_transactional() as conn:
            with conn.cursor() as cur:
                cur.execute("select * from videos where id = %s for update;", (video_id,))
                row = cur.fetchone()
                if not row:
                    raise VideoNotFound(f"Video {video_id} not found.")
                yield VideoTransaction(cur, row)

    # =========================================================================
    # Job queues
    # =========================================================================

    def insert_job(self, table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                return insert_job(cur, table, payload)

    def fetch_job(self, table: str, job_id: str) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"select {_job_projection(table)} from {table} where id = %s;", (job_id,))
                return cur.fetchone()

    def fetch_jobs(self, table: str, subject_id: str) -> list[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                return fetch_jobs_for_subject(cur, table, subject_id)

    def lease_job(
        self,
        table: str,
        task_types: Sequence[str],
        worker_id: str,
        lease_token: str,
        now: datetime,
        lease_seconds: Mapping[str, float],
    ) -> Optional[Dict[str, Any]]:
        """Claim the oldest due job, or a running job whose lease expired.

        Reclaiming an expired lease counts as an attempt. Expired jobs with no
        attempts left are never reclaimed; ``expire_leases`` fails them.
        """
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    update {table}
                    set status = 'running', started_at = %(now)s, leased_by = %(worker_id)s,
                        lease_token = %(lease_token)s, updated_at = %(now)s,
                        retry_count = case when status = 'running' then retry_count + 1 else retry_count end,
                        lease_expires_at = %(now)s
                            + make_interval(secs => (%(lease_seconds)s::jsonb ->> task_type)::double precision)
                    where id = (
                        select id from {table}
                        where task_type = any(%(task_types)s)
                          and (
                            (status = 'queued' and (next_retry_at is null or next_retry_at <= %(now)s))
                            or (
                              status = 'running'
                              and lease_expires_at < %(now)s
                              and retry_count < max_retries
                            )
                          )
                        order by created_at, id
                        limit 1
                        for update skip locked
                    )
                    returning {_job_projection(table)};
                    """,
                    {
                        "now": now,
                        "worker_id": worker_id,
                        "lease_token": lease_token,
                        "task_types": list(task_types),
                        "lease_seconds": Jsonb({task: float(lease_seconds[task]) for task in task_types}),
                    },
                )
                return cur.fetchone()

    def expire_leases(self, table: str, task_types: Sequence[str], error: str, now: datetime) -> list[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    update {table}
                    set status = 'failed', error = %(error)s, lease_token = null,
                        finished_at = %(now)s, updated_at = %(now)s
                    where id in (
                        select id from {table}
                        where task_type = any(%(task_types)s)
                          and status = 'running'
                          and lease_expires_at < %(now)s
                          and retry_count >= max_retries
                        for update skip locked
                    )
                    returning {_job_projection(table)};
                    """,
                    {"now": now, "error": error, "task_types": list(task_types)},
                )
                return cur.fetchall()

    def complete_job(self, table: str, job_id: str, lease_token: str, result: Dict[str, Any], now: datetime) -> bool:
        with self.connect() as conn:
            with conn.cursor() as cur:
                return complete_job(cur, table, job_id, lease_token, result, now)

    def requeue_job(self, table: str, job_id: str, lease_token: str, **kwargs: Any) -> bool:
        with self.connect() as conn:
            with conn.cursor() as cur:
                return requeue_job(cur, table, job_id, lease_token, **kwargs)

    def fail_job(self, table: str, job_id: str, lease_token: str, error: str, now: datetime) -> bool:
        with self.connect() as conn:
            with conn.cursor() as cur:
                return fail_job(cur, table, job_id, lease_token, error, now)

    def supersede_jobs(self, table: str, subject_id: str, task_types: Sequence[str], now: datetime) -> list[str]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                return supersede_jobs(cur, table, subject_id, task_types, now)

    def count_jobs_by_status(self, table: str) -> Dict[str, int]:
        _subject_column(table)
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"select status, count(*) as total from {table} group by status;")
                return {row["status"]: int(row["total"]) for row in cur.fetchall()}

    # =========================================================================
    # Viewer sessions
    # =========================================================================

    @contextmanager
    def lock_session(self, session_id: str) -> Iterator[SessionTransaction]:
        with self._connect_transactional() as conn:
            with conn.cursor() as cur:
                cur.execute("select pg_advisory_xact_lock(hashtext(%s));", (session_id,))
                cur.execute("select * from video_analytics where id = %s for update;", (session_id,))
                yield SessionTransaction(cur, cur.fetchone())

    def close_idle_sessions(self, idle_before: datetime, now: datetime) -> int:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    update video_analytics
                    set session_ended_at = %s
                    where session_ended_at is null and last_heartbeat_at < %s;
                    """,
                    (now, idle_before),
                )
                return cur.rowcount

    def fetch_sessions(self, video_id: str, since: Optional[datetime] = None) -> list[Dict[str, Any]]:
        clauses = ["video_id = %(video_id)s"]
        params: Dict[str, Any] = {"video_id": video_id}
        if since is not None:
            clauses.append("session_started_at >= %(since)s")
            params["since"] = since
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select * from video_analytics where {' and '.join(clauses)} order by session_started_at;",
                    params,
                )
                return cur.fetchall()

    # =========================================================================
    # Uptime
    # =========================================================================

    def insert_probe(self, payload: Dict[str, Any]) -> None:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    insert into uptime_monitoring (
                        id, video_id, is_healthy, error_message, check_duration_ms,
                        uptime_percentage, timestamp
                    ) values (
                        %(id)s, %(video_id)s, %(is_healthy)s, %(error_message)s,
                        %(check_duration_ms)s, %(uptime_percentage)s, %(timestamp)s
                    );
                    """,
                    payload,
                )

    def fetch_probe_window(self, since: datetime, limit: int) -> list[Dict[str, Any]]:
        """Most recent probes first, no older than ``since``."""
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    select * from uptime_monitoring
                    where timestamp >= %s
                    order by timestamp desc, id desc
                    limit %s;
                    """,
                    (since, limit),
                )
                return cur.fetchall()

    def record_uptime_hour(self, hour: datetime, healthy: bool, threshold_pct: float) -> Dict[str, Any]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    insert into uptime_statistics as s (
                        hour, total_checks, successful_checks, failed_checks,
                        uptime_percentage, meets_threshold
                    ) values (
                        %(hour)s, 1, %(ok)s, %(failed)s, %(ok)s * 100.0, %(ok)s * 100.0 >= %(threshold)s
                    )
                    on conflict (hour) do update set
                        total_checks = s.total_checks + 1,
                        successful_checks = s.successful_checks + %(ok)s,
                        failed_checks = s.failed_checks + %(failed)s,
                        uptime_percentage = (s.successful_checks + %(ok)s) * 100.0 / (s.total_checks + 1),
                        meets_threshold = (s.successful_checks + %(ok)s) * 100.0 / (s.total_checks + 1) >= %(threshold)s
                    returning *;
                    """,
                    {"hour": hour, "ok": 1 if healthy else 0, "failed": 0 if healthy else 1, "threshold": threshold_pct},
                )
                return cur.fetchone()

    def fetch_uptime_statistics(self, since: datetime) -> list[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("select * from uptime_statistics where hour >= %s order by hour;", (since,))
                return cur.fetchall()

    def fetch_open_alert(self) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "select * from uptime_alerts where not resolved order by timestamp desc limit 1;"
                )
                return cur.fetchone()

    def fetch_active_alerts(self) -> list[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("select * from uptime_alerts where not resolved order by timestamp desc;")
                return cur.fetchall()

    def insert_alert(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    insert into uptime_alerts (
                        id, severity, message, uptime_percentage, consecutive_failures,
                        resolved, timestamp
                    ) values (
                        %(id)s, %(severity)s, %(message)s, %(uptime_percentage)s,
                        %(consecutive_failures)s, false, %(timestamp)s
                    )
                    returning *;
                    """,
                    payload,
                )
                return cur.fetchone()

    def escalate_alert(
        self,
        alert_id: str,
        severity: str,
        message: str,
        uptime_percentage: float,
        consecutive_failures: int,
    ) -> Dict[str, Any]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    update uptime_alerts
                    set severity = %s, message = %s, uptime_percentage = %s, consecutive_failures = %s
                    where id = %s and not resolved
                    returning *;
                    """,
                    (severity, message, uptime_percentage, consecutive_failures, alert_id),
                )
                return cur.fetchone()

    def resolve_alert(self, alert_id: str, now: datetime) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    update uptime_alerts
                    set resolved = true, resolved_at = coalesce(resolved_at, %s)
                    where id = %s
                    returning *;
                    """,
                    (now, alert_id),
                )
                return cur.fetchone()


def get_database() -> Database:
    dsn = os.getenv("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL must be set for database access.")
    db = Database(dsn=dsn)
    db.migrate()
    return db
