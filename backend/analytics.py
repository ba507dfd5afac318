"""Viewer heartbeat ingestion and per-video watch analytics."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from backend.errors import InvalidTransition, VideoNotFound
from backend.jobs import utc_now
from backend.observability import METRICS


LOGGER = logging.getLogger("vap.analytics")

MAX_HEARTBEAT_ADVANCE_SEC = 10.0
WATCH_TIME_SLACK = 1.10
COMPLETION_THRESHOLD_PCT = 90.0
DEFAULT_IDLE_SECONDS = 300


class DeviceInfo(BaseModel):
    type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None


class GeoInfo(BaseModel):
    country: Optional[str] = None


class Heartbeat(BaseModel):
    session_id: str = Field(min_length=1, max_length=128)
    video_id: Optional[str] = None
    user_id: Optional[str] = None
    position_s: float = Field(ge=0)
    rebuffer_delta_ms: int = Field(default=0, ge=0)
    device: DeviceInfo = Field(default_factory=DeviceInfo)
    geo: GeoInfo = Field(default_factory=GeoInfo)
    ended: bool = False


def _completion(watch_time: float, duration: float) -> float:
    if duration <= 0:
        return 0.0
    return round(min(watch_time / duration * 100.0, 100.0), 2)


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


def session_api_payload(session: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "sessionId": session["id"],
        "videoId": session["video_id"],
        "userId": session.get("user_id"),
        "watchTimeSeconds": session.get("watch_time_seconds"),
        "videoDurationSeconds": session.get("video_duration_seconds"),
        "completionPercentage": session.get("completion_percentage"),
        "sessionCompleted": session.get("session_completed"),
        "rebufferCount": session.get("rebuffer_count"),
        "rebufferDurationMs": session.get("rebuffer_duration_ms"),
        "sessionStartedAt": _iso(session.get("session_started_at")),
        "sessionEndedAt": _iso(session.get("session_ended_at")),
    }


def record_heartbeat(db, heartbeat: Heartbeat, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Apply one player heartbeat to its viewer session.

    Heartbeats of one session are serialised by ``Database.lock_session``.
    A heartbeat for a closed session changes nothing.
    """
    timestamp = now or utc_now()
    METRICS.increment_heartbeat()
    with db.lock_session(heartbeat.session_id) as tx:
        session = tx.session
        if session is None:
            video = tx.fetch_video(heartbeat.video_id)
            if not video:
                raise VideoNotFound(f"Video {heartbeat.video_id} not found.")
            rebuffered = heartbeat.rebuffer_delta_ms > 0
            session = tx.insert_session(
                {
                    "id": heartbeat.session_id,
                    "video_id": video["id"],
                    "lesson_id": video.get("lesson_id"),
                    "user_id": heartbeat.user_id,
                    "watch_time_seconds": 0.0,
                    "video_duration_seconds": float(video.get("duration_seconds") or 0.0),
                    "last_position_seconds": heartbeat.position_s,
                    "completion_percentage": 0.0,
                    "session_completed": False,
                    "rebuffer_count": 1 if rebuffered else 0,
                    "rebuffer_duration_ms": heartbeat.rebuffer_delta_ms,
                    "device_type": heartbeat.device.type,
                    "browser": heartbeat.device.browser,
                    "os": heartbeat.device.os,
                    "country": heartbeat.geo.country,
                    "session_started_at": timestamp,
                    "last_heartbeat_at": timestamp,
                    "session_ended_at": timestamp if heartbeat.ended else None,
                }
            )
            LOGGER.info(
                "analytics.session_opened",
                extra={"session_id": session["id"], "video_id": session["video_id"]},
            )
            return session

        if session["video_id"] != heartbeat.video_id:
            raise InvalidTransition("Session belongs to a different video.")
        if session.get("session_ended_at") is not None:
            return session

        duration = float(session.get("video_duration_seconds") or 0.0)
        advance = heartbeat.position_s - float(session.get("last_position_seconds") or 0.0)
        advance = min(max(advance, 0.0), MAX_HEARTBEAT_ADVANCE_SEC)
        watch_time = float(session.get("watch_time_seconds") or 0.0) + advance
        if duration > 0:
            watch_time = min(watch_time, duration * WATCH_TIME_SLACK)
        completion = _completion(watch_time, duration)

        fields: Dict[str, Any] = {
            "watch_time_seconds": watch_time,
            "last_position_seconds": heartbeat.position_s,
            "completion_percentage": completion,
            "session_completed": bool(session.get("session_completed")) or completion >= COMPLETION_THRESHOLD_PCT,
            "last_heartbeat_at": timestamp,
        }
        if heartbeat.rebuffer_delta_ms > 0:
            fields["rebuffer_count"] = int(session.get("rebuffer_count") or 0) + 1
            fields["rebuffer_duration_ms"] = int(session.get("rebuffer_duration_ms") or 0) + heartbeat.rebuffer_delta_ms
        if heartbeat.ended:
            fields["session_ended_at"] = timestamp
        return tx.update_session(fields)


def close_idle_sessions(db, now: Optional[datetime] = None, idle_seconds: int = DEFAULT_IDLE_SECONDS) -> int:
    timestamp = now or utc_now()
    closed = db.close_idle_sessions(timestamp - timedelta(seconds=idle_seconds), timestamp)
    if closed:
        LOGGER.info("analytics.sessions_closed", extra={"count": closed})
    return closed


def summarize_video_analytics(
    db,
    video_id: str,
    days: int = 30,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if not db.fetch_video(video_id):
        raise VideoNotFound(f"Video {video_id} not found.")
    timestamp = now or utc_now()
    sessions = db.fetch_sessions(video_id, since=timestamp - timedelta(days=days))

    views = len(sessions)
    total_watch = sum(float(s.get("watch_time_seconds") or 0.0) for s in sessions)
    completed = sum(1 for s in sessions if s.get("session_completed"))
    unique_viewers = len({s["user_id"] for s in sessions if s.get("user_id")})
    devices = Counter((s.get("device_type") or "unknown") for s in sessions)
    countries = Counter((s.get("country") or "unknown") for s in sessions)

    return {
        "videoId": video_id,
        "periodDays": days,
        "totalViews": views,
        "uniqueViewers": unique_viewers,
        "totalWatchTimeSeconds": round(total_watch, 2),
        "averageWatchTimeSeconds": round(total_watch / views, 2) if views else 0.0,
        "averageCompletionPercentage": (
            round(sum(float(s.get("completion_percentage") or 0.0) for s in sessions) / views, 2) if views else 0.0
        ),
        "completionRate": round(completed / views * 100.0, 2) if views else 0.0,
        "totalRebuffers": sum(int(s.get("rebuffer_count") or 0) for s in sessions),
        "totalRebufferDurationMs": sum(int(s.get("rebuffer_duration_ms") or 0) for s in sessions),
        "devices": dict(devices.most_common()),
        "countries": dict(countries.most_common()),
    }
