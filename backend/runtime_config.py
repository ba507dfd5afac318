from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from backend.storage import _config as storage_config


INLINE_TRUE_VALUES = {"1", "true", "yes", "on"}


def _parse_positive_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw_value = env.get(name, str(default)).strip()
    try:
        parsed = int(raw_value)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer.") from exc
    if parsed <= 0:
        raise RuntimeError(f"{name} must be a positive integer.")
    return parsed


def _parse_float(env: Mapping[str, str], name: str, default: float, minimum: float = 0.0) -> float:
    raw_value = env.get(name, str(default)).strip()
    try:
        parsed = float(raw_value)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number.") from exc
    if parsed < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}.")
    return parsed


def _parse_languages(raw: str) -> tuple[str, ...]:
    languages = [item.strip() for item in raw.split(",") if item.strip()]
    return tuple(languages) or ("en-US",)


def is_inline_notifications_enabled(env: Mapping[str, str] | None = None) -> bool:
    active_env = env if env is not None else os.environ
    return active_env.get("VAP_INLINE_NOTIFICATIONS", "").strip().lower() in INLINE_TRUE_VALUES


@dataclass(frozen=True)
class PipelineSettings:
    worker_count: int = 4
    queue_soft_cap: int = 200
    lease_timeout_sec: int = 900
    max_retries: int = 3
    signed_url_ttl_sec: int = 900
    transcode_timeout_sec: int = 1800
    transcribe_timeout_sec: int = 1200
    thumbnail_timeout_sec: int = 120
    thumbnail_at_sec: float = 10.0
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    stt_provider: str = "google"
    stt_languages: tuple[str, ...] = ("en-US",)
    whisper_model: str = "base"
    uptime_interval_sec: int = 60
    uptime_warning_pct: float = 99.5
    uptime_critical_pct: float = 99.0
    uptime_reference_video_id: str | None = None
    session_idle_sec: int = 300


def load_settings(env: Mapping[str, str] | None = None) -> PipelineSettings:
    active_env = env if env is not None else os.environ
    reference_video = active_env.get("VAP_UPTIME_REFERENCE_VIDEO_ID", "").strip() or None
    return PipelineSettings(
        worker_count=_parse_positive_int(active_env, "VAP_WORKER_COUNT", 4),
        queue_soft_cap=_parse_positive_int(active_env, "VAP_QUEUE_SOFT_CAP", 200),
        lease_timeout_sec=_parse_positive_int(active_env, "VAP_LEASE_TIMEOUT_SEC", 900),
        max_retries=_parse_positive_int(active_env, "VAP_MAX_RETRIES", 3),
        signed_url_ttl_sec=_parse_positive_int(active_env, "VAP_SIGNED_URL_TTL_SEC", 900),
        transcode_timeout_sec=_parse_positive_int(active_env, "VAP_TRANSCODE_TIMEOUT_SEC", 1800),
        transcribe_timeout_sec=_parse_positive_int(active_env, "VAP_TRANSCRIBE_TIMEOUT_SEC", 1200),
        thumbnail_timeout_sec=_parse_positive_int(active_env, "VAP_THUMBNAIL_TIMEOUT_SEC", 120),
        thumbnail_at_sec=_parse_float(active_env, "VAP_THUMBNAIL_AT_SEC", 10.0),
        ffmpeg_bin=active_env.get("VAP_FFMPEG_BIN", "ffmpeg").strip() or "ffmpeg",
        ffprobe_bin=active_env.get("VAP_FFPROBE_BIN", "ffprobe").strip() or "ffprobe",
        stt_provider=(active_env.get("VAP_STT_PROVIDER", "google").strip().lower() or "google"),
        stt_languages=_parse_languages(active_env.get("VAP_STT_LANGUAGES", "en-US")),
        whisper_model=active_env.get("VAP_WHISPER_MODEL", "base").strip() or "base",
        uptime_interval_sec=_parse_positive_int(active_env, "VAP_UPTIME_INTERVAL_SEC", 60),
        uptime_warning_pct=_parse_float(active_env, "VAP_UPTIME_WARNING_PCT", 99.5),
        uptime_critical_pct=_parse_float(active_env, "VAP_UPTIME_CRITICAL_PCT", 99.0),
        uptime_reference_video_id=reference_video,
        session_idle_sec=_parse_positive_int(active_env, "VAP_SESSION_IDLE_SEC", 300),
    )


def validate_runtime_environment(mode: str, env: Mapping[str, str] | None = None) -> None:
    active_env = env if env is not None else os.environ

    errors: list[str] = []
    database_url = active_env.get("DATABASE_URL", "").strip()
    if not database_url:
        errors.append("DATABASE_URL must be set.")

    redis_url = active_env.get("REDIS_URL", "redis://localhost:6379/0").strip()
    if mode == "worker" and not is_inline_notifications_enabled(active_env):
        if not redis_url:
            errors.append("REDIS_URL must be set when notifications are queue-backed.")

    try:
        storage_config(active_env)
    except RuntimeError as exc:
        errors.append(str(exc))

    try:
        settings = load_settings(active_env)
    except RuntimeError as exc:
        errors.append(str(exc))
    else:
        if settings.signed_url_ttl_sec > 3600:
            errors.append("VAP_SIGNED_URL_TTL_SEC must not exceed 3600.")
        if settings.uptime_critical_pct > settings.uptime_warning_pct:
            errors.append("VAP_UPTIME_CRITICAL_PCT must not exceed VAP_UPTIME_WARNING_PCT.")
        if settings.stt_provider not in {"google", "whisper"}:
            errors.append("VAP_STT_PROVIDER must be either 'google' or 'whisper'.")

    try:
        _parse_positive_int(active_env, "VAP_IDEMPOTENCY_TTL_SEC", 3600)
    except RuntimeError as exc:
        errors.append(str(exc))

    if errors:
        error_lines = "\n- ".join(errors)
        raise RuntimeError(f"Invalid runtime environment for {mode}:\n- {error_lines}")
