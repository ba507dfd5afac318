from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from backend.entitlements import SYSTEM_CALLER, EntitlementClient
from backend.errors import Forbidden, NotReady, VideoNotFound
from backend.jobs import utc_now
from backend.storage import PLAYBACK_URL_TTL_SEC


LOGGER = logging.getLogger("vap.playback")

__all__ = ["SYSTEM_CALLER", "request_playback"]


def _select_transcript(transcripts: list[Dict[str, Any]], language: Optional[str]) -> Optional[Dict[str, Any]]:
    if not transcripts:
        return None
    if language:
        wanted = language.lower()
        for row in transcripts:
            if row["language"].lower() == wanted:
                return row
        for row in transcripts:
            if row["language"].split("-", 1)[0].lower() == wanted.split("-", 1)[0]:
                return row
        return None
    return transcripts[0]


def request_playback(
    db,
    store,
    video_id: str,
    caller: Optional[str],
    *,
    include_transcript: bool = False,
    language: Optional[str] = None,
    entitlements: Optional[EntitlementClient] = None,
    ttl_seconds: int = PLAYBACK_URL_TTL_SEC,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Freshly signed playback URLs for a ready video.

    Raw storage keys never leave this function.
    """
    video = db.fetch_video(video_id)
    if not video:
        raise VideoNotFound(f"Video {video_id} not found.")
    client = entitlements or EntitlementClient()
    if not client.is_allowed(caller, video):
        LOGGER.info("playback.denied", extra={"video_id": video_id})
        raise Forbidden("Caller is not entitled to this video.")
    if video["status"] != "ready":
        raise NotReady(f"Video is {video['status']}.", status=video["status"])

    timestamp = now or utc_now()
    issued_at = timestamp.timestamp()
    transcripts = db.fetch_transcripts(video_id)
    captions = [
        {"language": row["language"], "url": store.sign_read(row["captions_key"], ttl_seconds, now=issued_at)}
        for row in transcripts
        if row.get("captions_key")
    ]
    response: Dict[str, Any] = {
        "videoId": video_id,
        "manifestUrl": store.sign_read(video["manifest_key"], ttl_seconds, now=issued_at),
        "thumbnailUrl": store.sign_read(video["thumbnail_key"], ttl_seconds, now=issued_at),
        "captions": captions,
        "durationSeconds": video.get("duration_seconds"),
        "expiresAt": (timestamp + timedelta(seconds=ttl_seconds)).isoformat(),
        "ttlSeconds": ttl_seconds,
    }
    if include_transcript:
        selected = _select_transcript(transcripts, language)
        response["transcript"] = (
            {
                "language": selected["language"],
                "text": selected["text"],
                "confidence": selected.get("confidence"),
                "provider": selected.get("provider"),
            }
            if selected
            else None
        )
    return response
