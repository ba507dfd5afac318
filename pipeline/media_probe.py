from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from backend.errors import DriverTimeout, SourceUnreadable, TranscoderUnavailable


HEADER_BYTES = 128

CONTENT_TYPES = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "webm": "video/webm",
    "mkv": "video/x-matroska",
    "avi": "video/x-msvideo",
    "mpeg": "video/mpeg",
}

_EBML_HEADERS = (
    b"\x1a\x45\xdf\xa3",
    # MediaRecorder output seen from Chrome/Edge, older Chrome and Firefox.
    b"\x43\xc3\x82\x03",
    b"\x43\xb6\x75\x01",
    b"\x42\x82\x84\x77",
)
_MPEG_HEADERS = (b"\x00\x00\x01\xba", b"\x00\x00\x01\xb3")


@dataclass(frozen=True)
class MediaInfo:
    width: int
    height: int
    duration_seconds: float
    codec: str
    has_audio: bool


def extension_for(filename: Optional[str], content_type: Optional[str] = None) -> Optional[str]:
    if filename and "." in filename:
        ext = filename.rsplit(".", 1)[-1].strip().lower()
        if ext == "mpg":
            ext = "mpeg"
        if ext in CONTENT_TYPES:
            return ext
    if content_type:
        for ext, mime in CONTENT_TYPES.items():
            if mime == content_type.strip().lower():
                return ext
    return None


def detect_container(head: bytes) -> Optional[str]:
    """Identify a video container from its first bytes, or None."""
    if len(head) < 8:
        return None
    box = head[4:8]
    if box == b"ftyp":
        brand = head[8:12]
        return "mov" if brand == b"qt  " else "mp4"
    if box == b"moov":
        return "mov"
    if head[0:4] in (b"moof", b"mdat") or box in (b"moof", b"mdat"):
        return "mp4"
    doc_type = head[:100]
    if head[0:4] in _EBML_HEADERS:
        return "mkv" if b"matroska" in doc_type else "webm"
    if b"webm" in doc_type:
        return "webm"
    if b"matroska" in doc_type:
        return "mkv"
    if head[0:4] == b"RIFF" and head[8:12] in (b"AVI ", b"AVIX"):
        return "avi"
    if head[0:4] in _MPEG_HEADERS:
        return "mpeg"
    return None


def _run_ffprobe(args: list[str], timeout: float) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as exc:
        raise TranscoderUnavailable(f"ffprobe binary not found: {args[0]}") from exc
    except subprocess.TimeoutExpired as exc:
        raise DriverTimeout(f"ffprobe timed out after {timeout}s") from exc


def probe(path: Path, ffprobe_bin: str = "ffprobe", timeout: float = 60) -> MediaInfo:
    """Read stream and format metadata with ffprobe."""
    completed = _run_ffprobe(
        [
            ffprobe_bin,
            "-v", "error",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(path),
        ],
        timeout,
    )
    if completed.returncode != 0:
        raise SourceUnreadable(f"ffprobe could not parse source: {_tail(completed.stderr)}")

    try:
        data = json.loads(completed.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise SourceUnreadable("ffprobe returned malformed output") from exc

    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise SourceUnreadable("source has no video stream")

    duration_raw = (data.get("format") or {}).get("duration") or video.get("duration")
    try:
        duration = float(duration_raw)
    except (TypeError, ValueError):
        duration = 0.0

    return MediaInfo(
        width=int(video.get("width") or 0),
        height=int(video.get("height") or 0),
        duration_seconds=max(0.0, duration),
        codec=str(video.get("codec_name") or "unknown"),
        has_audio=any(s.get("codec_type") == "audio" for s in streams),
    )


def _tail(text: Optional[str], limit: int = 500) -> str:
    if not text:
        return ""
    return text.strip()[-limit:]
