from __future__ import annotations

from typing import Any, Iterable


def _timestamp(seconds: float) -> str:
    total_ms = max(0, int(round(seconds * 1000)))
    hours, remainder = divmod(total_ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    secs, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


def render_webvtt(segments: Iterable[dict[str, Any]]) -> str:
    """Render transcript segments (``startSec``/``endSec``/``text``) as WebVTT."""
    lines = ["WEBVTT", ""]
    cue = 0
    for segment in segments:
        text = str(segment.get("text") or "").strip()
        if not text:
            continue
        start = float(segment.get("startSec") or 0.0)
        end = float(segment.get("endSec") or start)
        if end <= start:
            end = start + 1.0
        cue += 1
        lines.append(str(cue))
        lines.append(f"{_timestamp(start)} --> {_timestamp(end)}")
        # Blank lines would terminate the cue early.
        lines.extend(part for part in text.splitlines() if part.strip())
        lines.append("")
    return "\n".join(lines)
