"""ffmpeg-backed transcoder: HLS renditions and poster thumbnails."""

from __future__ import annotations

import logging
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from time import monotonic
from typing import Iterable, Optional, Sequence

from backend.errors import (
    DriverTimeout,
    EncodingFailure,
    SourceUnreadable,
    TranscoderUnavailable,
    UnsupportedCodec,
)
from pipeline.media_probe import HEADER_BYTES, MediaInfo, detect_container, probe


LOGGER = logging.getLogger("vap.transcode")

HLS_SEGMENT_SECONDS = 6
MASTER_PLAYLIST = "index.m3u8"
SUPPORTED_CODECS = frozenset({"h264", "hevc", "vp8", "vp9", "av1", "mpeg4", "mpeg2video"})

_CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".jpg": "image/jpeg",
}


@dataclass(frozen=True)
class Rendition:
    name: str
    width: int
    height: int
    video_kbps: int
    audio_kbps: int

    @property
    def bandwidth(self) -> int:
        return round((self.video_kbps + self.audio_kbps) * 1000 * 1.1)


RENDITIONS = (
    Rendition("360p", 640, 360, 600, 64),
    Rendition("480p", 854, 480, 1000, 96),
    Rendition("720p", 1280, 720, 2500, 128),
    Rendition("1080p", 1920, 1080, 5000, 192),
)
RENDITIONS_BY_NAME = {r.name: r for r in RENDITIONS}


@dataclass(frozen=True)
class TranscodeOutput:
    manifest_key: str
    width: int
    height: int
    duration_seconds: float
    codec: str
    size_bytes: int
    renditions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ThumbnailOutput:
    thumbnail_key: str
    at_seconds: float


def select_renditions(source_height: int, requested: Optional[Iterable[str]] = None) -> list[Rendition]:
    """Keep renditions the source can feed without heavy upscaling.

    A rendition is kept when ``source_height >= 0.8 * rendition.height``; the
    smallest requested one is always kept.
    """
    names = list(requested) if requested else [r.name for r in RENDITIONS]
    candidates = [RENDITIONS_BY_NAME[name] for name in names if name in RENDITIONS_BY_NAME]
    if not candidates:
        candidates = [RENDITIONS[0]]
    candidates.sort(key=lambda r: r.height)
    selected = [r for r in candidates if source_height >= r.height * 0.8]
    return selected or candidates[:1]


def build_master_playlist(renditions: Sequence[Rendition]) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-INDEPENDENT-SEGMENTS"]
    for rendition in renditions:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={rendition.bandwidth},"
            f"RESOLUTION={rendition.width}x{rendition.height}"
        )
        lines.append(f"{rendition.name}/index.m3u8")
    return "\n".join(lines) + "\n"


def build_hls_command(
    *,
    ffmpeg_bin: str,
    input_path: Path,
    output_root: Path,
    renditions: Sequence[Rendition],
    with_audio: bool,
) -> list[str]:
    split = "".join(f"[v{i}]" for i in range(len(renditions)))
    filters = [f"[0:v]split={len(renditions)}{split}"]
    for i, r in enumerate(renditions):
        filters.append(f"[v{i}]scale=w={r.width}:h={r.height}:force_original_aspect_ratio=decrease:force_divisible_by=2[v{i}out]")

    cmd = [ffmpeg_bin, "-y", "-i", str(input_path), "-filter_complex", ";".join(filters)]
    for i, r in enumerate(renditions):
        cmd += ["-map", f"[v{i}out]"]
        if with_audio:
            cmd += ["-map", "0:a:0"]
        cmd += [
            f"-c:v:{i}", "libx264",
            f"-b:v:{i}", f"{r.video_kbps}k",
            f"-maxrate:v:{i}", f"{r.video_kbps}k",
            f"-bufsize:v:{i}", f"{int(r.video_kbps * 1.5)}k",
        ]
        if with_audio:
            cmd += [f"-c:a:{i}", "aac", f"-b:a:{i}", f"{r.audio_kbps}k", "-ac", "2"]

    cmd += ["-preset", "medium", "-pix_fmt", "yuv420p", "-g", "60", "-keyint_min", "60", "-sc_threshold", "0"]

    if with_audio:
        var_map = " ".join(f"v:{i},a:{i},name:{r.name}" for i, r in enumerate(renditions))
    else:
        var_map = " ".join(f"v:{i},name:{r.name}" for i, r in enumerate(renditions))

    cmd += [
        "-f", "hls",
        "-hls_time", str(HLS_SEGMENT_SECONDS),
        "-hls_list_size", "0",
        "-hls_playlist_type", "vod",
        "-hls_flags", "independent_segments",
        "-hls_segment_filename", str(output_root / "%v" / "segment_%03d.ts"),
        "-var_stream_map", var_map,
        str(output_root / "%v" / "index.m3u8"),
    ]
    return cmd


def build_thumbnail_command(*, ffmpeg_bin: str, input_path: Path, output_path: Path, at_seconds: float) -> list[str]:
    return [
        ffmpeg_bin,
        "-y",
        "-ss", f"{at_seconds:.3f}",
        "-i", str(input_path),
        "-frames:v", "1",
        "-q:v", "2",
        str(output_path),
    ]


def validate_hls_output(root: Path, renditions: Sequence[Rendition]) -> None:
    if not (root / MASTER_PLAYLIST).is_file():
        raise EncodingFailure("master playlist missing")
    for rendition in renditions:
        playlist = root / rendition.name / "index.m3u8"
        if not playlist.is_file():
            raise EncodingFailure(f"variant playlist missing for {rendition.name}")
        if not any(playlist.parent.glob("*.ts")):
            raise EncodingFailure(f"no segments written for {rendition.name}")


class FFmpegTranscoder:
    def __init__(self, store, ffmpeg_bin: str = "ffmpeg", ffprobe_bin: str = "ffprobe") -> None:
        self.store = store
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin

    def _run(self, cmd: list[str], timeout: float) -> None:
        try:
            completed = subprocess.run(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                timeout=max(1.0, timeout),
                check=False,
            )
        except FileNotFoundError as exc:
            raise TranscoderUnavailable(f"ffmpeg binary not found: {cmd[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise DriverTimeout(f"ffmpeg timed out after {timeout:.0f}s") from exc
        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()[-500:]
            raise EncodingFailure(f"ffmpeg exited with {completed.returncode}: {stderr}")

    def _fetch_source(self, source_key: str, workdir: Path) -> Path:
        container = detect_container(self.store.read_head(source_key, HEADER_BYTES))
        if container is None:
            raise SourceUnreadable("source is not a recognised video container")
        return self.store.download_to(source_key, workdir / f"source.{container}")

    def inspect(self, source_path: Path, timeout: float) -> MediaInfo:
        info = probe(source_path, self.ffprobe_bin, timeout=min(60.0, timeout))
        if info.codec not in SUPPORTED_CODECS:
            raise UnsupportedCodec(f"codec {info.codec!r} is not supported")
        if info.width <= 0 or info.height <= 0 or info.duration_seconds <= 0:
            raise SourceUnreadable("source reports no usable video dimensions or duration")
        return info

    def transcode(
        self,
        source_key: str,
        target_prefix: str,
        profiles: Optional[Sequence[str]] = None,
        timeout: float = 1800,
    ) -> TranscodeOutput:
        deadline = monotonic() + timeout
        with tempfile.TemporaryDirectory(prefix="vap-transcode-") as tmp:
            workdir = Path(tmp)
            source_path = self._fetch_source(source_key, workdir)
            info = self.inspect(source_path, timeout)
            renditions = select_renditions(info.height, profiles)

            output_root = workdir / "hls"
            for rendition in renditions:
                (output_root / rendition.name).mkdir(parents=True, exist_ok=True)
            cmd = build_hls_command(
                ffmpeg_bin=self.ffmpeg_bin,
                input_path=source_path,
                output_root=output_root,
                renditions=renditions,
                with_audio=info.has_audio,
            )
            LOGGER.info(
                "transcode.start",
                extra={"task_type": "transcode", "renditions": [r.name for r in renditions]},
            )
            self._run(cmd, deadline - monotonic())
            (output_root / MASTER_PLAYLIST).write_text(build_master_playlist(renditions), encoding="utf-8")
            validate_hls_output(output_root, renditions)

            prefix = target_prefix.rstrip("/")
            for path in sorted(output_root.rglob("*")):
                if not path.is_file():
                    continue
                relative = path.relative_to(output_root).as_posix()
                content_type = _CONTENT_TYPES.get(path.suffix, "application/octet-stream")
                self.store.put_file(f"{prefix}/{relative}", path, content_type)

            return TranscodeOutput(
                manifest_key=f"{prefix}/{MASTER_PLAYLIST}",
                width=info.width,
                height=info.height,
                duration_seconds=info.duration_seconds,
                codec=info.codec,
                size_bytes=source_path.stat().st_size,
                renditions=[r.name for r in renditions],
            )

    def thumbnail(
        self,
        source_key: str,
        target_key: str,
        at_seconds: float = 10.0,
        timeout: float = 120,
    ) -> ThumbnailOutput:
        deadline = monotonic() + timeout
        with tempfile.TemporaryDirectory(prefix="vap-thumb-") as tmp:
            workdir = Path(tmp)
            source_path = self._fetch_source(source_key, workdir)
            info = probe(source_path, self.ffprobe_bin, timeout=min(30.0, timeout))
            position = at_seconds
            if info.duration_seconds > 0 and position >= info.duration_seconds:
                position = info.duration_seconds / 2
            output_path = workdir / "thumb.jpg"
            self._run(
                build_thumbnail_command(
                    ffmpeg_bin=self.ffmpeg_bin,
                    input_path=source_path,
                    output_path=output_path,
                    at_seconds=position,
                ),
                deadline - monotonic(),
            )
            if not output_path.is_file() or output_path.stat().st_size == 0:
                raise EncodingFailure("ffmpeg produced no thumbnail frame")
            self.store.put_file(target_key, output_path, "image/jpeg")
            return ThumbnailOutput(thumbnail_key=target_key, at_seconds=position)
