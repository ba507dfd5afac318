"""Tests for transcode.py"""

import json
import subprocess

import pytest

from backend.errors import EncodingFailure, SourceUnreadable, TranscoderUnavailable, UnsupportedCodec
from pipeline.transcode import (
    RENDITIONS_BY_NAME,
    FFmpegTranscoder,
    build_hls_command,
    build_master_playlist,
    build_thumbnail_command,
    select_renditions,
    validate_hls_output,
)


class MemoryStore:
    """Minimal object store for driver tests."""

    def __init__(self, objects=None):
        self.objects = dict(objects or {})
        self.uploaded = {}

    def read_head(self, key, length):
        return self.objects[key][:length]

    def download_to(self, key, target):
        target.write_bytes(self.objects[key])
        return target

    def put_file(self, key, path, content_type):
        self.uploaded[key] = (path.read_bytes(), content_type)


def test_select_renditions_skips_upscaling():
    """A 720p source gets no 1080p rendition."""
    assert [r.name for r in select_renditions(720)] == ["360p", "480p", "720p"]
    assert [r.name for r in select_renditions(1080)] == ["360p", "480p", "720p", "1080p"]


def test_select_renditions_allows_small_shortfall():
    """Sources within 80% of a rendition height still feed it."""
    assert [r.name for r in select_renditions(870)][-1] == "1080p"


def test_select_renditions_keeps_smallest_for_tiny_sources():
    """Even a 240p source gets one rendition."""
    assert [r.name for r in select_renditions(240)] == ["360p"]


def test_select_renditions_respects_requested_profiles():
    """Unknown profile names are ignored."""
    assert [r.name for r in select_renditions(1080, ["1080p", "480p", "4k"])] == ["480p", "1080p"]
    assert [r.name for r in select_renditions(1080, ["4k"])] == ["360p"]


def test_master_playlist_lists_variants():
    """The master playlist points at one variant playlist per rendition."""
    playlist = build_master_playlist([RENDITIONS_BY_NAME["360p"], RENDITIONS_BY_NAME["720p"]])

    lines = playlist.splitlines()
    assert lines[0] == "#EXTM3U"
    assert "#EXT-X-STREAM-INF:BANDWIDTH=730400,RESOLUTION=640x360" in lines
    assert "720p/index.m3u8" in lines
    assert playlist.endswith("\n")


def test_hls_command_maps_audio_when_present(temp_dir):
    """Every rendition gets a video map, plus audio when the source has it."""
    renditions = [RENDITIONS_BY_NAME["360p"], RENDITIONS_BY_NAME["720p"]]

    with_audio = build_hls_command(
        ffmpeg_bin="ffmpeg", input_path=temp_dir / "in.mp4", output_root=temp_dir, renditions=renditions, with_audio=True
    )
    silent = build_hls_command(
        ffmpeg_bin="ffmpeg", input_path=temp_dir / "in.mp4", output_root=temp_dir, renditions=renditions, with_audio=False
    )

    assert with_audio.count("0:a:0") == 2
    assert "v:0,a:0,name:360p v:1,a:1,name:720p" in with_audio
    assert "0:a:0" not in silent
    assert "v:0,name:360p v:1,name:720p" in silent
    assert with_audio[with_audio.index("-hls_time") + 1] == "6"
    assert with_audio[-1].endswith("%v/index.m3u8")


def test_thumbnail_command(temp_dir):
    """The thumbnail seeks before decoding and writes a single frame."""
    cmd = build_thumbnail_command(
        ffmpeg_bin="ffmpeg", input_path=temp_dir / "in.mp4", output_path=temp_dir / "thumb.jpg", at_seconds=10
    )

    assert cmd[cmd.index("-ss") + 1] == "10.000"
    assert cmd.index("-ss") < cmd.index("-i")
    assert cmd[cmd.index("-frames:v") + 1] == "1"


def test_validate_hls_output(temp_dir):
    """Missing playlists or segments are encoding failures."""
    renditions = [RENDITIONS_BY_NAME["360p"]]
    with pytest.raises(EncodingFailure, match="master playlist"):
        validate_hls_output(temp_dir, renditions)

    (temp_dir / "index.m3u8").write_text("#EXTM3U\n")
    (temp_dir / "360p").mkdir()
    with pytest.raises(EncodingFailure, match="variant playlist"):
        validate_hls_output(temp_dir, renditions)

    (temp_dir / "360p" / "index.m3u8").write_text("#EXTM3U\n")
    with pytest.raises(EncodingFailure, match="no segments"):
        validate_hls_output(temp_dir, renditions)

    (temp_dir / "360p" / "segment_000.ts").write_bytes(b"ts")
    validate_hls_output(temp_dir, renditions)


def test_transcoder_rejects_non_video_source(fake_run):
    """A text file uploaded as a video never reaches ffmpeg."""
    store = MemoryStore({"videos/v1/original.mp4": b"just some lecture notes in plain text"})

    with pytest.raises(SourceUnreadable):
        FFmpegTranscoder(store).transcode("videos/v1/original.mp4", "videos/v1/hls")

    assert fake_run.calls == []


def test_transcoder_rejects_unsupported_codec(fake_run, ffprobe_output, mp4_header):
    """Codecs outside the supported set fail permanently."""
    ffprobe_output["streams"][0]["codec_name"] = "prores"
    fake_run.respond_json(ffprobe_output)
    store = MemoryStore({"videos/v1/original.mp4": mp4_header})

    with pytest.raises(UnsupportedCodec):
        FFmpegTranscoder(store).transcode("videos/v1/original.mp4", "videos/v1/hls")


def test_transcoder_missing_ffmpeg_is_transient(fake_run, mp4_header):
    """A missing binary is retryable."""
    fake_run.error = FileNotFoundError("ffprobe")
    store = MemoryStore({"videos/v1/original.mp4": mp4_header})

    with pytest.raises(TranscoderUnavailable):
        FFmpegTranscoder(store).transcode("videos/v1/original.mp4", "videos/v1/hls")


def test_thumbnail_uploads_frame(monkeypatch, ffprobe_output, mp4_header):
    """A short source is grabbed at its midpoint instead of past the end."""
    ffprobe_output["format"]["duration"] = "8.0"
    calls = []

    def _run(args, **kwargs):
        calls.append(list(args))
        if args[0] == "ffprobe":
            return subprocess.CompletedProcess(args, 0, stdout=json.dumps(ffprobe_output), stderr="")
        with open(args[-1], "wb") as handle:
            handle.write(b"\xff\xd8\xff")
        return subprocess.CompletedProcess(args, 0, stdout=None, stderr="")

    monkeypatch.setattr(subprocess, "run", _run)
    store = MemoryStore({"videos/v1/original.mp4": mp4_header})

    output = FFmpegTranscoder(store).thumbnail("videos/v1/original.mp4", "videos/v1/thumb.jpg", at_seconds=10)

    assert output.at_seconds == 4.0
    assert store.uploaded["videos/v1/thumb.jpg"] == (b"\xff\xd8\xff", "image/jpeg")
    assert calls[1][calls[1].index("-ss") + 1] == "4.000"
