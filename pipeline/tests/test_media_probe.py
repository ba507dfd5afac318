"""Tests for media_probe.py"""

import subprocess

import pytest

from backend.errors import DriverTimeout, SourceUnreadable, TranscoderUnavailable
from pipeline.media_probe import detect_container, extension_for, probe


@pytest.mark.parametrize(
    "head,expected",
    [
        (b"\x00\x00\x00\x18ftypisom\x00\x00\x02\x00", "mp4"),
        (b"\x00\x00\x00\x14ftypqt  \x00\x00\x00\x00", "mov"),
        (b"\x00\x00\x00\x08moov\x00\x00\x00\x00", "mov"),
        (b"\x1a\x45\xdf\xa3\x9f\x42\x86\x81\x01webm\x00\x00", "webm"),
        (b"\x1a\x45\xdf\xa3\x9f\x42\x86\x81\x01matroska", "mkv"),
        (b"RIFF\x00\x10\x00\x00AVI LIST", "avi"),
        (b"\x00\x00\x01\xba\x44\x00\x04\x00", "mpeg"),
    ],
)
def test_detect_container(head, expected):
    """Containers are recognised from their leading bytes."""
    assert detect_container(head) == expected


def test_detect_container_rejects_text_and_short_input():
    """Plain text and truncated headers are not video."""
    assert detect_container(b"this is a lecture script, not a video") is None
    assert detect_container(b"\x00\x00") is None
    assert detect_container(b"%PDF-1.7\n%\xe2\xe3\xcf\xd3") is None


def test_extension_for_filename_and_content_type():
    """The filename extension wins; the content type is the fallback."""
    assert extension_for("Lecture 01.MP4") == "mp4"
    assert extension_for("clip.mpg") == "mpeg"
    assert extension_for("recording", "video/webm") == "webm"
    assert extension_for("notes.txt", "video/quicktime") == "mov"
    assert extension_for("notes.txt", "text/plain") is None
    assert extension_for(None) is None


def test_probe_reads_video_stream(fake_run, ffprobe_output, temp_dir):
    """Dimensions, codec and duration come from ffprobe JSON."""
    fake_run.respond_json(ffprobe_output)

    info = probe(temp_dir / "source.mp4", ffprobe_bin="/usr/bin/ffprobe")

    assert info.width == 1920
    assert info.height == 1080
    assert info.codec == "h264"
    assert info.duration_seconds == 612.48
    assert info.has_audio is True
    assert fake_run.calls[0][0] == "/usr/bin/ffprobe"
    assert "-show_streams" in fake_run.calls[0]


def test_probe_without_video_stream(fake_run, temp_dir):
    """An audio-only file is not a usable source."""
    fake_run.respond_json({"streams": [{"codec_type": "audio"}], "format": {"duration": "30"}})

    with pytest.raises(SourceUnreadable, match="no video stream"):
        probe(temp_dir / "source.mp4")


def test_probe_failure_is_permanent(fake_run, temp_dir):
    """A non-zero ffprobe exit means the source cannot be parsed."""
    fake_run.respond_json({}, returncode=1, stderr="moov atom not found")

    with pytest.raises(SourceUnreadable, match="moov atom not found"):
        probe(temp_dir / "source.mp4")


def test_probe_missing_binary_is_transient(fake_run, temp_dir):
    """A missing ffprobe binary is an environment problem, not a bad upload."""
    fake_run.error = FileNotFoundError("ffprobe")

    with pytest.raises(TranscoderUnavailable):
        probe(temp_dir / "source.mp4")


def test_probe_timeout(fake_run, temp_dir):
    """A hung ffprobe surfaces as a driver timeout."""
    fake_run.error = subprocess.TimeoutExpired(cmd="ffprobe", timeout=1)

    with pytest.raises(DriverTimeout):
        probe(temp_dir / "source.mp4", timeout=1)
