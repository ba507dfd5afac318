"""Pytest configuration and shared fixtures for pipeline tests."""

import json
import subprocess
import tempfile
from pathlib import Path

import pytest


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def ffprobe_output():
    """ffprobe JSON for a 1080p H.264 lecture recording with stereo audio."""
    return {
        "streams": [
            {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080, "duration": "600.0"},
            {"codec_type": "audio", "codec_name": "aac", "channels": 2},
        ],
        "format": {"format_name": "mov,mp4,m4a,3gp,3g2,mj2", "duration": "612.48"},
    }


@pytest.fixture
def fake_run(monkeypatch):
    """Replace ``subprocess.run`` and record every command line.

    Set ``fake_run.result`` to the ``CompletedProcess`` the next calls return,
    or ``fake_run.error`` to an exception they raise.
    """

    class _Runner:
        def __init__(self):
            self.calls = []
            self.result = subprocess.CompletedProcess(args=[], returncode=0, stdout="{}", stderr="")
            self.error = None

        def __call__(self, args, **kwargs):
            self.calls.append(list(args))
            if self.error is not None:
                raise self.error
            return self.result

        def respond_json(self, payload, returncode=0, stderr=""):
            self.result = subprocess.CompletedProcess(
                args=[], returncode=returncode, stdout=json.dumps(payload), stderr=stderr
            )

    runner = _Runner()
    monkeypatch.setattr(subprocess, "run", runner)
    return runner


@pytest.fixture
def mp4_header():
    """First bytes of an ISO base media (MP4) file."""
    return b"\x00\x00\x00\x18ftypisom\x00\x00\x02\x00isomiso2" + b"\x00" * 64
