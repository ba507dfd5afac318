#!/usr/bin/env python3
"""Speech-to-text driver for uploaded video sources."""

from __future__ import annotations

import argparse
import importlib
import json
import logging
import math
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from time import monotonic
from typing import Any, Sequence

from backend.errors import (
    AudioUnreadable,
    DriverTimeout,
    LanguageNotSupported,
    TranscriberUnavailable,
)


LOGGER = logging.getLogger("vap.transcribe")

_LANGUAGE_PATTERN = re.compile(r"^[a-z]{2,3}(-[A-Za-z0-9]{2,8})*$")


@dataclass(frozen=True)
class TranscriptOutput:
    language: str
    text: str
    confidence: float
    provider: str
    segments: list[dict[str, Any]] = field(default_factory=list)


def _convert_to_wav(input_path: Path, output_path: Path, ffmpeg_bin: str, timeout: float) -> Path:
    """Extract the first audio stream as LINEAR16 WAV (16kHz mono)."""
    try:
        completed = subprocess.run(
            [
                ffmpeg_bin,
                "-y",
                "-i",
                str(input_path),
                "-vn",
                "-ar",
                "16000",
                "-ac",
                "1",
                "-c:a",
                "pcm_s16le",
                str(output_path),
            ],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            timeout=max(1.0, timeout),
            check=False,
        )
    except FileNotFoundError as exc:
        raise TranscriberUnavailable(f"ffmpeg binary not found: {ffmpeg_bin}") from exc
    except subprocess.TimeoutExpired as exc:
        raise DriverTimeout(f"audio extraction timed out after {timeout:.0f}s") from exc
    if completed.returncode != 0 or not output_path.is_file() or output_path.stat().st_size == 0:
        stderr = (completed.stderr or "").strip()[-300:]
        raise AudioUnreadable(f"could not extract an audio track: {stderr}")
    return output_path


def _load_whisper():
    """Lazy-load the whisper module for local transcription."""
    try:
        return importlib.import_module("whisper")
    except ImportError as exc:
        raise TranscriberUnavailable(
            "Whisper is not installed. Install it with: pip install openai-whisper"
        ) from exc


def _clamp_confidence(value: float) -> float:
    return round(min(1.0, max(0.0, value)), 4)


def _transcribe_with_google(audio_path: Path, language: str, timeout: float) -> TranscriptOutput:
    try:
        from google.api_core import exceptions as google_exceptions
        from google.cloud import speech
    except ImportError as exc:
        raise TranscriberUnavailable(
            "google-cloud-speech is required for provider=google. "
            "Install with `pip install google-cloud-speech`."
        ) from exc

    client = speech.SpeechClient()
    audio = speech.RecognitionAudio(content=audio_path.read_bytes())
    config = speech.RecognitionConfig(
        encoding=speech.RecognitionConfig.AudioEncoding.LINEAR16,
        sample_rate_hertz=16000,
        language_code=language,
        enable_word_time_offsets=True,
        enable_automatic_punctuation=True,
        model=os.getenv("VAP_GCP_STT_MODEL", "latest_long"),
    )

    try:
        operation = client.long_running_recognize(config=config, audio=audio)
        response = operation.result(timeout=timeout)
    except google_exceptions.InvalidArgument as exc:
        if "language" in str(exc).lower():
            raise LanguageNotSupported(f"{language}: {exc}") from exc
        raise AudioUnreadable(str(exc)) from exc
    except (
        google_exceptions.ServiceUnavailable,
        google_exceptions.DeadlineExceeded,
        google_exceptions.ResourceExhausted,
        google_exceptions.InternalServerError,
    ) as exc:
        raise TranscriberUnavailable(str(exc)) from exc
    except TimeoutError as exc:
        raise DriverTimeout(f"speech recognition timed out after {timeout:.0f}s") from exc

    segments: list[dict[str, Any]] = []
    texts: list[str] = []
    confidences: list[float] = []
    for result in response.results:
        if not result.alternatives:
            continue
        alternative = result.alternatives[0]
        transcript = alternative.transcript.strip()
        if not transcript:
            continue
        texts.append(transcript)
        confidences.append(float(alternative.confidence or 0.0))
        if alternative.words:
            start_time = alternative.words[0].start_time.total_seconds()
            end_time = alternative.words[-1].end_time.total_seconds()
        else:
            start_time = segments[-1]["endSec"] if segments else 0.0
            end_time = start_time
        segments.append({"startSec": float(start_time), "endSec": float(end_time), "text": transcript})

    return TranscriptOutput(
        language=language,
        text=" ".join(texts).strip(),
        confidence=_clamp_confidence(sum(confidences) / len(confidences)) if confidences else 0.0,
        provider="google",
        segments=segments,
    )


def _transcribe_with_whisper(audio_path: Path, language: str, model: str) -> TranscriptOutput:
    whisper = _load_whisper()
    short_code = language.split("-", 1)[0].lower()
    known_languages = getattr(getattr(whisper, "tokenizer", None), "LANGUAGES", None)
    if known_languages is not None and short_code not in known_languages:
        raise LanguageNotSupported(f"whisper does not support {language}")

    model_instance = whisper.load_model(model)
    result = model_instance.transcribe(str(audio_path), language=short_code)

    segments = []
    confidences = []
    for segment in result.get("segments", []):
        segments.append(
            {
                "startSec": float(segment["start"]),
                "endSec": float(segment["end"]),
                "text": segment["text"].strip(),
            }
        )
        if "avg_logprob" in segment:
            confidences.append(math.exp(float(segment["avg_logprob"])))

    return TranscriptOutput(
        language=language,
        text=result.get("text", "").strip(),
        confidence=_clamp_confidence(sum(confidences) / len(confidences)) if confidences else 0.0,
        provider="whisper",
        segments=segments,
    )


class Transcriber:
    def __init__(
        self,
        store,
        provider: str = "google",
        ffmpeg_bin: str = "ffmpeg",
        whisper_model: str = "base",
    ) -> None:
        provider_key = (provider or "google").strip().lower()
        if provider_key not in {"google", "whisper"}:
            raise ValueError(f"Unsupported transcription provider: {provider}")
        self.store = store
        self.provider = provider_key
        self.ffmpeg_bin = ffmpeg_bin
        self.whisper_model = whisper_model

    def transcribe_file(self, audio_path: Path, language: str, timeout: float) -> TranscriptOutput:
        if not _LANGUAGE_PATTERN.match(language):
            raise LanguageNotSupported(f"malformed language tag: {language!r}")
        if self.provider == "whisper":
            return _transcribe_with_whisper(audio_path, language, self.whisper_model)
        return _transcribe_with_google(audio_path, language, timeout)

    def transcribe(
        self,
        source_key: str,
        languages: Sequence[str],
        timeout: float = 1200,
    ) -> list[TranscriptOutput]:
        deadline = monotonic() + timeout
        with tempfile.TemporaryDirectory(prefix="vap-stt-") as tmp:
            workdir = Path(tmp)
            source_path = self.store.download_to(source_key, workdir / "source")
            audio_path = _convert_to_wav(source_path, workdir / "audio.wav", self.ffmpeg_bin, deadline - monotonic())
            outputs = []
            for language in languages or ["en-US"]:
                remaining = deadline - monotonic()
                if remaining <= 0:
                    raise DriverTimeout(f"transcription exceeded {timeout:.0f}s")
                outputs.append(self.transcribe_file(audio_path, language, remaining))
                LOGGER.info("transcribe.language_done", extra={"task_type": "transcribe", "language": language})
            return outputs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Transcribe a local media file.")
    parser.add_argument("--input", required=True, help="Path to a video or audio file.")
    parser.add_argument("--language", default="en-US", help="Language code (e.g., 'en-US').")
    parser.add_argument("--provider", default="google", choices=["google", "whisper"])
    parser.add_argument("--whisper-model", default="base")
    parser.add_argument("--timeout", type=float, default=1200)
    return parser


def main() -> int:
    args = build_parser().parse_args()
    input_path = Path(args.input).expanduser().resolve()
    if not input_path.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")

    transcriber = Transcriber(store=None, provider=args.provider, whisper_model=args.whisper_model)
    with tempfile.TemporaryDirectory(prefix="vap-stt-") as tmp:
        audio_path = _convert_to_wav(input_path, Path(tmp) / "audio.wav", transcriber.ffmpeg_bin, args.timeout)
        output = transcriber.transcribe_file(audio_path, args.language, args.timeout)
    print(json.dumps({"language": output.language, "text": output.text, "confidence": output.confidence, "segments": output.segments}, indent=2))
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main())
