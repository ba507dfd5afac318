from __future__ import annotations

from typing import Optional

import httpx


class PipelineError(Exception):
    """Base class for every typed error raised by the video pipeline."""

    code = "pipeline_error"

    def __init__(self, message: str = "", *, code: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code


class TransientError(PipelineError):
    """Retryable: the same call may succeed later."""

    retryable = True


class PermanentError(PipelineError):
    """Not retryable: the input itself is bad."""

    retryable = False


class PolicyError(PipelineError):
    """Surfaced to the caller verbatim, never retried server-side."""

    retryable = False
    status_code = 400


# Object store

class StorageIOError(TransientError):
    code = "storage_io"


class StorageNotFound(PermanentError):
    code = "storage_not_found"


class StorageQuotaExceeded(PermanentError):
    code = "storage_quota_exceeded"


# Transcoder

class SourceUnreadable(PermanentError):
    code = "source_unreadable"


class UnsupportedCodec(PermanentError):
    code = "unsupported_codec"


class EncodingFailure(PermanentError):
    code = "encoding_failure"


class TranscoderUnavailable(TransientError):
    code = "transcoder_unavailable"


# Transcriber

class AudioUnreadable(PermanentError):
    code = "audio_unreadable"


class LanguageNotSupported(PermanentError):
    code = "language_not_supported"


class TranscriberUnavailable(TransientError):
    code = "transcriber_unavailable"


class DriverTimeout(TransientError):
    code = "driver_timeout"


# Policy

class VideoNotFound(PolicyError):
    code = "not_found"
    status_code = 404


class Forbidden(PolicyError):
    code = "forbidden"
    status_code = 403


class NotReady(PolicyError):
    code = "not_ready"
    status_code = 409

    def __init__(self, message: str = "", *, status: Optional[str] = None) -> None:
        super().__init__(message or "Video is not ready for playback.")
        self.status = status


class InvalidTransition(PolicyError):
    code = "invalid_transition"
    status_code = 409


class QueueSaturated(PolicyError):
    code = "queue_saturated"
    status_code = 503


class UnsupportedMediaType(PolicyError):
    code = "unsupported_media_type"
    status_code = 415


class AlertNotFound(PolicyError):
    code = "alert_not_found"
    status_code = 404


# Collaborators

class EntitlementUnavailable(TransientError):
    code = "entitlement_unavailable"


def is_retryable(exc: BaseException) -> bool:
    """Classify an exception raised by a driver or the object store.

    Typed pipeline errors carry their own verdict. Plain network timeouts and
    connection errors are treated as transient; anything else is not retryable.
    """
    if isinstance(exc, PipelineError):
        return bool(getattr(exc, "retryable", False))
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    return isinstance(exc, httpx.TransportError)


def error_code(exc: BaseException) -> str:
    if isinstance(exc, PipelineError):
        return exc.code
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return "network"
    return "internal"
