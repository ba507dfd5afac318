"""Tagged job payloads and results.

Every row in a job table carries ``payload`` and ``result`` JSON documents
whose shape is selected by ``task_type``.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class ThumbnailPayload(BaseModel):
    task_type: Literal["thumbnail"] = "thumbnail"
    source_key: str
    target_key: str
    at_seconds: float = 10.0


class TranscodePayload(BaseModel):
    task_type: Literal["transcode"] = "transcode"
    source_key: str
    target_prefix: str
    profiles: list[str] = Field(default_factory=lambda: ["360p", "480p", "720p", "1080p"])


class TranscribePayload(BaseModel):
    task_type: Literal["transcribe"] = "transcribe"
    source_key: str
    languages: list[str] = Field(default_factory=lambda: ["en-US"])


class NotifyPayload(BaseModel):
    task_type: Literal["notify"] = "notify"
    event: Literal["video_available", "video_failed"]
    video_id: str
    lesson_id: Optional[str] = None
    error: Optional[str] = None


JobPayload = Annotated[
    Union[ThumbnailPayload, TranscodePayload, TranscribePayload, NotifyPayload],
    Field(discriminator="task_type"),
]


class ThumbnailResult(BaseModel):
    task_type: Literal["thumbnail"] = "thumbnail"
    thumbnail_key: str
    at_seconds: float


class TranscodeResult(BaseModel):
    task_type: Literal["transcode"] = "transcode"
    manifest_key: str
    width: int
    height: int
    duration_seconds: float
    codec: str
    size_bytes: Optional[int] = None
    renditions: list[str] = Field(default_factory=list)


class TranscriptEntry(BaseModel):
    language: str
    text: str
    confidence: float = Field(ge=0.0, le=1.0)
    provider: str
    captions_key: Optional[str] = None


class TranscribeResult(BaseModel):
    task_type: Literal["transcribe"] = "transcribe"
    transcripts: list[TranscriptEntry]


class NotifyResult(BaseModel):
    task_type: Literal["notify"] = "notify"
    channel: str
    message_id: Optional[str] = None


JobResult = Annotated[
    Union[ThumbnailResult, TranscodeResult, TranscribeResult, NotifyResult],
    Field(discriminator="task_type"),
]

_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(JobPayload)
_RESULT_ADAPTER: TypeAdapter = TypeAdapter(JobResult)


def parse_payload(raw: dict[str, Any]):
    return _PAYLOAD_ADAPTER.validate_python(raw)


def parse_result(raw: dict[str, Any]):
    return _RESULT_ADAPTER.validate_python(raw)


def to_document(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")
