from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from time import time
from typing import BinaryIO, Mapping, Optional
from urllib.parse import quote

import jwt

from backend.errors import StorageIOError, StorageNotFound, StorageQuotaExceeded


MAX_SIGNED_URL_TTL_SEC = 3600
PLAYBACK_URL_TTL_SEC = 900
_TOKEN_ALGORITHM = "HS256"
_S3_QUOTA_CODES = {"QuotaExceeded", "EntityTooLarge", "ServiceQuotaExceeded"}
_S3_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


@dataclass(frozen=True)
class StorageConfig:
    mode: str
    local_dir: Path
    s3_bucket: Optional[str]
    s3_prefix: Optional[str]
    s3_endpoint_url: Optional[str]
    s3_region: Optional[str]
    signing_secret: str
    public_base_url: str
    max_object_bytes: int


def _validate_config(config: StorageConfig) -> None:
    if config.mode not in {"local", "s3"}:
        raise RuntimeError("STORAGE_MODE must be either 'local' or 's3'.")

    if config.mode == "s3":
        if not config.s3_bucket:
            raise RuntimeError("S3_BUCKET must be set for S3 storage.")
        if not config.s3_prefix:
            raise RuntimeError("S3_PREFIX must be a non-empty path segment for S3 storage.")

    if config.mode == "local" and not config.signing_secret:
        raise RuntimeError("VAP_URL_SIGNING_SECRET must be set for local signed URLs.")

    if config.max_object_bytes <= 0:
        raise RuntimeError("VAP_MAX_OBJECT_MB must be a positive integer.")


def _config(env: Mapping[str, str] | None = None) -> StorageConfig:
    active_env = env if env is not None else os.environ
    mode = active_env.get("STORAGE_MODE", "local")
    local_dir = Path(active_env.get("VAP_STORAGE_DIR", "storage")).resolve()
    raw_max_mb = active_env.get("VAP_MAX_OBJECT_MB", "2048").strip()
    try:
        max_object_bytes = int(raw_max_mb) * 1024 * 1024
    except ValueError as exc:
        raise RuntimeError("VAP_MAX_OBJECT_MB must be an integer.") from exc
    config = StorageConfig(
        mode=mode,
        local_dir=local_dir,
        s3_bucket=active_env.get("S3_BUCKET"),
        s3_prefix=active_env.get("S3_PREFIX", "videos-pipeline"),
        s3_endpoint_url=active_env.get("S3_ENDPOINT_URL"),
        s3_region=active_env.get("AWS_REGION") or active_env.get("S3_REGION"),
        signing_secret=active_env.get("VAP_URL_SIGNING_SECRET", "").strip(),
        public_base_url=active_env.get("VAP_PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/"),
        max_object_bytes=max_object_bytes,
    )
    _validate_config(config)
    return config


# Key layout. Callers never build keys themselves.

def source_key(video_id: str, extension: str) -> str:
    ext = (extension or "mp4").lower().lstrip(".") or "mp4"
    return f"videos/{video_id}/original.{ext}"


def thumbnail_key(video_id: str) -> str:
    return f"videos/{video_id}/thumb.jpg"


def hls_prefix(video_id: str) -> str:
    return f"videos/{video_id}/hls"


def manifest_key(video_id: str) -> str:
    return f"{hls_prefix(video_id)}/index.m3u8"


def captions_prefix(video_id: str) -> str:
    return f"videos/{video_id}/captions"


def captions_key(video_id: str, language: str) -> str:
    return f"{captions_prefix(video_id)}/{language}.vtt"


def _check_ttl(ttl_seconds: int) -> None:
    if ttl_seconds <= 0 or ttl_seconds > MAX_SIGNED_URL_TTL_SEC:
        raise ValueError(f"ttl_seconds must be within 1..{MAX_SIGNED_URL_TTL_SEC}.")


class ObjectStore:
    """Opaque blob store with time-bounded read and write URLs."""

    mode = "abstract"

    def put(self, key: str, data: bytes, content_type: str) -> None:
        raise NotImplementedError

    def put_file(self, key: str, path: Path, content_type: str) -> None:
        raise NotImplementedError

    def put_stream(self, key: str, fileobj: BinaryIO, content_type: str) -> int:
        raise NotImplementedError

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def download_to(self, key: str, target: Path) -> Path:
        raise NotImplementedError

    def read_head(self, key: str, length: int) -> bytes:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def size(self, key: str) -> int:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    def sign_read(self, key: str, ttl_seconds: int = PLAYBACK_URL_TTL_SEC, *, now: Optional[float] = None) -> str:
        raise NotImplementedError

    def sign_write(
        self,
        key: str,
        content_type: str,
        ttl_seconds: int = PLAYBACK_URL_TTL_SEC,
        *,
        now: Optional[float] = None,
    ) -> str:
        raise NotImplementedError

    def healthcheck(self) -> None:
        raise NotImplementedError


class LocalObjectStore(ObjectStore):
    mode = "local"

    def __init__(self, config: StorageConfig) -> None:
        self.config = config

    def _path(self, key: str) -> Path:
        normalized = key.strip("/")
        if not normalized or ".." in normalized.split("/"):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.config.local_dir / normalized

    def _ensure_within_quota(self, size: int) -> None:
        if size > self.config.max_object_bytes:
            raise StorageQuotaExceeded(
                f"Object of {size} bytes exceeds limit of {self.config.max_object_bytes} bytes."
            )

    def put(self, key: str, data: bytes, content_type: str) -> None:
        self._ensure_within_quota(len(data))
        target = self._path(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageIOError(f"Failed to write {key}: {exc}") from exc

    def put_file(self, key: str, path: Path, content_type: str) -> None:
        self._ensure_within_quota(path.stat().st_size)
        target = self._path(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, target)
        except OSError as exc:
            raise StorageIOError(f"Failed to write {key}: {exc}") from exc

    def put_stream(self, key: str, fileobj: BinaryIO, content_type: str) -> int:
        target = self._path(key)
        total = 0
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("wb") as handle:
                while True:
                    chunk = fileobj.read(1024 * 1024)
                    if not chunk:
                        break
                    total += len(chunk)
                    self._ensure_within_quota(total)
                    handle.write(chunk)
        except StorageQuotaExceeded:
            target.unlink(missing_ok=True)
            raise
        except OSError as exc:
            raise StorageIOError(f"Failed to write {key}: {exc}") from exc
        return total

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise StorageNotFound(f"Object not found: {key}")
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageIOError(f"Failed to read {key}: {exc}") from exc

    def download_to(self, key: str, target: Path) -> Path:
        path = self._path(key)
        if not path.is_file():
            raise StorageNotFound(f"Object not found: {key}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, target)
        except OSError as exc:
            raise StorageIOError(f"Failed to read {key}: {exc}") from exc
        return target

    def read_head(self, key: str, length: int) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise StorageNotFound(f"Object not found: {key}")
        try:
            with path.open("rb") as handle:
                return handle.read(length)
        except OSError as exc:
            raise StorageIOError(f"Failed to read {key}: {exc}") from exc

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def size(self, key: str) -> int:
        path = self._path(key)
        if not path.is_file():
            raise StorageNotFound(f"Object not found: {key}")
        return path.stat().st_size

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def delete_prefix(self, prefix: str) -> int:
        root = self._path(prefix)
        if not root.exists():
            return 0
        removed = sum(1 for item in root.rglob("*") if item.is_file())
        shutil.rmtree(root, ignore_errors=True)
        return removed

    def local_path(self, key: str) -> Path:
        return self._path(key)

    def _token(self, key: str, operation: str, ttl_seconds: int, now: Optional[float]) -> str:
        _check_ttl(ttl_seconds)
        issued_at = int(now if now is not None else time())
        claims = {"key": key, "op": operation, "iat": issued_at, "exp": issued_at + ttl_seconds}
        return jwt.encode(claims, self.config.signing_secret, algorithm=_TOKEN_ALGORITHM)

    def sign_read(self, key: str, ttl_seconds: int = PLAYBACK_URL_TTL_SEC, *, now: Optional[float] = None) -> str:
        if not self.exists(key):
            raise StorageNotFound(f"Object not found: {key}")
        token = self._token(key, "read", ttl_seconds, now)
        return f"{self.config.public_base_url}/storage/{quote(key)}?token={token}"

    def sign_write(
        self,
        key: str,
        content_type: str,
        ttl_seconds: int = PLAYBACK_URL_TTL_SEC,
        *,
        now: Optional[float] = None,
    ) -> str:
        token = self._token(key, "write", ttl_seconds, now)
        return f"{self.config.public_base_url}/storage/{quote(key)}?token={token}"

    def verify_token(self, token: str, key: str, operation: str) -> None:
        """Raise PermissionError unless ``token`` grants ``operation`` on ``key`` right now."""
        try:
            claims = jwt.decode(token, self.config.signing_secret, algorithms=[_TOKEN_ALGORITHM])
        except jwt.ExpiredSignatureError as exc:
            raise PermissionError("Signed URL has expired.") from exc
        except jwt.InvalidTokenError as exc:
            raise PermissionError("Signed URL is invalid.") from exc
        if claims.get("key") != key or claims.get("op") != operation:
            raise PermissionError("Signed URL does not grant this operation.")

    def healthcheck(self) -> None:
        probe = self.config.local_dir / ".ready"
        try:
            probe.parent.mkdir(parents=True, exist_ok=True)
            probe.write_text(str(time()), encoding="utf-8")
            probe.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageIOError(f"Local storage is not writable: {exc}") from exc


class S3ObjectStore(ObjectStore):
    mode = "s3"

    def __init__(self, config: StorageConfig, client=None) -> None:
        self.config = config
        self._client = client

    @property
    def client(self):
        if self._client is None:
            import boto3

            self._client = boto3.client(
                "s3",
                region_name=self.config.s3_region,
                endpoint_url=self.config.s3_endpoint_url,
            )
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.config.s3_prefix}/{key.strip('/')}"

    def _translate(self, exc: Exception, key: str) -> Exception:
        from botocore.exceptions import BotoCoreError, ClientError

        if isinstance(exc, ClientError):
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _S3_MISSING_CODES:
                return StorageNotFound(f"Object not found: {key}")
            if code in _S3_QUOTA_CODES:
                return StorageQuotaExceeded(f"Storage quota exceeded writing {key}: {code}")
            return StorageIOError(f"S3 error on {key}: {code}")
        if isinstance(exc, BotoCoreError):
            return StorageIOError(f"S3 transport error on {key}: {exc}")
        return exc

    def _call(self, key: str, operation, *args, **kwargs):
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return operation(*args, **kwargs)
        except (BotoCoreError, ClientError) as exc:
            raise self._translate(exc, key) from exc

    def _ensure_within_quota(self, size: int) -> None:
        if size > self.config.max_object_bytes:
            raise StorageQuotaExceeded(
                f"Object of {size} bytes exceeds limit of {self.config.max_object_bytes} bytes."
            )

    def put(self, key: str, data: bytes, content_type: str) -> None:
        self._ensure_within_quota(len(data))
        self._call(
            key,
            self.client.put_object,
            Bucket=self.config.s3_bucket,
            Key=self._key(key),
            Body=data,
            ContentType=content_type,
        )

    def put_file(self, key: str, path: Path, content_type: str) -> None:
        self._ensure_within_quota(path.stat().st_size)
        self._call(
            key,
            self.client.upload_file,
            str(path),
            self.config.s3_bucket,
            self._key(key),
            ExtraArgs={"ContentType": content_type},
        )

    def put_stream(self, key: str, fileobj: BinaryIO, content_type: str) -> int:
        import io

        buffer = io.BytesIO()
        total = 0
        while True:
            chunk = fileobj.read(1024 * 1024)
            if not chunk:
                break
            total += len(chunk)
            self._ensure_within_quota(total)
            buffer.write(chunk)
        buffer.seek(0)
        self._call(
            key,
            self.client.upload_fileobj,
            buffer,
            self.config.s3_bucket,
            self._key(key),
            ExtraArgs={"ContentType": content_type},
        )
        return total

    def get(self, key: str) -> bytes:
        response = self._call(key, self.client.get_object, Bucket=self.config.s3_bucket, Key=self._key(key))
        return response["Body"].read()

    def download_to(self, key: str, target: Path) -> Path:
        target.parent.mkdir(parents=True, exist_ok=True)
        self._call(key, self.client.download_file, self.config.s3_bucket, self._key(key), str(target))
        return target

    def read_head(self, key: str, length: int) -> bytes:
        response = self._call(
            key,
            self.client.get_object,
            Bucket=self.config.s3_bucket,
            Key=self._key(key),
            Range=f"bytes=0-{max(length, 1) - 1}",
        )
        return response["Body"].read()

    def exists(self, key: str) -> bool:
        try:
            self.size(key)
        except StorageNotFound:
            return False
        return True

    def size(self, key: str) -> int:
        response = self._call(key, self.client.head_object, Bucket=self.config.s3_bucket, Key=self._key(key))
        return int(response.get("ContentLength") or 0)

    def delete(self, key: str) -> None:
        self._call(key, self.client.delete_object, Bucket=self.config.s3_bucket, Key=self._key(key))

    def delete_prefix(self, prefix: str) -> int:
        paginator = self.client.get_paginator("list_objects_v2")
        removed = 0
        for page in paginator.paginate(Bucket=self.config.s3_bucket, Prefix=self._key(prefix) + "/"):
            objects = [{"Key": item["Key"]} for item in page.get("Contents", [])]
            if not objects:
                continue
            self._call(
                prefix,
                self.client.delete_objects,
                Bucket=self.config.s3_bucket,
                Delete={"Objects": objects, "Quiet": True},
            )
            removed += len(objects)
        return removed

    def sign_read(self, key: str, ttl_seconds: int = PLAYBACK_URL_TTL_SEC, *, now: Optional[float] = None) -> str:
        _check_ttl(ttl_seconds)
        if not self.exists(key):
            raise StorageNotFound(f"Object not found: {key}")
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.config.s3_bucket, "Key": self._key(key)},
            ExpiresIn=ttl_seconds,
        )

    def sign_write(
        self,
        key: str,
        content_type: str,
        ttl_seconds: int = PLAYBACK_URL_TTL_SEC,
        *,
        now: Optional[float] = None,
    ) -> str:
        _check_ttl(ttl_seconds)
        return self.client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self.config.s3_bucket, "Key": self._key(key), "ContentType": content_type},
            ExpiresIn=ttl_seconds,
        )

    def healthcheck(self) -> None:
        self._call("", self.client.head_bucket, Bucket=self.config.s3_bucket)


def get_object_store(env: Mapping[str, str] | None = None) -> ObjectStore:
    cfg = _config(env)
    if cfg.mode == "s3":
        return S3ObjectStore(cfg)
    return LocalObjectStore(cfg)
