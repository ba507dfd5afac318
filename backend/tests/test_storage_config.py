from __future__ import annotations

from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
sys.path.append(str(ROOT))

from backend import storage


def test_storage_mode_must_be_supported(monkeypatch):
    monkeypatch.setenv("STORAGE_MODE", "gcs")

    with pytest.raises(RuntimeError, match="STORAGE_MODE must be either 'local' or 's3'"):
        storage._config()


def test_s3_storage_requires_bucket(monkeypatch):
    monkeypatch.setenv("STORAGE_MODE", "s3")
    monkeypatch.delenv("S3_BUCKET", raising=False)

    with pytest.raises(RuntimeError, match="S3_BUCKET must be set for S3 storage"):
        storage._config()


def test_s3_storage_requires_non_empty_prefix(monkeypatch):
    monkeypatch.setenv("STORAGE_MODE", "s3")
    monkeypatch.setenv("S3_BUCKET", "vap-test")
    monkeypatch.setenv("S3_PREFIX", "")

    with pytest.raises(RuntimeError, match="S3_PREFIX must be a non-empty path segment"):
        storage._config()


def test_local_storage_default_config(monkeypatch, tmp_path):
    monkeypatch.delenv("STORAGE_MODE", raising=False)
    monkeypatch.setenv("VAP_STORAGE_DIR", str(tmp_path / "storage"))
    monkeypatch.setenv("VAP_URL_SIGNING_SECRET", "local-secret")

    cfg = storage._config()

    assert cfg.mode == "local"
    assert cfg.signing_secret == "local-secret"
    assert str(cfg.local_dir).endswith("storage")
    assert cfg.max_object_bytes == 2048 * 1024 * 1024


def test_local_storage_has_no_default_signing_secret(monkeypatch):
    monkeypatch.delenv("STORAGE_MODE", raising=False)
    monkeypatch.setenv("VAP_URL_SIGNING_SECRET", "   ")

    with pytest.raises(RuntimeError, match="VAP_URL_SIGNING_SECRET must be set"):
        storage._config()

    monkeypatch.delenv("VAP_URL_SIGNING_SECRET")

    with pytest.raises(RuntimeError, match="VAP_URL_SIGNING_SECRET must be set"):
        storage._config()


def test_max_object_size_must_be_numeric(monkeypatch):
    monkeypatch.setenv("VAP_MAX_OBJECT_MB", "lots")

    with pytest.raises(RuntimeError, match="VAP_MAX_OBJECT_MB must be an integer"):
        storage._config()


def test_get_object_store_selects_backend():
    local = storage.get_object_store(
        {"STORAGE_MODE": "local", "VAP_STORAGE_DIR": "storage", "VAP_URL_SIGNING_SECRET": "local-secret"}
    )
    s3 = storage.get_object_store({"STORAGE_MODE": "s3", "S3_BUCKET": "vap-test"})

    assert isinstance(local, storage.LocalObjectStore)
    assert isinstance(s3, storage.S3ObjectStore)
    assert s3.config.s3_prefix == "videos-pipeline"


def test_key_layout():
    assert storage.source_key("v1", ".MOV") == "videos/v1/original.mov"
    assert storage.source_key("v1", "") == "videos/v1/original.mp4"
    assert storage.thumbnail_key("v1") == "videos/v1/thumb.jpg"
    assert storage.manifest_key("v1") == "videos/v1/hls/index.m3u8"
    assert storage.captions_key("v1", "en-US") == "videos/v1/captions/en-US.vtt"
