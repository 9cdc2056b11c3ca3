"""
Object storage for raw, converted and normalized asset bytes.
Keys are storage-relative paths; the local backend also accepts absolute paths.
"""
from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional, Protocol

import boto3
from botocore.exceptions import ClientError
from loguru import logger

from signage.config import StorageConfig


class StorageError(RuntimeError):
    pass


class ObjectStorage(Protocol):
    def download(self, path: str) -> bytes: ...

    def upload(self, path: str, data: bytes) -> str: ...

    def exists(self, path: str) -> bool: ...

    def download_to(self, path: str, target: str) -> str: ...


class LocalObjectStorage:
    """Filesystem-backed storage rooted at a directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.root / p

    def download(self, path: str) -> bytes:
        full = self._resolve(path)
        if not full.exists():
            raise StorageError(f"Object not found: {path}")
        return full.read_bytes()

    def upload(self, path: str, data: bytes) -> str:
        full = self._resolve(path)
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_bytes(data)
        return path

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def download_to(self, path: str, target: str) -> str:
        full = self._resolve(path)
        if not full.exists():
            raise StorageError(f"Object not found: {path}")
        os.makedirs(os.path.dirname(target) or ".", exist_ok=True)
        shutil.copyfile(full, target)
        return target


class S3ObjectStorage:
    """S3 bucket backend. Keys are prefixed with the configured prefix."""

    def __init__(self, bucket: str, prefix: str = "", client=None):
        if not bucket:
            raise ValueError("S3 storage requires a bucket")
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.client = client or boto3.client("s3")

    def _key(self, path: str) -> str:
        path = path.lstrip("/")
        return f"{self.prefix}/{path}" if self.prefix else path

    def download(self, path: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=self._key(path))
        except ClientError as e:
            raise StorageError(f"S3 download failed for {path}: {e}") from e
        return obj["Body"].read()

    def upload(self, path: str, data: bytes) -> str:
        try:
            self.client.put_object(Bucket=self.bucket, Key=self._key(path), Body=data)
        except ClientError as e:
            raise StorageError(f"S3 upload failed for {path}: {e}") from e
        return path

    def exists(self, path: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._key(path))
            return True
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"S3 head failed for {path}: {e}") from e

    def download_to(self, path: str, target: str) -> str:
        os.makedirs(os.path.dirname(target) or ".", exist_ok=True)
        try:
            self.client.download_file(self.bucket, self._key(path), target)
        except ClientError as e:
            if os.path.exists(target):
                os.remove(target)
            raise StorageError(f"S3 download failed for {path}: {e}") from e
        return target


def build_storage(config: Optional[StorageConfig] = None) -> ObjectStorage:
    config = config or StorageConfig()
    if config.backend == "s3":
        logger.info(f"[STORAGE] Using S3 bucket {config.s3_bucket}")
        return S3ObjectStorage(config.s3_bucket or "", config.s3_prefix)
    if config.backend != "local":
        raise ValueError(f"Unsupported storage backend: {config.backend}")
    return LocalObjectStorage(config.root)
