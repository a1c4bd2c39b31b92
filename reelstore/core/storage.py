from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterator

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import ObjectNotFound, StorageFailure
from .logging import get_logger

CHUNK_SIZE = 1024 * 1024
_MISSING_CODES = {"NoSuchKey", "NoSuchBucket", "404", "NotFound"}


class ObjectStore(ABC):
    """Uniform object operations over one container (bucket)."""

    bucket: str

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def put_file(self, key: str, path: Path, *, content_type: str | None = None) -> None: ...

    @abstractmethod
    def put_bytes(self, key: str, payload: bytes, *, content_type: str | None = None) -> None: ...

    @abstractmethod
    def get(self, key: str) -> Iterator[bytes]:
        """Return the object body as chunks; raise ``ObjectNotFound`` when absent."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``. Deleting a missing key is not an error."""

    @abstractmethod
    def list(self, prefix: str) -> list[str]: ...

    @abstractmethod
    def ensure_container(self) -> None: ...

    @abstractmethod
    def object_url(self, key: str) -> str: ...


class LocalObjectStore(ObjectStore):
    """Filesystem-backed object store suitable for tests and offline development."""

    def __init__(self, base_path: Path, bucket: str, *, base_url: str | None = None):
        self.bucket = bucket
        self.root = (base_path / bucket).resolve()
        self.base_url = base_url.rstrip("/") if base_url else None

    def _resolve(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if path != self.root and self.root not in path.parents:
            raise StorageFailure(f"key escapes container: {key}")
        return path

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def put_file(self, key: str, path: Path, *, content_type: str | None = None) -> None:
        target = self._resolve(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with path.open("rb") as source, target.open("wb") as sink:
                while chunk := source.read(CHUNK_SIZE):
                    sink.write(chunk)
        except OSError as exc:
            raise StorageFailure(f"put failed for {key}: {exc}") from exc

    def put_bytes(self, key: str, payload: bytes, *, content_type: str | None = None) -> None:
        target = self._resolve(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(payload)
        except OSError as exc:
            raise StorageFailure(f"put failed for {key}: {exc}") from exc

    def get(self, key: str) -> Iterator[bytes]:
        path = self._resolve(key)
        if not path.is_file():
            raise ObjectNotFound(key)
        return self._iter_file(path)

    @staticmethod
    def _iter_file(path: Path) -> Iterator[bytes]:
        with path.open("rb") as handle:
            while chunk := handle.read(CHUNK_SIZE):
                yield chunk

    def delete(self, key: str) -> None:
        path = self._resolve(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageFailure(f"delete failed for {key}: {exc}") from exc
        parent = path.parent
        if parent != self.root and parent.exists() and not any(parent.iterdir()):
            parent.rmdir()

    def list(self, prefix: str) -> list[str]:
        if not self.root.exists():
            return []
        keys = [p.relative_to(self.root).as_posix() for p in self.root.rglob("*") if p.is_file()]
        return sorted(key for key in keys if key.startswith(prefix))

    def ensure_container(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def object_url(self, key: str) -> str:
        if self.base_url:
            return f"{self.base_url}/{key}"
        return self._resolve(key).as_uri()


class S3ObjectStore(ObjectStore):
    """boto3 implementation shared by MinIO (development) and AWS S3 (production)."""

    def __init__(self, client: Any, bucket: str, *, base_url: str, create_missing_bucket: bool = False):
        self._client = client
        self.bucket = bucket
        self.base_url = base_url.rstrip("/")
        self._create_missing_bucket = create_missing_bucket
        self.logger = get_logger(component="object_store", bucket=bucket)

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return False
            raise StorageFailure(f"head failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageFailure(f"head failed for {key}: {exc}") from exc
        return True

    def put_file(self, key: str, path: Path, *, content_type: str | None = None) -> None:
        try:
            with path.open("rb") as body:
                self._client.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=body,
                    ContentType=content_type or "application/octet-stream",
                )
        except (ClientError, BotoCoreError, OSError) as exc:
            raise StorageFailure(f"put failed for {key}: {exc}") from exc
        self.logger.info("object_uploaded", key=key)

    def put_bytes(self, key: str, payload: bytes, *, content_type: str | None = None) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=payload,
                ContentType=content_type or "application/octet-stream",
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageFailure(f"put failed for {key}: {exc}") from exc
        self.logger.info("object_uploaded", key=key)

    def get(self, key: str) -> Iterator[bytes]:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                raise ObjectNotFound(key) from exc
            raise StorageFailure(f"get failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageFailure(f"get failed for {key}: {exc}") from exc
        return response["Body"].iter_chunks(chunk_size=CHUNK_SIZE)

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return
            raise StorageFailure(f"delete failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageFailure(f"delete failed for {key}: {exc}") from exc
        self.logger.info("object_deleted", key=key)

    def list(self, prefix: str) -> list[str]:
        keys: list[str] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(item["Key"] for item in page.get("Contents", []))
        except (ClientError, BotoCoreError) as exc:
            raise StorageFailure(f"list failed for {prefix}: {exc}") from exc
        return sorted(keys)

    def ensure_container(self) -> None:
        try:
            self._client.head_bucket(Bucket=self.bucket)
            self.logger.info("bucket_ready")
            return
        except ClientError as exc:
            if _error_code(exc) not in _MISSING_CODES:
                raise StorageFailure(f"bucket check failed: {exc}") from exc
            if not self._create_missing_bucket:
                raise StorageFailure(f"bucket {self.bucket} does not exist") from exc
        except BotoCoreError as exc:
            raise StorageFailure(f"bucket check failed: {exc}") from exc

        try:
            self._client.create_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as exc:
            raise StorageFailure(f"bucket creation failed: {exc}") from exc
        self.logger.info("bucket_created")

    def object_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def create_s3_client(settings: Settings):
    if settings.storage_backend == "minio":
        return boto3.client(
            "s3",
            endpoint_url=settings.minio_endpoint,
            region_name="us-east-1",
            aws_access_key_id=settings.minio_access_key,
            aws_secret_access_key=settings.secrets.minio_secret_key,
            config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
        )
    return boto3.client(
        "s3",
        region_name=settings.aws_region,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.secrets.aws_secret_access_key,
        config=BotoConfig(signature_version="s3v4"),
    )


def get_storage(settings: Settings) -> ObjectStore:
    if settings.storage_backend == "local":
        return LocalObjectStore(
            Path(settings.local_storage_base_path),
            settings.bucket_name,
            base_url=settings.public_base_url,
        )
    if settings.storage_backend == "minio":
        base_url = settings.public_base_url or f"{settings.minio_endpoint.rstrip('/')}/{settings.bucket_name}"
        return S3ObjectStore(
            create_s3_client(settings),
            settings.bucket_name,
            base_url=base_url,
            create_missing_bucket=True,
        )
    if settings.storage_backend == "s3":
        base_url = settings.public_base_url or f"https://{settings.bucket_name}.s3.{settings.aws_region}.amazonaws.com"
        return S3ObjectStore(create_s3_client(settings), settings.bucket_name, base_url=base_url)
    raise ValueError(f"Unsupported storage backend: {settings.storage_backend}")


__all__ = [
    "ObjectStore",
    "LocalObjectStore",
    "S3ObjectStore",
    "create_s3_client",
    "get_storage",
]
