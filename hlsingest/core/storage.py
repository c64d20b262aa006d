"""Object storage supporting multiple backends.

Supports: local filesystem, S3, MinIO, and other S3-compatible storage.
Every key handed to :class:`Storage` is relative to the configured storage
root prefix; backends only ever see fully-prefixed keys.
"""

import asyncio
import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from hlsingest.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class StorageResult:
    """Result of a storage operation."""
    success: bool
    key: str
    file_size: int = 0
    etag: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # local, s3, minio
    root: str = ""
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"
    cdn_domain: Optional[str] = None
    cdn_enabled: bool = False

    @classmethod
    def from_settings(cls) -> "StorageConfig":
        return cls(
            backend=settings.STORAGE_BACKEND,
            root=settings.STORAGE_ROOT,
            bucket=settings.STORAGE_BUCKET,
            region=settings.STORAGE_REGION,
            access_key=settings.STORAGE_ACCESS_KEY,
            secret_key=settings.STORAGE_SECRET_KEY,
            endpoint_url=settings.STORAGE_ENDPOINT_URL,
            use_ssl=settings.STORAGE_USE_SSL,
            local_path=settings.LOCAL_STORAGE_PATH,
            cdn_domain=settings.CDN_DOMAIN,
            cdn_enabled=settings.CDN_ENABLED,
        )


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def upload(self, file_path: str, key: str, content_type: str) -> StorageResult:
        """Upload a local file under key."""

    @abstractmethod
    def upload_bytes(self, data: bytes, key: str, content_type: str) -> StorageResult:
        """Store an in-memory payload under key."""

    @abstractmethod
    def move(self, source_key: str, dest_key: str) -> StorageResult:
        """Make source_key's object visible under dest_key and drop source_key."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a single object."""

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every object under prefix; returns the number removed."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if an object exists."""

    @abstractmethod
    def get_url(self, key: str, expires_in: int = 3600) -> str:
        """Get URL for an object (presigned for private storage)."""

    @abstractmethod
    def list_files(self, prefix: str = "") -> list[str]:
        """List keys with given prefix."""

    @abstractmethod
    def ping(self) -> bool:
        """Check that the backend is reachable."""


class LocalStorage(StorageBackend):
    """Local filesystem storage backend."""

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.cdn_domain = config.cdn_domain
        self.cdn_enabled = config.cdn_enabled

    def _get_full_path(self, key: str) -> Path:
        return self.base_path / key

    def upload(self, file_path: str, key: str, content_type: str) -> StorageResult:
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(file_path, dest_path)
            return StorageResult(success=True, key=key, file_size=dest_path.stat().st_size)
        except OSError as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def upload_bytes(self, data: bytes, key: str, content_type: str) -> StorageResult:
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            dest_path.write_bytes(data)
            return StorageResult(success=True, key=key, file_size=len(data))
        except OSError as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def move(self, source_key: str, dest_key: str) -> StorageResult:
        # os.replace is atomic within one filesystem
        try:
            dest_path = self._get_full_path(dest_key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            os.replace(self._get_full_path(source_key), dest_path)
            return StorageResult(success=True, key=dest_key, file_size=dest_path.stat().st_size)
        except OSError as e:
            return StorageResult(success=False, key=dest_key, error_message=str(e))

    def delete(self, key: str) -> bool:
        try:
            file_path = self._get_full_path(key)
            if file_path.exists():
                file_path.unlink()
                return True
            return False
        except OSError:
            logger.warning(f"Failed to delete {key}", exc_info=True)
            return False

    def delete_prefix(self, prefix: str) -> int:
        keys = self.list_files(prefix)
        removed = sum(1 for key in keys if self.delete(key))
        directory = self._get_full_path(prefix)
        if prefix.endswith("/") and directory.is_dir():
            shutil.rmtree(directory, ignore_errors=True)
        return removed

    def exists(self, key: str) -> bool:
        return self._get_full_path(key).is_file()

    def get_url(self, key: str, expires_in: int = 3600) -> str:
        if self.cdn_enabled and self.cdn_domain:
            return f"https://{self.cdn_domain}/{key}"
        return self._get_full_path(key).absolute().as_uri()

    def list_files(self, prefix: str = "") -> list[str]:
        if prefix.endswith("/") or not prefix:
            search_path = self._get_full_path(prefix) if prefix else self.base_path
        else:
            search_path = self._get_full_path(prefix).parent
        if not search_path.exists():
            return []

        files = []
        for path in search_path.rglob("*"):
            if path.is_file():
                rel_path = path.relative_to(self.base_path).as_posix()
                if rel_path.startswith(prefix):
                    files.append(rel_path)
        return sorted(files)

    def ping(self) -> bool:
        return self.base_path.is_dir() and os.access(self.base_path, os.W_OK)


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self._client = None

    def _get_client(self):
        """Get or create S3 client."""
        if self._client is None:
            import boto3
            from botocore.config import Config as BotoConfig

            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region or "us-east-1",
                "aws_access_key_id": self.config.access_key or None,
                "aws_secret_access_key": self.config.secret_key or None,
                "config": BotoConfig(retries={"max_attempts": 3, "mode": "standard"}),
            }

            # MinIO and other S3-compatible endpoints
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                client_kwargs["config"] = BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                    retries={"max_attempts": 3, "mode": "standard"},
                )
                if not self.config.use_ssl:
                    client_kwargs["use_ssl"] = False

            self._client = boto3.client(**client_kwargs)

        return self._client

    def upload(self, file_path: str, key: str, content_type: str) -> StorageResult:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            file_size = os.path.getsize(file_path)
            with open(file_path, "rb") as f:
                response = self._get_client().put_object(
                    Bucket=self.config.bucket,
                    Key=key,
                    Body=f,
                    ContentType=content_type,
                )
            etag = response.get("ETag", "").strip('"')
            return StorageResult(success=True, key=key, file_size=file_size, etag=etag)
        except (BotoCoreError, ClientError, OSError) as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def upload_bytes(self, data: bytes, key: str, content_type: str) -> StorageResult:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self._get_client().put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
            etag = response.get("ETag", "").strip('"')
            return StorageResult(success=True, key=key, file_size=len(data), etag=etag)
        except (BotoCoreError, ClientError) as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def move(self, source_key: str, dest_key: str) -> StorageResult:
        # A single-object copy is atomic: readers see the old key or the full object
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            client = self._get_client()
            client.copy_object(
                Bucket=self.config.bucket,
                Key=dest_key,
                CopySource={"Bucket": self.config.bucket, "Key": source_key},
                MetadataDirective="COPY",
            )
            client.delete_object(Bucket=self.config.bucket, Key=source_key)
            return StorageResult(success=True, key=dest_key)
        except (BotoCoreError, ClientError) as e:
            return StorageResult(success=False, key=dest_key, error_message=str(e))

    def delete(self, key: str) -> bool:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._get_client().delete_object(Bucket=self.config.bucket, Key=key)
            return True
        except (BotoCoreError, ClientError):
            logger.warning(f"Failed to delete s3://{self.config.bucket}/{key}", exc_info=True)
            return False

    def delete_prefix(self, prefix: str) -> int:
        from botocore.exceptions import BotoCoreError, ClientError

        keys = self.list_files(prefix)
        removed = 0
        client = self._get_client()
        for start in range(0, len(keys), 1000):
            batch = keys[start:start + 1000]
            try:
                response = client.delete_objects(
                    Bucket=self.config.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
            except (BotoCoreError, ClientError):
                logger.warning(f"Failed to delete batch under {prefix}", exc_info=True)
                continue
            removed += len(batch) - len(response.get("Errors", []))
        return removed

    def exists(self, key: str) -> bool:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._get_client().head_object(Bucket=self.config.bucket, Key=key)
            return True
        except (BotoCoreError, ClientError):
            return False

    def get_url(self, key: str, expires_in: int = 3600) -> str:
        if self.config.cdn_enabled and self.config.cdn_domain:
            return f"https://{self.config.cdn_domain}/{key}"

        return self._get_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self.config.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def list_files(self, prefix: str = "") -> list[str]:
        from botocore.exceptions import BotoCoreError, ClientError

        files = []
        try:
            paginator = self._get_client().get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix):
                files.extend(obj["Key"] for obj in page.get("Contents", []))
        except (BotoCoreError, ClientError):
            logger.warning(f"Failed to list s3://{self.config.bucket}/{prefix}", exc_info=True)
        return files

    def ping(self) -> bool:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._get_client().head_bucket(Bucket=self.config.bucket)
            return True
        except (BotoCoreError, ClientError):
            return False


class Storage:
    """Storage facade.

    Selects the backend from configuration and applies the storage root
    prefix, so callers work with keys such as ``assets/A1/master.m3u8``.
    """

    _instance: Optional["Storage"] = None

    def __init__(self, config: Optional[StorageConfig] = None):
        """Initialize storage with configuration.

        Args:
            config: Storage configuration (uses settings if not provided)
        """
        self.config = config or StorageConfig.from_settings()
        self.root = self.config.root.strip("/")
        self._backend = self._create_backend(self.config)

    def _create_backend(self, config: StorageConfig) -> StorageBackend:
        backend_type = config.backend.lower()

        if backend_type == "local":
            return LocalStorage(config)
        elif backend_type in ("s3", "minio", "aws"):
            return S3Storage(config)
        else:
            raise ValueError(f"Unsupported storage backend: {backend_type}")

    @classmethod
    def get_instance(cls) -> "Storage":
        """Get singleton storage instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def _full(self, key: str) -> str:
        return f"{self.root}/{key}" if self.root else key

    def _relative(self, key: str) -> str:
        if self.root and key.startswith(self.root + "/"):
            return key[len(self.root) + 1:]
        return key

    def upload(self, file_path: str, key: str, content_type: str = "application/octet-stream") -> StorageResult:
        result = self._backend.upload(file_path, self._full(key), content_type)
        result.key = key
        return result

    def upload_bytes(self, data: bytes, key: str, content_type: str = "application/octet-stream") -> StorageResult:
        result = self._backend.upload_bytes(data, self._full(key), content_type)
        result.key = key
        return result

    def move(self, source_key: str, dest_key: str) -> StorageResult:
        result = self._backend.move(self._full(source_key), self._full(dest_key))
        result.key = dest_key
        return result

    def delete(self, key: str) -> bool:
        return self._backend.delete(self._full(key))

    def delete_prefix(self, prefix: str) -> int:
        return self._backend.delete_prefix(self._full(prefix))

    def exists(self, key: str) -> bool:
        return self._backend.exists(self._full(key))

    def get_url(self, key: str, expires_in: int = 3600) -> str:
        return self._backend.get_url(self._full(key), expires_in)

    def list_files(self, prefix: str = "") -> list[str]:
        return [self._relative(key) for key in self._backend.list_files(self._full(prefix))]

    def ping(self) -> bool:
        return self._backend.ping()


def get_storage() -> Storage:
    """Get the default storage instance."""
    return Storage.get_instance()


class StorageService:
    """Async wrapper that runs blocking storage calls in worker threads.

    Each call is bounded by ``timeout`` seconds; a call that exceeds it
    raises ``asyncio.TimeoutError`` (the thread itself finishes in the
    background).
    """

    def __init__(self, storage: Optional[Storage] = None, timeout: Optional[float] = None):
        self._storage = storage or get_storage()
        self.timeout = timeout if timeout is not None else settings.UPLOAD_TIMEOUT_S

    @property
    def storage(self) -> Storage:
        return self._storage

    async def _call(self, func, *args):
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.timeout)

    async def upload_file(self, file_path: str, key: str, content_type: str) -> StorageResult:
        return await self._call(self._storage.upload, file_path, key, content_type)

    async def upload_bytes(self, data: bytes, key: str, content_type: str) -> StorageResult:
        return await self._call(self._storage.upload_bytes, data, key, content_type)

    async def move(self, source_key: str, dest_key: str) -> StorageResult:
        return await self._call(self._storage.move, source_key, dest_key)

    async def delete(self, key: str) -> bool:
        return await self._call(self._storage.delete, key)

    async def delete_prefix(self, prefix: str) -> int:
        return await self._call(self._storage.delete_prefix, prefix)

    async def exists(self, key: str) -> bool:
        return await self._call(self._storage.exists, key)

    async def list_files(self, prefix: str) -> list[str]:
        return await self._call(self._storage.list_files, prefix)

    async def ping(self) -> bool:
        return await self._call(self._storage.ping)

    def get_url(self, key: str, expires_in: int = 3600) -> str:
        return self._storage.get_url(key, expires_in)
