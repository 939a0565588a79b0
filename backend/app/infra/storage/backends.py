import asyncio
import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import boto3
from botocore.client import Config
from botocore.exceptions import ClientError

from app.settings import settings
from app.shared.circuit_breaker import CircuitBreaker


class ObjectNotFoundError(LookupError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Object not found: {key}")


@dataclass
class StoredObject:
    key: str
    size: int
    content_type: str


class StorageBackend(ABC):
    """Object storage for deliverable renditions.

    Keys are opaque to callers. Access from the outside world only happens
    through short-lived signed URLs minted per request.
    """

    @abstractmethod
    async def put(self, *, key: str, data: bytes, content_type: str) -> StoredObject:
        """Persist an object and return its metadata."""

    @abstractmethod
    async def read(self, *, key: str) -> bytes:
        """Return the object payload; raises ObjectNotFoundError."""

    @abstractmethod
    async def delete(self, *, key: str) -> None:
        """Delete an object if it exists."""

    @abstractmethod
    async def generate_signed_get_url(
        self,
        *,
        key: str,
        expires_in: int,
        resource_url: str | None = None,
        filename: str | None = None,
    ) -> str:
        """Generate a signed URL to fetch an object."""

    def validate_signature(self, *, key: str, expires_at: int, signature: str) -> bool:
        return False

    def supports_direct_io(self) -> bool:
        """Whether objects are served by this application via ``/v1/files``."""
        return False


class _HmacSignedUrls:
    signing_secret: str

    def _sign(self, key: str, expires_at: int) -> str:
        payload = f"{key}:{expires_at}".encode()
        return hmac.new(self.signing_secret.encode(), payload, hashlib.sha256).hexdigest()

    def _signed_url(self, *, key: str, expires_in: int, resource_url: str | None) -> str:
        if not resource_url:
            raise ValueError("resource_url required for locally served signed URLs")
        expires_at = int(time.time()) + expires_in
        separator = "&" if "?" in resource_url else "?"
        return f"{resource_url}{separator}exp={expires_at}&sig={self._sign(key, expires_at)}"

    def validate_signature(self, *, key: str, expires_at: int, signature: str) -> bool:
        if expires_at < int(time.time()):
            return False
        return hmac.compare_digest(self._sign(key, expires_at), signature)

    def supports_direct_io(self) -> bool:
        return True


class LocalStorageBackend(_HmacSignedUrls, StorageBackend):
    def __init__(self, root: Path, signing_secret: str | None = None) -> None:
        self.root = root
        self.signing_secret = signing_secret or "local-storage-secret"

    def _resolve(self, key: str, *, create_parents: bool) -> Path:
        root_resolved = self.root.resolve()
        path = (self.root / key.lstrip("/")).resolve()
        if not path.is_relative_to(root_resolved):
            raise ValueError("Invalid storage key")
        if create_parents:
            path.parent.mkdir(parents=True, exist_ok=True)
        return path

    async def put(self, *, key: str, data: bytes, content_type: str) -> StoredObject:
        path = self._resolve(key, create_parents=True)
        await asyncio.to_thread(path.write_bytes, data)
        return StoredObject(key=key, size=len(data), content_type=content_type)

    async def read(self, *, key: str) -> bytes:
        path = self._resolve(key, create_parents=False)
        if not path.is_file():
            raise ObjectNotFoundError(key)
        return await asyncio.to_thread(path.read_bytes)

    async def delete(self, *, key: str) -> None:
        path = self._resolve(key, create_parents=False)
        path.unlink(missing_ok=True)

    async def generate_signed_get_url(
        self,
        *,
        key: str,
        expires_in: int,
        resource_url: str | None = None,
        filename: str | None = None,
    ) -> str:
        return self._signed_url(key=key, expires_in=expires_in, resource_url=resource_url)


class S3StorageBackend(StorageBackend):
    def __init__(
        self,
        *,
        bucket: str,
        access_key: str,
        secret_key: str,
        region: str | None = None,
        endpoint: str | None = None,
        connect_timeout: float = 3.0,
        read_timeout: float = 10.0,
        max_attempts: int = 4,
        enable_circuit_breaker: bool = True,
        client: Any | None = None,
    ) -> None:
        if client:
            self.client = client
        else:
            session = boto3.session.Session()
            self.client = session.client(
                "s3",
                endpoint_url=endpoint,
                region_name=region,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                config=Config(
                    signature_version="s3v4",
                    connect_timeout=connect_timeout,
                    read_timeout=read_timeout,
                    retries={"mode": "standard", "max_attempts": max(1, max_attempts)},
                ),
            )
        self.bucket = bucket
        self._breaker: CircuitBreaker | None = None
        if enable_circuit_breaker:
            self._breaker = CircuitBreaker(
                name="s3",
                failure_threshold=settings.s3_circuit_failure_threshold,
                recovery_time=settings.s3_circuit_recovery_seconds,
                window_seconds=settings.s3_circuit_window_seconds,
            )

    async def put(self, *, key: str, data: bytes, content_type: str) -> StoredObject:
        def _upload() -> None:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)

        await self._run_with_circuit(lambda: asyncio.to_thread(_upload))
        return StoredObject(key=key, size=len(data), content_type=content_type)

    async def read(self, *, key: str) -> bytes:
        def _download() -> bytes:
            try:
                response = self.client.get_object(Bucket=self.bucket, Key=key)
            except ClientError as exc:
                if exc.response.get("Error", {}).get("Code") in {"NoSuchKey", "404"}:
                    raise ObjectNotFoundError(key) from exc
                raise
            return response["Body"].read()

        return await self._run_with_circuit(lambda: asyncio.to_thread(_download))

    async def delete(self, *, key: str) -> None:
        def _delete() -> None:
            self.client.delete_object(Bucket=self.bucket, Key=key)

        await self._run_with_circuit(lambda: asyncio.to_thread(_delete))

    async def generate_signed_get_url(
        self,
        *,
        key: str,
        expires_in: int,
        resource_url: str | None = None,
        filename: str | None = None,
    ) -> str:
        params: dict[str, str] = {"Bucket": self.bucket, "Key": key}
        if filename:
            params["ResponseContentDisposition"] = f'attachment; filename="{filename}"'
        params["ResponseCacheControl"] = "no-store"

        def _sign() -> str:
            return self.client.generate_presigned_url("get_object", Params=params, ExpiresIn=expires_in)

        return await self._run_with_circuit(lambda: asyncio.to_thread(_sign))

    async def _run_with_circuit(self, fn):
        if self._breaker is None:
            return await fn()
        return await self._breaker.call(fn)


class InMemoryStorageBackend(_HmacSignedUrls, StorageBackend):
    def __init__(self, signing_secret: str | None = None) -> None:
        self.signing_secret = signing_secret or "memory-storage-secret"
        self._objects: dict[str, tuple[bytes, str]] = {}

    async def put(self, *, key: str, data: bytes, content_type: str) -> StoredObject:
        self._objects[key] = (bytes(data), content_type)
        return StoredObject(key=key, size=len(data), content_type=content_type)

    async def read(self, *, key: str) -> bytes:
        try:
            payload, _ = self._objects[key]
        except KeyError as exc:
            raise ObjectNotFoundError(key) from exc
        return payload

    async def delete(self, *, key: str) -> None:
        self._objects.pop(key, None)

    async def generate_signed_get_url(
        self,
        *,
        key: str,
        expires_in: int,
        resource_url: str | None = None,
        filename: str | None = None,
    ) -> str:
        return self._signed_url(
            key=key,
            expires_in=expires_in,
            resource_url=resource_url or f"https://storage.invalid/{key}",
        )
