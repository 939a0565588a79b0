from pathlib import Path
from typing import Any

from app.infra.storage.backends import (
    InMemoryStorageBackend,
    LocalStorageBackend,
    ObjectNotFoundError,
    S3StorageBackend,
    StorageBackend,
    StoredObject,
)
from app.settings import settings

__all__ = [
    "InMemoryStorageBackend",
    "LocalStorageBackend",
    "ObjectNotFoundError",
    "S3StorageBackend",
    "StorageBackend",
    "StoredObject",
    "new_storage_backend",
    "resolve_storage_backend",
]


def new_storage_backend(app_settings=None) -> StorageBackend:
    app_settings = app_settings or settings
    backend = app_settings.storage_backend.lower()
    signing_secret = app_settings.storage_signing_secret or app_settings.auth_secret_key
    if backend == "local":
        return LocalStorageBackend(Path(app_settings.storage_local_root), signing_secret=signing_secret)
    if backend == "s3":
        if not app_settings.s3_bucket:
            raise RuntimeError("S3_BUCKET is required when STORAGE_BACKEND=s3")
        if not app_settings.s3_access_key or not app_settings.s3_secret_key:
            raise RuntimeError("S3_ACCESS_KEY and S3_SECRET_KEY are required for S3 storage")
        return S3StorageBackend(
            bucket=app_settings.s3_bucket,
            access_key=app_settings.s3_access_key,
            secret_key=app_settings.s3_secret_key,
            region=app_settings.s3_region,
            endpoint=app_settings.s3_endpoint,
            connect_timeout=app_settings.s3_connect_timeout_seconds,
            read_timeout=app_settings.s3_read_timeout_seconds,
            max_attempts=app_settings.s3_max_attempts,
        )
    if backend == "memory":
        return InMemoryStorageBackend(signing_secret=signing_secret)
    raise RuntimeError(f"Unsupported storage backend: {backend}")


def resolve_storage_backend(state: Any) -> StorageBackend:
    """Storage for the current app: ``services.storage``, then
    ``state.storage_backend``, then a new backend cached on the state."""
    container_state = getattr(state, "state", state)
    services = getattr(container_state, "services", None)
    backend = getattr(services, "storage", None) or getattr(container_state, "storage_backend", None)
    if backend is None:
        backend = new_storage_backend(getattr(container_state, "app_settings", None))
        container_state.storage_backend = backend
    return backend
