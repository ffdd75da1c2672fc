"""Durable blob storage.

Two interchangeable backends with the same blocking interface:
``save(data, path, content_type)`` followed by ``make_public(path)``, which
returns the durable URL. Callers on the event loop wrap these in
``asyncio.to_thread``.
"""

from functools import lru_cache
from pathlib import Path
from typing import Protocol

from hologen.config import Settings, get_settings


class BlobStorage(Protocol):
    def save(self, data: bytes, path: str, content_type: str) -> None: ...

    def make_public(self, path: str) -> str: ...

    def delete_file(self, path: str) -> bool: ...


class LocalStorageService:
    """Local file storage for development without GCS."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.base_path = Path(self.settings.local_storage_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, storage_key: str) -> Path:
        full_path = (self.base_path / storage_key).resolve()
        if not full_path.is_relative_to(self.base_path.resolve()):
            raise ValueError(f"Storage key escapes storage root: {storage_key}")
        full_path.parent.mkdir(parents=True, exist_ok=True)
        return full_path

    def save(self, data: bytes, path: str, content_type: str) -> None:
        self._get_full_path(path).write_bytes(data)

    def make_public(self, path: str) -> str:
        """Local files are always public; return the serving URL."""
        return self.get_public_url(path)

    def get_public_url(self, storage_key: str) -> str:
        return f"{self.settings.public_base_url}/api/storage/files/{storage_key}"

    def delete_file(self, storage_key: str) -> bool:
        full_path = self._get_full_path(storage_key)
        if full_path.exists():
            full_path.unlink()
            return True
        return False

    def get_file_path(self, storage_key: str) -> Path:
        """Get the actual file path for serving."""
        return self._get_full_path(storage_key)


class GCSStorageService:
    """Google Cloud Storage service for production."""

    def __init__(self, settings: Settings | None = None) -> None:
        from google.cloud import storage

        self.settings = settings or get_settings()
        self._storage = storage
        self._client: storage.Client | None = None
        self._bucket: storage.Bucket | None = None

    @property
    def client(self):
        if self._client is None:
            if self.settings.gcs_project_id:
                self._client = self._storage.Client(project=self.settings.gcs_project_id)
            else:
                self._client = self._storage.Client()
        return self._client

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(self.settings.gcs_bucket_name)
        return self._bucket

    def save(self, data: bytes, path: str, content_type: str) -> None:
        blob = self.bucket.blob(path)
        blob.upload_from_string(data, content_type=content_type)

    def make_public(self, path: str) -> str:
        blob = self.bucket.blob(path)
        blob.make_public()
        return self.get_public_url(path)

    def get_public_url(self, storage_key: str) -> str:
        return f"https://storage.googleapis.com/{self.settings.gcs_bucket_name}/{storage_key}"

    def delete_file(self, storage_key: str) -> bool:
        blob = self.bucket.blob(storage_key)
        if blob.exists():
            blob.delete()
            return True
        return False


@lru_cache
def get_storage_service() -> LocalStorageService | GCSStorageService:
    settings = get_settings()
    if settings.use_local_storage:
        return LocalStorageService(settings)
    return GCSStorageService(settings)
