"""Exactly-once persistence of finished pipeline outputs.

The artifact id is derived from (owner_id, source_location_key), so a repeated
or concurrent request for the same logical output always maps to the same row
and the same storage path. The row is written with an insert-if-absent; the
database unique key decides any race, never a read-then-write.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hologen.config import Settings, get_settings
from hologen.exceptions import ArtifactUploadError, DownloadFailedError
from hologen.models.artifact import Artifact
from hologen.services.media_fetcher import MediaAsset, MediaFetcher, MediaLocation
from hologen.services.storage_service import BlobStorage

logger = logging.getLogger(__name__)

# Metadata keys stored in their own columns; anything else goes to ``extra``
_METADATA_COLUMNS = ("title", "mode", "category", "style", "order_id", "duration_seconds")


def derive_artifact_id(
    owner_id: str,
    source_location_key: str,
    *,
    prefix: str = "vid_",
    length: int = 20,
) -> str:
    digest = hashlib.sha256(f"{owner_id}_{source_location_key}".encode("utf-8")).hexdigest()
    return f"{prefix}{digest[:length]}"


@dataclass
class PersistedArtifact:
    id: str
    owner_id: str
    source_location_key: str
    durable_url: str
    created_at: datetime
    is_duplicate: bool = False
    degraded: bool = False  # Durable upload failed; durable_url is the provider URL
    provider_url: str | None = None
    storage_path: str | None = None

    @classmethod
    def from_row(cls, row: Artifact, *, is_duplicate: bool) -> "PersistedArtifact":
        return cls(
            id=row.id,
            owner_id=row.owner_id,
            source_location_key=row.source_location_key,
            durable_url=row.durable_url,
            created_at=row.created_at or datetime.now(timezone.utc),
            is_duplicate=is_duplicate,
            degraded=row.degraded,
            provider_url=row.provider_url,
            storage_path=row.storage_path,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "source_location_key": self.source_location_key,
            "durable_url": self.durable_url,
            "created_at": self.created_at.isoformat(),
            "is_duplicate": self.is_duplicate,
            "degraded": self.degraded,
            "provider_url": self.provider_url,
        }


class PersistenceGateway:
    """Uploads a finished asset and records it once per (owner, source key)."""

    def __init__(
        self,
        storage: BlobStorage,
        session_maker: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        *,
        fetcher: MediaFetcher | None = None,
    ):
        self.storage = storage
        self.session_maker = session_maker
        self.settings = settings or get_settings()
        self.fetcher = fetcher or MediaFetcher(self.settings)

    def artifact_id(self, owner_id: str, source_location_key: str) -> str:
        return derive_artifact_id(
            owner_id,
            source_location_key,
            prefix=self.settings.artifact_id_prefix,
            length=self.settings.artifact_id_length,
        )

    def storage_path(self, owner_id: str, artifact_id: str, asset: MediaAsset) -> str:
        folder = self.settings.video_folder if asset.is_video else self.settings.image_folder
        return f"{folder}/{owner_id}/{artifact_id}{asset.extension}"

    async def get(self, artifact_id: str) -> Artifact | None:
        async with self.session_maker() as session:
            return await session.get(Artifact, artifact_id)

    async def persist(
        self,
        owner_id: str,
        source_location_key: str,
        asset: MediaAsset,
        metadata: dict[str, Any] | None = None,
        fallback_url: str | None = None,
    ) -> PersistedArtifact:
        """Upload ``asset`` and record it, or return the existing record.

        A failed upload degrades to ``fallback_url`` (or the asset's own
        provider URL) instead of failing.

        Raises:
            ArtifactUploadError: the upload failed and there is no URL to fall back to.
        """
        artifact_id = self.artifact_id(owner_id, source_location_key)

        existing = await self.get(artifact_id)
        if existing is not None:
            logger.info(f"Artifact {artifact_id} already persisted; returning existing record")
            return PersistedArtifact.from_row(existing, is_duplicate=True)

        provider_url = fallback_url or asset.remote_url
        path = self.storage_path(owner_id, artifact_id, asset)
        degraded = False
        try:
            durable_url, asset = await self._upload(asset, path)
        except ArtifactUploadError:
            if not provider_url:
                raise
            logger.warning(f"Durable upload failed for {artifact_id}; falling back to provider URL")
            durable_url = provider_url
            path = None
            degraded = True

        values = self._row_values(
            artifact_id, owner_id, source_location_key, asset, metadata,
            durable_url=durable_url,
            provider_url=provider_url,
            storage_path=path,
            degraded=degraded,
        )
        inserted = await self._insert_if_absent(values)

        row = await self.get(artifact_id)
        if row is None:
            raise ArtifactUploadError(f"Artifact {artifact_id} vanished after insert")

        if not inserted:
            logger.info(f"Artifact {artifact_id} persisted concurrently by another request")
            if path is not None and row.storage_path != path:
                await self._discard_upload(artifact_id, path)
        else:
            logger.info(f"Persisted artifact {artifact_id} -> {row.durable_url}")
        return PersistedArtifact.from_row(row, is_duplicate=not inserted)

    async def _upload(self, asset: MediaAsset, path: str) -> tuple[str, MediaAsset]:
        try:
            if asset.location == MediaLocation.REMOTE_URL:
                asset = await self.fetcher.resolve(asset)
            data = await asyncio.to_thread(asset.read_bytes)
            await asyncio.to_thread(self.storage.save, data, path, asset.mime_type)
            durable_url = await asyncio.to_thread(self.storage.make_public, path)
        except DownloadFailedError as e:
            raise ArtifactUploadError(f"Could not fetch asset for upload: {e.message}") from e
        except Exception as e:
            logger.warning(f"Storage upload to {path} failed: {e}")
            raise ArtifactUploadError(f"Storage upload failed: {e}") from e
        return durable_url, asset

    async def _discard_upload(self, artifact_id: str, path: str) -> None:
        """Remove a blob that lost the insert race to a row not pointing at it."""
        try:
            await asyncio.to_thread(self.storage.delete_file, path)
        except Exception as e:
            logger.warning(f"Could not remove orphaned upload {path} for {artifact_id}: {e}")
            return
        logger.info(f"Removed orphaned upload {path}; {artifact_id} was recorded without it")

    def _row_values(
        self,
        artifact_id: str,
        owner_id: str,
        source_location_key: str,
        asset: MediaAsset,
        metadata: dict[str, Any] | None,
        **fields: Any,
    ) -> dict[str, Any]:
        metadata = dict(metadata or {})
        values = {
            "id": artifact_id,
            "owner_id": owner_id,
            "source_location_key": source_location_key,
            "media_kind": "video" if asset.is_video else "image",
            "mime_type": asset.mime_type,
            "size_bytes": asset.size_bytes,
            **fields,
        }
        for column in _METADATA_COLUMNS:
            if column in metadata:
                values[column] = metadata.pop(column)
        values["extra"] = metadata or None
        return values

    async def _insert_if_absent(self, values: dict[str, Any]) -> bool:
        """Insert unless the id or (owner, source key) exists. True when this call wrote the row."""
        async with self.session_maker() as session:
            dialect = session.bind.dialect.name
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert(Artifact).values(**values).on_conflict_do_nothing()
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

