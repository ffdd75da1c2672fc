"""Media reference resolution.

Accepted references:
- ``data:<mime>;base64,...`` inline payloads (decoded in memory)
- ``http(s)://`` URLs (downloaded into memory)
- local filesystem paths or ``file://`` URLs (returned as-is)

Nothing here writes to durable storage. ``materialize`` writes bytes into a
caller-owned ``TempFileScope`` so the caller controls cleanup.
"""

import asyncio
import base64
import binascii
import logging
import mimetypes
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from hologen.config import Settings, get_settings
from hologen.exceptions import DownloadFailedError, InvalidMediaReferenceError
from hologen.utils.temp_files import TempFileScope

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/quicktime": ".mov",
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


class MediaLocation(str, Enum):
    INLINE = "inline"
    REMOTE_URL = "remote_url"
    LOCAL_TEMP_PATH = "local_temp_path"


@dataclass
class MediaAsset:
    """Bytes (or a pointer to them) plus the metadata needed between stages."""

    location: MediaLocation
    mime_type: str
    size_bytes: int | None = None
    data: bytes | None = None
    url: str | None = None
    path: Path | None = None
    source_url: str | None = None  # Remote origin, kept after download

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str, *, source_url: str | None = None) -> "MediaAsset":
        return cls(
            location=MediaLocation.INLINE,
            mime_type=mime_type,
            size_bytes=len(data),
            data=data,
            source_url=source_url,
        )

    @classmethod
    def from_url(cls, url: str, mime_type: str | None = None) -> "MediaAsset":
        """Reference a remote asset without downloading it."""
        return cls(
            location=MediaLocation.REMOTE_URL,
            mime_type=mime_type or guess_mime_type(name=urlparse(url).path),
            url=url,
            source_url=url,
        )

    @classmethod
    def from_path(cls, path: str | Path) -> "MediaAsset":
        path = Path(path)
        return cls(
            location=MediaLocation.LOCAL_TEMP_PATH,
            mime_type=guess_mime_type(name=path.name),
            size_bytes=path.stat().st_size if path.exists() else None,
            path=path,
        )

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def is_video(self) -> bool:
        return self.mime_type.startswith("video/")

    @property
    def extension(self) -> str:
        return extension_for(self.mime_type)

    @property
    def remote_url(self) -> str | None:
        """Best provider-hosted URL for this asset, if any."""
        return self.url or self.source_url

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.path is not None:
            return self.path.read_bytes()
        raise InvalidMediaReferenceError("Remote asset must be resolved before reading bytes")


def extension_for(mime_type: str) -> str:
    return _EXTENSIONS.get(mime_type) or mimetypes.guess_extension(mime_type) or ".bin"


def sniff_mime_type(data: bytes) -> str | None:
    """Identify common media containers from their magic bytes."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if data[4:8] == b"ftyp":
        return "video/quicktime" if data[8:10] == b"qt" else "video/mp4"
    if data.startswith(b"\x1a\x45\xdf\xa3"):
        return "video/webm"
    return None


def guess_mime_type(
    *,
    data: bytes | None = None,
    name: str | None = None,
    declared: str | None = None,
) -> str:
    if declared:
        declared = declared.split(";")[0].strip().lower()
        if declared and declared != "application/octet-stream":
            return declared
    if data:
        sniffed = sniff_mime_type(data)
        if sniffed:
            return sniffed
    if name:
        guessed, _ = mimetypes.guess_type(name)
        if guessed:
            return guessed
    return "application/octet-stream"


def decode_data_url(ref: str) -> MediaAsset:
    """Decode ``data:[<mime>][;base64],<payload>``."""
    header, sep, payload = ref.partition(",")
    if not sep:
        raise InvalidMediaReferenceError("Malformed data URL: missing ','")

    params = header[len("data:"):].split(";")
    declared = params[0] or None
    if "base64" in params[1:]:
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidMediaReferenceError(f"Malformed base64 in data URL: {e}") from e
    else:
        data = unquote(payload).encode()

    return MediaAsset.from_bytes(data, guess_mime_type(data=data, declared=declared))


class MediaFetcher:
    """Resolves media references into bytes with a known MIME type."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport

    async def resolve(self, ref: "str | MediaAsset") -> MediaAsset:
        if isinstance(ref, MediaAsset):
            if ref.location == MediaLocation.REMOTE_URL:
                return await self.download(ref.url)
            return ref

        ref = ref.strip()
        if ref.startswith("data:"):
            return decode_data_url(ref)
        if ref.startswith(("http://", "https://")):
            return await self.download(ref)

        path = Path(unquote(urlparse(ref).path)) if ref.startswith("file://") else Path(ref)
        if not path.is_file():
            raise InvalidMediaReferenceError(f"Unsupported media reference: {ref[:100]}")
        return MediaAsset.from_path(path)

    async def download(self, url: str) -> MediaAsset:
        """Download ``url`` into memory.

        Raises:
            DownloadFailedError: transport error, non-2xx status, or oversized body.
        """
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self.settings.download_timeout_seconds,
                follow_redirects=True,
            ) as client:
                response = await client.get(url)
        except httpx.TransportError as e:
            logger.error(f"Download failed for {url[:200]}: {e!r}")
            raise DownloadFailedError(f"Failed to download {url[:200]}: {e}") from e

        if not response.is_success:
            raise DownloadFailedError(f"Failed to download {url[:200]}: HTTP {response.status_code}")

        data = response.content
        if len(data) > self.settings.max_download_bytes:
            raise DownloadFailedError(
                f"Downloaded media exceeds {self.settings.max_download_bytes} bytes: {url[:200]}"
            )

        mime_type = guess_mime_type(
            data=data,
            name=urlparse(url).path,
            declared=response.headers.get("content-type"),
        )
        logger.debug(f"Downloaded {len(data)} bytes ({mime_type}) from {url[:200]}")
        return MediaAsset.from_bytes(data, mime_type, source_url=url)

    async def materialize(self, asset: MediaAsset, scope: TempFileScope, prefix: str = "input") -> Path:
        """Ensure ``asset`` exists as a local file, writing into ``scope`` if needed."""
        if asset.location == MediaLocation.LOCAL_TEMP_PATH and asset.path is not None:
            return asset.path

        if asset.location == MediaLocation.REMOTE_URL:
            asset = await self.download(asset.url)

        path = scope.new_path(prefix, asset.extension)
        await asyncio.to_thread(path.write_bytes, asset.read_bytes())
        return path
