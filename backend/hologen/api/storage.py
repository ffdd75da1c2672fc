"""Local storage API endpoints for development."""

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import FileResponse

from hologen.config import get_settings
from hologen.services.storage_service import LocalStorageService, get_storage_service

router = APIRouter()

MEDIA_TYPES = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


@router.get("/files/{storage_key:path}")
async def get_file(storage_key: str):
    """Serve files from local storage."""
    storage_service = get_storage_service()
    if not get_settings().use_local_storage or not isinstance(storage_service, LocalStorageService):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Local storage not enabled",
        )

    try:
        file_path = storage_service.get_file_path(storage_key)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid storage key",
        )
    if not file_path.is_file():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )

    return FileResponse(
        path=str(file_path),
        media_type=MEDIA_TYPES.get(file_path.suffix.lower(), "application/octet-stream"),
        filename=file_path.name,
    )
