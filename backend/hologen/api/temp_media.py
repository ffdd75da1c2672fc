"""Short-lived media endpoint for the headless browser.

Large local files are handed to the browser by URL rather than inlined as
data blobs. Only names matching ``ALLOWED_MEDIA_PATTERNS`` are served, and
only from the directory the router was created for.
"""

import re
from pathlib import Path

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import FileResponse

ALLOWED_MEDIA_PATTERNS = [
    re.compile(r"^render_input_[0-9a-f]{32}\.mp4$"),
    re.compile(r"^text_video_[0-9a-f]{32}\.mp4$"),
    re.compile(r"^bg_[0-9a-f]{32}\.(png|jpg|jpeg|webp)$"),
    re.compile(r"^ref_[0-9a-f]{32}\.(png|jpg|jpeg|webp)$"),
]

MEDIA_TYPES = {
    ".mp4": "video/mp4",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}


def is_allowed_media_name(name: str) -> bool:
    return any(pattern.match(name) for pattern in ALLOWED_MEDIA_PATTERNS)


def create_temp_media_router(media_dir: Path) -> APIRouter:
    router = APIRouter()

    @router.get("/temp-media/{name}")
    async def get_temp_media(name: str):
        """Serve one allow-listed file from ``media_dir``."""
        if not is_allowed_media_name(name):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="File name not allowed",
            )

        file_path = media_dir / name
        if not file_path.is_file():
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="File not found",
            )

        return FileResponse(
            path=str(file_path),
            media_type=MEDIA_TYPES.get(file_path.suffix.lower(), "application/octet-stream"),
            headers={"Cache-Control": "no-cache"},
        )

    return router
