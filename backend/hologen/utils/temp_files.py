import logging
import shutil
from pathlib import Path
from uuid import uuid4

logger = logging.getLogger(__name__)


class TempFileScope:
    """Tracks every temp file and directory created for one operation.

    Used as a context manager; everything tracked is deleted on exit, whether
    the block returned normally or raised.
    """

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.paths: list[Path] = []

    def new_path(self, prefix: str, suffix: str = "", directory: Path | None = None) -> Path:
        """Reserve a unique path ``{prefix}_{hex}{suffix}``.

        Paths inside a tracked ``directory`` go away with that directory and
        are not tracked individually.
        """
        path = (directory or self.base_dir) / f"{prefix}_{uuid4().hex}{suffix}"
        if directory is None:
            self.track(path)
        return path

    def new_dir(self, prefix: str) -> Path:
        path = self.new_path(prefix)
        path.mkdir(parents=True)
        return path

    def track(self, path: Path) -> Path:
        self.paths.append(path)
        return path

    def cleanup(self) -> None:
        for path in reversed(self.paths):
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove temp path {path}: {e}")
        self.paths.clear()

    def __enter__(self) -> "TempFileScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()
