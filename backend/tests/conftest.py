"""
Pytest fixtures for Hologen backend tests.

External collaborators are faked:
- the generation provider through ``httpx.MockTransport``
- FFmpeg through an injected process runner
- the clock and sleep of the poll loop

CI/CD Note:
Tests that need a real ``ffmpeg`` binary are marked with @pytest.mark.requires_ffmpeg
and skipped when it is not on PATH.
"""

import shutil
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hologen.config import Settings
from hologen.models.database import create_engine_for, create_tables
from hologen.utils.process import ProcessResult


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring ffmpeg/ffprobe binaries (skipped when missing)"
    )


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


requires_ffmpeg = pytest.mark.skipif(
    not _ffmpeg_available(),
    reason="ffmpeg/ffprobe not installed"
)

requires_sh = pytest.mark.skipif(
    shutil.which("sh") is None,
    reason="POSIX shell not available"
)


# =============================================================================
# Fakes
# =============================================================================


class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRunner:
    """Records commands and writes a stub file at the output path (last argument)."""

    def __init__(self, returncode: int = 0, stderr: str = "", output: bytes = b"\x00\x00\x00\x18ftypmp42fake"):
        self.returncode = returncode
        self.stderr = stderr
        self.output = output
        self.calls: list[list[str]] = []
        self.timeouts: list[float | None] = []

    async def __call__(self, cmd: list[str], *, timeout: float | None = None) -> ProcessResult:
        self.calls.append(list(cmd))
        self.timeouts.append(timeout)
        if self.returncode == 0:
            Path(cmd[-1]).write_bytes(self.output)
        return ProcessResult(returncode=self.returncode, stdout="", stderr=self.stderr)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Isolated settings: everything on disk lives under ``tmp_path``."""
    return Settings(
        _env_file=None,
        higgsfield_api_base="https://provider.test",
        higgsfield_api_key="test-key",
        higgsfield_api_secret="test-secret",
        temp_dir=str(tmp_path / "tmp"),
        local_storage_path=str(tmp_path / "storage"),
        render_bundle_root=str(tmp_path / "bundles"),
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        public_base_url="http://testserver",
    )


@pytest.fixture
def temp_dir(settings: Settings) -> Path:
    path = Path(settings.temp_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest_asyncio.fixture
async def session_maker(settings: Settings):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_engine_for(settings.database_url)
    await create_tables(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


# Minimal valid PNG (1x1, black)
PNG_1X1 = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360606060000000050001a5f645400000000049454e44ae426082"
)
