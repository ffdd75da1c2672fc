"""Async subprocess execution for FFmpeg and FFprobe.

Every external-tool invocation goes through a ``ProcessRunner`` so tests
can substitute a fake without touching the command builders.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from hologen.exceptions import GenerationTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessRunner(Protocol):
    async def __call__(self, cmd: list[str], *, timeout: float | None = None) -> ProcessResult: ...


async def run_process(cmd: list[str], *, timeout: float | None = None) -> ProcessResult:
    """Run ``cmd`` and capture its output.

    The child never outlives the call: on timeout or cancellation it is
    killed and reaped before the exception propagates.

    Raises:
        GenerationTimeoutError: the process outlived ``timeout``.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(process)
        logger.error(f"{cmd[0]} killed after {timeout:.0f}s")
        raise GenerationTimeoutError(f"{cmd[0]} exceeded {timeout:.0f}s")
    except asyncio.CancelledError:
        await _kill(process)
        logger.warning(f"{cmd[0]} cancelled, process {process.pid} killed")
        raise

    return ProcessResult(
        returncode=process.returncode,
        stdout=stdout.decode("utf-8", errors="ignore"),
        stderr=stderr.decode("utf-8", errors="ignore"),
    )


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    # Shielded so a second cancel cannot leave the child unreaped
    await asyncio.shield(process.wait())
