from __future__ import annotations

import asyncio
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


class BackendError(RuntimeError):
    """Raised when an agent launch backend fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code


class BackendUnavailableError(BackendError):
    """Raised when no launch backend passes its availability probe."""


class BackendProcessError(BackendError):
    """Raised when a backend process could not be started."""


@dataclass(frozen=True, slots=True)
class LaunchPayload:
    role: str
    work_id: str
    prompt: str
    cwd: Path
    session_name: str


@dataclass(frozen=True, slots=True)
class LaunchHandle:
    backend: str
    session: str | None = None
    exit_code: int | None = None

    @property
    def blocking(self) -> bool:
        """True when the agent already ran to exit inside ``start``."""
        return self.session is None


async def command_available(executable: str) -> bool:
    if not executable.strip():
        return False
    try:
        process = await asyncio.create_subprocess_exec(
            "sh",
            "-c",
            f"command -v {shlex.quote(executable)} >/dev/null 2>&1",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except FileNotFoundError:
        return False
    return await process.wait() == 0


class LaunchBackend(ABC):
    name: str = "backend"
    supports_resume: bool = False

    @abstractmethod
    async def probe(self) -> bool:
        """Report whether the backend can launch agents right now."""

    @abstractmethod
    async def start(self, payload: LaunchPayload) -> LaunchHandle:
        """Launch an agent with the rendered bootstrap payload."""

    async def resume(self, session: str, message: str) -> bool:
        """Send a resume message into a live session."""
        _ = session, message
        return False

    async def session_exists(self, session: str) -> bool:
        _ = session
        return False
