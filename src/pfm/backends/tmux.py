from __future__ import annotations

import asyncio
import shlex

from pfm.backends.base import (
    BackendProcessError,
    LaunchBackend,
    LaunchHandle,
    LaunchPayload,
    command_available,
)


class TmuxBackend(LaunchBackend):
    """Runs each agent in a detached tmux session that can later be nudged."""

    name = "tmux"
    supports_resume = True

    def __init__(self, agent_binary: str = "claude", tmux_binary: str = "tmux") -> None:
        self.agent_binary = agent_binary
        self.tmux_binary = tmux_binary

    def build_agent_command(self, prompt: str) -> str:
        return shlex.join([self.agent_binary, prompt])

    def build_new_session_command(self, payload: LaunchPayload) -> list[str]:
        return [
            self.tmux_binary,
            "new-session",
            "-d",
            "-s",
            payload.session_name,
            "-c",
            str(payload.cwd),
            self.build_agent_command(payload.prompt),
        ]

    def build_send_keys_command(self, session: str, message: str) -> list[str]:
        return [self.tmux_binary, "send-keys", "-t", session, message, "Enter"]

    async def _run(self, command: list[str]) -> tuple[int, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"tmux binary not found: {self.tmux_binary}", backend=self.name
            ) from exc
        output, _ = await process.communicate()
        return process.returncode or 0, output.decode("utf-8", errors="replace").strip()

    async def probe(self) -> bool:
        if not await command_available(self.tmux_binary):
            return False
        return await command_available(self.agent_binary)

    async def session_exists(self, session: str) -> bool:
        try:
            code, _ = await self._run([self.tmux_binary, "has-session", "-t", session])
        except BackendProcessError:
            return False
        return code == 0

    async def start(self, payload: LaunchPayload) -> LaunchHandle:
        # A same-named session can only be a leftover from an earlier run of this role.
        if await self.session_exists(payload.session_name):
            await self._run([self.tmux_binary, "kill-session", "-t", payload.session_name])

        code, output = await self._run(self.build_new_session_command(payload))
        if code != 0:
            raise BackendProcessError(
                f"tmux new-session failed with exit code {code}: {output}",
                backend=self.name,
                exit_code=code,
            )
        return LaunchHandle(backend=self.name, session=payload.session_name)

    async def resume(self, session: str, message: str) -> bool:
        code, _ = await self._run(self.build_send_keys_command(session, message))
        return code == 0
