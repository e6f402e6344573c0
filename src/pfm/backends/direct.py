from __future__ import annotations

import asyncio

from pfm.backends.base import (
    BackendProcessError,
    LaunchBackend,
    LaunchHandle,
    LaunchPayload,
    command_available,
)


class DirectBackend(LaunchBackend):
    """Runs the agent in the foreground and returns once it exits."""

    name = "direct"
    supports_resume = False

    def __init__(self, agent_binary: str = "claude") -> None:
        self.agent_binary = agent_binary

    def build_command(self, prompt: str) -> list[str]:
        return [self.agent_binary, prompt]

    async def probe(self) -> bool:
        return await command_available(self.agent_binary)

    async def start(self, payload: LaunchPayload) -> LaunchHandle:
        try:
            # Inherit the terminal so the operator can converse with the agent.
            process = await asyncio.create_subprocess_exec(
                *self.build_command(payload.prompt),
                cwd=str(payload.cwd),
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Agent binary not found: {self.agent_binary}", backend=self.name
            ) from exc

        try:
            exit_code = await process.wait()
        except asyncio.CancelledError:
            process.terminate()
            await process.wait()
            raise
        return LaunchHandle(backend=self.name, exit_code=exit_code)
