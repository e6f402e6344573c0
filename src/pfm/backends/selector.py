from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from pfm.backends.base import BackendUnavailableError, LaunchBackend

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class ProbePolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5


class BackendSelector:
    """Picks the first launch backend, in preference order, whose probe passes."""

    def __init__(
        self,
        backends: Sequence[LaunchBackend],
        probe_policy: ProbePolicy | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        if not backends:
            raise ValueError("BackendSelector needs at least one backend.")
        self.backends = list(backends)
        self.probe_policy = probe_policy or ProbePolicy()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _probe(self, backend: LaunchBackend, *, retries: int) -> bool:
        for attempt in range(retries + 1):
            if attempt > 0:
                delay = self.probe_policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "backend_probe_retry",
                        "backend": backend.name,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await asyncio.sleep(delay)
            try:
                available = await backend.probe()
            except Exception as exc:
                self._emit(
                    {
                        "event": "backend_probe_failed",
                        "backend": backend.name,
                        "attempt": attempt,
                        "error": str(exc),
                    }
                )
                continue
            if available:
                return True
            self._emit(
                {"event": "backend_probe_failed", "backend": backend.name, "attempt": attempt}
            )
        return False

    async def select(self, *, require_resume: bool = False) -> LaunchBackend:
        candidates = [
            backend for backend in self.backends if backend.supports_resume or not require_resume
        ]
        preferred = candidates[0] if candidates else None
        for backend in candidates:
            # Only the preferred backend is re-probed before falling back.
            retries = self.probe_policy.max_retries if backend is preferred else 0
            if await self._probe(backend, retries=retries):
                event = "backend_selected" if backend is preferred else "backend_fallback_selected"
                self._emit({"event": event, "backend": backend.name})
                return backend

        names = ", ".join(backend.name for backend in candidates) or "none"
        raise BackendUnavailableError(f"No launch backend is available (tried: {names}).")
