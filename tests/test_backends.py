import asyncio
import sys
from pathlib import Path

import pytest

from pfm.backends import (
    BackendSelector,
    BackendUnavailableError,
    DirectBackend,
    LaunchBackend,
    LaunchHandle,
    LaunchPayload,
    ProbePolicy,
    TmuxBackend,
)


class ScriptedBackend(LaunchBackend):
    def __init__(self, name: str, probes: list[bool], *, supports_resume: bool = False) -> None:
        self.name = name
        self.supports_resume = supports_resume
        self.probes = list(probes)
        self.probe_calls = 0

    async def probe(self) -> bool:
        self.probe_calls += 1
        if not self.probes:
            return False
        return self.probes.pop(0)

    async def start(self, payload: LaunchPayload) -> LaunchHandle:
        return LaunchHandle(backend=self.name, session=payload.session_name)


class ExplodingBackend(ScriptedBackend):
    async def probe(self) -> bool:
        self.probe_calls += 1
        raise OSError("probe crashed")


def _payload(tmp_path: Path, prompt: str = "do the work") -> LaunchPayload:
    return LaunchPayload(
        role="test",
        work_id="FEAT-001",
        prompt=prompt,
        cwd=tmp_path,
        session_name="pfm-FEAT-001-test",
    )


def test_selector_prefers_first_available_backend() -> None:
    events: list[dict] = []
    tmux = ScriptedBackend("tmux", [True], supports_resume=True)
    direct = ScriptedBackend("direct", [True])
    selector = BackendSelector([tmux, direct], event_hook=events.append)

    chosen = asyncio.run(selector.select())

    assert chosen is tmux
    assert direct.probe_calls == 0
    assert events == [{"event": "backend_selected", "backend": "tmux"}]


def test_selector_retries_preferred_once_then_succeeds() -> None:
    events: list[dict] = []
    tmux = ScriptedBackend("tmux", [False, True], supports_resume=True)
    direct = ScriptedBackend("direct", [True])
    selector = BackendSelector(
        [tmux, direct],
        probe_policy=ProbePolicy(max_retries=1, backoff_seconds=0.0),
        event_hook=events.append,
    )

    chosen = asyncio.run(selector.select())

    assert chosen is tmux
    assert tmux.probe_calls == 2
    names = [event["event"] for event in events]
    assert names == ["backend_probe_failed", "backend_probe_retry", "backend_selected"]


def test_selector_falls_back_after_retry_exhausted() -> None:
    events: list[dict] = []
    tmux = ExplodingBackend("tmux", [], supports_resume=True)
    direct = ScriptedBackend("direct", [True])
    selector = BackendSelector(
        [tmux, direct],
        probe_policy=ProbePolicy(max_retries=1, backoff_seconds=0.0),
        event_hook=events.append,
    )

    chosen = asyncio.run(selector.select())

    assert chosen is direct
    assert tmux.probe_calls == 2
    assert events[0]["error"] == "probe crashed"
    assert events[-1] == {"event": "backend_fallback_selected", "backend": "direct"}


def test_selector_raises_when_nothing_is_usable() -> None:
    selector = BackendSelector(
        [ScriptedBackend("tmux", []), ScriptedBackend("direct", [])],
        probe_policy=ProbePolicy(max_retries=0, backoff_seconds=0.0),
    )

    with pytest.raises(BackendUnavailableError, match="tmux, direct"):
        asyncio.run(selector.select())


def test_selector_can_require_resume_support() -> None:
    direct = ScriptedBackend("direct", [True])
    selector = BackendSelector([direct], probe_policy=ProbePolicy(max_retries=0))

    with pytest.raises(BackendUnavailableError, match="none"):
        asyncio.run(selector.select(require_resume=True))
    assert direct.probe_calls == 0


def test_tmux_command_shapes(tmp_path: Path) -> None:
    backend = TmuxBackend(agent_binary="claude")
    command = backend.build_new_session_command(_payload(tmp_path, "read state.json"))

    assert command[:6] == ["tmux", "new-session", "-d", "-s", "pfm-FEAT-001-test", "-c"]
    assert command[6] == str(tmp_path)
    assert command[7] == "claude 'read state.json'"
    assert backend.build_send_keys_command("pfm-FEAT-001-test", "resume") == [
        "tmux",
        "send-keys",
        "-t",
        "pfm-FEAT-001-test",
        "resume",
        "Enter",
    ]


def test_direct_backend_blocks_until_agent_exits(tmp_path: Path) -> None:
    script = tmp_path / "agent.py"
    script.write_text(
        "from pathlib import Path\nPath('ran.txt').write_text('yes')\nraise SystemExit(3)\n",
        encoding="utf-8",
    )
    backend = DirectBackend(agent_binary=sys.executable)

    handle = asyncio.run(backend.start(_payload(tmp_path, str(script))))

    assert handle.blocking is True
    assert handle.exit_code == 3
    assert (tmp_path / "ran.txt").read_text(encoding="utf-8") == "yes"
    assert backend.supports_resume is False


def test_direct_probe_detects_missing_binary() -> None:
    assert asyncio.run(DirectBackend(agent_binary="pfm-no-such-agent-binary").probe()) is False
    assert asyncio.run(DirectBackend(agent_binary=sys.executable).probe()) is True
