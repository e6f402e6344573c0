import asyncio
from pathlib import Path

import pytest

from pfm.backends import (
    BackendProcessError,
    BackendSelector,
    BackendUnavailableError,
    LaunchBackend,
    LaunchHandle,
    LaunchPayload,
    ProbePolicy,
)
from pfm.gates import GateStatus
from pfm.launcher import AgentLauncher
from pfm.state import RunLog, StateStore, WorkItem


class RecordingBackend(LaunchBackend):
    def __init__(
        self,
        name: str = "tmux",
        *,
        supports_resume: bool = True,
        fail_start: bool = False,
        live_sessions: set[str] | None = None,
    ) -> None:
        self.name = name
        self.supports_resume = supports_resume
        self.fail_start = fail_start
        self.live_sessions = live_sessions if live_sessions is not None else set()
        self.payloads: list[LaunchPayload] = []
        self.resumed: list[tuple[str, str]] = []

    async def probe(self) -> bool:
        return True

    async def start(self, payload: LaunchPayload) -> LaunchHandle:
        if self.fail_start:
            raise BackendProcessError("launch exploded", backend=self.name)
        self.payloads.append(payload)
        if self.supports_resume:
            self.live_sessions.add(payload.session_name)
            return LaunchHandle(backend=self.name, session=payload.session_name)
        return LaunchHandle(backend=self.name, exit_code=0)

    async def session_exists(self, session: str) -> bool:
        return session in self.live_sessions

    async def resume(self, session: str, message: str) -> bool:
        self.resumed.append((session, message))
        return True


class UnavailableBackend(LaunchBackend):
    name = "tmux"

    async def probe(self) -> bool:
        return False

    async def start(self, payload: LaunchPayload) -> LaunchHandle:
        raise AssertionError("never launched")


def _launcher(tmp_path: Path, *backends: LaunchBackend) -> tuple[AgentLauncher, StateStore]:
    store = StateStore(tmp_path)
    store.create(WorkItem.new("FEAT-001", "Login page"))
    selector = BackendSelector(list(backends), probe_policy=ProbePolicy(max_retries=0))
    return AgentLauncher(store, selector), store


def test_start_marks_gate_in_progress_and_audits(tmp_path: Path) -> None:
    backend = RecordingBackend()
    launcher, store = _launcher(tmp_path, backend)

    result = asyncio.run(launcher.start("prd", "FEAT-001"))
    item = store.load("FEAT-001")

    assert result.status == "started"
    assert result.session == "pfm-FEAT-001-prd"
    assert result.blocking is False
    assert item.gates["prd"] is GateStatus.IN_PROGRESS
    assert item.owner == "prd"
    assert item.started["prd"] == result.started_at
    assert item.workspace.session == "pfm-FEAT-001-prd"
    assert "## Agent Start" in RunLog(store.runlog_path("FEAT-001")).read()
    assert backend.payloads[0].cwd == store.repo_root


def test_bootstrap_payload_names_role_spec_gate_and_handoff(tmp_path: Path) -> None:
    backend = RecordingBackend()
    launcher, store = _launcher(tmp_path, backend)

    asyncio.run(launcher.start("review_security", "FEAT-001"))
    prompt = backend.payloads[0].prompt

    assert str(store.pfm_dir / "roles" / "review_security.md") in prompt
    assert "'review_security' gate" in prompt
    assert "changes_requested" in prompt
    assert str(store.handoffs_dir("FEAT-001")) in prompt
    assert "runlog.md" in prompt


def test_second_start_is_a_conflict_unless_restarted(tmp_path: Path) -> None:
    backend = RecordingBackend()
    launcher, store = _launcher(tmp_path, backend)
    first = asyncio.run(launcher.start("prd", "FEAT-001"))

    conflict = asyncio.run(launcher.start("prd", "FEAT-001"))
    restarted = asyncio.run(launcher.start("prd", "FEAT-001", restart=True))

    assert conflict.status == "conflict"
    assert conflict.started_at == first.started_at
    assert len(backend.payloads) == 2
    assert restarted.status == "started"
    assert store.load("FEAT-001").started["prd"] == restarted.started_at
    assert RunLog(store.runlog_path("FEAT-001")).read().count("## Agent Conflict") == 1


def test_launch_failure_restores_previous_state(tmp_path: Path) -> None:
    launcher, store = _launcher(tmp_path, RecordingBackend(fail_start=True))

    with pytest.raises(BackendProcessError):
        asyncio.run(launcher.start("prd", "FEAT-001"))

    item = store.load("FEAT-001")
    assert item.gates["prd"] is GateStatus.TODO
    assert "prd" not in item.started
    assert "## Agent Launch Failed" in RunLog(store.runlog_path("FEAT-001")).read()


def test_no_backend_leaves_state_unchanged(tmp_path: Path) -> None:
    launcher, store = _launcher(tmp_path, UnavailableBackend())
    before = store.state_path("FEAT-001").read_text(encoding="utf-8")

    with pytest.raises(BackendUnavailableError):
        asyncio.run(launcher.start("prd", "FEAT-001"))

    assert store.state_path("FEAT-001").read_text(encoding="utf-8") == before


def test_blocking_backend_reports_exit(tmp_path: Path) -> None:
    launcher, store = _launcher(tmp_path, RecordingBackend("direct", supports_resume=False))

    result = asyncio.run(launcher.start("prd", "FEAT-001"))

    assert result.blocking is True
    assert result.exit_code == 0
    assert store.load("FEAT-001").workspace.session == ""
    assert "## Agent Complete" in RunLog(store.runlog_path("FEAT-001")).read()


def test_nudge_delivers_into_live_session(tmp_path: Path) -> None:
    backend = RecordingBackend()
    launcher, store = _launcher(tmp_path, backend)
    asyncio.run(launcher.start("prd", "FEAT-001"))

    result = asyncio.run(launcher.nudge("prd", "FEAT-001"))

    assert result.delivered is True
    assert backend.resumed[0][0] == "pfm-FEAT-001-prd"
    assert "## Agent Nudge" in RunLog(store.runlog_path("FEAT-001")).read()


def test_nudge_without_resumable_backend_returns_message_for_relay(tmp_path: Path) -> None:
    launcher, store = _launcher(tmp_path, RecordingBackend("direct", supports_resume=False))

    result = asyncio.run(launcher.nudge("qa", "FEAT-001"))

    assert result.delivered is False
    assert result.session == "pfm-FEAT-001-qa"
    assert "'qa'" in result.message
    assert "Delivered: no" in RunLog(store.runlog_path("FEAT-001")).read()
