from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from pfm.backends import (
    BackendError,
    BackendSelector,
    BackendUnavailableError,
    LaunchBackend,
    LaunchPayload,
)
from pfm.gates import GateStatus, Role, gate_to_role, role_to_gate
from pfm.state import RunLog, StateStore, WorkItem
from pfm.state.work_item import precise_utcnow_iso

LaunchStatus = Literal["started", "conflict"]
EventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class LaunchResult:
    status: LaunchStatus
    role: str
    gate: str
    backend: str | None = None
    session: str | None = None
    exit_code: int | None = None
    started_at: str | None = None
    message: str = ""

    @property
    def blocking(self) -> bool:
        return self.status == "started" and self.session is None


@dataclass(slots=True)
class NudgeResult:
    delivered: bool
    role: str
    session: str
    message: str


class AgentLauncher:
    def __init__(
        self,
        store: StateStore,
        selector: BackendSelector,
        *,
        session_prefix: str = "pfm",
        event_hook: EventHook | None = None,
    ) -> None:
        self.store = store
        self.selector = selector
        self.session_prefix = session_prefix
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def _runlog(self, work_id: str) -> RunLog:
        return RunLog(self.store.runlog_path(work_id))

    def session_name(self, work_id: str, role: Role | str) -> str:
        return f"{self.session_prefix}-{work_id}-{role}"

    def working_directory(self, item: WorkItem) -> Path:
        if item.workspace.worktree:
            return Path(item.workspace.worktree)
        return self.store.repo_root

    def role_spec_path(self, role: Role | str) -> Path:
        return self.store.pfm_dir / "roles" / f"{role}.md"

    def render_bootstrap_payload(self, role: Role | str, item: WorkItem) -> str:
        role = Role(role)
        gate = role_to_gate(role)
        work_dir = self.store.work_dir(item.id)
        handoffs = self.store.handoffs_dir(item.id)
        return "\n".join(
            [
                f"You are the {role} agent for work item {item.id} ({item.title}).",
                f"Role spec (follow it exactly): {self.role_spec_path(role)}",
                f"Work item directory: {work_dir}",
                "",
                "Read first:",
                f"1) {work_dir / 'state.json'}",
                f"2) the newest file in {handoffs} (if any)",
                "",
                "Mandatory constraints:",
                f"- You own the '{gate}' gate. Change no other gate in state.json.",
                f"- Set '{gate}' to pass or fail when your work is done"
                + (" (or changes_requested)." if gate == "review_security" else "."),
                f"- Record every command you run and its output in {work_dir / 'runlog.md'}.",
                f"- Finish by writing a handoff note to {handoffs}/<TIMESTAMP>-{role}.md.",
                "- Ask the operator when requirements are ambiguous instead of guessing.",
                "- Stop as soon as the stop condition in your role spec is met.",
            ]
        )

    def render_lead_payload(self, item: WorkItem, gates: Sequence[str]) -> str:
        work_dir = self.store.work_dir(item.id)
        handoffs = self.store.handoffs_dir(item.id)
        roster = [
            f"- {gate_to_role(gate)} (gate '{gate}'): role spec {self.role_spec_path(gate_to_role(gate))}"
            for gate in gates
        ]
        return "\n".join(
            [
                f"You lead the pipeline for work item {item.id} ({item.title}).",
                f"State record: {work_dir / 'state.json'}",
                "",
                "Spawn one teammate per role below, strictly in this order. A role starts",
                "only after the previous gate is pass. Each teammate reads its role spec,",
                "the state record and the newest handoff, updates only its own gate, logs",
                f"commands to {work_dir / 'runlog.md'} and writes a handoff note to",
                f"{handoffs}/<TIMESTAMP>-<ROLE>.md.",
                "",
                *roster,
                "",
                f"After the tests and impl gates run the verify command: {item.commands.verify or '(none)'}",
                f"After the impl gate run the security command: {item.commands.security or '(none)'}",
                "",
                "Reroutes:",
                "- tests = fail: implementation fixes, then retry.",
                "- review_security = changes_requested: implementation fixes, then review again.",
                "- qa = fail: implementation fixes, then tests and qa run again.",
                "Any other fail: stop and report to the operator.",
            ]
        )

    async def start(
        self,
        role: Role | str,
        work_id: str,
        *,
        restart: bool = False,
    ) -> LaunchResult:
        role = Role(role)
        gate = role_to_gate(role)
        runlog = self._runlog(work_id)
        item = self.store.load(work_id)

        previous_status = item.gates[gate]
        previous_marker = item.started.get(gate)
        if previous_status is GateStatus.IN_PROGRESS and previous_marker and not restart:
            message = (
                f"Gate '{gate}' is already in progress since {previous_marker}; "
                "launch refused."
            )
            runlog.append("Agent Conflict", f"Role: {role}\nGate: {gate}\n{message}")
            self._emit({"event": "agent_conflict", "role": str(role), "gate": gate})
            return LaunchResult(
                status="conflict",
                role=str(role),
                gate=gate,
                started_at=previous_marker,
                message=message,
            )

        backend = await self.selector.select()
        self.store.handoffs_dir(work_id).mkdir(parents=True, exist_ok=True)
        started_at = precise_utcnow_iso()
        session_name = self.session_name(work_id, role)

        def _mark_started(current: WorkItem) -> WorkItem:
            current.gates[gate] = GateStatus.IN_PROGRESS
            current.started[gate] = started_at
            if backend.supports_resume:
                current.workspace.session = session_name
            return current

        item = self.store.update(work_id, _mark_started)
        runlog.append(
            "Agent Start",
            f"Role: {role}\nGate: {gate}\nBackend: {backend.name}\nRestart: {restart}",
        )
        self._emit(
            {"event": "agent_start", "role": str(role), "gate": gate, "backend": backend.name}
        )

        payload = LaunchPayload(
            role=str(role),
            work_id=work_id,
            prompt=self.render_bootstrap_payload(role, item),
            cwd=self.working_directory(item),
            session_name=session_name,
        )
        try:
            handle = await backend.start(payload)
        except BackendError as exc:

            def _restore(current: WorkItem) -> WorkItem:
                current.gates[gate] = previous_status
                if previous_marker:
                    current.started[gate] = previous_marker
                else:
                    current.started.pop(gate, None)
                return current

            self.store.update(work_id, _restore)
            runlog.append("Agent Launch Failed", f"Role: {role}\nBackend: {backend.name}\n{exc}")
            raise

        if handle.blocking:
            heading = "Agent Complete" if handle.exit_code == 0 else "Agent Exit (non-zero)"
            runlog.append(heading, f"Role: {role}\nExit code: {handle.exit_code}")
            self._emit(
                {"event": "agent_exit", "role": str(role), "exit_code": handle.exit_code}
            )

        return LaunchResult(
            status="started",
            role=str(role),
            gate=gate,
            backend=handle.backend,
            session=handle.session,
            exit_code=handle.exit_code,
            started_at=started_at,
            message=f"Started {role} agent via {handle.backend}.",
        )

    async def start_lead(self, work_id: str, gates: Sequence[str]) -> LaunchResult:
        item = self.store.load(work_id)
        backend: LaunchBackend = await self.selector.select()
        runlog = self._runlog(work_id)
        roles = ", ".join(str(gate_to_role(gate)) for gate in gates)
        runlog.append("Teams Run Start", f"Roles: {roles}\nBackend: {backend.name}")
        self._emit({"event": "lead_start", "gates": list(gates), "backend": backend.name})

        started_at = precise_utcnow_iso()
        payload = LaunchPayload(
            role="lead",
            work_id=work_id,
            prompt=self.render_lead_payload(item, gates),
            cwd=self.working_directory(item),
            session_name=self.session_name(work_id, "lead"),
        )
        handle = await backend.start(payload)
        if handle.blocking:
            runlog.append("Lead Agent Exit", f"Exit code: {handle.exit_code}")
        return LaunchResult(
            status="started",
            role="lead",
            gate="",
            backend=handle.backend,
            session=handle.session,
            exit_code=handle.exit_code,
            started_at=started_at,
            message=f"Started lead agent via {handle.backend}.",
        )

    async def nudge(self, role: Role | str, work_id: str) -> NudgeResult:
        role = Role(role)
        gate = role_to_gate(role)
        item = self.store.load(work_id)
        if item.workspace.session and item.owner == role:
            session = item.workspace.session
        else:
            session = self.session_name(work_id, role)
        message = (
            f"Resume your work as the {role} agent. Re-read "
            f"{self.store.state_path(work_id)} for the current state; your gate is '{gate}'. "
            "Finish your role spec requirements and write your handoff note."
        )

        delivered = False
        try:
            backend = await self.selector.select(require_resume=True)
        except BackendUnavailableError:
            backend = None
        if backend is not None and await backend.session_exists(session):
            delivered = await backend.resume(session, message)

        self._runlog(work_id).append(
            "Agent Nudge",
            f"Role: {role}\nSession: {session}\nDelivered: {'yes' if delivered else 'no'}",
        )
        self._emit(
            {"event": "agent_nudge", "role": str(role), "session": session, "delivered": delivered}
        )
        return NudgeResult(delivered=delivered, role=str(role), session=session, message=message)
