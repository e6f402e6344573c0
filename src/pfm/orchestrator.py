from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal, TypeVar

from pfm.checks import VerificationRunner
from pfm.completion import is_complete
from pfm.config import OrchestrationConfig, RunModeName
from pfm.gates import (
    CHECKPOINT_GATES,
    GATE_ORDER,
    GateStatus,
    active_gate,
    gate_index,
    gate_to_role,
    prefix_violations,
)
from pfm.launcher import AgentLauncher
from pfm.reroute import Halt, Rewind, apply_action, next_action
from pfm.state import RunLog, StateStore, ValidationError, WorkItem
from pfm.state.work_item import NON_REROUTABLE_GATES

RunOutcome = Literal[
    "complete",
    "target_reached",
    "needs_human",
    "incomplete",
    "timeout",
    "cancelled",
]
WaitOutcome = Literal["complete", "incomplete", "timeout", "cancelled"]
TEAMS_ENV_VAR = "CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS"
SUCCESS_OUTCOMES = frozenset({"complete", "target_reached"})

T = TypeVar("T")


def resolve_mode(mode: RunModeName) -> Literal["classic", "teams"]:
    if mode == "auto":
        flag = os.environ.get(TEAMS_ENV_VAR, "").strip().lower()
        return "teams" if flag in {"1", "true"} else "classic"
    if mode not in {"classic", "teams"}:
        raise ValueError(f"Unknown run mode: {mode} (use auto, classic or teams)")
    return mode


@dataclass(slots=True)
class RunSummary:
    work_id: str
    outcome: RunOutcome
    message: str
    last_gate: str | None = None
    iterations: int = 0
    reroutes: int = 0
    gates: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome in SUCCESS_OUTCOMES


class Orchestrator:
    def __init__(
        self,
        store: StateStore,
        launcher: AgentLauncher,
        runner: VerificationRunner,
        config: OrchestrationConfig | None = None,
        *,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.store = store
        self.launcher = launcher
        self.runner = runner
        self.config = config or OrchestrationConfig()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def _summary(
        self,
        work_id: str,
        outcome: RunOutcome,
        message: str,
        *,
        last_gate: str | None,
        iterations: int,
        reroutes: int,
    ) -> RunSummary:
        item = self.store.load(work_id)
        RunLog(self.store.runlog_path(work_id)).append(
            "Run Stop", f"Outcome: {outcome}\n{message}"
        )
        self._emit({"event": "run_stop", "outcome": outcome, "message": message})
        return RunSummary(
            work_id=work_id,
            outcome=outcome,
            message=message,
            last_gate=last_gate,
            iterations=iterations,
            reroutes=reroutes,
            gates={gate: str(item.gates[gate]) for gate in GATE_ORDER},
        )

    async def _pause(self, cancel: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(cancel.wait(), timeout=self.config.poll_interval_seconds)
        except TimeoutError:
            pass

    async def _unless_cancelled(self, awaitable: Awaitable[T], cancel: asyncio.Event) -> T | None:
        """Await ``awaitable`` unless ``cancel`` is set first; then cancel it and return None."""
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if task.cancelled():
            return None
        return task.result()

    def _deadline(self) -> float | None:
        if self.config.timeout_seconds <= 0:
            return None
        return asyncio.get_running_loop().time() + self.config.timeout_seconds

    async def wait_for_completion(
        self,
        work_id: str,
        gate: str,
        *,
        blocking: bool,
        cancel: asyncio.Event,
    ) -> WaitOutcome:
        """Poll until ``gate`` is complete, the wait times out or is cancelled."""
        role = gate_to_role(gate)
        handoffs_dir = self.store.handoffs_dir(work_id)
        deadline = self._deadline()
        loop = asyncio.get_running_loop()
        polls = 0
        while True:
            if cancel.is_set():
                return "cancelled"
            item = self.store.load(work_id)
            if is_complete(item, role, item.started_at(gate), handoffs_dir=handoffs_dir):
                return "complete"
            # A blocking agent has already exited; only a fresh handoff can still appear.
            if blocking and not item.gates[gate].is_terminal:
                return "incomplete"
            if deadline is not None and loop.time() >= deadline:
                return "timeout"
            polls += 1
            if polls % 12 == 0:
                self._emit(
                    {"event": "waiting", "gate": gate, "status": str(item.gates[gate]), "polls": polls}
                )
            await self._pause(cancel)

    async def run(
        self,
        work_id: str,
        *,
        to_gate: str | None = None,
        mode: RunModeName = "classic",
        cancel: asyncio.Event | None = None,
    ) -> RunSummary:
        if to_gate is not None and to_gate not in GATE_ORDER:
            raise ValidationError(f"Unknown gate: {to_gate} (valid: {', '.join(GATE_ORDER)})")
        cancel = cancel or asyncio.Event()
        resolved = resolve_mode(mode)
        self.store.load(work_id)
        RunLog(self.store.runlog_path(work_id)).append(
            "Run Start", f"Mode: {resolved}\nTarget: {to_gate or GATE_ORDER[-1]}"
        )
        self._emit({"event": "run_start", "work_id": work_id, "mode": resolved, "to": to_gate})
        if resolved == "teams":
            return await self._run_teams(work_id, to_gate=to_gate, cancel=cancel)
        return await self._run_classic(work_id, to_gate=to_gate, cancel=cancel)

    async def _run_classic(
        self,
        work_id: str,
        *,
        to_gate: str | None,
        cancel: asyncio.Event,
    ) -> RunSummary:
        iterations = 0
        reroutes = 0
        last_gate: str | None = None
        while True:
            item = self.store.load(work_id)
            gate = active_gate(item.gates)
            if gate is None:
                return self._summary(
                    work_id,
                    "complete",
                    "All gates settled; pipeline complete.",
                    last_gate=last_gate,
                    iterations=iterations,
                    reroutes=reroutes,
                )
            if to_gate is not None and gate_index(gate) > gate_index(to_gate):
                return self._summary(
                    work_id,
                    "target_reached",
                    f"Reached target gate '{to_gate}'.",
                    last_gate=last_gate,
                    iterations=iterations,
                    reroutes=reroutes,
                )

            iterations += 1
            role = gate_to_role(gate)
            blocking = False
            status = item.gates[gate]
            if status is GateStatus.TODO or gate not in item.started:
                self._emit({"event": "gate_start", "gate": gate, "role": str(role)})
                launch = await self._unless_cancelled(
                    self.launcher.start(role, work_id, restart=status is GateStatus.IN_PROGRESS),
                    cancel,
                )
                if launch is None:
                    return self._summary(
                        work_id,
                        "cancelled",
                        f"Cancelled while launching the agent for '{gate}'.",
                        last_gate=gate,
                        iterations=iterations,
                        reroutes=reroutes,
                    )
                if launch.status == "conflict":
                    raise ValidationError(launch.message)
                blocking = launch.blocking
            else:
                self._emit({"event": "gate_resume_wait", "gate": gate, "role": str(role)})

            waited = await self.wait_for_completion(
                work_id, gate, blocking=blocking, cancel=cancel
            )
            if waited != "complete":
                messages = {
                    "incomplete": (
                        f"Agent for '{gate}' exited without settling its gate; "
                        f"restart with: pfm agent start {role} {work_id}"
                    ),
                    "timeout": f"Timed out waiting for gate '{gate}'.",
                    "cancelled": f"Cancelled while waiting for gate '{gate}'.",
                }
                return self._summary(
                    work_id,
                    waited,
                    messages[waited],
                    last_gate=gate,
                    iterations=iterations,
                    reroutes=reroutes,
                )

            settled = gate
            item = self.store.load(work_id)
            self._emit({"event": "gate_settled", "gate": gate, "status": str(item.gates[gate])})
            if gate in CHECKPOINT_GATES:
                report = await self._unless_cancelled(self.runner.check(work_id), cancel)
                if report is None:
                    return self._summary(
                        work_id,
                        "cancelled",
                        f"Cancelled while running checks after '{gate}'.",
                        last_gate=gate,
                        iterations=iterations,
                        reroutes=reroutes,
                    )
                if report.outcome is GateStatus.FAIL:
                    settled = "tests"

            item = self.store.load(work_id)
            action = next_action(item.gates, settled, qa_reroute=self.config.qa_reroute)

            def _apply(current: WorkItem) -> WorkItem:
                return apply_action(current, settled, action)

            item = self.store.update(work_id, _apply)
            violations = prefix_violations(item.gates)
            if violations:
                raise ValidationError(
                    "Gates in progress out of order: " + ", ".join(violations)
                )
            last_gate = settled

            if isinstance(action, Halt):
                outcome: RunOutcome = "needs_human" if action.failed else "complete"
                return self._summary(
                    work_id,
                    outcome,
                    action.reason,
                    last_gate=settled,
                    iterations=iterations,
                    reroutes=reroutes,
                )
            if isinstance(action, Rewind):
                reroutes += 1
                RunLog(self.store.runlog_path(work_id)).append(
                    "Reroute",
                    f"Settled: {settled}\nReason: {action.reason}\n"
                    f"Rewind to: {action.target_gate}\nPending re-runs: {', '.join(item.reruns) or '-'}",
                )
                self._emit(
                    {
                        "event": "reroute",
                        "from": settled,
                        "to": action.target_gate,
                        "reason": action.reason,
                    }
                )
                if reroutes > self.config.max_reroutes:
                    return self._summary(
                        work_id,
                        "needs_human",
                        f"Gave up after {self.config.max_reroutes} reroutes.",
                        last_gate=settled,
                        iterations=iterations,
                        reroutes=reroutes,
                    )
                if to_gate is not None and gate_index(action.target_gate) > gate_index(to_gate):
                    return self._summary(
                        work_id,
                        "needs_human",
                        f"Gate '{settled}' did not pass; its reroute to '{action.target_gate}' "
                        f"lies past target gate '{to_gate}'.",
                        last_gate=settled,
                        iterations=iterations,
                        reroutes=reroutes,
                    )
                continue

            if to_gate is not None and gate_index(settled) >= gate_index(to_gate):
                return self._summary(
                    work_id,
                    "target_reached",
                    f"Reached target gate '{to_gate}'.",
                    last_gate=settled,
                    iterations=iterations,
                    reroutes=reroutes,
                )

    async def _run_teams(
        self,
        work_id: str,
        *,
        to_gate: str | None,
        cancel: asyncio.Event,
    ) -> RunSummary:
        target = to_gate or GATE_ORDER[-1]
        item = self.store.load(work_id)
        remaining = [
            gate
            for gate in GATE_ORDER[: gate_index(target) + 1]
            if item.gates[gate] is not GateStatus.PASS
        ]
        if not remaining:
            return self._summary(
                work_id,
                "complete" if to_gate is None else "target_reached",
                "All target gates already pass.",
                last_gate=target,
                iterations=0,
                reroutes=0,
            )

        launch = await self._unless_cancelled(self.launcher.start_lead(work_id, remaining), cancel)
        if launch is None:
            return self._summary(
                work_id,
                "cancelled",
                "Cancelled while launching the lead agent.",
                last_gate=remaining[0],
                iterations=1,
                reroutes=0,
            )
        deadline = self._deadline()
        loop = asyncio.get_running_loop()
        polls = 0
        while True:
            item = self.store.load(work_id)
            if all(item.gates[gate] is GateStatus.PASS for gate in remaining):
                outcome: RunOutcome = "complete" if to_gate is None else "target_reached"
                return self._summary(
                    work_id,
                    outcome,
                    "All target gates pass.",
                    last_gate=target,
                    iterations=1,
                    reroutes=0,
                )
            failed = [
                gate
                for gate in remaining
                if gate in NON_REROUTABLE_GATES and item.gates[gate] is GateStatus.FAIL
            ]
            if failed:
                return self._summary(
                    work_id,
                    "needs_human",
                    f"Gate '{failed[0]}' failed and has no reroute.",
                    last_gate=failed[0],
                    iterations=1,
                    reroutes=0,
                )
            if launch.blocking:
                return self._summary(
                    work_id,
                    "incomplete",
                    "Lead agent exited before all target gates passed.",
                    last_gate=active_gate(item.gates),
                    iterations=1,
                    reroutes=0,
                )
            if cancel.is_set():
                return self._summary(
                    work_id,
                    "cancelled",
                    "Cancelled while waiting for the lead agent.",
                    last_gate=active_gate(item.gates),
                    iterations=1,
                    reroutes=0,
                )
            if deadline is not None and loop.time() >= deadline:
                return self._summary(
                    work_id,
                    "timeout",
                    "Timed out waiting for the lead agent.",
                    last_gate=active_gate(item.gates),
                    iterations=1,
                    reroutes=0,
                )
            polls += 1
            if polls % 12 == 0:
                progress = {gate: str(item.gates[gate]) for gate in remaining}
                self._emit({"event": "waiting", "progress": progress, "polls": polls})
            await self._pause(cancel)
