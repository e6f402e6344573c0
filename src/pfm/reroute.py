from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal

from pfm.gates import GATE_ORDER, GateStatus, next_gate
from pfm.state.errors import ValidationError
from pfm.state.work_item import WorkItem

QaRerouteMode = Literal["strict", "qa_only"]
QA_REROUTE_MODES: tuple[str, ...] = ("strict", "qa_only")

REWIND_TARGET = "impl"
LAST_GATE = GATE_ORDER[-1]


@dataclass(frozen=True, slots=True)
class Advance:
    next_gate: str


@dataclass(frozen=True, slots=True)
class Rewind:
    target_gate: str
    reason: str
    reruns: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Halt:
    reason: str
    failed: bool = False


RerouteAction = Advance | Rewind | Halt


def next_action(
    gates: Mapping[str, GateStatus],
    last_settled: str,
    *,
    qa_reroute: QaRerouteMode = "strict",
) -> RerouteAction:
    """Map the outcome of the gate that just settled to the pipeline's next move.

    Only ``last_settled`` is inspected, so exactly one rule fires per settlement.
    """
    if last_settled not in GATE_ORDER:
        raise ValidationError(f"Unknown gate: {last_settled}")
    status = GateStatus(gates[last_settled])
    if not status.is_terminal:
        raise ValidationError(f"Gate '{last_settled}' has not settled (status {status}).")

    if last_settled == "tests" and status is GateStatus.FAIL:
        return Rewind(REWIND_TARGET, reason="tests failed")
    if last_settled == "review_security" and status is GateStatus.CHANGES_REQUESTED:
        return Rewind(
            REWIND_TARGET,
            reason="review requested changes",
            reruns=("review_security",),
        )
    if last_settled == "qa" and status is GateStatus.FAIL:
        if qa_reroute == "strict":
            reruns: tuple[str, ...] = ("tests", "qa")
        elif qa_reroute == "qa_only":
            reruns = ("qa",)
        else:
            raise ValidationError(
                f"Unknown qa_reroute mode: {qa_reroute!r} (use strict or qa_only)"
            )
        return Rewind(REWIND_TARGET, reason="qa failed", reruns=reruns)

    if last_settled == LAST_GATE:
        if status is GateStatus.PASS:
            return Halt("pipeline complete")
        return Halt(f"gate '{last_settled}' failed", failed=True)

    advances = status is GateStatus.PASS or last_settled == "review_security"
    if advances:
        upcoming = next_gate(last_settled)
        if upcoming is None:
            raise ValidationError(f"Gate '{last_settled}' has no successor.")
        return Advance(upcoming)

    return Halt(f"gate '{last_settled}' failed", failed=True)


def _ordered(gates: set[str]) -> list[str]:
    return [gate for gate in GATE_ORDER if gate in gates]


def apply_action(work_item: WorkItem, last_settled: str, action: RerouteAction) -> WorkItem:
    """Return a copy of ``work_item`` with ``action`` applied to its gates."""
    updated = work_item.copy()
    if isinstance(action, Rewind):
        updated.gates[action.target_gate] = GateStatus.TODO
        updated.started.pop(action.target_gate, None)
        updated.reruns = _ordered(set(updated.reruns) | set(action.reruns))
        return updated

    if isinstance(action, Advance) and last_settled == REWIND_TARGET and updated.reruns:
        for gate in updated.reruns:
            updated.gates[gate] = GateStatus.TODO
            updated.started.pop(gate, None)
        updated.reruns = []
    return updated
