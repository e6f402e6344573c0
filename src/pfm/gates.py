from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class GateStatus(StrEnum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    PASS = "pass"
    FAIL = "fail"
    CHANGES_REQUESTED = "changes_requested"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {GateStatus.PASS, GateStatus.FAIL, GateStatus.CHANGES_REQUESTED}
)


class Role(StrEnum):
    PRD = "prd"
    ORCHESTRATOR = "orchestrator"
    ENV = "env"
    TEST = "test"
    IMPLEMENTATION = "implementation"
    REVIEW_SECURITY = "review_security"
    QA = "qa"
    GIT = "git"


GATE_ORDER: tuple[str, ...] = (
    "prd",
    "plan",
    "env",
    "tests",
    "impl",
    "review_security",
    "qa",
    "git",
)

GATE_ROLES: dict[str, Role] = {
    "prd": Role.PRD,
    "plan": Role.ORCHESTRATOR,
    "env": Role.ENV,
    "tests": Role.TEST,
    "impl": Role.IMPLEMENTATION,
    "review_security": Role.REVIEW_SECURITY,
    "qa": Role.QA,
    "git": Role.GIT,
}

# Gates after which the verify/security checks run automatically.
CHECKPOINT_GATES = frozenset({"tests", "impl"})


def gate_to_role(gate: str) -> Role:
    try:
        return GATE_ROLES[gate]
    except KeyError as exc:
        raise ValueError(f"Unknown gate: {gate}") from exc


def role_to_gate(role: Role | str) -> str:
    role = Role(role)
    for gate, owner in GATE_ROLES.items():
        if owner is role:
            return gate
    raise ValueError(f"Role owns no gate: {role}")


def gate_index(gate: str) -> int:
    try:
        return GATE_ORDER.index(gate)
    except ValueError as exc:
        raise ValueError(f"Unknown gate: {gate}") from exc


def next_gate(gate: str) -> str | None:
    index = gate_index(gate)
    if index + 1 >= len(GATE_ORDER):
        return None
    return GATE_ORDER[index + 1]


def active_gate(gates: Mapping[str, GateStatus]) -> str | None:
    """Return the first gate, in pipeline order, that is not yet terminal."""
    for gate in GATE_ORDER:
        if not GateStatus(gates[gate]).is_terminal:
            return gate
    return None


def prefix_violations(gates: Mapping[str, GateStatus]) -> list[str]:
    """List gates marked in_progress while they are not the active gate."""
    active = active_gate(gates)
    return [
        gate
        for gate in GATE_ORDER
        if gates[gate] == GateStatus.IN_PROGRESS and gate != active
    ]
