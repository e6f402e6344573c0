from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from pfm.gates import GATE_ORDER, GateStatus, Role, gate_to_role
from pfm.state.errors import ValidationError

KNOWN_FIELDS = {
    "id",
    "title",
    "repo",
    "branch",
    "status",
    "owner",
    "updated_at",
    "gates",
    "commands",
    "workspace",
    "notes",
    "started",
    "reruns",
}
COMMAND_FIELDS = ("verify", "security", "qa_smoke")
WORKSPACE_FIELDS = ("worktree", "session", "container", "tmux_session")
NON_REROUTABLE_GATES = frozenset({"prd", "plan", "env", "impl", "git"})


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def precise_utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _string(payload: dict[str, Any], key: str, default: str = "") -> str:
    value = payload.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValidationError(f"Field '{key}' must be a string, got {type(value).__name__}.")
    return value


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key) or {}
    if not isinstance(value, dict):
        raise ValidationError(f"Field '{key}' must be an object.")
    return value


def _extras(payload: dict[str, Any], known: tuple[str, ...]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key not in known}


def parse_gates(raw: Any) -> dict[str, GateStatus]:
    if not isinstance(raw, dict):
        raise ValidationError("Field 'gates' must be an object.")
    unknown = sorted(set(raw) - set(GATE_ORDER))
    if unknown:
        raise ValidationError("Unknown gate names: " + ", ".join(unknown))
    missing = [gate for gate in GATE_ORDER if gate not in raw]
    if missing:
        raise ValidationError("Missing gate names: " + ", ".join(missing))

    gates: dict[str, GateStatus] = {}
    for gate in GATE_ORDER:
        value = raw[gate]
        try:
            status = GateStatus(value)
        except ValueError as exc:
            raise ValidationError(f"Gate '{gate}' has unknown status: {value!r}") from exc
        if status is GateStatus.CHANGES_REQUESTED and gate != "review_security":
            raise ValidationError(
                f"Gate '{gate}' cannot be changes_requested; only review_security can."
            )
        gates[gate] = status
    return gates


@dataclass(slots=True)
class Commands:
    verify: str = ""
    security: str = ""
    qa_smoke: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "verify": self.verify,
            "security": self.security,
            "qa_smoke": self.qa_smoke,
        }
        payload.update(self.extra)
        return payload


@dataclass(slots=True)
class Workspace:
    worktree: str = ""
    session: str = ""
    container: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "worktree": self.worktree,
            "session": self.session,
            "container": self.container,
        }
        payload.update(self.extra)
        return payload


@dataclass(slots=True)
class WorkItem:
    id: str
    title: str = ""
    repo: str = ""
    branch: str = ""
    status: str = "todo"
    owner: str = ""
    updated_at: str = field(default_factory=utcnow_iso)
    gates: dict[str, GateStatus] = field(
        default_factory=lambda: {gate: GateStatus.TODO for gate in GATE_ORDER}
    )
    commands: Commands = field(default_factory=Commands)
    workspace: Workspace = field(default_factory=Workspace)
    notes: list[str] = field(default_factory=list)
    started: dict[str, str] = field(default_factory=dict)
    reruns: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        work_id: str,
        title: str,
        repo: str = "",
        commands: Commands | None = None,
    ) -> WorkItem:
        if not work_id.strip():
            raise ValidationError("Work item id must not be empty.")
        return cls(
            id=work_id,
            title=title,
            repo=repo,
            branch=f"pfm/{work_id}",
            commands=commands or Commands(),
        )

    @classmethod
    def from_dict(cls, payload: Any) -> WorkItem:
        if not isinstance(payload, dict):
            raise ValidationError("State record must be a JSON object.")
        work_id = _string(payload, "id")
        if not work_id.strip():
            raise ValidationError("State record has no id.")

        commands = _section(payload, "commands")
        workspace = _section(payload, "workspace")
        notes = payload.get("notes") or []
        started = payload.get("started") or {}
        reruns = payload.get("reruns") or []
        if not isinstance(notes, list):
            raise ValidationError("Field 'notes' must be a list.")
        if not isinstance(started, dict) or set(started) - set(GATE_ORDER):
            raise ValidationError("Field 'started' must map known gate names to timestamps.")
        if not isinstance(reruns, list) or set(reruns) - set(GATE_ORDER):
            raise ValidationError("Field 'reruns' must list known gate names.")

        owner = _string(payload, "owner")
        if owner:
            try:
                Role(owner)
            except ValueError as exc:
                raise ValidationError(f"Unknown owner role: {owner!r}") from exc

        return cls(
            id=work_id,
            title=_string(payload, "title"),
            repo=_string(payload, "repo"),
            branch=_string(payload, "branch"),
            status=_string(payload, "status", "todo"),
            owner=owner,
            updated_at=_string(payload, "updated_at") or utcnow_iso(),
            gates=parse_gates(payload.get("gates")),
            commands=Commands(
                verify=_string(commands, "verify"),
                security=_string(commands, "security"),
                qa_smoke=_string(commands, "qa_smoke"),
                extra=_extras(commands, COMMAND_FIELDS),
            ),
            workspace=Workspace(
                worktree=_string(workspace, "worktree"),
                session=_string(workspace, "session") or _string(workspace, "tmux_session"),
                container=_string(workspace, "container"),
                extra=_extras(workspace, WORKSPACE_FIELDS),
            ),
            notes=[str(note) for note in notes],
            started={str(gate): str(value) for gate, value in started.items()},
            reruns=[str(gate) for gate in reruns],
            extra={key: value for key, value in payload.items() if key not in KNOWN_FIELDS},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "repo": self.repo,
            "branch": self.branch,
            "status": self.status,
            "owner": self.owner,
            "updated_at": self.updated_at,
            "gates": {gate: str(self.gates[gate]) for gate in GATE_ORDER},
            "commands": self.commands.to_dict(),
            "workspace": self.workspace.to_dict(),
            "notes": list(self.notes),
            "started": {gate: self.started[gate] for gate in GATE_ORDER if gate in self.started},
            "reruns": list(self.reruns),
        }
        payload.update(self.extra)
        return payload

    def copy(self) -> WorkItem:
        return WorkItem.from_dict(self.to_dict())

    def started_at(self, gate: str) -> datetime | None:
        raw = self.started.get(gate)
        if not raw:
            return None
        try:
            return parse_timestamp(raw)
        except ValueError:
            return None

    def refresh_summary(self) -> None:
        """Recompute the derived owner and status fields from the gate map."""
        in_progress = [gate for gate in GATE_ORDER if self.gates[gate] == GateStatus.IN_PROGRESS]
        self.owner = str(gate_to_role(in_progress[0])) if in_progress else ""

        if in_progress:
            self.status = "in_progress"
        elif self.gates["git"] == GateStatus.PASS:
            self.status = "done"
        elif all(status == GateStatus.TODO for status in self.gates.values()):
            self.status = "todo"
        elif any(self.gates[gate] == GateStatus.FAIL for gate in NON_REROUTABLE_GATES):
            self.status = "failed"
        else:
            self.status = "in_progress"

    def touch(self, previous: str | None = None) -> None:
        now = datetime.now(UTC)
        if previous:
            try:
                last = parse_timestamp(previous)
            except ValueError:
                last = None
            if last is not None and last >= now:
                now = last + timedelta(microseconds=1)
        self.updated_at = now.isoformat(timespec="microseconds")
