from __future__ import annotations

from datetime import datetime
from pathlib import Path

from pfm.gates import Role, role_to_gate
from pfm.state.work_item import WorkItem


def _matches_role(filename: str, role: Role) -> bool:
    return filename == f"{role}.md" or filename.endswith(f"-{role}.md")


def handoff_artifacts(handoffs_dir: Path, role: Role | str) -> list[Path]:
    role = Role(role)
    if not handoffs_dir.is_dir():
        return []
    return [
        entry
        for entry in handoffs_dir.iterdir()
        if entry.is_file() and _matches_role(entry.name, role)
    ]


def latest_handoff(handoffs_dir: Path, role: Role | str) -> Path | None:
    artifacts = handoff_artifacts(handoffs_dir, role)
    if not artifacts:
        return None
    return max(artifacts, key=lambda path: path.stat().st_mtime)


def has_fresh_handoff(handoffs_dir: Path, role: Role | str, after: datetime) -> bool:
    threshold = after.timestamp()
    for artifact in handoff_artifacts(handoffs_dir, role):
        try:
            if artifact.stat().st_mtime > threshold:
                return True
        except FileNotFoundError:
            continue
    return False


def is_complete(
    work_item: WorkItem,
    role: Role | str,
    start_time: datetime | None,
    *,
    handoffs_dir: Path,
) -> bool:
    """Report whether the role's gate is settled and backed by a fresh handoff.

    Fails closed: a terminal status with no handoff written after ``start_time``
    (a crash after the status write, or a leftover artifact from an earlier run)
    counts as not complete. Reads only; safe to call on any polling cadence.
    """
    if start_time is None:
        return False
    gate = role_to_gate(role)
    if not work_item.gates[gate].is_terminal:
        return False
    return has_fresh_handoff(handoffs_dir, role, start_time)
