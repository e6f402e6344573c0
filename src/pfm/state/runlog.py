from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


def _stamp() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")


class RunLog:
    """Append-only markdown audit log for one work item."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def append(self, heading: str, body: str = "") -> None:
        entry = f"\n## {heading}: {_stamp()}\n"
        if body:
            entry += f"\n{body.rstrip()}\n"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(entry)

    def append_command(self, name: str, command: str, exit_code: int, output: str) -> None:
        result = "PASS" if exit_code == 0 else "FAIL"
        self.append(
            f"Check: {name}",
            f"Command: `{command}`\nExit code: {exit_code}\nResult: {result}\n\n"
            f"```\n{output.rstrip()}\n```",
        )

    def record_event(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        name = str(payload.pop("event", "event"))
        self.append(f"Event: {name}", json.dumps(payload, ensure_ascii=False, sort_keys=True))

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")
