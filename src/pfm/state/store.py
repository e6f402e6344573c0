from __future__ import annotations

import json
import os
import tempfile
import time
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path

from pfm.state.errors import (
    PfmStateError,
    ValidationError,
    WorkItemExistsError,
    WorkItemNotFoundError,
)
from pfm.state.work_item import WorkItem


class StateStore:
    """JSON-file store for work item records under ``<root>/.pfm/work``."""

    STATE_FILE = "state.json"

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()
        self.pfm_dir = self.repo_root / ".pfm"
        self.work_root = self.pfm_dir / "work"

    def work_dir(self, work_id: str) -> Path:
        if not work_id or "/" in work_id or work_id in {".", ".."}:
            raise ValidationError(f"Invalid work item id: {work_id!r}")
        return self.work_root / work_id

    def state_path(self, work_id: str) -> Path:
        return self.work_dir(work_id) / self.STATE_FILE

    def handoffs_dir(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "handoffs"

    def runlog_path(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "runlog.md"

    def exists(self, work_id: str) -> bool:
        return self.state_path(work_id).exists()

    def list_ids(self) -> list[str]:
        if not self.work_root.exists():
            return []
        return sorted(
            entry.name
            for entry in self.work_root.iterdir()
            if entry.is_dir() and (entry / self.STATE_FILE).exists()
        )

    @contextmanager
    def _lock(self, work_id: str, timeout_seconds: float = 3.0):
        lock_file = self.work_dir(work_id) / ".lock"
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise PfmStateError(
                        f"Timed out waiting for state lock of {work_id}."
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read(self, work_id: str) -> tuple[WorkItem, str]:
        path = self.state_path(work_id)
        if not path.exists():
            raise WorkItemNotFoundError(work_id)
        raw = path.read_text(encoding="utf-8")
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Corrupt state record {path}: {exc}", path=str(path)) from exc
        try:
            item = WorkItem.from_dict(payload)
        except ValidationError as exc:
            raise ValidationError(f"Invalid state record {path}: {exc}", path=str(path)) from exc
        if item.id != work_id:
            raise ValidationError(
                f"State record {path} belongs to {item.id}, not {work_id}.", path=str(path)
            )
        return item, item.updated_at

    def _write(self, item: WorkItem, previous_updated_at: str | None) -> WorkItem:
        record = item.copy()
        record.refresh_summary()
        record.touch(previous_updated_at)
        serialized = json.dumps(record.to_dict(), ensure_ascii=False, indent=2) + "\n"
        path = self.state_path(record.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(temp_name, path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except FileNotFoundError:
                pass
            raise
        return record

    def load(self, work_id: str) -> WorkItem:
        item, _ = self._read(work_id)
        return item

    def create(self, item: WorkItem) -> WorkItem:
        if self.exists(item.id):
            raise WorkItemExistsError(item.id)
        self.handoffs_dir(item.id).mkdir(parents=True, exist_ok=True)
        with self._lock(item.id):
            return self._write(item, None)

    def update(self, work_id: str, mutator: Callable[[WorkItem], WorkItem]) -> WorkItem:
        """Reload, apply ``mutator`` to a copy and persist the result atomically."""
        with self._lock(work_id):
            current, previous = self._read(work_id)
            updated = mutator(current.copy())
            if updated.id != work_id:
                raise ValidationError("Work item id is immutable.")
            return self._write(updated, previous)
