from __future__ import annotations


class PfmStateError(RuntimeError):
    """Raised when work item state operations fail."""


class ValidationError(PfmStateError):
    """Raised when a state record is malformed or violates a pipeline invariant."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class WorkItemNotFoundError(PfmStateError):
    def __init__(self, work_id: str) -> None:
        super().__init__(f"Work item {work_id} not found.")
        self.work_id = work_id


class WorkItemExistsError(PfmStateError):
    def __init__(self, work_id: str) -> None:
        super().__init__(f"Work item {work_id} already exists.")
        self.work_id = work_id
