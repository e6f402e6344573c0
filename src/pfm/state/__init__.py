from pfm.state.errors import (
    PfmStateError,
    ValidationError,
    WorkItemExistsError,
    WorkItemNotFoundError,
)
from pfm.state.runlog import RunLog
from pfm.state.store import StateStore
from pfm.state.work_item import Commands, WorkItem, Workspace

__all__ = [
    "Commands",
    "PfmStateError",
    "RunLog",
    "StateStore",
    "ValidationError",
    "WorkItem",
    "WorkItemExistsError",
    "WorkItemNotFoundError",
    "Workspace",
]
