from pfm.backends.base import (
    BackendError,
    BackendProcessError,
    BackendUnavailableError,
    LaunchBackend,
    LaunchHandle,
    LaunchPayload,
)
from pfm.backends.direct import DirectBackend
from pfm.backends.selector import BackendSelector, ProbePolicy
from pfm.backends.tmux import TmuxBackend

__all__ = [
    "BackendError",
    "BackendProcessError",
    "BackendSelector",
    "BackendUnavailableError",
    "DirectBackend",
    "LaunchBackend",
    "LaunchHandle",
    "LaunchPayload",
    "ProbePolicy",
    "TmuxBackend",
]
