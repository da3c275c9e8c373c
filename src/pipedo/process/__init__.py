"""Process tree supervision."""

from .descendants import find_descendants
from .supervisor import NORMALIZED_SIGNAL, TRAPPED_SIGNALS, ProcessGroupSupervisor

__all__ = [
    "NORMALIZED_SIGNAL",
    "ProcessGroupSupervisor",
    "TRAPPED_SIGNALS",
    "find_descendants",
]
