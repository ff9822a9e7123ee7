# vmdiskman/orchestrator/__init__.py
from .orchestrator import Orchestrator
from .recovery import OrphanSweeper, SweepReport
from .session import DiskSession, SessionConfig, SessionState, teardown

__all__ = [
    "DiskSession",
    "Orchestrator",
    "OrphanSweeper",
    "SessionConfig",
    "SessionState",
    "SweepReport",
    "teardown",
]
