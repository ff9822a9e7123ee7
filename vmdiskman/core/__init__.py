# vmdiskman/core/__init__.py
from .ledger import ResourceEntry, ResourceKind, ResourceLedger, TeardownReport
from .runner import CommandResult, ProcessRunner

__all__ = [
    "CommandResult",
    "ProcessRunner",
    "ResourceEntry",
    "ResourceKind",
    "ResourceLedger",
    "TeardownReport",
]
