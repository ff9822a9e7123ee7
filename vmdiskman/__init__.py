# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/__init__.py
"""
vmdiskman - VM disk image lifecycle engine

Attaches disk images as NBD block devices, unlocks LUKS containers,
activates LVM volume groups, grows partitions and filesystems, and tears
every layer down in reverse order whatever happens.

Usage as a library:

    from vmdiskman import DiskSession, StaticCredentialProvider

    with DiskSession(runner, logger) as s:
        dev, r = s.attach("/images/guest.qcow2")
        parts = s.inspect_partitions(dev)
        s.resize(dev, parts[-1].index)
"""

__version__ = "0.1.0"

from .core.ledger import ResourceLedger
from .core.runner import ProcessRunner
from .disk.luks import CredentialProvider, StaticCredentialProvider
from .disk.models import Result
from .orchestrator.session import DiskSession, SessionConfig, SessionState, teardown

__all__ = [
    "__version__",
    "CredentialProvider",
    "DiskSession",
    "ProcessRunner",
    "ResourceLedger",
    "Result",
    "SessionConfig",
    "SessionState",
    "StaticCredentialProvider",
    "teardown",
]
