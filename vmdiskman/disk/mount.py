# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/disk/mount.py
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import List, Optional

from ..core.exceptions import StructuralFailure, TeardownWarning
from ..core.ledger import ResourceEntry, ResourceKind, ResourceLedger, resource_key
from ..core.runner import ProcessRunner

MOUNT_PREFIX = "vmdiskman_"
_MOUNT_DIR_RE = re.compile(r"^vmdiskman_(\d+)_(\d+)$")


@dataclass(frozen=True)
class MountInfo:
    source: str
    target: str
    fstype: str


def _unescape(field: str) -> str:
    # /proc/mounts escapes space, tab, newline and backslash as octal.
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), field)


def read_mounts(runner: ProcessRunner) -> List[MountInfo]:
    text = runner.read_text("/proc/mounts") or ""
    out: List[MountInfo] = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 3:
            continue
        out.append(MountInfo(_unescape(parts[0]), _unescape(parts[1]), parts[2]))
    return out


def mounts_of(runner: ProcessRunner, device: str) -> List[MountInfo]:
    """Mounts whose source is `device` or one of its partitions."""
    pat = re.compile(rf"^{re.escape(device)}(p?\d+)?$")
    return [m for m in read_mounts(runner) if pat.match(m.source)]


def is_mounted(runner: ProcessRunner, target: str) -> bool:
    t = os.path.normpath(target)
    return any(os.path.normpath(m.target) == t for m in read_mounts(runner))


def unmount(runner: ProcessRunner, logger: logging.Logger, target: str) -> bool:
    """umount, then lazy umount. Absent mounts count as success."""
    if not is_mounted(runner, target):
        return True
    res = runner.run(["umount", target], timeout=60)
    if res.ok:
        return True
    logger.warning("umount %s failed (%s); trying lazy unmount", target, res.diagnostic(1))
    res = runner.run(["umount", "-l", target], timeout=60)
    return res.ok or not is_mounted(runner, target)


class Mounter:
    """
    Mounts devices under `<mount_root>/vmdiskman_<pid>_<n>` and tracks each
    mount in the ledger so teardown unmounts it before the layers below.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        ledger: ResourceLedger,
        logger: logging.Logger,
        *,
        mount_root: str = "/mnt",
        pid: Optional[int] = None,
    ):
        self.runner = runner
        self.ledger = ledger
        self.logger = logger
        self.mount_root = mount_root
        self.pid = pid if pid is not None else os.getpid()
        self._seq = 0

    def _next_target(self) -> str:
        while True:
            self._seq += 1
            target = os.path.join(self.mount_root, f"{MOUNT_PREFIX}{self.pid}_{self._seq}")
            if not self.runner.path_exists(target):
                return target

    def mount(
        self,
        device: str,
        *,
        parent: Optional[str] = None,
        options: Optional[str] = None,
        fstype: Optional[str] = None,
    ) -> str:
        target = self._next_target()
        self.runner.make_dir(target)

        cmd = ["mount"]
        if fstype:
            cmd += ["-t", fstype]
        if options:
            cmd += ["-o", options]
        cmd += [device, target]

        res = self.runner.run(cmd, timeout=120)
        if not res.ok:
            self.runner.remove_dir(target)
            raise StructuralFailure(
                msg=f"Failed to mount {device}: {res.diagnostic(1)}",
                context={"device": device, "mount_point": target},
                remediation="Run a filesystem check on the device, then retry.",
            )

        self.ledger.append(
            ResourceEntry(
                ResourceKind.MOUNT,
                target,
                release=lambda t=target: self._unmount(t),
                parent=parent,
                detail={"device": device},
            )
        )
        self.logger.info("Mounted %s at %s", device, target)
        return target

    def unmount(self, target: str) -> None:
        key = resource_key(ResourceKind.MOUNT, target)
        if key in self.ledger:
            self.ledger.release(key)
        else:
            self._unmount(target)

    def _unmount(self, target: str) -> None:
        if not unmount(self.runner, self.logger, target):
            raise TeardownWarning(
                msg=f"{target} is still mounted",
                context={"mount_point": target},
                remediation=f"Close any process using {target} (see 'lsof +D {target}') and unmount it manually.",
            )
        self.runner.remove_dir(target)
        self.logger.debug("Unmounted %s", target)

    def list_orphans(self) -> List[str]:
        """Mount points following our naming whose owning pid is gone."""
        out: List[str] = []
        for name in self.runner.list_dir(self.mount_root):
            m = _MOUNT_DIR_RE.match(name)
            if not m:
                continue
            pid = int(m.group(1))
            if pid == self.pid or self.runner.pid_alive(pid):
                continue
            out.append(os.path.join(self.mount_root, name))
        return out

    def force_unmount(self, target: str) -> None:
        self._unmount(target)
