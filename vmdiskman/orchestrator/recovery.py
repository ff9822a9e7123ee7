# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/orchestrator/recovery.py
"""
Crash-recovery sweep.

A session that died without tearing down leaves resources named after its
pid: /mnt/vmdiskman_<pid>_<n> mounts and /dev/mapper/luks_<part>_<pid>
mappings. Those whose pid is no longer alive are orphans and are released
here, innermost layer first:

  1. orphan mounts
  2. volume groups sitting on orphan mappings
  3. orphan mappings
  4. (cleanup command only) connected NBD devices nobody uses

Nothing here raises: every failure is a logged warning.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List

from ..core.exceptions import TeardownWarning
from ..core.ledger import ResourceKind, resource_key
from ..disk.luks import EncryptedVolumeOpener
from ..disk.lvm import LogicalVolumeActivator
from ..disk.mount import Mounter
from ..disk.nbd import BlockDeviceAttacher


@dataclass
class SweepReport:
    cleaned: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.warnings


class OrphanSweeper:
    def __init__(
        self,
        logger: logging.Logger,
        *,
        attacher: BlockDeviceAttacher,
        opener: EncryptedVolumeOpener,
        lvm: LogicalVolumeActivator,
        mounter: Mounter,
    ):
        self.logger = logger
        self.attacher = attacher
        self.opener = opener
        self.lvm = lvm
        self.mounter = mounter

    def _warn(self, report: SweepReport, what: str, e: TeardownWarning) -> None:
        msg = f"{what}: {e.user_message()}"
        self.logger.warning("Recovery: %s", msg)
        report.warnings.append(msg)

    def sweep(self, *, include_nbd: bool = False) -> SweepReport:
        report = SweepReport()

        for target in self.mounter.list_orphans():
            self.logger.warning("Recovery: unmounting orphan mount %s", target)
            try:
                self.mounter.force_unmount(target)
                report.cleaned.append(f"mount:{target}")
            except TeardownWarning as e:
                self._warn(report, target, e)

        for name in self.opener.list_orphans():
            mapper = self.opener.mapper_path(name)
            for vg in self.lvm.discover(mapper):
                self.logger.warning("Recovery: deactivating %s on orphan mapping %s", vg, name)
                try:
                    self.lvm.deactivate(vg)
                    report.cleaned.append(f"vg:{vg}")
                except TeardownWarning as e:
                    self._warn(report, f"volume group {vg}", e)

            self.logger.warning("Recovery: closing orphan mapping %s", name)
            try:
                self.opener.force_close(name)
                report.cleaned.append(f"luks:{name}")
            except TeardownWarning as e:
                self._warn(report, f"mapping {name}", e)

        if include_nbd:
            for dev in self.attacher.list_connected():
                if resource_key(ResourceKind.BLOCK_DEVICE, dev) in self.attacher.ledger:
                    continue
                if self.attacher.is_in_use(dev):
                    self.logger.info("Recovery: %s is connected and in use; leaving it", dev)
                    continue
                self.logger.warning("Recovery: disconnecting stale NBD device %s", dev)
                try:
                    self.attacher.detach(dev)
                    report.cleaned.append(f"nbd:{dev}")
                except TeardownWarning as e:
                    self._warn(report, dev, e)

        if report.cleaned:
            self.logger.info("Recovery sweep released %d orphan resource(s)", len(report.cleaned))
        else:
            self.logger.debug("Recovery sweep found no orphans")
        return report
