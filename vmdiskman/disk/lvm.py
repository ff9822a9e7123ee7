# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/disk/lvm.py
from __future__ import annotations

import logging
from typing import List, Optional

from ..core.exceptions import StructuralFailure, TeardownWarning, VolumeGroupConflict
from ..core.ledger import ResourceEntry, ResourceKind, ResourceLedger, resource_key
from ..core.runner import CommandResult, ProcessRunner
from .models import LogicalVolume, VolumeGroup

_INACTIVE_MARKERS = (
    "not found",
    "not active",
    "no such",
    "failed to find",
    "cannot process volume group",
)


def dm_name(vg: str, lv: str) -> str:
    """Device-mapper name of an LV: dashes inside names are doubled."""
    return f"{vg.replace('-', '--')}-{lv.replace('-', '--')}"


class LogicalVolumeActivator:
    def __init__(
        self,
        runner: ProcessRunner,
        ledger: ResourceLedger,
        logger: logging.Logger,
        *,
        timeout_s: float = 60.0,
    ):
        self.runner = runner
        self.ledger = ledger
        self.logger = logger
        self.timeout_s = timeout_s

    def _run(self, cmd: List[str]) -> CommandResult:
        return self.runner.run(cmd, timeout=self.timeout_s)

    @staticmethod
    def _already_inactive(res: CommandResult) -> bool:
        text = res.output.lower()
        return any(m in text for m in _INACTIVE_MARKERS)

    # -----------------------
    # discovery
    # -----------------------

    def discover(self, pv: str) -> List[str]:
        """Volume groups whose physical volume is `pv`. No fixed naming assumed."""
        self._run(["pvscan", "--cache", pv])
        res = self._run(["pvs", "--noheadings", "-o", "vg_name", pv])
        if not res.ok:
            self.logger.debug("%s is not an LVM physical volume", pv)
            return []
        names: List[str] = []
        for line in res.stdout.splitlines():
            n = line.strip()
            if n and n not in names:
                names.append(n)
        return names

    def vg_exists(self, vg: str) -> bool:
        return self._run(["vgs", "--noheadings", "-o", "vg_name", vg]).ok

    def list_lvs(self, vg: str) -> List[LogicalVolume]:
        res = self._run(
            [
                "lvs",
                "--noheadings",
                "--units",
                "b",
                "--nosuffix",
                "--separator",
                "|",
                "-o",
                "lv_name,lv_size,lv_active",
                vg,
            ]
        )
        if not res.ok:
            return []
        out: List[LogicalVolume] = []
        for line in res.stdout.splitlines():
            parts = [p.strip() for p in line.strip().split("|")]
            if len(parts) < 3 or not parts[0]:
                continue
            try:
                size: Optional[int] = int(float(parts[1]))
            except ValueError:
                size = None
            out.append(LogicalVolume(vg_name=vg, name=parts[0], size=size, active=(parts[2] == "active")))
        return out

    # -----------------------
    # activate / deactivate
    # -----------------------

    def activate(self, pv: str, *, parent: Optional[str] = None) -> List[VolumeGroup]:
        vgs = self.discover(pv)
        if not vgs:
            self.logger.info("No LVM volume groups on %s", pv)
            return []

        out: List[VolumeGroup] = []
        for vg in vgs:
            key = resource_key(ResourceKind.VOLUME_GROUP, vg)
            if key not in self.ledger and any(lv.active for lv in self.list_lvs(vg)):
                raise VolumeGroupConflict(
                    msg=f"Volume group '{vg}' is already active on this host",
                    context={"vg": vg, "pv": pv},
                )

            # Recorded before activation so a partial activation is still undone.
            self.ledger.append(
                ResourceEntry(
                    ResourceKind.VOLUME_GROUP,
                    vg,
                    release=lambda v=vg: self._deactivate(v),
                    parent=parent,
                    detail={"pv": pv},
                )
            )
            res = self._run(["vgchange", "-ay", vg])
            if not res.ok:
                raise StructuralFailure(
                    msg=f"vgchange -ay {vg} failed: {res.diagnostic(1)}",
                    context={"vg": vg, "pv": pv},
                    remediation=f"Inspect the volume group with 'vgck {vg}'.",
                )

            lvs = self.list_lvs(vg)
            self.logger.info("Activated volume group %s (%d logical volume(s))", vg, len(lvs))
            out.append(VolumeGroup(name=vg, physical_volume=pv, active=True, logical_volumes=lvs))
        return out

    def deactivate(self, vg: str) -> None:
        """Idempotent. An absent or already inactive VG is a success."""
        key = resource_key(ResourceKind.VOLUME_GROUP, vg)
        if key in self.ledger:
            self.ledger.release(key)
        else:
            self._deactivate(vg)

    def _deactivate(self, vg: str) -> None:
        if not self.vg_exists(vg):
            self.logger.debug("Volume group %s not present; nothing to deactivate", vg)
            return

        lvs = self.list_lvs(vg)
        for lv in lvs:
            if not lv.active:
                continue
            res = self._run(["lvchange", "-an", f"{vg}/{lv.name}"])
            if not res.ok and not self._already_inactive(res):
                self.logger.warning("lvchange -an %s/%s failed: %s", vg, lv.name, res.diagnostic(1))

        res = self._run(["vgchange", "-an", vg])
        if res.ok or self._already_inactive(res):
            self.logger.info("Deactivated volume group %s", vg)
            return

        self.logger.warning("vgchange -an %s failed (%s); removing mappings directly", vg, res.diagnostic(1))
        for lv in lvs:
            self._run(["dmsetup", "remove", "--force", dm_name(vg, lv.name)])

        still = [lv.name for lv in self.list_lvs(vg) if lv.active]
        if still:
            raise TeardownWarning(
                msg=f"Volume group {vg} still has active logical volumes: {', '.join(still)}",
                context={"vg": vg, "active": still},
                remediation=f"Unmount the logical volumes and run 'vgchange -an {vg}'.",
            )
        self.logger.warning("Volume group %s deactivated via dmsetup", vg)

    def deactivate_all(self) -> List[str]:
        """Deactivate every tracked VG, newest first. Returns the ones that failed."""
        failed: List[str] = []
        for entry in reversed(self.ledger.of_kind(ResourceKind.VOLUME_GROUP)):
            try:
                self.deactivate(entry.name)
            except TeardownWarning as e:
                self.logger.error("%s", e.user_message())
                failed.append(entry.name)
        return failed

    def grow_logical_volume(self, pv: str, lv: LogicalVolume) -> bool:
        """
        pvresize the physical volume, then extend `lv` over all free extents.
        Returns False when there was nothing to extend.
        """
        res = self._run(["pvresize", pv])
        if not res.ok:
            raise StructuralFailure(
                msg=f"pvresize {pv} failed: {res.diagnostic(1)}",
                context={"pv": pv},
                remediation=f"Run 'pvresize {pv}' manually and check 'pvs' output.",
            )

        res = self._run(["lvextend", "-l", "+100%FREE", lv.path])
        if res.ok:
            self.logger.info("Extended %s", lv.path)
            return True
        text = res.output.lower()
        if any(m in text for m in ("matches existing size", "not larger than existing", "unchanged", "insufficient free space")):
            self.logger.info("%s already uses all free extents", lv.path)
            return False
        raise StructuralFailure(
            msg=f"lvextend {lv.path} failed: {res.diagnostic(1)}",
            context={"lv": lv.path},
            remediation=f"Run 'lvextend -l +100%FREE {lv.path}' manually.",
        )
