# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/disk/filesystem.py
"""
Grow the filesystem inside a resized partition (or LV), by kind.

  ext2/3/4  e2fsck -f -p, resize2fs, then a read-only e2fsck -n; a failed
            post-check is RESIZED_WITH_WARNINGS, never silently dropped
  ntfs      ntfsresize --no-action must succeed before the real run
  btrfs     best-effort repair, then 'filesystem resize max' on a temporary
            mount (btrfs only grows mounted)
  xfs       MANUAL_STEP_REQUIRED: xfs_growfs works on mounted filesystems
            only, so nothing is attempted here
  other     MANUAL_STEP_REQUIRED
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..core.exceptions import StructuralFailure, TeardownWarning
from ..core.runner import CommandResult, ProcessRunner
from .models import FilesystemKind, ResizeOutcome
from .mount import Mounter

_GPARTED_HINT = "Use an external partition tool such as GParted Live to grow this filesystem."


@dataclass
class GrowReport:
    outcome: ResizeOutcome
    message: str
    remediation: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome in (ResizeOutcome.RESIZED, ResizeOutcome.RESIZED_WITH_WARNINGS)


class FilesystemResizer:
    def __init__(
        self,
        runner: ProcessRunner,
        logger: logging.Logger,
        *,
        mounter: Optional[Mounter] = None,
        timeout_s: float = 3600.0,
    ):
        self.runner = runner
        self.logger = logger
        self.mounter = mounter
        self.timeout_s = timeout_s

        self._handlers: Dict[FilesystemKind, Callable[[str, FilesystemKind], GrowReport]] = {
            FilesystemKind.EXT2: self._grow_ext,
            FilesystemKind.EXT3: self._grow_ext,
            FilesystemKind.EXT4: self._grow_ext,
            FilesystemKind.NTFS: self._grow_ntfs,
            FilesystemKind.BTRFS: self._grow_btrfs,
            FilesystemKind.XFS: self._grow_xfs,
            FilesystemKind.VFAT: self._manual,
            FilesystemKind.SWAP: self._grow_swap,
            FilesystemKind.LUKS: self._grow_container,
            FilesystemKind.LVM: self._grow_container,
            FilesystemKind.UNKNOWN: self._manual,
        }
        missing = set(FilesystemKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No resize handler for: {', '.join(sorted(k.value for k in missing))}")

    def grow(self, device: str, kind: FilesystemKind) -> GrowReport:
        self.logger.info("Growing %s filesystem on %s", kind.value, device)
        report = self._handlers[kind](device, kind)
        log = self.logger.info if report.ok else self.logger.warning
        log("%s: %s (%s)", device, report.message, report.outcome.value)
        for w in report.warnings:
            self.logger.warning("%s: %s", device, w)
        return report

    def _missing(self, *tools: str) -> List[str]:
        return [t for t in tools if not self.runner.which(t)]

    def _run(self, cmd: List[str], input_text: Optional[str] = None) -> CommandResult:
        return self.runner.run(cmd, timeout=self.timeout_s, input_text=input_text)

    # -----------------------
    # handlers
    # -----------------------

    def _grow_ext(self, device: str, kind: FilesystemKind) -> GrowReport:
        missing = self._missing("e2fsck", "resize2fs")
        if missing:
            return GrowReport(
                ResizeOutcome.MANUAL_STEP_REQUIRED,
                f"{', '.join(missing)} not found",
                remediation="Install e2fsprogs (e.g. 'apt install e2fsprogs') and retry.",
            )

        # e2fsck: 0 clean, 1 errors corrected; anything above is fatal here.
        res = self._run(["e2fsck", "-f", "-p", device])
        if res.returncode > 1:
            return GrowReport(
                ResizeOutcome.FAILED,
                f"consistency check failed (e2fsck exit {res.returncode}): {res.diagnostic(2)}",
                remediation=f"Run 'e2fsck -f {device}' interactively and repair the filesystem first.",
            )

        res = self._run(["resize2fs", "-p", device])
        if not res.ok:
            return GrowReport(
                ResizeOutcome.FAILED,
                f"resize2fs failed: {res.diagnostic(2)}",
                remediation=f"Check the filesystem with 'e2fsck -f {device}' and retry the resize.",
            )

        res = self._run(["e2fsck", "-f", "-n", device])
        if res.returncode > 1:
            return GrowReport(
                ResizeOutcome.RESIZED_WITH_WARNINGS,
                "resized, but the post-resize check reported problems",
                remediation=f"Run 'e2fsck -f {device}' before using the filesystem.",
                warnings=[f"e2fsck -n exit {res.returncode}: {res.diagnostic(2)}"],
            )
        return GrowReport(ResizeOutcome.RESIZED, "ext filesystem resized")

    def _grow_ntfs(self, device: str, kind: FilesystemKind) -> GrowReport:
        if self._missing("ntfsresize"):
            return GrowReport(
                ResizeOutcome.MANUAL_STEP_REQUIRED,
                "ntfsresize not found",
                remediation="Install ntfs-3g (e.g. 'apt install ntfs-3g') and retry.",
            )

        warnings: List[str] = []
        if self.runner.which("ntfsfix"):
            res = self._run(["ntfsfix", "--clear-dirty", device])
            if not res.ok:
                warnings.append(f"ntfsfix --clear-dirty failed: {res.diagnostic(1)}")

        sim = self._run(["ntfsresize", "--force", "--no-action", device], input_text="y\n")
        if not sim.ok:
            return GrowReport(
                ResizeOutcome.FAILED,
                f"NTFS resize simulation failed: {sim.diagnostic(3)}",
                remediation="Boot Windows and run 'chkdsk /f', or use GParted Live.",
                warnings=warnings,
            )

        res = self._run(["ntfsresize", "--force", device], input_text="y\n")
        if not res.ok:
            return GrowReport(
                ResizeOutcome.FAILED,
                f"ntfsresize failed: {res.diagnostic(3)}",
                remediation="Boot Windows and run 'chkdsk /f', or use GParted Live.",
                warnings=warnings,
            )
        outcome = ResizeOutcome.RESIZED_WITH_WARNINGS if warnings else ResizeOutcome.RESIZED
        return GrowReport(outcome, "NTFS filesystem resized", warnings=warnings)

    def _grow_btrfs(self, device: str, kind: FilesystemKind) -> GrowReport:
        if self._missing("btrfs"):
            return GrowReport(
                ResizeOutcome.MANUAL_STEP_REQUIRED,
                "btrfs not found",
                remediation="Install btrfs-progs (e.g. 'apt install btrfs-progs') and retry.",
            )
        manual = "Mount the filesystem and run 'btrfs filesystem resize max <mountpoint>'."
        if self.mounter is None:
            return GrowReport(ResizeOutcome.MANUAL_STEP_REQUIRED, "btrfs grows only when mounted", remediation=manual)

        warnings: List[str] = []
        res = self._run(["btrfs", "check", "--repair", "--force", device])
        if not res.ok:
            warnings.append(f"btrfs check --repair reported problems: {res.diagnostic(1)}")

        try:
            target = self.mounter.mount(device)
        except StructuralFailure as e:
            return GrowReport(ResizeOutcome.FAILED, f"could not mount for resize: {e}", remediation=manual, warnings=warnings)

        try:
            res = self._run(["btrfs", "filesystem", "resize", "max", target])
        finally:
            try:
                self.mounter.unmount(target)
            except TeardownWarning as e:
                warnings.append(str(e))

        if not res.ok:
            return GrowReport(
                ResizeOutcome.FAILED,
                f"btrfs resize failed: {res.diagnostic(2)} (filesystem left mountable)",
                remediation=manual,
                warnings=warnings,
            )
        outcome = ResizeOutcome.RESIZED_WITH_WARNINGS if warnings else ResizeOutcome.RESIZED
        return GrowReport(outcome, "btrfs filesystem resized", warnings=warnings)

    def _grow_xfs(self, device: str, kind: FilesystemKind) -> GrowReport:
        return GrowReport(
            ResizeOutcome.MANUAL_STEP_REQUIRED,
            "XFS can only be grown while mounted",
            remediation="Mount the filesystem, then run 'xfs_growfs <mountpoint>'.",
        )

    def _grow_swap(self, device: str, kind: FilesystemKind) -> GrowReport:
        return GrowReport(
            ResizeOutcome.MANUAL_STEP_REQUIRED,
            "swap areas are not resized in place",
            remediation=f"Recreate the swap area with 'mkswap {device}' and update the guest's fstab UUID.",
        )

    def _grow_container(self, device: str, kind: FilesystemKind) -> GrowReport:
        return GrowReport(
            ResizeOutcome.MANUAL_STEP_REQUIRED,
            f"{kind.value} is a container, not a filesystem",
            remediation="Unlock the container and activate its volume groups, then grow the inner filesystem.",
        )

    def _manual(self, device: str, kind: FilesystemKind) -> GrowReport:
        return GrowReport(
            ResizeOutcome.MANUAL_STEP_REQUIRED,
            f"no in-place grow for {kind.value} filesystems",
            remediation=_GPARTED_HINT,
        )
