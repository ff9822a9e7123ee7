# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/disk/inspector.py
"""
Filesystem and partition-table detection.

detect() walks an ordered fallback chain and stops at the first probe that
gives an answer:

  1. lsblk / blkid   structural metadata (superblock signatures via libblkid)
  2. file -s         content signature, after a settle delay so the kernel
                     has caught up with a just-resized device
  3. fsck.ext* -n    read-only consistency check, last resort

If nothing answers the result is UNKNOWN. Callers treat UNKNOWN as
"needs a human", never as "probably ext4".
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional, Tuple

from ..core.exceptions import PartitionNotFound, PreconditionViolation
from ..core.runner import ProcessRunner
from .models import FilesystemKind, PartitionTableEntry, PartitionTableKind

_BOOT_FLAGS = ("boot", "esp", "legacy_boot")


class FilesystemInspector:
    def __init__(
        self,
        runner: ProcessRunner,
        logger: logging.Logger,
        *,
        settle_delay_s: float = 1.0,
        timeout_s: float = 30.0,
    ):
        self.runner = runner
        self.logger = logger
        self.settle_delay_s = settle_delay_s
        self.timeout_s = timeout_s

    def settle(self) -> None:
        if self.runner.which("udevadm"):
            self.runner.run(["udevadm", "settle", "--timeout=10"], timeout=15)
        self.runner.sleep(self.settle_delay_s)

    # -----------------------
    # filesystem detection
    # -----------------------

    def detect(self, device: str) -> FilesystemKind:
        probes: List[Tuple[str, Callable[[str], FilesystemKind]]] = [
            ("lsblk", self._probe_lsblk),
            ("blkid", self._probe_blkid),
            ("file", self._probe_signature),
            ("fsck", self._probe_fsck),
        ]
        for name, probe in probes:
            kind = probe(device)
            if kind != FilesystemKind.UNKNOWN:
                self.logger.debug("%s: %s (via %s)", device, kind.value, name)
                return kind
        self.logger.warning("Could not determine the filesystem on %s", device)
        return FilesystemKind.UNKNOWN

    def _first_line(self, cmd: List[str]) -> str:
        res = self.runner.run(cmd, timeout=self.timeout_s)
        if not res.ok:
            return ""
        for line in res.stdout.splitlines():
            if line.strip():
                return line.strip()
        return ""

    def _probe_lsblk(self, device: str) -> FilesystemKind:
        return FilesystemKind.parse(self._first_line(["lsblk", "-ndo", "FSTYPE", device]))

    def _probe_blkid(self, device: str) -> FilesystemKind:
        return FilesystemKind.parse(self._first_line(["blkid", "-o", "value", "-s", "TYPE", device]))

    def _probe_signature(self, device: str) -> FilesystemKind:
        self.settle()
        return FilesystemKind.parse(self._first_line(["file", "-bsL", device]))

    def _probe_fsck(self, device: str) -> FilesystemKind:
        for kind in (FilesystemKind.EXT4, FilesystemKind.EXT3, FilesystemKind.EXT2):
            tool = f"fsck.{kind.value}"
            if not self.runner.which(tool):
                continue
            res = self.runner.run([tool, "-n", device], timeout=self.timeout_s * 4)
            # 0 clean, 4 errors left uncorrected: either way it parsed the superblock.
            if res.returncode in (0, 4):
                return kind
        return FilesystemKind.UNKNOWN

    # -----------------------
    # partitions
    # -----------------------

    @staticmethod
    def partition_path(device: str, index: int) -> str:
        sep = "p" if device[-1:].isdigit() else ""
        return f"{device}{sep}{index}"

    def device_size(self, device: str) -> int:
        res = self.runner.run(["blockdev", "--getsize64", device], timeout=self.timeout_s)
        try:
            return int(res.stdout.strip())
        except ValueError:
            raise PreconditionViolation(
                msg=f"Could not read the size of {device}: {res.diagnostic(1)}",
                context={"device": device},
            )

    def _parted(self, device: str) -> Tuple[PartitionTableKind, List[List[str]]]:
        res = self.runner.run(["parted", "-s", "-m", device, "unit", "B", "print"], timeout=self.timeout_s)
        rows = [ln.strip().rstrip(";").split(":") for ln in res.stdout.splitlines() if ln.strip()]
        table = PartitionTableKind.UNKNOWN
        parts: List[List[str]] = []
        for row in rows:
            if row[0] == "BYT":
                continue
            if row[0].startswith("/"):
                if len(row) > 5:
                    table = PartitionTableKind.parse(row[5])
                continue
            if row[0].isdigit() and len(row) >= 4:
                parts.append(row)
        if not res.ok and table == PartitionTableKind.UNKNOWN:
            self.logger.debug("parted could not read %s: %s", device, res.diagnostic(1))
        return table, parts

    def partition_table(self, device: str) -> PartitionTableKind:
        return self._parted(device)[0]

    @staticmethod
    def _extended_indexes(table: PartitionTableKind, spans: List[Tuple[int, int, int]]) -> List[int]:
        """
        MBR extended containers: primary slots (1-4) whose range holds a
        logical partition (5+). parted -m does not print the partition type.
        """
        if table != PartitionTableKind.MBR:
            return []
        out = []
        for index, start, end in spans:
            if index > 4:
                continue
            if any(i > 4 and start <= s and e <= end for i, s, e in spans):
                out.append(index)
        return out

    def inspect_partitions(self, device: str) -> List[PartitionTableEntry]:
        table, rows = self._parted(device)
        if not rows:
            return []

        def _b(x: str) -> int:
            return int(x.rstrip("B"))

        spans = [(int(r[0]), _b(r[1]), _b(r[2])) for r in rows]
        extended = self._extended_indexes(table, spans)
        data_ends = [end for index, _s, end in spans if index not in extended]
        max_end = max(data_ends) if data_ends else -1

        out: List[PartitionTableEntry] = []
        for r in rows:
            index = int(r[0])
            fs_raw = r[4] if len(r) > 4 else ""
            name = r[5] if len(r) > 5 else ""
            flags = r[6] if len(r) > 6 else ""
            is_extended = index in extended
            kind = FilesystemKind.parse(fs_raw)
            if kind == FilesystemKind.UNKNOWN and not is_extended:
                kind = self.detect(self.partition_path(device, index))
            out.append(
                PartitionTableEntry(
                    index=index,
                    start=_b(r[1]),
                    end=_b(r[2]),
                    size=_b(r[3]),
                    fs_kind=kind,
                    is_boot=any(f.strip() in _BOOT_FLAGS for f in flags.split(",")),
                    is_last=not is_extended and _b(r[2]) == max_end,
                    name=name,
                    flags=flags,
                    is_extended=is_extended,
                )
            )
        return out

    @staticmethod
    def extended_container(entries: List[PartitionTableEntry], entry: PartitionTableEntry) -> Optional[PartitionTableEntry]:
        """The extended partition holding logical partition `entry`, if any."""
        for p in entries:
            if p.is_extended and p.start <= entry.start and entry.end <= p.end:
                return p
        return None

    def get_partition(self, device: str, index: int) -> PartitionTableEntry:
        for p in self.inspect_partitions(device):
            if p.index == index:
                return p
        raise PartitionNotFound(
            msg=f"Partition {index} not found on {device}",
            context={"device": device, "partition": index},
        )

    def detect_luks(self, device: str, entries: Optional[List[PartitionTableEntry]] = None) -> List[str]:
        """Paths of the LUKS partitions on `device`."""
        out = []
        for p in entries if entries is not None else self.inspect_partitions(device):
            path = self.partition_path(device, p.index)
            if p.fs_kind == FilesystemKind.LUKS:
                out.append(path)
            elif p.fs_kind == FilesystemKind.UNKNOWN and self.runner.run(["cryptsetup", "isLuks", path], timeout=self.timeout_s).ok:
                out.append(path)
        return out
