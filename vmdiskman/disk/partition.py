# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/disk/partition.py
"""
Grow the last partition of a device to fill it.

Strategies:
  GPT   sgdisk: move the backup header to the (new) end of the disk, then
        delete and recreate the partition at the same first sector with its
        type code, unique GUID and name preserved.
  any   parted resizepart N 100%. Primary for MBR tables. For GPT it is a
        fallback and only runs after the operator confirms it.

After a rewrite the kernel is told to re-read the table and the new
partition node is polled for before anyone reads it.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..core.exceptions import NotLastPartition, PartitionNotFound, TableRewriteFailed, UserCancelled
from ..core.retry import wait_until
from ..core.runner import ProcessRunner
from ..core.utils import U
from .inspector import FilesystemInspector
from .models import PartitionTableKind

# Below this much trailing space the partition is considered to fill the device.
FILL_TOLERANCE = 1024 * 1024
# Backup GPT: 32 sectors of entries plus the header.
GPT_BACKUP_BYTES = 33 * 512


@dataclass(frozen=True)
class GptPartitionInfo:
    typecode: str
    guid: str
    first_sector: int
    name: str = ""


def parse_sgdisk_info(text: str) -> Optional[GptPartitionInfo]:
    fields: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, val = line.partition(":")
        if sep:
            fields[key.strip().lower()] = val.strip()

    code = fields.get("partition guid code", "").split(" ")[0]
    guid = fields.get("partition unique guid", "")
    m = re.match(r"(\d+)", fields.get("first sector", ""))
    if not code or not guid or not m:
        return None
    name = fields.get("partition name", "").strip("'")
    return GptPartitionInfo(typecode=code, guid=guid, first_sector=int(m.group(1)), name=name)


class PartitionResizer:
    def __init__(
        self,
        runner: ProcessRunner,
        inspector: FilesystemInspector,
        logger: logging.Logger,
        *,
        confirm: Optional[Callable[[str], bool]] = None,
        poll_attempts: int = 10,
        poll_interval_s: float = 0.5,
        timeout_s: float = 60.0,
    ):
        self.runner = runner
        self.inspector = inspector
        self.logger = logger
        self.confirm = confirm
        self.poll_attempts = poll_attempts
        self.poll_interval_s = poll_interval_s
        self.timeout_s = timeout_s

    def resize_to_fill(self, device: str, index: int) -> bool:
        """
        Grow partition `index` to the end of `device`.

        Returns False when the partition already fills the device. Raises
        NotLastPartition before touching the table if another partition
        follows it.
        """
        entries = self.inspector.inspect_partitions(device)
        entry = next((p for p in entries if p.index == index), None)
        if entry is None:
            raise PartitionNotFound(
                msg=f"Partition {index} not found on {device}",
                context={"device": device, "partition": index},
            )
        if not entry.is_last:
            raise NotLastPartition(
                msg=f"Partition {index} on {device} is not the last partition; it cannot be grown in place",
                context={"device": device, "partition": index},
            )

        table = self.inspector.partition_table(device)
        dev_size = self.inspector.device_size(device)
        reserved = GPT_BACKUP_BYTES if table == PartitionTableKind.GPT else 0
        slack = dev_size - reserved - (entry.end + 1)
        if slack <= FILL_TOLERANCE:
            self.logger.info("Partition %d already fills %s", index, device)
            return False

        self.logger.info(
            "Growing partition %d on %s by %s (%s table)",
            index,
            device,
            U.human_bytes(slack),
            table.value,
        )

        if table == PartitionTableKind.GPT:
            try:
                self._grow_with_sgdisk(device, index)
            except TableRewriteFailed as e:
                self.logger.warning("GPT resize with sgdisk failed: %s", e)
                question = (
                    f"sgdisk could not resize partition {index} on {device} ({e}). "
                    "Fall back to 'parted resizepart'? This is untested on non-standard layouts."
                )
                if self.confirm is None or not self.confirm(question):
                    raise UserCancelled(
                        msg="Fallback partition resize declined",
                        context={"device": device, "partition": index},
                    ) from e
                self._grow_with_parted(device, index)
        else:
            container = self.inspector.extended_container(entries, entry)
            if container is not None:
                # The logical partition can only end where its container ends.
                self.logger.info("Growing extended partition %d first", container.index)
                self._grow_with_parted(device, container.index)
            self._grow_with_parted(device, index)

        self._refresh(device, index)
        return True

    def _grow_with_sgdisk(self, device: str, index: int) -> None:
        if not self.runner.which("sgdisk"):
            raise TableRewriteFailed(msg="sgdisk is not installed")

        res = self.runner.run(["sgdisk", "-e", device], timeout=self.timeout_s)
        if not res.ok:
            raise TableRewriteFailed(msg=f"could not relocate the backup GPT header: {res.diagnostic(1)}")

        res = self.runner.run(["sgdisk", "-i", str(index), device], timeout=self.timeout_s)
        info = parse_sgdisk_info(res.stdout) if res.ok else None
        if info is None:
            raise TableRewriteFailed(msg=f"could not read partition {index} details: {res.diagnostic(1)}")

        cmd = [
            "sgdisk",
            f"--delete={index}",
            f"--new={index}:{info.first_sector}:0",
            f"--typecode={index}:{info.typecode}",
            f"--partition-guid={index}:{info.guid}",
        ]
        if info.name:
            cmd.append(f"--change-name={index}:{info.name}")
        cmd.append(device)

        res = self.runner.run(cmd, timeout=self.timeout_s)
        if not res.ok:
            raise TableRewriteFailed(
                msg=f"sgdisk could not recreate partition {index}: {res.diagnostic(1)}",
                context={"device": device, "partition": index},
            )
        self.logger.info("Partition %d recreated with sgdisk (first sector %d)", index, info.first_sector)

    def _grow_with_parted(self, device: str, index: int) -> None:
        res = self.runner.run(
            ["parted", "--script", "--fix", device, "resizepart", str(index), "100%"],
            timeout=self.timeout_s,
        )
        if not res.ok:
            raise TableRewriteFailed(
                msg=f"parted resizepart {index} failed: {res.diagnostic(1)}",
                context={"device": device, "partition": index},
            )
        self.logger.info("Partition %d resized with parted", index)

    def _refresh(self, device: str, index: int) -> None:
        res = self.runner.run(["partprobe", device], timeout=self.timeout_s)
        if not res.ok:
            self.logger.warning("partprobe %s failed (%s); trying blockdev --rereadpt", device, res.diagnostic(1))
            res = self.runner.run(["blockdev", "--rereadpt", device], timeout=self.timeout_s)
            if not res.ok:
                raise TableRewriteFailed(
                    msg=f"The kernel did not re-read the partition table of {device}: {res.diagnostic(1)}",
                    context={"device": device},
                    remediation="The table on disk was updated; detach and re-attach the image to reload it.",
                )

        self.inspector.settle()
        node = self.inspector.partition_path(device, index)
        if not wait_until(
            lambda: self.runner.is_block_device(node),
            attempts=self.poll_attempts,
            interval_s=self.poll_interval_s,
            sleep=self.runner.sleep,
        ):
            raise TableRewriteFailed(
                msg=f"{node} did not reappear after the partition table refresh",
                context={"device": device, "partition": index},
                remediation="Detach and re-attach the image, then verify the table with 'parted print'.",
            )
