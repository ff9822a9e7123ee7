# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/disk/nbd.py
"""
Attach/detach disk images as kernel block devices through qemu-nbd.

A device counts as connected when its node exists and
/sys/block/nbdN/pid names the qemu-nbd server. An exit status of 0 from
`qemu-nbd --connect` does not guarantee that yet, so attach polls for it.
"""
from __future__ import annotations

import logging
import os
from typing import Callable, List, Optional

from ..core.exceptions import (
    AttachFailed,
    AttachTimeout,
    DeviceNotReady,
    PreconditionViolation,
    TeardownWarning,
    TransientFailure,
)
from ..core.ledger import ResourceEntry, ResourceKind, ResourceLedger, resource_key
from ..core.retry import retry_operation, wait_until
from ..core.runner import ProcessRunner
from .image import ImageTool
from .models import AttachedBlockDevice, DiskImage
from .mount import mounts_of, unmount


class BlockDeviceAttacher:
    SYSFS_BLOCK = "/sys/block"

    def __init__(
        self,
        runner: ProcessRunner,
        ledger: ResourceLedger,
        logger: logging.Logger,
        *,
        images: Optional[ImageTool] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        max_devices: int = 16,
        retries: int = 3,
        timeout_s: float = 30.0,
        poll_attempts: int = 10,
        poll_interval_s: float = 0.5,
        backoff_s: float = 2.0,
    ):
        self.runner = runner
        self.ledger = ledger
        self.logger = logger
        self.images = images or ImageTool(runner, logger)
        self.confirm = confirm
        self.max_devices = max_devices
        self.retries = retries
        self.timeout_s = timeout_s
        self.poll_attempts = poll_attempts
        self.poll_interval_s = poll_interval_s
        self.backoff_s = backoff_s

    # -----------------------
    # sysfs probes
    # -----------------------

    def _sysfs(self, device: str, *parts: str) -> str:
        return os.path.join(self.SYSFS_BLOCK, os.path.basename(device), *parts)

    def server_pid(self, device: str) -> Optional[int]:
        raw = (self.runner.read_text(self._sysfs(device, "pid")) or "").strip()
        return int(raw) if raw.isdigit() else None

    def is_connected(self, device: str) -> bool:
        return self.runner.is_block_device(device) and self.server_pid(device) is not None

    def list_connected(self) -> List[str]:
        out = []
        for name in self.runner.list_dir(self.SYSFS_BLOCK):
            if name.startswith("nbd") and name[3:].isdigit():
                dev = f"/dev/{name}"
                if self.server_pid(dev) is not None:
                    out.append(dev)
        return out

    def is_in_use(self, device: str) -> bool:
        """Mounted, or held by device-mapper (LUKS/LVM) on the disk or a partition."""
        if mounts_of(self.runner, device):
            return True
        base = os.path.basename(device)
        if self.runner.list_dir(self._sysfs(device, "holders")):
            return True
        for child in self.runner.list_dir(self._sysfs(device)):
            if child.startswith(base + "p") and self.runner.list_dir(self._sysfs(device, child, "holders")):
                return True
        return False

    def ensure_module(self) -> None:
        if self.runner.path_exists("/sys/module/nbd"):
            return
        self.logger.info("Loading nbd kernel module")
        res = self.runner.run(["modprobe", "nbd", f"nbds_max={self.max_devices}", "max_part=16"], timeout=30)
        if not res.ok:
            raise PreconditionViolation(
                msg=f"Failed to load nbd module: {res.diagnostic(1)}",
                remediation="Install the kernel's nbd module and run as root.",
            )
        if not wait_until(
            lambda: self.runner.path_exists(os.path.join(self.SYSFS_BLOCK, "nbd0")),
            attempts=self.poll_attempts,
            interval_s=self.poll_interval_s,
            sleep=self.runner.sleep,
        ):
            raise DeviceNotReady(msg="nbd module loaded but no /dev/nbd* devices appeared")

    def find_free(self) -> Optional[str]:
        for i in range(self.max_devices):
            dev = f"/dev/nbd{i}"
            if resource_key(ResourceKind.BLOCK_DEVICE, dev) in self.ledger:
                continue
            if not self.runner.path_exists(self._sysfs(dev)):
                continue
            if self.server_pid(dev) is None:
                return dev
        return None

    # -----------------------
    # attach / detach
    # -----------------------

    def attach(self, image: DiskImage) -> AttachedBlockDevice:
        self.images.ensure_not_held(image.path, self.confirm)
        self.ensure_module()

        device = self.find_free()
        if device is None:
            raise DeviceNotReady(
                msg=f"No free NBD device among /dev/nbd0..{self.max_devices - 1}",
                context={"max_devices": self.max_devices},
            )

        # Recorded before connecting: an interrupt mid-attach still detaches.
        key = self.ledger.append(
            ResourceEntry(
                ResourceKind.BLOCK_DEVICE,
                device,
                release=lambda d=device: self._detach(d),
                detail={"image": str(image.path), "format": image.format.value},
            )
        ).key

        try:
            retry_operation(
                lambda: self._connect_once(image, device),
                max_attempts=self.retries,
                base_backoff_s=self.backoff_s,
                exceptions=TransientFailure,
                operation_name=f"qemu-nbd connect {device}",
                logger=self.logger,
                sleep=self.runner.sleep,
            )
        except TransientFailure as e:
            try:
                self.ledger.release(key)
            except TeardownWarning as tw:
                self.logger.error("Could not release %s after failed attach: %s", device, tw)
            raise AttachFailed(
                msg=f"Could not attach {image.path} after {self.retries} attempt(s): {e.msg}",
                cause=e,
                context={"attempts": self.retries, "device": device, "image": str(image.path), "last_error": type(e).__name__},
                remediation=e.remediation,
            ) from e

        self.logger.info("Attached %s to %s (server pid %s)", image.path, device, self.server_pid(device))
        return AttachedBlockDevice(path=device, image=image)

    def _connect_once(self, image: DiskImage, device: str) -> None:
        res = self.runner.run(
            ["qemu-nbd", f"--connect={device}", "-f", image.format.value, str(image.path)],
            timeout=self.timeout_s,
        )
        if res.timed_out:
            self._disconnect_quiet(device)
            raise AttachTimeout(msg=f"qemu-nbd did not connect {device} within {self.timeout_s}s")
        if not res.ok:
            self._disconnect_quiet(device)
            raise DeviceNotReady(msg=f"qemu-nbd --connect {device} failed: {res.diagnostic(1)}")

        if not wait_until(
            lambda: self.is_connected(device),
            attempts=self.poll_attempts,
            interval_s=self.poll_interval_s,
            sleep=self.runner.sleep,
        ):
            self._disconnect_quiet(device)
            raise DeviceNotReady(msg=f"{device} did not become ready after qemu-nbd --connect")

    def _disconnect_quiet(self, device: str) -> None:
        res = self.runner.run(["qemu-nbd", "--disconnect", device], timeout=self.timeout_s)
        if not res.ok:
            self.logger.debug("Cleanup disconnect of %s failed: %s", device, res.diagnostic(1))

    def detach(self, device: str) -> None:
        """Idempotent: detaching an already-detached device succeeds."""
        key = resource_key(ResourceKind.BLOCK_DEVICE, device)
        if key in self.ledger:
            self.ledger.release(key)
        else:
            self._detach(device)

    def _detach(self, device: str) -> None:
        if not self.is_connected(device):
            self.logger.debug("%s already detached", device)
            return

        for m in mounts_of(self.runner, device):
            self.logger.warning("Unmounting leftover %s from %s", m.source, m.target)
            if not unmount(self.runner, self.logger, m.target):
                self.logger.warning("Could not unmount %s", m.target)

        res = self.runner.run(["qemu-nbd", "--disconnect", device], timeout=self.timeout_s)
        if not res.ok:
            self.logger.warning("qemu-nbd --disconnect %s failed: %s", device, res.diagnostic(1))
            if self.runner.which("nbd-client"):
                self.runner.run(["nbd-client", "-d", device], timeout=self.timeout_s)

        if not wait_until(
            lambda: not self.is_connected(device),
            attempts=self.poll_attempts,
            interval_s=self.poll_interval_s,
            sleep=self.runner.sleep,
        ):
            raise TeardownWarning(
                msg=f"{device} is still connected after disconnect",
                context={"device": device},
                remediation=f"Close whatever holds {device}, then run 'qemu-nbd --disconnect {device}'.",
            )
        self.logger.info("Detached %s", device)
