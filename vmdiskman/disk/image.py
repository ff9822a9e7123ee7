# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/disk/image.py
"""
Disk image file helpers: format probing, holder scan, growth and backup.

Everything here runs before the first block device is attached, so every
failure is a PreconditionViolation (or a subclass) and leaves nothing to tear
down.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..core.exceptions import (
    ImageLocked,
    InsufficientSpace,
    PreconditionViolation,
    StructuralFailure,
    UnsupportedImageFormat,
)
from ..core.runner import ProcessRunner
from ..core.utils import U
from .models import DiskImage, ImageFormat


@dataclass(frozen=True)
class Holder:
    pid: int
    command: str = ""

    def __str__(self) -> str:
        return f"{self.pid} ({self.command or '?'})"


class ImageTool:
    # Head-room for qcow2 metadata when checking free space.
    METADATA_SLACK = 64 * 1024**2

    def __init__(self, runner: ProcessRunner, logger: logging.Logger):
        self.runner = runner
        self.logger = logger

    def probe(self, path: Path, declared: Optional[str] = None) -> DiskImage:
        path = Path(path)
        if not self.runner.path_exists(str(path)):
            raise PreconditionViolation(msg=f"Image not found: {path}", context={"image": str(path)})

        fmt: Optional[ImageFormat] = None
        vsize: Optional[int] = None

        res = self.runner.run(["qemu-img", "info", "--output=json", str(path)], timeout=60)
        if res.ok:
            try:
                info = json.loads(res.stdout or "{}")
            except ValueError as e:
                self.logger.debug("qemu-img info returned unparseable JSON: %s", e)
                info = {}
            raw_fmt = info.get("format")
            if raw_fmt:
                fmt = ImageFormat.parse(raw_fmt)
                if fmt is None:
                    raise UnsupportedImageFormat(
                        msg=f"Unsupported image format '{raw_fmt}': {path}",
                        context={"image": str(path), "format": raw_fmt},
                    )
            if info.get("virtual-size") is not None:
                vsize = int(info["virtual-size"])
        else:
            self.logger.debug("qemu-img info failed for %s: %s", path, res.diagnostic(1))

        if declared:
            want = ImageFormat.parse(declared)
            if want is None:
                raise UnsupportedImageFormat(msg=f"Unsupported image format '{declared}'", context={"format": declared})
            if fmt is not None and fmt != want:
                self.logger.warning("Declared format %s differs from detected %s; using %s", want.value, fmt.value, want.value)
            fmt = want

        if fmt is None:
            fmt = ImageFormat.RAW
        if vsize is None and fmt == ImageFormat.RAW:
            vsize = self.runner.file_size(str(path))

        img = DiskImage(path=path, format=fmt, virtual_size=vsize)
        self.logger.debug("Image %s: format=%s virtual-size=%s", path, fmt.value, U.human_bytes(vsize))
        return img

    def holders(self, path: Path) -> List[Holder]:
        """
        Processes holding `path` open, from `lsof -F pc` field output.
        lsof exits 1 when nothing holds the file.
        """
        res = self.runner.run(["lsof", "-w", "-F", "pc", str(path)], timeout=30)
        if res.returncode == ProcessRunner.NOT_FOUND_RC:
            self.logger.warning("lsof not found; cannot verify that %s is not in use", path)
            return []

        found: Dict[int, str] = {}
        pid: Optional[int] = None
        for line in res.stdout.splitlines():
            tag, val = line[:1], line[1:]
            if tag == "p":
                pid = int(val) if val.isdigit() else None
                if pid is not None:
                    found.setdefault(pid, "")
            elif tag == "c" and pid is not None:
                found[pid] = val
        return [Holder(pid=p, command=c) for p, c in found.items()]

    def terminate_holders(self, holders: List[Holder], *, grace_s: float = 1.0) -> None:
        for h in holders:
            self.logger.warning("Terminating %s holding the image", h)
            self.runner.run(["kill", "-TERM", str(h.pid)])
        self.runner.sleep(grace_s)
        for h in holders:
            if self.runner.pid_alive(h.pid):
                self.logger.warning("Killing %s", h)
                self.runner.run(["kill", "-KILL", str(h.pid)])
        self.runner.sleep(grace_s)

    def ensure_not_held(self, path: Path, confirm: Optional[Callable[[str], bool]] = None) -> None:
        """
        Refuse to touch an image another process holds open. With a confirm
        callback the operator may choose to terminate the holders.
        """
        holders = self.holders(path)
        if not holders:
            self.logger.debug("File lock check passed for %s", path)
            return

        listing = ", ".join(str(h) for h in holders)
        self.logger.warning("%s is in use by: %s", path, listing)
        ctx = {"image": str(path), "holders": [h.pid for h in holders]}

        if confirm is None or not confirm(f"{path} is in use by {listing}. Terminate these processes and continue?"):
            raise ImageLocked(msg=f"Image is in use by {listing}: {path}", context=ctx)

        self.terminate_holders(holders)
        still = self.holders(path)
        if still:
            raise ImageLocked(
                msg=f"Could not release {path}; still held by {', '.join(str(h) for h in still)}",
                context=ctx,
            )

    def check_free_space(self, image: DiskImage, target_size: int) -> None:
        current = image.virtual_size or self.runner.file_size(str(image.path)) or 0
        needed = max(0, target_size - current)
        if image.format != ImageFormat.RAW:
            needed += self.METADATA_SLACK
        free = self.runner.disk_free(str(image.path.parent))
        self.logger.debug("Free space check: need=%s free=%s", U.human_bytes(needed), U.human_bytes(free))
        if free < needed:
            raise InsufficientSpace(
                msg=f"Not enough free space: need {U.human_bytes(needed)}, have {U.human_bytes(free)}",
                context={"image": str(image.path), "needed": needed, "free": free},
            )

    def grow(self, image: DiskImage, target_size: int) -> DiskImage:
        current = image.virtual_size or 0
        if target_size < current:
            raise PreconditionViolation(
                msg=f"Refusing to shrink {image.path} from {U.human_bytes(current)} to {U.human_bytes(target_size)}",
                context={"image": str(image.path), "current": current, "target": target_size},
                remediation="Shrinking is not supported; choose a size larger than the current one.",
            )
        if target_size == current:
            self.logger.info("Image already %s; not resizing", U.human_bytes(current))
            return image

        res = self.runner.run(
            ["qemu-img", "resize", "-f", image.format.value, str(image.path), str(target_size)],
            timeout=600,
        )
        if not res.ok:
            raise StructuralFailure(
                msg=f"qemu-img resize failed: {res.diagnostic(1)}",
                context={"image": str(image.path), "target": target_size},
                remediation="Check the image with 'qemu-img check' and retry.",
            )
        self.logger.info("Image grown: %s -> %s", U.human_bytes(current), U.human_bytes(target_size))
        return DiskImage(path=image.path, format=image.format, virtual_size=target_size)

    def backup(self, image: DiskImage) -> Path:
        dest = image.path.with_name(f"{image.path.stem}.backup_{U.now_ts()}{image.path.suffix}")
        self.logger.info("Backing up %s -> %s", image.path, dest)
        res = self.runner.run(["cp", "--sparse=always", str(image.path), str(dest)], timeout=None)
        if not res.ok:
            raise PreconditionViolation(
                msg=f"Backup failed: {res.diagnostic(1)}",
                context={"image": str(image.path), "backup": str(dest)},
                remediation="Free up space for the backup or re-run without --backup.",
            )
        return dest
