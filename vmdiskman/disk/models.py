# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/disk/models.py

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from ..core.exceptions import VmDiskError


# `file -s` quotes user-chosen names: volume name "x", label "x", label: "x".
_LABEL_RE = re.compile(r'(?:volume name|label:?)\s*"[^"]*"')


class ImageFormat(str, Enum):
    RAW = "raw"
    QCOW2 = "qcow2"
    VPC = "vpc"
    VHDX = "vhdx"
    VMDK = "vmdk"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["ImageFormat"]:
        v = (value or "").strip().lower()
        if v == "vhd":
            v = "vpc"
        for f in cls:
            if f.value == v:
                return f
        return None


class FilesystemKind(str, Enum):
    EXT2 = "ext2"
    EXT3 = "ext3"
    EXT4 = "ext4"
    NTFS = "ntfs"
    BTRFS = "btrfs"
    XFS = "xfs"
    VFAT = "vfat"
    SWAP = "swap"
    LUKS = "crypto_LUKS"
    LVM = "LVM2_member"
    UNKNOWN = "unknown"

    @property
    def is_ext(self) -> bool:
        return self in (FilesystemKind.EXT2, FilesystemKind.EXT3, FilesystemKind.EXT4)

    @classmethod
    def parse(cls, value: Optional[str]) -> "FilesystemKind":
        """
        Map a tool's filesystem label to a kind. Accepts blkid/lsblk names
        (ext4, crypto_LUKS, LVM2_member), parted names (linux-swap(v1), fat32)
        and `file -s` phrases ("Linux rev 1.0 ext4 filesystem data").
        """
        v = (value or "").strip()
        if not v:
            return cls.UNKNOWN
        low = v.lower()

        for f in cls:
            if f.value.lower() == low:
                return f

        low = _LABEL_RE.sub("", low)
        if "luks" in low:
            return cls.LUKS
        if "lvm2" in low:
            return cls.LVM
        for ext in (cls.EXT4, cls.EXT3, cls.EXT2):
            if ext.value in low:
                return ext
        if "ntfs" in low:
            return cls.NTFS
        if "btrfs" in low:
            return cls.BTRFS
        if "xfs" in low:
            return cls.XFS
        if "swap" in low:
            return cls.SWAP
        if "fat" in low:
            return cls.VFAT
        return cls.UNKNOWN


class PartitionTableKind(str, Enum):
    GPT = "gpt"
    MBR = "msdos"
    NONE = "none"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "PartitionTableKind":
        v = (value or "").strip().lower()
        if v == "gpt":
            return cls.GPT
        if v in ("msdos", "dos", "mbr"):
            return cls.MBR
        if v in ("loop", "none", ""):
            return cls.NONE
        return cls.UNKNOWN


class ResizeOutcome(str, Enum):
    RESIZED = "resized"
    RESIZED_WITH_WARNINGS = "resized_with_warnings"
    MANUAL_STEP_REQUIRED = "manual_step_required"
    FAILED = "failed"


class ContainerState(str, Enum):
    LOCKED = "locked"
    UNLOCKING = "unlocking"
    OPEN = "open"
    CLOSED = "closed"


class UnlockFailureKind(str, Enum):
    WRONG_CREDENTIAL = "wrong_credential"
    TIMEOUT = "timeout"
    OTHER = "other"


@dataclass(frozen=True)
class DiskImage:
    path: Path
    format: ImageFormat = ImageFormat.RAW
    virtual_size: Optional[int] = None


@dataclass
class AttachedBlockDevice:
    path: str
    image: DiskImage
    attached: bool = True


@dataclass
class EncryptedContainer:
    partition: str
    mapper_name: str
    state: ContainerState = ContainerState.LOCKED
    attempts: int = 0

    @property
    def mapper_path(self) -> str:
        return f"/dev/mapper/{self.mapper_name}"


@dataclass
class LogicalVolume:
    vg_name: str
    name: str
    size: Optional[int] = None
    active: bool = False

    @property
    def path(self) -> str:
        return f"/dev/{self.vg_name}/{self.name}"


@dataclass
class VolumeGroup:
    name: str
    physical_volume: str
    active: bool = False
    logical_volumes: List[LogicalVolume] = field(default_factory=list)


@dataclass(frozen=True)
class PartitionTableEntry:
    index: int
    start: int
    end: int
    size: int
    fs_kind: FilesystemKind = FilesystemKind.UNKNOWN
    is_boot: bool = False
    is_last: bool = False
    name: str = ""
    flags: str = ""
    is_extended: bool = False


@dataclass(frozen=True)
class UnlockFailure:
    kind: UnlockFailureKind
    attempt: int
    detail: str = ""


@dataclass
class Result:
    """
    Outcome of one public lifecycle operation. Failures carry the typed
    error so callers can render its remediation.
    """
    ok: bool
    message: str = ""
    error: Optional[VmDiskError] = None
    outcome: Optional[ResizeOutcome] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def success(cls, message: str = "", **kw) -> "Result":
        return cls(ok=True, message=message, **kw)

    @classmethod
    def failure(cls, error: VmDiskError, **kw) -> "Result":
        return cls(ok=False, message=error.user_message(), error=error, **kw)
