# vmdiskman/disk/__init__.py
from .filesystem import FilesystemResizer, GrowReport
from .image import ImageTool
from .inspector import FilesystemInspector
from .luks import CredentialProvider, EncryptedVolumeOpener, StaticCredentialProvider
from .lvm import LogicalVolumeActivator
from .models import (
    DiskImage,
    FilesystemKind,
    ImageFormat,
    PartitionTableEntry,
    ResizeOutcome,
    Result,
)
from .mount import Mounter
from .nbd import BlockDeviceAttacher
from .partition import PartitionResizer

__all__ = [
    "BlockDeviceAttacher",
    "CredentialProvider",
    "DiskImage",
    "EncryptedVolumeOpener",
    "FilesystemInspector",
    "FilesystemKind",
    "FilesystemResizer",
    "GrowReport",
    "ImageFormat",
    "ImageTool",
    "LogicalVolumeActivator",
    "Mounter",
    "PartitionResizer",
    "PartitionTableEntry",
    "ResizeOutcome",
    "Result",
    "StaticCredentialProvider",
]
