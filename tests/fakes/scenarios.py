# SPDX-License-Identifier: LGPL-3.0-or-later
"""Ready-made disk layouts for FakeHost."""
from __future__ import annotations

from fakes.fake_host import GiB, MiB, FakeHost, FakeImage, FakeLuks, FakeLV, FakePartition, FakeVG, filling_partition

PASSPHRASE = "correct horse"


def plain_image(host: FakeHost, path: str = "/vm/disk.raw", *, size: int = 10 * GiB, fs: str = "ext4", table: str = "msdos", fmt: str = "raw") -> FakeImage:
    """One partition filling the disk."""
    return host.add_image(path, size, fmt=fmt, table=table, partitions=[filling_partition(size, table=table, fs=fs)])


def boot_and_root(host: FakeHost, path: str = "/vm/disk.qcow2", *, size: int = 10 * GiB, root_fs: str = "ext4", table: str = "msdos") -> FakeImage:
    """A 512 MiB boot partition followed by a root partition filling the rest."""
    boot = FakePartition(index=1, start=MiB, end=513 * MiB - 1, fs="ext4", flags="boot")
    root = filling_partition(size, table=table, index=2, start=513 * MiB, fs=root_fs)
    return host.add_image(path, size, fmt="qcow2", table=table, partitions=[boot, root])


def root_then_swap(host: FakeHost, path: str = "/vm/swaplast.raw", *, size: int = 10 * GiB) -> FakeImage:
    """Root first, swap last: the root cannot grow in place."""
    root = FakePartition(index=1, start=MiB, end=8 * GiB - 1, fs="ext4")
    swap = filling_partition(size, index=2, start=8 * GiB, fs="linux-swap(v1)")
    return host.add_image(path, size, partitions=[root, swap])


def luks_image(host: FakeHost, path: str = "/vm/crypt.raw", *, size: int = 10 * GiB, fs: str = "ext4", table: str = "msdos") -> FakeImage:
    boot = FakePartition(index=1, start=MiB, end=513 * MiB - 1, fs="ext4", flags="boot")
    crypt = filling_partition(size, table=table, index=2, start=513 * MiB, luks=FakeLuks(PASSPHRASE, fs=fs))
    return host.add_image(path, size, table=table, partitions=[boot, crypt])


def lvm_image(host: FakeHost, path: str = "/vm/lvm.raw", *, size: int = 10 * GiB, vg: str = "guestvg") -> FakeImage:
    pv_size = size - 513 * MiB
    group = FakeVG(vg, [FakeLV("root", pv_size - 4 * MiB, fs="ext4")])
    boot = FakePartition(index=1, start=MiB, end=513 * MiB - 1, fs="ext4", flags="boot")
    pv = filling_partition(size, index=2, start=513 * MiB, vg=group)
    return host.add_image(path, size, partitions=[boot, pv])


def luks_lvm_image(host: FakeHost, path: str = "/vm/cryptlvm.raw", *, size: int = 10 * GiB, vg: str = "cryptvg", lvs=("root",)) -> FakeImage:
    mapped = size - 513 * MiB - 16 * MiB
    each = (mapped - 4 * MiB) // len(lvs)
    group = FakeVG(vg, [FakeLV(name, each, fs="ext4") for name in lvs])
    boot = FakePartition(index=1, start=MiB, end=513 * MiB - 1, fs="ext4", flags="boot")
    crypt = filling_partition(size, index=2, start=513 * MiB, luks=FakeLuks(PASSPHRASE, vg=group))
    return host.add_image(path, size, partitions=[boot, crypt])


def extended_image(host: FakeHost, path: str = "/vm/extended.raw", *, size: int = 10 * GiB) -> FakeImage:
    """MBR with boot, an extended container and one logical root inside it."""
    boot = FakePartition(index=1, start=MiB, end=513 * MiB - 1, fs="ext4", flags="boot")
    ext = filling_partition(size, index=2, start=513 * MiB, fs="", flags="lba")
    root = filling_partition(size, index=5, start=514 * MiB, fs="ext4")
    return host.add_image(path, size, partitions=[boot, ext, root])
