# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for per-filesystem grow strategies."""
from __future__ import annotations

import pytest
from fakes.fake_host import GiB, MiB, FakeHost
from fakes.fake_logger import FakeLogger
from fakes.scenarios import plain_image
from vmdiskman.core.ledger import ResourceLedger
from vmdiskman.disk.filesystem import FilesystemResizer
from vmdiskman.disk.models import FilesystemKind, ResizeOutcome
from vmdiskman.disk.mount import Mounter

DEV = "/dev/nbd0p1"


def _setup(host, fs):
    img = plain_image(host, fs=fs)
    host.plug("/vm/disk.raw")
    part = img.part(1)
    part.fs_size = part.size - 512 * MiB
    return part


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def resizer(host):
    log = FakeLogger()
    return FilesystemResizer(host, log, mounter=Mounter(host, ResourceLedger(log), log, pid=777))


@pytest.mark.unit
class TestExt:
    def test_check_resize_verify(self, host, resizer):
        part = _setup(host, "ext4")
        report = resizer.grow(DEV, FilesystemKind.EXT4)

        assert report.outcome == ResizeOutcome.RESIZED
        assert part.fs_size == part.size
        tools = [c[0] for c in host.commands]
        assert tools == ["e2fsck", "resize2fs", "e2fsck"]
        assert host.commands[0] == ("e2fsck", "-f", "-p", DEV)
        assert host.commands[2] == ("e2fsck", "-f", "-n", DEV)

    def test_corrected_errors_are_fine(self, host, resizer):
        _setup(host, "ext4")
        host.e2fsck_rc = 1
        assert resizer.grow(DEV, FilesystemKind.EXT4).outcome == ResizeOutcome.RESIZED

    def test_precheck_failure_stops_before_resize(self, host, resizer):
        part = _setup(host, "ext4")
        host.e2fsck_rc = 4
        report = resizer.grow(DEV, FilesystemKind.EXT4)
        assert report.outcome == ResizeOutcome.FAILED
        assert "e2fsck -f" in report.remediation
        assert host.count("resize2fs") == 0
        assert part.fs_size == part.size - 512 * MiB

    def test_postcheck_failure_is_a_warning(self, host, resizer):
        _setup(host, "ext4")
        host.e2fsck_post_rc = 4
        report = resizer.grow(DEV, FilesystemKind.EXT4)
        assert report.outcome == ResizeOutcome.RESIZED_WITH_WARNINGS
        assert report.ok
        assert report.warnings

    def test_resize2fs_failure(self, host, resizer):
        _setup(host, "ext4")
        host.fail("resize2fs", stderr="resize2fs: Bad magic number")
        assert resizer.grow(DEV, FilesystemKind.EXT4).outcome == ResizeOutcome.FAILED

    def test_missing_tools(self, host, resizer):
        _setup(host, "ext4")
        host.missing_tools.add("resize2fs")
        report = resizer.grow(DEV, FilesystemKind.EXT4)
        assert report.outcome == ResizeOutcome.MANUAL_STEP_REQUIRED
        assert "e2fsprogs" in report.remediation
        assert host.commands == []


@pytest.mark.unit
class TestNtfs:
    def test_simulation_then_real_run(self, host, resizer):
        part = _setup(host, "ntfs")
        report = resizer.grow(DEV, FilesystemKind.NTFS)
        assert report.outcome == ResizeOutcome.RESIZED
        resizes = host.ran("ntfsresize")
        assert resizes == [("ntfsresize", "--force", "--no-action", DEV), ("ntfsresize", "--force", DEV)]
        assert part.fs_size == part.size

    def test_failed_simulation_means_no_real_resize(self, host, resizer):
        part = _setup(host, "ntfs")
        host.ntfs_sim_fails = True
        report = resizer.grow(DEV, FilesystemKind.NTFS)
        assert report.outcome == ResizeOutcome.FAILED
        assert "chkdsk" in report.remediation
        assert host.count("ntfsresize") == 1
        assert part.fs_size == part.size - 512 * MiB

    def test_ntfsfix_failure_is_a_warning(self, host, resizer):
        _setup(host, "ntfs")
        host.fail("ntfsfix")
        report = resizer.grow(DEV, FilesystemKind.NTFS)
        assert report.outcome == ResizeOutcome.RESIZED_WITH_WARNINGS


@pytest.mark.unit
class TestBtrfs:
    def test_grows_on_temporary_mount(self, host, resizer):
        part = _setup(host, "btrfs")
        report = resizer.grow(DEV, FilesystemKind.BTRFS)
        assert report.outcome == ResizeOutcome.RESIZED
        assert ("btrfs", "filesystem", "resize", "max", "/mnt/vmdiskman_777_1") in host.commands
        assert host.mounts == []
        assert part.fs_size == part.size
        assert len(resizer.mounter.ledger) == 0

    def test_without_mounter(self, host):
        _setup(host, "btrfs")
        report = FilesystemResizer(host, FakeLogger()).grow(DEV, FilesystemKind.BTRFS)
        assert report.outcome == ResizeOutcome.MANUAL_STEP_REQUIRED

    def test_resize_failure_still_unmounts(self, host, resizer):
        _setup(host, "btrfs")
        host.fail("btrfs", "filesystem")
        report = resizer.grow(DEV, FilesystemKind.BTRFS)
        assert report.outcome == ResizeOutcome.FAILED
        assert host.mounts == []


@pytest.mark.unit
class TestManual:
    def test_xfs_is_manual_and_untouched(self, host, resizer):
        _setup(host, "xfs")
        report = resizer.grow(DEV, FilesystemKind.XFS)
        assert report.outcome == ResizeOutcome.MANUAL_STEP_REQUIRED
        assert "xfs_growfs" in report.remediation
        assert host.commands == []

    @pytest.mark.parametrize("kind", [FilesystemKind.VFAT, FilesystemKind.UNKNOWN, FilesystemKind.SWAP, FilesystemKind.LUKS])
    def test_other_kinds(self, host, resizer, kind):
        report = resizer.grow(DEV, kind)
        assert report.outcome == ResizeOutcome.MANUAL_STEP_REQUIRED
        assert report.remediation
        assert not report.ok

    def test_every_kind_has_a_handler(self, host, resizer):
        for kind in FilesystemKind:
            assert resizer.grow(DEV, kind).outcome in set(ResizeOutcome)

    def test_size_of_fixture(self, host):
        part = _setup(host, "ext4")
        assert part.size == 10 * GiB - MiB
