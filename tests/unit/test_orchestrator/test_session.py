# SPDX-License-Identifier: LGPL-3.0-or-later
"""
Whole-lifecycle scenarios for DiskSession against the simulated host.

Every scenario ends by checking the host: nothing mounted, no mapping open,
no volume group active and no NBD device connected unless the scenario
deliberately left something stuck.
"""
from __future__ import annotations

import signal

import pytest
from fakes.fake_host import GiB, MiB, FakeHost, FakeLuks, FakePartition
from fakes.fake_logger import FakeLogger
from fakes.scenarios import PASSPHRASE, boot_and_root, luks_image, luks_lvm_image, lvm_image, plain_image, root_then_swap
from vmdiskman.core.exceptions import (
    ImageLocked,
    LifecycleStateError,
    MaxAttemptsExceeded,
    NotLastPartition,
    PreconditionViolation,
    SessionInterrupted,
    StructuralFailure,
    TeardownWarning,
    VolumeGroupConflict,
)
from vmdiskman.core.ledger import ResourceKind
from vmdiskman.disk.luks import StaticCredentialProvider
from vmdiskman.disk.models import ResizeOutcome
from vmdiskman.orchestrator.session import DiskSession, SessionConfig, SessionState, teardown

PID = 777
MAPPER = f"luks_nbd0p2_{PID}"


@pytest.fixture
def host():
    return FakeHost()


def make_session(host, *, confirm=None, states=None, **cfg):
    cfg.setdefault("poll_interval_s", 0)
    cfg.setdefault("settle_delay_s", 0)
    return DiskSession(
        host,
        FakeLogger(),
        config=SessionConfig(**cfg),
        confirm=confirm,
        on_state=states.append if states is not None else None,
        pid=PID,
    )


def assert_host_clean(host):
    assert host.mounts == []
    assert host.mappers == {}
    assert host.connected == {}
    for img in host.images.values():
        for p in img.partitions:
            vg = p.vg or (p.luks.vg if p.luks else None)
            if vg is not None:
                assert not any(lv.active for lv in vg.lvs)


def index_of(host, *cmd):
    return host.commands.index(tuple(cmd))


@pytest.mark.scenario
class TestResizeScenarios:
    def test_ext4_grows_from_10_to_20_gib(self, host):
        img = plain_image(host, size=10 * GiB)
        states = []
        s = make_session(host, states=states)

        assert s.prepare_image("/vm/disk.raw", 20 * GiB).ok
        dev, r = s.attach("/vm/disk.raw")
        assert r.ok and dev == "/dev/nbd0"
        entries = s.inspect_partitions(dev)
        assert [e.index for e in entries] == [1]

        r = s.resize(dev, 1, 20 * GiB)
        assert r.ok
        assert r.outcome == ResizeOutcome.RESIZED

        part = img.part(1)
        assert part.fs_size == 20 * GiB - MiB
        assert part.fs_size >= 20 * GiB - 2 * MiB

        assert teardown(s).ok
        assert len(s.ledger) == 0
        assert s.state == SessionState.DONE
        assert states == [
            SessionState.ATTACHING,
            SessionState.INSPECTING,
            SessionState.RESIZING,
            SessionState.DETACHING,
            SessionState.DONE,
        ]
        assert_host_clean(host)

    def test_luks_resize_grows_mapping_and_filesystem(self, host):
        img = luks_image(host, size=10 * GiB)
        s = make_session(host)
        assert s.prepare_image("/vm/crypt.raw", 15 * GiB).ok
        dev, _ = s.attach("/vm/crypt.raw")
        s.inspect_partitions(dev)
        mapper, r = s.unlock("/dev/nbd0p2", StaticCredentialProvider(PASSPHRASE))
        assert r.ok and mapper == f"/dev/mapper/{MAPPER}"

        r = s.resize(dev, 2)
        assert r.outcome == ResizeOutcome.RESIZED

        luks = img.part(2).luks
        assert luks.mapped_size == img.part(2).size - 16 * MiB
        assert luks.fs_size == luks.mapped_size
        assert img.part(2).end == 15 * GiB - 1
        assert s.teardown().ok
        assert_host_clean(host)

    def test_luks_lvm_resize_extends_logical_volume(self, host):
        img = luks_lvm_image(host, size=10 * GiB)
        s = make_session(host)
        assert s.prepare_image("/vm/cryptlvm.raw", 20 * GiB).ok
        dev, _ = s.attach("/vm/cryptlvm.raw")
        s.inspect_partitions(dev)
        mapper, _ = s.unlock("/dev/nbd0p2", StaticCredentialProvider(PASSPHRASE))
        lvs, r = s.activate_volume_groups(mapper)
        assert [lv.path for lv in lvs] == ["/dev/cryptvg/root"]

        before = img.part(2).luks.vg.lvs[0].size
        r = s.resize(dev, 2, 20 * GiB)
        assert r.ok and r.outcome == ResizeOutcome.RESIZED

        lv = img.part(2).luks.vg.lvs[0]
        assert lv.size == before + 10 * GiB + 4 * MiB
        assert lv.fs_size == lv.size
        assert s.teardown().ok
        assert_host_clean(host)

    def test_lvm_with_several_volumes_needs_a_choice(self, host):
        luks_lvm_image(host, lvs=("root", "home"))
        s = make_session(host)
        dev, _ = s.attach("/vm/cryptlvm.raw")
        s.inspect_partitions(dev)
        mapper, _ = s.unlock("/dev/nbd0p2", StaticCredentialProvider(PASSPHRASE))
        s.activate_volume_groups(mapper)

        r = s.resize(dev, 2)
        assert not r.ok
        assert isinstance(r.error, PreconditionViolation)
        assert "--lv" in r.error.remediation
        assert_host_clean(host)

    def test_lvm_choice_from_config(self, host):
        img = luks_lvm_image(host, lvs=("root", "home"))
        s = make_session(host, lv="cryptvg/home")
        s.prepare_image("/vm/cryptlvm.raw", 12 * GiB)
        dev, _ = s.attach("/vm/cryptlvm.raw")
        s.inspect_partitions(dev)
        mapper, _ = s.unlock("/dev/nbd0p2", StaticCredentialProvider(PASSPHRASE))
        s.activate_volume_groups(mapper)

        root, home = img.part(2).luks.vg.lvs
        root_before, home_before = root.size, home.size
        assert s.resize(dev, 2).ok
        assert root.size == root_before
        assert home.size > home_before
        s.teardown()

    def test_plain_lvm_resize(self, host):
        img = lvm_image(host)
        s = make_session(host)
        s.prepare_image("/vm/lvm.raw", 11 * GiB)
        dev, _ = s.attach("/vm/lvm.raw")
        s.inspect_partitions(dev)
        lvs, r = s.activate_volume_groups("/dev/nbd0p2")
        assert r.ok and len(lvs) == 1
        assert s.resize(dev, 2).ok
        lv = img.part(2).vg.lvs[0]
        assert lv.fs_size == lv.size
        s.teardown()
        assert_host_clean(host)

    def test_inactive_lvm_refused_before_table_change(self, host):
        lvm_image(host)
        s = make_session(host)
        s.prepare_image("/vm/lvm.raw", 11 * GiB)
        dev, _ = s.attach("/vm/lvm.raw")
        s.inspect_partitions(dev)
        r = s.resize(dev, 2)
        assert isinstance(r.error, PreconditionViolation)
        assert host.count("parted", "--script") == 0

    def test_locked_luks_refused(self, host):
        luks_image(host)
        s = make_session(host)
        dev, _ = s.attach("/vm/crypt.raw")
        s.inspect_partitions(dev)
        r = s.resize(dev, 2)
        assert not r.ok
        assert "unlock it" in r.message
        assert_host_clean(host)

    def test_xfs_is_manual_step(self, host):
        plain_image(host, fs="xfs")
        s = make_session(host)
        s.prepare_image("/vm/disk.raw", 20 * GiB)
        dev, _ = s.attach("/vm/disk.raw")
        s.inspect_partitions(dev)
        r = s.resize(dev, 1)
        assert r.ok
        assert r.outcome == ResizeOutcome.MANUAL_STEP_REQUIRED
        assert "xfs_growfs" in r.message
        s.teardown()
        assert_host_clean(host)

    def test_postcheck_warning_outcome(self, host):
        plain_image(host)
        host.e2fsck_post_rc = 4
        s = make_session(host)
        s.prepare_image("/vm/disk.raw", 20 * GiB)
        dev, _ = s.attach("/vm/disk.raw")
        s.inspect_partitions(dev)
        r = s.resize(dev, 1)
        assert r.ok
        assert r.outcome == ResizeOutcome.RESIZED_WITH_WARNINGS
        assert r.warnings

    def test_already_full_is_a_warning(self, host):
        plain_image(host)
        s = make_session(host)
        dev, _ = s.attach("/vm/disk.raw")
        s.inspect_partitions(dev)
        r = s.resize(dev, 1)
        assert r.ok
        assert any("already filled" in w for w in r.warnings)

    def test_not_last_partition(self, host):
        img = root_then_swap(host)
        s = make_session(host)
        s.prepare_image("/vm/swaplast.raw", 20 * GiB)
        dev, _ = s.attach("/vm/swaplast.raw")
        s.inspect_partitions(dev)
        r = s.resize(dev, 1)
        assert isinstance(r.error, NotLastPartition)
        assert img.part(1).end == 8 * GiB - 1
        assert s.state == SessionState.DONE
        assert_host_clean(host)

    def test_device_smaller_than_target(self, host):
        plain_image(host)
        s = make_session(host)
        dev, _ = s.attach("/vm/disk.raw")
        r = s.resize(dev, 1, 20 * GiB)
        assert isinstance(r.error, PreconditionViolation)
        assert "qemu-img resize" in r.error.remediation
        assert_host_clean(host)


@pytest.mark.scenario
class TestFailureInjection:
    def _open_stack(self, host):
        luks_lvm_image(host)
        s = make_session(host)
        s.prepare_image("/vm/cryptlvm.raw", 20 * GiB)
        dev, _ = s.attach("/vm/cryptlvm.raw")
        s.inspect_partitions(dev)
        mapper, _ = s.unlock("/dev/nbd0p2", StaticCredentialProvider(PASSPHRASE))
        s.activate_volume_groups(mapper)
        return s, dev

    def test_failed_resize_releases_in_reverse_order(self, host):
        s, dev = self._open_stack(host)
        host.fail("resize2fs", stderr="resize2fs: Permission denied")

        r = s.resize(dev, 2)

        assert not r.ok
        assert isinstance(r.error, StructuralFailure)
        assert s.state == SessionState.DONE
        assert len(s.ledger) == 0
        assert index_of(host, "vgchange", "-an", "cryptvg") < index_of(host, "cryptsetup", "close", MAPPER)
        assert index_of(host, "cryptsetup", "close", MAPPER) < index_of(host, "qemu-nbd", "--disconnect", "/dev/nbd0")
        assert_host_clean(host)

    def test_mount_then_teardown_order(self, host):
        s, _ = self._open_stack(host)
        target, r = s.mount("/dev/cryptvg/root", options="ro")
        assert r.ok
        assert host.is_mounted(target)
        assert s.ledger.find(ResourceKind.MOUNT, target).parent == "volume_group:cryptvg"

        assert s.teardown().ok
        assert index_of(host, "umount", target) < index_of(host, "vgchange", "-an", "cryptvg")
        assert_host_clean(host)

    def test_mount_failure_tears_down(self, host):
        s, _ = self._open_stack(host)
        target, r = s.mount(f"/dev/mapper/{MAPPER}")
        assert target is None
        assert isinstance(r.error, StructuralFailure)
        assert_host_clean(host)

    def test_unlock_exhausted(self, host):
        luks_image(host)
        s = make_session(host, unlock_max_attempts=2)
        dev, _ = s.attach("/vm/crypt.raw")
        mapper, r = s.unlock("/dev/nbd0p2", StaticCredentialProvider("wrong"))
        assert mapper is None
        assert isinstance(r.error, MaxAttemptsExceeded)
        assert_host_clean(host)

    def test_conflicting_volume_group(self, host):
        img = lvm_image(host)
        s = make_session(host)
        dev, _ = s.attach("/vm/lvm.raw")
        img.part(2).vg.lvs[0].active = True
        lvs, r = s.activate_volume_groups("/dev/nbd0p2")
        assert lvs == []
        assert isinstance(r.error, VolumeGroupConflict)
        assert host.connected == {}

    def test_locked_image(self, host):
        plain_image(host)
        host.images["/vm/disk.raw"].holders = {4242: "qemu-kvm"}
        s = make_session(host)
        r = s.prepare_image("/vm/disk.raw", 20 * GiB)
        assert isinstance(r.error, ImageLocked)
        assert host.images["/vm/disk.raw"].size == 10 * GiB
        assert s.state == SessionState.DONE

    def test_stuck_device_reported_not_hidden(self, host):
        plain_image(host)
        s = make_session(host, poll_attempts=2)
        dev, _ = s.attach("/vm/disk.raw")
        host.stuck_nbd.add(dev)

        r = s.teardown()

        assert not r.ok
        assert isinstance(r.error, TeardownWarning)
        assert "cleanup" in r.error.remediation
        assert s.ledger.keys() == ["block_device:/dev/nbd0"]
        assert r.warnings

    def test_failure_in_one_layer_does_not_stop_the_rest(self, host):
        s, _ = self._open_stack(host)
        host.stuck_mappers.add(MAPPER)
        host.fail("cryptsetup", "close")

        r = s.teardown()

        assert not r.ok
        assert not any(lv.active for lv in host.images["/vm/cryptlvm.raw"].part(2).luks.vg.lvs)
        assert s.ledger.keys() == ["block_device:/dev/nbd0", f"container:{MAPPER}"]


@pytest.mark.scenario
class TestInterrupts:
    def test_interrupt_while_activating_lvm(self, host):
        luks_lvm_image(host)
        s = make_session(host)

        def _sigint(argv):
            raise SessionInterrupted(signal.SIGINT, "SIGINT")

        host.on("vgchange", "-ay", callback=_sigint)

        with pytest.raises(SessionInterrupted):
            with s:
                dev, _ = s.attach("/vm/cryptlvm.raw")
                s.inspect_partitions(dev)
                mapper, _ = s.unlock("/dev/nbd0p2", StaticCredentialProvider(PASSPHRASE))
                s.activate_volume_groups(mapper)

        assert isinstance(s.error, SessionInterrupted)
        assert s.state == SessionState.DONE
        assert len(s.ledger) == 0
        assert host.count("vgchange", "-an", "cryptvg") == 1
        assert host.count("cryptsetup", "close", MAPPER) == 1
        assert host.count("qemu-nbd", "--disconnect", "/dev/nbd0") == 1
        assert_host_clean(host)

    def test_interrupt_right_after_container_opens(self):
        class SignalAfterOpen(FakeHost):
            def run(self, cmd, **kw):
                res = super().run(cmd, **kw)
                if tuple(cmd[:2]) == ("cryptsetup", "open") and res.ok:
                    raise SessionInterrupted(signal.SIGTERM, "SIGTERM")
                return res

        host = SignalAfterOpen()
        luks_image(host)
        s = make_session(host)

        with pytest.raises(SessionInterrupted):
            with s:
                dev, _ = s.attach("/vm/crypt.raw")
                s.inspect_partitions(dev)
                s.unlock("/dev/nbd0p2", StaticCredentialProvider(PASSPHRASE))

        assert len(s.ledger) == 0
        assert host.count("cryptsetup", "close", MAPPER) == 1
        assert index_of(host, "cryptsetup", "close", MAPPER) < index_of(host, "qemu-nbd", "--disconnect", "/dev/nbd0")
        assert_host_clean(host)

    def test_exception_inside_block_tears_down(self, host):
        plain_image(host)
        s = make_session(host)
        with pytest.raises(RuntimeError):
            with s:
                s.attach("/vm/disk.raw")
                raise RuntimeError("caller bug")
        assert isinstance(s.error, RuntimeError)
        assert_host_clean(host)

    def test_leaving_block_without_teardown_releases(self, host):
        plain_image(host)
        with make_session(host) as s:
            s.attach("/vm/disk.raw")
        assert s.state == SessionState.DONE
        assert_host_clean(host)

    def test_handlers_installed_and_restored(self, host):
        before = signal.getsignal(signal.SIGTERM)
        s = make_session(host)
        with s:
            assert signal.getsignal(signal.SIGTERM) == s._on_signal
        assert signal.getsignal(signal.SIGTERM) == before

    def test_signal_raises_outside_teardown(self, host):
        s = make_session(host)
        with pytest.raises(SessionInterrupted) as ei:
            s._on_signal(signal.SIGTERM, None)
        assert ei.value.signame == "SIGTERM"

    def test_signal_ignored_during_teardown(self, host):
        s = make_session(host)
        s._tearing_down = True
        assert s._on_signal(signal.SIGINT, None) is None


@pytest.mark.scenario
class TestIdempotence:
    def test_teardown_twice(self, host):
        plain_image(host)
        s = make_session(host)
        s.attach("/vm/disk.raw")
        assert s.teardown().ok
        again = s.teardown()
        assert again.ok
        assert again.message == "Nothing to tear down"

    def test_layers_released_twice(self, host):
        luks_lvm_image(host)
        s = make_session(host)
        dev, _ = s.attach("/vm/cryptlvm.raw")
        mapper, _ = s.unlock("/dev/nbd0p2", StaticCredentialProvider(PASSPHRASE))
        s.activate_volume_groups(mapper)

        for _ in range(2):
            s.lvm.deactivate("cryptvg")
        for _ in range(2):
            s.opener.close(MAPPER)
        for _ in range(2):
            s.attacher.detach(dev)

        assert len(s.ledger) == 0
        assert_host_clean(host)

    def test_operations_need_an_attached_image(self, host):
        s = make_session(host)
        with pytest.raises(LifecycleStateError):
            s.resize("/dev/nbd0", 1)
        with pytest.raises(LifecycleStateError):
            s.mount("/dev/nbd0p1")

    def test_no_operations_after_done(self, host):
        plain_image(host)
        s = make_session(host)
        dev, _ = s.attach("/vm/disk.raw")
        s.teardown()
        with pytest.raises(LifecycleStateError):
            s.resize(dev, 1)

    def test_prepare_only_before_attach(self, host):
        plain_image(host)
        s = make_session(host)
        s.attach("/vm/disk.raw")
        with pytest.raises(LifecycleStateError):
            s.prepare_image("/vm/disk.raw", 20 * GiB)
        s.teardown()


@pytest.mark.scenario
class TestRecoverySweep:
    def test_attach_sweeps_dead_sessions(self, host):
        plain_image(host)
        orphan = FakePartition(index=2, start=MiB, end=GiB - 1, luks=FakeLuks("x"))
        host.mappers["luks_nbd3p2_4242"] = orphan
        host.dirs.add("/mnt/vmdiskman_4242_1")
        host.mounts.append(("/dev/sdz1", "/mnt/vmdiskman_4242_1", "ext4"))

        s = make_session(host)
        s.attach("/vm/disk.raw")

        assert host.mounts == []
        assert "luks_nbd3p2_4242" not in host.mappers
        s.teardown()

    def test_sweep_can_be_disabled(self, host):
        plain_image(host)
        host.dirs.add("/mnt/vmdiskman_4242_1")
        host.mounts.append(("/dev/sdz1", "/mnt/vmdiskman_4242_1", "ext4"))
        s = make_session(host, sweep=False)
        s.attach("/vm/disk.raw")
        assert host.is_mounted("/mnt/vmdiskman_4242_1")
        s.teardown()

    def test_live_sessions_are_left_alone(self, host):
        plain_image(host)
        host.alive_pids.add(4242)
        host.dirs.add("/mnt/vmdiskman_4242_1")
        host.mounts.append(("/dev/sdz1", "/mnt/vmdiskman_4242_1", "ext4"))
        s = make_session(host)
        s.attach("/vm/disk.raw")
        assert host.is_mounted("/mnt/vmdiskman_4242_1")
        s.teardown()

    def test_cleanup_sweep_detaches_unused_nbd(self, host):
        boot_and_root(host)
        host.plug("/vm/disk.qcow2", "/dev/nbd2")
        s = make_session(host)
        report = s.sweeper.sweep(include_nbd=True)
        assert report.cleaned == ["nbd:/dev/nbd2"]
        assert report.clean
        assert host.connected == {}

    def test_cleanup_sweep_reports_failures(self, host):
        boot_and_root(host)
        host.plug("/vm/disk.qcow2", "/dev/nbd2")
        host.stuck_nbd.add("/dev/nbd2")
        s = make_session(host, poll_attempts=1)
        report = s.sweeper.sweep(include_nbd=True)
        assert not report.clean
        assert "/dev/nbd2" in report.warnings[0]


@pytest.mark.unit
class TestSessionConfig:
    def test_from_args_ignores_none(self):
        class Args:
            nbd_max_devices = 4
            unlock_max_attempts = None
            lv = "vg/root"
            unrelated = "x"

        cfg = SessionConfig.from_args(Args())
        assert cfg.nbd_max_devices == 4
        assert cfg.unlock_max_attempts == 3
        assert cfg.lv == "vg/root"
