# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/orchestrator/session.py
"""
DiskSession: one image, one lifecycle.

    IDLE -> ATTACHING -> INSPECTING -> [UNLOCKING -> ACTIVATING_LVM]
         -> RESIZING | MOUNTING -> DETACHING -> DONE

and from any working state FAILING -> TEARDOWN -> DONE.

Every acquired resource lands in the session's ResourceLedger and teardown
always walks that ledger in reverse, whichever state failed. Used as a
context manager the session installs SIGINT/SIGTERM/SIGHUP handlers that
raise SessionInterrupted, so an interrupted run unwinds through the same
teardown. Signals arriving during teardown are logged and ignored.

Public operations return a Result (and a value where there is one) instead
of raising; any failure tears the session down before returning.
"""
from __future__ import annotations

import logging
import os
import signal
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.exceptions import (
    LifecycleStateError,
    PreconditionViolation,
    SessionInterrupted,
    StructuralFailure,
    TeardownWarning,
    UserDeclined,
    VmDiskError,
)
from ..core.ledger import ResourceKind, ResourceLedger, TeardownReport, resource_key
from ..core.runner import ProcessRunner
from ..core.utils import U
from ..disk.filesystem import FilesystemResizer
from ..disk.image import ImageTool
from ..disk.inspector import FilesystemInspector
from ..disk.luks import CredentialProvider, EncryptedVolumeOpener
from ..disk.lvm import LogicalVolumeActivator
from ..disk.models import (
    DiskImage,
    EncryptedContainer,
    FilesystemKind,
    LogicalVolume,
    PartitionTableEntry,
    ResizeOutcome,
    Result,
    VolumeGroup,
)
from ..disk.mount import Mounter
from ..disk.nbd import BlockDeviceAttacher
from ..disk.partition import FILL_TOLERANCE, PartitionResizer
from .recovery import OrphanSweeper

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class SessionState(str, Enum):
    IDLE = "idle"
    ATTACHING = "attaching"
    INSPECTING = "inspecting"
    UNLOCKING = "unlocking"
    ACTIVATING_LVM = "activating_lvm"
    RESIZING = "resizing"
    MOUNTING = "mounting"
    DETACHING = "detaching"
    DONE = "done"
    FAILING = "failing"
    TEARDOWN = "teardown"


_WORK = {
    SessionState.INSPECTING,
    SessionState.UNLOCKING,
    SessionState.ACTIVATING_LVM,
    SessionState.RESIZING,
    SessionState.MOUNTING,
}

TRANSITIONS: Dict[SessionState, set] = {
    SessionState.IDLE: {SessionState.ATTACHING, SessionState.DETACHING, SessionState.FAILING},
    SessionState.ATTACHING: _WORK | {SessionState.DETACHING, SessionState.FAILING},
    SessionState.INSPECTING: _WORK | {SessionState.DETACHING, SessionState.FAILING},
    SessionState.UNLOCKING: _WORK | {SessionState.DETACHING, SessionState.FAILING},
    SessionState.ACTIVATING_LVM: _WORK | {SessionState.DETACHING, SessionState.FAILING},
    SessionState.RESIZING: _WORK | {SessionState.DETACHING, SessionState.FAILING},
    SessionState.MOUNTING: _WORK | {SessionState.DETACHING, SessionState.FAILING},
    SessionState.DETACHING: {SessionState.DONE, SessionState.FAILING},
    SessionState.FAILING: {SessionState.TEARDOWN},
    SessionState.TEARDOWN: {SessionState.DONE},
    SessionState.DONE: set(),
}


@dataclass
class SessionConfig:
    nbd_max_devices: int = 16
    attach_retries: int = 3
    attach_timeout_s: float = 30.0
    poll_attempts: int = 10
    poll_interval_s: float = 0.5
    settle_delay_s: float = 1.0
    unlock_max_attempts: int = 3
    unlock_timeout_s: float = 30.0
    keyfile_dir: Optional[str] = None
    mount_root: str = "/mnt"
    lv: Optional[str] = None
    sweep: bool = True

    @classmethod
    def from_args(cls, args: Any) -> "SessionConfig":
        kw = {}
        for name in cls.__dataclass_fields__:
            val = getattr(args, name, None)
            if val is not None:
                kw[name] = val
        return cls(**kw)


class DiskSession:
    def __init__(
        self,
        runner: ProcessRunner,
        logger: logging.Logger,
        *,
        config: Optional[SessionConfig] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        on_state: Optional[Callable[[SessionState], None]] = None,
        pid: Optional[int] = None,
    ):
        self.runner = runner
        self.logger = logger
        self.config = config or SessionConfig()
        self.confirm = confirm
        self.on_state = on_state
        self.pid = pid if pid is not None else os.getpid()

        cfg = self.config
        self.ledger = ResourceLedger(logger)
        self.images = ImageTool(runner, logger)
        self.inspector = FilesystemInspector(runner, logger, settle_delay_s=cfg.settle_delay_s)
        self.attacher = BlockDeviceAttacher(
            runner,
            self.ledger,
            logger,
            images=self.images,
            confirm=confirm,
            max_devices=cfg.nbd_max_devices,
            retries=cfg.attach_retries,
            timeout_s=cfg.attach_timeout_s,
            poll_attempts=cfg.poll_attempts,
            poll_interval_s=cfg.poll_interval_s,
        )
        self.opener = EncryptedVolumeOpener(
            runner,
            self.ledger,
            logger,
            max_attempts=cfg.unlock_max_attempts,
            timeout_s=cfg.unlock_timeout_s,
            keyfile_dir=cfg.keyfile_dir,
            pid=self.pid,
        )
        self.lvm = LogicalVolumeActivator(runner, self.ledger, logger)
        self.mounter = Mounter(runner, self.ledger, logger, mount_root=cfg.mount_root, pid=self.pid)
        self.partitions = PartitionResizer(
            runner,
            self.inspector,
            logger,
            confirm=confirm,
            poll_attempts=cfg.poll_attempts,
            poll_interval_s=cfg.poll_interval_s,
        )
        self.filesystems = FilesystemResizer(runner, logger, mounter=self.mounter)
        self.sweeper = OrphanSweeper(
            logger,
            attacher=self.attacher,
            opener=self.opener,
            lvm=self.lvm,
            mounter=self.mounter,
        )

        self.state = SessionState.IDLE
        self.image: Optional[DiskImage] = None
        self.device: Optional[str] = None
        self.containers: Dict[str, EncryptedContainer] = {}
        self.volume_groups: List[VolumeGroup] = []
        self.error: Optional[BaseException] = None
        self.last_report: Optional[TeardownReport] = None

        self._tearing_down = False
        self._prev_handlers: Dict[int, Any] = {}

    # -----------------------
    # state machine
    # -----------------------

    def _enter(self, state: SessionState) -> None:
        if state == self.state and state in _WORK:
            return
        if state not in TRANSITIONS[self.state]:
            raise LifecycleStateError(
                msg=f"Cannot go from {self.state.value} to {state.value}",
                context={"from": self.state.value, "to": state.value},
            )
        self.logger.debug("Session %s -> %s", self.state.value, state.value)
        self.state = state
        if self.on_state is not None:
            self.on_state(state)

    def _require_attached(self, op: str) -> str:
        if self.device is None or self.state in (SessionState.DONE, SessionState.FAILING, SessionState.TEARDOWN):
            raise LifecycleStateError(
                msg=f"'{op}' needs an attached image (session is {self.state.value})",
                context={"state": self.state.value},
            )
        return self.device

    # -----------------------
    # context manager / signals
    # -----------------------

    def __enter__(self) -> "DiskSession":
        self.install_signal_handlers()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc is not None and self.state not in (SessionState.DONE, SessionState.TEARDOWN):
                self._fail(exc)
            elif self.state != SessionState.DONE or len(self.ledger):
                self.teardown()
        finally:
            self.restore_signal_handlers()
        return False

    def install_signal_handlers(self) -> None:
        for sig in HANDLED_SIGNALS:
            try:
                self._prev_handlers[sig] = signal.signal(sig, self._on_signal)
            except ValueError:
                # Not the main thread; the caller owns teardown.
                self.logger.debug("Cannot install handler for %s outside the main thread", sig)

    def restore_signal_handlers(self) -> None:
        for sig, prev in self._prev_handlers.items():
            signal.signal(sig, prev if prev is not None else signal.SIG_DFL)
        self._prev_handlers.clear()

    def _on_signal(self, signum: int, frame: Any) -> None:
        name = signal.Signals(signum).name
        if self._tearing_down:
            self.logger.warning("🛑 Received %s during teardown; ignoring until cleanup finishes", name)
            return
        self.logger.warning("🛑 Received %s; tearing down", name)
        raise SessionInterrupted(signum, name)

    # -----------------------
    # failure / teardown
    # -----------------------

    def _release_all(self) -> TeardownReport:
        outer = self._tearing_down
        self._tearing_down = True
        try:
            report = self.ledger.release_all()
        finally:
            self._tearing_down = outer
        self.last_report = report
        return report

    @staticmethod
    def _report_warnings(report: TeardownReport) -> List[str]:
        out = [f"{key}: {msg}" for key, msg in report.failed]
        out += [f"{key}: blocked by a resource that could not be released" for key in report.blocked]
        return out

    def _incomplete_error(self, report: TeardownReport) -> TeardownWarning:
        held = ", ".join(self.ledger.keys())
        return TeardownWarning(
            msg=f"Teardown incomplete; still held: {held}",
            context={"held": self.ledger.keys()},
            remediation="Release the listed resources manually, then run 'vmdiskman cleanup'.",
        )

    def _fail(self, error: BaseException) -> Result:
        self.error = error
        if isinstance(error, UserDeclined):
            self.logger.info("Cancelled: %s", error)
        elif isinstance(error, VmDiskError):
            self.logger.error("%s", error.user_message())
        else:
            self.logger.error("Session aborted: %s", error)

        self._tearing_down = True
        try:
            if self.state == SessionState.DONE:
                report = self._release_all() if len(self.ledger) else TeardownReport()
            else:
                if self.state not in (SessionState.FAILING, SessionState.TEARDOWN):
                    self._enter(SessionState.FAILING)
                if self.state == SessionState.FAILING:
                    self._enter(SessionState.TEARDOWN)
                report = self._release_all()
                self._enter(SessionState.DONE)
        finally:
            self._tearing_down = False

        warnings = self._report_warnings(report)
        if not report.clean:
            self.logger.error("%s", self._incomplete_error(report).user_message())
        if isinstance(error, VmDiskError):
            return Result.failure(error, warnings=warnings)
        return Result(ok=False, message=str(error) or type(error).__name__, warnings=warnings)

    def _run_op(self, fn: Callable[[], Tuple[Any, Result]]) -> Tuple[Any, Result]:
        try:
            return fn()
        except VmDiskError as e:
            return None, self._fail(e)
        except BaseException as e:
            self._fail(e)
            raise

    def teardown(self) -> Result:
        """Release everything the session holds. Safe to call any number of times."""
        if self.state == SessionState.DONE and not len(self.ledger):
            return Result.success("Nothing to tear down")
        if self.state in (SessionState.FAILING, SessionState.TEARDOWN):
            return Result(ok=False, message="Teardown already in progress")

        if self.state != SessionState.DONE:
            self._enter(SessionState.DETACHING)
        report = self._release_all()
        if self.state != SessionState.DONE:
            self._enter(SessionState.DONE)

        if report.clean:
            return Result.success(f"Released {len(report.released)} resource(s)")
        err = self._incomplete_error(report)
        self.logger.error("%s", err.user_message())
        return Result.failure(err, warnings=self._report_warnings(report))

    # -----------------------
    # operations
    # -----------------------

    def prepare_image(
        self,
        image_path: str,
        target_size: int,
        *,
        fmt: Optional[str] = None,
        backup: bool = False,
    ) -> Result:
        """
        Grow the image file before it is attached. Runs only in IDLE and
        acquires nothing, so a failure here leaves nothing to tear down.
        """
        if self.state != SessionState.IDLE:
            raise LifecycleStateError(msg="The image can only be grown before it is attached")
        try:
            image = self.images.probe(Path(image_path), fmt)
            self.images.ensure_not_held(image.path, self.confirm)
            if backup:
                self.images.backup(image)
            self.images.check_free_space(image, target_size)
            self.image = self.images.grow(image, target_size)
        except VmDiskError as e:
            return self._fail(e)
        return Result.success(f"{image.path} is {U.human_bytes(target_size)}")

    def attach(self, image_path: str, fmt: Optional[str] = None) -> Tuple[Optional[str], Result]:
        self._enter(SessionState.ATTACHING)

        def _op() -> Tuple[Optional[str], Result]:
            image = self.images.probe(Path(image_path), fmt)
            if self.config.sweep:
                self.sweeper.sweep()
            dev = self.attacher.attach(image)
            self.image = image
            self.device = dev.path
            self.inspector.settle()
            return dev.path, Result.success(f"{image.path} attached at {dev.path}")

        return self._run_op(_op)

    def inspect_partitions(self, device_path: Optional[str] = None) -> List[PartitionTableEntry]:
        device = device_path or self._require_attached("inspect")
        self._enter(SessionState.INSPECTING)

        def _op() -> Tuple[List[PartitionTableEntry], Result]:
            entries = self.inspector.inspect_partitions(device)
            return entries, Result.success(f"{len(entries)} partition(s) on {device}")

        entries, _ = self._run_op(_op)
        return entries or []

    def unlock(
        self,
        partition_path: str,
        credential_provider: CredentialProvider,
    ) -> Tuple[Optional[str], Result]:
        device = self._require_attached("unlock")
        self._enter(SessionState.UNLOCKING)

        def _op() -> Tuple[Optional[str], Result]:
            container = self.opener.open(
                partition_path,
                credential_provider,
                parent=resource_key(ResourceKind.BLOCK_DEVICE, device),
            )
            self.containers[container.mapper_name] = container
            return container.mapper_path, Result.success(f"{partition_path} unlocked at {container.mapper_path}")

        return self._run_op(_op)

    def activate_volume_groups(self, mapper_path: str) -> Tuple[List[LogicalVolume], Result]:
        device = self._require_attached("activate")
        self._enter(SessionState.ACTIVATING_LVM)

        def _op() -> Tuple[List[LogicalVolume], Result]:
            name = os.path.basename(mapper_path)
            if name in self.containers:
                parent = resource_key(ResourceKind.CONTAINER, name)
            else:
                parent = resource_key(ResourceKind.BLOCK_DEVICE, device)
            vgs = self.lvm.activate(mapper_path, parent=parent)
            self.volume_groups.extend(vgs)
            lvs = [lv for vg in vgs for lv in vg.logical_volumes]
            return lvs, Result.success(f"{len(vgs)} volume group(s), {len(lvs)} logical volume(s) active")

        lvs, result = self._run_op(_op)
        return lvs or [], result

    def _container_for(self, partition_path: str) -> Optional[EncryptedContainer]:
        for c in self.containers.values():
            if c.partition == partition_path:
                return c
        return None

    def _vgs_on(self, pv: str) -> List[VolumeGroup]:
        return [vg for vg in self.volume_groups if vg.physical_volume == pv]

    def select_logical_volume(self, vgs: List[VolumeGroup]) -> LogicalVolume:
        lvs = [lv for vg in vgs for lv in vg.logical_volumes]
        wanted = self.config.lv
        if wanted:
            for lv in lvs:
                if wanted in (lv.name, f"{lv.vg_name}/{lv.name}", lv.path):
                    return lv
            raise PreconditionViolation(
                msg=f"Logical volume '{wanted}' not found",
                context={"available": [f"{lv.vg_name}/{lv.name}" for lv in lvs]},
                remediation="Pass one of the listed logical volumes with --lv.",
            )
        if len(lvs) == 1:
            return lvs[0]
        raise PreconditionViolation(
            msg=f"{len(lvs)} logical volumes found; choose the one to grow",
            context={"available": [f"{lv.vg_name}/{lv.name}" for lv in lvs]},
            remediation="Pass the logical volume to grow with --lv VG/LV.",
        )

    def resize(self, device_path: str, partition_index: int, target_size: Optional[int] = None) -> Result:
        """
        Grow partition `partition_index` to fill the device, then whatever
        sits inside it: LUKS mapping, LVM PV and LV, filesystem.
        """
        self._require_attached("resize")
        self._enter(SessionState.RESIZING)

        def _op() -> Tuple[None, Result]:
            dev_size = self.inspector.device_size(device_path)
            if target_size and dev_size + FILL_TOLERANCE < target_size:
                raise PreconditionViolation(
                    msg=f"{device_path} is {U.human_bytes(dev_size)}, smaller than the requested {U.human_bytes(target_size)}",
                    context={"device": device_path, "size": dev_size, "target": target_size},
                    remediation="Grow the image file (resize command or 'qemu-img resize') before attaching it.",
                )

            entry = self.inspector.get_partition(device_path, partition_index)
            part = self.inspector.partition_path(device_path, partition_index)

            # Work out the layer stack before the table is touched.
            container = self._container_for(part)
            if entry.fs_kind == FilesystemKind.LUKS and container is None:
                raise PreconditionViolation(
                    msg=f"{part} is encrypted; unlock it before resizing",
                    context={"partition": part},
                    remediation="Provide a passphrase or keyfile so the container can be unlocked.",
                )
            pv = container.mapper_path if container else part
            vgs = self._vgs_on(pv)
            lv = self.select_logical_volume(vgs) if vgs else None
            if lv is None and (entry.fs_kind == FilesystemKind.LVM or (container and self.lvm.discover(pv))):
                raise PreconditionViolation(
                    msg=f"{pv} holds LVM volumes that are not active",
                    context={"pv": pv},
                    remediation="Activate the volume groups before resizing.",
                )

            grown = self.partitions.resize_to_fill(device_path, partition_index)
            warnings: List[str] = []
            if not grown:
                warnings.append(f"partition {partition_index} already filled {device_path}")

            target = part
            if container is not None:
                self.opener.resize(container.mapper_name)
                target = container.mapper_path
            if lv is not None:
                self.lvm.grow_logical_volume(pv, lv)
                target = lv.path

            kind = self.inspector.detect(target)
            report = self.filesystems.grow(target, kind)
            warnings += report.warnings

            if report.outcome == ResizeOutcome.FAILED:
                raise StructuralFailure(
                    msg=f"Filesystem resize on {target} failed: {report.message}",
                    context={"device": target, "fs": kind.value},
                    remediation=report.remediation or "Use an external partition tool such as GParted Live.",
                )

            msg = report.message
            if report.remediation:
                msg = f"{msg} -> {report.remediation}"
            return None, Result(ok=True, message=msg, outcome=report.outcome, warnings=warnings)

        _, result = self._run_op(_op)
        return result

    def _mount_parent(self, device_path: str) -> str:
        for vg in self.volume_groups:
            for lv in vg.logical_volumes:
                if device_path in (lv.path, f"/dev/mapper/{vg.name}-{lv.name}"):
                    return resource_key(ResourceKind.VOLUME_GROUP, vg.name)
        name = os.path.basename(device_path)
        if name in self.containers:
            return resource_key(ResourceKind.CONTAINER, name)
        return resource_key(ResourceKind.BLOCK_DEVICE, self.device or device_path)

    def mount(self, device_path: str, *, options: Optional[str] = None) -> Tuple[Optional[str], Result]:
        self._require_attached("mount")
        self._enter(SessionState.MOUNTING)

        def _op() -> Tuple[Optional[str], Result]:
            target = self.mounter.mount(device_path, parent=self._mount_parent(device_path), options=options)
            return target, Result.success(f"{device_path} mounted at {target}")

        return self._run_op(_op)


def teardown(session: DiskSession) -> Result:
    return session.teardown()
