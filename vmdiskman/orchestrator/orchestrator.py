# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/orchestrator/orchestrator.py

from __future__ import annotations

import argparse
import contextlib
import logging
import signal
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TextColumn, TimeElapsedColumn
from rich.table import Table

from ..cli.args.validators import parse_size
from ..cli.prompts import ConsolePrompter, PromptCredentialProvider
from ..core.exceptions import (
    PartitionNotFound,
    TeardownWarning,
    UserDeclined,
    VmDiskError,
    format_exception_for_cli,
)
from ..core.logger import Log
from ..core.runner import ProcessRunner
from ..core.utils import U
from ..disk.luks import CredentialProvider, StaticCredentialProvider
from ..disk.models import FilesystemKind, LogicalVolume, PartitionTableEntry, ResizeOutcome, Result
from .session import DiskSession, SessionConfig, SessionState

_STAGES: Dict[str, Tuple[SessionState, ...]] = {
    "inspect": (
        SessionState.ATTACHING,
        SessionState.INSPECTING,
        SessionState.UNLOCKING,
        SessionState.ACTIVATING_LVM,
        SessionState.DETACHING,
        SessionState.DONE,
    ),
    "resize": (
        SessionState.ATTACHING,
        SessionState.INSPECTING,
        SessionState.UNLOCKING,
        SessionState.ACTIVATING_LVM,
        SessionState.RESIZING,
        SessionState.DETACHING,
        SessionState.DONE,
    ),
    "mount": (
        SessionState.ATTACHING,
        SessionState.INSPECTING,
        SessionState.UNLOCKING,
        SessionState.ACTIVATING_LVM,
        SessionState.MOUNTING,
        SessionState.DETACHING,
        SessionState.DONE,
    ),
}

_STATE_LABELS = {
    SessionState.ATTACHING: "Attaching image",
    SessionState.INSPECTING: "Inspecting partitions",
    SessionState.UNLOCKING: "Unlocking LUKS",
    SessionState.ACTIVATING_LVM: "Activating LVM",
    SessionState.RESIZING: "Resizing",
    SessionState.MOUNTING: "Mounting",
    SessionState.DETACHING: "Detaching",
    SessionState.DONE: "Done",
    SessionState.FAILING: "Failed; tearing down",
    SessionState.TEARDOWN: "Tearing down",
}


class Orchestrator:
    """
    Runs one CLI command (inspect, resize, mount, cleanup) over a DiskSession
    and maps the outcome to an exit code.
    """

    def __init__(
        self,
        logger: logging.Logger,
        args: argparse.Namespace,
        *,
        runner: Optional[ProcessRunner] = None,
        prompter: Optional[ConsolePrompter] = None,
        console: Optional[Console] = None,
        progress_console: Optional[Console] = None,
    ):
        self.logger = logger
        self.args = args
        self.runner = runner or ProcessRunner(logger)
        self.prompter = prompter or ConsolePrompter(logger, assume_yes=bool(getattr(args, "assume_yes", False)))
        self.prompter.hold = self._progress_paused
        self.console = console or Console()
        self.progress_console = progress_console or Console(stderr=True)

        self.session: Optional[DiskSession] = None
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None
        self._stages: Tuple[SessionState, ...] = ()
        self._reported: Optional[VmDiskError] = None

        Log.trace(
            self.logger,
            "🧠 Orchestrator init: cmd=%r image=%r size=%r",
            getattr(args, "cmd", None),
            getattr(args, "image", None),
            getattr(args, "size", None),
        )

    # -----------------------
    # entry
    # -----------------------

    def run(self) -> int:
        cmd = self.args.cmd
        handlers: Dict[str, Callable[[], int]] = {
            "inspect": self.cmd_inspect,
            "resize": self.cmd_resize,
            "mount": self.cmd_mount,
            "cleanup": self.cmd_cleanup,
        }

        U.require_root(self.logger)
        U.banner(self.logger, f"Mode: {cmd}")
        try:
            rc = handlers[cmd]()
        except VmDiskError as e:
            rc = self._exit_code(e)
        finally:
            if getattr(self.args, "log_file", None):
                self.logger.info("Session log: %s", self.args.log_file)
        return rc

    def _exit_code(self, e: VmDiskError) -> int:
        already_logged = e is self._reported or (self.session is not None and self.session.error is e)
        if isinstance(e, UserDeclined):
            if not already_logged:
                self.logger.info("Cancelled: %s", e)
            return 0
        if not already_logged:
            Log.fail(self.logger, format_exception_for_cli(e, verbose=int(getattr(self.args, "verbose", 0) or 0)))
        return int(e.code)

    def _ok(self, result: Result) -> Result:
        """Raise the failure carried by a Result; warnings are logged either way."""
        for w in result.warnings:
            Log.warn(self.logger, w)
        if result.ok:
            return result
        if result.error is not None:
            # The session logged it when the operation failed.
            self._reported = result.error
            raise result.error
        raise TeardownWarning(msg=result.message or "operation failed")

    def _new_session(self) -> DiskSession:
        self.session = DiskSession(
            self.runner,
            self.logger,
            config=SessionConfig.from_args(self.args),
            confirm=self.prompter.confirm,
            on_state=self._on_state,
        )
        return self.session

    def _after_op(self, session: DiskSession) -> None:
        """inspect_partitions() reports failure through the session, not a Result."""
        if isinstance(session.error, VmDiskError):
            raise session.error

    # -----------------------
    # progress
    # -----------------------

    @contextlib.contextmanager
    def _progress_for(self, cmd: str) -> Iterator[None]:
        self._stages = _STAGES.get(cmd, ())
        if not self._stages or not self.progress_console.is_terminal:
            yield
            return
        with Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            console=self.progress_console,
            transient=True,
        ) as progress:
            self._progress = progress
            self._task = progress.add_task(cmd, total=len(self._stages))
            try:
                yield
            finally:
                self._progress = None
                self._task = None

    @contextlib.contextmanager
    def _progress_paused(self) -> Iterator[None]:
        progress = self._progress
        if progress is None:
            yield
            return
        progress.stop()
        try:
            yield
        finally:
            progress.start()

    def _on_state(self, state: SessionState) -> None:
        Log.trace(self.logger, "🔁 session state: %s", state.value)
        if self._progress is None or self._task is None:
            return
        label = _STATE_LABELS.get(state, state.value)
        if state in self._stages:
            self._progress.update(self._task, description=label, completed=self._stages.index(state) + 1)
        else:
            self._progress.update(self._task, description=label)

    # -----------------------
    # shared steps
    # -----------------------

    def _credentials(self) -> Optional[CredentialProvider]:
        static = StaticCredentialProvider(
            getattr(self.args, "luks_passphrase", None),
            env=getattr(self.args, "luks_passphrase_env", None),
            keyfile=getattr(self.args, "luks_keyfile", None),
        )
        if static.configured:
            return static
        if self.prompter.interactive:
            return PromptCredentialProvider(self.prompter, self.logger)
        return None

    def _pick_partition(self, device: str, entries: List[PartitionTableEntry]) -> PartitionTableEntry:
        wanted = getattr(self.args, "partition", None)
        if wanted is not None:
            for e in entries:
                if e.index == int(wanted):
                    return e
            raise PartitionNotFound(
                msg=f"Partition {wanted} not found on {device}",
                context={"device": device, "available": [e.index for e in entries]},
            )
        for e in entries:
            if e.is_last:
                return e
        raise PartitionNotFound(msg=f"No partitions found on {device}", context={"device": device})

    def _open_layers(self, session: DiskSession, device: str, entry: PartitionTableEntry) -> Tuple[str, List[LogicalVolume]]:
        """
        Unlock and activate whatever sits on the partition. Returns the
        innermost block device and the active logical volumes.
        """
        part = session.inspector.partition_path(device, entry.index)
        inner = part
        kind = entry.fs_kind

        if kind == FilesystemKind.LUKS:
            provider = self._credentials()
            if provider is None:
                Log.warn(self.logger, f"{part} is encrypted and no passphrase or keyfile was given; leaving it locked")
                return part, []
            Log.step(self.logger, f"Unlocking {part}")
            mapper, r = session.unlock(part, provider)
            self._ok(r)
            inner = mapper or part
            kind = session.inspector.detect(inner)

        if kind == FilesystemKind.LVM:
            Log.step(self.logger, f"Activating volume groups on {inner}")
            lvs, r = session.activate_volume_groups(inner)
            self._ok(r)
            return inner, lvs
        return inner, []

    # -----------------------
    # rendering
    # -----------------------

    def _render_partitions(self, device: str, entries: List[PartitionTableEntry], luks: List[str]) -> None:
        table = Table(title=f"Partitions on {device}")
        for col in ("#", "Start", "End", "Size", "Filesystem", "Flags", "Name"):
            table.add_column(col, justify="right" if col in ("#", "Start", "End", "Size") else "left")
        for e in entries:
            fs = e.fs_kind.value
            if self.session is not None and self.session.inspector.partition_path(device, e.index) in luks:
                fs = f"{fs} 🔐"
            flags = ", ".join(x for x in (e.flags, "extended" if e.is_extended else "", "last" if e.is_last else "") if x)
            table.add_row(str(e.index), str(e.start), str(e.end), U.human_bytes(e.size), fs, flags, e.name)
        self.console.print(table)

    def _render_volumes(self, lvs: List[LogicalVolume]) -> None:
        if not lvs:
            return
        table = Table(title="Logical volumes")
        table.add_column("VG")
        table.add_column("LV")
        table.add_column("Size", justify="right")
        table.add_column("Path")
        for lv in lvs:
            table.add_row(lv.vg_name, lv.name, U.human_bytes(lv.size), lv.path)
        self.console.print(table)

    # -----------------------
    # commands
    # -----------------------

    def cmd_inspect(self) -> int:
        image = str(Path(self.args.image).expanduser())
        with self._new_session() as s, self._progress_for("inspect"):
            Log.step(self.logger, f"Attaching {image}")
            device, r = s.attach(image, getattr(self.args, "format", None))
            self._ok(r)

            entries = s.inspect_partitions(device)
            self._after_op(s)
            luks = s.inspector.detect_luks(device, entries)
            self._render_partitions(device, entries, luks)

            lvs: List[LogicalVolume] = []
            for e in entries:
                if e.fs_kind in (FilesystemKind.LUKS, FilesystemKind.LVM):
                    _, found = self._open_layers(s, device, e)
                    lvs.extend(found)
            self._render_volumes(lvs)

            self._ok(s.teardown())
        Log.ok(self.logger, f"Inspected {image}")
        return 0

    def _target_size(self, s: DiskSession, image: str) -> int:
        size, relative = parse_size(str(self.args.size))
        if not relative:
            return size
        current = s.images.probe(Path(image), getattr(self.args, "format", None)).virtual_size or 0
        return current + size

    def cmd_resize(self) -> int:
        image = str(Path(self.args.image).expanduser())
        fmt = getattr(self.args, "format", None)
        with self._new_session() as s:
            target = self._target_size(s, image)
            Log.step(self.logger, f"Growing {image} to {U.human_bytes(target)}")
            self._ok(s.prepare_image(image, target, fmt=fmt, backup=bool(getattr(self.args, "backup", False))))

            with self._progress_for("resize"):
                device, r = s.attach(image, fmt)
                self._ok(r)

                entries = s.inspect_partitions(device)
                self._after_op(s)
                entry = self._pick_partition(device, entries)
                self._open_layers(s, device, entry)

                Log.step(self.logger, f"Growing partition {entry.index} and its filesystem")
                r = self._ok(s.resize(device, entry.index, target))
                if r.outcome == ResizeOutcome.MANUAL_STEP_REQUIRED:
                    Log.warn(self.logger, f"Manual step required: {r.message}")
                elif r.outcome == ResizeOutcome.RESIZED_WITH_WARNINGS:
                    Log.warn(self.logger, f"Resized with warnings: {r.message}")
                else:
                    Log.ok(self.logger, r.message)

                self._ok(s.teardown())
        Log.ok(self.logger, f"{image} resized to {U.human_bytes(target)}")
        return 0

    def _wait_for_operator(self, target: str) -> None:
        self.console.print(f"[bold green]Mounted at {target}[/bold green]")
        if self.prompter.interactive:
            self.prompter.pause("Press Enter to unmount and detach... ")
            return
        self.logger.info("Not interactive: send SIGINT or SIGTERM to unmount and detach")
        while True:
            signal.pause()

    def cmd_mount(self) -> int:
        image = str(Path(self.args.image).expanduser())
        with self._new_session() as s, self._progress_for("mount"):
            device, r = s.attach(image, getattr(self.args, "format", None))
            self._ok(r)

            entries = s.inspect_partitions(device)
            self._after_op(s)
            entry = self._pick_partition(device, entries)
            inner, lvs = self._open_layers(s, device, entry)

            source = inner
            if lvs:
                source = s.select_logical_volume(s.volume_groups).path

            target, r = s.mount(source, options=getattr(self.args, "mount_options", None))
            self._ok(r)
            with self._progress_paused():
                self._wait_for_operator(str(target))

            self._ok(s.teardown())
        Log.ok(self.logger, f"{image} unmounted and detached")
        return 0

    def cmd_cleanup(self) -> int:
        with self._new_session() as s:
            Log.step(self.logger, "Releasing resources left by earlier sessions")
            report = s.sweeper.sweep(include_nbd=bool(getattr(self.args, "include_nbd", False)))

        for item in report.cleaned:
            self.console.print(f"released {item}")
        if not report.clean:
            for w in report.warnings:
                Log.warn(self.logger, w)
            Log.fail(self.logger, f"{len(report.warnings)} resource(s) could not be released")
            return TeardownWarning.code
        Log.ok(self.logger, f"Cleanup released {len(report.cleaned)} resource(s)")
        return 0
