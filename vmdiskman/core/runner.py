# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/core/runner.py
"""
The host boundary of the lifecycle engine.

Every block-device tool (qemu-nbd, cryptsetup, lvm, parted, sgdisk, e2fsck...)
is invoked through ProcessRunner.run(), and every look at kernel-visible state
(/dev nodes, /sys/block, /proc) goes through the probe helpers below. Tests
replace the whole class with a simulated host.
"""
from __future__ import annotations

import logging
import os
import shutil
import stat
import subprocess
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .utils import U


@dataclass
class CommandResult:
    argv: Tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return "\n".join(x for x in (self.stdout.strip(), self.stderr.strip()) if x)

    def diagnostic(self, lines: int = 5) -> str:
        if self.timed_out:
            return f"{U.pretty_cmd(self.argv)} timed out"
        return U.tail(self.output, lines) or f"exit status {self.returncode}"


class ProcessRunner:
    """
    Runs external commands synchronously and returns a CommandResult.
    A non-zero exit is data, not an exception; callers classify it.
    """

    TIMEOUT_RC = 124
    NOT_FOUND_RC = 127

    def __init__(self, logger: logging.Logger, *, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout
        # Parse-stable tool output.
        self._env: Dict[str, str] = dict(os.environ)
        self._env["LC_ALL"] = "C"
        self._env["LANG"] = "C"

    def run(
        self,
        cmd: Sequence[str],
        *,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        argv = tuple(str(x) for x in cmd)
        pretty = U.pretty_cmd(argv)
        timeout = timeout if timeout is not None else self.default_timeout
        self.logger.debug("Running: %s", pretty)

        t0 = time.monotonic()
        try:
            kwargs = {"input": input_text} if input_text is not None else {"stdin": subprocess.DEVNULL}
            cp = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self._env,
                **kwargs,
            )
            res = CommandResult(argv, cp.returncode, cp.stdout or "", cp.stderr or "")
        except subprocess.TimeoutExpired as e:
            res = CommandResult(
                argv,
                self.TIMEOUT_RC,
                U.to_text(e.stdout),
                U.to_text(e.stderr),
                timed_out=True,
            )
        except FileNotFoundError:
            res = CommandResult(argv, self.NOT_FOUND_RC, "", f"{argv[0]}: command not found")
        except OSError as e:
            res = CommandResult(argv, 126, "", f"{argv[0]}: {e}")

        res.duration_s = time.monotonic() - t0

        if res.timed_out:
            self.logger.warning("Command timed out after %ss: %s", timeout, pretty)
        elif res.ok:
            self.logger.debug("Command ok (%.2fs): %s", res.duration_s, pretty)
        else:
            self.logger.debug("Command failed rc=%d (%.2fs): %s: %s", res.returncode, res.duration_s, pretty, res.diagnostic())
        return res

    # -----------------------
    # host probes
    # -----------------------

    def which(self, prog: str) -> Optional[str]:
        return U.which(prog)

    def path_exists(self, path: str) -> bool:
        return os.path.exists(path)

    def is_block_device(self, path: str) -> bool:
        try:
            return stat.S_ISBLK(os.stat(path).st_mode)
        except OSError:
            return False

    def read_text(self, path: str) -> Optional[str]:
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError:
            return None

    def list_dir(self, path: str) -> List[str]:
        try:
            return sorted(os.listdir(path))
        except OSError:
            return []

    def file_size(self, path: str) -> Optional[int]:
        try:
            return os.stat(path).st_size
        except OSError:
            return None

    def disk_free(self, path: str) -> int:
        return shutil.disk_usage(path).free

    def make_dir(self, path: str) -> None:
        os.makedirs(path, mode=0o700, exist_ok=True)

    def remove_dir(self, path: str) -> None:
        try:
            os.rmdir(path)
        except FileNotFoundError:
            pass

    def pid_alive(self, pid: int) -> bool:
        try:
            os.kill(int(pid), 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)
