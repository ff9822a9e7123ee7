# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/core/utils.py
from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import re
import shlex
from pathlib import Path
from typing import Any, List, Optional, Sequence

from .exceptions import Fatal


class U:
    @staticmethod
    def die(logger: logging.Logger, msg: str, code: int = 1) -> None:
        logger.error(msg)
        raise Fatal(code=code, msg=msg)

    @staticmethod
    def which(prog: str) -> Optional[str]:
        from shutil import which as _which
        return _which(prog)

    @staticmethod
    def now_ts() -> str:
        return _dt.datetime.now().strftime("%Y%m%d_%H%M%S")

    @staticmethod
    def json_dump(obj: Any) -> str:
        try:
            return json.dumps(obj, indent=2, sort_keys=True, default=str)
        except Exception:
            return repr(obj)

    @staticmethod
    def pretty_cmd(cmd: Sequence[str]) -> str:
        return " ".join(shlex.quote(str(x)) for x in cmd)

    @staticmethod
    def human_bytes(n: Optional[int]) -> str:
        if n is None:
            return "unknown"
        x = float(n)
        for unit in ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]:
            if x < 1024 or unit == "PiB":
                return f"{x:.2f} {unit}" if unit != "B" else f"{int(x)} {unit}"
            x /= 1024
        return f"{n} B"

    @staticmethod
    def human_to_bytes(s: str) -> int:
        """
        Parse human sizes:
          - "20G", "20GiB", "20GB"
          - "512M", "512MiB"
          - "1024" (bytes)
        Binary multiples throughout, matching qemu-img.
        """
        raw = str(s).strip()
        if not raw:
            raise ValueError("empty size")

        t = raw.upper().replace(" ", "")
        t = re.sub(r"([KMGTP])I?B?$", r"\1", t)
        t = t.rstrip("B")

        multipliers = {
            "": 1,
            "K": 1024,
            "M": 1024**2,
            "G": 1024**3,
            "T": 1024**4,
            "P": 1024**5,
        }

        m = re.fullmatch(r"(\d+(?:\.\d+)?)([KMGTP]?)", t)
        if not m:
            raise ValueError(f"unparseable size: {raw!r}")
        return int(float(m.group(1)) * multipliers[m.group(2)])

    @staticmethod
    def banner(logger: logging.Logger, title: str) -> None:
        line = "─" * max(10, len(title) + 2)
        logger.info(line)
        logger.info(f" {title}")
        logger.info(line)

    @staticmethod
    def require_root(logger: logging.Logger) -> None:
        if os.geteuid() != 0:
            U.die(logger, "This operation requires root. Re-run with sudo.", 1)

    @staticmethod
    def safe_unlink(p: Path, *, missing_ok: bool = True) -> None:
        try:
            p.unlink()
        except FileNotFoundError:
            if not missing_ok:
                raise

    @staticmethod
    def to_text(x: Any) -> str:
        if x is None:
            return ""
        if isinstance(x, bytes):
            return x.decode("utf-8", "replace")
        return str(x)

    @staticmethod
    def tail(text: str, lines: int = 5) -> str:
        """Last few non-empty lines of tool output, for diagnostics."""
        rows: List[str] = [ln for ln in U.to_text(text).splitlines() if ln.strip()]
        return "\n".join(rows[-lines:])
