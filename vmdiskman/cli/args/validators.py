# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/cli/args/validators.py
from __future__ import annotations

import argparse
import os
from typing import Any, Dict, List, Tuple

from ...core.utils import U
from .groups import COMMANDS


def _require(v: Any) -> bool:
    """True if v is meaningfully present (empty/whitespace-only strings count as missing)."""
    if v is None:
        return False
    if isinstance(v, str):
        return v.strip() != ""
    return True


def _resolve_positionals(args: argparse.Namespace) -> None:
    """
    COMMAND IMAGE [SIZE] on the command line override --cmd/--image/--size
    and their config equivalents. The command word is optional when the
    command comes from --cmd or YAML.
    """
    words: List[str] = list(getattr(args, "words", None) or [])
    if words and words[0] in COMMANDS:
        args.cmd = words.pop(0)
    if words:
        args.image = words.pop(0)
    if words:
        args.size = words.pop(0)
    if words:
        raise SystemExit(f"unexpected arguments: {' '.join(words)}")
    args.words = []


def parse_size(raw: str) -> Tuple[int, bool]:
    """'40G' -> (bytes, False); '+10G' -> (bytes, True)."""
    text = str(raw).strip()
    relative = text.startswith("+")
    n = U.human_to_bytes(text.lstrip("+"))
    if n <= 0:
        raise ValueError(f"size must be positive: {raw!r}")
    return n, relative


def _validate_cmd_image(args: argparse.Namespace) -> None:
    if not _require(args.image):
        raise SystemExit(f"cmd={args.cmd}: missing image path (positional IMAGE, --image or YAML `image:`)")
    if not os.path.isfile(os.path.expanduser(str(args.image))):
        raise SystemExit(f"cmd={args.cmd}: image not found: {args.image}")


def _validate_cmd_resize(args: argparse.Namespace) -> None:
    _validate_cmd_image(args)
    if not _require(args.size):
        raise SystemExit("cmd=resize: missing size (positional SIZE, --size or YAML `size:`)")
    try:
        parse_size(str(args.size))
    except ValueError as e:
        raise SystemExit(f"cmd=resize: invalid size {args.size!r}: {e}")


def _validate_knobs(args: argparse.Namespace) -> None:
    for name in ("nbd_max_devices", "attach_retries", "poll_attempts", "unlock_max_attempts"):
        v = getattr(args, name, None)
        if v is not None and int(v) < 1:
            raise SystemExit(f"{name} must be at least 1, got {v}")
    for name in ("attach_timeout_s", "unlock_timeout_s"):
        v = getattr(args, name, None)
        if v is not None and float(v) <= 0:
            raise SystemExit(f"{name} must be positive, got {v}")
    if getattr(args, "partition", None) is not None and int(args.partition) < 1:
        raise SystemExit(f"--partition must be 1 or more, got {args.partition}")
    kf = getattr(args, "luks_keyfile", None)
    if _require(kf) and not os.path.isfile(os.path.expanduser(str(kf))):
        raise SystemExit(f"--luks-keyfile not found: {kf}")


def validate_args(args: argparse.Namespace, conf: Dict[str, Any]) -> None:
    _resolve_positionals(args)

    cmd = (args.cmd or "").strip()
    if not cmd:
        raise SystemExit(f"missing command: one of {', '.join(COMMANDS)} (positional, --cmd or YAML `cmd:`)")
    if cmd not in COMMANDS:
        raise SystemExit(f"unknown command {cmd!r} (use {'|'.join(COMMANDS)})")
    args.cmd = cmd

    _validate_knobs(args)

    if cmd in ("inspect", "mount"):
        _validate_cmd_image(args)
    elif cmd == "resize":
        _validate_cmd_resize(args)
