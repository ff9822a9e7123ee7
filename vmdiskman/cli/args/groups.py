# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/cli/args/groups.py
from __future__ import annotations

import argparse
import os

from ...disk.models import ImageFormat

COMMANDS = ("inspect", "resize", "mount", "cleanup")


def _add_global_config_logging(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Global config/logging (two-phase parse relies on these)
    # ------------------------------------------------------------------
    from ... import __version__

    p.add_argument(
        "--config",
        action="append",
        default=[],
        help="YAML/JSON config file, directory or glob (repeatable; later overrides earlier).",
    )
    p.add_argument("--dump-config", action="store_true", help="Print merged normalized config and exit.")
    p.add_argument("--dump-args", action="store_true", help="Print final parsed args and exit.")
    p.add_argument("--version", action="version", version=__version__)
    p.add_argument("-v", "--verbose", action="count", default=0, help="Verbosity: -v, -vv (debug), -vvv (trace)")
    p.add_argument("-q", "--quiet", action="count", default=0, help="Quieter console: -q warnings, -qq errors only.")
    p.add_argument("--log-file", dest="log_file", default=None, help="Session log file (overrides --log-dir).")
    p.add_argument(
        "--log-dir",
        dest="log_dir",
        default="/var/log/vmdiskman",
        help="Directory for per-session logs (session-<timestamp>-<pid>.log).",
    )
    p.add_argument("--json-logs", dest="json_logs", action="store_true", help="NDJSON log lines instead of the human format.")


def _add_command(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Command + image (positional convenience or YAML `cmd:`/`image:`)
    # ------------------------------------------------------------------
    p.add_argument(
        "words",
        nargs="*",
        metavar="COMMAND IMAGE [SIZE]",
        help=f"Command ({', '.join(COMMANDS)}), image path and, for resize, the new size.",
    )
    p.add_argument("--cmd", dest="cmd", default=None, help=f"Command (normally positional or YAML `cmd:`): {', '.join(COMMANDS)}")
    p.add_argument("--image", dest="image", default=None, help="Disk image path.")
    p.add_argument("--size", dest="size", default=None, help="resize: new virtual size (40G) or growth (+10G).")
    p.add_argument(
        "--format",
        dest="format",
        default=None,
        choices=[f.value for f in ImageFormat] + ["vhd"],
        help="Image format (probed with qemu-img when omitted).",
    )


def _add_operation_flags(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Operation flags
    # ------------------------------------------------------------------
    p.add_argument("--partition", dest="partition", type=int, default=None, help="Partition number to grow/mount (default: the last one).")
    p.add_argument("--lv", dest="lv", default=None, help="Logical volume to grow/mount (NAME or VG/NAME) when there are several.")
    p.add_argument("--backup", dest="backup", action="store_true", help="Sparse copy of the image before it is resized.")
    p.add_argument("-y", "--yes", dest="assume_yes", action="store_true", help="Answer yes to every confirmation.")
    p.add_argument(
        "--no-sweep",
        dest="sweep",
        action="store_false",
        help="Skip the release of orphaned resources before attaching.",
    )
    p.add_argument(
        "--include-nbd",
        dest="include_nbd",
        action="store_true",
        help="cleanup: also disconnect NBD devices that are connected but unused.",
    )
    p.add_argument("--mount-root", dest="mount_root", default="/mnt", help="Parent directory for temporary mount points.")
    p.add_argument("--mount-options", dest="mount_options", default=None, help="mount: options passed to mount -o.")


def _add_luks_knobs(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # LUKS knobs
    # ------------------------------------------------------------------
    p.add_argument(
        "--luks-passphrase",
        dest="luks_passphrase",
        default=os.environ.get("VMDISKMAN_LUKS_PASSPHRASE"),
        help="Passphrase for LUKS partitions (or set VMDISKMAN_LUKS_PASSPHRASE).",
    )
    p.add_argument(
        "--luks-passphrase-env",
        dest="luks_passphrase_env",
        default=None,
        help="Env var holding the LUKS passphrase.",
    )
    p.add_argument("--luks-keyfile", dest="luks_keyfile", default=None, help="Path to a LUKS keyfile. Overrides any passphrase.")
    p.add_argument(
        "--keyfile-dir",
        dest="keyfile_dir",
        default=None,
        help="Directory for the short-lived key file handed to cryptsetup (prefer a tmpfs).",
    )
    p.add_argument("--unlock-max-attempts", dest="unlock_max_attempts", type=int, default=3, help="Unlock attempts before giving up.")
    p.add_argument("--unlock-timeout", dest="unlock_timeout_s", type=float, default=30.0, help="Seconds allowed per unlock attempt.")


def _add_nbd_knobs(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # NBD attach / device polling
    # ------------------------------------------------------------------
    p.add_argument("--nbd-max-devices", dest="nbd_max_devices", type=int, default=16, help="Number of /dev/nbdN devices to consider.")
    p.add_argument("--attach-retries", dest="attach_retries", type=int, default=3, help="Attach attempts before giving up.")
    p.add_argument("--attach-timeout", dest="attach_timeout_s", type=float, default=30.0, help="Seconds allowed per qemu-nbd connect.")
    p.add_argument("--poll-attempts", dest="poll_attempts", type=int, default=10, help="Polls for a device node to appear/disappear.")
    p.add_argument("--poll-interval", dest="poll_interval_s", type=float, default=0.5, help="Seconds between device polls.")
    p.add_argument("--settle-delay", dest="settle_delay_s", type=float, default=1.0, help="Extra seconds after 'udevadm settle'.")
