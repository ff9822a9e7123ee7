# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/cli/args/parser.py
from __future__ import annotations

import argparse
import os
import sys
from typing import Any, Dict, Optional, Sequence, Tuple

from ...config.config_loader import Config
from ...core.logger import Log, c
from ...core.utils import U
from .builder import HelpFormatter, _build_epilog
from .groups import (
    _add_command,
    _add_global_config_logging,
    _add_luks_knobs,
    _add_nbd_knobs,
    _add_operation_flags,
)
from .validators import validate_args


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="vmdiskman",
        description=c("vmdiskman: attach, unlock, grow and mount VM disk images safely", "green", ["bold"]),
        formatter_class=HelpFormatter,
        epilog=_build_epilog(),
    )

    _add_global_config_logging(p)
    _add_command(p)
    _add_operation_flags(p)
    _add_luks_knobs(p)
    _add_nbd_knobs(p)

    return p


def _build_preparser() -> argparse.ArgumentParser:
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", action="append", default=[])
    pre.add_argument("-v", "--verbose", action="count", default=0)
    pre.add_argument("-q", "--quiet", action="count", default=0)
    pre.add_argument("--log-file", dest="log_file", default=None)
    pre.add_argument("--log-dir", dest="log_dir", default=None)
    pre.add_argument("--json-logs", dest="json_logs", action="store_true")
    pre.add_argument("--dump-config", action="store_true")
    pre.add_argument("--dump-args", action="store_true")
    return pre


def _load_merged_config(logger: Any, cfgs: Sequence[str]) -> Dict[str, Any]:
    if not cfgs:
        return {}
    expanded = Config.expand_configs(logger, list(cfgs))
    return Config.load_many(logger, expanded)


def _session_log_file(args: argparse.Namespace) -> Optional[str]:
    """--log-file wins; otherwise a fresh file under --log-dir when that is writable."""
    if args.log_file:
        return str(args.log_file)
    log_dir = getattr(args, "log_dir", None)
    if not log_dir:
        return None
    d = os.path.expanduser(str(log_dir))
    try:
        os.makedirs(d, exist_ok=True)
    except OSError:
        return None
    if not os.access(d, os.W_OK):
        return None
    return str(Log.session_log_path(d))


def parse_args_with_config(
    argv: Optional[Sequence[str]] = None,
    logger: Any = None,
) -> Tuple[argparse.Namespace, Dict[str, Any], Any]:
    """
    Flow:
      Phase 0: parse ONLY the flags needed to locate config/logging
      Phase 1: load+merge config files
      Phase 2: apply config as defaults onto the parser
      Phase 3: full parse to get final args
      Phase 4: validate using merged config + args
      Phase 5: reopen logging with the session log file
    """
    if argv is None:
        argv = sys.argv[1:]
    argv = list(argv)

    parser = build_parser()

    pre = _build_preparser()
    args0, _rest = pre.parse_known_args(argv)

    own_logger = logger is None
    if own_logger:
        logger = Log.setup(
            getattr(args0, "verbose", 0),
            getattr(args0, "log_file", None),
            quiet=getattr(args0, "quiet", 0),
            json_logs=getattr(args0, "json_logs", False),
        )

    conf = _load_merged_config(logger, getattr(args0, "config", None) or [])

    if getattr(args0, "dump_config", False):
        print(U.json_dump(conf))
        raise SystemExit(0)

    # Config values become defaults so the command line can override them.
    Config.apply_as_defaults(logger, parser, conf)

    args = parser.parse_intermixed_args(argv)

    if getattr(args0, "dump_args", False):
        print(U.json_dump(vars(args)))
        raise SystemExit(0)

    validate_args(args, conf)

    if own_logger:
        log_file = _session_log_file(args)
        if log_file and log_file != args0.log_file:
            logger = Log.setup(args.verbose, log_file, quiet=args.quiet, json_logs=args.json_logs)
        args.log_file = log_file
        if log_file:
            logger.debug("Session log: %s", log_file)

    return args, conf, logger
