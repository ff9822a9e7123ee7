# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/cli/args/__init__.py
"""Argument parsing for the vmdiskman CLI."""
from __future__ import annotations

from .builder import HelpFormatter, _build_epilog
from .groups import (
    COMMANDS,
    _add_command,
    _add_global_config_logging,
    _add_luks_knobs,
    _add_nbd_knobs,
    _add_operation_flags,
)
from .parser import _build_preparser, _load_merged_config, build_parser, parse_args_with_config
from .validators import parse_size, validate_args

__all__ = [
    "COMMANDS",
    "HelpFormatter",
    "_add_command",
    "_add_global_config_logging",
    "_add_luks_knobs",
    "_add_nbd_knobs",
    "_add_operation_flags",
    "_build_epilog",
    "_build_preparser",
    "_load_merged_config",
    "build_parser",
    "parse_args_with_config",
    "parse_size",
    "validate_args",
]
