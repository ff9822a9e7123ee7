# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/config/config_loader.py
"""
YAML/JSON configuration files.

`--config` is repeatable; each value may be a file, a directory (its
*.yaml/*.yml/*.json files in name order) or a glob. Later files override
earlier ones, nested mappings are merged key by key. The merged mapping is
then pushed into argparse as defaults so the command line still wins.
"""
from __future__ import annotations

import argparse
import glob
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

import yaml

from ..core.utils import U

_CONFIG_SUFFIXES = (".yaml", ".yml", ".json")

# Keys accepted in a config file that map onto a different argparse dest.
_ALIASES = {
    "command": "cmd",
    "yes": "assume_yes",
    "no_sweep": "sweep",
}


def _deep_merge(base: Dict[str, Any], over: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in over.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


class Config:
    @staticmethod
    def expand_configs(logger: logging.Logger, cfgs: List[str]) -> List[Path]:
        out: List[Path] = []
        for raw in cfgs:
            spec = str(Path(str(raw)).expanduser())
            if any(ch in spec for ch in "*?["):
                hits = sorted(glob.glob(spec))
                if not hits:
                    logger.warning("Config glob matched nothing: %s", spec)
                out.extend(Path(h) for h in hits)
                continue

            p = Path(spec)
            if p.is_dir():
                found = sorted(x for x in p.iterdir() if x.suffix.lower() in _CONFIG_SUFFIXES)
                logger.debug("Config dir %s: %d file(s)", p, len(found))
                out.extend(found)
            elif p.is_file():
                out.append(p)
            else:
                U.die(logger, f"Config file not found: {p}", 1)
        return out

    @staticmethod
    def load_one(logger: logging.Logger, path: Path) -> Dict[str, Any]:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            U.die(logger, f"Cannot read config {path}: {e}", 1)

        try:
            if path.suffix.lower() == ".json":
                data = json.loads(text) if text.strip() else {}
            else:
                data = yaml.safe_load(text)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            U.die(logger, f"Invalid config {path}: {e}", 1)

        if data is None:
            return {}
        if not isinstance(data, dict):
            U.die(logger, f"Config {path} must be a mapping at the top level, got {type(data).__name__}", 1)
        logger.debug("Loaded config %s (%d key(s))", path, len(data))
        return data

    @staticmethod
    def load_many(logger: logging.Logger, paths: List[Path]) -> Dict[str, Any]:
        conf: Dict[str, Any] = {}
        for p in paths:
            conf = _deep_merge(conf, Config.load_one(logger, p))
        return Config.normalize(conf)

    @staticmethod
    def normalize(conf: Dict[str, Any]) -> Dict[str, Any]:
        """Dash keys become underscores; a few friendly aliases map to their dest."""
        out: Dict[str, Any] = {}
        for k, v in conf.items():
            key = str(k).strip().replace("-", "_")
            if key == "no_sweep":
                out["sweep"] = not bool(v)
                continue
            out[_ALIASES.get(key, key)] = v
        return out

    @staticmethod
    def apply_as_defaults(logger: logging.Logger, parser: argparse.ArgumentParser, conf: Dict[str, Any]) -> None:
        known = {a.dest for a in parser._actions if a.dest and a.dest != argparse.SUPPRESS}
        defaults: Dict[str, Any] = {}
        for k, v in conf.items():
            if k in known:
                defaults[k] = v
            else:
                logger.warning("Ignoring unknown config key: %s", k)
        if defaults:
            logger.debug("Config defaults: %s", ", ".join(sorted(defaults)))
            parser.set_defaults(**defaults)
