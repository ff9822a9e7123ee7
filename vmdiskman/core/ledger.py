# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/core/ledger.py
"""
Ordered record of every resource a session acquired.

Entries are appended at acquisition time and released in reverse. An entry
may name a `parent` (the resource it sits on: an LV group on a LUKS mapping,
a mapping on an NBD device). A parent is never released while any of its
dependents is still held, so "deactivate the VG before closing the
container" is enforced by the ledger itself, not by call order.

An entry whose release fails stays in the ledger: the ledger never claims a
resource is free while the host still holds it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .exceptions import LayerOrderViolation, TeardownWarning


class ResourceKind(str, Enum):
    BLOCK_DEVICE = "block_device"
    CONTAINER = "container"
    VOLUME_GROUP = "volume_group"
    MOUNT = "mount"


def resource_key(kind: ResourceKind, name: str) -> str:
    return f"{kind.value}:{name}"


@dataclass
class ResourceEntry:
    kind: ResourceKind
    name: str
    release: Callable[[], None]
    parent: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return resource_key(self.kind, self.name)


@dataclass
class TeardownReport:
    released: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.failed and not self.blocked

    def summary(self) -> str:
        return f"released={len(self.released)} failed={len(self.failed)} blocked={len(self.blocked)}"


class ResourceLedger:
    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self._entries: List[ResourceEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ResourceEntry]:
        return iter(list(self._entries))

    def __contains__(self, key: object) -> bool:
        return any(e.key == key for e in self._entries)

    def keys(self) -> List[str]:
        return [e.key for e in self._entries]

    def append(self, entry: ResourceEntry) -> ResourceEntry:
        existing = self.get(entry.key)
        if existing is not None:
            self.logger.debug("Ledger: %s already recorded", entry.key)
            return existing
        if entry.parent is not None and entry.parent not in self:
            self.logger.warning("Ledger: %s names untracked parent %s", entry.key, entry.parent)
        self._entries.append(entry)
        self.logger.debug(
            "Ledger +%s%s (depth=%d)",
            entry.key,
            f" on {entry.parent}" if entry.parent else "",
            len(self._entries),
        )
        return entry

    def get(self, key: str) -> Optional[ResourceEntry]:
        for e in self._entries:
            if e.key == key:
                return e
        return None

    def find(self, kind: ResourceKind, name: str) -> Optional[ResourceEntry]:
        return self.get(resource_key(kind, name))

    def of_kind(self, kind: ResourceKind) -> List[ResourceEntry]:
        return [e for e in self._entries if e.kind == kind]

    def dependents(self, key: str) -> List[ResourceEntry]:
        return [e for e in self._entries if e.parent == key]

    def release(self, key: str) -> None:
        """
        Release one entry.

        Absent entries are a no-op. Raises LayerOrderViolation if a dependent
        is still held, or TeardownWarning if the release callback fails; in
        both cases the entry stays recorded.
        """
        entry = self.get(key)
        if entry is None:
            self.logger.debug("Ledger: %s not held, nothing to release", key)
            return

        held = self.dependents(key)
        if held:
            names = ", ".join(d.key for d in held)
            self.logger.error("Ledger: refusing to release %s while %s still held", key, names)
            raise LayerOrderViolation(
                msg=f"{key} is still in use by {names}",
                context={"resource": key, "dependents": [d.key for d in held]},
            )

        try:
            entry.release()
        except TeardownWarning as e:
            entry.detail["last_error"] = str(e)
            self.logger.error("Ledger: release of %s failed: %s", key, e)
            raise
        except Exception as e:
            entry.detail["last_error"] = str(e)
            self.logger.error("Ledger: release of %s failed: %s", key, e)
            raise TeardownWarning(
                msg=f"Failed to release {key}: {e}",
                cause=e,
                context={"resource": key},
                remediation="Release the resource manually, then run 'cleanup'.",
            ) from e

        if entry in self._entries:
            self._entries.remove(entry)
        self.logger.debug("Ledger -%s (depth=%d)", key, len(self._entries))

    def release_all(self) -> TeardownReport:
        """
        Walk the ledger newest-first, releasing every entry. Never stops on a
        failure; a parent of a failed or blocked entry is itself blocked.
        """
        report = TeardownReport()
        for entry in reversed(list(self._entries)):
            key = entry.key
            if key not in self:
                continue
            try:
                self.release(key)
                report.released.append(key)
            except LayerOrderViolation as e:
                report.blocked.append(key)
                self.logger.error("Teardown blocked: %s", e.user_message())
            except TeardownWarning as e:
                report.failed.append((key, str(e)))
                self.logger.error("Teardown step failed: %s", e.user_message())

        if report.clean:
            self.logger.debug("Ledger teardown complete: %s", report.summary())
        else:
            self.logger.error(
                "Ledger teardown incomplete (%s); still held: %s",
                report.summary(),
                ", ".join(self.keys()),
            )
        return report
