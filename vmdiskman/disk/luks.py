# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/disk/luks.py
"""
LUKS container unlock/close with bounded credential retries.

Credential handling:
  - a partition is verified with `cryptsetup isLuks` before any credential
    is requested
  - the secret reaches cryptsetup through an owner-only temp key file that
    is unlinked on every exit path
  - at most `max_attempts` unlocks are tried; each failure is classified
    and handed back to the provider, which decides whether to go on
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from ..core.exceptions import (
    MaxAttemptsExceeded,
    NotLuks,
    PartitionNotFound,
    StructuralFailure,
    TeardownWarning,
    UserCancelled,
)
from ..core.ledger import ResourceEntry, ResourceKind, ResourceLedger, resource_key
from ..core.runner import CommandResult, ProcessRunner
from ..core.utils import U
from .models import ContainerState, EncryptedContainer, UnlockFailure, UnlockFailureKind

MAPPER_DIR = "/dev/mapper"
_ORPHAN_RE = re.compile(r"^luks_(.+)_(\d+)$")
# cryptsetup exits 2 on "no permission (bad passphrase)".
_BAD_PASSPHRASE_RC = 2


class CredentialProvider:
    """
    Supplies unlock credentials. Returning None from get_credential() means
    the operator cancelled.
    """

    def begin(self, partition: str, info: Dict[str, str]) -> bool:
        return True

    def get_credential(self, partition: str, attempt: int, max_attempts: int) -> Optional[bytes]:
        raise NotImplementedError

    def retry_after(self, failure: UnlockFailure) -> bool:
        return failure.kind != UnlockFailureKind.OTHER


class StaticCredentialProvider(CredentialProvider):
    """
    Non-interactive credentials: a passphrase, an environment variable or a
    keyfile. The same secret is offered on every attempt, so a wrong one is
    not retried.
    """

    def __init__(
        self,
        passphrase: Optional[str] = None,
        *,
        env: Optional[str] = None,
        keyfile: Optional[str] = None,
    ):
        self.passphrase = passphrase
        self.env = env
        self.keyfile = keyfile

    def get_credential(self, partition: str, attempt: int, max_attempts: int) -> Optional[bytes]:
        if self.keyfile:
            return Path(self.keyfile).expanduser().read_bytes()
        if self.passphrase is not None:
            return self.passphrase.encode("utf-8")
        if self.env:
            val = os.environ.get(self.env)
            return val.encode("utf-8") if val is not None else None
        return None

    def retry_after(self, failure: UnlockFailure) -> bool:
        return failure.kind == UnlockFailureKind.TIMEOUT

    @property
    def configured(self) -> bool:
        return bool(self.keyfile or self.passphrase is not None or (self.env and self.env in os.environ))


def sanitize_name(partition: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", os.path.basename(partition))


class EncryptedVolumeOpener:
    def __init__(
        self,
        runner: ProcessRunner,
        ledger: ResourceLedger,
        logger: logging.Logger,
        *,
        max_attempts: int = 3,
        timeout_s: float = 30.0,
        keyfile_dir: Optional[str] = None,
        pid: Optional[int] = None,
    ):
        self.runner = runner
        self.ledger = ledger
        self.logger = logger
        self.max_attempts = max(1, int(max_attempts))
        self.timeout_s = timeout_s
        self.keyfile_dir = keyfile_dir
        self.pid = pid if pid is not None else os.getpid()

    def mapper_name_for(self, partition: str) -> str:
        return f"luks_{sanitize_name(partition)}_{self.pid}"

    def mapper_path(self, name: str) -> str:
        return os.path.join(MAPPER_DIR, name)

    def is_open(self, name: str) -> bool:
        return self.runner.path_exists(self.mapper_path(name))

    def is_luks(self, partition: str) -> bool:
        return self.runner.run(["cryptsetup", "isLuks", partition], timeout=self.timeout_s).ok

    def describe(self, partition: str) -> Dict[str, str]:
        info = {"device": partition, "version": "unknown", "cipher": "unknown"}
        res = self.runner.run(["cryptsetup", "luksDump", partition], timeout=self.timeout_s)
        if not res.ok:
            return info
        for line in res.stdout.splitlines():
            key, _, val = line.partition(":")
            key, val = key.strip().lower(), val.strip()
            if key == "version" and val:
                info["version"] = val
            elif key in ("cipher name", "cipher") and val and info["cipher"] == "unknown":
                info["cipher"] = val
        return info

    # -----------------------
    # open
    # -----------------------

    def open(
        self,
        partition: str,
        credentials: CredentialProvider,
        *,
        parent: Optional[str] = None,
    ) -> EncryptedContainer:
        if not self.runner.path_exists(partition):
            raise PartitionNotFound(msg=f"Partition not found: {partition}", context={"partition": partition})
        if not self.is_luks(partition):
            raise NotLuks(msg=f"{partition} is not a LUKS container", context={"partition": partition})

        name = self.mapper_name_for(partition)
        container = EncryptedContainer(partition=partition, mapper_name=name)

        if resource_key(ResourceKind.CONTAINER, name) in self.ledger and self.is_open(name):
            self.logger.info("%s already open as %s", partition, container.mapper_path)
            container.state = ContainerState.OPEN
            return container
        if self.is_open(name):
            self.logger.warning("Removing stale mapping %s left by an earlier run", name)
            self._discard_partial(name)

        if not credentials.begin(partition, self.describe(partition)):
            raise UserCancelled(msg=f"Unlock of {partition} declined", context={"partition": partition})

        # Recorded before the first open: an interrupt right after
        # cryptsetup succeeds still closes the mapping.
        key = self.ledger.append(
            ResourceEntry(
                ResourceKind.CONTAINER,
                name,
                release=lambda n=name: self._close(n),
                parent=parent,
                detail={"partition": partition},
            )
        ).key

        container.state = ContainerState.UNLOCKING
        last: Optional[UnlockFailure] = None

        for attempt in range(1, self.max_attempts + 1):
            container.attempts = attempt
            self.logger.info("LUKS unlock attempt %d/%d for %s", attempt, self.max_attempts, partition)

            secret = credentials.get_credential(partition, attempt, self.max_attempts)
            if secret is None:
                container.state = ContainerState.LOCKED
                self._abandon(key)
                raise UserCancelled(msg=f"Unlock of {partition} cancelled", context={"partition": partition})

            if not secret:
                last = UnlockFailure(UnlockFailureKind.WRONG_CREDENTIAL, attempt, "empty credential")
            else:
                last = self._try_unlock(partition, name, secret, attempt)
            del secret

            if last is None:
                container.state = ContainerState.OPEN
                self.logger.info("LUKS partition opened: %s", container.mapper_path)
                return container

            self.logger.warning("Unlock attempt %d/%d failed (%s): %s", attempt, self.max_attempts, last.kind.value, last.detail)
            self._discard_partial(name)

            if attempt < self.max_attempts and not credentials.retry_after(last):
                break

        container.state = ContainerState.LOCKED
        self._abandon(key)
        kind = last.kind.value if last else "unknown"
        raise MaxAttemptsExceeded(
            msg=f"Could not unlock {partition} after {container.attempts} attempt(s): {kind}",
            context={"partition": partition, "attempts": container.attempts, "failure": kind},
        )

    def _abandon(self, key: str) -> None:
        try:
            self.ledger.release(key)
        except TeardownWarning as e:
            self.logger.error("Could not release %s after failed unlock: %s", key, e)

    def _try_unlock(self, partition: str, name: str, secret: bytes, attempt: int) -> Optional[UnlockFailure]:
        fd, keyfile = tempfile.mkstemp(prefix="vmdiskman-key-", dir=self.keyfile_dir)
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "wb") as f:
                fd = -1
                f.write(secret)
            res = self.runner.run(
                ["cryptsetup", "open", "--type", "luks", partition, name, "--key-file", keyfile],
                timeout=self.timeout_s,
            )
        finally:
            if fd >= 0:
                os.close(fd)
            U.safe_unlink(Path(keyfile))

        if res.ok:
            return None
        return self.classify(res, attempt)

    @staticmethod
    def classify(res: CommandResult, attempt: int) -> UnlockFailure:
        if res.timed_out:
            return UnlockFailure(UnlockFailureKind.TIMEOUT, attempt, "cryptsetup timed out")
        text = res.output.lower()
        if (
            "no key available" in text
            or "incorrect passphrase" in text
            or "wrong passphrase" in text
            or res.returncode == _BAD_PASSPHRASE_RC
        ):
            return UnlockFailure(UnlockFailureKind.WRONG_CREDENTIAL, attempt, res.diagnostic(1))
        return UnlockFailure(UnlockFailureKind.OTHER, attempt, res.diagnostic(1))

    def _discard_partial(self, name: str) -> None:
        if not self.is_open(name):
            return
        self.logger.warning("Removing partial mapping %s", name)
        res = self.runner.run(["dmsetup", "remove", "--force", name], timeout=self.timeout_s)
        if not res.ok and self.is_open(name):
            self.logger.error("Could not remove partial mapping %s: %s", name, res.diagnostic(1))

    # -----------------------
    # close / resize
    # -----------------------

    def close(self, name: str) -> None:
        """Idempotent. Refuses (LayerOrderViolation) while a VG on it is active."""
        key = resource_key(ResourceKind.CONTAINER, name)
        if key in self.ledger:
            self.ledger.release(key)
        else:
            self._close(name)

    def _close(self, name: str) -> None:
        if not self.is_open(name):
            self.logger.debug("Mapping %s already closed", name)
            return

        res = self.runner.run(["cryptsetup", "close", name], timeout=self.timeout_s)
        if res.ok:
            self.logger.info("LUKS mapping closed: %s", name)
            return

        self.logger.warning("cryptsetup close %s failed (%s); forcing removal", name, res.diagnostic(1))
        res = self.runner.run(["dmsetup", "remove", "--force", name], timeout=self.timeout_s)
        if res.ok and not self.is_open(name):
            self.logger.warning("LUKS mapping %s force-removed", name)
            return

        raise TeardownWarning(
            msg=f"LUKS mapping {name} is still open",
            context={"mapper": name},
            remediation=f"Deactivate anything using /dev/mapper/{name}, then run 'dmsetup remove --force {name}'.",
        )

    def resize(self, name: str) -> None:
        """Grow an open mapping to the size of its (grown) backing partition."""
        res = self.runner.run(["cryptsetup", "resize", name], timeout=self.timeout_s)
        if not res.ok:
            raise StructuralFailure(
                msg=f"cryptsetup resize {name} failed: {res.diagnostic(1)}",
                context={"mapper": name},
                remediation=f"Run 'cryptsetup resize {name}' manually with the volume passphrase.",
            )
        self.logger.info("LUKS mapping resized: %s", name)

    def list_orphans(self) -> List[str]:
        """Mappings following our naming whose owning process is gone."""
        out = []
        for name in self.runner.list_dir(MAPPER_DIR):
            m = _ORPHAN_RE.match(name)
            if not m:
                continue
            pid = int(m.group(2))
            if pid == self.pid or self.runner.pid_alive(pid):
                continue
            out.append(name)
        return out

    def force_close(self, name: str) -> None:
        self._close(name)
