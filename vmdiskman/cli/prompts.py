# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/cli/prompts.py
"""
Operator interaction: yes/no confirmations, the "press Enter when done"
pause of the mount command and passphrase entry.

Nothing here prompts when stdin is not a terminal: confirmations answer no
(unless --yes) and passphrase entry cancels.
"""
from __future__ import annotations

import contextlib
import getpass
import logging
import sys
from typing import Any, Callable, ContextManager, Dict, Optional

from ..core.logger import c
from ..disk.luks import CredentialProvider
from ..disk.models import UnlockFailure, UnlockFailureKind

_YES = ("y", "yes")
_NO = ("", "n", "no")


class ConsolePrompter:
    def __init__(
        self,
        logger: logging.Logger,
        *,
        assume_yes: bool = False,
        interactive: Optional[bool] = None,
        input_fn: Callable[[str], str] = input,
    ):
        self.logger = logger
        self.assume_yes = assume_yes
        self.interactive = sys.stdin.isatty() if interactive is None else interactive
        self.input_fn = input_fn
        # Replaced by the orchestrator so a live progress display stops while we ask.
        self.hold: Callable[[], ContextManager[Any]] = contextlib.nullcontext

    def confirm(self, question: str) -> bool:
        if self.assume_yes:
            self.logger.info("%s -> yes (--yes)", question)
            return True
        if not self.interactive:
            self.logger.warning("%s -> no (not interactive; pass --yes to accept)", question)
            return False

        with self.hold():
            while True:
                try:
                    answer = self.input_fn(c(f"{question} [y/N] ", "yellow", ["bold"])).strip().lower()
                except EOFError:
                    return False
                if answer in _YES:
                    return True
                if answer in _NO:
                    return False
                print("Please answer 'y' or 'n'.", file=sys.stderr)

    def pause(self, message: str) -> None:
        if not self.interactive:
            return
        with self.hold():
            try:
                self.input_fn(c(message, "cyan", ["bold"]))
            except EOFError:
                pass


class PromptCredentialProvider(CredentialProvider):
    """Asks the operator for a passphrase on every attempt."""

    def __init__(
        self,
        prompter: ConsolePrompter,
        logger: logging.Logger,
        *,
        getpass_fn: Callable[[str], str] = getpass.getpass,
    ):
        self.prompter = prompter
        self.logger = logger
        self.getpass_fn = getpass_fn

    def begin(self, partition: str, info: Dict[str, str]) -> bool:
        details = ", ".join(f"{k} {v}" for k, v in sorted(info.items()) if v and k != "device")
        self.logger.info("🔐 %s is LUKS-encrypted%s", partition, f" ({details})" if details else "")
        return self.prompter.confirm(f"Unlock {partition}?")

    def get_credential(self, partition: str, attempt: int, max_attempts: int) -> Optional[bytes]:
        if not self.prompter.interactive:
            self.logger.warning("No terminal to ask for the passphrase of %s", partition)
            return None
        with self.prompter.hold():
            try:
                secret = self.getpass_fn(f"Passphrase for {partition} (attempt {attempt}/{max_attempts}): ")
            except EOFError:
                return None
        return secret.encode("utf-8")

    def retry_after(self, failure: UnlockFailure) -> bool:
        if failure.kind == UnlockFailureKind.WRONG_CREDENTIAL:
            self.logger.warning("Wrong passphrase (attempt %d)", failure.attempt)
            return True
        if failure.kind == UnlockFailureKind.TIMEOUT:
            self.logger.warning("Unlock timed out (attempt %d); trying again", failure.attempt)
            return True
        self.logger.error("Unlock failed: %s", failure.detail or "unknown error")
        return False
