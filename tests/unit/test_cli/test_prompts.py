# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for operator confirmations and passphrase entry."""
from __future__ import annotations

import contextlib

import pytest
from fakes.fake_logger import FakeLogger
from vmdiskman.cli.prompts import ConsolePrompter, PromptCredentialProvider
from vmdiskman.disk.models import UnlockFailure, UnlockFailureKind


class Answers:
    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts = []

    def __call__(self, prompt):
        self.prompts.append(prompt)
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


@pytest.fixture
def log():
    return FakeLogger()


@pytest.mark.unit
class TestConfirm:
    def test_assume_yes_never_asks(self, log):
        ask = Answers()
        p = ConsolePrompter(log, assume_yes=True, interactive=True, input_fn=ask)
        assert p.confirm("Terminate qemu-kvm?")
        assert ask.prompts == []
        assert log.saw("(--yes)", "info")

    def test_not_interactive_declines(self, log):
        ask = Answers()
        p = ConsolePrompter(log, interactive=False, input_fn=ask)
        assert not p.confirm("Use parted resizepart instead?")
        assert ask.prompts == []
        assert log.saw("pass --yes", "warning")

    @pytest.mark.parametrize("reply,expected", [("y", True), ("YES", True), (" yes ", True), ("n", False), ("", False), ("No", False)])
    def test_replies(self, log, reply, expected):
        p = ConsolePrompter(log, interactive=True, input_fn=Answers(reply))
        assert p.confirm("Continue?") is expected

    def test_reasks_until_understood(self, log, capsys):
        ask = Answers("maybe", "y")
        p = ConsolePrompter(log, interactive=True, input_fn=ask)
        assert p.confirm("Continue?")
        assert len(ask.prompts) == 2
        assert "Please answer" in capsys.readouterr().err

    def test_end_of_input_declines(self, log):
        p = ConsolePrompter(log, interactive=True, input_fn=Answers(EOFError()))
        assert not p.confirm("Continue?")

    def test_question_is_shown(self, log):
        ask = Answers("y")
        ConsolePrompter(log, interactive=True, input_fn=ask).confirm("Unlock /dev/nbd0p2?")
        assert "Unlock /dev/nbd0p2?" in ask.prompts[0]
        assert "[y/N]" in ask.prompts[0]

    def test_hold_wraps_the_question(self, log):
        events = []

        @contextlib.contextmanager
        def hold():
            events.append("stop")
            yield
            events.append("start")

        def ask(prompt):
            events.append("ask")
            return "y"

        p = ConsolePrompter(log, interactive=True, input_fn=ask)
        p.hold = hold
        p.confirm("Continue?")
        assert events == ["stop", "ask", "start"]


@pytest.mark.unit
class TestPause:
    def test_waits_for_enter(self, log):
        ask = Answers("")
        ConsolePrompter(log, interactive=True, input_fn=ask).pause("Press Enter to unmount... ")
        assert len(ask.prompts) == 1

    def test_not_interactive_returns_at_once(self, log):
        ask = Answers()
        ConsolePrompter(log, interactive=False, input_fn=ask).pause("Press Enter... ")
        assert ask.prompts == []

    def test_end_of_input_returns(self, log):
        ConsolePrompter(log, interactive=True, input_fn=Answers(EOFError())).pause("Press Enter... ")


@pytest.mark.unit
@pytest.mark.security
class TestPromptCredentialProvider:
    def _provider(self, log, *, interactive=True, confirm=("y",), secrets=()):
        prompter = ConsolePrompter(log, interactive=interactive, input_fn=Answers(*confirm))
        return PromptCredentialProvider(prompter, log, getpass_fn=Answers(*secrets))

    def test_begin_asks_for_confirmation(self, log):
        p = self._provider(log, confirm=("n",))
        assert not p.begin("/dev/nbd0p2", {"version": "2", "cipher": "aes-xts-plain64"})
        assert log.saw("LUKS-encrypted (cipher aes-xts-plain64, version 2)", "info")

    def test_credential_is_bytes(self, log):
        p = self._provider(log, secrets=("pässword",))
        assert p.get_credential("/dev/nbd0p2", 1, 3) == "pässword".encode("utf-8")
        assert "attempt 1/3" in p.getpass_fn.prompts[0]

    def test_secret_never_logged(self, log):
        p = self._provider(log, secrets=("hunter2",))
        p.begin("/dev/nbd0p2", {})
        p.get_credential("/dev/nbd0p2", 1, 3)
        assert not log.saw("hunter2")

    def test_end_of_input_cancels(self, log):
        p = self._provider(log, secrets=(EOFError(),))
        assert p.get_credential("/dev/nbd0p2", 1, 3) is None

    def test_no_terminal_cancels(self, log):
        p = self._provider(log, interactive=False)
        assert p.get_credential("/dev/nbd0p2", 1, 3) is None
        assert p.getpass_fn.prompts == []

    @pytest.mark.parametrize(
        "kind,retry",
        [(UnlockFailureKind.WRONG_CREDENTIAL, True), (UnlockFailureKind.TIMEOUT, True), (UnlockFailureKind.OTHER, False)],
    )
    def test_retry_policy(self, log, kind, retry):
        p = self._provider(log)
        assert p.retry_after(UnlockFailure(kind, 1, "detail")) is retry
