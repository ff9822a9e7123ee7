# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the bounded retry and polling helpers."""
from __future__ import annotations

import pytest
from fakes.fake_logger import FakeLogger
from vmdiskman.core.exceptions import DeviceNotReady, PreconditionViolation, TransientFailure
from vmdiskman.core.retry import retry_operation, wait_until


class _Flaky:
    def __init__(self, failures, exc=DeviceNotReady):
        self.failures = failures
        self.calls = 0
        self.exc = exc

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(msg=f"not ready ({self.calls})")
        return "ok"


@pytest.mark.unit
class TestRetryOperation:
    def test_succeeds_after_transient_failures(self):
        sleeps = []
        op = _Flaky(2)
        assert retry_operation(op, max_attempts=3, base_backoff_s=2.0, sleep=sleeps.append) == "ok"
        assert op.calls == 3
        assert sleeps == [2.0, 4.0]

    def test_gives_up_after_bound(self):
        sleeps = []
        op = _Flaky(10)
        log = FakeLogger()
        with pytest.raises(DeviceNotReady, match=r"not ready \(3\)"):
            retry_operation(op, max_attempts=3, sleep=sleeps.append, logger=log, operation_name="attach")
        assert op.calls == 3
        assert len(sleeps) == 2
        assert log.saw("attach failed after 3 attempts", "error")

    def test_backoff_is_capped(self):
        sleeps = []
        with pytest.raises(DeviceNotReady):
            retry_operation(_Flaky(10), max_attempts=5, base_backoff_s=10.0, max_backoff_s=15.0, sleep=sleeps.append)
        assert sleeps == [10.0, 15.0, 15.0, 15.0]

    def test_unlisted_exception_propagates_at_once(self):
        op = _Flaky(1, exc=PreconditionViolation)
        with pytest.raises(PreconditionViolation):
            retry_operation(op, max_attempts=3, exceptions=TransientFailure, sleep=lambda s: None)
        assert op.calls == 1

    def test_terminal_classification(self):
        op = _Flaky(5)
        with pytest.raises(DeviceNotReady):
            retry_operation(op, max_attempts=3, retryable=lambda e: False, sleep=lambda s: None)
        assert op.calls == 1


@pytest.mark.unit
class TestWaitUntil:
    def test_true_immediately(self):
        sleeps = []
        assert wait_until(lambda: True, attempts=5, sleep=sleeps.append)
        assert sleeps == []

    def test_bounded(self):
        sleeps = []
        assert not wait_until(lambda: False, attempts=4, interval_s=0.25, sleep=sleeps.append)
        assert sleeps == [0.25, 0.25, 0.25]

    def test_eventually(self):
        seen = iter([False, False, True])
        sleeps = []
        assert wait_until(lambda: next(seen), attempts=10, sleep=sleeps.append)
        assert len(sleeps) == 2
