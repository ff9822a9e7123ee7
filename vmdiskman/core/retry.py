# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
"""
Bounded retry and polling helpers.

Every wait in the lifecycle engine is bounded: device nodes appearing after
an attach, partition nodes after a table refresh, mappings disappearing after
a close. Nothing here blocks indefinitely.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar, Union

T = TypeVar("T")


def retry_operation(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_backoff_s: float = 2.0,
    max_backoff_s: float = 30.0,
    jitter_s: float = 0.0,
    exceptions: Union[Type[Exception], Tuple[Type[Exception], ...]] = Exception,
    retryable: Optional[Callable[[Exception], bool]] = None,
    operation_name: str = "operation",
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Retry an operation with exponential backoff.

    Args:
        operation: Callable that returns T
        max_attempts: Maximum number of attempts (default: 3)
        base_backoff_s: Base backoff time in seconds (default: 2.0)
        max_backoff_s: Maximum backoff time in seconds (default: 30.0)
        jitter_s: Random jitter added to each backoff (default: 0)
        exceptions: Exception type(s) that are candidates for a retry
        retryable: Classifier; returning False makes the error terminal and
            it is re-raised immediately. None means every caught error is
            retryable.
        operation_name: Name for logging
        logger: Logger for retry messages
        sleep: Sleep function (injectable for tests)

    Example:
        dev = retry_operation(
            lambda: attacher.connect_once(image, device),
            max_attempts=3,
            retryable=lambda e: isinstance(e, TransientFailure),
            operation_name="qemu-nbd connect",
            logger=logger,
        )
    """
    is_retryable = retryable or (lambda _e: True)
    last_exception: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except exceptions as e:
            last_exception = e

            if not is_retryable(e):
                if logger:
                    logger.debug("%s failed with a terminal error: %s", operation_name, e)
                raise

            if attempt < max_attempts:
                sleep_time = min(base_backoff_s * (2 ** (attempt - 1)), max_backoff_s)
                if jitter_s > 0:
                    sleep_time += random.uniform(0, jitter_s)
                if logger:
                    logger.warning(
                        "%s failed (attempt %d/%d): %s. Retrying in %.2fs...",
                        operation_name,
                        attempt,
                        max_attempts,
                        e,
                        sleep_time,
                    )
                sleep(sleep_time)
            elif logger:
                logger.error("%s failed after %d attempts: %s", operation_name, max_attempts, e)

    if last_exception:
        raise last_exception
    raise RuntimeError(f"{operation_name} failed with no exception recorded")


def wait_until(
    predicate: Callable[[], bool],
    *,
    attempts: int = 10,
    interval_s: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """
    Poll `predicate` up to `attempts` times, sleeping `interval_s` between
    polls. Returns True as soon as it holds, False once the bound is spent.
    """
    for i in range(max(1, attempts)):
        if predicate():
            return True
        if i < attempts - 1:
            sleep(interval_s)
    return False
