# SPDX-License-Identifier: LGPL-3.0-or-later
# vmdiskman/core/exceptions.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


def _safe_int(x: Any, default: int = 1) -> int:
    try:
        return int(x)
    except Exception:
        return default


def _clamp_exit_code(code: int) -> int:
    # Exit codes are 0..255.
    try:
        if code < 0:
            return 1
        if code > 255:
            return 255
        return code
    except Exception:
        return 1


def _one_line(s: str, limit: int = 600) -> str:
    s = (s or "").strip().replace("\r", " ").replace("\n", " ")
    s = " ".join(s.split())
    return s if len(s) <= limit else (s[: limit - 3] + "...")


_SECRET_KEY_PARTS = (
    "pass",
    "password",
    "passwd",
    "passphrase",
    "secret",
    "token",
    "credential",
    "key",
)


def _is_secret_key(k: str) -> bool:
    ks = (k or "").lower()
    return any(p in ks for p in _SECRET_KEY_PARTS)


def _format_context_compact(ctx: Dict[str, Any]) -> str:
    parts = []
    for k in sorted(ctx.keys()):
        v = ctx.get(k)
        if _is_secret_key(str(k)):
            parts.append(f"{k}=<redacted>")
        else:
            parts.append(f"{k}={v!r}")
    return ", ".join(parts)


@dataclass(eq=False)
class VmDiskError(Exception):
    """
    Base project error with:
      - stable fields for reporting/JSON
      - readable __str__ (what users see)
      - a remediation hint telling the operator what to do next
    """
    code: int = 1
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None
    remediation: Optional[str] = None

    def __post_init__(self) -> None:
        self.code = _clamp_exit_code(_safe_int(self.code, default=1))
        self.msg = _one_line(self.msg) or self.__class__.__name__
        if self.context is None:
            self.context = {}
        super().__init__(self.msg)
        self.args = (self.msg,)

    def with_context(self, **ctx: Any) -> "VmDiskError":
        if self.context is None:
            self.context = {}
        self.context.update(ctx)
        return self

    def user_message(
        self,
        *,
        include_context: bool = False,
        include_cause: bool = False,
        include_remediation: bool = True,
    ) -> str:
        """
        Human-friendly message for CLI output/logs.
        """
        parts = [self.msg or self.__class__.__name__]

        if include_remediation and self.remediation:
            parts.append(f"-> {_one_line(self.remediation)}")

        if include_context and self.context:
            parts.append(f"[{_one_line(_format_context_compact(self.context), limit=600)}]")

        if include_cause and self.cause is not None:
            parts.append(f"(cause: {type(self.cause).__name__}: {_one_line(str(self.cause))})")

        return " ".join(parts)

    def __str__(self) -> str:
        return self.user_message(include_remediation=False)

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": self.__class__.__name__,
            "code": self.code,
            "message": self.msg,
            "remediation": self.remediation,
            "context": {
                k: ("<redacted>" if _is_secret_key(str(k)) else v) for k, v in (self.context or {}).items()
            },
        }
        if include_cause and self.cause is not None:
            d["cause"] = {"type": type(self.cause).__name__, "message": _one_line(str(self.cause))}
        return d


class Fatal(VmDiskError):
    """
    User-facing fatal error (exit code is honored by top-level main()).
    """
    pass


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class PreconditionViolation(VmDiskError):
    """Aborts before any resource is acquired (bad input, file in use, ...)."""
    code: int = 10


@dataclass(eq=False)
class TransientFailure(VmDiskError):
    """Timeouts and busy devices; retried locally up to a fixed bound."""
    code: int = 20


@dataclass(eq=False)
class StructuralFailure(VmDiskError):
    """Partition-table or filesystem changes that failed; needs the operator."""
    code: int = 30


@dataclass(eq=False)
class UserDeclined(VmDiskError):
    """Explicit cancellation by the operator. Not an error: exit code 0."""
    code: int = 0


@dataclass(eq=False)
class TeardownWarning(VmDiskError):
    """A cleanup step failed; the rest of the teardown still runs."""
    code: int = 40


# ---------------------------------------------------------------------------
# Concrete errors
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class ImageLocked(PreconditionViolation):
    remediation: Optional[str] = "Stop the VM or process holding the image, then retry."


@dataclass(eq=False)
class UnsupportedImageFormat(PreconditionViolation):
    remediation: Optional[str] = "Convert the image with qemu-img convert to raw or qcow2."


@dataclass(eq=False)
class InsufficientSpace(PreconditionViolation):
    remediation: Optional[str] = "Free up space on the image's filesystem or choose a smaller size."


@dataclass(eq=False)
class NotLuks(PreconditionViolation):
    remediation: Optional[str] = "Select a partition whose type is crypto_LUKS."


@dataclass(eq=False)
class VolumeGroupConflict(PreconditionViolation):
    remediation: Optional[str] = (
        "A volume group with the same name is already active on this host; "
        "rename the image's VG with vgimportclone before activating it."
    )


@dataclass(eq=False)
class PartitionNotFound(PreconditionViolation):
    remediation: Optional[str] = "Run 'inspect' to list the partitions on the image."


@dataclass(eq=False)
class NotLastPartition(PreconditionViolation):
    remediation: Optional[str] = (
        "Only the last partition can be grown in place; use an external partition tool "
        "(e.g. GParted Live) to move the partitions that follow it."
    )


@dataclass(eq=False)
class LifecycleStateError(PreconditionViolation):
    """An operation was requested in a session state that does not allow it."""
    code: int = 11


@dataclass(eq=False)
class AttachTimeout(TransientFailure):
    remediation: Optional[str] = "Check that qemu-nbd is installed and the nbd module can be loaded."


@dataclass(eq=False)
class DeviceNotReady(TransientFailure):
    remediation: Optional[str] = "Run 'cleanup' to release stale NBD devices, then retry."


@dataclass(eq=False)
class AttachFailed(StructuralFailure):
    """Attach still failing once the transient retries are used up; `cause` holds the last one."""
    remediation: Optional[str] = "Run 'cleanup --include-nbd', check that qemu-nbd works, then retry."


@dataclass(eq=False)
class MaxAttemptsExceeded(StructuralFailure):
    remediation: Optional[str] = "Retry the unlock with the correct passphrase or keyfile."


@dataclass(eq=False)
class TableRewriteFailed(StructuralFailure):
    remediation: Optional[str] = "Use an external partition tool (e.g. GParted Live) to resize the partition."


@dataclass(eq=False)
class UserCancelled(UserDeclined):
    pass


@dataclass(eq=False)
class LayerOrderViolation(TeardownWarning):
    remediation: Optional[str] = (
        "Deactivate the layers above this resource manually (vgchange -an, cryptsetup close), "
        "then run 'cleanup'."
    )


class SessionInterrupted(KeyboardInterrupt):
    """Raised from the session's signal handler so teardown runs on unwind."""

    def __init__(self, signum: int, name: str = ""):
        self.signum = int(signum)
        self.signame = name or f"signal {signum}"
        super().__init__(f"Interrupted by {self.signame}")


def format_exception_for_cli(e: BaseException, *, verbose: int = 0) -> str:
    """
    One-liner output for CLI.

    verbose=0: message + remediation
    verbose=1: + compact context (if any)
    verbose>=2: + cause
    """
    if isinstance(e, VmDiskError):
        return e.user_message(
            include_context=(verbose >= 1),
            include_cause=(verbose >= 2),
        )

    if verbose >= 2:
        return f"{type(e).__name__}: {_one_line(str(e))}"
    return _one_line(str(e)) or type(e).__name__
