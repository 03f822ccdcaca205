# Copyright (c) Syntropy Systems
"""Exception hierarchy for driftgate."""

from __future__ import annotations


class GateError(Exception):
    """Base class for all driftgate errors."""


class EnvironmentCheckError(GateError):
    """A required tool, variable or directory is missing."""


class ResumeError(GateError):
    """A prior run cannot be resumed from the current checkout."""


class RunBlockedError(ResumeError):
    """The prior run is blocked and no override was given."""


class CompatibilityBlockedError(GateError):
    """Store/engine compatibility mismatch with remediation disabled."""

    reason: str

    def __init__(self, reason: str) -> None:
        super().__init__(f"compatibility check failed: {reason}")
        self.reason = reason


class InvalidTransitionError(GateError):
    """Illegal run state transition."""


class EngineError(GateError):
    """The engine exited non-zero or produced unreadable output."""

    argv: list[str]
    exit_code: int | None
    stderr: str

    def __init__(
        self,
        message: str,
        *,
        argv: list[str] | None = None,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.argv = argv or []
        self.exit_code = exit_code
        self.stderr = stderr


class StepError(GateError):
    """Engine output violated a step invariant."""


class RunbookStepError(GateError):
    """A runbook step failed after the failed state was persisted."""

    step: str

    def __init__(self, step: str, reason: str) -> None:
        super().__init__(reason)
        self.step = step


class CaptureError(GateError):
    """A capture phase aborted before writing its manifest."""


class CompareError(GateError):
    """Comparison inputs are missing or inconsistent."""
