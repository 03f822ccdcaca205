# Copyright (c) Syntropy Systems
"""Run state persisted by the refresh runbook."""

from __future__ import annotations

import re
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import Field

from driftgate.errors import InvalidTransitionError

from .base import GateBaseModel

if TYPE_CHECKING:
    from pathlib import Path

_STEP_PREFIX = re.compile(r"^R(\d{2})")


class Step(str, Enum):
    """Runbook steps in execution order."""

    PREFLIGHT = "R00-PREFLIGHT"
    CONFIG = "R01-CONFIG"
    DIRECTORIES = "R02-DIRECTORIES"
    COMPATIBILITY = "R03-COMPATIBILITY"
    TARGET_REFRESH = "R04-TARGET-REFRESH"
    INGEST = "R05-INGEST"
    VALIDATE = "R06-VALIDATE"
    TRACEABILITY = "R07-TRACEABILITY"
    QUALITY_REPORT = "R08-QUALITY-REPORT"
    ARTIFACT_REFRESH = "R09-ARTIFACT-REFRESH"

    @property
    def rank(self) -> int:
        return int(self.value[1:3])

    @property
    def mutates_store(self) -> bool:
        """Steps from R04 on change the store and are resumable."""
        return self.rank >= Step.TARGET_REFRESH.rank

    def next(self) -> Step | None:
        """The step after this one, None after the last."""
        ordered = list(Step)
        index = ordered.index(self)
        return ordered[index + 1] if index + 1 < len(ordered) else None

    @classmethod
    def parse(cls, identifier: str | None) -> Step:
        """Map any identifier with a known ``Rnn`` prefix to its step.

        Unknown or missing identifiers map to the first mutating step.
        """
        if identifier:
            match = _STEP_PREFIX.match(identifier)
            if match is not None:
                rank = int(match.group(1))
                for step in cls:
                    if step.rank == rank:
                        return step
        return cls.TARGET_REFRESH


FIRST_MUTATING_STEP = Step.TARGET_REFRESH


class RunStatus(str, Enum):
    """Lifecycle of a runbook run.

    A run that has not started has no state file, so ``not_started`` is never
    persisted: ``load_run_state`` returns None and the first write is RUNNING.
    """

    RUNNING = "running"
    FAILED = "failed"
    BLOCKED = "blocked"
    COMPLETED = "completed"


# blocked -> running additionally requires an explicit override
ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.RUNNING: frozenset(
        {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.BLOCKED, RunStatus.COMPLETED}
    ),
    RunStatus.FAILED: frozenset({RunStatus.RUNNING, RunStatus.BLOCKED}),
    RunStatus.BLOCKED: frozenset({RunStatus.RUNNING, RunStatus.BLOCKED}),
    RunStatus.COMPLETED: frozenset(),
}


def check_transition(
    current: RunStatus, target: RunStatus, *, override: bool = False
) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is legal."""
    if target not in ALLOWED_TRANSITIONS[current]:
        msg = f"illegal run state transition {current.value} -> {target.value}"
        raise InvalidTransitionError(msg)
    if current is RunStatus.BLOCKED and target is RunStatus.RUNNING and not override:
        msg = "blocked run can only resume with an explicit override"
        raise InvalidTransitionError(msg)


class RestartPolicy(GateBaseModel):
    """How the runbook reacts to compatibility mismatches."""

    hard_block_on_compatibility_mismatch: bool = True
    rebuild_on_mismatch_enabled: bool = False


class CompatibilitySnapshot(GateBaseModel):
    """Compatibility facts recorded with each checkpoint."""

    runbook_version: str
    engine_version: str | None = None
    db_schema_version: str | None = None
    status: str = "ok"
    reason: str | None = None


class RunState(GateBaseModel):
    """manifests/run_state.json."""

    manifest_version: int = 2
    active_run_id: str
    current_phase: str = "refresh"
    phase_id: str = "refresh"
    current_step: str
    status: RunStatus
    base_branch: str
    active_branch: str
    commit_mode: str = "none"
    last_commit: str | None = None
    last_successful_command: str | None = None
    next_planned_command: str | None = None
    started_at: str
    updated_at: str
    last_successful_artifact: str | None = None
    failed_step: str | None = None
    failure_reason: str | None = None
    resume_from_step: str | None = None
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    compatibility: CompatibilitySnapshot

    @property
    def step(self) -> Step:
        return Step.parse(self.current_step)

    def transition(
        self,
        status: RunStatus,
        *,
        step: Step,
        updated_at: str,
        override: bool = False,
    ) -> RunState:
        """Return a copy moved to ``status`` at ``step``.

        The step pointer never moves backwards within one run.
        """
        check_transition(self.status, status, override=override)
        if step.rank < self.step.rank and not override:
            msg = f"step pointer cannot move back from {self.current_step} to {step.value}"
            raise InvalidTransitionError(msg)
        return self.model_copy(
            update={"status": status, "current_step": step.value, "updated_at": updated_at}
        )


def save_run_state(path: Path, state: RunState) -> None:
    """Persist run state; unset optional fields are written as null."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".json.tmp")
    _ = tmp_path.write_text(state.model_dump_json(indent=2) + "\n")
    _ = tmp_path.replace(path)


def load_run_state(path: Path) -> RunState | None:
    """Load run state, None when no state has been written."""
    if not path.exists():
        return None
    return RunState.model_validate_json(path.read_text())
