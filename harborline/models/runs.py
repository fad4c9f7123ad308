"""Pipeline run state machine models.

A ``PipelineRun`` is the unit of idempotence and retry.  Its state only
moves along ``VALID_RUN_TRANSITIONS``; the orchestrator enforces this
through ``RunStateMachine`` and records every move in the run ledger.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from harborline.models.events import CommitEvent


class RunState(str, Enum):
    """Lifecycle of a pipeline run."""

    RECEIVED = "received"
    BUILDING = "building"
    BUILT = "built"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    RESOLVING = "resolving"
    ROLLING_OUT = "rolling_out"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# BUILT -> RESOLVING skips publishing for branches with no deployment targets.
VALID_RUN_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.RECEIVED: {RunState.BUILDING, RunState.FAILED},
    RunState.BUILDING: {RunState.BUILT, RunState.FAILED},
    RunState.BUILT: {RunState.PUBLISHING, RunState.RESOLVING, RunState.FAILED},
    RunState.PUBLISHING: {RunState.PUBLISHED, RunState.FAILED},
    RunState.PUBLISHED: {RunState.RESOLVING, RunState.FAILED},
    RunState.RESOLVING: {RunState.ROLLING_OUT, RunState.SUCCEEDED, RunState.FAILED},
    RunState.ROLLING_OUT: {RunState.SUCCEEDED, RunState.FAILED},
    RunState.SUCCEEDED: set(),  # terminal
    RunState.FAILED: set(),  # terminal
}

TERMINAL_RUN_STATES: frozenset[RunState] = frozenset(
    {RunState.SUCCEEDED, RunState.FAILED}
)

# States from which cancel() is still honoured.
CANCELLABLE_RUN_STATES: frozenset[RunState] = frozenset(
    {
        RunState.RECEIVED,
        RunState.BUILDING,
        RunState.BUILT,
        RunState.PUBLISHING,
        RunState.PUBLISHED,
        RunState.RESOLVING,
    }
)


class StepOutcome(str, Enum):
    """Outcome of one pipeline step (or one target's rollout)."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepResult(BaseModel):
    """One recorded step of a pipeline run."""

    model_config = ConfigDict(frozen=True)

    step: str  # "build", "publish", "resolve", "rollout:<target>", ...
    outcome: StepOutcome
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    detail: str = ""
    refs: list[str] = []  # digests and content addresses (build logs)
    data: dict[str, Any] = {}


class PipelineRun(BaseModel):
    """A point-in-time view of a pipeline run, rebuilt from the ledger."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    commit_event: CommitEvent
    state: RunState = RunState.RECEIVED
    step_results: list[StepResult] = []

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_RUN_STATES

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.SUCCEEDED

    def steps_named(self, prefix: str) -> list[StepResult]:
        """Return the step results whose name starts with *prefix*."""
        return [s for s in self.step_results if s.step.startswith(prefix)]

    @property
    def failure_reasons(self) -> list[str]:
        """Human-readable reasons for every failed step, in order."""
        return [
            f"{s.step}: {s.detail}" if s.detail else s.step
            for s in self.step_results
            if s.outcome == StepOutcome.FAILED
        ]
