"""Harborline data models — all Pydantic v2, all frozen (immutable)."""

from harborline.models.artifacts import Artifact, PublishedTag
from harborline.models.events import CommitEvent
from harborline.models.ledger import LedgerEntry
from harborline.models.rollout import (
    TERMINAL_ROLLOUT_STATES,
    VALID_ROLLOUT_TRANSITIONS,
    RolloutErrorKind,
    RolloutResult,
    RolloutState,
)
from harborline.models.runs import (
    CANCELLABLE_RUN_STATES,
    TERMINAL_RUN_STATES,
    VALID_RUN_TRANSITIONS,
    PipelineRun,
    RunState,
    StepOutcome,
    StepResult,
)
from harborline.models.targets import DeploymentTarget, Environment, TargetSpec

__all__ = [
    # events
    "CommitEvent",
    # artifacts
    "Artifact",
    "PublishedTag",
    # targets
    "Environment",
    "TargetSpec",
    "DeploymentTarget",
    # runs
    "RunState",
    "StepOutcome",
    "StepResult",
    "PipelineRun",
    "VALID_RUN_TRANSITIONS",
    "TERMINAL_RUN_STATES",
    "CANCELLABLE_RUN_STATES",
    # rollout
    "RolloutState",
    "RolloutErrorKind",
    "RolloutResult",
    "VALID_ROLLOUT_TRANSITIONS",
    "TERMINAL_ROLLOUT_STATES",
    # ledger
    "LedgerEntry",
]
