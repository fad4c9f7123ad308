"""Per-target rollout state machine models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RolloutState(str, Enum):
    """States a single target moves through during one rollout."""

    PENDING = "pending"
    UPDATING = "updating"
    HEALTH_CHECKING = "health_checking"
    COMMITTED = "committed"
    UNHEALTHY = "unhealthy"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


# PENDING -> COMMITTED is the no-op path: the target already runs the digest.
# UPDATING -> UNHEALTHY covers a failed replace instruction.
VALID_ROLLOUT_TRANSITIONS: dict[RolloutState, set[RolloutState]] = {
    RolloutState.PENDING: {RolloutState.UPDATING, RolloutState.COMMITTED},
    RolloutState.UPDATING: {RolloutState.HEALTH_CHECKING, RolloutState.UNHEALTHY},
    RolloutState.HEALTH_CHECKING: {RolloutState.COMMITTED, RolloutState.UNHEALTHY},
    RolloutState.UNHEALTHY: {RolloutState.ROLLING_BACK, RolloutState.ROLLBACK_FAILED},
    RolloutState.ROLLING_BACK: {RolloutState.ROLLED_BACK, RolloutState.ROLLBACK_FAILED},
    RolloutState.COMMITTED: set(),  # terminal success
    RolloutState.ROLLED_BACK: set(),  # terminal failure
    RolloutState.ROLLBACK_FAILED: set(),  # terminal, manual intervention
}

TERMINAL_ROLLOUT_STATES: frozenset[RolloutState] = frozenset(
    {RolloutState.COMMITTED, RolloutState.ROLLED_BACK, RolloutState.ROLLBACK_FAILED}
)


class RolloutErrorKind(str, Enum):
    UPDATE_FAILED = "update_failed"
    HEALTH_TIMEOUT = "health_timeout"
    ROLLBACK_FAILED = "rollback_failed"


class RolloutResult(BaseModel):
    """Outcome of one target's rollout.

    ``previous_digest`` is the confirmed digest before the rollout;
    ``rollback_digest`` is what a rollback restores (the previous digest,
    or on a never-confirmed target what the platform ran before);
    ``confirmed_digest`` is the confirmed digest afterwards (unchanged
    unless ``final_state`` is COMMITTED).
    """

    model_config = ConfigDict(frozen=True)

    target_name: str
    desired_digest: str
    previous_digest: str = ""
    rollback_digest: str = ""
    confirmed_digest: str = ""
    final_state: RolloutState
    states: list[RolloutState] = []  # full path, PENDING first
    error_kind: RolloutErrorKind | None = None
    detail: str = ""
    replace_calls: int = 0
    health_checks: int = 0
    rollback_attempts: int = 0
    finished_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def committed(self) -> bool:
        return self.final_state == RolloutState.COMMITTED

    @property
    def needs_manual_intervention(self) -> bool:
        return self.final_state == RolloutState.ROLLBACK_FAILED
