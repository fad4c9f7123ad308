"""Rollout Coordinator — moves one target to a new digest behind a health gate.

Per-target state machine (VALID_ROLLOUT_TRANSITIONS)::

    pending -> updating -> health_checking -> committed
                   |              |
                   +--------> unhealthy -> rolling_back -> rolled_back
                                   |             |
                                   +-------------+--> rollback_failed

Guarantees:
- The confirmed digest is written only on the committed transition.
- A failed rollout is rolled back exactly once, to the last confirmed
  digest or, on a target never confirmed here, to whatever the platform
  reported running before the replace.  A failed rollback is left in
  ``rollback_failed`` for manual intervention and never retried.
- Rollouts of the same target are serialized; a second request waits.
  With a ``ClaimStore`` this holds across processes too.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from pydantic import BaseModel, ConfigDict, Field

from harborline.bridge.protocols import ComputeLayer
from harborline.core.claims import ClaimKind, ClaimStore
from harborline.core.run_machine import InvalidTransitionError
from harborline.core.target_state import TargetStateStore
from harborline.models.artifacts import PublishedTag
from harborline.models.rollout import (
    TERMINAL_ROLLOUT_STATES,
    VALID_ROLLOUT_TRANSITIONS,
    RolloutErrorKind,
    RolloutResult,
    RolloutState,
)
from harborline.models.targets import DeploymentTarget

logger = logging.getLogger(__name__)


class RolloutError(RuntimeError):
    """A failure while moving a target, tagged with its kind."""

    def __init__(self, kind: RolloutErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class HealthPolicy(BaseModel):
    """Bounds for health polling: attempts, backoff and a total budget."""

    model_config = ConfigDict(frozen=True)

    timeout_seconds: float = Field(default=60.0, gt=0)
    max_attempts: int = Field(default=10, ge=1)
    initial_backoff_seconds: float = Field(default=1.0, ge=0)
    max_backoff_seconds: float = Field(default=15.0, ge=0)

    def backoff(self, attempt: int) -> float:
        """Delay after the *attempt*-th failed check (1-based)."""
        return min(
            self.initial_backoff_seconds * (2 ** (attempt - 1)),
            self.max_backoff_seconds,
        )


class _RolloutTrack:
    """Mutable bookkeeping for one rollout; frozen into a RolloutResult."""

    def __init__(
        self, target: DeploymentTarget, desired: str, previous: str, rollback_to: str
    ) -> None:
        self.target = target
        self.desired = desired
        self.previous = previous
        self.rollback_to = rollback_to
        self.states: list[RolloutState] = [RolloutState.PENDING]
        self.replace_calls = 0
        self.health_checks = 0
        self.rollback_attempts = 0

    @property
    def state(self) -> RolloutState:
        return self.states[-1]

    def move(self, to_state: RolloutState) -> None:
        allowed = VALID_ROLLOUT_TRANSITIONS[self.state]
        if to_state not in allowed:
            raise InvalidTransitionError(
                f"Target {self.target.name}: cannot move from {self.state.value} "
                f"to {to_state.value}"
            )
        logger.debug("Target %s %s -> %s", self.target.name, self.state.value, to_state.value)
        self.states.append(to_state)

    def result(
        self,
        confirmed: str,
        *,
        error_kind: RolloutErrorKind | None = None,
        detail: str = "",
    ) -> RolloutResult:
        assert self.state in TERMINAL_ROLLOUT_STATES
        return RolloutResult(
            target_name=self.target.name,
            desired_digest=self.desired,
            previous_digest=self.previous,
            rollback_digest=self.rollback_to,
            confirmed_digest=confirmed,
            final_state=self.state,
            states=list(self.states),
            error_kind=error_kind,
            detail=detail,
            replace_calls=self.replace_calls,
            health_checks=self.health_checks,
            rollback_attempts=self.rollback_attempts,
        )


class RolloutCoordinator:
    """Replaces the running artifact on targets, gated by health checks.

    Parameters
    ----------
    compute:
        The deployment platform.
    state:
        Confirmed-digest store; written only on the committed transition.
    policy:
        Health polling bounds.
    runtime_env:
        Environment handed unchanged to the deployed artifact on every
        ``replace`` (e.g. ``{"PORT": "8080"}``).
    claims:
        Cross-process target claims.  Without one, rollouts are only
        serialized within this process.
    claim_poll_seconds:
        Wait between attempts to claim a target another process holds.
    sleep, clock:
        Injected for tests; default to ``time.sleep`` / ``time.monotonic``.
    """

    def __init__(
        self,
        compute: ComputeLayer,
        state: TargetStateStore,
        *,
        policy: HealthPolicy | None = None,
        runtime_env: dict[str, str] | None = None,
        claims: ClaimStore | None = None,
        claim_poll_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._compute = compute
        self._state = state
        self._policy = policy or HealthPolicy()
        self._runtime_env = dict(runtime_env or {})
        self._claims = claims
        self._claim_poll = claim_poll_seconds
        self._sleep = sleep
        self._clock = clock
        self._locks_guard = threading.Lock()
        self._target_locks: dict[str, threading.Lock] = {}

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._target_locks.setdefault(name, threading.Lock())

    @contextmanager
    def _hold(self, name: str, run_id: str) -> Iterator[None]:
        """Exclusive use of target *name*, in this process and across processes."""
        with self._lock_for(name):
            if self._claims is None:
                yield
                return
            holder_id = run_id or f"adhoc-{uuid.uuid4().hex[:8]}"
            while True:
                holder = self._claims.claim(ClaimKind.TARGET, name, holder_id)
                if holder is None:
                    break
                logger.info("Target %s is held by run %s; waiting", name, holder)
                self._sleep(self._claim_poll)
            try:
                yield
            finally:
                self._claims.release(ClaimKind.TARGET, name, holder_id)

    # ------------------------------------------------------------------
    # Rollout
    # ------------------------------------------------------------------

    def rollout(
        self, target: DeploymentTarget, published: PublishedTag, *, run_id: str = ""
    ) -> RolloutResult:
        """Move *target* to ``published.digest`` and return the outcome.

        Never raises for platform failures; those are reported through the
        result's ``final_state`` and ``error_kind``.
        """
        with self._hold(target.name, run_id):
            # Re-read under the lock: a queued rollout sees its predecessor's commit.
            previous = self._state.current_digest(target.name)

            if previous == published.digest:
                track = _RolloutTrack(target, published.digest, previous, previous)
                track.move(RolloutState.COMMITTED)
                logger.info(
                    "Target %s already runs %s; nothing to replace",
                    target.name,
                    published.digest,
                )
                return track.result(previous, detail="already running digest")

            rollback_to = previous or self._platform_digest(target, published.digest)
            track = _RolloutTrack(target, published.digest, previous, rollback_to)
            try:
                self._apply(track, published.digest)
            except RolloutError as exc:
                logger.warning("Rollout of %s failed: %s", target.name, exc)
                track.move(RolloutState.UNHEALTHY)
                return self._roll_back(track, exc)

            self._state.confirm(target.name, published.digest, run_id=run_id)
            track.move(RolloutState.COMMITTED)
            logger.info("Target %s committed %s", target.name, published.digest)
            return track.result(published.digest)

    def _platform_digest(self, target: DeploymentTarget, desired: str) -> str:
        """What the platform runs on a target never confirmed here, or ``""``."""
        try:
            running = self._compute.current_digest(target)
        except Exception as exc:
            logger.warning("Cannot read the running digest of %s: %s", target.name, exc)
            return ""
        if running == desired:
            return ""
        if running:
            logger.info(
                "Target %s has no confirmed digest; platform reports %s",
                target.name,
                running,
            )
        return running

    def _apply(self, track: _RolloutTrack, digest: str) -> None:
        """Replace and health-check; raise RolloutError on failure."""
        track.move(RolloutState.UPDATING)
        self._replace(track, digest)
        track.move(RolloutState.HEALTH_CHECKING)
        if not self._await_healthy(track):
            raise RolloutError(
                RolloutErrorKind.HEALTH_TIMEOUT,
                f"{track.target.name} not healthy on {digest} after "
                f"{track.health_checks} check(s)",
            )

    def _roll_back(self, track: _RolloutTrack, cause: RolloutError) -> RolloutResult:
        name = track.target.name
        if not track.rollback_to:
            track.move(RolloutState.ROLLBACK_FAILED)
            detail = f"{cause}; no known earlier digest to roll back to"
            logger.error("Target %s needs manual intervention: %s", name, detail)
            return track.result(
                track.previous, error_kind=RolloutErrorKind.ROLLBACK_FAILED, detail=detail
            )

        track.move(RolloutState.ROLLING_BACK)
        track.rollback_attempts += 1
        logger.info("Rolling %s back to %s", name, track.rollback_to)
        try:
            self._replace(track, track.rollback_to)
            healthy = self._await_healthy(track)
        except RolloutError as exc:
            healthy = False
            cause_detail = f"{cause}; rollback failed: {exc}"
        else:
            cause_detail = f"{cause}; rollback to {track.rollback_to} not healthy"

        if healthy:
            track.move(RolloutState.ROLLED_BACK)
            logger.warning("Target %s rolled back to %s", name, track.rollback_to)
            return track.result(
                track.previous, error_kind=cause.kind, detail=f"{cause}; rolled back"
            )

        track.move(RolloutState.ROLLBACK_FAILED)
        logger.error("Target %s needs manual intervention: %s", name, cause_detail)
        return track.result(
            track.previous,
            error_kind=RolloutErrorKind.ROLLBACK_FAILED,
            detail=cause_detail,
        )

    # ------------------------------------------------------------------
    # Platform calls
    # ------------------------------------------------------------------

    def _replace(self, track: _RolloutTrack, digest: str) -> None:
        track.replace_calls += 1
        try:
            acked = self._compute.replace(track.target, digest, dict(self._runtime_env))
        except Exception as exc:
            raise RolloutError(
                RolloutErrorKind.UPDATE_FAILED,
                f"replace of {track.target.name} with {digest} raised: {exc}",
            ) from exc
        if not acked:
            raise RolloutError(
                RolloutErrorKind.UPDATE_FAILED,
                f"replace of {track.target.name} with {digest} was not acknowledged",
            )

    def _await_healthy(self, track: _RolloutTrack) -> bool:
        """Poll health with exponential backoff inside the time budget."""
        policy = self._policy
        deadline = self._clock() + policy.timeout_seconds
        for attempt in range(1, policy.max_attempts + 1):
            track.health_checks += 1
            try:
                if self._compute.health(track.target):
                    return True
            except Exception as exc:
                logger.debug("Health check of %s raised: %s", track.target.name, exc)

            remaining = deadline - self._clock()
            if attempt == policy.max_attempts or remaining <= 0:
                break
            self._sleep(min(policy.backoff(attempt), remaining))
        return False
