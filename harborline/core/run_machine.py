"""Deterministic pipeline run state machine.

Enforces:
- Valid run state transitions only (VALID_RUN_TRANSITIONS table)
- Every transition and every step outcome recorded in the run ledger
- Run views rebuilt from the ledger, so a fresh process sees the same state
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from harborline.core.run_ledger import RunLedger
from harborline.models.events import CommitEvent
from harborline.models.ledger import LedgerEntry
from harborline.models.runs import (
    VALID_RUN_TRANSITIONS,
    PipelineRun,
    RunState,
    StepOutcome,
    StepResult,
)

logger = logging.getLogger(__name__)

RUN_STEP = "run"  # ledger step name for state transitions


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class UnknownRunError(LookupError):
    """Raised when a run_id has no ledger entries."""


class RunStateMachine:
    """Enforces the run state machine and records into the ledger.

    Parameters
    ----------
    ledger:
        The run ledger to record transitions into.
    """

    def __init__(self, ledger: RunLedger) -> None:
        self._ledger = ledger
        self._lock = threading.Lock()
        # In-memory cache: run_id -> (event, state)
        self._runs: dict[str, tuple[CommitEvent, RunState]] = {}

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def initialize_run(self, run_id: str, event: CommitEvent) -> PipelineRun:
        """Record a new run in state RECEIVED."""
        with self._lock:
            self._ledger.append(
                LedgerEntry(
                    run_id=run_id,
                    branch=event.branch,
                    revision=event.revision,
                    step=RUN_STEP,
                    state_transition=f"->{RunState.RECEIVED.value}",
                    payload={"commit_event": event.model_dump(mode="json")},
                )
            )
            self._runs[run_id] = (event, RunState.RECEIVED)
        return PipelineRun(run_id=run_id, commit_event=event)

    def get_state(self, run_id: str) -> RunState:
        return self._cached(run_id)[1]

    def transition(
        self, run_id: str, target_state: RunState, *, detail: str = ""
    ) -> LedgerEntry:
        """Move a run to *target_state*, recording it in the ledger.

        Raises ``InvalidTransitionError`` when the move is not allowed by
        ``VALID_RUN_TRANSITIONS``.
        """
        with self._lock:
            event, current = self._cached(run_id)
            allowed = VALID_RUN_TRANSITIONS.get(current, set())
            if target_state not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition run {run_id} from {current.value} "
                    f"to {target_state.value}. "
                    f"Allowed: {sorted(s.value for s in allowed)}"
                )
            sealed = self._ledger.append(
                LedgerEntry(
                    run_id=run_id,
                    branch=event.branch,
                    revision=event.revision,
                    step=RUN_STEP,
                    state_transition=f"{current.value}->{target_state.value}",
                    detail=detail,
                )
            )
            self._runs[run_id] = (event, target_state)

        logger.info(
            "Run %s [%s] %s -> %s", run_id, event.branch, current.value, target_state.value
        )
        return sealed

    def record_step(
        self,
        run_id: str,
        step: str,
        outcome: StepOutcome,
        *,
        detail: str = "",
        refs: list[str] | None = None,
        data: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Record the outcome of one step without changing the run state."""
        event, _ = self._cached(run_id)
        return self._ledger.append(
            LedgerEntry(
                run_id=run_id,
                branch=event.branch,
                revision=event.revision,
                step=step,
                outcome=outcome.value,
                detail=detail,
                artifact_references=refs or [],
                payload=data or {},
            )
        )

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> PipelineRun:
        """Rebuild a ``PipelineRun`` from its ledger entries."""
        entries = self._ledger.get_run_entries(run_id)
        if not entries:
            raise UnknownRunError(f"No run with id {run_id!r}")
        return self._project(run_id, entries)

    @staticmethod
    def _project(run_id: str, entries: list[LedgerEntry]) -> PipelineRun:
        event = CommitEvent.model_validate(entries[0].payload["commit_event"])
        state = RunState.RECEIVED
        steps: list[StepResult] = []
        for entry in entries:
            if entry.step == RUN_STEP:
                _, _, to_state = entry.state_transition.partition("->")
                state = RunState(to_state)
                continue
            steps.append(
                StepResult(
                    step=entry.step,
                    outcome=StepOutcome(entry.outcome),
                    timestamp=entry.timestamp_utc,
                    detail=entry.detail,
                    refs=entry.artifact_references,
                    data=entry.payload,
                )
            )
        return PipelineRun(
            run_id=run_id, commit_event=event, state=state, step_results=steps
        )

    def _cached(self, run_id: str) -> tuple[CommitEvent, RunState]:
        if run_id not in self._runs:
            run = self.get_run(run_id)
            self._runs[run_id] = (run.commit_event, run.state)
        return self._runs[run_id]
