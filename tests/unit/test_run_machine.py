"""Unit tests for the run state machine and its ledger projection."""

from __future__ import annotations

import pytest

from harborline.core.run_ledger import RunLedger
from harborline.core.run_machine import (
    InvalidTransitionError,
    RunStateMachine,
    UnknownRunError,
)
from harborline.models.events import CommitEvent
from harborline.models.runs import RunState, StepOutcome


@pytest.fixture
def event() -> CommitEvent:
    return CommitEvent(branch="development", revision="abc123")


class TestTransitions:
    def test_initialize(self, run_machine: RunStateMachine, event):
        run = run_machine.initialize_run("hl-1", event)
        assert run.state == RunState.RECEIVED
        assert run_machine.get_state("hl-1") == RunState.RECEIVED

    def test_valid_path(self, run_machine: RunStateMachine, event):
        run_machine.initialize_run("hl-1", event)
        for state in (
            RunState.BUILDING,
            RunState.BUILT,
            RunState.PUBLISHING,
            RunState.PUBLISHED,
            RunState.RESOLVING,
            RunState.ROLLING_OUT,
            RunState.SUCCEEDED,
        ):
            run_machine.transition("hl-1", state)
        assert run_machine.get_state("hl-1") == RunState.SUCCEEDED

    def test_skipping_a_stage_rejected(self, run_machine: RunStateMachine, event):
        run_machine.initialize_run("hl-1", event)
        with pytest.raises(InvalidTransitionError, match="received to published"):
            run_machine.transition("hl-1", RunState.PUBLISHED)

    def test_terminal_is_final(self, run_machine: RunStateMachine, event):
        run_machine.initialize_run("hl-1", event)
        run_machine.transition("hl-1", RunState.FAILED)
        with pytest.raises(InvalidTransitionError):
            run_machine.transition("hl-1", RunState.BUILDING)

    def test_rejected_transition_not_recorded(self, run_machine, ledger: RunLedger, event):
        run_machine.initialize_run("hl-1", event)
        with pytest.raises(InvalidTransitionError):
            run_machine.transition("hl-1", RunState.SUCCEEDED)
        assert len(ledger.get_run_entries("hl-1")) == 1


class TestProjection:
    def test_get_run_rebuilds_steps(self, run_machine: RunStateMachine, event):
        run_machine.initialize_run("hl-1", event)
        run_machine.transition("hl-1", RunState.BUILDING)
        run_machine.record_step(
            "hl-1", "build", StepOutcome.SUCCEEDED, detail="attempt 1/2", refs=["sha256:aa"]
        )
        run = run_machine.get_run("hl-1")
        assert run.commit_event.branch == "development"
        assert run.state == RunState.BUILDING
        [step] = run.step_results
        assert step.step == "build"
        assert step.outcome == StepOutcome.SUCCEEDED
        assert step.refs == ["sha256:aa"]

    def test_fresh_machine_sees_same_state(self, run_machine, ledger: RunLedger, event):
        run_machine.initialize_run("hl-1", event)
        run_machine.transition("hl-1", RunState.BUILDING)
        other = RunStateMachine(ledger)
        assert other.get_state("hl-1") == RunState.BUILDING
        other.transition("hl-1", RunState.BUILT)
        assert other.get_run("hl-1").state == RunState.BUILT

    def test_unknown_run(self, run_machine: RunStateMachine):
        with pytest.raises(UnknownRunError):
            run_machine.get_run("missing")
