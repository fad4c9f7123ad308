"""Pipeline orchestrator — the central coordinator for Harborline runs.

The Orchestrator wires together the RunLedger, RunStateMachine, builder,
publisher, resolver and rollout coordinator into one pipeline run::

    received -> building -> built -> publishing -> published
             -> resolving -> rolling_out -> succeeded | failed

Build, publish and resolve run sequentially; rollouts fan out to one
thread per target and the run succeeds only if every target commits.
At most one non-terminal run exists per branch, across every process
sharing the state database.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from harborline.bridge.protocols import BuildCommand, ComputeLayer, Registry, SourceTree
from harborline.config import PipelineSettings
from harborline.core.artifact_store import ContentAddressedStore
from harborline.core.builder import ArtifactBuilder, BuildError
from harborline.core.claims import ClaimKind, ClaimStore
from harborline.core.coordinator import HealthPolicy, RolloutCoordinator
from harborline.core.production_guard import enforce_settings_constraints
from harborline.core.publisher import PublishError, RegistryPublisher
from harborline.core.resolver import ResolutionError, TargetResolver
from harborline.core.run_ledger import RunLedger
from harborline.core.run_machine import InvalidTransitionError, RunStateMachine
from harborline.core.target_state import TargetStateStore
from harborline.models.artifacts import Artifact, PublishedTag
from harborline.models.events import CommitEvent
from harborline.models.rollout import RolloutResult, RolloutState
from harborline.models.runs import (
    CANCELLABLE_RUN_STATES,
    TERMINAL_RUN_STATES,
    PipelineRun,
    RunState,
    StepOutcome,
)
from harborline.models.targets import DeploymentTarget

logger = logging.getLogger(__name__)

CANCELLED_DETAIL = "cancelled"


class RunInProgressError(RuntimeError):
    """Raised when a branch already has a non-terminal run."""

    def __init__(self, branch: str, run_id: str) -> None:
        super().__init__(f"Run {run_id} for branch {branch!r} is already in progress")
        self.branch = branch
        self.run_id = run_id


class _Cancelled(Exception):
    """Internal signal: the run was cancelled at a stage boundary."""


class Orchestrator:
    """Central pipeline orchestrator.

    Parameters
    ----------
    settings:
        The pipeline settings, constructed once by the caller.
    source_tree, build_command, registry, compute:
        External collaborators.  Each defaults to the shipped adapter built
        from *settings*; tests substitute in-memory fakes.
    sleep, clock:
        Used by health polling; injected for tests.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        *,
        source_tree: SourceTree | None = None,
        build_command: BuildCommand | None = None,
        registry: Registry | None = None,
        compute: ComputeLayer | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings

        # Startup guard: fails hard if settings are unusable
        enforce_settings_constraints(settings)

        # Persistent state
        self.ledger = RunLedger(settings.state_db_path)
        self.artifact_store = ContentAddressedStore(settings.artifact_store_path)
        self.target_state = TargetStateStore(settings.state_db_path)
        self.run_machine = RunStateMachine(self.ledger)
        self.claims = ClaimStore(
            settings.state_db_path, ttl_seconds=settings.claim_ttl_seconds
        )

        # Pipeline components; adapters built here are closed by close()
        self._owned: list = []
        if source_tree is None:
            from harborline.bridge.git_source import GitSourceTree

            source_tree = GitSourceTree(settings.source_repo_path)
        if build_command is None:
            from harborline.bridge.build_command import ShellBuildCommand

            build_command = ShellBuildCommand(
                settings.build_command, timeout_seconds=settings.build_timeout_seconds
            )
        if registry is None:
            from harborline.bridge.oci_registry import OciRegistry

            registry = OciRegistry.from_settings(settings)
            self._owned.append(registry)
        if compute is None:
            from harborline.bridge.compute import CommandComputeLayer

            compute = CommandComputeLayer.from_settings(settings)
            self._owned.append(compute)

        self.compute = compute
        self.builder = ArtifactBuilder(source_tree, build_command, self.artifact_store)
        self.publisher = RegistryPublisher(registry, max_attempts=settings.publish_retries)
        self.resolver = TargetResolver(
            settings.targets, settings.branch_targets, self.target_state
        )
        self.coordinator = RolloutCoordinator(
            compute,
            self.target_state,
            policy=HealthPolicy(
                timeout_seconds=settings.health_timeout_seconds,
                max_attempts=settings.health_max_attempts,
                initial_backoff_seconds=settings.health_initial_backoff_seconds,
                max_backoff_seconds=settings.health_max_backoff_seconds,
            ),
            runtime_env=settings.runtime_env,
            claims=self.claims,
            claim_poll_seconds=settings.claim_poll_seconds,
            sleep=sleep,
            clock=clock,
        )

        # Cancellation bookkeeping for runs executing in this process
        self._lock = threading.Lock()
        self._executing: set[str] = set()
        self._cancelled: set[str] = set()

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def submit(self, event: CommitEvent) -> str:
        """Register a run for *event* and return its run_id.

        Raises ``RunInProgressError`` when the branch already has a
        non-terminal run, in this process or any other sharing the state
        database.
        """
        run_id = self._new_run_id()
        active = self.claims.claim(ClaimKind.BRANCH, event.branch, run_id)
        if active is not None:
            logger.warning(
                "Rejecting %s@%s: run %s in progress",
                event.branch,
                event.revision,
                active,
            )
            raise RunInProgressError(event.branch, active)
        self.run_machine.initialize_run(run_id, event)
        logger.info("Received %s@%s as run %s", event.branch, event.revision, run_id)
        return run_id

    def execute(self, run_id: str) -> PipelineRun:
        """Drive a submitted run to a terminal state and return it.

        Raises ``InvalidTransitionError`` when the run has already left
        the received state (executed before, or cancelled).  Any other
        error fails the run; it is logged, not raised.
        """
        with self._lock:
            state = self.run_machine.get_state(run_id)
            if state != RunState.RECEIVED:
                raise InvalidTransitionError(
                    f"Run {run_id} is {state.value}; only received runs can execute"
                )
            self._executing.add(run_id)
        event = self.get_run(run_id).commit_event
        try:
            self._execute(run_id, event)
        except _Cancelled:
            self.run_machine.transition(run_id, RunState.FAILED, detail=CANCELLED_DETAIL)
        except Exception as exc:
            logger.exception("Run %s aborted", run_id)
            if self.run_machine.get_state(run_id) not in TERMINAL_RUN_STATES:
                self.run_machine.transition(
                    run_id, RunState.FAILED, detail=f"internal error: {exc}"
                )
        finally:
            with self._lock:
                self._executing.discard(run_id)
                self._cancelled.discard(run_id)
            self.claims.release(ClaimKind.BRANCH, event.branch, run_id)
        return self.get_run(run_id)

    def run(self, event: CommitEvent) -> PipelineRun:
        """Submit and execute *event* in one call."""
        return self.execute(self.submit(event))

    def cancel(self, run_id: str) -> bool:
        """Cancel a run that has not started rolling out.

        Returns True when the cancellation is accepted.  Returns False for
        runs already rolling out or terminal, and for runs another process
        is executing.
        """
        with self._lock:
            state = self.run_machine.get_state(run_id)
            if state not in CANCELLABLE_RUN_STATES:
                logger.warning("Cannot cancel run %s in state %s", run_id, state.value)
                return False
            if run_id in self._executing:
                self._cancelled.add(run_id)
                logger.info("Run %s will stop at the next stage boundary", run_id)
                return True
            if state != RunState.RECEIVED:
                logger.warning("Run %s is executing in another process", run_id)
                return False
            # Submitted but never executed: fail it now.
            event = self.run_machine.get_run(run_id).commit_event
            self.run_machine.transition(run_id, RunState.FAILED, detail=CANCELLED_DETAIL)
        self.claims.release(ClaimKind.BRANCH, event.branch, run_id)
        return True

    def close(self) -> None:
        """Close the adapters this orchestrator built."""
        while self._owned:
            self._owned.pop().close()

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _execute(self, run_id: str, event: CommitEvent) -> None:
        try:
            artifact = self._build(run_id, event)

            published: PublishedTag | None = None
            if self.resolver.is_mapped(event.branch):
                self._advance(run_id, RunState.PUBLISHING)
                published = self._publish(run_id, artifact, event.branch)
                self._advance(run_id, RunState.PUBLISHED)
            else:
                self.run_machine.record_step(
                    run_id,
                    "publish",
                    StepOutcome.SKIPPED,
                    detail="branch has no deployment targets",
                )

            self._advance(run_id, RunState.RESOLVING)
            targets = self._resolve(run_id, event.branch)
        except (BuildError, PublishError, ResolutionError) as exc:
            self.run_machine.transition(run_id, RunState.FAILED, detail=str(exc))
            return

        if not targets:
            self._advance(run_id, RunState.SUCCEEDED, detail="no deployment targets")
            return

        assert published is not None
        self._advance(run_id, RunState.ROLLING_OUT)
        results = self._roll_out(run_id, targets, published)

        failed = [r for r in results if not r.committed]
        if not failed:
            self.run_machine.transition(
                run_id,
                RunState.SUCCEEDED,
                detail=f"{len(results)} target(s) committed {published.digest}",
            )
            return

        parts = []
        for r in failed:
            note = " (manual intervention required)" if r.needs_manual_intervention else ""
            parts.append(f"{r.target_name}: {r.final_state.value}{note}")
        self.run_machine.transition(run_id, RunState.FAILED, detail="; ".join(parts))

    def _advance(self, run_id: str, state: RunState, *, detail: str = "") -> None:
        with self._lock:
            if run_id in self._cancelled:
                raise _Cancelled()
            self.run_machine.transition(run_id, state, detail=detail)

    def _build(self, run_id: str, event: CommitEvent) -> Artifact:
        self._advance(run_id, RunState.BUILDING)
        attempts = 1 + self.settings.build_retries
        attempt = 0
        while True:
            attempt += 1
            try:
                artifact = self.builder.build(event.revision)
                break
            except BuildError as exc:
                self.run_machine.record_step(
                    run_id,
                    "build",
                    StepOutcome.FAILED,
                    detail=f"attempt {attempt}/{attempts}: {exc.reason}",
                    refs=[exc.log_ref] if exc.log_ref else [],
                )
                if attempt >= attempts:
                    raise
                logger.warning("Build attempt %d/%d failed; retrying", attempt, attempts)

        self.run_machine.record_step(
            run_id,
            "build",
            StepOutcome.SUCCEEDED,
            detail="cache hit" if artifact.cached else f"attempt {attempt}/{attempts}",
            refs=[r for r in (artifact.digest, artifact.build_log_ref) if r],
            data={"artifact": artifact.model_dump(mode="json")},
        )
        self._advance(run_id, RunState.BUILT)
        return artifact

    def _publish(self, run_id: str, artifact: Artifact, branch: str) -> PublishedTag:
        try:
            published = self.publisher.publish(artifact, branch)
        except PublishError as exc:
            self.run_machine.record_step(
                run_id,
                "publish",
                StepOutcome.FAILED,
                detail=f"{exc.kind.value}: {exc}",
                refs=[artifact.digest],
            )
            raise
        self.run_machine.record_step(
            run_id,
            "publish",
            StepOutcome.SUCCEEDED,
            detail=(
                f"{published.registry_tag} -> {published.digest}"
                + ("" if published.pushed else " (already current)")
            ),
            refs=[published.digest],
            data={"published_tag": published.model_dump(mode="json")},
        )
        return published

    def _resolve(self, run_id: str, branch: str) -> list[DeploymentTarget]:
        try:
            targets = self.resolver.resolve(branch)
        except ResolutionError as exc:
            self.run_machine.record_step(run_id, "resolve", StepOutcome.FAILED, detail=str(exc))
            raise
        self.run_machine.record_step(
            run_id,
            "resolve",
            StepOutcome.SUCCEEDED,
            detail=", ".join(t.name for t in targets) or "no targets",
            data={"targets": [t.name for t in targets]},
        )
        return targets

    def _roll_out(
        self, run_id: str, targets: list[DeploymentTarget], published: PublishedTag
    ) -> list[RolloutResult]:
        workers = min(self.settings.max_parallel_rollouts, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rollout") as pool:
            futures = [
                pool.submit(self.coordinator.rollout, target, published, run_id=run_id)
                for target in targets
            ]
            results: list[RolloutResult] = []
            for target, future in zip(targets, futures):
                try:
                    result = future.result()
                except Exception as exc:
                    logger.exception("Rollout of %s raised", target.name)
                    result = RolloutResult(
                        target_name=target.name,
                        desired_digest=published.digest,
                        previous_digest=target.current_digest,
                        confirmed_digest=self.target_state.current_digest(target.name),
                        final_state=RolloutState.ROLLBACK_FAILED,
                        detail=f"unexpected error, target state unknown: {exc}",
                    )
                self._record_rollout(run_id, result)
                results.append(result)
        return results

    def _record_rollout(self, run_id: str, result: RolloutResult) -> None:
        path = " -> ".join(s.value for s in result.states)
        detail = f"{result.final_state.value}"
        if result.detail:
            detail += f": {result.detail}"
        self.run_machine.record_step(
            run_id,
            f"rollout:{result.target_name}",
            StepOutcome.SUCCEEDED if result.committed else StepOutcome.FAILED,
            detail=detail,
            refs=[d for d in (result.desired_digest, result.confirmed_digest) if d],
            data={"rollout": result.model_dump(mode="json"), "path": path},
        )

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> PipelineRun:
        """Rebuild a run from the ledger."""
        return self.run_machine.get_run(run_id)

    def list_runs(self, branch: str | None = None, limit: int | None = None) -> list[PipelineRun]:
        """Return known runs, newest first."""
        run_ids = self.ledger.get_all_run_ids(branch)
        if limit is not None:
            run_ids = run_ids[:limit]
        return [self.get_run(run_id) for run_id in run_ids]

    def active_run(self, branch: str) -> str | None:
        """Return the run_id of the non-terminal run for *branch*, if any."""
        return self.claims.holder(ClaimKind.BRANCH, branch)

    def verify_chain(self, run_id: str) -> bool:
        """Verify the hash chain integrity of a run's ledger entries."""
        return self.ledger.verify_chain(run_id)

    def targets(self) -> list[DeploymentTarget]:
        """Every configured target with its last confirmed digest."""
        return [
            DeploymentTarget.from_spec(spec, self.target_state.current_digest(spec.name))
            for spec in self.settings.targets
        ]

    def running_digest(self, target: DeploymentTarget) -> str:
        """Ask the compute layer what *target* is actually running."""
        return self.compute.current_digest(target)

    @staticmethod
    def _new_run_id() -> str:
        ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        return f"hl-{ts}-{uuid.uuid4().hex[:6]}"
