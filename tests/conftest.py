"""Shared test fixtures for Harborline.

Every external collaborator (source tree, build command, registry, compute
layer) has an in-memory fake here; tests get them through fixtures.
"""

from __future__ import annotations

import hashlib
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import pytest

from harborline.bridge.protocols import BuildOutput
from harborline.config import PipelineSettings
from harborline.core.artifact_store import ContentAddressedStore
from harborline.core.orchestrator import Orchestrator
from harborline.core.run_ledger import RunLedger
from harborline.core.run_machine import RunStateMachine
from harborline.core.target_state import TargetStateStore
from harborline.models.targets import DeploymentTarget


def digest_of(text: str) -> str:
    """A valid ``sha256:<hex>`` image digest derived from *text*."""
    return "sha256:" + hashlib.sha256(text.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeSourceTree:
    """Revisions resolve to ``tree-<revision>`` unless aliased or unknown."""

    def __init__(self) -> None:
        self.aliases: dict[str, str] = {}  # revision -> tree hash
        self.unknown: set[str] = set()
        self.checkouts: list[str] = []
        self.workdir = Path(".")
        self.checkout_error: Exception | None = None

    def resolve(self, revision: str) -> str:
        if revision in self.unknown:
            raise LookupError(f"unknown revision {revision}")
        return self.aliases.get(revision, f"tree-{revision}")

    @contextmanager
    def checkout(self, revision: str) -> Iterator[Path]:
        self.checkouts.append(revision)
        if self.checkout_error is not None:
            raise self.checkout_error
        yield self.workdir


class FakeBuildCommand:
    """Digest is derived from the tree the revision resolves to."""

    def __init__(self, source_tree: FakeSourceTree) -> None:
        self._source_tree = source_tree
        self.calls: list[str] = []
        self.fail_times = 0
        self.exit_code_on_failure = 1

    def run(self, context: Path, revision: str) -> BuildOutput:
        self.calls.append(revision)
        if self.fail_times > 0:
            self.fail_times -= 1
            return BuildOutput(
                exit_code=self.exit_code_on_failure,
                log=f"step 3/7: compile {revision}\nerror: boom\n",
            )
        tree = self._source_tree.resolve(revision)
        return BuildOutput(
            exit_code=0,
            digest=digest_of(tree),
            log=f"step 7/7: done {revision}\n",
        )


class FakeRegistry:
    """Tags in a dict.  Can fail pushes or misreport tags after a push."""

    def __init__(self) -> None:
        self.tags: dict[str, str] = {}
        self.pushes: list[tuple[str, str]] = []
        self.fail_push_times = 0
        self.corrupt_after_push: str | None = None  # digest the tag really lands on
        self.fail_resolve_after_push = 0

    def resolve_tag(self, tag: str) -> str | None:
        if self.pushes and self.fail_resolve_after_push > 0:
            self.fail_resolve_after_push -= 1
            raise ConnectionError("registry timed out")
        return self.tags.get(tag)

    def push(self, digest: str, tag: str) -> None:
        self.pushes.append((digest, tag))
        if self.fail_push_times > 0:
            self.fail_push_times -= 1
            raise ConnectionError("registry unavailable")
        self.tags[tag] = self.corrupt_after_push or digest


class FakeCompute:
    """Tracks what each target runs; health is a per-digest policy.

    A target is healthy unless the digest it runs is in
    ``unhealthy_digests`` or ``always_unhealthy`` is set.
    """

    def __init__(self) -> None:
        self.running: dict[str, str] = {}
        self.replace_calls: list[tuple[str, str, dict[str, str]]] = []
        self.health_calls: list[str] = []
        self.unhealthy_digests: set[str] = set()
        self.always_unhealthy = False
        self.ack = True
        self.replace_error: Exception | None = None
        self.on_replace: Callable[[str, str], None] | None = None
        self._lock = threading.Lock()

    def replace(
        self, target: DeploymentTarget, digest: str, runtime_env: dict[str, str]
    ) -> bool:
        with self._lock:
            self.replace_calls.append((target.name, digest, runtime_env))
        if self.on_replace is not None:
            self.on_replace(target.name, digest)
        if self.replace_error is not None:
            raise self.replace_error
        if not self.ack:
            return False
        with self._lock:
            self.running[target.name] = digest
        return True

    def current_digest(self, target: DeploymentTarget) -> str:
        return self.running.get(target.name, "")

    def health(self, target: DeploymentTarget) -> bool:
        with self._lock:
            self.health_calls.append(target.name)
        if self.always_unhealthy:
            return False
        return self.running.get(target.name, "") not in self.unhealthy_digests

    def replaces_for(self, name: str) -> list[str]:
        return [digest for target, digest, _ in self.replace_calls if target == name]


class FakeClock:
    """A monotonic clock advanced only by the fake sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test state."""
    return tmp_path


@pytest.fixture
def ledger(tmp_dir: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_dir / "state.db")


@pytest.fixture
def run_machine(ledger: RunLedger) -> RunStateMachine:
    return RunStateMachine(ledger)


@pytest.fixture
def artifact_store(tmp_dir: Path) -> ContentAddressedStore:
    """Provide a fresh ContentAddressedStore in a temp directory."""
    return ContentAddressedStore(tmp_dir / "artifacts")


@pytest.fixture
def target_state(tmp_dir: Path) -> TargetStateStore:
    return TargetStateStore(tmp_dir / "state.db")


@pytest.fixture
def source_tree() -> FakeSourceTree:
    return FakeSourceTree()


@pytest.fixture
def build_command(source_tree: FakeSourceTree) -> FakeBuildCommand:
    return FakeBuildCommand(source_tree)


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def compute() -> FakeCompute:
    return FakeCompute()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_settings(tmp_dir: Path) -> Callable[..., PipelineSettings]:
    """Factory fixture: PipelineSettings with temp paths and fast health polling."""

    def _factory(**overrides: Any) -> PipelineSettings:
        defaults: dict[str, Any] = {
            "state_db_path": tmp_dir / "state.db",
            "artifact_store_path": tmp_dir / "artifacts",
            "health_timeout_seconds": 10.0,
            "health_max_attempts": 3,
            "health_initial_backoff_seconds": 0.5,
            "health_max_backoff_seconds": 2.0,
        }
        defaults.update(overrides)
        return PipelineSettings(**defaults)

    return _factory


@pytest.fixture
def make_orchestrator(
    make_settings: Callable[..., PipelineSettings],
    source_tree: FakeSourceTree,
    build_command: FakeBuildCommand,
    registry: FakeRegistry,
    compute: FakeCompute,
    clock: FakeClock,
) -> Callable[..., Orchestrator]:
    """Factory fixture: an Orchestrator wired to the shared fakes."""

    def _factory(**overrides: Any) -> Orchestrator:
        return Orchestrator(
            make_settings(**overrides),
            source_tree=source_tree,
            build_command=build_command,
            registry=registry,
            compute=compute,
            sleep=clock.sleep,
            clock=clock,
        )

    return _factory


@pytest.fixture
def orchestrator(make_orchestrator: Callable[..., Orchestrator]) -> Orchestrator:
    return make_orchestrator()


@pytest.fixture
def dev_target() -> DeploymentTarget:
    return DeploymentTarget(
        name="dev-target",
        environment="development",
        health_endpoint="http://dev.internal:8080/health",
    )


@pytest.fixture
def make_digest() -> Callable[[str], str]:
    """``make_digest("tree-abc123")`` is the digest FakeBuildCommand reports."""
    return digest_of
