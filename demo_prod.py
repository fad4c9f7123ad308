"""Smoke test — runs the full Harborline pipeline against in-memory collaborators.

Usage:
    python demo_prod.py
"""

from __future__ import annotations

import hashlib
import tempfile
from contextlib import contextmanager
from pathlib import Path

from harborline.bridge.protocols import BuildOutput
from harborline.config import PipelineSettings
from harborline.core.orchestrator import Orchestrator
from harborline.models.events import CommitEvent
from harborline.monitor.renderer import RunSummaryRenderer


class _Tree:
    def resolve(self, revision: str) -> str:
        return f"tree-{revision}"

    @contextmanager
    def checkout(self, revision: str):
        yield Path(".")


class _Build:
    def run(self, context: Path, revision: str) -> BuildOutput:
        digest = "sha256:" + hashlib.sha256(revision.encode()).hexdigest()
        return BuildOutput(exit_code=0, digest=digest, log=f"built {revision}\n")


class _Registry:
    def __init__(self) -> None:
        self.tags: dict[str, str] = {}

    def resolve_tag(self, tag: str) -> str | None:
        return self.tags.get(tag)

    def push(self, digest: str, tag: str) -> None:
        self.tags[tag] = digest


class _Compute:
    def replace(self, target, digest, runtime_env) -> bool:
        print(f"  replace {target.name} -> {digest[:19]}... env={runtime_env}")
        return True

    def current_digest(self, target) -> str:
        return ""

    def health(self, target) -> bool:
        return True


def main() -> None:
    """Run one development commit and one feature-branch commit."""
    with tempfile.TemporaryDirectory() as tmp:
        settings = PipelineSettings(
            state_db_path=Path(tmp) / "state.db",
            artifact_store_path=Path(tmp) / "artifacts",
        )
        renderer = RunSummaryRenderer()
        with Orchestrator(
            settings,
            source_tree=_Tree(),
            build_command=_Build(),
            registry=_Registry(),
            compute=_Compute(),
        ) as orch:
            for event in (
                CommitEvent(branch="development", revision="abc123"),
                CommitEvent(branch="feature/x", revision="def456"),
            ):
                run = orch.run(event)
                renderer.print_run(run, chain_valid=orch.verify_chain(run.run_id))
            print()
            renderer.console.print(renderer.render_targets(orch.targets()))


if __name__ == "__main__":
    main()
