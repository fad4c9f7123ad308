"""Protocols for the external collaborators of the pipeline.

Any object with the right methods satisfies these; the shipped adapters
(git, shell build command, OCI registry, command compute layer) live next
to this module, and tests substitute in-memory fakes.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from harborline.models.targets import DeploymentTarget


class BuildOutput(BaseModel):
    """What the opaque build command reports back."""

    model_config = ConfigDict(frozen=True)

    exit_code: int
    digest: str = ""  # "sha256:<hex>"; empty when the command produced none
    log: str = ""


@runtime_checkable
class SourceTree(Protocol):
    """Resolves revisions to content hashes and provides checkouts."""

    def resolve(self, revision: str) -> str:
        """Return the content hash of the tree at *revision*.

        Raises ``LookupError`` when the revision cannot be resolved.
        """
        ...

    def checkout(self, revision: str) -> AbstractContextManager[Path]:
        """Context manager yielding a directory holding *revision*."""
        ...


@runtime_checkable
class BuildCommand(Protocol):
    """Turns a source directory into an image artifact."""

    def run(self, context: Path, revision: str) -> BuildOutput:
        ...


@runtime_checkable
class Registry(Protocol):
    """A remote artifact store with mutable tags."""

    def resolve_tag(self, tag: str) -> str | None:
        """Return the digest *tag* points at, or None if it does not exist."""
        ...

    def push(self, digest: str, tag: str) -> None:
        """Point *tag* at *digest*.  Raises on failure."""
        ...


@runtime_checkable
class ComputeLayer(Protocol):
    """The deployment platform that runs artifacts on targets."""

    def replace(
        self, target: DeploymentTarget, digest: str, runtime_env: dict[str, str]
    ) -> bool:
        """Instruct *target* to run *digest*.  Returns the platform's ack."""
        ...

    def current_digest(self, target: DeploymentTarget) -> str:
        """Return the digest the platform reports as running on *target*."""
        ...

    def health(self, target: DeploymentTarget) -> bool:
        """Return True when *target* reports healthy."""
        ...
