"""Artifact Builder — turns a revision into a content-addressed artifact.

The build is keyed by the content hash of the source tree, not by the
revision: a revision whose tree was already built returns the cached
artifact without running the build command again.  Build logs are always
written to the content-addressed store, on success and on failure.
"""

from __future__ import annotations

import logging
import re
import subprocess

from harborline.bridge.protocols import BuildCommand, BuildOutput, SourceTree
from harborline.core.artifact_store import ContentAddressedStore
from harborline.models.artifacts import Artifact

logger = logging.getLogger(__name__)

_DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")


class BuildError(RuntimeError):
    """Raised when a build fails.  Always recoverable by retry.

    Attributes
    ----------
    reason:
        One-line description of the failure.
    log:
        The build command's output (may be empty).
    log_ref:
        Content address of the stored log, when one was written.
    """

    def __init__(self, reason: str, *, log: str = "", log_ref: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.log = log
        self.log_ref = log_ref


class ArtifactBuilder:
    """Builds artifacts through an opaque build command.

    Parameters
    ----------
    source_tree:
        Resolves revisions and provides checkouts.
    build_command:
        The external build command.
    store:
        Content-addressed store for logs and the build cache index.
    """

    def __init__(
        self,
        source_tree: SourceTree,
        build_command: BuildCommand,
        store: ContentAddressedStore,
    ) -> None:
        self._source_tree = source_tree
        self._build_command = build_command
        self._store = store

    def build(self, revision: str) -> Artifact:
        """Build *revision*, or return the cached artifact for its content.

        Raises ``BuildError`` when the revision cannot be resolved, the
        command fails, or no valid digest is reported.
        """
        try:
            source_hash = self._source_tree.resolve(revision)
        except LookupError as exc:
            raise BuildError(f"Cannot resolve revision {revision!r}: {exc}") from exc

        cached = self._store.lookup_build(source_hash)
        if cached is not None:
            logger.info(
                "Build cache hit for %s (source %s) -> %s",
                revision,
                source_hash[:12],
                cached.digest,
            )
            return cached.model_copy(
                update={"source_revision": revision, "cached": True}
            )

        logger.info("Building %s (source %s)", revision, source_hash[:12])
        try:
            with self._source_tree.checkout(revision) as context:
                output = self._build_command.run(context, revision)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise BuildError(f"Build of {revision} could not run: {exc}") from exc

        log_ref = self._store.store(output.log.encode("utf-8"))
        self._check(output, revision, log_ref)

        artifact = Artifact(
            digest=output.digest,
            source_revision=revision,
            source_hash=source_hash,
            build_log_ref=log_ref,
        )
        self._store.remember_build(artifact)
        logger.info("Built %s -> %s", revision, artifact.digest)
        return artifact

    @staticmethod
    def _check(output: BuildOutput, revision: str, log_ref: str) -> None:
        if output.exit_code != 0:
            raise BuildError(
                f"Build of {revision} exited with status {output.exit_code}",
                log=output.log,
                log_ref=log_ref,
            )
        if not _DIGEST_RE.match(output.digest):
            raise BuildError(
                f"Build of {revision} reported no valid digest ({output.digest!r})",
                log=output.log,
                log_ref=log_ref,
            )
