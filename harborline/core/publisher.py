"""Registry Publisher — pushes artifacts under branch-derived tags.

Publishing is idempotent: when the remote tag already resolves to the
artifact's digest, nothing is pushed.  Every push is verified by
re-resolving the tag.
"""

from __future__ import annotations

import logging
import re
from enum import Enum

from harborline.bridge.protocols import Registry
from harborline.models.artifacts import Artifact, PublishedTag

logger = logging.getLogger(__name__)

_TAG_INVALID_CHARS = re.compile(r"[^a-z0-9_.-]")
_MAX_TAG_LENGTH = 128


class PublishErrorKind(str, Enum):
    PUSH = "push"
    VERIFICATION = "verification"


class PublishError(RuntimeError):
    """Raised when an artifact cannot be published.

    ``kind`` is PUSH when the registry rejected or failed the push, and
    VERIFICATION when the tag did not resolve to the pushed digest
    afterwards (a registry inconsistency).
    """

    def __init__(self, kind: PublishErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


def derive_registry_tag(branch: str) -> str:
    """Derive the registry tag for *branch*.  Pure and deterministic.

    Lower-cases the branch, replaces every character a registry tag may
    not contain with ``-``, strips leading ``.``/``-`` and truncates to
    128 characters.

    >>> derive_registry_tag("development")
    'development'
    >>> derive_registry_tag("feature/Login")
    'feature-login'
    """
    tag = _TAG_INVALID_CHARS.sub("-", branch.lower()).lstrip(".-")
    tag = tag[:_MAX_TAG_LENGTH]
    if not tag:
        raise ValueError(f"Branch {branch!r} does not yield a valid registry tag")
    return tag


class RegistryPublisher:
    """Publishes artifacts to a registry with bounded retries.

    Parameters
    ----------
    registry:
        The remote registry.
    max_attempts:
        Push attempts (each followed by verification) before giving up.
    """

    def __init__(self, registry: Registry, *, max_attempts: int = 3) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._registry = registry
        self._max_attempts = max_attempts

    def publish(self, artifact: Artifact, branch: str) -> PublishedTag:
        """Point the branch tag at *artifact*'s digest.

        Returns the ``PublishedTag``.  Raises ``PublishError`` after
        ``max_attempts`` failed attempts; the error kind is that of the
        last failure.  A registry that cannot be reached, during the push
        or while re-resolving the tag, counts as a failed PUSH attempt.
        """
        tag = derive_registry_tag(branch)

        try:
            current = self._registry.resolve_tag(tag)
        except Exception as exc:
            logger.warning("Cannot resolve %s before pushing (%s); pushing anyway", tag, exc)
            current = None
        if current == artifact.digest:
            logger.info("Tag %s already points at %s; skipping push", tag, artifact.digest)
            return PublishedTag(registry_tag=tag, digest=artifact.digest, pushed=False)

        last_error: PublishError | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                self._registry.push(artifact.digest, tag)
                resolved = self._registry.resolve_tag(tag)
            except Exception as exc:
                last_error = PublishError(
                    PublishErrorKind.PUSH, f"Push of {tag} failed: {exc}"
                )
                logger.warning(
                    "Push attempt %d/%d for %s failed: %s",
                    attempt,
                    self._max_attempts,
                    tag,
                    exc,
                )
                continue

            if resolved == artifact.digest:
                logger.info("Published %s -> %s", tag, artifact.digest)
                return PublishedTag(registry_tag=tag, digest=artifact.digest)

            last_error = PublishError(
                PublishErrorKind.VERIFICATION,
                f"Tag {tag} resolves to {resolved!r} after push, "
                f"expected {artifact.digest!r}",
            )
            logger.warning(
                "Verification attempt %d/%d for %s failed: %s",
                attempt,
                self._max_attempts,
                tag,
                last_error,
            )

        assert last_error is not None
        logger.error("Publishing %s failed: %s", tag, last_error)
        raise last_error
