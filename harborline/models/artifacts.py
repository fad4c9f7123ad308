"""Build artifact and registry tag models (immutable)."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class Artifact(BaseModel):
    """A content-addressed build output ready for deployment.

    ``digest`` is the image digest reported by the build command
    (``sha256:<hex>``).  ``source_hash`` is the content hash of the source
    tree the artifact was built from; it is the build cache key, so two
    revisions with identical content share one artifact digest.

    The build log bytes live in the content-addressed store under
    ``build_log_ref``.
    """

    model_config = ConfigDict(frozen=True)

    digest: str
    source_revision: str
    source_hash: str
    build_log_ref: str = ""  # "sha256:<hex>" in the artifact store
    built_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    cached: bool = False  # served from the build cache, build command not run


class PublishedTag(BaseModel):
    """A mutable registry tag pointing at an immutable digest."""

    model_config = ConfigDict(frozen=True)

    registry_tag: str
    digest: str
    pushed: bool = True  # False when the tag already pointed at this digest
