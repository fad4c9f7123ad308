"""Commit event model — the trigger delivered by the CI job."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CommitEvent(BaseModel):
    """A single commit on a branch, as reported by the CI collaborator.

    Immutable.  Two events are considered the same trigger when their
    ``branch`` and ``revision`` match; ``timestamp`` is informational.
    """

    model_config = ConfigDict(frozen=True)

    branch: str
    revision: str  # commit hash or any ref the source tree can resolve
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @field_validator("branch", "revision")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value
