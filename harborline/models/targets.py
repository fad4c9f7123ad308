"""Deployment target models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class Environment(str, Enum):
    """The environments a target can belong to."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


class TargetSpec(BaseModel):
    """Static definition of a deployment target, as configured."""

    model_config = ConfigDict(frozen=True)

    name: str
    environment: Environment
    health_endpoint: str


class DeploymentTarget(BaseModel):
    """A deployable compute destination and its last confirmed digest.

    ``current_digest`` only ever holds a digest that passed a health
    check.  An empty string means nothing has been confirmed yet.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    environment: Environment
    health_endpoint: str
    current_digest: str = ""

    @classmethod
    def from_spec(cls, spec: TargetSpec, current_digest: str = "") -> DeploymentTarget:
        return cls(
            name=spec.name,
            environment=spec.environment,
            health_endpoint=spec.health_endpoint,
            current_digest=current_digest,
        )
