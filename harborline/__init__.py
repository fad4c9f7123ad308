"""Harborline: build-tag-push-deploy pipeline orchestrator.

A CI job hands Harborline one commit event per push.  Harborline builds a
content-addressed artifact, publishes it under a branch-derived registry
tag, resolves the branch to its deployment targets and rolls each target
forward behind a health gate, rolling back once on failure.  Every run is
recorded in an append-only, hash-chained run ledger.
"""

__version__ = "0.1.0"
__description__ = "Build-tag-push-deploy pipeline orchestrator"

from harborline.config import PipelineSettings
from harborline.core.orchestrator import Orchestrator, RunInProgressError
from harborline.models.events import CommitEvent

__all__ = [
    "CommitEvent",
    "Orchestrator",
    "PipelineSettings",
    "RunInProgressError",
    "__version__",
]
