"""Deployment Target Resolver — maps a branch to its deployment targets.

The branch -> target policy is pure configuration (``branch_targets`` plus
the ``targets`` definitions).  Branches with no mapping resolve to an empty
list, which the orchestrator treats as a no-op success.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from harborline.core.target_state import TargetStateStore
from harborline.models.targets import DeploymentTarget, TargetSpec

logger = logging.getLogger(__name__)


class ResolutionError(RuntimeError):
    """Raised when the mapping names a target that is not defined.

    This is a configuration defect; it is surfaced, never retried.
    """


class TargetResolver:
    """Resolves branches to ``DeploymentTarget`` lists.

    Parameters
    ----------
    targets:
        Every configured target definition.
    branch_targets:
        ``{branch: [target_name, ...]}``.
    state:
        Supplies each target's last confirmed digest.  When omitted the
        returned targets carry an empty ``current_digest``.
    """

    def __init__(
        self,
        targets: Sequence[TargetSpec],
        branch_targets: Mapping[str, Sequence[str]],
        state: TargetStateStore | None = None,
    ) -> None:
        self._specs: dict[str, TargetSpec] = {t.name: t for t in targets}
        self._mapping: dict[str, tuple[str, ...]] = {
            branch: tuple(names) for branch, names in branch_targets.items()
        }
        self._state = state

    def is_mapped(self, branch: str) -> bool:
        """Whether *branch* has at least one mapped target."""
        return bool(self._mapping.get(branch))

    def resolve(self, branch: str) -> list[DeploymentTarget]:
        """Return the ordered deployment targets for *branch*.

        Raises ``ResolutionError`` when a mapped name has no definition.
        """
        names = self._mapping.get(branch, ())
        if not names:
            logger.info("Branch %s has no deployment targets", branch)
            return []

        missing = [n for n in names if n not in self._specs]
        if missing:
            raise ResolutionError(
                f"Branch {branch!r} maps to undefined target(s): {', '.join(missing)}"
            )

        resolved = [
            DeploymentTarget.from_spec(
                self._specs[name],
                current_digest=self._state.current_digest(name) if self._state else "",
            )
            for name in names
        ]
        logger.info(
            "Branch %s resolves to %s", branch, ", ".join(t.name for t in resolved)
        )
        return resolved
