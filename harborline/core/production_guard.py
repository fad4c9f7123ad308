"""Startup configuration guard — enforces hard constraints in production.

The guard validates that the settings a production rollout depends on are
present before the pipeline starts.  It runs once when the Orchestrator is
built from settings and fails hard (raises ``SettingsError``) if any
constraint is violated.

This module is the single enforcement point for production invariants.
Other code should not scatter ``if is_production`` checks.
"""

from __future__ import annotations

import logging

from harborline.config import PipelineSettings

logger = logging.getLogger(__name__)


class SettingsError(RuntimeError):
    """Raised when the pipeline cannot safely start with its settings.

    It must not be caught and ignored; the process should exit.
    """


def enforce_settings_constraints(settings: PipelineSettings) -> None:
    """Validate production-critical settings.

    Constraints enforced in production
    ----------------------------------
    1. Debug mode must be disabled.
    2. The registry URL and credentials must be configured.
    3. The compute layer commands must be configured.

    In every environment, each target named in ``branch_targets`` must be
    defined in ``targets``.

    All violations are reported at once.

    Raises
    ------
    SettingsError
        If any constraint is violated.
    """
    violations: list[str] = []

    defined = {t.name for t in settings.targets}
    for branch, names in sorted(settings.branch_targets.items()):
        for name in names:
            if name not in defined:
                violations.append(
                    f"Branch '{branch}' maps to undefined target '{name}'. "
                    f"Add it to HARBORLINE_TARGETS."
                )

    if settings.is_production:
        if settings.debug:
            violations.append(
                "debug=True is not allowed in production. "
                "Set HARBORLINE_DEBUG=false."
            )

        required = {
            "registry_url": settings.registry_url,
            "registry_username": settings.registry_username,
            "registry_password": settings.registry_password.get_secret_value(),
            "compute_replace_command": settings.compute_replace_command,
            "compute_digest_command": settings.compute_digest_command,
        }
        for key_name, value in required.items():
            if not value:
                violations.append(
                    f"'{key_name}' is required in production but not configured. "
                    f"Set HARBORLINE_{key_name.upper()}."
                )

    if violations:
        msg = "Pipeline settings guard failed.\n" + "\n".join(
            f"  - {v}" for v in violations
        )
        logger.critical(msg)
        raise SettingsError(msg)

    logger.debug("Pipeline settings guard passed.")
