"""Command-driven compute layer with an HTTP health check.

``replace`` and ``current_digest`` run configured command templates; they
may use ``{target}``, ``{environment}`` and (for replace) ``{digest}``.
The runtime environment for the deployed artifact (``PORT``) and the
compute token are passed to the commands as environment variables.
``health`` is a GET on the target's health endpoint; any 2xx is healthy.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess

import httpx

from harborline.config import PipelineSettings
from harborline.models.targets import DeploymentTarget

logger = logging.getLogger(__name__)


class CommandComputeLayer:
    """A ``ComputeLayer`` backed by shell commands and httpx."""

    def __init__(
        self,
        replace_command: str,
        digest_command: str,
        *,
        token: str = "",
        command_timeout_seconds: float = 600,
        client: httpx.Client | None = None,
        request_timeout_seconds: float = 5.0,
    ) -> None:
        self._replace_command = replace_command
        self._digest_command = digest_command
        self._token = token
        self._command_timeout = command_timeout_seconds
        self._client = client or httpx.Client(timeout=request_timeout_seconds)

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> CommandComputeLayer:
        return cls(
            settings.compute_replace_command,
            settings.compute_digest_command,
            token=settings.compute_token.get_secret_value(),
            request_timeout_seconds=settings.health_request_timeout_seconds,
        )

    def _run(
        self, template: str, target: DeploymentTarget, extra_env: dict[str, str], **fields: str
    ) -> subprocess.CompletedProcess[str]:
        if not template:
            raise RuntimeError("compute command is not configured")
        argv = shlex.split(
            template.format(
                target=target.name, environment=target.environment.value, **fields
            )
        )
        env = {**os.environ, **extra_env}
        if self._token:
            env["HARBORLINE_COMPUTE_TOKEN"] = self._token
        return subprocess.run(
            argv, capture_output=True, text=True, env=env, timeout=self._command_timeout
        )

    def replace(
        self, target: DeploymentTarget, digest: str, runtime_env: dict[str, str]
    ) -> bool:
        result = self._run(self._replace_command, target, runtime_env, digest=digest)
        if result.returncode != 0:
            logger.warning(
                "replace on %s exited %d: %s",
                target.name,
                result.returncode,
                result.stderr.strip(),
            )
        return result.returncode == 0

    def current_digest(self, target: DeploymentTarget) -> str:
        result = self._run(self._digest_command, target, {})
        if result.returncode != 0:
            raise RuntimeError(
                f"digest command for {target.name} exited {result.returncode}: "
                f"{result.stderr.strip()}"
            )
        return result.stdout.strip()

    def health(self, target: DeploymentTarget) -> bool:
        response = self._client.get(target.health_endpoint)
        return response.is_success

    def close(self) -> None:
        self._client.close()
