"""Shell build command — the opaque image build step.

The command template may use ``{context}`` (checkout directory) and
``{revision}``.  The image digest is the last ``sha256:<64 hex>`` token the
command prints (``docker build --quiet`` prints exactly that).
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
from pathlib import Path

from harborline.bridge.protocols import BuildOutput

logger = logging.getLogger(__name__)

_DIGEST_TOKEN = re.compile(r"sha256:[0-9a-f]{64}")

# Conventional shell statuses for a timed-out and a missing command.
EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127


class ShellBuildCommand:
    """Runs a build command template through ``subprocess``."""

    def __init__(self, template: str, *, timeout_seconds: float = 1800) -> None:
        self._template = template
        self._timeout = timeout_seconds

    def argv(self, context: Path, revision: str) -> list[str]:
        return shlex.split(self._template.format(context=str(context), revision=revision))

    def run(self, context: Path, revision: str) -> BuildOutput:
        argv = self.argv(context, revision)
        logger.debug("Running build command: %s", shlex.join(argv))
        try:
            result = subprocess.run(
                argv,
                cwd=context,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            partial = exc.stdout if isinstance(exc.stdout, str) else ""
            return BuildOutput(
                exit_code=EXIT_TIMEOUT,
                log=f"{partial}\nbuild timed out after {self._timeout}s",
            )
        except OSError as exc:
            return BuildOutput(exit_code=EXIT_NOT_FOUND, log=f"cannot run {argv[0]}: {exc}")

        log = result.stdout + result.stderr
        found = _DIGEST_TOKEN.findall(result.stdout)
        return BuildOutput(
            exit_code=result.returncode,
            digest=found[-1] if found else "",
            log=log,
        )
