"""Git-backed source tree.

The content hash of a revision is its git *tree* hash, so two commits with
identical content resolve to the same hash and share one build.
"""

from __future__ import annotations

import logging
import subprocess
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class GitSourceTree:
    """Resolves revisions and checks them out from a local git repository."""

    def __init__(self, repo_path: Path, *, git: str = "git") -> None:
        self._repo = Path(repo_path)
        self._git = git

    def _run(self, *args: str) -> str:
        result = subprocess.run(
            [self._git, "-C", str(self._repo), *args],
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()

    def resolve(self, revision: str) -> str:
        try:
            tree = self._run("rev-parse", "--verify", "--quiet", f"{revision}^{{tree}}")
        except (subprocess.CalledProcessError, OSError) as exc:
            raise LookupError(f"unknown revision {revision!r} in {self._repo}") from exc
        if not tree:
            raise LookupError(f"unknown revision {revision!r} in {self._repo}")
        return f"git-tree:{tree}"

    @contextmanager
    def checkout(self, revision: str) -> Iterator[Path]:
        with tempfile.TemporaryDirectory(prefix="harborline-") as tmp:
            worktree = Path(tmp) / "src"
            self._run("worktree", "add", "--detach", str(worktree), revision)
            logger.debug("Checked out %s at %s", revision, worktree)
            try:
                yield worktree
            finally:
                try:
                    self._run("worktree", "remove", "--force", str(worktree))
                except subprocess.CalledProcessError as exc:
                    logger.warning("Could not remove worktree %s: %s", worktree, exc.stderr)
