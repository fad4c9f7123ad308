"""Content-addressed, immutable blob store plus the build cache index.

Blob layout:  {base_path}/{sha256[0:2]}/{sha256[2:4]}/{sha256}.dat
Build index:  {base_path}/builds/{source_hash}.json

Blobs hold build logs.  The build index maps a source-tree content hash
to the ``Artifact`` built from it, which is what lets a re-run at the same
content skip the build command.
"""

from __future__ import annotations

import logging
from pathlib import Path

from harborline.core.hasher import content_address, sha256_hex, strip_algorithm
from harborline.models.artifacts import Artifact

logger = logging.getLogger(__name__)


class ArtifactIntegrityError(RuntimeError):
    """Raised when a stored blob's hash does not match its address."""


class ContentAddressedStore:
    """SHA-256 keyed, immutable blob store.

    Storing the same content twice is a no-op.  There is no update or
    delete.

    Parameters
    ----------
    base_path:
        Root directory for storage.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)
        self._builds = self._base / "builds"
        self._builds.mkdir(exist_ok=True)

    def _blob_path(self, sha256_digest: str) -> Path:
        return self._base / sha256_digest[:2] / sha256_digest[2:4] / f"{sha256_digest}.dat"

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    def store(self, data: bytes) -> str:
        """Store *data* and return its ``sha256:<hex>`` address.

        If the content already exists, verifies integrity and returns
        the existing address without overwriting.
        """
        address = content_address(data)
        digest = strip_algorithm(address)
        path = self._blob_path(digest)

        if path.exists():
            if not self.verify(address):
                raise ArtifactIntegrityError(
                    f"Existing blob at {digest} failed integrity check"
                )
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        return address

    def retrieve(self, address: str) -> bytes:
        """Retrieve blob bytes by ``sha256:<hex>`` or bare hex digest."""
        path = self._blob_path(strip_algorithm(address))
        if not path.exists():
            raise FileNotFoundError(f"Blob not found: {address}")
        return path.read_bytes()

    def verify(self, address: str) -> bool:
        """Re-hash stored data and compare against the address."""
        digest = strip_algorithm(address)
        path = self._blob_path(digest)
        if not path.exists():
            return False
        return sha256_hex(path.read_bytes()) == digest

    # ------------------------------------------------------------------
    # Build cache index
    # ------------------------------------------------------------------

    def _build_path(self, source_hash: str) -> Path:
        return self._builds / f"{strip_algorithm(source_hash)}.json"

    def remember_build(self, artifact: Artifact) -> None:
        """Record *artifact* as the build output for its source hash.

        The first record for a source hash wins; builds are deterministic
        given identical content.
        """
        path = self._build_path(artifact.source_hash)
        if path.exists():
            return
        path.write_text(artifact.model_dump_json(), encoding="utf-8")
        logger.debug(
            "Cached build %s for source %s", artifact.digest, artifact.source_hash
        )

    def lookup_build(self, source_hash: str) -> Artifact | None:
        """Return the cached artifact for *source_hash*, or None."""
        path = self._build_path(source_hash)
        if not path.exists():
            return None
        return Artifact.model_validate_json(path.read_text(encoding="utf-8"))
