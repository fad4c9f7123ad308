"""Unit tests for the content-addressed store and build cache index."""

from __future__ import annotations

import pytest

from harborline.core.artifact_store import ArtifactIntegrityError, ContentAddressedStore
from harborline.core.hasher import content_address
from harborline.models.artifacts import Artifact


class TestBlobs:
    def test_store_returns_content_address(self, artifact_store: ContentAddressedStore):
        address = artifact_store.store(b"build log")
        assert address == content_address(b"build log")
        assert artifact_store.retrieve(address) == b"build log"

    def test_store_is_idempotent(self, artifact_store: ContentAddressedStore):
        assert artifact_store.store(b"same") == artifact_store.store(b"same")

    def test_retrieve_by_bare_hex(self, artifact_store: ContentAddressedStore):
        address = artifact_store.store(b"x")
        assert artifact_store.retrieve(address.removeprefix("sha256:")) == b"x"

    def test_missing_blob(self, artifact_store: ContentAddressedStore):
        assert not artifact_store.verify("sha256:" + "0" * 64)
        with pytest.raises(FileNotFoundError):
            artifact_store.retrieve("sha256:" + "0" * 64)

    def test_tampered_blob_detected_on_restore(self, artifact_store: ContentAddressedStore):
        address = artifact_store.store(b"original")
        hex_digest = address.removeprefix("sha256:")
        artifact_store._blob_path(hex_digest).write_bytes(b"tampered")
        assert not artifact_store.verify(address)
        with pytest.raises(ArtifactIntegrityError):
            artifact_store.store(b"original")


class TestBuildIndex:
    def _artifact(self, digest: str, revision: str = "abc") -> Artifact:
        return Artifact(digest=digest, source_revision=revision, source_hash="tree-1")

    def test_lookup_missing(self, artifact_store: ContentAddressedStore):
        assert artifact_store.lookup_build("tree-1") is None

    def test_remember_then_lookup(self, artifact_store: ContentAddressedStore):
        artifact_store.remember_build(self._artifact("sha256:aa"))
        found = artifact_store.lookup_build("tree-1")
        assert found is not None
        assert found.digest == "sha256:aa"

    def test_first_record_wins(self, artifact_store: ContentAddressedStore):
        artifact_store.remember_build(self._artifact("sha256:aa", "abc"))
        artifact_store.remember_build(self._artifact("sha256:bb", "def"))
        assert artifact_store.lookup_build("tree-1").digest == "sha256:aa"
