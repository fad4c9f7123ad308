"""OCI distribution API client for tag resolution and re-tagging.

Images are pushed by digest by the build step; publishing a tag copies the
manifest stored under the digest to the tag reference::

    HEAD /v2/<repository>/manifests/<tag>      -> Docker-Content-Digest
    GET  /v2/<repository>/manifests/<digest>   -> manifest bytes
    PUT  /v2/<repository>/manifests/<tag>      <- manifest bytes
"""

from __future__ import annotations

import logging

import httpx

from harborline.config import PipelineSettings

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPES = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)


class OciRegistry:
    """A registry repository reached over HTTP.

    Parameters
    ----------
    base_url:
        Registry root, e.g. ``https://registry.example.com``.
    repository:
        Repository path inside the registry, e.g. ``team/api``.
    client:
        Optional pre-built ``httpx.Client`` (tests pass a MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        repository: str,
        *,
        username: str = "",
        password: str = "",
        timeout_seconds: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._repository = repository.strip("/")
        auth = httpx.BasicAuth(username, password) if username else None
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"), auth=auth, timeout=timeout_seconds
        )

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> OciRegistry:
        return cls(
            settings.registry_url,
            settings.registry_repository,
            username=settings.registry_username,
            password=settings.registry_password.get_secret_value(),
            timeout_seconds=settings.registry_timeout_seconds,
        )

    def _manifest_url(self, reference: str) -> str:
        return f"/v2/{self._repository}/manifests/{reference}"

    def resolve_tag(self, tag: str) -> str | None:
        response = self._client.head(
            self._manifest_url(tag), headers={"Accept": MANIFEST_MEDIA_TYPES}
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.headers.get("Docker-Content-Digest")

    def push(self, digest: str, tag: str) -> None:
        source = self._client.get(
            self._manifest_url(digest), headers={"Accept": MANIFEST_MEDIA_TYPES}
        )
        source.raise_for_status()
        media_type = source.headers.get(
            "Content-Type", "application/vnd.oci.image.manifest.v1+json"
        )
        response = self._client.put(
            self._manifest_url(tag),
            content=source.content,
            headers={"Content-Type": media_type},
        )
        response.raise_for_status()
        logger.debug("PUT %s -> %s (%d)", tag, digest, response.status_code)

    def close(self) -> None:
        self._client.close()
