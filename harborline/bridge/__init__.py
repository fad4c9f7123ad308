"""Adapters for the pipeline's external collaborators.

Modules
-------
protocols
    The ``SourceTree``, ``BuildCommand``, ``Registry`` and ``ComputeLayer``
    protocols the core depends on.
git_source
    ``GitSourceTree``: tree hashes via ``git rev-parse`` and detached
    worktree checkouts.
build_command
    ``ShellBuildCommand``: runs the configured build command template.
oci_registry
    ``OciRegistry``: tag resolution and re-tagging over the OCI
    distribution HTTP API (httpx).
compute
    ``CommandComputeLayer``: replace / digest commands plus an HTTP health
    check.
"""
