"""Deployment Context Resolver.

Turns ``(uri, branch, options)`` into a canonical ``DeploymentContext``.
Resolution is pure: the same inputs always produce the same ``id`` and the
same default workspace directory.
"""

from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path

from branchoff.models import DeploymentContext, DeploymentMode

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]+")


class ResolutionError(ValueError):
    """Raised when a uri/branch pair cannot be turned into a context."""


def normalize_uri(uri: str) -> str:
    """Strip whitespace, trailing slashes and a ``.git`` suffix."""
    uri = uri.strip().rstrip("/")
    if uri.endswith(".git"):
        uri = uri[: -len(".git")]
    return uri


def _slug(value: str) -> str:
    return _SLUG_RE.sub("-", value.lower()).strip("-")


def context_id(uri: str, branch: str, mode: DeploymentMode) -> str:
    """Deterministic context id, e.g. ``shop-feature-x-normal-1a2b3c4d``.

    The digest keeps ids distinct when two branches slug to the same text
    (``feature/x`` and ``feature-x``).
    """
    repo = _slug(uri.rsplit("/", 1)[-1].rsplit(":", 1)[-1]) or "repo"
    digest = hashlib.sha1(f"{uri}|{branch}|{mode.value}".encode()).hexdigest()[:8]
    return f"{repo}-{_slug(branch) or 'branch'}-{mode.value}-{digest}"


class ContextResolver:
    """Resolve deployment contexts under a workspace root."""

    def __init__(self, workspace_root: Path | str):
        self.workspace_root = Path(workspace_root)

    def resolve(
        self,
        uri: str | None,
        branch: str | None,
        *,
        mode: DeploymentMode | str | None = None,
        scale: int | str | None = None,
        dir: str | Path | None = None,
    ) -> DeploymentContext:
        """Build the canonical context for a branch deployment.

        Args:
            uri: Repository location.
            branch: Branch name.
            mode: ``normal`` (default), ``test`` or ``local``.
            scale: Desired instance count; ``None`` leaves it to the supervisor.
            dir: Workspace override, used by local mode.

        Raises:
            ResolutionError: If uri or branch is empty, the mode is unknown or
                scale is not a positive integer.
        """
        if not isinstance(uri, str) or not normalize_uri(uri):
            raise ResolutionError(f"Unresolved uri: {uri!r}")
        if not isinstance(branch, str) or not branch.strip():
            raise ResolutionError(f"Unresolved branch: {branch!r}")

        uri = normalize_uri(uri)
        branch = branch.strip()

        try:
            mode = DeploymentMode(mode) if mode else DeploymentMode.NORMAL
        except ValueError:
            raise ResolutionError(f"Unknown deployment mode: {mode!r}") from None

        if scale in ("", None):
            scale = None
        else:
            try:
                scale = int(scale)
            except (TypeError, ValueError):
                raise ResolutionError(f"Invalid scale: {scale!r}") from None
            if scale < 1:
                raise ResolutionError(f"Scale must be positive, got {scale}")

        ctx_id = context_id(uri, branch, mode)
        workspace = Path(dir) if dir else self.workspace_root / ctx_id

        return DeploymentContext(
            id=ctx_id,
            uri=uri,
            branch=branch,
            mode=mode,
            scale=scale,
            dir=str(workspace),
        )
