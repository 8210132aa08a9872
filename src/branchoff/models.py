"""Core data models for branchoff."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field


# ── Deployment Context ───────────────────────────────────────────────────────


class DeploymentMode(str, enum.Enum):
    """How a branch deployment is run.

    ``test`` contexts are transient: they live for one test pipeline and are
    never saved to the ecosystem registry. ``local`` contexts run from a
    caller-owned directory (see ``branchoff ignite``).
    """

    NORMAL = "normal"
    TEST = "test"
    LOCAL = "local"


class DeploymentContext(BaseModel):
    """Canonical identity and parameters of one branch deployment instance."""

    id: str = Field(description="Deterministic id derived from uri, branch and mode")
    uri: str = Field(description="Repository location, e.g. https://github.com/acme/shop")
    branch: str
    mode: DeploymentMode = DeploymentMode.NORMAL
    scale: int | None = Field(default=None, description="Desired instance count")
    dir: str = Field(description="Workspace path")

    @property
    def is_test(self) -> bool:
        return self.mode == DeploymentMode.TEST

    @property
    def is_local(self) -> bool:
        return self.mode == DeploymentMode.LOCAL


# ── GitHub Events ────────────────────────────────────────────────────────────


class GitHubEvent(BaseModel):
    """Raw GitHub webhook delivery."""

    delivery_id: str = Field(description="X-GitHub-Delivery UUID")
    event_type: str = Field(description="X-GitHub-Event header value")
    payload: dict = Field(default_factory=dict, description="Full webhook payload")
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def sender(self) -> str | None:
        """GitHub username of the event sender."""
        sender = self.payload.get("sender") or {}
        return sender.get("login")


# ── Pipelines ────────────────────────────────────────────────────────────────


class PipelineKind(str, enum.Enum):
    """Pipelines an inbound event or request can dispatch."""

    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"


class Dispatch(BaseModel):
    """A normalized request to run one pipeline for one branch."""

    pipeline: PipelineKind
    uri: str
    branch: str


class HookResult(BaseModel):
    """Response of a lifecycle hook delivered to a deployment."""

    exit_code: int = 0
    output: str = ""

    @property
    def passed(self) -> bool:
        return self.exit_code == 0


class PipelineResult(BaseModel):
    """Outcome of one pipeline invocation, delivered when its last step runs."""

    pipeline: str
    context_id: str | None = None
    ok: bool = True
    reason: str | None = None
    exit_code: int | None = None
