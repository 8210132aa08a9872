"""Configuration loading for branchoff.

Two layers:

- ``BranchoffConfig`` — the service's own settings, read from a YAML file
  (``--config`` / ``BRANCHOFF_CONFIG``) with environment overrides.
- ``DeploymentConfig`` — what a deployed branch declares about itself in a
  ``branchoff.yaml`` at the root of its workspace: the start command, extra
  environment and lifecycle hooks.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from branchoff.deferred import StepFailure

logger = logging.getLogger(__name__)

DEPLOYMENT_CONFIG_FILE = "branchoff.yaml"

# Lifecycle hook names a deployment may declare.
HOOK_EVENTS = ("create", "test", "update", "destroy", "pass", "fail")


# ── Service Config ───────────────────────────────────────────────────────────


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class PortRangeConfig(BaseModel):
    """Ports handed out to supervised deployment processes."""

    start: int = 3000
    end: int = 4000  # exclusive

    @model_validator(mode="after")
    def _check_range(self) -> PortRangeConfig:
        if not 0 < self.start < self.end <= 65536:
            raise ValueError(f"Invalid port range {self.start}-{self.end}")
        return self


class WorkspaceConfig(BaseModel):
    root: str | None = None  # default: <data_dir>/workspaces
    git: str = "git"
    git_timeout: int = 300  # seconds


class QueueConfig(BaseModel):
    step_timeout: float = 900  # seconds, 0 disables
    history: int = 500

    @field_validator("step_timeout")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("step_timeout must be >= 0")
        return v


class WebhookConfig(BaseModel):
    secret_env: str = "GITHUB_WEBHOOK_SECRET"
    rate_limit_max: int = 60  # deliveries per minute, 0 = unlimited
    dedup_max_age_hours: int = 72  # how long delivery ids are remembered

    @property
    def secret(self) -> str | None:
        return os.environ.get(self.secret_env) or None


class DefaultsConfig(BaseModel):
    branch: str = "master"


class HooksConfig(BaseModel):
    timeout: int = 600  # seconds a lifecycle hook may run
    shell: str = "/bin/sh"


class BranchoffConfig(BaseModel):
    """Top-level service configuration."""

    data_dir: str = ".branchoff-data"
    server: ServerConfig = Field(default_factory=ServerConfig)
    ports: PortRangeConfig = Field(default_factory=PortRangeConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    hooks: HooksConfig = Field(default_factory=HooksConfig)

    @property
    def workspace_root(self) -> Path:
        if self.workspace.root:
            return Path(self.workspace.root)
        return Path(self.data_dir) / "workspaces"

    @property
    def registry_path(self) -> Path:
        return Path(self.data_dir) / "ecosystem.db"


def load_config(path: Path | str | None = None) -> BranchoffConfig:
    """Load service configuration.

    Args:
        path: YAML file to read. ``None`` falls back to ``BRANCHOFF_CONFIG``
            and then to built-in defaults.

    Raises:
        FileNotFoundError: If an explicitly named config file doesn't exist.
        pydantic.ValidationError: If config validation fails.
    """
    if path is None:
        path = os.environ.get("BRANCHOFF_CONFIG") or None

    raw: dict = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"branchoff config not found: {config_path}")
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    config = BranchoffConfig(**raw)

    # Environment variable overrides for deployment
    data_dir = os.environ.get("BRANCHOFF_DATA_DIR")
    if data_dir:
        config.data_dir = data_dir

    workspace_dir = os.environ.get("BRANCHOFF_WORKSPACE_DIR")
    if workspace_dir:
        config.workspace.root = workspace_dir

    port_start = os.environ.get("BRANCHOFF_PORT_START")
    port_end = os.environ.get("BRANCHOFF_PORT_END")
    if port_start or port_end:
        config.ports = PortRangeConfig(
            start=int(port_start) if port_start else config.ports.start,
            end=int(port_end) if port_end else config.ports.end,
        )

    step_timeout = os.environ.get("BRANCHOFF_STEP_TIMEOUT")
    if step_timeout:
        config.queue.step_timeout = float(step_timeout)

    logger.info(
        "Loaded branchoff config (data_dir=%s, ports=%d-%d)",
        config.data_dir,
        config.ports.start,
        config.ports.end,
    )
    return config


# ── Deployment Config ────────────────────────────────────────────────────────


class DeploymentConfigError(StepFailure):
    """A deployment's branchoff.yaml is unreadable or invalid."""


class DeploymentConfig(BaseModel):
    """Settings a deployed branch declares in its own ``branchoff.yaml``.

    Example::

        main: python -m shop.server
        env:
          SHOP_DEBUG: "1"
        hooks:
          test: pytest -q
          create: ./scripts/migrate.sh
    """

    main: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    hooks: dict[str, str] = Field(default_factory=dict)

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: dict | None) -> dict:
        return {str(k): str(val) for k, val in (v or {}).items()}

    @field_validator("hooks")
    @classmethod
    def _known_hooks(cls, v: dict[str, str]) -> dict[str, str]:
        unknown = set(v) - set(HOOK_EVENTS)
        if unknown:
            raise ValueError(f"Unknown hook event(s): {sorted(unknown)}")
        return v


def load_deployment_config(workspace: Path | str) -> DeploymentConfig:
    """Read ``branchoff.yaml`` from a deployment workspace.

    A workspace without the file gets an empty config (no start command, no
    hooks).
    """
    config_path = Path(workspace) / DEPLOYMENT_CONFIG_FILE
    if not config_path.exists():
        return DeploymentConfig()

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        return DeploymentConfig(**raw)
    except (yaml.YAMLError, ValidationError, TypeError) as exc:
        raise DeploymentConfigError(f"Invalid {config_path}: {exc}") from exc
