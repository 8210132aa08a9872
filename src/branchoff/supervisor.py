"""Workspace and process supervision for branch deployments.

``ProcessSupervisor`` owns three shared resources: workspace directories
(git clones under the workspace root), the port range, and the table of
running deployment processes. None of them is locked; callers must only
invoke the supervisor from inside a deferred step.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from branchoff.config import PortRangeConfig, load_deployment_config
from branchoff.deferred import StepFailure
from branchoff.models import DeploymentContext

logger = logging.getLogger(__name__)

# Seconds a process gets between SIGTERM and SIGKILL.
STOP_GRACE_PERIOD = 10


class SupervisorError(StepFailure):
    """A workspace or process operation failed."""


class Supervisor(Protocol):
    """What the pipelines need from workspace/process supervision."""

    async def provision(self, ctx: DeploymentContext) -> None: ...

    async def refresh(self, ctx: DeploymentContext) -> None: ...

    async def start(self, ctx: DeploymentContext) -> None: ...

    async def teardown(self, ctx: DeploymentContext) -> None: ...


def deployment_env(
    ctx: DeploymentContext,
    event: str,
    *,
    port: int | None = None,
    extra: dict[str, str] | None = None,
    args: list | None = None,
) -> dict[str, str]:
    """Environment handed to a deployment's processes and hooks."""
    env = dict(os.environ)
    env.update(extra or {})
    env.update(
        {
            "BRANCHOFF_ID": ctx.id,
            "BRANCHOFF_URI": ctx.uri,
            "BRANCHOFF_BRANCH": ctx.branch,
            "BRANCHOFF_MODE": ctx.mode.value,
            "BRANCHOFF_EVENT": event,
        }
    )
    if port is not None:
        env["PORT"] = str(port)
    if args is not None:
        env["BRANCHOFF_ARGS"] = json.dumps(args)
    return env


async def kill_process_group(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL a session-leader child and everything it spawned, then reap it."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    await proc.wait()


class PortAllocator:
    """Hands out ports from a fixed range, lowest free first."""

    def __init__(self, ports: PortRangeConfig):
        self.start = ports.start
        self.end = ports.end
        self._owners: dict[int, str] = {}

    def allocate(self, owner: str) -> int:
        for port in range(self.start, self.end):
            if port not in self._owners:
                self._owners[port] = owner
                return port
        raise SupervisorError(f"No free port in range {self.start}-{self.end} for {owner}")

    def release(self, port: int) -> None:
        self._owners.pop(port, None)

    def owned_by(self, owner: str) -> list[int]:
        return sorted(p for p, o in self._owners.items() if o == owner)

    @property
    def in_use(self) -> int:
        return len(self._owners)


@dataclass
class ManagedProcess:
    """One running instance of a deployment."""

    context_id: str
    instance: int
    port: int
    process: asyncio.subprocess.Process = field(repr=False)
    log_path: Path | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


class ProcessSupervisor:
    """Git workspaces plus supervised ``main`` processes for each context."""

    def __init__(
        self,
        ports: PortRangeConfig,
        *,
        git: str = "git",
        git_timeout: int = 300,
        shell: str = "/bin/sh",
        log_dir: Path | None = None,
    ):
        self.ports = PortAllocator(ports)
        self.git = git
        self.git_timeout = git_timeout
        self.shell = shell
        self.log_dir = log_dir
        self._processes: dict[str, list[ManagedProcess]] = {}

    # ── Workspace ────────────────────────────────────────────────────────

    async def provision(self, ctx: DeploymentContext) -> None:
        """Clone the branch into its workspace unless it is already there."""
        workspace = Path(ctx.dir)
        if ctx.is_local or (workspace / ".git").exists():
            logger.info("Workspace ready: %s", workspace)
            return

        if workspace.exists():
            logger.warning("Workspace %s exists without a git checkout — recloning", workspace)
            await asyncio.to_thread(shutil.rmtree, workspace, True)

        workspace.parent.mkdir(parents=True, exist_ok=True)
        await self._run_git(
            "clone", "--branch", ctx.branch, "--single-branch", ctx.uri, str(workspace),
            cwd=workspace.parent,
        )
        logger.info("Cloned %s@%s into %s", ctx.uri, ctx.branch, workspace)

    async def refresh(self, ctx: DeploymentContext) -> None:
        """Pull the latest commits into an existing workspace."""
        if ctx.is_local:
            logger.info("Not pulling local workspace %s", ctx.dir)
            return
        workspace = Path(ctx.dir)
        if not (workspace / ".git").exists():
            raise SupervisorError(f"Cannot refresh {ctx.id}: no checkout at {workspace}")
        await self._run_git("pull", "--ff-only", "origin", ctx.branch, cwd=workspace)
        logger.info("Pulled latest %s into %s", ctx.branch, workspace)

    async def _run_git(self, *args: str, cwd: Path) -> str:
        """Run git, raising ``SupervisorError`` on a non-zero exit or timeout."""
        proc = await asyncio.create_subprocess_exec(
            self.git,
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.git_timeout)
        except asyncio.TimeoutError:
            await kill_process_group(proc)
            raise SupervisorError(f"git {args[0]} timed out after {self.git_timeout}s") from None
        finally:
            # A cancelled step must not leave git writing to the workspace.
            if proc.returncode is None:
                await kill_process_group(proc)
        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()
            raise SupervisorError(f"git {args[0]} failed ({proc.returncode}): {detail}")
        return stdout.decode(errors="replace")

    # ── Processes ────────────────────────────────────────────────────────

    def processes(self, context_id: str) -> list[ManagedProcess]:
        return list(self._processes.get(context_id, []))

    async def start(self, ctx: DeploymentContext) -> None:
        """(Re)start ``scale`` instances of the deployment's ``main`` command.

        A deployment without a ``main`` command is left stopped; it can still
        be tested through its hooks.
        """
        await self.stop(ctx)

        config = load_deployment_config(ctx.dir)
        if not config.main:
            logger.warning("No main command declared for %s — nothing to start", ctx.id)
            return

        instances: list[ManagedProcess] = []
        try:
            for instance in range(ctx.scale or 1):
                port = self.ports.allocate(ctx.id)
                instances.append(await self._spawn(ctx, config.main, config.env, instance, port))
        except Exception:
            self._processes[ctx.id] = instances
            await self.stop(ctx)
            raise

        self._processes[ctx.id] = instances
        logger.info(
            "Started %s: %d instance(s) on port(s) %s",
            ctx.id,
            len(instances),
            ", ".join(str(p.port) for p in instances),
        )

    async def _spawn(
        self,
        ctx: DeploymentContext,
        command: str,
        extra_env: dict[str, str],
        instance: int,
        port: int,
    ) -> ManagedProcess:
        log_path = None
        stdout = asyncio.subprocess.DEVNULL
        try:
            if self.log_dir:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                log_path = self.log_dir / f"{ctx.id}-{instance}.log"
                stdout = open(log_path, "ab")

            process = await asyncio.create_subprocess_exec(
                self.shell,
                "-c",
                command,
                cwd=ctx.dir,
                env=deployment_env(ctx, "start", port=port, extra=extra_env),
                stdout=stdout,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            self.ports.release(port)
            raise SupervisorError(f"Failed to start {ctx.id}: {exc}") from exc
        finally:
            if stdout is not asyncio.subprocess.DEVNULL:
                stdout.close()

        return ManagedProcess(
            context_id=ctx.id, instance=instance, port=port, process=process, log_path=log_path
        )

    async def stop(self, ctx: DeploymentContext) -> None:
        """Terminate every running instance of a context and free its ports."""
        for managed in self._processes.pop(ctx.id, []):
            await self._terminate(managed)
            self.ports.release(managed.port)

    async def _terminate(self, managed: ManagedProcess) -> None:
        if not managed.alive:
            return
        try:
            os.killpg(managed.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(managed.process.wait(), timeout=STOP_GRACE_PERIOD)
        except asyncio.TimeoutError:
            logger.warning(
                "Process %d of %s ignored SIGTERM — killing", managed.pid, managed.context_id
            )
            try:
                os.killpg(managed.pid, signal.SIGKILL)
            except ProcessLookupError:
                return
            await managed.process.wait()
        logger.info(
            "Stopped %s instance %d (pid=%d)", managed.context_id, managed.instance, managed.pid
        )

    async def teardown(self, ctx: DeploymentContext) -> None:
        """Stop the deployment and delete its workspace.

        Local workspaces belong to the user and are left in place.
        """
        await self.stop(ctx)
        if ctx.is_local:
            return
        workspace = Path(ctx.dir)
        if workspace.exists():
            await asyncio.to_thread(shutil.rmtree, workspace)
            logger.info("Removed workspace %s", workspace)

    async def shutdown(self) -> None:
        """Stop all supervised processes (server shutdown)."""
        for context_id in list(self._processes):
            for managed in self._processes.pop(context_id):
                await self._terminate(managed)
                self.ports.release(managed.port)
