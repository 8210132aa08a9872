"""Lifecycle hook delivery.

A deployment declares hooks in its ``branchoff.yaml``; ``HookNotifier``
runs the command for an event (``create``, ``test``, ``update``,
``destroy``, ``pass``, ``fail``) inside the deployment's workspace and
returns its exit code and combined output. Events without a hook, or
contexts without a workspace, are a no-op that reports success.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol

from branchoff.config import load_deployment_config
from branchoff.models import DeploymentContext, HookResult
from branchoff.supervisor import deployment_env, kill_process_group

logger = logging.getLogger(__name__)

# Output kept from a hook run; the rest is dropped from the front.
MAX_HOOK_OUTPUT = 64 * 1024


class Notifier(Protocol):
    async def notify(
        self, ctx: DeploymentContext, event: str, args: list | None = None
    ) -> HookResult: ...


class HookNotifier:
    """Run deployment-declared shell hooks."""

    def __init__(self, *, timeout: int = 600, shell: str = "/bin/sh"):
        self.timeout = timeout
        self.shell = shell

    async def notify(
        self, ctx: DeploymentContext, event: str, args: list | None = None
    ) -> HookResult:
        workspace = Path(ctx.dir)
        if not workspace.is_dir():
            logger.debug("No workspace for %s — skipping %s hook", ctx.id, event)
            return HookResult()

        config = load_deployment_config(workspace)
        command = config.hooks.get(event)
        if not command:
            logger.debug("No %s hook declared for %s", event, ctx.id)
            return HookResult()

        logger.info("Running %s hook for %s: %s", event, ctx.id, command)
        proc = await asyncio.create_subprocess_exec(
            self.shell,
            "-c",
            command,
            cwd=str(workspace),
            env=deployment_env(ctx, event, extra=config.env, args=args or []),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await kill_process_group(proc)
            logger.error("%s hook for %s timed out after %ss", event, ctx.id, self.timeout)
            return HookResult(exit_code=124, output=f"{event} hook timed out after {self.timeout}s")
        finally:
            # Also reached when the enclosing step is cancelled.
            if proc.returncode is None:
                await kill_process_group(proc)

        output = stdout.decode(errors="replace")[-MAX_HOOK_OUTPUT:]
        result = HookResult(exit_code=proc.returncode or 0, output=output)
        logger.info("%s hook for %s exited with %d", event, ctx.id, result.exit_code)
        return result
