"""Pipeline State Machine — create, test, update, destroy and restore.

Each pipeline resolves its context up front and submits an ordered list of
steps to the ``DeferredQueue``. Pipeline methods are plain methods: they
submit and return immediately with a future for the ``PipelineResult``.
The last action a pipeline submits is always its completion step, which
invokes the caller's callback (if any) and resolves that future.

Branching::

    create:  test ─ fail → callback
                  └ pass → provision → notify(create) → start → callback
    test:    provision → notify(create) → start → notify(test)
                 → notify(pass|fail) + destroy(test ctx) → callback(exit code)
    update:  test ─ fail → callback
                  └ pass → provision → refresh → notify(update) → start → callback
    destroy: notify(destroy) → teardown → callback
    restore: load registry → per context: destroy (test) or
                 provision → notify(create) → start → callback

Within one invocation a failed step skips the remaining work steps; the
completion step always runs. Other invocations never see the failure.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from branchoff.deferred import DeferredQueue, StepFailure, StepSkipped
from branchoff.models import DeploymentContext, DeploymentMode, PipelineResult

if TYPE_CHECKING:
    from branchoff.notifier import Notifier
    from branchoff.registry import EcosystemRegistry
    from branchoff.resolver import ContextResolver
    from branchoff.supervisor import Supervisor

logger = logging.getLogger(__name__)

Completion = Callable[[Any], Awaitable[None] | None]


class HookFailed(StepFailure):
    """A lifecycle hook exited non-zero."""


class PipelineInvocation:
    """The ordered steps of one pipeline run over one context."""

    def __init__(self, queue: DeferredQueue, pipeline: str, ctx: DeploymentContext | None):
        self.queue = queue
        self.pipeline = pipeline
        self.ctx = ctx
        self.failed_step: str | None = None
        self.reason: str | None = None
        self.exit_code: int | None = None

    def label(self, name: str) -> str:
        return f"{self.pipeline}#{name}"

    def step(
        self, name: str, action: Callable[[], Awaitable[Any]], *, always: bool = False
    ) -> asyncio.Future:
        """Submit a work step.

        Unless ``always`` is set, the step is skipped when an earlier step of
        this invocation failed.
        """
        label = self.label(name)

        async def run() -> Any:
            if self.failed_step and not always:
                raise StepSkipped(f"{self.failed_step} failed")
            try:
                return await action()
            except BaseException:
                self.failed_step = self.failed_step or label
                raise

        return self.queue.submit(run, label)

    @property
    def ok(self) -> bool:
        return self.failed_step is None and self.reason is None

    def result(self) -> PipelineResult:
        reason = self.reason
        if reason is None and self.failed_step:
            reason = f"{self.failed_step} failed"
        return PipelineResult(
            pipeline=self.pipeline,
            context_id=self.ctx.id if self.ctx else None,
            ok=self.ok,
            reason=reason,
            exit_code=self.exit_code,
        )

    def finish(
        self,
        then: Completion | None = None,
        *,
        future: asyncio.Future | None = None,
        deliver: Callable[[PipelineResult], Any] | None = None,
    ) -> asyncio.Future[PipelineResult]:
        """Submit the completion step.

        Args:
            then: Caller callback; plain or coroutine function.
            future: Future to resolve with the ``PipelineResult``; created if
                not given.
            deliver: Maps the result to the callback argument (default: the
                result itself).
        """
        done = future or asyncio.get_running_loop().create_future()

        async def complete() -> PipelineResult:
            result = self.result()
            try:
                if then is not None:
                    outcome = then(deliver(result) if deliver else result)
                    if inspect.isawaitable(outcome):
                        await outcome
            finally:
                if not done.done():
                    done.set_result(result)
            return result

        self.queue.submit(complete, self.label("callback"))
        return done


class Pipelines:
    """The named lifecycle pipelines over injected collaborators."""

    def __init__(
        self,
        queue: DeferredQueue,
        resolver: ContextResolver,
        supervisor: Supervisor,
        notifier: Notifier,
        registry: EcosystemRegistry,
    ):
        self.queue = queue
        self.resolver = resolver
        self.supervisor = supervisor
        self.notifier = notifier
        self.registry = registry

    # ── Pipelines ────────────────────────────────────────────────────────

    def create(
        self,
        uri: str,
        branch: str,
        then: Completion | None = None,
        *,
        scale: int | str | None = None,
    ) -> asyncio.Future[PipelineResult]:
        """Test the branch, then deploy it if the tests pass."""
        ctx = self.resolver.resolve(uri, branch, scale=scale)
        done = asyncio.get_running_loop().create_future()

        def deploy(code: int | None) -> None:
            run = PipelineInvocation(self.queue, "create", ctx)
            if code != 0:
                run.exit_code = code
                run.reason = _test_failure_reason(code)
                logger.info(
                    "[create] Tests failed! Skipping deployment of %s (%s)", ctx.id, run.reason
                )
            else:
                run.exit_code = 0
                logger.info("[create] Tests passed! Deploying %s", ctx.id)
                run.step("provision", lambda: self._provision(ctx))
                run.step("notify:create", lambda: self._notify(ctx, "create"))
                run.step("start", lambda: self.supervisor.start(ctx))
            run.finish(then, future=done)

        self.test(uri, branch, deploy, scale=scale)
        return done

    def test(
        self,
        uri: str,
        branch: str,
        then: Completion | None = None,
        *,
        scale: int | str | None = None,
    ) -> asyncio.Future[PipelineResult]:
        """Deploy a transient test context, run its test hook, destroy it.

        ``then`` receives the test exit code, or ``None`` when a setup step
        failed and the tests never ran.
        """
        ctx = self.resolver.resolve(uri, branch, mode=DeploymentMode.TEST, scale=scale)
        done = asyncio.get_running_loop().create_future()
        logger.info("[test] %s (%s@%s)", ctx.id, ctx.uri, ctx.branch)

        run = PipelineInvocation(self.queue, "test", ctx)
        run.step("provision", lambda: self._provision(ctx))
        run.step("notify:create", lambda: self._notify(ctx, "create", [ctx.mode.value]))
        run.step("start", lambda: self.supervisor.start(ctx))

        async def run_tests() -> int | None:
            setup_failed = run.failed_step
            try:
                if setup_failed:
                    run.reason = f"test setup failed at {setup_failed}"
                    logger.warning("[test] Not running tests for %s: %s", ctx.id, run.reason)
                    return None

                hook = await self.notifier.notify(ctx, "test")
                run.exit_code = hook.exit_code
                logger.info("[test] %s exited with %d", ctx.id, hook.exit_code)
                if hook.exit_code != 0:
                    run.reason = _test_failure_reason(hook.exit_code)

                verdict = "pass" if hook.passed else "fail"
                try:
                    await self.notifier.notify(ctx, verdict, [hook.exit_code, hook.output])
                except Exception:
                    logger.exception("[test] %s hook errored for %s", verdict, ctx.id)
                return hook.exit_code
            finally:
                self.destroy(ctx.uri, ctx.branch, context=ctx)
                run.finish(then, future=done, deliver=lambda result: result.exit_code)

        run.step("notify:test", run_tests, always=True)
        return done

    def update(
        self,
        uri: str,
        branch: str,
        then: Completion | None = None,
        *,
        scale: int | str | None = None,
    ) -> asyncio.Future[PipelineResult]:
        """Test the branch, then pull and restart the live deployment."""
        ctx = self.resolver.resolve(uri, branch, scale=scale)
        done = asyncio.get_running_loop().create_future()

        def deploy(code: int | None) -> None:
            run = PipelineInvocation(self.queue, "update", ctx)
            if code != 0:
                run.exit_code = code
                run.reason = _test_failure_reason(code)
                logger.info(
                    "[update] Tests failed! Skipping deployment of %s (%s)", ctx.id, run.reason
                )
            else:
                run.exit_code = 0
                logger.info("[update] Tests passed! Deploying %s", ctx.id)
                run.step("provision", lambda: self._provision(ctx))
                run.step("refresh", lambda: self.supervisor.refresh(ctx))
                run.step("notify:update", lambda: self._notify(ctx, "update"))
                run.step("start", lambda: self.supervisor.start(ctx))
            run.finish(then, future=done)

        self.test(uri, branch, deploy, scale=scale)
        return done

    def destroy(
        self,
        uri: str,
        branch: str,
        then: Completion | None = None,
        *,
        mode: DeploymentMode | str | None = None,
        context: DeploymentContext | None = None,
    ) -> asyncio.Future[PipelineResult]:
        """Notify the deployment, then stop it and forget it.

        Teardown runs even if the destroy hook fails. ``context`` skips
        resolution for callers that already hold one (test and restore).
        """
        ctx = context or self.resolver.resolve(uri, branch, mode=mode)
        logger.info("[destroy] %s", ctx.id)

        run = PipelineInvocation(self.queue, "destroy", ctx)
        run.step("notify:destroy", lambda: self._notify(ctx, "destroy"))
        run.step("teardown", lambda: self._teardown(ctx), always=True)
        return run.finish(then)

    def restore(
        self, then: Completion | None = None, **opts: Any
    ) -> asyncio.Future[PipelineResult]:
        """Replay every deployment in the ecosystem registry.

        Stale test contexts are destroyed; every other context is
        provisioned, notified and started again. ``then`` runs once, after
        all replayed contexts. ``opts`` are accepted for callers but unused.
        """
        done = asyncio.get_running_loop().create_future()
        summary = PipelineInvocation(self.queue, "restore", None)
        if opts:
            logger.debug("[restore] ignoring options: %s", opts)

        async def load() -> int:
            replays: list[PipelineInvocation] = []
            purged = 0
            try:
                system = await self.registry.list_all()
                for context_id, ctx in system.items():
                    logger.info("[restore] jumpstart %s (mode=%s)", context_id, ctx.mode.value)
                    if ctx.is_test:
                        self.destroy(ctx.uri, ctx.branch, context=ctx)
                        purged += 1
                        continue
                    replay = PipelineInvocation(self.queue, "restore", ctx)
                    replay.step("provision", lambda ctx=ctx: self._provision(ctx))
                    replay.step("notify:create", lambda ctx=ctx: self._notify(ctx, "create"))
                    replay.step("start", lambda ctx=ctx: self.supervisor.start(ctx))
                    replays.append(replay)
                return len(system)
            finally:

                async def report(result: PipelineResult) -> None:
                    failed = [r.ctx.id for r in replays if not r.ok]
                    if failed:
                        result.ok = False
                        result.reason = f"failed to restore: {', '.join(failed)}"
                    logger.info(
                        "[restore] done: %d replayed, %d test context(s) purged, %d failed",
                        len(replays),
                        purged,
                        len(failed),
                    )
                    if then is not None:
                        outcome = then(result)
                        if inspect.isawaitable(outcome):
                            await outcome

                summary.finish(report, future=done)

        summary.step("load", load)
        return done

    # ── Steps ────────────────────────────────────────────────────────────

    async def _provision(self, ctx: DeploymentContext) -> None:
        await self.supervisor.provision(ctx)
        if not ctx.is_test:
            await self.registry.save(ctx)

    async def _notify(self, ctx: DeploymentContext, event: str, args: list | None = None) -> None:
        result = await self.notifier.notify(ctx, event, args)
        if result.exit_code != 0:
            raise HookFailed(f"{event} hook for {ctx.id} exited with {result.exit_code}")

    async def _teardown(self, ctx: DeploymentContext) -> None:
        await self.supervisor.teardown(ctx)
        await self.registry.remove(ctx.id)


def _test_failure_reason(code: int | None) -> str:
    if code is None:
        return "test setup failed"
    return f"tests failed with exit code {code}"
