"""Tests for lifecycle hook delivery."""

import asyncio
import json

import pytest

from branchoff.config import DeploymentConfigError
from branchoff.deferred import DeferredQueue, StepTimeout
from branchoff.models import DeploymentContext, DeploymentMode
from branchoff.notifier import HookNotifier


def _context(workspace, mode=DeploymentMode.NORMAL) -> DeploymentContext:
    return DeploymentContext(
        id="shop-feature-x-normal-0000abcd",
        uri="https://github.com/acme/shop",
        branch="feature-x",
        mode=mode,
        dir=str(workspace),
    )


def _hooks(workspace, **hooks):
    lines = ["hooks:"] + [f"  {event}: '{command}'" for event, command in hooks.items()]
    lines += ["env:", "  SHOP_GREETING: hello"]
    (workspace / "branchoff.yaml").write_text("\n".join(lines) + "\n")


@pytest.fixture
def notifier():
    return HookNotifier(timeout=5)


class TestHookNotifier:
    async def test_no_workspace_is_noop(self, notifier, tmp_path):
        result = await notifier.notify(_context(tmp_path / "missing"), "create")
        assert result.exit_code == 0
        assert result.output == ""

    async def test_undeclared_hook_is_noop(self, notifier, tmp_path):
        _hooks(tmp_path, test="exit 1")
        result = await notifier.notify(_context(tmp_path), "create")
        assert result.passed
        assert result.output == ""

    async def test_exit_code_and_output(self, notifier, tmp_path):
        _hooks(tmp_path, test="echo running tests; exit 3")
        result = await notifier.notify(_context(tmp_path), "test")
        assert result.exit_code == 3
        assert not result.passed
        assert "running tests" in result.output

    async def test_hook_environment(self, notifier, tmp_path):
        _hooks(tmp_path, fail='echo "$BRANCHOFF_EVENT $BRANCHOFF_BRANCH $SHOP_GREETING"; '
               'echo "$BRANCHOFF_ARGS"')
        ctx = _context(tmp_path)

        result = await notifier.notify(ctx, "fail", [1, "boom"])

        first, second = result.output.strip().splitlines()
        assert first == "fail feature-x hello"
        assert json.loads(second) == [1, "boom"]

    async def test_runs_in_workspace(self, notifier, tmp_path):
        _hooks(tmp_path, create="pwd")
        result = await notifier.notify(_context(tmp_path), "create")
        assert result.output.strip() == str(tmp_path.resolve())

    async def test_timeout(self, tmp_path):
        _hooks(tmp_path, test="sleep 5")
        result = await HookNotifier(timeout=0.1).notify(_context(tmp_path), "test")
        assert result.exit_code == 124

    async def test_invalid_config_raises(self, notifier, tmp_path):
        (tmp_path / "branchoff.yaml").write_text("hooks: [not, a, mapping]\n")
        with pytest.raises(DeploymentConfigError):
            await notifier.notify(_context(tmp_path), "create")


class TestStepCancellation:
    async def test_timed_out_step_kills_hook_and_its_children(self, notifier, tmp_path):
        _hooks(tmp_path, test='sh -c "sleep 1; touch marker"')
        ctx = _context(tmp_path)
        queue = DeferredQueue(step_timeout=0.2)
        await queue.start()
        try:
            result = await queue.submit(lambda: notifier.notify(ctx, "test"), "test#notify:test")
        finally:
            await queue.stop()

        assert not result.ok
        assert isinstance(result.error, StepTimeout)

        await asyncio.sleep(1.5)
        assert not (tmp_path / "marker").exists()
