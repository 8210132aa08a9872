"""Tests for the deferred execution queue."""

import asyncio

import pytest

from branchoff.deferred import DeferredQueue, StepSkipped, StepTimeout


class TestOrdering:
    async def test_steps_run_in_submission_order(self, queue):
        ran = []

        def record(name):
            async def action():
                ran.append(name)
                return name

            return action

        futures = [queue.submit(record(n), n) for n in ("a", "b", "c")]
        results = await asyncio.gather(*futures)

        assert ran == ["a", "b", "c"]
        assert [r.value for r in results] == ["a", "b", "c"]
        assert all(r.ok for r in results)

    async def test_at_most_one_step_runs(self, queue):
        active = 0
        peak = 0

        async def slow():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        await asyncio.gather(*(queue.submit(slow, f"slow-{i}") for i in range(5)))
        assert peak == 1

    async def test_submit_does_not_run_inline(self, queue):
        ran = []

        async def action():
            ran.append(True)

        future = queue.submit(action, "later")
        assert ran == []
        await future
        assert ran == [True]

    async def test_step_submitted_from_step_runs_after_queued_ones(self, queue):
        ran = []

        async def inner():
            ran.append("inner")

        async def outer():
            ran.append("outer")
            queue.submit(inner, "inner")

        async def second():
            ran.append("second")

        queue.submit(outer, "outer")
        queue.submit(second, "second")
        await queue.join()

        assert ran == ["outer", "second", "inner"]


class TestFailures:
    async def test_failed_step_does_not_stop_queue(self, queue):
        async def boom():
            raise RuntimeError("boom")

        async def fine():
            return 42

        failed = queue.submit(boom, "boom")
        after = queue.submit(fine, "fine")

        failed_result = await failed
        assert not failed_result.ok
        assert isinstance(failed_result.error, RuntimeError)
        assert failed_result.status == "failed"

        assert (await after).value == 42

    async def test_skipped_step(self, queue):
        async def skip():
            raise StepSkipped("earlier step failed")

        result = await queue.submit(skip, "skip")
        assert result.skipped
        assert not result.ok
        assert result.status == "skipped"

    async def test_step_timeout(self):
        q = DeferredQueue(step_timeout=0.05)
        await q.start()
        try:

            async def hang():
                await asyncio.sleep(10)

            async def fine():
                return "next"

            hung = q.submit(hang, "hang")
            after = q.submit(fine, "fine")

            result = await hung
            assert not result.ok
            assert isinstance(result.error, StepTimeout)
            assert (await after).value == "next"
        finally:
            await q.stop()

    @pytest.mark.parametrize("timeout", [0, None])
    def test_zero_timeout_disables_limit(self, timeout):
        assert DeferredQueue(step_timeout=timeout).step_timeout is None


class TestObservability:
    async def test_history_newest_first(self, queue):
        async def noop():
            return None

        await queue.submit(noop, "first")
        await queue.submit(noop, "second")

        history = queue.history()
        assert [r.label for r in history[:2]] == ["second", "first"]
        assert queue.history(1)[0].label == "second"

        entry = history[0].to_dict()
        assert entry["status"] == "ok"
        assert entry["error"] is None
        assert entry["started_at"] is not None

    async def test_current_and_pending(self, queue):
        seen = {}
        release = asyncio.Event()

        async def blocker():
            seen["current"] = queue.current
            await release.wait()

        async def noop():
            return None

        first = queue.submit(blocker, "blocker")
        queue.submit(noop, "waiting")
        await asyncio.sleep(0.01)

        assert seen["current"] == "blocker"
        assert queue.pending == 1

        release.set()
        await first
        await queue.join()
        assert queue.current is None
        assert queue.pending == 0

