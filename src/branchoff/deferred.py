"""Deferred Execution Queue — the process-wide serial step runner.

Every lifecycle step (provision, notify, start, teardown, callbacks) is
submitted here and executed by a single consumer task, one at a time, in
FIFO order of submission. Workspaces, ports, supervised processes and the
ecosystem registry are only ever touched from inside a step, so this queue
is the sole mutual-exclusion mechanism for them.

A step that raises (or exceeds the step timeout) is logged with its label
and reported as a failed ``StepResult``; the worker moves on to the next
entry regardless of which pipeline submitted it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

StepAction = Callable[[], Awaitable[Any]]


class StepFailure(RuntimeError):
    """A deferred step's action failed."""


class StepTimeout(StepFailure):
    """A deferred step did not finish within the step timeout."""


class StepSkipped(StepFailure):
    """A step was not run because an earlier step of its pipeline failed."""


@dataclass
class StepResult:
    """Completion signal of one deferred step."""

    label: str
    ok: bool
    value: Any = None
    error: BaseException | None = None
    skipped: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration: float = 0.0

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        return "ok" if self.ok else "failed"

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "status": self.status,
            "error": str(self.error) if self.error else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration": round(self.duration, 3),
        }


@dataclass
class _Entry:
    label: str
    action: StepAction
    future: asyncio.Future = field(repr=False)


class DeferredQueue:
    """Strictly serial async work queue with one consumer task.

    Args:
        step_timeout: Seconds a single step may run before it is cancelled and
            reported as ``StepTimeout``. ``None`` or ``0`` disables the limit.
        history: Number of finished steps kept for the activity view.
    """

    def __init__(self, step_timeout: float | None = None, history: int = 500):
        self.step_timeout = step_timeout or None
        self._queue: asyncio.Queue[_Entry] = asyncio.Queue()
        self._history: deque[StepResult] = deque(maxlen=history)
        self._current: str | None = None
        self._task: asyncio.Task | None = None

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the consumer task."""
        if self.running:
            return
        self._task = asyncio.create_task(self._worker(), name="deferred-queue")
        logger.info("Deferred queue started (step_timeout=%s)", self.step_timeout)

    async def stop(self) -> None:
        """Stop the consumer task. Pending steps stay unexecuted."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        pending = self._queue.qsize()
        if pending:
            logger.warning("Deferred queue stopped with %d pending step(s)", pending)
        logger.info("Deferred queue stopped")

    async def join(self) -> None:
        """Wait until every step submitted so far, and any they submit, has run."""
        await self._queue.join()

    # ── Submission ───────────────────────────────────────────────────────

    def submit(self, action: StepAction, label: str) -> asyncio.Future[StepResult]:
        """Enqueue ``action`` and return a future for its ``StepResult``.

        Never blocks and never runs the step inline; must be called from
        inside the running event loop.
        """
        future: asyncio.Future[StepResult] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Entry(label=label, action=action, future=future))
        logger.debug("Deferred %s (pending=%d)", label, self._queue.qsize())
        return future

    # ── Observability ────────────────────────────────────────────────────

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def current(self) -> str | None:
        """Label of the step currently executing, if any."""
        return self._current

    def history(self, limit: int | None = None) -> list[StepResult]:
        """Most recent finished steps, newest first."""
        items = list(reversed(self._history))
        return items[:limit] if limit else items

    # ── Worker ───────────────────────────────────────────────────────────

    async def _worker(self) -> None:
        """Consumer loop — pull the head, run it to completion, repeat."""
        while True:
            try:
                entry = await self._queue.get()
            except asyncio.CancelledError:
                break

            try:
                result = await self._execute(entry)
                self._history.append(result)
                if not entry.future.done():
                    entry.future.set_result(result)
            finally:
                self._current = None
                self._queue.task_done()

    async def _execute(self, entry: _Entry) -> StepResult:
        self._current = entry.label
        started_at = datetime.now(timezone.utc)
        t0 = time.monotonic()
        logger.info("Step started: %s", entry.label)

        value: Any = None
        error: BaseException | None = None
        skipped = False

        async def run() -> Any:
            return await entry.action()

        task = asyncio.ensure_future(run())
        try:
            done, _ = await asyncio.wait({task}, timeout=self.step_timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            try:
                value = task.result()
            except StepSkipped as exc:
                skipped = True
                error = exc
                logger.info("Step skipped: %s (%s)", entry.label, exc)
            except Exception as exc:
                error = exc
                logger.exception("Step failed: %s", entry.label)
        else:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            error = StepTimeout(f"{entry.label} timed out after {self.step_timeout}s")
            logger.error("Step timed out: %s (after %ss)", entry.label, self.step_timeout)

        duration = time.monotonic() - t0
        if error is None:
            logger.info("Step finished: %s (%.2fs)", entry.label, duration)

        return StepResult(
            label=entry.label,
            ok=error is None,
            value=value,
            error=error,
            skipped=skipped,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            duration=duration,
        )
