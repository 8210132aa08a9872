"""Event Router — consumes GitHub deliveries and dispatches pipelines.

Runs as an async consumer loop. Handles:
- Webhook deduplication (X-GitHub-Delivery UUID)
- Event normalization (ping / create / push → create, update, destroy)
- Pipeline dispatch
- Periodic pruning of old delivery ids

Dispatching only submits steps to the deferred queue; the router never
waits for a deployment to finish.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from branchoff.events import EventRejected, normalize
from branchoff.models import Dispatch, GitHubEvent, PipelineKind, PipelineResult
from branchoff.resolver import ResolutionError

if TYPE_CHECKING:
    from branchoff.pipelines import Pipelines
    from branchoff.registry import EcosystemRegistry

logger = logging.getLogger(__name__)


class EventRouter:
    """Async consumer loop that turns webhook deliveries into pipelines."""

    def __init__(
        self,
        event_queue: asyncio.Queue[GitHubEvent],
        pipelines: Pipelines,
        registry: EcosystemRegistry,
        *,
        dedup_max_age_hours: int = 72,
        prune_interval: float = 3600,
    ):
        self.event_queue = event_queue
        self.pipelines = pipelines
        self.registry = registry
        self.dedup_max_age_hours = dedup_max_age_hours
        self.prune_interval = prune_interval
        self.last_event_time: float | None = None

        self._running = False
        self._task: asyncio.Task | None = None
        self._prune_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Prune stale delivery ids, then start the consumer and prune loops."""
        await self.prune_seen_events()
        self._running = True
        self._task = asyncio.create_task(self._consumer_loop(), name="event-router")
        self._prune_task = asyncio.create_task(self._prune_loop(), name="event-router-prune")
        logger.info("Event router started")

    async def stop(self) -> None:
        """Stop the event consumer loop."""
        self._running = False
        for task in (self._task, self._prune_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        logger.info("Event router stopped")

    async def _consumer_loop(self) -> None:
        """Main consumer loop — dequeue and route events."""
        while self._running:
            try:
                event = await asyncio.wait_for(self.event_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            try:
                await self._route_event(event)
            except Exception:
                logger.exception("Error routing event %s", event.delivery_id)

    async def prune_seen_events(self) -> int:
        pruned = await self.registry.prune_old_events(self.dedup_max_age_hours)
        if pruned:
            logger.info("Pruned %d old seen_events entries", pruned)
        return pruned

    async def _prune_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.prune_interval)
                await self.prune_seen_events()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Failed to prune seen_events")

    async def _route_event(self, event: GitHubEvent) -> asyncio.Future[PipelineResult] | None:
        """Route a single GitHub delivery. Returns the dispatched pipeline's future."""
        self.last_event_time = time.time()

        # 1. Webhook deduplication
        if await self.registry.has_seen_event(event.delivery_id):
            logger.debug("Duplicate event filtered: %s", event.delivery_id)
            return None
        await self.registry.mark_event_seen(event.delivery_id, event.event_type)

        # 2. Normalize
        try:
            dispatch = normalize(event.event_type, event.payload)
        except EventRejected as exc:
            logger.warning(
                "Rejected %s event (delivery=%s): %s", event.event_type, event.delivery_id, exc
            )
            return None
        if dispatch is None:
            return None

        logger.info(
            "postreceive: %s %s %s (delivery=%s, sender=%s)",
            dispatch.pipeline.value,
            dispatch.uri,
            dispatch.branch,
            event.delivery_id,
            event.sender,
        )

        # 3. Dispatch
        return self.dispatch(dispatch)

    def dispatch(self, dispatch: Dispatch) -> asyncio.Future[PipelineResult] | None:
        """Start the pipeline a dispatch names."""
        try:
            match dispatch.pipeline:
                case PipelineKind.CREATE:
                    return self.pipelines.create(dispatch.uri, dispatch.branch)
                case PipelineKind.UPDATE:
                    return self.pipelines.update(dispatch.uri, dispatch.branch)
                case PipelineKind.DESTROY:
                    return self.pipelines.destroy(dispatch.uri, dispatch.branch)
        except ResolutionError as exc:
            logger.warning(
                "Cannot %s %s@%s: %s",
                dispatch.pipeline.value,
                dispatch.uri,
                dispatch.branch,
                exc,
            )
        return None
