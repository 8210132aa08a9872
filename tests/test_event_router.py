"""Tests for the event router (dedup, normalization, dispatch)."""

import asyncio
from unittest.mock import MagicMock

import pytest

from branchoff.event_router import EventRouter
from branchoff.models import Dispatch, GitHubEvent, PipelineKind
from branchoff.resolver import ResolutionError

REPO = {"html_url": "https://github.com/acme/shop", "default_branch": "master"}


@pytest.fixture
def pipelines():
    mock = MagicMock()
    mock.create = MagicMock(return_value="create-future")
    mock.update = MagicMock(return_value="update-future")
    mock.destroy = MagicMock(return_value="destroy-future")
    return mock


@pytest.fixture
def router(registry, pipelines):
    return EventRouter(event_queue=asyncio.Queue(), pipelines=pipelines, registry=registry)


def _event(event_type="push", delivery_id="d-1", **payload):
    payload.setdefault("ref", "refs/heads/feature-x")
    payload.setdefault("repository", REPO)
    payload.setdefault("sender", {"login": "alice"})
    return GitHubEvent(delivery_id=delivery_id, event_type=event_type, payload=payload)


class TestRouting:
    async def test_push_dispatches_update(self, router, pipelines):
        result = await router._route_event(_event())
        assert result == "update-future"
        pipelines.update.assert_called_once_with(REPO["html_url"], "feature-x")
        assert router.last_event_time is not None

    async def test_deleted_push_dispatches_destroy(self, router, pipelines):
        await router._route_event(_event(deleted=True))
        pipelines.destroy.assert_called_once_with(REPO["html_url"], "feature-x")

    async def test_branch_create_dispatches_create(self, router, pipelines):
        await router._route_event(_event("create", ref="feature-y", ref_type="branch"))
        pipelines.create.assert_called_once_with(REPO["html_url"], "feature-y")

    async def test_ping_dispatches_nothing(self, router, pipelines):
        assert await router._route_event(_event("ping")) is None
        pipelines.create.assert_not_called()
        pipelines.update.assert_not_called()
        pipelines.destroy.assert_not_called()

    async def test_inert_event_dispatches_nothing(self, router, pipelines):
        assert await router._route_event(_event("issues")) is None
        pipelines.update.assert_not_called()


class TestDeduplication:
    async def test_duplicate_delivery_dispatches_once(self, router, pipelines, registry):
        await router._route_event(_event(delivery_id="same"))
        await router._route_event(_event(delivery_id="same"))

        assert pipelines.update.call_count == 1
        assert await registry.has_seen_event("same")

    async def test_distinct_deliveries_both_dispatch(self, router, pipelines):
        await router._route_event(_event(delivery_id="one"))
        await router._route_event(_event(delivery_id="two"))
        assert pipelines.update.call_count == 2


class TestDispatch:
    async def test_resolution_error_is_swallowed(self, router, pipelines):
        pipelines.create.side_effect = ResolutionError("Unresolved uri")
        dispatch = Dispatch(pipeline=PipelineKind.CREATE, uri="x", branch="y")
        assert router.dispatch(dispatch) is None


class TestConsumerLoop:
    async def test_loop_consumes_queue(self, router, pipelines):
        await router.start()
        try:
            await router.event_queue.put(_event())
            for _ in range(100):
                if pipelines.update.called:
                    break
                await asyncio.sleep(0.01)
        finally:
            await router.stop()

        pipelines.update.assert_called_once()

    async def test_start_prunes_old_deliveries(self, router, registry):
        await registry.db.execute(
            "INSERT INTO seen_events (delivery_id, event_type, received_at) "
            "VALUES ('ancient', 'push', '2024-01-01T00:00:00+00:00')"
        )
        await registry.db.commit()

        await router.start()
        await router.stop()

        assert not await registry.has_seen_event("ancient")
