"""Shared fixtures for branchoff tests."""

import pytest_asyncio

from branchoff.deferred import DeferredQueue
from branchoff.registry import EcosystemRegistry


@pytest_asyncio.fixture
async def registry(tmp_path):
    """Create a fresh ecosystem registry for each test."""
    reg = EcosystemRegistry(str(tmp_path / "ecosystem.db"))
    await reg.initialize()
    yield reg
    await reg.close()


@pytest_asyncio.fixture
async def queue():
    """A started deferred queue, stopped after the test."""
    q = DeferredQueue(step_timeout=5)
    await q.start()
    yield q
    await q.stop()
