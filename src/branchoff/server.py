"""branchoff server — FastAPI application that ties all components together.

Startup sequence:
1. Create the data directory and open the ecosystem registry
2. Attach the ring-buffer log handler
3. Build the deferred queue, supervisor, notifier and pipelines
4. Wire the webhook and request routers
5. Start the deferred queue and the event router
6. Submit the restore pipeline (replays every registered deployment)

Shutdown:
1. Stop the event router
2. Stop the deferred queue (pending steps are dropped)
3. Stop supervised processes
4. Close the registry
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from branchoff import __version__
from branchoff.api import configure as configure_api
from branchoff.api import router as api_router
from branchoff.config import BranchoffConfig
from branchoff.deferred import DeferredQueue
from branchoff.event_router import EventRouter
from branchoff.log_buffer import LogBuffer, RingBufferHandler
from branchoff.models import GitHubEvent, PipelineResult
from branchoff.notifier import HookNotifier
from branchoff.pipelines import Pipelines
from branchoff.registry import EcosystemRegistry
from branchoff.resolver import ContextResolver
from branchoff.supervisor import ProcessSupervisor
from branchoff.webhook import configure as configure_webhook
from branchoff.webhook import router as webhook_router

logger = logging.getLogger(__name__)


class BranchoffServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, config: BranchoffConfig | None = None):
        self.config = config or BranchoffConfig()

        # Components (initialized in start())
        self.registry: EcosystemRegistry | None = None
        self.queue: DeferredQueue | None = None
        self.supervisor: ProcessSupervisor | None = None
        self.pipelines: Pipelines | None = None
        self.event_queue: asyncio.Queue[GitHubEvent] | None = None
        self.router: EventRouter | None = None
        self.log_buffer: LogBuffer = LogBuffer(maxlen=20_000)
        self._log_handler: RingBufferHandler | None = None
        self.restored: asyncio.Future[PipelineResult] | None = None

    async def start(self) -> None:
        """Initialize all components and start background loops."""
        config = self.config
        logger.info("branchoff server starting (data_dir=%s)", config.data_dir)

        # 1. Registry (container-local disk)
        data_dir = Path(config.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        config.workspace_root.mkdir(parents=True, exist_ok=True)
        self.registry = EcosystemRegistry(str(config.registry_path))
        await self.registry.initialize()

        # 2. Ring-buffer log handler for GET /logs
        self._log_handler = RingBufferHandler(self.log_buffer)
        logging.getLogger().addHandler(self._log_handler)

        # 3. Core
        self.queue = DeferredQueue(
            step_timeout=config.queue.step_timeout, history=config.queue.history
        )
        self.supervisor = ProcessSupervisor(
            config.ports,
            git=config.workspace.git,
            git_timeout=config.workspace.git_timeout,
            shell=config.hooks.shell,
            log_dir=data_dir / "logs",
        )
        self.pipelines = Pipelines(
            queue=self.queue,
            resolver=ContextResolver(config.workspace_root),
            supervisor=self.supervisor,
            notifier=HookNotifier(timeout=config.hooks.timeout, shell=config.hooks.shell),
            registry=self.registry,
        )

        # 4. Routers
        self.event_queue = asyncio.Queue(maxsize=1000)
        self.router = EventRouter(
            event_queue=self.event_queue,
            pipelines=self.pipelines,
            registry=self.registry,
            dedup_max_age_hours=config.webhook.dedup_max_age_hours,
        )
        configure_webhook(
            self.event_queue,
            webhook_secret=config.webhook.secret,
            rate_limit_max=config.webhook.rate_limit_max,
        )
        configure_api(
            self.pipelines,
            self.registry,
            self.queue,
            log_buffer=self.log_buffer,
            default_branch=config.defaults.branch,
        )

        # 5. Background loops
        await self.queue.start()
        await self.router.start()

        # 6. Replay known deployments
        self.restored = self.pipelines.restore(then=self._log_restore)

        logger.info("branchoff server started (ports %d-%d)", config.ports.start, config.ports.end)

    async def stop(self) -> None:
        """Graceful shutdown — stop all components."""
        logger.info("branchoff server shutting down")

        if self.router:
            await self.router.stop()
        if self.queue:
            await self.queue.stop()
        if self.supervisor:
            await self.supervisor.shutdown()
        if self.registry:
            await self.registry.close()
        if self._log_handler:
            logging.getLogger().removeHandler(self._log_handler)
            self._log_handler = None

        logger.info("branchoff server stopped")

    @staticmethod
    def _log_restore(result: PipelineResult) -> None:
        if result.ok:
            logger.info("Restore complete")
        else:
            logger.warning("Restore finished with errors: %s", result.reason)


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = BranchoffServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(config: BranchoffConfig | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = BranchoffServer(config)

    app = FastAPI(
        title="branchoff",
        version=__version__,
        description="Ephemeral per-branch deployments driven by GitHub webhooks",
        lifespan=lifespan,
    )

    app.include_router(webhook_router)
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with operational metrics."""
        deployments = 0
        if _server.registry:
            deployments = len(await _server.registry.list_all())

        return {
            "status": "ok",
            "deployments": deployments,
            "queue_depth": _server.queue.pending if _server.queue else 0,
            "current_step": _server.queue.current if _server.queue else None,
            "event_queue_depth": _server.event_queue.qsize() if _server.event_queue else 0,
            "last_event_time": _server.router.last_event_time if _server.router else None,
            "ports_in_use": _server.supervisor.ports.in_use if _server.supervisor else 0,
        }

    return app
