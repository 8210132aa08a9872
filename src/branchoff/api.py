"""Request API — deploy/destroy endpoints and read-only views.

Endpoints:
    Requests:
    - POST /deploy   - create (or update, with ``update``) a branch deployment
    - POST /destroy  - destroy a branch deployment
    - GET  /deploy, /destroy - redirect to /

    Views:
    - GET  /              - service summary
    - GET|POST /ecosystem - registry snapshot
    - GET  /ecosystem/{id} - one registered deployment
    - GET  /activity      - deferred step history and queue state
    - GET  /logs          - in-memory log ring buffer
    - GET  /test          - liveness probe

Deploy and destroy only submit a pipeline and redirect to /ecosystem; they
never wait for the deployment. Pipeline failures show up in /activity and
/logs, not in the response. Bodies may be form-encoded or JSON.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING
from urllib.parse import parse_qs, unquote

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import RedirectResponse

from branchoff import __version__
from branchoff.models import DeploymentMode
from branchoff.resolver import ResolutionError

if TYPE_CHECKING:
    from branchoff.deferred import DeferredQueue
    from branchoff.log_buffer import LogBuffer
    from branchoff.pipelines import Pipelines
    from branchoff.registry import EcosystemRegistry

logger = logging.getLogger(__name__)

router = APIRouter()

# Module-level references (configured at startup)
_pipelines: Pipelines | None = None
_registry: EcosystemRegistry | None = None
_queue: DeferredQueue | None = None
_log_buffer: LogBuffer | None = None
_default_branch: str = "master"


def configure(
    pipelines: Pipelines,
    registry: EcosystemRegistry,
    queue: DeferredQueue,
    *,
    log_buffer: LogBuffer | None = None,
    default_branch: str = "master",
) -> None:
    """Configure the request router with its collaborators."""
    global _pipelines, _registry, _queue, _log_buffer, _default_branch
    _pipelines = pipelines
    _registry = registry
    _queue = queue
    _log_buffer = log_buffer
    _default_branch = default_branch
    logger.info("Request API configured (default branch=%s)", default_branch)


def _require_pipelines() -> Pipelines:
    if _pipelines is None:
        raise HTTPException(status_code=503, detail="Pipelines not ready")
    return _pipelines


async def _read_params(request: Request) -> dict[str, str]:
    """Decode a form-encoded or JSON request body into a flat dict."""
    body = await request.body()
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            data = json.loads(body or b"{}")
        except ValueError:
            raise HTTPException(status_code=400, detail="Malformed JSON body") from None
        if not isinstance(data, dict):
            raise HTTPException(status_code=400, detail="Expected a JSON object")
        return {k: v for k, v in data.items() if v is not None}

    parsed = parse_qs(body.decode(errors="replace"), keep_blank_values=True)
    return {k: v[-1] for k, v in parsed.items()}


def _uri_and_branch(params: dict) -> tuple[str, str]:
    uri = params.get("uri")
    branch = params.get("branch") or _default_branch
    if not uri or not branch:
        raise HTTPException(status_code=400, detail="Uri, branch not provided")
    return unquote(str(uri)), unquote(str(branch))


def _truthy(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


# ── Requests ──────────────────────────────────────────────────────────────────


@router.post("/deploy")
async def deploy(request: Request) -> RedirectResponse:
    """Start a create (or update) pipeline for a branch.

    ``mode=test`` runs the test pipeline alone, without deploying.
    """
    pipelines = _require_pipelines()
    params = await _read_params(request)
    uri, branch = _uri_and_branch(params)
    mode = params.get("mode") or None
    scale = params.get("scale") or None
    logger.info("/deploy %s", params)

    try:
        if mode == DeploymentMode.TEST.value:
            pipelines.test(uri, branch, scale=scale)
        elif _truthy(params.get("update")):
            pipelines.update(uri, branch, scale=scale)
        else:
            pipelines.create(uri, branch, scale=scale)
    except ResolutionError as exc:
        logger.warning("/deploy rejected: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from None

    return RedirectResponse("/ecosystem", status_code=303)


@router.post("/destroy")
async def destroy(request: Request) -> RedirectResponse:
    """Start a destroy pipeline for a branch."""
    pipelines = _require_pipelines()
    params = await _read_params(request)
    uri, branch = _uri_and_branch(params)
    logger.info("/destroy %s", params)

    try:
        pipelines.destroy(uri, branch, mode=params.get("mode") or None)
    except ResolutionError as exc:
        logger.warning("/destroy rejected: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from None

    return RedirectResponse("/ecosystem", status_code=303)


@router.get("/deploy", include_in_schema=False)
@router.get("/destroy", include_in_schema=False)
async def redirect_home() -> RedirectResponse:
    return RedirectResponse("/", status_code=303)


# ── Views ─────────────────────────────────────────────────────────────────────


@router.get("/")
async def index():
    deployments = len(await _registry.list_all()) if _registry else 0
    return {
        "name": "branchoff",
        "version": __version__,
        "deployments": deployments,
        "pending_steps": _queue.pending if _queue else 0,
    }


@router.get("/test")
async def test_probe():
    return {"ok": True}


@router.get("/ecosystem")
@router.post("/ecosystem")
async def ecosystem():
    """Snapshot of every registered deployment, keyed by context id."""
    if _registry is None:
        return {}
    system = await _registry.list_all()
    return {ctx_id: ctx.model_dump(mode="json") for ctx_id, ctx in system.items()}


@router.get("/ecosystem/{context_id}")
async def ecosystem_context(context_id: str):
    if _registry is None:
        raise HTTPException(status_code=503, detail="Registry not configured")
    ctx = await _registry.get(context_id)
    if ctx is None:
        raise HTTPException(status_code=404, detail=f"Deployment {context_id} not found")
    return ctx.model_dump(mode="json")


@router.get("/activity")
async def activity(limit: int = Query(default=100, ge=1, le=1000)):
    """Recent deferred steps, newest first."""
    if _queue is None:
        return {"current": None, "pending": 0, "steps": []}
    return {
        "current": _queue.current,
        "pending": _queue.pending,
        "steps": [step.to_dict() for step in _queue.history(limit)],
    }


@router.get("/logs")
async def logs(
    level: str | None = Query(default=None),
    name: str | None = Query(default=None),
    limit: int = Query(default=500, ge=1, le=5000),
):
    """Query the in-memory log ring buffer."""
    if _log_buffer is None:
        return {"logs": [], "count": 0, "buffer_size": 0, "buffer_capacity": 0}
    entries = _log_buffer.query(level=level, name=name, limit=limit)
    return {
        "logs": entries,
        "count": len(entries),
        "buffer_size": _log_buffer.size,
        "buffer_capacity": _log_buffer.maxlen,
    }
