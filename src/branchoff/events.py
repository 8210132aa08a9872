"""Event Normalizer — maps GitHub webhook events onto pipeline dispatches.

Rules, in priority order:

1. The branch is the part of ``ref`` after the last ``/``; without a ref it
   falls back to ``repository.default_branch``.
2. ``ping`` is rejected (not enough information to act on).
3. ``create`` is accepted only for branches; the branch is ``ref`` verbatim.
4. ``push`` is reclassified: ``created`` → create, ``deleted`` → destroy,
   anything else → update.
5. A mapped event without uri or branch is rejected.

Every other event name is inert: ``normalize`` returns ``None``.
"""

from __future__ import annotations

import enum
import logging

from branchoff.models import Dispatch, PipelineKind

logger = logging.getLogger(__name__)


class EventRejected(ValueError):
    """The event cannot be turned into a pipeline dispatch."""


class WebhookEventKind(str, enum.Enum):
    """GitHub event names the normalizer distinguishes."""

    PING = "ping"
    CREATE = "create"
    PUSH = "push"
    OTHER = "other"

    @classmethod
    def parse(cls, name: str | None) -> WebhookEventKind:
        try:
            kind = cls(name)
        except ValueError:
            return cls.OTHER
        return kind


def branch_from_ref(ref: str | None) -> str | None:
    """``refs/heads/feature`` → ``feature``."""
    if not ref:
        return None
    return ref[ref.rfind("/") + 1 :] or None


def normalize(event_name: str | None, payload: dict) -> Dispatch | None:
    """Map a webhook event to a ``Dispatch``.

    Returns ``None`` for inert event kinds.

    Raises:
        EventRejected: For ping events, non-branch create events and events
            whose uri or branch cannot be determined.
    """
    repository = payload.get("repository") or {}
    uri = repository.get("html_url")
    branch = branch_from_ref(payload.get("ref")) or repository.get("default_branch")

    match WebhookEventKind.parse(event_name):
        case WebhookEventKind.PING:
            raise EventRejected("Ping event does not have enough information")
        case WebhookEventKind.CREATE:
            if payload.get("ref_type") != "branch":
                raise EventRejected(
                    f"Ignoring create event for ref_type {payload.get('ref_type')!r}"
                )
            branch = payload.get("ref")
            pipeline = PipelineKind.CREATE
        case WebhookEventKind.PUSH:
            if payload.get("created") is True:
                pipeline = PipelineKind.CREATE
            elif payload.get("deleted") is True:
                pipeline = PipelineKind.DESTROY
            else:
                pipeline = PipelineKind.UPDATE
        case WebhookEventKind.OTHER:
            logger.debug("Ignoring inert event: %s", event_name)
            return None

    if not uri or not branch:
        raise EventRejected("Unable to resolve uri and branch")

    return Dispatch(pipeline=pipeline, uri=uri, branch=branch)
