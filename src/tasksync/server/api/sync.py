"""Sync API routes: push local changes, pull remote changes.

Clients run a cycle as push-then-pull:
1. POST /api/sync/push with the pending changes
2. POST /api/sync/pull with the stored watermark (``lastPulledAt``)
3. Store the returned ``timestamp`` as the new watermark
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from tasksync.core.timestamps import from_millis, now_millis
from tasksync.server.api.deps import get_current_user, get_db
from tasksync.server.database import Database
from tasksync.server.extractor import ChangeExtractor
from tasksync.server.reconciler import PushReconciler
from tasksync.server.schemas import PullRequest, PullResponse, PushRequest, PushResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("/push", response_model=PushResponse, response_model_exclude_none=True)
def push_changes(
    request: PushRequest,
    db: Database = Depends(get_db),
    user_id: str = Depends(get_current_user),
) -> PushResponse:
    """Apply a batch of client changes.

    Each change is applied on its own; a rejected change does not fail the
    request. Rejected ids are listed in ``experimentalRejectedIds``.
    """
    result = PushReconciler(db).apply_changes(user_id, request.changes)
    if not result.rejected_ids:
        return PushResponse()
    return PushResponse(experimental_rejected_ids=result.rejected_ids)


@router.post("/pull", response_model=PullResponse)
def pull_changes(
    request: PullRequest,
    db: Database = Depends(get_db),
    user_id: str = Depends(get_current_user),
) -> PullResponse:
    """Get the changes visible to the caller since their watermark.

    The returned timestamp is read from the server clock before extraction,
    so a row written during extraction is picked up by the next pull.
    """
    if request.migration is not None:
        logger.info(
            "Client %s announced migration %d -> %d (schema %d)",
            user_id,
            request.migration.from_version,
            request.migration.to_version,
            request.schema_version,
        )

    timestamp = now_millis()
    changes = ChangeExtractor(db).extract_changes(user_id, from_millis(request.last_pulled_at))
    return PullResponse(changes=changes, timestamp=timestamp)
