"""Health check API route.

Unauthenticated. Answers 503 when the row store does not respond, so a
load balancer stops routing sync traffic to a server that cannot apply it.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from tasksync.core.config import SCHEMA_VERSION
from tasksync.core.timestamps import now_millis
from tasksync.server.api.deps import get_db
from tasksync.server.database import Database
from tasksync.server.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health_check(db: Database = Depends(get_db)) -> HealthResponse:
    """Report the server clock and schema version once the database answers."""
    if not db.ping():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        )
    return HealthResponse(status="ok", timestamp=now_millis(), schema_version=SCHEMA_VERSION)
