"""
Tree Chronicle Backend — Health Check Route
=============================================

What:  Health check endpoint for monitoring and container probes.
How:   Reports the store handle state and, when open, runs SELECT 1.
Who:   Called by Docker health checks and monitoring.

Status levels:
    - healthy:   Store open and answering queries (HTTP 200)
    - degraded:  Store closed for a backup import (HTTP 200, temporary)
    - unhealthy: Store open but queries fail (HTTP 503)

A closed store is only "degraded" because imports are user-initiated and
short-lived; restarting the container mid-import would be the worst outcome.
"""

import logging
import time

from fastapi import APIRouter, Response
from sqlalchemy import text

from tree_chronicle import __version__
from tree_chronicle.database import store
from tree_chronicle.exceptions import StoreUnavailableError
from tree_chronicle.schemas.backup import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(response: Response) -> HealthResponse:
    db_status = "connected"
    overall = "healthy"

    try:
        async with store.acquire():
            async with store.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
    except StoreUnavailableError:
        db_status = "unavailable"
        overall = "degraded"
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    if overall == "unhealthy":
        response.status_code = 503

    return HealthResponse(
        status=overall,
        version=__version__,
        store=store.state.value,
        database=db_status,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
