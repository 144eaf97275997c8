"""Health check endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request, status
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from payroll_compute.api.dependencies import DbSession
from payroll_compute.models import PayComponent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    engine_version: str
    database: str
    pay_components: int | None = None


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
)
async def health_check(request: Request, db: DbSession) -> HealthResponse:
    """Report database reachability and how many pay components are configured."""
    components: int | None = None
    try:
        components = await db.scalar(select(func.count()).select_from(PayComponent))
    except SQLAlchemyError as e:
        logger.warning("Database health check failed: %s", e)

    healthy = components is not None
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        timestamp=datetime.now(timezone.utc),
        engine_version=request.app.state.settings.engine_version,
        database="healthy" if healthy else "unhealthy",
        pay_components=components,
    )


@router.get("/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> dict[str, str]:
    """Liveness check for container orchestration."""
    return {"status": "alive"}
