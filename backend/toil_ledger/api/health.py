import logging
from typing import Literal

from fastapi import APIRouter
from pydantic import BaseModel

from toil_ledger.api.deps import ToilDep
from toil_ledger.config import get_settings
from toil_ledger.models.enums import QueueState

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["ok", "degraded", "error"]
    version: str
    environment: str
    queue_state: QueueState
    queue_pending: int


@router.get("/health", response_model=HealthResponse)
async def health(service: ToilDep) -> HealthResponse:
    """Return the health status of the ledger service."""
    settings = get_settings()
    status: Literal["ok", "degraded", "error"] = "ok"

    if not service.started or not service.queue.is_ready:
        logger.warning("Health check: TOIL service not started")
        status = "degraded"

    return HealthResponse(
        status=status,
        version=settings.app_version,
        environment=settings.environment,
        queue_state=service.queue.state,
        queue_pending=service.queue.pending,
    )
