# ruff: noqa: TC001
from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request, status

from toil_ledger.exceptions import AppError
from toil_ledger.services.toil import TOILService


async def get_toil_service(request: Request) -> TOILService:
    """Return the process-wide TOIL service started by the lifespan."""
    service = getattr(request.app.state, "toil", None)
    if service is None:
        raise AppError("TOIL service is not running", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return service


ToilDep = Annotated[TOILService, Depends(get_toil_service)]
