# ruff: noqa: B008, TC001
"""API endpoints for TOIL summaries, recalculation, usage and deletion."""

from __future__ import annotations

from fastapi import APIRouter, Query

from toil_ledger.api.deps import ToilDep
from toil_ledger.exceptions import InputError
from toil_ledger.schemas.ledger import MONTH_YEAR_PATTERN, Summary
from toil_ledger.schemas.timesheet import EntryDeleted, TimeEntry
from toil_ledger.schemas.toil import (
    DataDeletedResponse,
    DeletionResponse,
    MaintenanceResponse,
    RecalculateRequest,
    RecalculateResponse,
    RecordListResponse,
    UsageRecordedResponse,
)
from toil_ledger.services.maintenance import run_maintenance

# ---------------------------------------------------------------------------
# Per-user ledger: /users/{user_id}/toil
# ---------------------------------------------------------------------------

user_toil_router = APIRouter(
    prefix="/users/{user_id}/toil",
    tags=["toil"],
)


@user_toil_router.get("/summary", response_model=Summary)
async def get_summary(
    user_id: str,
    service: ToilDep,
    month_year: str = Query(pattern=MONTH_YEAR_PATTERN),
) -> Summary:
    """Accrued, used and remaining TOIL hours for one month."""
    return await service.get_summary(user_id, month_year)


@user_toil_router.get("/records", response_model=RecordListResponse)
async def list_records(
    user_id: str,
    service: ToilDep,
    month_year: str | None = Query(default=None, pattern=MONTH_YEAR_PATTERN),
) -> RecordListResponse:
    """Accrual and usage rows for a user, optionally for one month."""
    accruals, usages = await service.list_records(user_id, month_year)
    return RecordListResponse(user_id=user_id, month_year=month_year, accruals=accruals, usages=usages)


@user_toil_router.post("/recalculate", response_model=RecalculateResponse)
async def recalculate(
    user_id: str,
    payload: RecalculateRequest,
    service: ToilDep,
) -> RecalculateResponse:
    """Recalculate one day from its timesheet entries.

    ``summary`` is null when the recalculation failed; the caller should
    retry later rather than treat the balance as zero.
    """
    summary = await service.request_accrual_recalculation(
        user_id,
        payload.date,
        payload.entries,
        payload.schedule,
        payload.holidays,
    )
    return RecalculateResponse(summary=summary)


@user_toil_router.post("/usage", response_model=UsageRecordedResponse)
async def record_usage(
    user_id: str,
    entry: TimeEntry,
    service: ToilDep,
) -> UsageRecordedResponse:
    """Record a TOIL leave entry against the user's balance."""
    if entry.user_id != user_id:
        raise InputError(f"Entry belongs to user {entry.user_id!r}, not {user_id!r}")
    return UsageRecordedResponse(recorded=await service.record_usage(entry))


# ---------------------------------------------------------------------------
# Collaborator hooks and admin: /toil
# ---------------------------------------------------------------------------

toil_admin_router = APIRouter(
    prefix="/toil",
    tags=["toil"],
)


@toil_admin_router.post("/entries/deleted", response_model=DeletionResponse)
async def entry_deleted(
    payload: EntryDeleted,
    service: ToilDep,
) -> DeletionResponse:
    """Cascade an upstream timesheet entry deletion into the ledger.

    Idempotent: repeating the call for an entry with no remaining rows is a no-op.
    """
    result = await service.handle_entry_deleted(payload)
    return DeletionResponse(
        entry_id=result.entry_id,
        accrual_removed=result.accrual_removed,
        usage_removed=result.usage_removed,
        ok=result.ok,
    )


@toil_admin_router.delete("/data", response_model=DataDeletedResponse)
async def delete_data(
    service: ToilDep,
    user_id: str | None = Query(default=None, min_length=1),
) -> DataDeletedResponse:
    """Delete every ledger row for one user, or for all users when no user is given."""
    accruals, usages = await service.delete_all_toil_data(user_id)
    return DataDeletedResponse(user_id=user_id, accrual_removed=accruals, usage_removed=usages)


@toil_admin_router.post("/maintenance", response_model=MaintenanceResponse)
async def trigger_maintenance(service: ToilDep) -> MaintenanceResponse:
    """Run expiry, duplicate cleanup and tombstone reconciliation now."""
    result = await run_maintenance(service)
    return MaintenanceResponse(
        run_date=result.run_date,
        expiry_cutoff=result.expiry_cutoff,
        expired=result.expired,
        duplicates_removed=result.duplicates_removed,
        tombstones_reconciled=result.tombstones_reconciled,
        errors=result.errors,
    )
