"""HTTP tests for the TOIL ledger API."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from httpx import ASGITransport, AsyncClient

from toil_ledger.main import create_app

if TYPE_CHECKING:
    from toil_ledger.config import Settings
    from toil_ledger.services.toil import TOILService

USER = "user-1"
BASE = f"/users/{USER}/toil"

SCHEDULE: dict[str, Any] = {
    "weeks": {
        str(week): {
            day: {"startTime": "08:00", "endTime": "16:30", "breaks": {"lunch": True}}
            for day in ("monday", "tuesday", "wednesday", "thursday", "friday")
        }
        for week in (1, 2)
    },
    "rdoDays": {"2": ["friday"]},
}


def _work(entry_id: str, day: str, hours: float) -> dict[str, Any]:
    return {"id": entry_id, "userId": USER, "date": day, "hours": hours, "jobCode": "ADMIN"}


def _leave(entry_id: str, day: str, hours: float) -> dict[str, Any]:
    return {"id": entry_id, "userId": USER, "date": day, "hours": hours, "jobCode": "TOIL", "synthetic": True}


async def _recalculate(client: AsyncClient, day: str, entries: list[dict[str, Any]], **extra: Any) -> dict[str, Any]:
    resp = await client.post(f"{BASE}/recalculate", json={"date": day, "entries": entries, **extra})
    assert resp.status_code == 200
    return resp.json()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


async def test_health_ok(async_client: AsyncClient) -> None:
    resp = await async_client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["queue_state"] == "IDLE"
    assert body["queue_pending"] == 0


async def test_service_not_running_returns_503(settings: Settings) -> None:
    app = create_app(settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.get("/health")
    assert resp.status_code == 503
    assert resp.json()["error"] == "AppError"


# ---------------------------------------------------------------------------
# Recalculation and summary
# ---------------------------------------------------------------------------


async def test_recalculate_working_day(async_client: AsyncClient) -> None:
    # 2025-01-07 is a Tuesday: 8h scheduled, 9h worked.
    body = await _recalculate(async_client, "2025-01-07", [_work("e1", "2025-01-07", 9.0)], schedule=SCHEDULE)

    assert body["summary"] == {
        "userId": USER,
        "monthYear": "2025-01",
        "accrued": 1.0,
        "used": 0.0,
        "remaining": 1.0,
    }


async def test_recalculate_holiday_and_rdo(async_client: AsyncClient) -> None:
    holiday = await _recalculate(
        async_client,
        "2025-01-08",
        [_work("e1", "2025-01-08", 4.0)],
        schedule=SCHEDULE,
        holidays=[{"date": "2025-01-08", "name": "Show Day"}],
    )
    assert holiday["summary"]["accrued"] == 4.0

    # 2025-01-10 is a Friday in fortnight week 2, listed as a rostered day off.
    rdo = await _recalculate(async_client, "2025-01-10", [_work("e2", "2025-01-10", 3.0)], schedule=SCHEDULE)
    assert rdo["summary"]["accrued"] == 7.0


async def test_get_summary(async_client: AsyncClient) -> None:
    await _recalculate(async_client, "2025-03-08", [_work("e1", "2025-03-08", 5.0)])

    resp = await async_client.get(f"{BASE}/summary", params={"month_year": "2025-03"})

    assert resp.status_code == 200
    assert resp.json()["accrued"] == 5.0


async def test_get_summary_rejects_bad_month(async_client: AsyncClient) -> None:
    resp = await async_client.get(f"{BASE}/summary", params={"month_year": "2025-3"})
    assert resp.status_code == 422
    assert resp.json()["error"] == "ValidationError"


async def test_recalculate_rejects_bad_body(async_client: AsyncClient) -> None:
    resp = await async_client.post(f"{BASE}/recalculate", json={"date": "not-a-date"})
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Usage and records
# ---------------------------------------------------------------------------


async def test_record_usage_and_list_records(async_client: AsyncClient) -> None:
    await _recalculate(async_client, "2025-03-08", [_work("e1", "2025-03-08", 5.0)])

    resp = await async_client.post(f"{BASE}/usage", json=_leave("leave-1", "2025-03-12", 2.0))
    assert resp.status_code == 200
    assert resp.json() == {"recorded": True}

    resp = await async_client.get(f"{BASE}/records", params={"month_year": "2025-03"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["monthYear"] == "2025-03"
    assert [(r["hours"], r["sourceEntryId"], r["status"]) for r in body["accruals"]] == [(5.0, "e1", "active")]
    assert [(u["hours"], u["entryId"]) for u in body["usages"]] == [(2.0, "leave-1")]

    summary = (await async_client.get(f"{BASE}/summary", params={"month_year": "2025-03"})).json()
    assert (summary["accrued"], summary["used"], summary["remaining"]) == (5.0, 2.0, 3.0)


async def test_record_non_toil_usage_is_not_recorded(async_client: AsyncClient) -> None:
    resp = await async_client.post(f"{BASE}/usage", json=_work("e1", "2025-03-12", 2.0))
    assert resp.status_code == 200
    assert resp.json() == {"recorded": False}


async def test_record_usage_for_another_user_is_rejected(async_client: AsyncClient) -> None:
    entry = _leave("leave-1", "2025-03-12", 2.0) | {"userId": "someone-else"}
    resp = await async_client.post(f"{BASE}/usage", json=entry)
    assert resp.status_code == 422
    assert resp.json()["error"] == "InputError"


# ---------------------------------------------------------------------------
# Deletion and maintenance
# ---------------------------------------------------------------------------


async def test_entry_deleted_hook(async_client: AsyncClient) -> None:
    await _recalculate(async_client, "2025-03-08", [_work("e1", "2025-03-08", 5.0)])

    resp = await async_client.post("/toil/entries/deleted", json={"entryId": "e1", "userId": USER})

    assert resp.status_code == 200
    assert resp.json() == {"entryId": "e1", "accrualRemoved": 1, "usageRemoved": 0, "ok": True}
    summary = (await async_client.get(f"{BASE}/summary", params={"month_year": "2025-03"})).json()
    assert summary["accrued"] == 0.0


async def test_entry_deleted_requires_entry_id(async_client: AsyncClient) -> None:
    resp = await async_client.post("/toil/entries/deleted", json={"entryId": ""})
    assert resp.status_code == 422


async def test_delete_data_for_user(async_client: AsyncClient, service: TOILService) -> None:
    await _recalculate(async_client, "2025-03-08", [_work("e1", "2025-03-08", 5.0)])
    await async_client.post(f"{BASE}/usage", json=_leave("leave-1", "2025-03-12", 2.0))

    resp = await async_client.delete("/toil/data", params={"user_id": USER})

    assert resp.status_code == 200
    assert resp.json() == {"userId": USER, "accrualRemoved": 1, "usageRemoved": 1}
    assert await service.repository.load_accrual() == []


async def test_trigger_maintenance(async_client: AsyncClient) -> None:
    resp = await async_client.post("/toil/maintenance")
    assert resp.status_code == 200
    body = resp.json()
    assert body["expired"] == 0
    assert body["errors"] == 0
    assert "expiryCutoff" in body
