"""
Unit tests for the tenant isolation guard.

Run: pytest backend/tests/test_tenant_guard.py -v
"""
from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError

from conftest import TENANT_A, TENANT_B
from engine.tenant_guard import TenantGuard, validate_tenant_id
from shared.errors import TenantIsolationError

SCOPED_QUERY = "SELECT g.id, l.tenant_id FROM games g JOIN leagues l ON true WHERE l.tenant_id = :tenant_id"


def _attempts(violation_type: str) -> float:
    return REGISTRY.get_sample_value(
        "sb_cross_tenant_access_attempts_total", {"violation_type": violation_type}
    ) or 0.0


def _session(rows: list[dict[str, Any]] | None = None, returns_rows: bool = True) -> MagicMock:
    result = MagicMock()
    result.returns_rows = returns_rows
    result.mappings.return_value.all.return_value = rows or []
    session = MagicMock()
    session.execute = AsyncMock(return_value=result)
    return session


# ── validate_tenant_id ──────────────────────────────────────────────────

def test_validate_tenant_id_accepts_uuid() -> None:
    assert validate_tenant_id(TENANT_A) == TENANT_A


@pytest.mark.parametrize("bad", [None, ""])
def test_validate_tenant_id_missing(bad: Any) -> None:
    before = _attempts("MISSING_TENANT_ID")
    with pytest.raises(TenantIsolationError) as exc_info:
        validate_tenant_id(bad)
    assert exc_info.value.code == "INVALID_TENANT_ID"
    assert _attempts("MISSING_TENANT_ID") == before + 1


def test_validate_tenant_id_malformed() -> None:
    before = _attempts("INVALID_TENANT_ID_FORMAT")
    with pytest.raises(TenantIsolationError) as exc_info:
        validate_tenant_id("tenant-a")
    assert exc_info.value.code == "INVALID_TENANT_ID"
    assert exc_info.value.status_code == 403
    assert _attempts("INVALID_TENANT_ID_FORMAT") == before + 1


@pytest.mark.parametrize("bad", [TENANT_A + "\n", TENANT_A + "0", " " + TENANT_A])
def test_validate_tenant_id_rejects_surrounding_characters(bad: str) -> None:
    with pytest.raises(TenantIsolationError):
        validate_tenant_id(bad)


# ── TenantGuard.execute ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rejects_invalid_tenant_before_touching_the_database() -> None:
    session = _session()
    with pytest.raises(TenantIsolationError):
        await TenantGuard().execute(session, "not-a-uuid", SCOPED_QUERY)
    session.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_rejects_query_without_tenant_filter() -> None:
    session = _session()
    before = _attempts("QUERY_MISSING_TENANT_FILTER")
    with pytest.raises(TenantIsolationError) as exc_info:
        await TenantGuard().execute(session, TENANT_A, "SELECT * FROM games WHERE id = :id", {"id": "x"})
    assert exc_info.value.code == "QUERY_MISSING_TENANT_FILTER"
    assert _attempts("QUERY_MISSING_TENANT_FILTER") == before + 1
    session.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_binds_tenant_and_ignores_caller_supplied_tenant() -> None:
    session = _session([{"id": "g1", "tenant_id": TENANT_A}])
    rows = await TenantGuard().execute(
        session, TENANT_A, SCOPED_QUERY, {"tenant_id": TENANT_B, "game_id": "g1"}
    )
    assert rows == [{"id": "g1", "tenant_id": TENANT_A}]
    bound = session.execute.await_args.args[1]
    assert bound == {"tenant_id": TENANT_A, "game_id": "g1"}
    assert list(bound)[0] == "tenant_id"


@pytest.mark.asyncio
async def test_row_of_another_tenant_is_a_violation() -> None:
    session = _session([
        {"id": "g1", "tenant_id": TENANT_A},
        {"id": "g2", "tenant_id": TENANT_B},
    ])
    before = _attempts("CROSS_TENANT_DATA_LEAKAGE")
    with pytest.raises(TenantIsolationError) as exc_info:
        await TenantGuard().execute(session, TENANT_A, SCOPED_QUERY)
    assert exc_info.value.code == "TENANT_ISOLATION_VIOLATION"
    assert _attempts("CROSS_TENANT_DATA_LEAKAGE") == before + 1


@pytest.mark.asyncio
async def test_tenant_comparison_ignores_case() -> None:
    session = _session([{"id": "g1", "tenant_id": TENANT_A.upper()}])
    rows = await TenantGuard().execute(session, TENANT_A, SCOPED_QUERY)
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_rows_without_tenant_column_pass_through() -> None:
    session = _session([{"count": 3}])
    assert await TenantGuard().fetch_all(session, TENANT_A, SCOPED_QUERY) == [{"count": 3}]


@pytest.mark.asyncio
async def test_statement_without_rows_returns_empty_list() -> None:
    session = _session(returns_rows=False)
    assert await TenantGuard().execute(session, TENANT_A, "UPDATE games SET x = 1 WHERE tenant_id = :tenant_id") == []


@pytest.mark.asyncio
async def test_fetch_one_returns_first_row_or_none() -> None:
    guard = TenantGuard()
    assert await guard.fetch_one(_session([]), TENANT_A, SCOPED_QUERY) is None
    row = await guard.fetch_one(_session([{"id": "g1", "tenant_id": TENANT_A}]), TENANT_A, SCOPED_QUERY)
    assert row == {"id": "g1", "tenant_id": TENANT_A}


@pytest.mark.asyncio
async def test_database_errors_propagate() -> None:
    session = MagicMock()
    session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("boom")))
    with pytest.raises(OperationalError):
        await TenantGuard().execute(session, TENANT_A, SCOPED_QUERY)
