"""
Tenant isolation guard.

Every relational read or write goes through ``TenantGuard``. It refuses to run
a statement unless the tenant id is a UUID and the statement text filters on
``tenant_id``, binds the tenant id itself, and re-checks every returned row
that carries a ``tenant_id`` column. Any violation is a HIGH-severity security
event and increments the cross-tenant attempt counter.

The event log builds its own ORM statements and hands the loaded rows to
``TenantGuard.verify_rows`` for the same re-check.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import TenantIsolationError
from shared.models.payloads import UUID_RE
from shared.utils.logging import get_logger, log_security_event
from shared.utils.metrics import CROSS_TENANT_ACCESS_ATTEMPTS, inc

logger = get_logger(__name__)

QUERY_LOG_LIMIT = 100

# violation types
MISSING_TENANT_ID = "MISSING_TENANT_ID"
INVALID_TENANT_ID_FORMAT = "INVALID_TENANT_ID_FORMAT"
QUERY_MISSING_TENANT_FILTER = "QUERY_MISSING_TENANT_FILTER"
CROSS_TENANT_DATA_LEAKAGE = "CROSS_TENANT_DATA_LEAKAGE"


def _truncate(query_text: str) -> str:
    compact = " ".join(query_text.split())
    return compact[:QUERY_LOG_LIMIT]


def validate_tenant_id(tenant_id: Optional[str]) -> str:
    """Return the tenant id if it is a well-formed UUID, raise otherwise."""
    if not tenant_id:
        _report(MISSING_TENANT_ID, tenant_id=None)
        raise TenantIsolationError("INVALID_TENANT_ID", "Tenant ID is required")
    if not UUID_RE.fullmatch(str(tenant_id)):
        _report(INVALID_TENANT_ID_FORMAT, tenant_id=str(tenant_id))
        raise TenantIsolationError(
            "INVALID_TENANT_ID",
            "Tenant ID must be a valid UUID",
            {"tenant_id": str(tenant_id)},
        )
    return str(tenant_id)


def _report(violation_type: str, tenant_id: Optional[str], **context: Any) -> None:
    log_security_event(
        "tenant_isolation_violation",
        violation_type=violation_type,
        severity="HIGH",
        tenant_id=tenant_id,
        **context,
    )
    inc(CROSS_TENANT_ACCESS_ATTEMPTS, violation_type=violation_type)


class TenantGuard:
    """Wraps every relational statement with tenant scoping checks."""

    async def execute(
        self,
        session: AsyncSession,
        tenant_id: Optional[str],
        query_text: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        """Run a tenant-scoped statement and return its rows as dicts.

        The statement must reference ``:tenant_id``. The guard binds it ahead of
        the caller's parameters; a caller-supplied ``tenant_id`` is ignored.
        """
        tenant = validate_tenant_id(tenant_id)

        if "tenant_id" not in query_text.lower():
            _report(QUERY_MISSING_TENANT_FILTER, tenant_id=tenant, query=_truncate(query_text))
            raise TenantIsolationError(
                "QUERY_MISSING_TENANT_FILTER",
                "Query must filter by tenant_id",
            )

        bound: dict[str, Any] = {"tenant_id": tenant}
        for key, value in (params or {}).items():
            if key != "tenant_id":
                bound[key] = value

        try:
            result = await session.execute(text(query_text), bound)
        except SQLAlchemyError as exc:
            logger.error(
                "tenant_query_failed",
                tenant_id=tenant,
                query=_truncate(query_text),
                error=str(exc),
            )
            raise

        if not result.returns_rows:
            return []

        rows = [dict(row) for row in result.mappings().all()]
        self.verify_rows(tenant, rows, query_text)
        return rows

    async def fetch_one(
        self,
        session: AsyncSession,
        tenant_id: Optional[str],
        query_text: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Optional[dict[str, Any]]:
        rows = await self.execute(session, tenant_id, query_text, params)
        return rows[0] if rows else None

    async def fetch_all(
        self,
        session: AsyncSession,
        tenant_id: Optional[str],
        query_text: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        return await self.execute(session, tenant_id, query_text, params)

    @staticmethod
    def verify_rows(tenant_id: str, rows: Iterable[Any], query_text: str) -> None:
        """Raise if any row carries a tenant_id other than ``tenant_id``.

        Rows may be mappings or ORM objects; rows without a tenant_id pass.
        """
        expected = tenant_id.lower()
        for row in rows:
            if isinstance(row, Mapping):
                value = row.get("tenant_id")
            else:
                value = getattr(row, "tenant_id", None)
            if value is None:
                continue
            actual = str(value).lower()
            if actual != expected:
                _report(
                    CROSS_TENANT_DATA_LEAKAGE,
                    tenant_id=tenant_id,
                    row_tenant_id=actual,
                    query=_truncate(query_text),
                )
                raise TenantIsolationError(
                    "TENANT_ISOLATION_VIOLATION",
                    "Query returned data belonging to another tenant",
                )
