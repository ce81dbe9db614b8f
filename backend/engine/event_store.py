"""
Append-only event log backed by the ``game_events`` table.

Methods take the caller's session so an append can share the projection
transaction. Idempotency is a single conditional insert on
(tenant_id, idempotency_key); expiry is an ``expires_at`` column that reads
filter on and ``purge_expired`` deletes.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from engine.tenant_guard import TenantGuard, validate_tenant_id
from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.models.domain import EVENT_VERSION, EventMetadata, GameEvent, SpatialCoordinates
from shared.models.enums import EventType
from shared.models.orm import GameEventORM
from shared.utils.logging import get_logger
from shared.utils.metrics import EVENTS_APPENDED, EVENTS_PURGED, inc

logger = get_logger(__name__)

IDEMPOTENCY_CONSTRAINT = "uq_game_events_idempotency"
_events = GameEventORM.__table__


@dataclass(frozen=True)
class AppendResult:
    event: GameEvent
    duplicate: bool


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_sort_key(occurred_at: datetime, event_id: uuid.UUID) -> str:
    return f"{as_utc(occurred_at).isoformat()}#{event_id}"


def check_occurred_at(
    occurred_at: Optional[datetime],
    now: datetime,
    max_age: timedelta,
) -> datetime:
    """Return the effective occurrence time, rejecting future or too-old values."""
    if occurred_at is None:
        return now
    ts = as_utc(occurred_at)
    if ts > now:
        reason = "future"
    elif now - ts > max_age:
        reason = "too_old"
    else:
        return ts
    raise ValidationError(
        "INVALID_TIMESTAMP",
        "Event timestamp is in the future" if reason == "future" else "Event timestamp is too old",
        {"occurred_at": ts.isoformat(), "server_time": now.isoformat(), "reason": reason},
    )


def new_game_event(
    *,
    tenant_id: str | uuid.UUID,
    game_id: str | uuid.UUID,
    event_type: EventType,
    payload: dict[str, Any],
    metadata: EventMetadata,
    occurred_at: datetime,
    now: datetime,
    ttl_days: int,
    idempotency_key: Optional[str] = None,
    spatial_coordinates: Optional[SpatialCoordinates] = None,
) -> GameEvent:
    event_id = uuid.uuid4()
    return GameEvent(
        event_id=event_id,
        game_id=uuid.UUID(str(game_id)),
        tenant_id=uuid.UUID(str(tenant_id)),
        event_type=event_type,
        event_version=EVENT_VERSION,
        occurred_at=as_utc(occurred_at),
        sort_key=build_sort_key(occurred_at, event_id),
        payload=payload,
        metadata=metadata,
        ttl=int((now + timedelta(days=ttl_days)).timestamp()),
        idempotency_key=idempotency_key,
        spatial_coordinates=spatial_coordinates,
        created_at=now,
    )


def _to_event(row: GameEventORM) -> GameEvent:
    return GameEvent(
        event_id=row.event_id,
        game_id=row.game_id,
        tenant_id=row.tenant_id,
        event_type=EventType(row.event_type),
        event_version=row.event_version,
        occurred_at=row.occurred_at,
        sort_key=row.sort_key,
        payload=row.payload,
        metadata=EventMetadata.model_validate(row.metadata_),
        ttl=int(row.expires_at.timestamp()),
        idempotency_key=row.idempotency_key,
        reversed_by=row.reversed_by,
        spatial_coordinates=(
            SpatialCoordinates.model_validate(row.spatial_coordinates)
            if row.spatial_coordinates
            else None
        ),
        created_at=row.created_at,
    )


class EventStore:
    """Durable, tenant-scoped event log."""

    def __init__(self, guard: Optional[TenantGuard] = None) -> None:
        self._guard = guard or TenantGuard()

    def _checked(self, tenant_id: str, rows: Sequence[GameEventORM], operation: str) -> list[GameEvent]:
        self._guard.verify_rows(tenant_id, rows, f"game_events.{operation}")
        return [_to_event(row) for row in rows]

    async def append(self, session: AsyncSession, event: GameEvent) -> AppendResult:
        """Insert the event unless its idempotency key was already used.

        A duplicate key returns the originally stored event with
        ``duplicate=True`` and writes nothing.
        """
        stmt = (
            pg_insert(_events)
            .values(
                event_id=event.event_id,
                tenant_id=event.tenant_id,
                game_id=event.game_id,
                event_type=event.event_type.value,
                event_version=event.event_version,
                occurred_at=event.occurred_at,
                sort_key=event.sort_key,
                payload=event.payload,
                metadata=event.metadata.model_dump(mode="json"),
                spatial_coordinates=(
                    event.spatial_coordinates.model_dump(mode="json")
                    if event.spatial_coordinates
                    else None
                ),
                idempotency_key=event.idempotency_key,
                expires_at=datetime.fromtimestamp(event.ttl, tz=timezone.utc),
                created_at=event.created_at,
            )
            .on_conflict_do_nothing(constraint=IDEMPOTENCY_CONSTRAINT)
            .returning(_events.c.event_id)
        )
        result = await session.execute(stmt)
        inserted = result.scalar_one_or_none()

        if inserted is None:
            existing = await self.find_by_idempotency_key(
                session, str(event.tenant_id), event.idempotency_key or ""
            )
            if existing is None:
                raise ConflictError(
                    "IDEMPOTENCY_CONFLICT",
                    "Event with this idempotency key could not be resolved",
                    {"idempotency_key": event.idempotency_key},
                )
            logger.info(
                "event_append_duplicate",
                tenant_id=str(event.tenant_id),
                idempotency_key=event.idempotency_key,
                original_event_id=str(existing.event_id),
            )
            return AppendResult(event=existing, duplicate=True)

        inc(EVENTS_APPENDED, event_type=event.event_type.value)
        logger.info(
            "event_appended",
            tenant_id=str(event.tenant_id),
            game_id=str(event.game_id),
            event_id=str(event.event_id),
            event_type=event.event_type.value,
        )
        return AppendResult(event=event, duplicate=False)

    async def find_by_idempotency_key(
        self, session: AsyncSession, tenant_id: str, idempotency_key: str
    ) -> Optional[GameEvent]:
        tenant_id = validate_tenant_id(tenant_id)
        stmt = select(GameEventORM).where(
            GameEventORM.tenant_id == uuid.UUID(tenant_id),
            GameEventORM.idempotency_key == idempotency_key,
        )
        result = await session.execute(stmt)
        events = self._checked(tenant_id, result.scalars().all(), "find_by_idempotency_key")
        return events[0] if events else None

    async def get(
        self,
        session: AsyncSession,
        tenant_id: str,
        game_id: str | uuid.UUID,
        event_id: str | uuid.UUID,
    ) -> Optional[GameEvent]:
        tenant_id = validate_tenant_id(tenant_id)
        stmt = select(GameEventORM).where(
            GameEventORM.tenant_id == uuid.UUID(tenant_id),
            GameEventORM.game_id == uuid.UUID(str(game_id)),
            GameEventORM.event_id == uuid.UUID(str(event_id)),
            GameEventORM.expires_at > utcnow(),
        )
        result = await session.execute(stmt)
        events = self._checked(tenant_id, result.scalars().all(), "get")
        return events[0] if events else None

    async def list_by_game(
        self, session: AsyncSession, tenant_id: str, game_id: str | uuid.UUID
    ) -> list[GameEvent]:
        """All unexpired events of a game, ascending by (occurred_at, event_id)."""
        tenant_id = validate_tenant_id(tenant_id)
        stmt = (
            select(GameEventORM)
            .where(
                GameEventORM.tenant_id == uuid.UUID(tenant_id),
                GameEventORM.game_id == uuid.UUID(str(game_id)),
                GameEventORM.expires_at > utcnow(),
            )
            .order_by(GameEventORM.occurred_at.asc(), GameEventORM.event_id.asc())
        )
        result = await session.execute(stmt)
        return self._checked(tenant_id, result.scalars().all(), "list_by_game")

    async def mark_reversed(
        self,
        session: AsyncSession,
        tenant_id: str,
        event_id: str | uuid.UUID,
        reversal_event_id: str | uuid.UUID,
    ) -> None:
        """Point ``reversed_by`` at the reversal; repeating with the same id is a no-op."""
        eid = uuid.UUID(str(event_id))
        rid = uuid.UUID(str(reversal_event_id))
        stmt = (
            update(_events)
            .where(
                _events.c.tenant_id == uuid.UUID(str(tenant_id)),
                _events.c.event_id == eid,
                (_events.c.reversed_by.is_(None)) | (_events.c.reversed_by == rid),
            )
            .values(reversed_by=rid)
            .returning(_events.c.event_id)
        )
        result = await session.execute(stmt)
        if result.scalar_one_or_none() is not None:
            return

        exists = await session.execute(
            select(GameEventORM.reversed_by).where(
                GameEventORM.tenant_id == uuid.UUID(str(tenant_id)),
                GameEventORM.event_id == eid,
            )
        )
        if exists.first() is None:
            raise NotFoundError("EVENT_NOT_FOUND", "Event not found", {"event_id": str(eid)})
        raise ConflictError(
            "EVENT_ALREADY_REVERSED",
            "Event has already been reversed",
            {"event_id": str(eid)},
        )

    async def purge_expired(self, session: AsyncSession, now: Optional[datetime] = None) -> int:
        stmt = delete(_events).where(_events.c.expires_at <= (now or utcnow()))
        result = await session.execute(stmt)
        purged = result.rowcount or 0
        if purged:
            inc(EVENTS_PURGED, purged)
            logger.info("events_purged", count=purged)
        return purged
