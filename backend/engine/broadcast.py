"""
Broadcast dispatcher: pushes a snapshot to every connection watching a game.

Delivery is best effort. A failing connection (or an unreachable registry) is
logged and counted; it never fails the write that triggered the broadcast.
Dead connections are left for their TTL and the socket owner to clean up.
"""
from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from engine.connections import ConnectionRegistry
from engine.event_store import utcnow
from shared.config import Settings, get_settings
from shared.models.domain import BroadcastMessage, Connection, GameSnapshot
from shared.models.enums import MessageType
from shared.utils.logging import get_logger
from shared.utils.metrics import BROADCAST_DELIVERIES, inc
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)


class ConnectionTransport(Protocol):
    async def send(self, connection: Connection, message: dict[str, Any]) -> None: ...


class RedisDeliveryTransport:
    """Hands each message to the instance that owns the socket via its Redis channel."""

    def __init__(self, redis: RedisManager) -> None:
        self._redis = redis

    async def send(self, connection: Connection, message: dict[str, Any]) -> None:
        envelope = json.dumps({"connection_id": connection.connection_id, "message": message})
        await self._redis.publish_delivery(connection.instance_id, envelope)


@dataclass(frozen=True)
class BroadcastReport:
    attempted: int = 0
    delivered: int = 0
    failed: int = 0


def build_message(snapshot: GameSnapshot, message_type: MessageType) -> dict[str, Any]:
    return BroadcastMessage(
        message_type=message_type,
        timestamp=utcnow(),
        data=snapshot,
    ).model_dump(mode="json")


class BroadcastDispatcher:
    def __init__(
        self,
        registry: ConnectionRegistry,
        transport: ConnectionTransport,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry
        self._transport = transport
        self._settings = settings or get_settings()

    async def broadcast(
        self,
        tenant_id: str,
        game_id: str | uuid.UUID,
        snapshot: GameSnapshot,
        message_type: MessageType = MessageType.SNAPSHOT_UPDATE,
    ) -> BroadcastReport:
        try:
            connections = await asyncio.wait_for(
                self._registry.list_for_game(game_id, tenant_id),
                timeout=self._settings.broadcast_timeout_s,
            )
        except Exception as exc:
            logger.warning(
                "broadcast_registry_unavailable",
                tenant_id=tenant_id,
                game_id=str(game_id),
                error=str(exc),
            )
            return BroadcastReport()

        if not connections:
            return BroadcastReport()

        message = build_message(snapshot, message_type)
        results = await asyncio.gather(
            *(self._deliver(conn, message) for conn in connections),
            return_exceptions=True,
        )

        failed = 0
        for conn, result in zip(connections, results):
            if isinstance(result, BaseException):
                failed += 1
                inc(BROADCAST_DELIVERIES, message_type=message_type.value, outcome="failed")
                logger.warning(
                    "broadcast_delivery_failed",
                    connection_id=conn.connection_id,
                    game_id=str(game_id),
                    error=str(result),
                )
            else:
                inc(BROADCAST_DELIVERIES, message_type=message_type.value, outcome="delivered")

        report = BroadcastReport(
            attempted=len(connections),
            delivered=len(connections) - failed,
            failed=failed,
        )
        logger.info(
            "broadcast_completed",
            tenant_id=tenant_id,
            game_id=str(game_id),
            message_type=message_type.value,
            attempted=report.attempted,
            delivered=report.delivered,
            failed=report.failed,
        )
        return report

    async def _deliver(self, connection: Connection, message: dict[str, Any]) -> None:
        await asyncio.wait_for(
            self._transport.send(connection, message),
            timeout=self._settings.broadcast_timeout_s,
        )
