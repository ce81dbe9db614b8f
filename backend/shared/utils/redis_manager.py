"""
Redis connection manager for ScoreBase.
Provides the async connection pool, the subscriber-connection registry storage
and the per-instance delivery channels used for multi-instance fan-out.
"""
from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Key namespaces ──────────────────────────────────────────────────────
CONNECTION_KEY = "conn:{connection_id}"
GAME_CONNECTIONS_KEY = "conns:game:{game_id}"
DELIVERY_CHANNEL = "deliver:instance:{instance_id}"


def _fmt(template: str, **kwargs: Any) -> str:
    return template.format(**kwargs)


class RedisManager:
    """Manages async Redis connection pool and provides typed helpers."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._pool: Optional[Redis] = None

    async def connect(self) -> None:
        """Initialize the connection pool."""
        self._pool = aioredis.from_url(
            self._settings.redis_url_str,
            max_connections=self._settings.redis_max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
        )
        await self._pool.ping()
        logger.info("redis_connected", url=self._settings.redis_url_str)

    async def disconnect(self) -> None:
        """Graceful shutdown."""
        if self._pool:
            await self._pool.aclose()
            self._pool = None
            logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        if self._pool is None:
            raise RuntimeError("RedisManager not connected. Call connect() first.")
        return self._pool

    # ── Connection registry storage ─────────────────────────────────────
    async def store_connection(
        self, connection_id: str, game_id: str, record: str, ttl_s: int
    ) -> None:
        """Write a connection record and index it under its game, both expiring."""
        key = _fmt(CONNECTION_KEY, connection_id=connection_id)
        index = _fmt(GAME_CONNECTIONS_KEY, game_id=game_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.set(key, record, ex=ttl_s)
        pipe.sadd(index, connection_id)
        pipe.expire(index, ttl_s)
        await pipe.execute()

    async def delete_connection(self, connection_id: str, game_id: str) -> None:
        key = _fmt(CONNECTION_KEY, connection_id=connection_id)
        index = _fmt(GAME_CONNECTIONS_KEY, game_id=game_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(key)
        pipe.srem(index, connection_id)
        await pipe.execute()

    async def load_game_connections(self, game_id: str) -> dict[str, Optional[str]]:
        """Map every indexed connection id to its record (None when expired)."""
        index = _fmt(GAME_CONNECTIONS_KEY, game_id=game_id)
        connection_ids = sorted(await self.client.smembers(index))
        if not connection_ids:
            return {}
        keys = [_fmt(CONNECTION_KEY, connection_id=cid) for cid in connection_ids]
        records = await self.client.mget(keys)
        return dict(zip(connection_ids, records))

    async def prune_game_connections(self, game_id: str, connection_ids: list[str]) -> None:
        if not connection_ids:
            return
        index = _fmt(GAME_CONNECTIONS_KEY, game_id=game_id)
        await self.client.srem(index, *connection_ids)

    # ── Pub/Sub ─────────────────────────────────────────────────────────
    async def publish_delivery(self, instance_id: str, payload: str) -> int:
        """Publish a delivery to the instance that owns the target socket."""
        channel = _fmt(DELIVERY_CHANNEL, instance_id=instance_id)
        return await self.client.publish(channel, payload)

    async def subscribe_deliveries(self, instance_id: str) -> PubSub:
        """Subscribe to this instance's delivery channel."""
        pubsub = self.client.pubsub()
        await pubsub.subscribe(_fmt(DELIVERY_CHANNEL, instance_id=instance_id))
        return pubsub
