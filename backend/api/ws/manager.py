"""
WebSocket connection manager for ScoreBase.

Manages subscriber sockets for live games with:
- One game per socket, scoped to the caller's tenant
- Initial snapshot on connect and ``resync`` on demand
- Heartbeat/ping-pong for connection liveness
- A Redis delivery bridge: broadcasts addressed to this instance's sockets
  arrive on ``deliver:instance:{instance_id}`` and are forwarded here
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from engine.broadcast import build_message
from engine.connections import ConnectionRegistry
from engine.service import ScoringService, parse_game_id
from engine.tenant_guard import validate_tenant_id
from shared.config import Settings, get_settings
from shared.errors import ScoreBaseError
from shared.models.domain import AuthContext, Connection
from shared.models.enums import MessageType, WSClientOp, WSServerMsgType
from shared.utils.logging import get_logger
from shared.utils.metrics import WS_CONNECTIONS, WS_MESSAGES, inc
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)

# Idle receive window before re-checking shutdown
RECEIVE_TIMEOUT_S = 60.0


def close_code_for(exc: ScoreBaseError) -> int:
    """Application close codes mirror HTTP statuses in the 4000 range."""
    return 4000 + exc.status_code


@dataclass
class WSConnection:
    """A socket owned by this instance together with its registry record."""

    ws: WebSocket
    record: Connection
    created_at: float = field(default_factory=time.monotonic)
    last_pong_at: float = field(default_factory=time.monotonic)
    remote_addr: str = ""

    @property
    def connection_id(self) -> str:
        return self.record.connection_id

    @property
    def alive_seconds(self) -> float:
        return time.monotonic() - self.created_at


class WebSocketManager:
    """
    Manages all WebSocket connections for this API instance.

    Sockets are registered in the shared connection registry so any instance
    can address them; only this instance holds the socket itself.
    """

    def __init__(
        self,
        redis: RedisManager,
        scoring: ScoringService,
        registry: ConnectionRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._redis = redis
        self._scoring = scoring
        self._settings = settings or get_settings()
        self._registry = registry or ConnectionRegistry(redis, self._settings)
        self._connections: dict[str, WSConnection] = {}
        self._bridge_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._shutdown = asyncio.Event()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def start(self) -> None:
        """Start background tasks (delivery bridge, heartbeat)."""
        self._bridge_task = asyncio.create_task(self._run_delivery_bridge())
        self._heartbeat_task = asyncio.create_task(self._run_heartbeat())
        logger.info("ws_manager_started", instance_id=self._settings.instance_id)

    async def stop(self) -> None:
        """Stop background tasks and close all connections."""
        self._shutdown.set()
        for task in (self._bridge_task, self._heartbeat_task):
            if task:
                task.cancel()

        for conn in list(self._connections.values()):
            await self._close_connection(conn, code=1001, reason="server_shutdown")

        logger.info("ws_manager_stopped")

    async def handle_connection(self, ws: WebSocket, game_id: str, auth: AuthContext) -> None:
        """
        Handle one subscriber socket from accept to disconnect.

        The connection is registered before the initial snapshot is built so
        no update committed in between is missed.
        """
        await ws.accept()

        try:
            tenant_id = validate_tenant_id(auth.tenant_id)
            game_uuid = parse_game_id(game_id)
        except ScoreBaseError as exc:
            await self._reject(ws, exc)
            return

        record = self._registry.new_connection(
            connection_id=uuid.uuid4().hex,
            game_id=game_uuid,
            tenant_id=tenant_id,
            user_id=auth.user_id,
        )
        conn = WSConnection(
            ws=ws,
            record=record,
            remote_addr=f"{ws.client.host}:{ws.client.port}" if ws.client else "unknown",
        )
        self._connections[conn.connection_id] = conn
        inc(WS_CONNECTIONS)

        try:
            await self._registry.register(record)
            snapshot = await self._scoring.get_snapshot(tenant_id, game_uuid)
        except ScoreBaseError as exc:
            await self._reject(ws, exc)
            await self._cleanup_connection(conn)
            return
        except Exception as exc:
            logger.warning("ws_connect_failed", connection_id=conn.connection_id, error=str(exc))
            await self._close_connection(conn, code=1011, reason="internal_error")
            return

        logger.info(
            "ws_connected",
            connection_id=conn.connection_id,
            game_id=str(game_uuid),
            tenant_id=tenant_id,
            user_id=auth.user_id,
            remote_addr=conn.remote_addr,
        )

        await self._send(conn, {
            "type": WSServerMsgType.STATE.value,
            "connection_id": conn.connection_id,
            "game_id": str(game_uuid),
            "heartbeat_interval": self._settings.ws_heartbeat_interval_s,
        })
        await self._send(conn, build_message(snapshot, MessageType.INITIAL_SNAPSHOT))

        try:
            while not self._shutdown.is_set():
                try:
                    raw = await asyncio.wait_for(ws.receive_text(), timeout=RECEIVE_TIMEOUT_S)
                except asyncio.TimeoutError:
                    continue

                inc(WS_MESSAGES, direction="in")
                await self._handle_message(conn, raw)

        except WebSocketDisconnect:
            pass
        except Exception as exc:
            logger.warning(
                "ws_connection_error",
                connection_id=conn.connection_id,
                error=str(exc),
            )
        finally:
            await self._cleanup_connection(conn)

    async def _handle_message(self, conn: WSConnection, raw: str) -> None:
        """Parse and dispatch a client message."""
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            await self._send_error(conn, "invalid_json", "Message must be valid JSON")
            return

        op = msg.get("op") if isinstance(msg, dict) else None
        if not op:
            await self._send_error(conn, "missing_op", "Message must include 'op' field")
            return

        try:
            operation = WSClientOp(op)
        except ValueError:
            await self._send_error(conn, "unknown_op", f"Unknown operation: {op}")
            return

        if operation == WSClientOp.PING:
            await self._handle_ping(conn)
        elif operation == WSClientOp.RESYNC:
            await self._handle_resync(conn)

    async def _handle_ping(self, conn: WSConnection) -> None:
        conn.last_pong_at = time.monotonic()
        await self._send(conn, {
            "type": WSServerMsgType.PONG.value,
            "timestamp": time.time(),
        })

    async def _handle_resync(self, conn: WSConnection) -> None:
        """Send a freshly built snapshot, as on connect."""
        try:
            snapshot = await self._scoring.get_snapshot(
                str(conn.record.tenant_id), conn.record.game_id
            )
        except ScoreBaseError as exc:
            await self._send_error(conn, exc.code, exc.message)
            return
        await self._send(conn, build_message(snapshot, MessageType.INITIAL_SNAPSHOT))

    async def _run_delivery_bridge(self) -> None:
        """Forward broadcasts addressed to this instance's sockets."""
        pubsub = await self._redis.subscribe_deliveries(self._settings.instance_id)
        logger.info("ws_delivery_bridge_started", instance_id=self._settings.instance_id)

        try:
            while not self._shutdown.is_set():
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
                if message and message["type"] == "message":
                    data = message["data"]
                    await self.deliver(data.decode() if isinstance(data, bytes) else data)
                else:
                    await asyncio.sleep(0.005)
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.unsubscribe()
            await pubsub.close()

    async def deliver(self, envelope: str) -> bool:
        """Send one ``{connection_id, message}`` envelope to its local socket."""
        try:
            parsed = json.loads(envelope)
            connection_id = parsed["connection_id"]
            message = parsed["message"]
        except (json.JSONDecodeError, KeyError, TypeError):
            logger.warning("ws_delivery_malformed")
            return False

        conn = self._connections.get(connection_id)
        if conn is None:
            # Socket already gone; the registry record expires on its own
            logger.debug("ws_delivery_unknown_connection", connection_id=connection_id)
            return False

        await self._send(conn, message)
        inc(WS_MESSAGES, direction="out")
        return True

    async def _run_heartbeat(self) -> None:
        """
        Periodically send heartbeat pings to all connections.
        Disconnect clients that haven't responded.
        """
        interval = self._settings.ws_heartbeat_interval_s
        timeout = self._settings.ws_heartbeat_timeout_s
        while not self._shutdown.is_set():
            try:
                await asyncio.sleep(interval)
                if self._shutdown.is_set():
                    break

                now = time.monotonic()
                stale: list[WSConnection] = []
                for conn in list(self._connections.values()):
                    if now - conn.last_pong_at > interval + timeout:
                        stale.append(conn)
                        continue
                    await self._send(conn, {
                        "type": WSServerMsgType.PING.value,
                        "timestamp": time.time(),
                    })

                for conn in stale:
                    logger.info(
                        "ws_heartbeat_timeout",
                        connection_id=conn.connection_id,
                        alive_seconds=round(conn.alive_seconds, 1),
                    )
                    await self._close_connection(conn, code=1000, reason="heartbeat_timeout")

            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("ws_heartbeat_error", error=str(exc))

    async def _send(self, conn: WSConnection, message: dict[str, Any]) -> None:
        """Send a JSON message to a WebSocket connection."""
        try:
            if conn.ws.client_state == WebSocketState.CONNECTED:
                await conn.ws.send_text(json.dumps(message, default=str))
        except Exception as exc:
            logger.debug(
                "ws_send_error",
                connection_id=conn.connection_id,
                error=str(exc),
            )

    async def _send_error(self, conn: WSConnection, code: str, message: str) -> None:
        await self._send(conn, {
            "type": WSServerMsgType.ERROR.value,
            "error": {"code": code, "message": message},
        })

    async def _reject(self, ws: WebSocket, exc: ScoreBaseError) -> None:
        """Report a typed error on a socket that never became live, then close it."""
        logger.info("ws_rejected", code=exc.code, status=exc.status_code)
        try:
            await ws.send_text(json.dumps({
                "type": WSServerMsgType.ERROR.value,
                "error": {"code": exc.code, "message": exc.message},
            }))
            await ws.close(code=close_code_for(exc), reason=exc.code)
        except (WebSocketDisconnect, RuntimeError) as close_exc:
            logger.debug("ws_reject_close_failed", error=str(close_exc))

    async def _close_connection(self, conn: WSConnection, code: int = 1000, reason: str = "") -> None:
        try:
            if conn.ws.client_state == WebSocketState.CONNECTED:
                await conn.ws.close(code=code, reason=reason)
        except (WebSocketDisconnect, RuntimeError) as exc:
            logger.debug("ws_close_failed", connection_id=conn.connection_id, error=str(exc))
        await self._cleanup_connection(conn)

    async def _cleanup_connection(self, conn: WSConnection) -> None:
        """Remove a connection locally and from the shared registry, once."""
        if self._connections.pop(conn.connection_id, None) is None:
            return
        inc(WS_CONNECTIONS, -1)

        try:
            await self._registry.remove(conn.record)
        except Exception as exc:
            logger.warning(
                "ws_registry_remove_failed",
                connection_id=conn.connection_id,
                error=str(exc),
            )

        logger.info(
            "ws_disconnected",
            connection_id=conn.connection_id,
            game_id=str(conn.record.game_id),
            alive_seconds=round(conn.alive_seconds, 1),
        )
