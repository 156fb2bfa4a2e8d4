"""Room router: turns a delivery target into live connections and sends.

Targets are either a room (everyone whose registered room matches, at the
moment of the call) or a name (every device connected under that name).
The router keeps the transport side of each connection; who is where comes
from the PresenceRegistry.

A failed send to one connection never stops delivery to the others: the
failure is logged, counted, and reported in the DeliveryReport.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from .errors import TransportError
from .events import frame
from .metrics import metrics
from .presence import PresenceRegistry

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Transport sink for one live client connection."""

    connection_id: str

    async def send(self, event: str, data: Any) -> None:
        """Deliver one event. Raises TransportError on failure."""
        ...


class WebSocketConnection:
    """Connection backed by a FastAPI/Starlette WebSocket."""

    def __init__(self, websocket: WebSocket, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id

    async def send(self, event: str, data: Any) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            raise TransportError(f"Connection {self.connection_id} is closed")
        try:
            await self.websocket.send_json(frame(event, data))
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            raise TransportError(f"Send to {self.connection_id} failed: {e}") from e

    def __repr__(self) -> str:
        return f"WebSocketConnection({self.connection_id!r})"


@dataclass
class DeliveryReport:
    """Outcome of one fan-out."""

    event: str
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def targets(self) -> int:
        return len(self.delivered) + len(self.failed) + len(self.skipped)


class RoomRouter:
    """Fan-out of events to rooms, names, and single connections."""

    def __init__(self, registry: PresenceRegistry, send_timeout: float = 5.0):
        self._registry = registry
        self._send_timeout = send_timeout
        self._connections: dict[str, Connection] = {}
        self._room_locks: dict[str, asyncio.Lock] = {}

    @property
    def registry(self) -> PresenceRegistry:
        return self._registry

    def __len__(self) -> int:
        return len(self._connections)

    # --- Transport bookkeeping ---

    def attach(self, connection: Connection) -> None:
        """Make a connection reachable for delivery."""
        self._connections[connection.connection_id] = connection

    def detach(self, connection_id: str) -> Connection | None:
        """Forget a connection's transport. Unknown ids are ignored."""
        return self._connections.pop(connection_id, None)

    def is_attached(self, connection_id: str) -> bool:
        return connection_id in self._connections

    # --- Delivery ---

    async def _send(self, connection_id: str, event: str, data: Any) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise LookupError(connection_id)
        try:
            await asyncio.wait_for(connection.send(event, data), timeout=self._send_timeout)
        except TransportError as e:
            logger.warning("Delivery of %s failed: %s", event, e)
        except asyncio.TimeoutError:
            logger.warning(
                "Delivery of %s to %s timed out after %.1fs",
                event,
                connection_id,
                self._send_timeout,
            )
        except Exception:
            logger.warning("Delivery of %s to %s failed", event, connection_id, exc_info=True)
        else:
            metrics.record_delivery(event, True)
            return True
        metrics.record_delivery(event, False)
        return False

    async def _deliver(self, connection_ids: Iterable[str], event: str, data: Any) -> DeliveryReport:
        report = DeliveryReport(event=event)
        targets: list[str] = []
        for connection_id in dict.fromkeys(connection_ids):
            if connection_id in self._connections:
                targets.append(connection_id)
            else:
                report.skipped.append(connection_id)

        if not targets:
            return report

        results = await asyncio.gather(*(self._send(cid, event, data) for cid in targets))
        for connection_id, ok in zip(targets, results):
            (report.delivered if ok else report.failed).append(connection_id)
        return report

    def _room_lock(self, room: str) -> asyncio.Lock:
        lock = self._room_locks.get(room)
        if lock is None:
            lock = self._room_locks[room] = asyncio.Lock()
        return lock

    async def broadcast_to_room(
        self,
        room: str,
        event: str,
        data: Any,
        exclude: str | None = None,
    ) -> DeliveryReport:
        """Send the same payload to every connection currently in ``room``.

        Membership is read when the room lock is acquired, so a connection
        joining mid-broadcast gets the next event, not this one. Broadcasts
        to one room are serialized so every member sees them in one order.
        """
        async with self._room_lock(room):
            targets = [cid for cid in self._registry.connections_in(room) if cid != exclude]
            report = await self._deliver(targets, event, data)
        logger.debug(
            "broadcast %s to %s: %d delivered, %d failed",
            event,
            room,
            len(report.delivered),
            len(report.failed),
        )
        return report

    async def deliver_to_name(self, name: str, event: str, data: Any) -> DeliveryReport:
        """Send to every live connection of ``name``. No connections is not an error."""
        return await self._deliver(self._registry.connections_for(name), event, data)

    async def deliver_to_names(self, names: Iterable[str], event: str, data: Any) -> DeliveryReport:
        """Send once to each live connection of any of ``names``."""
        targets: list[str] = []
        for name in dict.fromkeys(names):
            targets.extend(self._registry.connections_for(name))
        return await self._deliver(targets, event, data)

    async def send_to_connection(self, connection_id: str, event: str, data: Any) -> bool:
        """Direct reply to one connection (acks, errors)."""
        report = await self._deliver([connection_id], event, data)
        return bool(report.delivered)
