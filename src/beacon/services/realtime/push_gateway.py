"""
Push Gateway

Holds the live connection table and delivers events with room-based
addressing. Delivery is fire-and-forget: a send that fails drops the
connection, and nothing is queued for recipients who are not connected.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from beacon.models.emergency import utcnow
from .events import incident_room, user_room


@dataclass
class Connection:
    """One live client connection"""
    user_id: str
    websocket: Any
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    rooms: Set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=utcnow)


class PushGateway:
    """Process-scoped registry of live connections and their rooms"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.connections: Dict[str, Connection] = {}
        self.rooms: Dict[str, Set[str]] = {}

    def register(self, websocket: Any, user_id: str) -> Connection:
        """Record an accepted connection and join its personal room"""
        connection = Connection(user_id=user_id, websocket=websocket)
        self.connections[connection.id] = connection
        self.join(connection.id, user_room(user_id))
        self.logger.info(f"Connection {connection.id} registered for user {user_id}")
        return connection

    def unregister(self, connection_id: str) -> Optional[Connection]:
        """Forget a connection and drop it from every room"""
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return None

        for room in connection.rooms:
            members = self.rooms.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self.rooms[room]

        self.logger.info(f"Connection {connection_id} for user {connection.user_id} unregistered")
        return connection

    def join(self, connection_id: str, room: str) -> None:
        connection = self.connections.get(connection_id)
        if connection is None:
            return
        connection.rooms.add(room)
        self.rooms.setdefault(room, set()).add(connection_id)

    def leave(self, connection_id: str, room: str) -> None:
        connection = self.connections.get(connection_id)
        if connection is not None:
            connection.rooms.discard(room)
        members = self.rooms.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self.rooms[room]

    def room_members(self, room: str) -> Set[str]:
        return set(self.rooms.get(room, set()))

    def is_user_connected(self, user_id: str) -> bool:
        return bool(self.rooms.get(user_room(user_id)))

    def connected_users(self) -> Set[str]:
        return {connection.user_id for connection in self.connections.values()}

    async def send_to_connection(self, connection_id: str, event: str, payload: Dict[str, Any]) -> bool:
        """Send an event to a single connection"""
        return await self._deliver([connection_id], event, payload) > 0

    async def send_to_user(self, user_id: str, event: str, payload: Dict[str, Any]) -> int:
        """
        Send an event to every connection of a user

        Returns:
            Number of connections the event was written to
        """
        return await self._deliver(self.room_members(user_room(user_id)), event, payload)

    async def send_to_incident_room(self, emergency_id: str, event: str, payload: Dict[str, Any],
                                    exclude_connection: Optional[str] = None) -> int:
        members = self.room_members(incident_room(emergency_id))
        if exclude_connection:
            members.discard(exclude_connection)
        return await self._deliver(members, event, payload)

    async def broadcast_all(self, event: str, payload: Dict[str, Any]) -> int:
        return await self._deliver(list(self.connections.keys()), event, payload)

    async def close(self) -> None:
        """Close every live connection (used at shutdown)"""
        for connection_id in list(self.connections.keys()):
            connection = self.unregister(connection_id)
            try:
                await connection.websocket.close()
            except Exception as e:
                self.logger.debug(f"Error closing connection {connection_id}: {e}")

    async def _deliver(self, connection_ids: Iterable[str], event: str, payload: Dict[str, Any]) -> int:
        message = json.dumps({"event": event, "data": payload}, default=str)
        delivered = 0
        failed: List[str] = []

        for connection_id in list(connection_ids):
            connection = self.connections.get(connection_id)
            if connection is None:
                continue
            try:
                await connection.websocket.send_text(message)
                delivered += 1
            except Exception as e:
                self.logger.error(f"Error sending {event} to connection {connection_id}: {e}")
                failed.append(connection_id)

        for connection_id in failed:
            self.unregister(connection_id)

        return delivered
