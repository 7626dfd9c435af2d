"""
Session and Presence Layer

Authenticates live connections at handshake time, tracks online state and
dispatches inbound client messages:
- update_location / update_availability (acknowledged)
- join_emergency / leave_emergency (incident rooms)
- update_response_status (relayed to the incident room, not persisted)
- send_sos_alert and voice_assistant_audio (enter the dispatch pipeline)
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect

from beacon.core.errors import AuthError, BeaconError, PersistenceError, ValidationError
from beacon.models.emergency import ResponderStatus
from beacon.services.emergency.dispatch_engine import DispatchEngine, parse_point
from beacon.services.emergency.geo_index import GeoIndex
from beacon.services.web.auth import TokenVerifier
from .events import Events, incident_room
from .push_gateway import Connection, PushGateway


AUTH_FAILURE_CLOSE_CODE = 4401

Handler = Callable[[Connection, Dict[str, Any]], Awaitable[None]]


class PresenceLayer:
    """Owns the lifecycle of live connections"""

    def __init__(self, gateway: PushGateway, geo_index: GeoIndex,
                 verifier: TokenVerifier, dispatch_engine: DispatchEngine):
        self.logger = logging.getLogger(__name__)
        self.gateway = gateway
        self.geo_index = geo_index
        self.verifier = verifier
        self.dispatch_engine = dispatch_engine

        self.handlers: Dict[str, Handler] = {
            Events.UPDATE_LOCATION: self._on_update_location,
            Events.UPDATE_AVAILABILITY: self._on_update_availability,
            Events.JOIN_EMERGENCY: self._on_join_emergency,
            Events.LEAVE_EMERGENCY: self._on_leave_emergency,
            Events.UPDATE_RESPONSE_STATUS: self._on_update_response_status,
            Events.SEND_SOS_ALERT: self._on_send_sos_alert,
            Events.VOICE_ASSISTANT_AUDIO: self._on_voice_assistant_audio,
        }

    async def serve(self, websocket: WebSocket, token: Optional[str]) -> None:
        """Run one live connection until the client goes away"""
        connection = await self.connect(websocket, token)
        if connection is None:
            return

        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_message(connection, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await self.disconnect(connection)

    async def connect(self, websocket: WebSocket, token: Optional[str]) -> Optional[Connection]:
        """
        Accept a socket and authenticate it

        Returns:
            The registered connection, or None if authentication failed
            (the socket has been closed with an error frame in that case)
        """
        await websocket.accept()

        try:
            user = self.verifier.authenticate(token)
        except AuthError as e:
            self.logger.warning(f"Rejected live connection: {e.message}")
            await self._reject(websocket, e.message)
            return None
        except BeaconError as e:
            self.logger.error(f"Could not authenticate live connection: {e}")
            await self._reject(websocket, "User lookup failed")
            return None

        connection = self.gateway.register(websocket, user.id)
        try:
            self.geo_index.set_online(user.id, True)
        except PersistenceError as e:
            self.logger.error(f"Could not mark user {user.id} online: {e}")

        self.logger.info(f"User {user.name} ({user.id}) connected")
        return connection

    async def _reject(self, websocket: WebSocket, reason: str) -> None:
        await websocket.send_text(json.dumps({
            "event": Events.ERROR,
            "data": {"message": f"Authentication error: {reason}"}
        }))
        await websocket.close(code=AUTH_FAILURE_CLOSE_CODE)

    async def disconnect(self, connection: Connection) -> None:
        """Drop a connection and mark the user offline when it was their last one"""
        self.gateway.unregister(connection.id)
        if self.gateway.is_user_connected(connection.user_id):
            return

        try:
            self.geo_index.set_online(connection.user_id, False)
        except PersistenceError as e:
            self.logger.error(f"Could not mark user {connection.user_id} offline: {e}")

        self.logger.info(f"User {connection.user_id} disconnected")

    async def handle_message(self, connection: Connection, raw: str) -> None:
        """Decode one inbound frame and run its handler; errors never close the socket"""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            self.logger.warning(f"Ignoring malformed frame from connection {connection.id}")
            return

        if not isinstance(message, dict):
            self.logger.warning(f"Ignoring non-object frame from connection {connection.id}")
            return

        event = message.get("event")
        handler = self.handlers.get(event)
        if handler is None:
            self.logger.debug(f"No handler for event {event!r}")
            return

        data = message.get("data")
        if data is None:
            data = {}

        try:
            await handler(connection, data)
        except BeaconError as e:
            self.logger.warning(f"{event} from user {connection.user_id} failed: {e.message}")
        except Exception as e:
            self.logger.error(f"Unexpected error handling {event} from user {connection.user_id}: {e}",
                              exc_info=True)

    async def _on_update_location(self, connection: Connection, data: Dict[str, Any]) -> None:
        try:
            point = parse_point(data.get('longitude'), data.get('latitude'))
            user = self.geo_index.update_location(connection.user_id, point)
        except BeaconError as e:
            await self.gateway.send_to_connection(connection.id, Events.LOCATION_UPDATED,
                                                  {'success': False, 'message': e.message})
            raise

        await self.gateway.send_to_connection(connection.id, Events.LOCATION_UPDATED, {
            'success': True,
            'location': user.to_dict()['currentLocation'],
        })

    async def _on_update_availability(self, connection: Connection, data: Dict[str, Any]) -> None:
        available = data.get('availabilityStatus')
        try:
            if not isinstance(available, bool):
                raise ValidationError("availabilityStatus must be a boolean")
            user = self.geo_index.set_availability(connection.user_id, available)
        except BeaconError as e:
            await self.gateway.send_to_connection(connection.id, Events.AVAILABILITY_UPDATED,
                                                  {'success': False, 'message': e.message})
            raise

        await self.gateway.send_to_connection(connection.id, Events.AVAILABILITY_UPDATED, {
            'success': True,
            'availabilityStatus': user.availability_status,
        })

    async def _on_join_emergency(self, connection: Connection, data: Any) -> None:
        emergency_id = self._emergency_id(data)
        self.gateway.join(connection.id, incident_room(emergency_id))
        self.logger.debug(f"User {connection.user_id} joined incident room {emergency_id}")

    async def _on_leave_emergency(self, connection: Connection, data: Any) -> None:
        emergency_id = self._emergency_id(data)
        self.gateway.leave(connection.id, incident_room(emergency_id))
        self.logger.debug(f"User {connection.user_id} left incident room {emergency_id}")

    async def _on_update_response_status(self, connection: Connection, data: Dict[str, Any]) -> None:
        emergency_id = self._emergency_id(data)
        status = data.get('status')
        if status not in {s.value for s in ResponderStatus}:
            raise ValidationError(f"Unknown responder status {status!r}")

        user = self.geo_index.get_user(connection.user_id)
        await self.gateway.send_to_incident_room(
            emergency_id,
            Events.RESPONDER_STATUS_UPDATED,
            {
                'responderId': connection.user_id,
                'responderName': user.name if user else None,
                'status': status,
            },
            exclude_connection=connection.id
        )

    async def _on_send_sos_alert(self, connection: Connection, data: Dict[str, Any]) -> None:
        location = data.get('location') or {}
        result = await self.dispatch_engine.report_sos(
            connection.user_id,
            location.get('longitude'),
            location.get('latitude'),
            address=location.get('address')
        )
        self.logger.warning(f"SOS from user {connection.user_id} created emergency "
                            f"{result.emergency.id}, {result.notified_users} users alerted")

    async def _on_voice_assistant_audio(self, connection: Connection, data: Dict[str, Any]) -> None:
        text = data.get('text')
        location = data.get('location') or {}

        if not text or not str(text).strip():
            await self.gateway.send_to_connection(connection.id, Events.VOICE_ASSISTANT_RESULT, {
                'success': False,
                'message': "No transcript provided",
            })
            return

        try:
            kind, result = await self.dispatch_engine.report_voice(
                connection.user_id,
                str(text),
                location.get('longitude'),
                location.get('latitude'),
                address=location.get('address')
            )
        except BeaconError as e:
            await self.gateway.send_to_connection(connection.id, Events.VOICE_ASSISTANT_RESULT, {
                'success': False,
                'message': e.message,
            })
            raise

        await self.gateway.send_to_connection(connection.id, Events.VOICE_ASSISTANT_RESULT, {
            'success': True,
            'emergencyId': result.emergency.id,
            'message': f"Emergency report created: {kind.value}",
            'text': text,
        })

    def _emergency_id(self, data: Any) -> str:
        emergency_id = data.get('emergencyId') if isinstance(data, dict) else data
        if not emergency_id or not isinstance(emergency_id, str):
            raise ValidationError("emergencyId is required")
        return emergency_id
