"""
Web API Service for Beacon

FastAPI application exposing the dispatch core:
- Incident reporting, listing, responding and status changes
- Notification listing and read tracking
- User location and availability updates
- The live WebSocket channel
Every REST response uses the {success, message, data|error} envelope.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Query, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from beacon.core.errors import AuthError, BeaconError, ValidationError
from beacon.models.emergency import Emergency, Point, UserPresence
from beacon.services.emergency.dispatch_engine import DispatchEngine, parse_point
from beacon.services.emergency.emergency_store import EmergencyStore
from beacon.services.emergency.geo_index import GeoIndex
from beacon.services.emergency.notification_store import NotificationStore
from beacon.services.emergency.state_machine import ResponderStateMachine
from beacon.services.realtime.presence import PresenceLayer
from .auth import TokenVerifier, bearer_token
from .schemas import (
    AvailabilityUpdateRequest, EmergencyCreateRequest, FeedbackRequest,
    LocationUpdateRequest, StatusUpdateRequest
)


def success(data: Any = None, message: str = "", status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={
        "success": True,
        "message": message,
        "data": data,
    })


def failure(message: str, status_code: int, error: Optional[str] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={
        "success": False,
        "message": message,
        "error": error or message,
    })


class WebAPIService:
    """
    HTTP and WebSocket front end for the dispatch services
    """

    def __init__(
        self,
        config: Dict,
        emergency_store: EmergencyStore,
        notification_store: NotificationStore,
        geo_index: GeoIndex,
        dispatch_engine: DispatchEngine,
        state_machine: ResponderStateMachine,
        presence: PresenceLayer,
        verifier: TokenVerifier
    ):
        self.logger = logging.getLogger(__name__)
        self.config = config or {}

        self.host = self.config.get('web', {}).get('host', '0.0.0.0')
        self.port = self.config.get('web', {}).get('port', 3000)
        self.cors_origins = self.config.get('web', {}).get('cors_origins', ["*"])
        self.debug = self.config.get('app', {}).get('debug', False)
        self.default_radius = self.config.get('dispatch', {}).get('radius_meters', 5000)
        self.notification_limit = self.config.get('dispatch', {}).get('notification_list_limit', 50)

        self.emergency_store = emergency_store
        self.notification_store = notification_store
        self.geo_index = geo_index
        self.dispatch_engine = dispatch_engine
        self.state_machine = state_machine
        self.presence = presence
        self.verifier = verifier

        self.app = FastAPI(
            title="Beacon Dispatch API",
            description="Emergency reporting, responder coordination and live alerts",
            version="1.0.0",
            debug=self.debug
        )

        # Missing credentials are reported through the envelope, not FastAPI's default 403
        self.security = HTTPBearer(auto_error=False)

        self._setup_middleware()
        self._setup_exception_handlers()
        self._setup_routes()

        self.server = None
        self.server_task = None
        self.is_running = False

        self.logger.info("WebAPIService initialized")

    def _setup_middleware(self):
        """Setup FastAPI middleware"""
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _setup_exception_handlers(self):
        """Translate errors into the response envelope"""

        @self.app.exception_handler(BeaconError)
        async def beacon_error_handler(request: Request, exc: BeaconError):
            if exc.status_code >= 500:
                self.logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
            return failure(exc.message, exc.status_code, error=type(exc).__name__)

        @self.app.exception_handler(RequestValidationError)
        async def request_validation_handler(request: Request, exc: RequestValidationError):
            errors = exc.errors()
            if any(error.get('type') == 'missing' for error in errors):
                message = "Missing required fields"
            else:
                message = "Invalid request"
            detail = "; ".join(
                f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
                for error in errors
            )
            return failure(message, 400, error=detail)

    def _setup_routes(self):
        """Setup FastAPI routes"""

        async def current_user(
            credentials: Optional[HTTPAuthorizationCredentials] = Depends(self.security)
        ) -> UserPresence:
            if credentials is None:
                raise AuthError("Not authorized, no token")
            return self.verifier.authenticate(credentials.credentials)

        @self.app.get("/health")
        async def health_check():
            return {
                "status": "healthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "connections": len(self.presence.gateway.connections),
            }

        # Emergencies

        @self.app.post("/emergencies")
        async def create_emergency(body: EmergencyCreateRequest, user: UserPresence = Depends(current_user)):
            result = await self.dispatch_engine.report_incident(
                user.id, body.emergency_type, body.description, body.longitude, body.latitude
            )
            return success(result.to_dict(), "Emergency created", status_code=201)

        @self.app.get("/emergencies/active")
        async def active_emergencies(user: UserPresence = Depends(current_user)):
            emergencies = self.emergency_store.list_active()
            return success([self._with_identities(e, detailed=False) for e in emergencies])

        @self.app.get("/emergencies/nearby")
        async def nearby_emergencies(
            longitude: Optional[float] = None,
            latitude: Optional[float] = None,
            max_distance: Optional[float] = Query(None, alias="maxDistance"),
            user: UserPresence = Depends(current_user)
        ):
            center = parse_point(longitude, latitude)
            radius = max_distance if max_distance is not None else self.default_radius
            if radius <= 0:
                raise ValidationError("maxDistance must be positive")

            emergencies = self.emergency_store.find_nearby(center, radius)
            return success([self._with_identities(e, detailed=False) for e in emergencies])

        @self.app.get("/emergencies/{emergency_id}")
        async def get_emergency(emergency_id: str, user: UserPresence = Depends(current_user)):
            emergency = self.emergency_store.require(emergency_id)
            return success(self._with_identities(emergency, detailed=True))

        @self.app.post("/emergencies/{emergency_id}/respond")
        async def respond(emergency_id: str, user: UserPresence = Depends(current_user)):
            outcome = await self.state_machine.respond(user.id, emergency_id)
            message = "Response recorded" if outcome.changed else "Response already completed"
            return success(outcome.to_dict(), message)

        @self.app.patch("/emergencies/{emergency_id}/status")
        async def update_status(emergency_id: str, body: StatusUpdateRequest,
                                user: UserPresence = Depends(current_user)):
            emergency = await self.state_machine.update_incident_status(user.id, emergency_id, body.status)
            return success(emergency.to_dict(), f"Emergency status updated to {emergency.status.value}")

        @self.app.post("/emergencies/{emergency_id}/responders/{responder_id}/feedback")
        async def submit_feedback(emergency_id: str, responder_id: str, body: FeedbackRequest,
                                  user: UserPresence = Depends(current_user)):
            emergency = await self.state_machine.submit_feedback(
                user.id, emergency_id, responder_id, body.rating, body.comment
            )
            return success(emergency.to_dict(), "Feedback recorded")

        # Notifications

        @self.app.get("/notifications")
        async def list_notifications(user: UserPresence = Depends(current_user)):
            notifications = self.notification_store.list_for_user(user.id, self.notification_limit)
            return success([n.to_dict() for n in notifications])

        @self.app.patch("/notifications/read-all")
        async def mark_all_read(user: UserPresence = Depends(current_user)):
            updated = self.notification_store.mark_all_read(user.id)
            return success({"updatedCount": updated}, "All notifications marked as read")

        @self.app.patch("/notifications/{notification_id}/read")
        async def mark_read(notification_id: str, user: UserPresence = Depends(current_user)):
            notification = self.notification_store.mark_read(notification_id, user.id)
            return success(notification.to_dict(), "Notification marked as read")

        # Users

        @self.app.get("/users/me")
        async def me(user: UserPresence = Depends(current_user)):
            return success(user.to_dict())

        @self.app.patch("/users/me/location")
        async def update_location(body: LocationUpdateRequest, user: UserPresence = Depends(current_user)):
            updated = self.geo_index.update_location(user.id, parse_point(body.longitude, body.latitude))
            return success(updated.to_dict(), "Location updated")

        @self.app.patch("/users/me/availability")
        async def update_availability(body: AvailabilityUpdateRequest,
                                      user: UserPresence = Depends(current_user)):
            updated = self.geo_index.set_availability(user.id, body.availability_status)
            return success(updated.to_dict(), "Availability updated")

        # Live channel

        @self.app.websocket("/ws")
        async def live_channel(websocket: WebSocket, token: Optional[str] = None):
            token = token or bearer_token(websocket.headers.get("authorization"))
            await self.presence.serve(websocket, token)

    def _with_identities(self, emergency: Emergency, detailed: bool) -> Dict[str, Any]:
        """Incident dict with creator (and, when detailed, responder) identities resolved"""
        data = emergency.to_dict()

        creator = self.geo_index.get_user(emergency.created_by)
        data['createdBy'] = creator.public_dict() if creator else {'id': emergency.created_by, 'name': None}

        if detailed:
            responders: List[Dict[str, Any]] = []
            for entry, responder in zip(data['responders'], emergency.responders):
                user = self.geo_index.get_user(responder.user_id)
                entry['user'] = {
                    'id': responder.user_id,
                    'name': user.name if user else None,
                    'phone': user.phone if user else None,
                    'currentLocation': user.to_dict()['currentLocation'] if user else None,
                }
                responders.append(entry)
            data['responders'] = responders

        return data

    async def start(self) -> bool:
        """Start serving HTTP in a background task"""
        try:
            config = uvicorn.Config(
                app=self.app,
                host=self.host,
                port=self.port,
                log_level="debug" if self.debug else "info"
            )
            self.server = uvicorn.Server(config)
            self.server_task = asyncio.create_task(self.server.serve())

            self.is_running = True
            self.logger.info(f"Web API service started on http://{self.host}:{self.port}")
            return True

        except Exception as e:
            self.logger.error(f"Failed to start web API service: {e}")
            return False

    async def stop(self) -> bool:
        """Stop the web service"""
        self.is_running = False

        if self.server:
            self.server.should_exit = True

        if self.server_task:
            try:
                await asyncio.wait_for(self.server_task, timeout=10)
            except asyncio.TimeoutError:
                self.server_task.cancel()
                try:
                    await self.server_task
                except asyncio.CancelledError:
                    pass

        self.logger.info("Web API service stopped")
        return True
