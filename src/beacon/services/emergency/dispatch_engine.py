"""
Emergency Dispatch Engine

Turns an incident report into a persisted incident plus a notified audience:
- Best-effort address resolution (falls back to "Unknown location")
- Incident persistence before any fan-out starts
- Proximity matching of available users with a fresh location
- Notification records for every match, then live pushes and a map broadcast
- SOS reports with a broadened audience and an echo back to the sender
- Voice reports classified by keyword before entering the same pipeline
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from beacon.core.errors import PersistenceError, ValidationError
from beacon.core.logging import get_structured_logger
from beacon.models.emergency import (
    UNKNOWN_LOCATION, Emergency, EmergencyType, Notification, NotificationType, Point, UserPresence
)
from beacon.services.lookup.best_effort import BestEffort
from beacon.services.realtime.events import Events
from beacon.services.realtime.push_gateway import PushGateway
from .emergency_store import EmergencyStore
from .geo_index import GeoIndex
from .notification_store import NotificationStore
from .voice_classifier import VoiceIncidentClassifier


SOS_DESCRIPTION = "SOS ALERT: User needs immediate assistance!"
SOS_TITLE = "URGENT SOS ALERT NEARBY"


@dataclass
class DispatchResult:
    """Outcome of a dispatched report"""
    emergency: Emergency
    notified_users: int

    def to_dict(self) -> Dict[str, Any]:
        return {'emergency': self.emergency.to_dict(), 'notifiedUsers': self.notified_users}


def parse_point(longitude: Any, latitude: Any) -> Point:
    """
    Build a validated point from raw coordinates

    Raises:
        ValidationError: If either value is missing, non-numeric or out of range
    """
    if longitude is None or latitude is None:
        raise ValidationError("Longitude and latitude are required")
    try:
        point = Point(longitude=float(longitude), latitude=float(latitude))
    except (TypeError, ValueError):
        raise ValidationError("Coordinates must be numbers")
    if not point.is_valid():
        raise ValidationError("Invalid coordinates")
    return point


def parse_emergency_type(value: Any) -> EmergencyType:
    if isinstance(value, EmergencyType):
        return value
    try:
        return EmergencyType(str(value).strip().lower())
    except ValueError:
        valid = ', '.join(t.value for t in EmergencyType)
        raise ValidationError(f"Invalid emergency type '{value}'. Must be one of: {valid}")


class DispatchEngine:
    """
    Orchestrates incident creation and notification fan-out
    """

    def __init__(
        self,
        emergency_store: EmergencyStore,
        notification_store: NotificationStore,
        geo_index: GeoIndex,
        gateway: PushGateway,
        geocoder=None,
        lookup: Optional[BestEffort] = None,
        classifier: Optional[VoiceIncidentClassifier] = None,
        config: Dict = None
    ):
        self.logger = logging.getLogger(__name__)
        self.events_log = get_structured_logger(__name__)
        self.config = config or {}

        self.emergency_store = emergency_store
        self.notification_store = notification_store
        self.geo_index = geo_index
        self.gateway = gateway
        self.geocoder = geocoder
        self.lookup = lookup or BestEffort("geocode")
        self.classifier = classifier or VoiceIncidentClassifier()

        self.radius_meters = self.config.get('radius_meters', 5000)
        self.freshness_window = timedelta(minutes=self.config.get('freshness_minutes', 30))
        self.sos_requires_availability = self.config.get('sos_requires_availability', False)

    async def report_incident(
        self,
        creator_id: str,
        emergency_type: Any,
        description: str,
        longitude: Any,
        latitude: Any,
        address: Optional[str] = None
    ) -> DispatchResult:
        """
        Create an incident and notify available users nearby

        Args:
            creator_id: Reporting user
            emergency_type: One of the EmergencyType values
            description: What is happening
            longitude: Incident longitude
            latitude: Incident latitude
            address: Known address; resolved by geocoding when omitted

        Returns:
            DispatchResult with the stored incident and the notified count

        Raises:
            ValidationError: If any input is missing or malformed
            PersistenceError: If the incident or its notifications cannot be stored
        """
        kind = parse_emergency_type(emergency_type)
        if not description or not str(description).strip():
            raise ValidationError("Description is required")
        point = parse_point(longitude, latitude)

        if not address:
            address = await self._resolve_address(point)

        emergency = Emergency(
            created_by=creator_id,
            emergency_type=kind,
            description=str(description).strip(),
            location=point,
            address=address or UNKNOWN_LOCATION
        )
        self.emergency_store.create(emergency)

        recipients = self._find_recipients(emergency, restricted=True)
        label = kind.label
        notifications = [
            Notification(
                user_id=user.id,
                emergency_id=emergency.id,
                type=NotificationType.EMERGENCY_ALERT,
                title=f"{label.upper()} EMERGENCY NEARBY",
                message=(f"Someone needs help with a {label} emergency about "
                         f"{emergency.address}. Can you respond?")
            )
            for user in recipients
        ]

        await self._fan_out(emergency, notifications, Events.NEW_EMERGENCY,
                            {'emergency': emergency.summary()})
        return DispatchResult(emergency=emergency, notified_users=len(notifications))

    async def report_sos(
        self,
        creator_id: str,
        longitude: Any,
        latitude: Any,
        address: Optional[str] = None
    ) -> DispatchResult:
        """
        Raise an SOS incident from a live connection

        Skips geocoding, reaches everyone nearby regardless of availability
        (unless configured otherwise) and echoes the incident back to the sender.
        """
        creator = self.geo_index.require_user(creator_id)
        point = parse_point(longitude, latitude)

        emergency = Emergency(
            created_by=creator_id,
            emergency_type=EmergencyType.SOS,
            description=SOS_DESCRIPTION,
            location=point,
            address=address or UNKNOWN_LOCATION
        )
        self.emergency_store.create(emergency)

        recipients = self._find_recipients(emergency, restricted=self.sos_requires_availability)
        notifications = [
            Notification(
                user_id=user.id,
                emergency_id=emergency.id,
                type=NotificationType.SOS_ALERT,
                title=SOS_TITLE,
                message=f"{creator.name} has sent an SOS alert and needs immediate assistance!"
            )
            for user in recipients
        ]

        summary = emergency.summary()
        alert = dict(summary, createdBy=creator.public_dict())
        await self._fan_out(emergency, notifications, Events.SOS_ALERT_RECEIVED, {'emergency': alert})

        await self.gateway.send_to_user(creator_id, Events.NEW_EMERGENCY, {'emergency': summary})
        return DispatchResult(emergency=emergency, notified_users=len(notifications))

    async def report_voice(
        self,
        creator_id: str,
        text: str,
        longitude: Any,
        latitude: Any,
        address: Optional[str] = None
    ) -> Tuple[EmergencyType, DispatchResult]:
        """Classify a transcribed report and dispatch it as a regular incident"""
        if not text or not text.strip():
            raise ValidationError("Transcript is required")

        kind = self.classifier.classify(text)
        self.logger.info(f"Voice report from {creator_id} classified as {kind.value}")
        result = await self.report_incident(creator_id, kind, text, longitude, latitude, address)
        return kind, result

    async def _resolve_address(self, point: Point) -> str:
        if self.geocoder is None:
            return UNKNOWN_LOCATION
        address = await self.lookup.attempt(self.geocoder.reverse_geocode(point))
        return address or UNKNOWN_LOCATION

    def _find_recipients(self, emergency: Emergency, restricted: bool) -> List[UserPresence]:
        """Nearby users to alert; an index failure leaves the incident unannounced to individuals"""
        try:
            return self.geo_index.find_nearby(
                emergency.location,
                self.radius_meters,
                exclude_user_id=emergency.created_by,
                require_available=restricted,
                fresh_within=self.freshness_window if restricted else None
            )
        except PersistenceError as e:
            self.logger.error(f"Proximity query failed for emergency {emergency.id}: {e}")
            return []

    async def _fan_out(self, emergency: Emergency, notifications: List[Notification],
                       event: str, payload: Dict[str, Any]) -> None:
        """Persist notifications, push them to connected recipients and broadcast the marker"""
        self.notification_store.bulk_insert(notifications)

        delivered = []
        for notification in notifications:
            if await self.gateway.send_to_user(notification.user_id, event, payload):
                delivered.append(notification.id)

        if delivered:
            try:
                self.notification_store.mark_delivered(delivered)
            except PersistenceError as e:
                self.logger.warning(f"Could not record delivery for emergency {emergency.id}: {e}")

        await self.gateway.broadcast_all(Events.EMERGENCY_CREATED, {
            'emergencyId': emergency.id,
            'emergencyType': emergency.emergency_type.value,
            'location': emergency.location.coordinates,
        })

        self.events_log.info(
            "incident_dispatched",
            emergency_id=emergency.id,
            emergency_type=emergency.emergency_type.value,
            notified_users=len(notifications),
            delivered_live=len(delivered)
        )
