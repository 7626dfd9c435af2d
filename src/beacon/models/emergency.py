"""
Emergency data models for Beacon

Defines incidents, their embedded responders, notification records and the
user presence view consumed by proximity matching.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


UNKNOWN_LOCATION = "Unknown location"
EARTH_RADIUS_METERS = 6371000.0


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO timestamp, treating naive values as UTC"""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class EmergencyType(Enum):
    """Incident type enumeration"""
    FIRE = "fire"
    MEDICAL = "medical"
    SECURITY = "security"
    NATURAL_DISASTER = "natural_disaster"
    SOS = "sos"
    OTHER = "other"

    @property
    def label(self) -> str:
        """Human readable label, e.g. 'natural disaster'"""
        return self.value.replace('_', ' ')


class EmergencyStatus(Enum):
    """Incident status enumeration"""
    ACTIVE = "active"
    RESPONDING = "responding"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class ResponderStatus(Enum):
    """Per-responder progress enumeration"""
    NOTIFIED = "notified"
    EN_ROUTE = "en_route"
    ON_SCENE = "on_scene"
    COMPLETED = "completed"


class NotificationType(Enum):
    """Notification type enumeration"""
    EMERGENCY_ALERT = "emergency_alert"
    SOS_ALERT = "sos_alert"
    RESPONSE_UPDATE = "response_update"
    SYSTEM = "system"
    FEEDBACK_REQUEST = "feedback_request"


class NotificationStatus(Enum):
    """Notification delivery status enumeration"""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


@dataclass
class Point:
    """Geographic point stored as (longitude, latitude)"""
    longitude: float
    latitude: float

    def is_valid(self) -> bool:
        return -180.0 <= self.longitude <= 180.0 and -90.0 <= self.latitude <= 90.0

    def distance_to(self, other: 'Point') -> float:
        """
        Calculate great-circle distance to another point using the haversine formula

        Args:
            other: Point to measure to

        Returns:
            Distance in meters
        """
        lat1, lon1 = math.radians(self.latitude), math.radians(self.longitude)
        lat2, lon2 = math.radians(other.latitude), math.radians(other.longitude)

        dlat = lat2 - lat1
        dlon = lon2 - lon1

        a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
        c = 2 * math.asin(min(1.0, math.sqrt(a)))

        return EARTH_RADIUS_METERS * c

    @property
    def coordinates(self) -> List[float]:
        return [self.longitude, self.latitude]


@dataclass
class ETA:
    """Travel estimate attached to an en-route responder; timestamp is the expected arrival"""
    seconds: float
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def arriving_in(cls, seconds: float, now: Optional[datetime] = None) -> 'ETA':
        start = now or utcnow()
        return cls(seconds=seconds, timestamp=start + timedelta(seconds=seconds))

    def to_dict(self) -> Dict[str, Any]:
        return {'seconds': self.seconds, 'timestamp': self.timestamp.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ETA':
        return cls(seconds=data['seconds'], timestamp=parse_timestamp(data['timestamp']))


@dataclass
class Feedback:
    """Creator's rating of a responder after the fact"""
    rating: int
    comment: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {'rating': self.rating, 'comment': self.comment}


@dataclass
class Responder:
    """A user's participation in one incident"""
    user_id: str
    status: ResponderStatus = ResponderStatus.NOTIFIED
    notified_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    eta: Optional[ETA] = None
    feedback: Optional[Feedback] = None

    def is_active(self) -> bool:
        """Responders still underway or on scene may update incident status"""
        return self.status in (ResponderStatus.EN_ROUTE, ResponderStatus.ON_SCENE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user': self.user_id,
            'status': self.status.value,
            'notifiedAt': _isoformat(self.notified_at),
            'respondedAt': _isoformat(self.responded_at),
            'arrivedAt': _isoformat(self.arrived_at),
            'completedAt': _isoformat(self.completed_at),
            'eta': self.eta.to_dict() if self.eta else None,
            'feedback': self.feedback.to_dict() if self.feedback else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Responder':
        return cls(
            user_id=data['user'],
            status=ResponderStatus(data['status']),
            notified_at=parse_timestamp(data.get('notifiedAt')),
            responded_at=parse_timestamp(data.get('respondedAt')),
            arrived_at=parse_timestamp(data.get('arrivedAt')),
            completed_at=parse_timestamp(data.get('completedAt')),
            eta=ETA.from_dict(data['eta']) if data.get('eta') else None,
            feedback=Feedback(**data['feedback']) if data.get('feedback') else None,
        )


@dataclass
class Emergency:
    """A reported incident and its responders"""
    created_by: str
    emergency_type: EmergencyType
    description: str
    location: Point
    address: str = UNKNOWN_LOCATION
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: EmergencyStatus = EmergencyStatus.ACTIVE
    responders: List[Responder] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    version: int = 1

    def is_closed(self) -> bool:
        return self.status in (EmergencyStatus.RESOLVED, EmergencyStatus.CANCELLED)

    def find_responder(self, user_id: str) -> Optional[Responder]:
        for responder in self.responders:
            if responder.user_id == user_id:
                return responder
        return None

    def summary(self) -> Dict[str, Any]:
        """Compact form carried in targeted pushes"""
        return {
            'id': self.id,
            'emergencyType': self.emergency_type.value,
            'description': self.description,
            'location': self.location_dict(),
            'status': self.status.value,
            'createdAt': self.created_at.isoformat(),
        }

    def location_dict(self) -> Dict[str, Any]:
        return {
            'type': 'Point',
            'coordinates': self.location.coordinates,
            'address': self.address,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'createdBy': self.created_by,
            'emergencyType': self.emergency_type.value,
            'description': self.description,
            'location': self.location_dict(),
            'status': self.status.value,
            'responders': [responder.to_dict() for responder in self.responders],
            'createdAt': self.created_at.isoformat(),
            'updatedAt': self.updated_at.isoformat(),
            'resolvedAt': _isoformat(self.resolved_at),
        }


@dataclass
class Notification:
    """Durable record of an alert sent to one user"""
    user_id: str
    type: NotificationType
    title: str
    message: str
    emergency_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: NotificationStatus = NotificationStatus.SENT
    sent_at: datetime = field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user': self.user_id,
            'emergency': self.emergency_id,
            'type': self.type.value,
            'title': self.title,
            'message': self.message,
            'status': self.status.value,
            'sentAt': self.sent_at.isoformat(),
            'deliveredAt': _isoformat(self.delivered_at),
            'readAt': _isoformat(self.read_at),
            'createdAt': self.created_at.isoformat(),
        }


@dataclass
class UserPresence:
    """Dispatch view of a user: identity, availability and last known point"""
    id: str
    name: str
    phone: Optional[str] = None
    availability_status: bool = True
    location: Optional[Point] = None
    location_updated_at: Optional[datetime] = None
    is_online: bool = False
    last_online: Optional[datetime] = None

    def public_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'phone': self.phone,
            'availabilityStatus': self.availability_status,
            'currentLocation': {
                'type': 'Point',
                'coordinates': self.location.coordinates,
                'lastUpdated': _isoformat(self.location_updated_at),
            } if self.location else None,
            'isOnline': self.is_online,
            'lastOnline': _isoformat(self.last_online),
        }
