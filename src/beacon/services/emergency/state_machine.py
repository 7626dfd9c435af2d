"""
Responder State Machine

Governs responder progress and incident status through explicit transition
tables. Every mutation of an incident runs under a per-incident asyncio.Lock
and is saved with a version check, so concurrent actions on one incident
cannot lose each other's updates.

Responder: notified -> en_route -> on_scene -> completed (forward only)
Incident:  active -> responding -> {resolved, cancelled} (terminal)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

from beacon.core.errors import (
    AuthorizationError, ConflictError, NotFoundError, PersistenceError, ValidationError
)
from beacon.models.emergency import (
    ETA, Emergency, EmergencyStatus, Feedback, Notification, NotificationType,
    Responder, ResponderStatus, utcnow
)
from beacon.services.lookup.best_effort import BestEffort
from beacon.services.realtime.events import Events
from beacon.services.realtime.push_gateway import PushGateway
from .emergency_store import EmergencyStore
from .geo_index import GeoIndex
from .notification_store import NotificationStore


RESPONDER_TRANSITIONS: Dict[ResponderStatus, Optional[ResponderStatus]] = {
    ResponderStatus.NOTIFIED: ResponderStatus.EN_ROUTE,
    ResponderStatus.EN_ROUTE: ResponderStatus.ON_SCENE,
    ResponderStatus.ON_SCENE: ResponderStatus.COMPLETED,
    ResponderStatus.COMPLETED: None,
}

# Timestamp stamped when a responder enters each state
RESPONDER_TIMESTAMPS: Dict[ResponderStatus, str] = {
    ResponderStatus.NOTIFIED: 'notified_at',
    ResponderStatus.EN_ROUTE: 'responded_at',
    ResponderStatus.ON_SCENE: 'arrived_at',
    ResponderStatus.COMPLETED: 'completed_at',
}

INCIDENT_TRANSITIONS: Dict[EmergencyStatus, FrozenSet[EmergencyStatus]] = {
    EmergencyStatus.ACTIVE: frozenset({
        EmergencyStatus.RESPONDING, EmergencyStatus.RESOLVED, EmergencyStatus.CANCELLED
    }),
    EmergencyStatus.RESPONDING: frozenset({EmergencyStatus.RESOLVED, EmergencyStatus.CANCELLED}),
    EmergencyStatus.RESOLVED: frozenset(),
    EmergencyStatus.CANCELLED: frozenset(),
}

RESPONSE_TITLE = "Someone is responding to your emergency"
RESPONSE_MESSAGES: Dict[ResponderStatus, str] = {
    ResponderStatus.EN_ROUTE: "A responder is on the way to help you.",
    ResponderStatus.ON_SCENE: "A responder has arrived at the scene.",
    ResponderStatus.COMPLETED: "A responder has finished assisting you.",
}


def advance_responder(responder: Responder, now=None) -> bool:
    """
    Move a responder one state forward

    Returns:
        False if the responder is already completed, True otherwise
    """
    next_status = RESPONDER_TRANSITIONS[responder.status]
    if next_status is None:
        return False

    stamp = RESPONDER_TIMESTAMPS[next_status]
    if getattr(responder, stamp) is None:
        setattr(responder, stamp, now or utcnow())
    responder.status = next_status
    return True


def can_transition(current: EmergencyStatus, new: EmergencyStatus) -> bool:
    return new in INCIDENT_TRANSITIONS[current]


def parse_status(value: Any) -> EmergencyStatus:
    try:
        return value if isinstance(value, EmergencyStatus) else EmergencyStatus(str(value))
    except ValueError:
        raise ValidationError("Invalid status")


@dataclass
class _IncidentLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass
class RespondOutcome:
    """Result of one respond action"""
    emergency: Emergency
    responder: Responder
    changed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'emergency': self.emergency.to_dict(),
            'responder': self.responder.to_dict(),
            'changed': self.changed,
        }


class ResponderStateMachine:
    """Applies responder and incident transitions and announces them"""

    def __init__(
        self,
        emergency_store: EmergencyStore,
        notification_store: NotificationStore,
        geo_index: GeoIndex,
        gateway: PushGateway,
        router=None,
        lookup: Optional[BestEffort] = None
    ):
        self.logger = logging.getLogger(__name__)
        self.emergency_store = emergency_store
        self.notification_store = notification_store
        self.geo_index = geo_index
        self.gateway = gateway
        self.router = router
        self.lookup = lookup or BestEffort("routing")
        self._locks: Dict[str, _IncidentLock] = {}

    @asynccontextmanager
    async def _lock_for(self, emergency_id: str):
        """Serialize mutations of one incident; the entry is dropped once nobody holds or awaits it"""
        entry = self._locks.get(emergency_id)
        if entry is None:
            entry = self._locks[emergency_id] = _IncidentLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(emergency_id) is entry:
                del self._locks[emergency_id]

    async def respond(self, user_id: str, emergency_id: str) -> RespondOutcome:
        """
        Apply one respond action by a user against an incident

        A user without an entry joins directly as en_route; an existing entry
        advances one state. Acting on a completed entry changes nothing.

        Raises:
            NotFoundError: If the incident does not exist
            ConflictError: If the incident is resolved or cancelled
        """
        async with self._lock_for(emergency_id):
            emergency = self.emergency_store.require(emergency_id)
            if emergency.is_closed():
                raise ConflictError(f"Cannot respond to a {emergency.status.value} emergency")

            now = utcnow()
            responder = emergency.find_responder(user_id)
            if responder is None:
                responder = Responder(
                    user_id=user_id,
                    status=ResponderStatus.EN_ROUTE,
                    notified_at=now,
                    responded_at=now
                )
                emergency.responders.append(responder)
                changed = True
            else:
                changed = advance_responder(responder, now)

            if not changed:
                self.logger.debug(f"Responder {user_id} already completed on {emergency_id}")
                return RespondOutcome(emergency=emergency, responder=responder, changed=False)

            if emergency.status == EmergencyStatus.ACTIVE:
                emergency.status = EmergencyStatus.RESPONDING

            self.emergency_store.save(emergency)

        self.logger.info(f"Responder {user_id} is now {responder.status.value} on emergency {emergency_id}")

        if responder.status == ResponderStatus.EN_ROUTE:
            eta = await self._estimate_eta(user_id, emergency)
            if eta is not None:
                emergency, responder = await self._attach_eta(emergency, responder, eta)

        await self._announce_response(emergency, responder)
        return RespondOutcome(emergency=emergency, responder=responder, changed=True)

    async def update_incident_status(self, actor_id: str, emergency_id: str, new_status: Any) -> Emergency:
        """
        Change an incident's status

        Only the reporter or a responder who is en route or on scene may do
        this, and only along the incident transition table.

        Raises:
            ValidationError: If the status is not a known value
            NotFoundError: If the incident does not exist
            AuthorizationError: If the actor may not change this incident
            ConflictError: If the transition is not allowed
        """
        status = parse_status(new_status)

        async with self._lock_for(emergency_id):
            emergency = self.emergency_store.require(emergency_id)
            self._authorize(actor_id, emergency)

            if not can_transition(emergency.status, status):
                raise ConflictError(
                    f"Cannot change emergency status from {emergency.status.value} to {status.value}"
                )

            emergency.status = status
            if status == EmergencyStatus.RESOLVED:
                emergency.resolved_at = utcnow()
            self.emergency_store.save(emergency)

        self.logger.info(f"Emergency {emergency_id} status set to {status.value} by {actor_id}")

        await self.gateway.send_to_incident_room(emergency_id, Events.EMERGENCY_STATUS_UPDATED, {
            'emergencyId': emergency_id,
            'status': status.value,
            'updatedBy': actor_id,
        })

        if status == EmergencyStatus.RESOLVED:
            await self.gateway.broadcast_all(Events.EMERGENCY_RESOLVED, {'emergencyId': emergency_id})
            if emergency.responders:
                self._request_feedback(emergency)

        return emergency

    async def submit_feedback(self, actor_id: str, emergency_id: str, responder_id: str,
                              rating: Any, comment: str = "") -> Emergency:
        """Record the reporter's rating of one responder"""
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be an integer between 1 and 5")

        async with self._lock_for(emergency_id):
            emergency = self.emergency_store.require(emergency_id)
            if emergency.created_by != actor_id:
                raise AuthorizationError("Only the reporter can leave feedback")

            responder = emergency.find_responder(responder_id)
            if responder is None:
                raise NotFoundError("Responder not found")

            responder.feedback = Feedback(rating=rating, comment=comment or "")
            self.emergency_store.save(emergency)

        self.logger.info(f"Feedback {rating}/5 recorded for responder {responder_id} on {emergency_id}")
        return emergency

    def _authorize(self, actor_id: str, emergency: Emergency) -> None:
        if emergency.created_by == actor_id:
            return
        responder = emergency.find_responder(actor_id)
        if responder is not None and responder.is_active():
            return
        raise AuthorizationError("Not authorized to update this emergency")

    async def _estimate_eta(self, user_id: str, emergency: Emergency) -> Optional[ETA]:
        if self.router is None:
            return None
        try:
            user = self.geo_index.get_user(user_id)
        except PersistenceError as e:
            self.logger.warning(f"Could not load location for responder {user_id}: {e}")
            return None
        if user is None or user.location is None:
            return None

        seconds = await self.lookup.attempt(self.router.travel_time(user.location, emergency.location))
        if seconds is None:
            return None
        return ETA.arriving_in(seconds)

    async def _attach_eta(self, emergency: Emergency, responder: Responder, eta: ETA):
        """Store an ETA on the responder if they are still en route"""
        async with self._lock_for(emergency.id):
            current = self.emergency_store.require(emergency.id)
            entry = current.find_responder(responder.user_id)
            if entry is None or entry.status != ResponderStatus.EN_ROUTE:
                return current, entry or responder

            entry.eta = eta
            try:
                self.emergency_store.save(current)
            except ConflictError as e:
                self.logger.warning(f"Dropped ETA for responder {responder.user_id}: {e.message}")
                return emergency, responder
            return current, entry

    async def _announce_response(self, emergency: Emergency, responder: Responder) -> None:
        notification = Notification(
            user_id=emergency.created_by,
            emergency_id=emergency.id,
            type=NotificationType.RESPONSE_UPDATE,
            title=RESPONSE_TITLE,
            message=RESPONSE_MESSAGES[responder.status]
        )
        self.notification_store.create(notification)

        payload = {
            'emergencyId': emergency.id,
            'responder': {
                'id': responder.user_id,
                'status': responder.status.value,
                'eta': responder.eta.to_dict() if responder.eta else None,
            },
        }

        if await self.gateway.send_to_user(emergency.created_by, Events.RESPONDER_ADDED, payload):
            self.notification_store.mark_delivered([notification.id])
        await self.gateway.send_to_incident_room(emergency.id, Events.RESPONDER_UPDATED, payload)

    def _request_feedback(self, emergency: Emergency) -> None:
        self.notification_store.create(Notification(
            user_id=emergency.created_by,
            emergency_id=emergency.id,
            type=NotificationType.FEEDBACK_REQUEST,
            title="How did your responders do?",
            message="Your emergency has been resolved. Let us know how the people who helped you did."
        ))
