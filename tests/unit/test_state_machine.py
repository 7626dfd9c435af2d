"""
Unit tests for responder and incident transitions.
"""
import asyncio

import pytest

from beacon.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from beacon.models.emergency import (
    Emergency, EmergencyStatus, EmergencyType, NotificationType, Point, Responder, ResponderStatus,
    utcnow
)
from beacon.services.emergency.state_machine import (
    ResponderStateMachine, advance_responder, can_transition
)
from beacon.services.lookup.best_effort import BestEffort
from beacon.services.realtime.events import Events
from tests.base import DatabaseTestCase, offset
from tests.mocks.external_service_mocks import FailingLookup, MockRouter, RecordingGateway


SCENE = Point(longitude=-0.1276, latitude=51.5072)


class TestTransitionTables:
    """Test the pure transition helpers"""

    def test_responder_advances_one_step_and_stamps_once(self):
        responder = Responder(user_id="u1")

        assert advance_responder(responder)
        assert responder.status == ResponderStatus.EN_ROUTE
        first_response = responder.responded_at
        assert first_response is not None

        assert advance_responder(responder)
        assert responder.status == ResponderStatus.ON_SCENE
        assert responder.arrived_at is not None
        assert responder.responded_at == first_response

        assert advance_responder(responder)
        assert responder.status == ResponderStatus.COMPLETED
        assert responder.completed_at is not None

    def test_completed_responder_does_not_move(self):
        responder = Responder(user_id="u1", status=ResponderStatus.COMPLETED)

        assert not advance_responder(responder)
        assert responder.status == ResponderStatus.COMPLETED

    @pytest.mark.parametrize("current,new,allowed", [
        (EmergencyStatus.ACTIVE, EmergencyStatus.RESPONDING, True),
        (EmergencyStatus.ACTIVE, EmergencyStatus.RESOLVED, True),
        (EmergencyStatus.RESPONDING, EmergencyStatus.CANCELLED, True),
        (EmergencyStatus.RESPONDING, EmergencyStatus.ACTIVE, False),
        (EmergencyStatus.RESOLVED, EmergencyStatus.ACTIVE, False),
        (EmergencyStatus.CANCELLED, EmergencyStatus.RESPONDING, False),
        (EmergencyStatus.ACTIVE, EmergencyStatus.ACTIVE, False),
    ])
    def test_incident_transition_table(self, current, new, allowed):
        assert can_transition(current, new) is allowed


class TestResponderStateMachine(DatabaseTestCase):
    """Test respond, status updates and feedback against real storage"""

    def setup_method(self):
        super().setup_method()
        self.gateway = RecordingGateway(connected=["creator"])
        self.router = MockRouter(seconds=300.0)
        self.machine = ResponderStateMachine(
            self.emergency_store,
            self.notification_store,
            self.geo_index,
            self.gateway,
            router=self.router,
            lookup=BestEffort("routing", 0.2)
        )
        self.add_user("creator", point=SCENE)
        self.add_user("helper", point=offset(SCENE, north_km=2))
        self.add_user("stranger", point=offset(SCENE, east_km=1))
        self.emergency = self.emergency_store.create(Emergency(
            created_by="creator",
            emergency_type=EmergencyType.MEDICAL,
            description="Cyclist down",
            location=SCENE
        ))

    @pytest.mark.asyncio
    async def test_first_respond_creates_en_route_entry_and_marks_responding(self):
        outcome = await self.machine.respond("helper", self.emergency.id)

        assert outcome.changed
        assert outcome.responder.status == ResponderStatus.EN_ROUTE
        assert outcome.responder.responded_at is not None

        stored = self.emergency_store.get(self.emergency.id)
        assert stored.status == EmergencyStatus.RESPONDING
        assert [r.user_id for r in stored.responders] == ["helper"]

    @pytest.mark.asyncio
    async def test_second_respond_moves_on_scene_keeping_responded_at(self):
        first = await self.machine.respond("helper", self.emergency.id)
        second = await self.machine.respond("helper", self.emergency.id)

        assert second.responder.status == ResponderStatus.ON_SCENE
        assert second.responder.arrived_at is not None
        assert second.responder.responded_at == first.responder.responded_at
        assert len(self.emergency_store.get(self.emergency.id).responders) == 1

    @pytest.mark.asyncio
    async def test_respond_after_completion_is_a_no_op(self):
        for _ in range(3):
            await self.machine.respond("helper", self.emergency.id)
        before = self.emergency_store.get(self.emergency.id)

        outcome = await self.machine.respond("helper", self.emergency.id)

        assert not outcome.changed
        assert outcome.responder.status == ResponderStatus.COMPLETED
        after = self.emergency_store.get(self.emergency.id)
        assert after.version == before.version

    @pytest.mark.asyncio
    async def test_eta_is_attached_when_route_is_known(self):
        before = utcnow()
        outcome = await self.machine.respond("helper", self.emergency.id)

        assert outcome.responder.eta is not None
        assert outcome.responder.eta.seconds == 300.0
        arrival = (outcome.responder.eta.timestamp - before).total_seconds()
        assert 300.0 <= arrival < 310.0
        stored = self.emergency_store.get(self.emergency.id).find_responder("helper")
        assert stored.eta.seconds == 300.0

    @pytest.mark.asyncio
    async def test_routing_failure_still_advances_responder(self):
        self.machine.router = FailingLookup()

        outcome = await self.machine.respond("helper", self.emergency.id)

        assert outcome.responder.status == ResponderStatus.EN_ROUTE
        assert outcome.responder.eta is None

    @pytest.mark.asyncio
    async def test_respond_notifies_creator_and_incident_room(self):
        await self.machine.respond("helper", self.emergency.id)

        assert self.gateway.events_for("creator") == [Events.RESPONDER_ADDED]
        room_events = [event for _, event, _ in self.gateway.room_messages]
        assert room_events == [Events.RESPONDER_UPDATED]

        updates = self.notification_store.list_for_user("creator")
        assert len(updates) == 1
        assert updates[0].type == NotificationType.RESPONSE_UPDATE
        assert updates[0].message == "A responder is on the way to help you."

    @pytest.mark.asyncio
    async def test_respond_to_closed_incident_conflicts(self):
        await self.machine.update_incident_status("creator", self.emergency.id, "cancelled")

        with pytest.raises(ConflictError):
            await self.machine.respond("helper", self.emergency.id)

    @pytest.mark.asyncio
    async def test_respond_to_unknown_incident(self):
        with pytest.raises(NotFoundError):
            await self.machine.respond("helper", "missing")

    @pytest.mark.asyncio
    async def test_incident_locks_are_released_after_use(self):
        for i in range(50):
            with pytest.raises(NotFoundError):
                await self.machine.respond("helper", f"missing-{i}")
            with pytest.raises(NotFoundError):
                await self.machine.submit_feedback("creator", f"missing-{i}", "helper", 4)

        await asyncio.gather(*(
            self.machine.respond(user_id, self.emergency.id) for user_id in ("helper", "stranger")
        ))
        await self.machine.update_incident_status("creator", self.emergency.id, "resolved")
        await self.machine.submit_feedback("creator", self.emergency.id, "helper", 5)

        assert self.machine._locks == {}

    @pytest.mark.asyncio
    async def test_creator_resolves_incident(self):
        resolved = await self.machine.update_incident_status("creator", self.emergency.id, "resolved")

        assert resolved.status == EmergencyStatus.RESOLVED
        assert resolved.resolved_at is not None
        assert self.emergency_store.get(self.emergency.id).resolved_at is not None

        resolved_broadcasts = [b for b in self.gateway.broadcasts if b[0] == Events.EMERGENCY_RESOLVED]
        assert resolved_broadcasts == [(Events.EMERGENCY_RESOLVED, {"emergencyId": self.emergency.id})]
        assert self.gateway.room_messages[-1][1] == Events.EMERGENCY_STATUS_UPDATED

    @pytest.mark.asyncio
    async def test_active_responder_may_update_status(self):
        await self.machine.respond("helper", self.emergency.id)

        updated = await self.machine.update_incident_status("helper", self.emergency.id, "resolved")

        assert updated.status == EmergencyStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_outsider_cannot_update_status(self):
        with pytest.raises(AuthorizationError):
            await self.machine.update_incident_status("stranger", self.emergency.id, "resolved")

        stored = self.emergency_store.get(self.emergency.id)
        assert stored.status == EmergencyStatus.ACTIVE
        assert stored.resolved_at is None
        assert self.gateway.broadcasts == []

    @pytest.mark.asyncio
    async def test_completed_responder_loses_status_rights(self):
        for _ in range(3):
            await self.machine.respond("helper", self.emergency.id)

        with pytest.raises(AuthorizationError):
            await self.machine.update_incident_status("helper", self.emergency.id, "resolved")

    @pytest.mark.asyncio
    async def test_backward_and_reopen_transitions_conflict(self):
        await self.machine.respond("helper", self.emergency.id)
        with pytest.raises(ConflictError):
            await self.machine.update_incident_status("creator", self.emergency.id, "active")

        await self.machine.update_incident_status("creator", self.emergency.id, "resolved")
        with pytest.raises(ConflictError):
            await self.machine.update_incident_status("creator", self.emergency.id, "active")

    @pytest.mark.asyncio
    async def test_unknown_status_is_rejected(self):
        with pytest.raises(ValidationError):
            await self.machine.update_incident_status("creator", self.emergency.id, "finished")

    @pytest.mark.asyncio
    async def test_resolution_requests_feedback_when_someone_helped(self):
        await self.machine.respond("helper", self.emergency.id)
        await self.machine.update_incident_status("creator", self.emergency.id, "resolved")

        types = [n.type for n in self.notification_store.list_for_user("creator")]
        assert NotificationType.FEEDBACK_REQUEST in types

    @pytest.mark.asyncio
    async def test_creator_rates_responder(self):
        await self.machine.respond("helper", self.emergency.id)

        emergency = await self.machine.submit_feedback("creator", self.emergency.id, "helper", 5, "Fast")

        feedback = emergency.find_responder("helper").feedback
        assert feedback.rating == 5
        assert feedback.comment == "Fast"

    @pytest.mark.asyncio
    async def test_feedback_rules(self):
        await self.machine.respond("helper", self.emergency.id)

        with pytest.raises(ValidationError):
            await self.machine.submit_feedback("creator", self.emergency.id, "helper", 6)
        with pytest.raises(AuthorizationError):
            await self.machine.submit_feedback("stranger", self.emergency.id, "helper", 4)
        with pytest.raises(NotFoundError):
            await self.machine.submit_feedback("creator", self.emergency.id, "stranger", 4)

    @pytest.mark.asyncio
    async def test_concurrent_responds_keep_every_update(self):
        for index in range(5):
            self.add_user(f"volunteer{index}", point=offset(SCENE, north_km=index * 0.5))

        await asyncio.gather(*[
            self.machine.respond(f"volunteer{index}", self.emergency.id) for index in range(5)
        ])

        stored = self.emergency_store.get(self.emergency.id)
        assert sorted(r.user_id for r in stored.responders) == [f"volunteer{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_concurrent_responds_by_one_user_advance_without_duplicates(self):
        await asyncio.gather(*[self.machine.respond("helper", self.emergency.id) for _ in range(4)])

        stored = self.emergency_store.get(self.emergency.id)
        assert len(stored.responders) == 1
        assert stored.responders[0].status == ResponderStatus.COMPLETED
