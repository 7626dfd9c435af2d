"""
Integration tests for the REST API

Drives the FastAPI application end to end against a real database:
reporting, responding, status changes, notifications and user updates.
"""
import pytest
from fastapi.testclient import TestClient

from beacon.models.emergency import Point, UserPresence, utcnow


pytestmark = pytest.mark.integration

SCENE = Point(longitude=-3.7038, latitude=40.4168)


def add_user(services, user_id, name, point=None, available=True, phone=None):
    return services.geo_index.upsert_user(UserPresence(
        id=user_id,
        name=name,
        phone=phone,
        availability_status=available,
        location=point,
        location_updated_at=utcnow() if point else None,
    ))


class TestEmergencyAPI:
    """End-to-end tests of the REST surface"""

    @pytest.fixture
    def client(self, services):
        with TestClient(services.web.app) as client:
            yield client

    @pytest.fixture
    def people(self, services):
        add_user(services, "rita", "Rita", SCENE)
        add_user(services, "hugo", "Hugo", Point(longitude=-3.6950, latitude=40.4200), phone="+34600000001")
        add_user(services, "ines", "Ines", Point(longitude=-3.7100, latitude=40.4120))
        add_user(services, "otto", "Otto", Point(longitude=-3.7038, latitude=40.5500))
        return services

    @pytest.fixture
    def auth(self, make_token):
        def _auth(user_id):
            return {"Authorization": f"Bearer {make_token(user_id)}"}
        return _auth

    def _report(self, client, auth, user_id="rita", **overrides):
        body = {
            "emergencyType": "fire",
            "description": "Smoke from the bakery",
            "longitude": SCENE.longitude,
            "latitude": SCENE.latitude,
        }
        body.update(overrides)
        return client.post("/emergencies", json=body, headers=auth(user_id))

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_token(self, client, people):
        response = client.get("/emergencies/active")

        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "message": "Not authorized, no token",
            "error": "AuthError",
        }

    def test_bad_and_expired_tokens(self, client, people, make_token):
        bad = client.get("/emergencies/active", headers={"Authorization": "Bearer nonsense"})
        expired = client.get("/emergencies/active",
                             headers={"Authorization": f"Bearer {make_token('rita', expires_in=-60)}"})
        wrong_secret = client.get("/emergencies/active",
                                  headers={"Authorization": f"Bearer {make_token('rita', secret='x')}"})

        for response in (bad, expired, wrong_secret):
            assert response.status_code == 401
            assert response.json()["message"] == "Invalid token"

    def test_token_for_unknown_user(self, client, auth):
        response = client.get("/users/me", headers=auth("nobody"))

        assert response.status_code == 401
        assert response.json()["message"] == "User not found"

    def test_report_notifies_nearby_users(self, client, people, auth):
        response = self._report(client, auth)

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Emergency created"
        assert body["data"]["notifiedUsers"] == 2
        emergency = body["data"]["emergency"]
        assert emergency["status"] == "active"
        assert emergency["location"]["address"] == "Unknown location"
        assert emergency["location"]["coordinates"] == [SCENE.longitude, SCENE.latitude]

        alerts = client.get("/notifications", headers=auth("hugo")).json()["data"]
        assert [n["title"] for n in alerts] == ["FIRE EMERGENCY NEARBY"]
        assert client.get("/notifications", headers=auth("otto")).json()["data"] == []

    def test_report_with_missing_fields(self, client, people, auth):
        response = client.post("/emergencies", json={"emergencyType": "fire"}, headers=auth("rita"))

        assert response.status_code == 400
        assert response.json()["message"] == "Missing required fields"
        assert response.json()["success"] is False

    @pytest.mark.parametrize("overrides", [
        {"emergencyType": "alien"},
        {"description": ""},
        {"latitude": 95.0},
        {"longitude": "east"},
    ])
    def test_report_with_invalid_values(self, client, people, auth, overrides):
        response = self._report(client, auth, **overrides)

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_active_list_resolves_creator(self, client, people, auth):
        created = self._report(client, auth).json()["data"]["emergency"]

        active = client.get("/emergencies/active", headers=auth("hugo")).json()["data"]

        assert [e["id"] for e in active] == [created["id"]]
        assert active[0]["createdBy"] == {"id": "rita", "name": "Rita"}

    def test_nearby_listing(self, client, people, auth):
        created = self._report(client, auth).json()["data"]["emergency"]

        near = client.get("/emergencies/nearby", headers=auth("hugo"),
                          params={"longitude": -3.7000, "latitude": 40.4170})
        far = client.get("/emergencies/nearby", headers=auth("otto"),
                         params={"longitude": -3.7038, "latitude": 40.5500, "maxDistance": 1000})

        assert [e["id"] for e in near.json()["data"]] == [created["id"]]
        assert far.json()["data"] == []

    def test_nearby_requires_coordinates(self, client, people, auth):
        response = client.get("/emergencies/nearby", headers=auth("hugo"))

        assert response.status_code == 400

    def test_unknown_emergency(self, client, people, auth):
        response = client.get("/emergencies/does-not-exist", headers=auth("rita"))

        assert response.status_code == 404
        assert response.json()["message"] == "Emergency not found"

    def test_respond_and_view_responder_identity(self, client, people, auth):
        emergency_id = self._report(client, auth).json()["data"]["emergency"]["id"]

        first = client.post(f"/emergencies/{emergency_id}/respond", headers=auth("hugo"))
        second = client.post(f"/emergencies/{emergency_id}/respond", headers=auth("hugo"))

        assert first.status_code == 200
        assert first.json()["data"]["responder"]["status"] == "en_route"
        assert first.json()["data"]["emergency"]["status"] == "responding"
        assert second.json()["data"]["responder"]["status"] == "on_scene"

        detail = client.get(f"/emergencies/{emergency_id}", headers=auth("rita")).json()["data"]
        assert detail["createdBy"] == {"id": "rita", "name": "Rita"}
        responder = detail["responders"][0]
        assert responder["user"]["id"] == "hugo"
        assert responder["user"]["name"] == "Hugo"
        assert responder["user"]["phone"] == "+34600000001"
        assert responder["user"]["currentLocation"]["type"] == "Point"

        updates = client.get("/notifications", headers=auth("rita")).json()["data"]
        assert {n["type"] for n in updates} == {"response_update"}

    def test_status_changes(self, client, people, auth):
        emergency_id = self._report(client, auth).json()["data"]["emergency"]["id"]

        outsider = client.patch(f"/emergencies/{emergency_id}/status",
                                json={"status": "resolved"}, headers=auth("otto"))
        assert outsider.status_code == 403
        assert outsider.json()["message"] == "Not authorized to update this emergency"

        invalid = client.patch(f"/emergencies/{emergency_id}/status",
                               json={"status": "done"}, headers=auth("rita"))
        assert invalid.status_code == 400
        assert invalid.json()["message"] == "Invalid status"

        resolved = client.patch(f"/emergencies/{emergency_id}/status",
                                json={"status": "resolved"}, headers=auth("rita"))
        assert resolved.status_code == 200
        assert resolved.json()["data"]["status"] == "resolved"
        assert resolved.json()["data"]["resolvedAt"] is not None

        reopen = client.patch(f"/emergencies/{emergency_id}/status",
                              json={"status": "active"}, headers=auth("rita"))
        assert reopen.status_code == 409

        late = client.post(f"/emergencies/{emergency_id}/respond", headers=auth("hugo"))
        assert late.status_code == 409

        assert client.get("/emergencies/active", headers=auth("rita")).json()["data"] == []

    def test_feedback_after_resolution(self, client, people, auth):
        emergency_id = self._report(client, auth).json()["data"]["emergency"]["id"]
        client.post(f"/emergencies/{emergency_id}/respond", headers=auth("hugo"))
        client.patch(f"/emergencies/{emergency_id}/status", json={"status": "resolved"}, headers=auth("rita"))

        rated = client.post(f"/emergencies/{emergency_id}/responders/hugo/feedback",
                            json={"rating": 5, "comment": "Arrived in minutes"}, headers=auth("rita"))
        out_of_range = client.post(f"/emergencies/{emergency_id}/responders/hugo/feedback",
                                   json={"rating": 9}, headers=auth("rita"))
        not_creator = client.post(f"/emergencies/{emergency_id}/responders/hugo/feedback",
                                  json={"rating": 3}, headers=auth("ines"))

        assert rated.status_code == 200
        assert rated.json()["data"]["responders"][0]["feedback"] == {
            "rating": 5, "comment": "Arrived in minutes"
        }
        assert out_of_range.status_code == 400
        assert not_creator.status_code == 403

        types = {n["type"] for n in client.get("/notifications", headers=auth("rita")).json()["data"]}
        assert "feedback_request" in types

    def test_notification_read_tracking(self, client, people, auth):
        self._report(client, auth)
        self._report(client, auth, emergencyType="medical", description="Fainted")
        alerts = client.get("/notifications", headers=auth("hugo")).json()["data"]
        assert len(alerts) == 2

        read = client.patch(f"/notifications/{alerts[0]['id']}/read", headers=auth("hugo"))
        assert read.status_code == 200
        assert read.json()["data"]["status"] == "read"
        assert read.json()["data"]["readAt"] is not None

        foreign = client.patch(f"/notifications/{alerts[1]['id']}/read", headers=auth("ines"))
        assert foreign.status_code == 404

        read_all = client.patch("/notifications/read-all", headers=auth("hugo"))
        assert read_all.json()["data"] == {"updatedCount": 1}

        statuses = {n["status"] for n in client.get("/notifications", headers=auth("hugo")).json()["data"]}
        assert statuses == {"read"}

    def test_user_profile_location_and_availability(self, client, people, auth):
        me = client.get("/users/me", headers=auth("ines")).json()["data"]
        assert me["name"] == "Ines"
        assert me["availabilityStatus"] is True

        moved = client.patch("/users/me/location", json={"longitude": 2.1734, "latitude": 41.3851},
                             headers=auth("ines"))
        assert moved.status_code == 200
        assert moved.json()["data"]["currentLocation"]["coordinates"] == [2.1734, 41.3851]

        bad_move = client.patch("/users/me/location", json={"longitude": 2.1734, "latitude": 141.0},
                                headers=auth("ines"))
        assert bad_move.status_code == 400
        assert bad_move.json()["message"] == "Invalid coordinates"

        busy = client.patch("/users/me/availability", json={"availabilityStatus": False},
                            headers=auth("ines"))
        assert busy.json()["data"]["availabilityStatus"] is False

        # Ines moved away and went unavailable: no alert for the next report
        self._report(client, auth)
        assert client.get("/notifications", headers=auth("ines")).json()["data"] == []
