"""
Live channel event names and room naming
"""


class Events:
    """Event names carried in the "event" field of live frames"""
    # Connection lifecycle
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    ERROR = "error"

    # Presence (client -> server, with server acks)
    UPDATE_LOCATION = "update_location"
    LOCATION_UPDATED = "location_updated"
    UPDATE_AVAILABILITY = "update_availability"
    AVAILABILITY_UPDATED = "availability_updated"

    # Incidents
    NEW_EMERGENCY = "new_emergency"
    EMERGENCY_CREATED = "emergency_created"
    EMERGENCY_STATUS_UPDATED = "emergency_status_updated"
    EMERGENCY_RESOLVED = "emergency_resolved"
    SEND_SOS_ALERT = "send_sos_alert"
    SOS_ALERT_RECEIVED = "sos_alert_received"

    # Incident rooms and responders
    JOIN_EMERGENCY = "join_emergency"
    LEAVE_EMERGENCY = "leave_emergency"
    RESPONDER_ADDED = "responder_added"
    RESPONDER_UPDATED = "responder_updated"
    UPDATE_RESPONSE_STATUS = "update_response_status"
    RESPONDER_STATUS_UPDATED = "responder_status_updated"

    # Voice reports
    VOICE_ASSISTANT_AUDIO = "voice_assistant_audio"
    VOICE_ASSISTANT_RESULT = "voice_assistant_result"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def incident_room(emergency_id: str) -> str:
    return f"incident:{emergency_id}"
