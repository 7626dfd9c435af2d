"""
Emergency Persistence

Handles storage and retrieval of incidents including:
- Creation with an empty responder list
- Versioned saves so concurrent writers cannot silently overwrite each other
- Active and proximity listings
"""

import json
import logging
from typing import List, Optional

from beacon.core.database import DatabaseManager, get_database
from beacon.core.errors import ConflictError, NotFoundError
from beacon.models.emergency import (
    Emergency, EmergencyStatus, EmergencyType, Point, Responder, parse_timestamp, utcnow
)
from .geo_index import bounding_box, longitude_clause


OPEN_STATUSES = (EmergencyStatus.ACTIVE.value, EmergencyStatus.RESPONDING.value)


class EmergencyStore:
    """Manages incident records"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.logger = logging.getLogger(__name__)
        self.db = db or get_database()

    def create(self, emergency: Emergency) -> Emergency:
        """
        Persist a new incident

        Args:
            emergency: Incident to store

        Returns:
            The stored incident
        """
        self.db.execute_update(
            """
            INSERT INTO emergencies (id, created_by, emergency_type, description, location_lon,
                                     location_lat, address, status, responders, created_at,
                                     updated_at, resolved_at, version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                emergency.id,
                emergency.created_by,
                emergency.emergency_type.value,
                emergency.description,
                emergency.location.longitude,
                emergency.location.latitude,
                emergency.address,
                emergency.status.value,
                self._dump_responders(emergency),
                emergency.created_at.isoformat(),
                emergency.updated_at.isoformat(),
                emergency.resolved_at.isoformat() if emergency.resolved_at else None,
                emergency.version,
            )
        )
        self.logger.info(f"Created emergency {emergency.id} ({emergency.emergency_type.value}) "
                         f"for user {emergency.created_by}")
        return emergency

    def get(self, emergency_id: str) -> Optional[Emergency]:
        rows = self.db.execute_query("SELECT * FROM emergencies WHERE id = ?", (emergency_id,))
        if rows:
            return self._row_to_emergency(rows[0])
        return None

    def require(self, emergency_id: str) -> Emergency:
        emergency = self.get(emergency_id)
        if emergency is None:
            raise NotFoundError("Emergency not found")
        return emergency

    def save(self, emergency: Emergency) -> Emergency:
        """
        Write back a modified incident if nobody else changed it first

        Raises:
            ConflictError: If the stored version moved on since the incident was read
        """
        emergency.updated_at = utcnow()
        updated = self.db.execute_update(
            """
            UPDATE emergencies
            SET status = ?, responders = ?, address = ?, updated_at = ?, resolved_at = ?,
                version = version + 1
            WHERE id = ? AND version = ?
            """,
            (
                emergency.status.value,
                self._dump_responders(emergency),
                emergency.address,
                emergency.updated_at.isoformat(),
                emergency.resolved_at.isoformat() if emergency.resolved_at else None,
                emergency.id,
                emergency.version,
            )
        )

        if updated == 0:
            if self.get(emergency.id) is None:
                raise NotFoundError("Emergency not found")
            self.logger.warning(f"Version conflict saving emergency {emergency.id}")
            raise ConflictError("Emergency was modified concurrently")

        emergency.version += 1
        return emergency

    def list_active(self) -> List[Emergency]:
        """Incidents still open, newest first"""
        rows = self.db.execute_query(
            "SELECT * FROM emergencies WHERE status IN (?, ?) ORDER BY created_at DESC",
            OPEN_STATUSES
        )
        return [self._row_to_emergency(row) for row in rows]

    def find_nearby(self, center: Point, max_distance: float) -> List[Emergency]:
        """Open incidents within max_distance meters, nearest first"""
        min_lat, max_lat, min_lon, max_lon = bounding_box(center, max_distance)
        lon_sql, lon_params = longitude_clause(min_lon, max_lon)

        rows = self.db.execute_query(
            "SELECT * FROM emergencies WHERE status IN (?, ?) "
            f"AND location_lat BETWEEN ? AND ? AND {lon_sql}",
            (*OPEN_STATUSES, min_lat, max_lat, *lon_params)
        )

        matches = []
        for row in rows:
            emergency = self._row_to_emergency(row)
            distance = center.distance_to(emergency.location)
            if distance <= max_distance:
                matches.append((distance, emergency))

        matches.sort(key=lambda item: item[0])
        return [emergency for _, emergency in matches]

    def _dump_responders(self, emergency: Emergency) -> str:
        return json.dumps([responder.to_dict() for responder in emergency.responders])

    def _row_to_emergency(self, row) -> Emergency:
        """Convert database row to Emergency object"""
        responders = json.loads(row['responders']) if row['responders'] else []

        return Emergency(
            id=row['id'],
            created_by=row['created_by'],
            emergency_type=EmergencyType(row['emergency_type']),
            description=row['description'],
            location=Point(longitude=row['location_lon'], latitude=row['location_lat']),
            address=row['address'],
            status=EmergencyStatus(row['status']),
            responders=[Responder.from_dict(item) for item in responders],
            created_at=parse_timestamp(row['created_at']),
            updated_at=parse_timestamp(row['updated_at']),
            resolved_at=parse_timestamp(row['resolved_at']),
            version=row['version'],
        )
