"""
User Presence and Proximity Index

Keeps the dispatch view of users (availability, last known point, online
state) and answers "who is near this point" queries:
- SQL bounding-box prefilter on the indexed latitude/longitude columns
- Exact haversine filter and nearest-first ordering in Python
- Optional availability and location-freshness restrictions
"""

import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from beacon.core.database import DatabaseManager, get_database
from beacon.core.errors import NotFoundError, ValidationError
from beacon.models.emergency import (
    EARTH_RADIUS_METERS, Point, UserPresence, parse_timestamp, utcnow
)


def bounding_box(center: Point, radius_meters: float) -> Tuple[float, float, float, float]:
    """
    Compute a lat/lon box that contains every point within radius of center

    Returns:
        Tuple of (min_lat, max_lat, min_lon, max_lon)
    """
    lat_delta = math.degrees(radius_meters / EARTH_RADIUS_METERS)
    min_lat = max(-90.0, center.latitude - lat_delta)
    max_lat = min(90.0, center.latitude + lat_delta)

    cos_lat = math.cos(math.radians(center.latitude))
    if max_lat >= 90.0 or min_lat <= -90.0 or cos_lat < 1e-9:
        return min_lat, max_lat, -180.0, 180.0

    lon_delta = math.degrees(radius_meters / (EARTH_RADIUS_METERS * cos_lat))
    if lon_delta >= 180.0:
        return min_lat, max_lat, -180.0, 180.0

    return min_lat, max_lat, center.longitude - lon_delta, center.longitude + lon_delta


def longitude_clause(min_lon: float, max_lon: float) -> Tuple[str, Tuple[float, ...]]:
    """SQL fragment for a longitude range that may cross the antimeridian"""
    if min_lon < -180.0:
        return "(location_lon >= ? OR location_lon <= ?)", (min_lon + 360.0, max_lon)
    if max_lon > 180.0:
        return "(location_lon >= ? OR location_lon <= ?)", (min_lon, max_lon - 360.0)
    return "location_lon BETWEEN ? AND ?", (min_lon, max_lon)


class GeoIndex:
    """Proximity-queryable store of user presence"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.logger = logging.getLogger(__name__)
        self.db = db or get_database()

    def upsert_user(self, user: UserPresence) -> UserPresence:
        """Insert or replace a user's presence record"""
        now = utcnow().isoformat()
        self.db.execute_update(
            """
            INSERT INTO users (id, name, phone, availability_status, location_lon, location_lat,
                               location_updated_at, is_online, last_online, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                phone = excluded.phone,
                availability_status = excluded.availability_status,
                location_lon = excluded.location_lon,
                location_lat = excluded.location_lat,
                location_updated_at = excluded.location_updated_at,
                is_online = excluded.is_online,
                last_online = excluded.last_online,
                updated_at = excluded.updated_at
            """,
            (
                user.id,
                user.name,
                user.phone,
                user.availability_status,
                user.location.longitude if user.location else None,
                user.location.latitude if user.location else None,
                user.location_updated_at.isoformat() if user.location_updated_at else None,
                user.is_online,
                user.last_online.isoformat() if user.last_online else None,
                now,
            )
        )
        return user

    def get_user(self, user_id: str) -> Optional[UserPresence]:
        rows = self.db.execute_query("SELECT * FROM users WHERE id = ?", (user_id,))
        if rows:
            return self._row_to_user(rows[0])
        return None

    def require_user(self, user_id: str) -> UserPresence:
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def update_location(self, user_id: str, point: Point) -> UserPresence:
        """
        Record a user's current point and stamp its freshness

        Raises:
            ValidationError: If the coordinates are out of range
            NotFoundError: If the user does not exist
        """
        if not point.is_valid():
            raise ValidationError("Invalid coordinates")

        now = utcnow()
        updated = self.db.execute_update(
            """
            UPDATE users SET location_lon = ?, location_lat = ?, location_updated_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (point.longitude, point.latitude, now.isoformat(), now.isoformat(), user_id)
        )
        if updated == 0:
            raise NotFoundError("User not found")

        self.logger.debug(f"Updated location for user {user_id}")
        return self.require_user(user_id)

    def set_availability(self, user_id: str, available: bool) -> UserPresence:
        updated = self.db.execute_update(
            "UPDATE users SET availability_status = ?, updated_at = ? WHERE id = ?",
            (bool(available), utcnow().isoformat(), user_id)
        )
        if updated == 0:
            raise NotFoundError("User not found")
        return self.require_user(user_id)

    def set_online(self, user_id: str, online: bool) -> None:
        """Mark a user online, or offline with a last-seen stamp"""
        now = utcnow().isoformat()
        if online:
            self.db.execute_update(
                "UPDATE users SET is_online = ?, updated_at = ? WHERE id = ?",
                (True, now, user_id)
            )
        else:
            self.db.execute_update(
                "UPDATE users SET is_online = ?, last_online = ?, updated_at = ? WHERE id = ?",
                (False, now, now, user_id)
            )

    def find_nearby(
        self,
        center: Point,
        radius_meters: float,
        exclude_user_id: Optional[str] = None,
        require_available: bool = True,
        fresh_within: Optional[timedelta] = None,
        now: Optional[datetime] = None
    ) -> List[UserPresence]:
        """
        Find users whose last known point lies within radius of center

        Args:
            center: Point to search around
            radius_meters: Search radius
            exclude_user_id: User to leave out (usually the reporter)
            require_available: Only users flagged available
            fresh_within: Only users whose location was updated within this window
            now: Reference time for the freshness check

        Returns:
            Matching users ordered nearest first
        """
        min_lat, max_lat, min_lon, max_lon = bounding_box(center, radius_meters)
        lon_sql, lon_params = longitude_clause(min_lon, max_lon)

        query = (
            "SELECT * FROM users WHERE location_lat IS NOT NULL AND location_lon IS NOT NULL "
            f"AND location_lat BETWEEN ? AND ? AND {lon_sql}"
        )
        params: List = [min_lat, max_lat, *lon_params]

        if exclude_user_id:
            query += " AND id != ?"
            params.append(exclude_user_id)
        if require_available:
            query += " AND availability_status = 1"

        rows = self.db.execute_query(query, tuple(params))

        cutoff = None
        if fresh_within is not None:
            cutoff = (now or utcnow()) - fresh_within

        matches = []
        for row in rows:
            user = self._row_to_user(row)
            if cutoff is not None and (user.location_updated_at is None
                                       or user.location_updated_at < cutoff):
                continue
            distance = center.distance_to(user.location)
            if distance <= radius_meters:
                matches.append((distance, user))

        matches.sort(key=lambda item: item[0])
        return [user for _, user in matches]

    def _row_to_user(self, row) -> UserPresence:
        location = None
        if row['location_lat'] is not None and row['location_lon'] is not None:
            location = Point(longitude=row['location_lon'], latitude=row['location_lat'])

        return UserPresence(
            id=row['id'],
            name=row['name'],
            phone=row['phone'],
            availability_status=bool(row['availability_status']),
            location=location,
            location_updated_at=parse_timestamp(row['location_updated_at']),
            is_online=bool(row['is_online']),
            last_online=parse_timestamp(row['last_online']),
        )
