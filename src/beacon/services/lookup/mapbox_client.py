"""
Mapbox API Client

Reverse geocoding for incident addresses and driving directions for
responder ETAs. Every failure surfaces as DependencyError so callers can
degrade instead of failing the operation.
"""

import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from beacon.core.errors import DependencyError
from beacon.models.emergency import Point


class MapboxClient:
    """
    Mapbox geocoding and directions client
    """

    def __init__(self, access_token: str, base_url: str = "https://api.mapbox.com",
                 routing_profile: str = "driving", timeout: float = 10.0,
                 user_agent: str = "Beacon/1.0"):
        self.access_token = access_token
        self.base_url = base_url.rstrip('/')
        self.routing_profile = routing_profile
        self.timeout = timeout
        self.user_agent = user_agent
        self.logger = logging.getLogger(__name__)

        # Session for connection pooling
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Async context manager entry"""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.close()

    async def start(self):
        """Initialize the HTTP session"""
        if not self.session:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={
                    'User-Agent': self.user_agent,
                    'Accept': 'application/json'
                }
            )

    async def close(self):
        """Close the HTTP session"""
        if self.session:
            await self.session.close()
            self.session = None

    async def _make_request(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make an authenticated GET request against the Mapbox API

        Args:
            url: Request URL
            params: Query parameters (the access token is added here)

        Returns:
            JSON response data

        Raises:
            DependencyError: If the token is missing or the request fails
        """
        if not self.access_token:
            raise DependencyError("Mapbox access token not configured")

        if not self.session:
            await self.start()

        query = dict(params or {})
        query['access_token'] = self.access_token

        try:
            self.logger.debug(f"Making Mapbox API request: {url}")

            async with self.session.get(url, params=query) as response:
                if response.status == 200:
                    return await response.json()
                elif response.status == 401:
                    raise DependencyError("Mapbox rejected the access token")
                elif response.status == 429:
                    raise DependencyError("Mapbox rate limit exceeded")
                else:
                    error_text = await response.text()
                    raise DependencyError(f"Mapbox HTTP {response.status}: {error_text}")

        except aiohttp.ClientError as e:
            raise DependencyError(f"Network error: {e}")
        except json.JSONDecodeError as e:
            raise DependencyError(f"Invalid JSON response: {e}")

    async def reverse_geocode(self, point: Point) -> Optional[str]:
        """
        Resolve a point to a human readable place name

        Args:
            point: Location to resolve

        Returns:
            Place name of the best match, or None when Mapbox has no match
        """
        url = (f"{self.base_url}/geocoding/v5/mapbox.places/"
               f"{point.longitude},{point.latitude}.json")
        data = await self._make_request(url, {'limit': 1})

        try:
            features = data.get('features') or []
            if not features:
                return None
            place_name = features[0].get('place_name')
        except (AttributeError, IndexError, KeyError, TypeError) as e:
            raise DependencyError(f"Unexpected geocoding response: {e}")

        if place_name is not None and not isinstance(place_name, str):
            raise DependencyError(f"Unexpected place name: {place_name!r}")
        return place_name

    async def travel_time(self, origin: Point, destination: Point) -> Optional[float]:
        """
        Estimate travel time between two points

        Returns:
            Duration of the first route in seconds, or None if no route exists
        """
        url = (f"{self.base_url}/directions/v5/mapbox/{self.routing_profile}/"
               f"{origin.longitude},{origin.latitude};"
               f"{destination.longitude},{destination.latitude}")
        data = await self._make_request(url, {'overview': 'simplified'})

        try:
            routes = data.get('routes') or []
            if not routes:
                return None
            duration = routes[0].get('duration')
            return float(duration) if duration is not None else None
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
            raise DependencyError(f"Unexpected directions response: {e}")
