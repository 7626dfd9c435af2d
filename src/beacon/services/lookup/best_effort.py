"""
Best-effort dependency calls

External lookups (geocoding, routing) may fail or hang. BestEffort bounds the
wait and turns every failure into an absent result, so call sites always
handle the Optional instead of relying on exception suppression.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from beacon.core.errors import DependencyError


T = TypeVar('T')


class BestEffort:
    """Runs an external lookup with a deadline and no failure propagation"""

    def __init__(self, name: str, timeout: float = 5.0):
        self.name = name
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    async def attempt(self, call: Awaitable[T]) -> Optional[T]:
        """
        Await a lookup, giving up after the configured timeout

        Args:
            call: Awaitable performing the lookup

        Returns:
            The lookup result, or None if it failed or timed out
        """
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"{self.name} lookup timed out after {self.timeout}s")
        except DependencyError as e:
            self.logger.warning(f"{self.name} lookup failed: {e.message}")
        return None
