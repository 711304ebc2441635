"""
ChildGuard - SOS Handler

Acquires a single location fix and records a high-priority SOS alert,
independent of any classification activity for the same child.

A location-less SOS is dropped rather than emitted without coordinates:
if no fix arrives within the bounded wait, LocationUnavailableError is
raised and no alert is created or published.

Publication happens through the alert log's insert notification, so the
alert reaches guardians only once it is durably recorded.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from childguard.core.exceptions import (
    LocationUnavailableError,
    PersistFailureError,
    StoreError,
)
from childguard.core.history_store import AlertLog
from childguard.core.types import (
    Alert,
    ChildId,
    GeoLocation,
    SOSAlertDetails,
    utc_now,
)
from childguard.services.location import LocationProvider, UnavailableLocationProvider

logger = logging.getLogger(__name__)


class SOSHandler:
    """
    Turns an SOS signal into an alert with coordinates.

    Attributes:
        alert_log: Alert log the SOS alert is appended to
        location_provider: Default fix provider (overridable per call)
        location_timeout_seconds: Bounded wait for the fix
    """

    def __init__(
        self,
        alert_log: AlertLog,
        location_provider: Optional[LocationProvider] = None,
        location_timeout_seconds: float = 10.0,
    ):
        self._alert_log = alert_log
        self._location_provider = location_provider or UnavailableLocationProvider()
        self._location_timeout = location_timeout_seconds

    async def trigger_sos(
        self,
        child_id: ChildId,
        location_provider: Optional[LocationProvider] = None,
    ) -> Alert:
        """
        Emit an SOS alert for a child.

        Args:
            child_id: Child raising the SOS
            location_provider: Fix provider for this call (defaults to the
                handler's provider)

        Returns:
            The recorded SOS alert

        Raises:
            LocationUnavailableError: No fix within the bounded wait
            PersistFailureError: The alert could not be recorded
        """
        provider = location_provider or self._location_provider
        location = await self._acquire_fix(child_id, provider)

        alert = Alert(
            child_id=child_id,
            details=SOSAlertDetails(),
            timestamp=utc_now(),
            location=location,
        )

        try:
            await self._alert_log.append(alert)
        except StoreError as e:
            logger.error("SOS alert could not be recorded (child=%s...): %s", child_id[:8], e)
            raise PersistFailureError("Failed to record SOS alert") from e

        logger.warning("SOS alert recorded: child=%s...", child_id[:8])
        return alert

    async def _acquire_fix(self, child_id: ChildId, provider: LocationProvider) -> GeoLocation:
        try:
            return await asyncio.wait_for(provider.get_fix(), self._location_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                "SOS dropped, location fix timed out after %.1fs (child=%s...)",
                self._location_timeout, child_id[:8],
            )
            raise LocationUnavailableError("Location fix timed out") from e
        except LocationUnavailableError as e:
            logger.warning("SOS dropped, no location fix (child=%s...): %s", child_id[:8], e.message)
            raise
