"""
ChildGuard - Location Providers

Single-shot coordinate-fix providers consumed by the SOS handler.

Architecture:
    - Protocol defines the interface (one async fix per call)
    - ReportedLocationProvider: coordinates reported by the child's device
    - UnavailableLocationProvider: device sent no fix (permission denied,
      no signal); always fails
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import Optional, Protocol, runtime_checkable

from childguard.core.exceptions import LocationUnavailableError
from childguard.core.types import GeoLocation

logger = logging.getLogger(__name__)


@runtime_checkable
class LocationProvider(Protocol):
    """Protocol for single-shot location fixes."""

    @abstractmethod
    async def get_fix(self) -> GeoLocation:
        """
        Acquire one coordinate fix.

        Raises:
            LocationUnavailableError: If no fix can be obtained
        """
        ...


class ReportedLocationProvider:
    """Provider wrapping coordinates the child's device already acquired."""

    def __init__(self, latitude: float, longitude: float):
        try:
            self._fix = GeoLocation(latitude=latitude, longitude=longitude)
        except ValueError as e:
            raise LocationUnavailableError(f"Invalid coordinates: {e}") from e

    async def get_fix(self) -> GeoLocation:
        return self._fix


class UnavailableLocationProvider:
    """Provider used when the device could not supply a fix."""

    def __init__(self, reason: str = "No location fix available"):
        self._reason = reason

    async def get_fix(self) -> GeoLocation:
        raise LocationUnavailableError(self._reason)


def provider_from_report(
    latitude: Optional[float],
    longitude: Optional[float],
) -> LocationProvider:
    """Pick a provider for an SOS request that may or may not carry coordinates."""
    if latitude is None or longitude is None:
        return UnavailableLocationProvider("SOS request carried no coordinates")
    return ReportedLocationProvider(latitude, longitude)
