"""
ChildGuard - Services Package

Contains service interfaces and implementations for:
- Classification (external sentiment/threat classifier)
- Location fixes for SOS

Design Pattern:
    Each service defines a Protocol (interface) and one or more implementations.
    The coordinator is configured with concrete implementations at startup,
    enabling dependency injection and easy testing/swapping of components.
"""

from .classifier import (
    ClassifierGateway,
    DummyClassifier,
    GeminiClassifier,
)
from .location import (
    LocationProvider,
    ReportedLocationProvider,
    UnavailableLocationProvider,
    provider_from_report,
)

__all__ = [
    # Classifier
    "ClassifierGateway",
    "DummyClassifier",
    "GeminiClassifier",
    # Location
    "LocationProvider",
    "ReportedLocationProvider",
    "UnavailableLocationProvider",
    "provider_from_report",
]
