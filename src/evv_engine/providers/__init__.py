"""Collaborator contracts and in-memory implementations."""

from evv_engine.providers.base import (
    CaregiverForEVV,
    CaregiverProvider,
    ClientForEVV,
    ClientProvider,
    ServiceAddress,
    ServiceAuthorization,
    VisitForEVV,
    VisitProvider,
)
from evv_engine.providers.stub import (
    InMemoryCaregiverProvider,
    InMemoryClientProvider,
    InMemoryVisitProvider,
)

__all__ = [
    "CaregiverForEVV",
    "CaregiverProvider",
    "ClientForEVV",
    "ClientProvider",
    "InMemoryCaregiverProvider",
    "InMemoryClientProvider",
    "InMemoryVisitProvider",
    "ServiceAddress",
    "ServiceAuthorization",
    "VisitForEVV",
    "VisitProvider",
]
