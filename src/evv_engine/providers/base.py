"""Contracts for the collaborators the EVV engine consumes.

Visits, clients, caregivers and service authorization live in other
subsystems. Adapters for those subsystems implement these protocols; the
capture service only ever sees the frozen dataclasses below.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID


@dataclass(frozen=True)
class ServiceAddress:
    """Where a visit takes place."""

    line1: str
    city: str
    state: str
    postal_code: str
    country: str = "US"
    line2: str | None = None
    address_id: UUID | None = None
    latitude: float | None = None
    longitude: float | None = None
    geofence_radius: float | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict:
        return {
            "address_id": str(self.address_id) if self.address_id else None,
            "line1": self.line1,
            "line2": self.line2,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "geofence_radius": self.geofence_radius,
        }


@dataclass(frozen=True)
class VisitForEVV:
    """Visit data needed to capture EVV."""

    visit_id: UUID
    client_id: UUID
    service_type_code: str
    service_type_name: str
    service_date: datetime.date
    scheduled_start: datetime.datetime
    scheduled_end: datetime.datetime
    service_address: ServiceAddress
    organization_id: UUID | None = None
    branch_id: UUID | None = None
    assigned_caregiver_id: UUID | None = None
    status: str = "SCHEDULED"


@dataclass(frozen=True)
class ClientForEVV:
    client_id: UUID
    name: str
    medicaid_id: str | None = None
    state_code: str | None = None


@dataclass(frozen=True)
class CaregiverForEVV:
    caregiver_id: UUID
    name: str
    employee_id: str | None = None
    national_provider_id: str | None = None


@dataclass(frozen=True)
class ServiceAuthorization:
    """Result of asking whether a caregiver may provide a service."""

    authorized: bool
    reason: str | None = None
    missing_credentials: tuple[str, ...] = field(default_factory=tuple)
    blocked_reasons: tuple[str, ...] = field(default_factory=tuple)


class VisitProvider(Protocol):
    """Looks up visits for EVV capture."""

    async def get_visit_for_evv(self, visit_id: UUID) -> VisitForEVV | None:
        """Return the visit, or None if it does not exist."""
        ...


class ClientProvider(Protocol):
    async def get_client_for_evv(self, client_id: UUID) -> ClientForEVV | None:
        ...


class CaregiverProvider(Protocol):
    """Caregiver identity and credential/authorization checks."""

    async def get_caregiver_for_evv(self, caregiver_id: UUID) -> CaregiverForEVV | None:
        ...

    async def can_provide_service(
        self, caregiver_id: UUID, service_type_code: str, client_id: UUID
    ) -> ServiceAuthorization:
        """Check credentials and restrictions for this caregiver/service/client."""
        ...
