"""In-memory collaborator providers for local development and testing.

Replace with adapters over the scheduling, client and caregiver services
in production.
"""

from __future__ import annotations

import asyncio
from typing import Any
from uuid import UUID

from evv_engine.providers.base import (
    CaregiverForEVV,
    ClientForEVV,
    ServiceAuthorization,
    VisitForEVV,
)


class _StubBehaviour:
    """Shared knobs for simulating a slow or unreachable collaborator."""

    def __init__(self, delay_seconds: float = 0.0, fail_with: Exception | None = None):
        self.delay_seconds = delay_seconds
        self.fail_with = fail_with
        self.calls: list[tuple[str, Any]] = []

    async def _simulate(self, operation: str, argument: Any) -> None:
        self.calls.append((operation, argument))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail_with is not None:
            raise self.fail_with


class InMemoryVisitProvider(_StubBehaviour):
    def __init__(self, visits: list[VisitForEVV] | None = None, **kwargs: Any):
        super().__init__(**kwargs)
        self._visits: dict[UUID, VisitForEVV] = {v.visit_id: v for v in visits or []}

    def add(self, visit: VisitForEVV) -> None:
        self._visits[visit.visit_id] = visit

    async def get_visit_for_evv(self, visit_id: UUID) -> VisitForEVV | None:
        await self._simulate("get_visit_for_evv", visit_id)
        return self._visits.get(visit_id)


class InMemoryClientProvider(_StubBehaviour):
    def __init__(self, clients: list[ClientForEVV] | None = None, **kwargs: Any):
        super().__init__(**kwargs)
        self._clients: dict[UUID, ClientForEVV] = {c.client_id: c for c in clients or []}

    def add(self, client: ClientForEVV) -> None:
        self._clients[client.client_id] = client

    async def get_client_for_evv(self, client_id: UUID) -> ClientForEVV | None:
        await self._simulate("get_client_for_evv", client_id)
        return self._clients.get(client_id)


class InMemoryCaregiverProvider(_StubBehaviour):
    """Caregivers plus an explicit block list for authorization checks."""

    def __init__(self, caregivers: list[CaregiverForEVV] | None = None, **kwargs: Any):
        super().__init__(**kwargs)
        self._caregivers: dict[UUID, CaregiverForEVV] = {
            c.caregiver_id: c for c in caregivers or []
        }
        self._blocked: dict[tuple[UUID, str], ServiceAuthorization] = {}

    def add(self, caregiver: CaregiverForEVV) -> None:
        self._caregivers[caregiver.caregiver_id] = caregiver

    def block(
        self,
        caregiver_id: UUID,
        service_type_code: str,
        reason: str,
        missing_credentials: tuple[str, ...] = (),
    ) -> None:
        self._blocked[(caregiver_id, service_type_code)] = ServiceAuthorization(
            authorized=False,
            reason=reason,
            missing_credentials=missing_credentials,
            blocked_reasons=(reason,),
        )

    async def get_caregiver_for_evv(self, caregiver_id: UUID) -> CaregiverForEVV | None:
        await self._simulate("get_caregiver_for_evv", caregiver_id)
        return self._caregivers.get(caregiver_id)

    async def can_provide_service(
        self, caregiver_id: UUID, service_type_code: str, client_id: UUID
    ) -> ServiceAuthorization:
        await self._simulate("can_provide_service", (caregiver_id, service_type_code, client_id))
        if caregiver_id not in self._caregivers:
            return ServiceAuthorization(authorized=False, reason="Caregiver not found")
        blocked = self._blocked.get((caregiver_id, service_type_code))
        if blocked is not None:
            return blocked
        return ServiceAuthorization(authorized=True)
