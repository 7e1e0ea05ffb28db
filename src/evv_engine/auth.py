"""Caller identity and permission context supplied by the host application."""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

SUPERVISOR_ROLES = frozenset({"SUPER_ADMIN", "ORG_ADMIN", "BRANCH_ADMIN", "COORDINATOR"})


class Permission:
    CLOCK_IN = "evv:clock_in"
    CLOCK_OUT = "evv:clock_out"
    OVERRIDE = "evv:override"
    AMEND = "evv:amend"
    GEOFENCE_MANAGE = "evv:geofence_manage"
    VMUR_REQUEST = "evv:vmur_request"
    VMUR_APPROVE = "evv:vmur_approve"
    SYNC = "evv:sync"


@dataclass(frozen=True)
class UserContext:
    """Who is calling, and what they may do."""

    user_id: UUID
    roles: frozenset[str] = field(default_factory=frozenset)
    permissions: frozenset[str] = field(default_factory=frozenset)
    organization_id: UUID | None = None
    name: str | None = None

    @property
    def is_supervisor(self) -> bool:
        return bool(self.roles & SUPERVISOR_ROLES)

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions or "SUPER_ADMIN" in self.roles
