"""Error taxonomy for EVV capture and sync.

Compliance violations (geofence, six elements, grace period) are NOT
errors. They come back as ComplianceResult values the caller acts on.
Everything here aborts the request that raised it.
"""

from __future__ import annotations

from typing import Any


class EVVError(Exception):
    """Base class for EVV engine errors."""

    code = "EVV_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(EVVError):
    """Malformed input: missing fields, bad coordinates or dates. Never retried."""

    code = "VALIDATION_ERROR"


class PermissionDeniedError(EVVError):
    """Caller is not allowed to act on this caregiver, visit or record."""

    code = "PERMISSION_DENIED"


class NotFoundError(EVVError):
    """Referenced visit, EVV record, geofence or request does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, identifier: Any):
        self.entity = entity
        self.identifier = identifier
        super().__init__(
            f"{entity} not found: {identifier}",
            {"entity": entity, "id": str(identifier)},
        )


class ConflictError(EVVError):
    """Operation conflicts with current record state (already clocked in/out)."""

    code = "CONFLICT"


class CollaboratorUnavailableError(EVVError):
    """An external collaborator timed out or could not be reached.

    This is the "offline" condition and is distinct from a rejection.
    """

    code = "COLLABORATOR_UNAVAILABLE"


class StaleWriteError(EVVError):
    """A conditional write matched no row because the version moved on."""

    code = "STALE_WRITE"
