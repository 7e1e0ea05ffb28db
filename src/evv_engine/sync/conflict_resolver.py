"""Conflict resolution for records changed both on a device and on the server.

Resolution runs in two passes:

1. Last-write-wins on ``updated_at`` when one side is clearly newer.
2. On a tie (or when either timestamp is missing), per-record-type rules.

EVV records are the exception to pass 1. Any divergence in a
verification-critical field (clock times, clock locations, service date)
goes to manual review whatever the timestamps say, and the server copy is
kept until a person decides. A silent merge of EVV data would hide exactly
the discrepancy an auditor needs to see.

"Different" is tolerance based: timestamps within
``timestamp_tolerance_seconds`` and coordinates within
``coordinate_tolerance_degrees`` compare equal, so serialization noise and
small clock skew do not trigger review storms.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable

from evv_engine.models import utc_now


class ConflictStrategy(str, Enum):
    CLIENT_WINS = "CLIENT_WINS"
    SERVER_WINS = "SERVER_WINS"
    MERGE = "MERGE"
    MANUAL = "MANUAL"


class RecordType(str, Enum):
    VISIT = "visit"
    TASK = "task"
    EVV_RECORD = "evv_record"
    VISIT_NOTE = "visit_note"


class ConflictSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


# Signatures and statuses: both populated and different means manual review
CRITICAL_FIELDS = frozenset({
    "clock_in_time",
    "clock_out_time",
    "client_signature",
    "caregiver_signature",
    "verification_status",
    "evv_status",
})

# Caregiver observations captured in the field
CLIENT_PRIORITY_FIELDS = frozenset({
    "care_notes",
    "tasks_completed",
    "client_mood",
    "client_condition_notes",
    "activities_performed",
    "incident_description",
    "visit_notes",
})

# Administrative and scheduling data owned by the office
SERVER_PRIORITY_FIELDS = frozenset({
    "scheduled_date",
    "scheduled_start_time",
    "scheduled_end_time",
    "client_id",
    "caregiver_id",
    "service_type_code",
    "authorization_id",
})

EVV_CRITICAL_FIELDS = (
    "clock_in_time",
    "clock_out_time",
    "clock_in_location",
    "clock_out_location",
    "service_date",
)

# Never compared or merged
IGNORED_FIELDS = frozenset({"id", "updated_at", "created_at", "version"})

_RECORD_TYPE_ALIASES = {
    "visit": RecordType.VISIT,
    "visits": RecordType.VISIT,
    "task": RecordType.TASK,
    "tasks": RecordType.TASK,
    "evv_record": RecordType.EVV_RECORD,
    "evv_records": RecordType.EVV_RECORD,
    "visit_note": RecordType.VISIT_NOTE,
    "visit_notes": RecordType.VISIT_NOTE,
}


def normalize_record_type(record_type: str | RecordType) -> RecordType | None:
    if isinstance(record_type, RecordType):
        return record_type
    return _RECORD_TYPE_ALIASES.get(str(record_type).strip().lower())


@dataclass(frozen=True)
class ResolverConfig:
    timestamp_tolerance_seconds: float = 1.0
    coordinate_tolerance_degrees: float = 1e-6

    def __post_init__(self):
        if self.timestamp_tolerance_seconds < 0:
            raise ValueError("timestamp_tolerance_seconds must be >= 0")
        if self.coordinate_tolerance_degrees < 0:
            raise ValueError("coordinate_tolerance_degrees must be >= 0")


@dataclass(frozen=True)
class FieldConflict:
    field: str
    client_value: Any
    server_value: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "client_value": _jsonable(self.client_value),
            "server_value": _jsonable(self.server_value),
        }


@dataclass(frozen=True)
class ResolutionMetadata:
    resolved_at: datetime
    resolved_by: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "resolved_at": self.resolved_at.isoformat(),
            "resolved_by": self.resolved_by,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ConflictResolution:
    strategy: ConflictStrategy
    resolved_record: dict[str, Any]
    requires_manual_review: bool
    field_conflicts: list[FieldConflict] = field(default_factory=list)
    metadata: ResolutionMetadata | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "requires_manual_review": self.requires_manual_review,
            "field_conflicts": [c.to_dict() for c in self.field_conflicts],
            "metadata": self.metadata.to_dict() if self.metadata else None,
        }


@dataclass(frozen=True)
class ManualResolution:
    """A reviewer's decision on a conflict held for manual review.

    ``field_resolutions`` maps a field to "client", "server", or a custom
    value, and is only read when ``selected_strategy`` is "field_by_field".
    """

    record_id: str
    record_type: str
    selected_strategy: str
    user_id: str
    field_resolutions: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime | None = None

    def __post_init__(self):
        if self.selected_strategy not in ("client", "server", "field_by_field"):
            raise ValueError(
                "selected_strategy must be one of 'client', 'server', 'field_by_field'"
            )


@dataclass(frozen=True)
class PotentialConflicts:
    has_conflict: bool
    conflicting_fields: list[str]
    severity: ConflictSeverity


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _present(value: Any) -> bool:
    return value is not None


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _coordinates(value: Any) -> tuple[float, float] | None:
    if isinstance(value, dict) and "latitude" in value and "longitude" in value:
        try:
            return float(value["latitude"]), float(value["longitude"])
        except (TypeError, ValueError):
            return None
    return None


class ConflictResolver:
    """Resolve a client copy against a server copy of the same record."""

    def __init__(self, config: ResolverConfig | None = None, clock: Callable[[], datetime] | None = None):
        self.config = config or ResolverConfig()
        self.clock = clock or utc_now

    def values_differ(self, client_value: Any, server_value: Any) -> bool:
        """Tolerance-aware inequality for timestamps, dates and locations."""
        if client_value == server_value:
            return False

        client_dt = _as_datetime(client_value)
        server_dt = _as_datetime(server_value)
        if client_dt is not None and server_dt is not None:
            delta = abs((client_dt - server_dt).total_seconds())
            return delta > self.config.timestamp_tolerance_seconds

        client_coords = _coordinates(client_value)
        server_coords = _coordinates(server_value)
        if client_coords is not None and server_coords is not None:
            tolerance = self.config.coordinate_tolerance_degrees
            return (
                abs(client_coords[0] - server_coords[0]) > tolerance
                or abs(client_coords[1] - server_coords[1]) > tolerance
            )

        if isinstance(client_value, date) or isinstance(server_value, date):
            return _jsonable(client_value) != _jsonable(server_value)

        return True

    def resolve(
        self,
        client_record: dict[str, Any],
        server_record: dict[str, Any],
        record_type: str | RecordType,
    ) -> ConflictResolution:
        kind = normalize_record_type(record_type)

        if kind is RecordType.EVV_RECORD:
            evv_conflicts = self._evv_field_conflicts(client_record, server_record)
            if evv_conflicts:
                return self._manual(
                    server_record,
                    evv_conflicts,
                    "EVV data conflict - regulatory compliance review required",
                )

        newer = self._newer_side(client_record, server_record)
        if newer == "client":
            return ConflictResolution(
                strategy=ConflictStrategy.CLIENT_WINS,
                resolved_record=dict(client_record),
                requires_manual_review=False,
            )
        if newer == "server":
            return ConflictResolution(
                strategy=ConflictStrategy.SERVER_WINS,
                resolved_record=dict(server_record),
                requires_manual_review=False,
            )

        if kind is RecordType.VISIT:
            return self._resolve_visit(client_record, server_record)
        if kind is RecordType.TASK:
            return self._resolve_task(client_record, server_record)
        if kind is RecordType.EVV_RECORD:
            # No critical divergence: the server copy stands
            return ConflictResolution(
                strategy=ConflictStrategy.SERVER_WINS,
                resolved_record=dict(server_record),
                requires_manual_review=False,
            )
        if kind is RecordType.VISIT_NOTE:
            return self._resolve_visit_note(client_record, server_record)

        return ConflictResolution(
            strategy=ConflictStrategy.SERVER_WINS,
            resolved_record=dict(server_record),
            requires_manual_review=True,
            metadata=ResolutionMetadata(
                resolved_at=self.clock(),
                reason=f"Unknown record type '{record_type}' - server copy kept for review",
            ),
        )

    def _newer_side(self, client: dict[str, Any], server: dict[str, Any]) -> str | None:
        client_ts = _as_datetime(client.get("updated_at"))
        server_ts = _as_datetime(server.get("updated_at"))
        if client_ts is None or server_ts is None:
            return None
        delta = (client_ts - server_ts).total_seconds()
        if abs(delta) <= self.config.timestamp_tolerance_seconds:
            return None
        return "client" if delta > 0 else "server"

    def _manual(
        self, server: dict[str, Any], conflicts: list[FieldConflict], reason: str
    ) -> ConflictResolution:
        return ConflictResolution(
            strategy=ConflictStrategy.MANUAL,
            resolved_record=dict(server),
            requires_manual_review=True,
            field_conflicts=conflicts,
            metadata=ResolutionMetadata(resolved_at=self.clock(), reason=reason),
        )

    def _evv_field_conflicts(
        self, client: dict[str, Any], server: dict[str, Any]
    ) -> list[FieldConflict]:
        conflicts = []
        for name in EVV_CRITICAL_FIELDS:
            client_value = client.get(name)
            server_value = server.get(name)
            if not (_present(client_value) and _present(server_value)):
                continue
            if self.values_differ(client_value, server_value):
                conflicts.append(FieldConflict(name, client_value, server_value))
        return conflicts

    def _resolve_visit(self, client: dict[str, Any], server: dict[str, Any]) -> ConflictResolution:
        conflicts = [
            FieldConflict(name, client[name], server[name])
            for name in sorted(CRITICAL_FIELDS)
            if _present(client.get(name))
            and _present(server.get(name))
            and self.values_differ(client[name], server[name])
        ]
        if conflicts:
            return self._manual(server, conflicts, "Critical visit fields differ")

        resolved = dict(server)
        for name in set(client) | set(server):
            if name in IGNORED_FIELDS:
                continue
            client_value = client.get(name)
            server_value = server.get(name)
            if name in CLIENT_PRIORITY_FIELDS:
                resolved[name] = client_value if _present(client_value) else server_value
            elif name in SERVER_PRIORITY_FIELDS:
                resolved[name] = server_value if _present(server_value) else client_value
            elif name in CRITICAL_FIELDS:
                # Both present and different was already routed to manual review
                resolved[name] = client_value if _present(client_value) else server_value
            else:
                resolved[name] = server_value if _present(server_value) else client_value

        return ConflictResolution(
            strategy=ConflictStrategy.MERGE,
            resolved_record=resolved,
            requires_manual_review=False,
        )

    def _resolve_task(self, client: dict[str, Any], server: dict[str, Any]) -> ConflictResolution:
        client_done = client.get("status") == "completed"
        server_done = server.get("status") == "completed"

        if client_done and not server_done:
            return ConflictResolution(
                strategy=ConflictStrategy.CLIENT_WINS,
                resolved_record=dict(client),
                requires_manual_review=False,
            )
        if server_done and not client_done:
            return self._manual(
                server,
                [FieldConflict("status", client.get("status"), server.get("status"))],
                "Task completed on server but not on device",
            )
        return ConflictResolution(
            strategy=ConflictStrategy.SERVER_WINS,
            resolved_record=dict(server),
            requires_manual_review=False,
        )

    def _resolve_visit_note(
        self, client: dict[str, Any], server: dict[str, Any]
    ) -> ConflictResolution:
        if len(client.get("note_text") or "") > len(server.get("note_text") or ""):
            return ConflictResolution(
                strategy=ConflictStrategy.CLIENT_WINS,
                resolved_record=dict(client),
                requires_manual_review=False,
            )
        return ConflictResolution(
            strategy=ConflictStrategy.SERVER_WINS,
            resolved_record=dict(server),
            requires_manual_review=False,
        )

    def apply_manual_resolution(
        self,
        client_record: dict[str, Any],
        server_record: dict[str, Any],
        decision: ManualResolution,
    ) -> ConflictResolution:
        if decision.selected_strategy == "client":
            resolved = dict(client_record)
        elif decision.selected_strategy == "server":
            resolved = dict(server_record)
        else:
            resolved = dict(server_record)
            for name, choice in decision.field_resolutions.items():
                if choice == "client":
                    resolved[name] = client_record.get(name)
                elif choice == "server":
                    resolved[name] = server_record.get(name)
                else:
                    resolved[name] = choice

        return ConflictResolution(
            strategy=ConflictStrategy.MANUAL,
            resolved_record=resolved,
            requires_manual_review=False,
            metadata=ResolutionMetadata(
                resolved_at=decision.timestamp or self.clock(),
                resolved_by=decision.user_id,
                reason=f"Manual resolution: {decision.selected_strategy}",
            ),
        )

    def detect_potential_conflicts(
        self, local_record: dict[str, Any], server_record: dict[str, Any]
    ) -> PotentialConflicts:
        fields = [*local_record, *(name for name in server_record if name not in local_record)]
        conflicting = [
            name
            for name in fields
            if name not in IGNORED_FIELDS
            and self.values_differ(local_record.get(name), server_record.get(name))
        ]

        if any(name in CRITICAL_FIELDS or name in EVV_CRITICAL_FIELDS for name in conflicting):
            severity = ConflictSeverity.HIGH
        elif len(conflicting) > 3:
            severity = ConflictSeverity.MEDIUM
        else:
            severity = ConflictSeverity.LOW

        return PotentialConflicts(
            has_conflict=bool(conflicting),
            conflicting_fields=conflicting,
            severity=severity,
        )
