"""EVV record state machine with transition validation."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum


class EVVRecordStatus(str, Enum):
    """EVV record status values."""

    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DISPUTED = "DISPUTED"
    AMENDED = "AMENDED"
    VOIDED = "VOIDED"


class VerificationLevel(str, Enum):
    FULL = "FULL"
    PARTIAL = "PARTIAL"
    MANUAL = "MANUAL"
    PHONE = "PHONE"
    EXCEPTION = "EXCEPTION"


class TimeEntryType(str, Enum):
    CLOCK_IN = "CLOCK_IN"
    CLOCK_OUT = "CLOCK_OUT"
    PAUSE = "PAUSE"
    RESUME = "RESUME"


class TimeEntryStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    FLAGGED = "FLAGGED"
    OVERRIDDEN = "OVERRIDDEN"
    REJECTED = "REJECTED"
    SYNCED = "SYNCED"


class GeofenceStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    ARCHIVED = "ARCHIVED"


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class EVVRecordStateMachine:
    """State machine for EVV record status transitions.

    Allowed transitions:
    - PENDING → COMPLETE (clock-out)
    - PENDING → VOIDED
    - COMPLETE → SUBMITTED / APPROVED / REJECTED / DISPUTED / AMENDED / VOIDED
    - SUBMITTED → APPROVED / REJECTED / DISPUTED / AMENDED / VOIDED
    - REJECTED → AMENDED
    - DISPUTED → APPROVED / REJECTED / AMENDED
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        EVVRecordStatus.PENDING: [EVVRecordStatus.COMPLETE, EVVRecordStatus.VOIDED],
        EVVRecordStatus.COMPLETE: [
            EVVRecordStatus.SUBMITTED,
            EVVRecordStatus.APPROVED,
            EVVRecordStatus.REJECTED,
            EVVRecordStatus.DISPUTED,
            EVVRecordStatus.AMENDED,
            EVVRecordStatus.VOIDED,
        ],
        EVVRecordStatus.SUBMITTED: [
            EVVRecordStatus.APPROVED,
            EVVRecordStatus.REJECTED,
            EVVRecordStatus.DISPUTED,
            EVVRecordStatus.AMENDED,
            EVVRecordStatus.VOIDED,
        ],
        EVVRecordStatus.REJECTED: [EVVRecordStatus.AMENDED],
        EVVRecordStatus.DISPUTED: [
            EVVRecordStatus.APPROVED,
            EVVRecordStatus.REJECTED,
            EVVRecordStatus.AMENDED,
        ],
        EVVRecordStatus.APPROVED: [],  # Terminal state
        EVVRecordStatus.AMENDED: [],  # Terminal state
        EVVRecordStatus.VOIDED: [],  # Terminal state
    }

    # Statuses a correction (revision or VMUR) may start from
    AMENDABLE = {
        EVVRecordStatus.COMPLETE,
        EVVRecordStatus.SUBMITTED,
        EVVRecordStatus.REJECTED,
        EVVRecordStatus.DISPUTED,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_amend(cls, status: str) -> bool:
        return status in cls.AMENDABLE

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status, [])

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])


def is_edit_window_closed(
    recorded_at: datetime, as_of: datetime, threshold_days: int = 30
) -> bool:
    """True once a record is older than the direct-edit window."""
    return as_of - recorded_at > timedelta(days=threshold_days)
