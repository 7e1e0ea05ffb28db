"""Scheduled-vs-actual time (grace period) validation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_GRACE_MINUTES = 10


class GraceStatus(str, Enum):
    ON_TIME = "ON_TIME"
    EARLY_GRACE = "EARLY_GRACE"
    LATE_GRACE = "LATE_GRACE"
    VIOLATION = "VIOLATION"
    INCOMPLETE = "INCOMPLETE"


@dataclass(frozen=True)
class GracePeriodValidationResult:
    """Outcome of checking both visit boundaries.

    Differences are signed minutes (actual - scheduled): negative is early,
    positive is late. clock_out_difference_minutes is None while the visit
    is still in progress.
    """

    is_valid: bool
    clock_in_status: GraceStatus
    clock_out_status: GraceStatus
    clock_in_difference_minutes: float
    clock_out_difference_minutes: float | None
    grace_period_minutes: float
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "clock_in_status": self.clock_in_status.value,
            "clock_out_status": self.clock_out_status.value,
            "clock_in_difference_minutes": round(self.clock_in_difference_minutes, 2),
            "clock_out_difference_minutes": (
                None
                if self.clock_out_difference_minutes is None
                else round(self.clock_out_difference_minutes, 2)
            ),
            "grace_period_minutes": self.grace_period_minutes,
            "message": self.message,
        }


def classify_difference(delta_minutes: float, grace_minutes: float) -> GraceStatus:
    """Classify one boundary. The grace boundary itself is inclusive."""
    magnitude = abs(delta_minutes)
    if magnitude <= grace_minutes:
        return GraceStatus.ON_TIME
    if magnitude <= 2 * grace_minutes:
        return GraceStatus.EARLY_GRACE if delta_minutes < 0 else GraceStatus.LATE_GRACE
    return GraceStatus.VIOLATION


def _describe(label: str, status: GraceStatus, delta: float | None) -> str:
    if delta is None:
        return f"{label}: Not recorded (visit in progress)"
    direction = "late" if delta > 0 else "early"
    return f"{label}: {status.value} ({abs(delta):.1f} minutes {direction})"


def validate_grace_period(
    actual_clock_in: datetime,
    actual_clock_out: datetime | None,
    scheduled_start: datetime,
    scheduled_end: datetime,
    grace_minutes: float = DEFAULT_GRACE_MINUTES,
) -> GracePeriodValidationResult:
    """Compare actual clock times against the scheduled window."""
    if grace_minutes < 0:
        raise ValueError("grace_minutes must not be negative")

    in_delta = (actual_clock_in - scheduled_start).total_seconds() / 60
    in_status = classify_difference(in_delta, grace_minutes)

    out_delta: float | None = None
    if actual_clock_out is None:
        out_status = GraceStatus.INCOMPLETE
    else:
        out_delta = (actual_clock_out - scheduled_end).total_seconds() / 60
        out_status = classify_difference(out_delta, grace_minutes)

    is_valid = in_status != GraceStatus.VIOLATION and out_status != GraceStatus.VIOLATION

    return GracePeriodValidationResult(
        is_valid=is_valid,
        clock_in_status=in_status,
        clock_out_status=out_status,
        clock_in_difference_minutes=in_delta,
        clock_out_difference_minutes=out_delta,
        grace_period_minutes=grace_minutes,
        message="; ".join(
            [
                _describe("Clock-in", in_status, in_delta),
                _describe("Clock-out", out_status, out_delta),
            ]
        ),
    )
