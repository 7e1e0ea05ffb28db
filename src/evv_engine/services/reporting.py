"""Compliance dashboard metrics over stored EVV records."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from evv_engine.models import EVVRecord
from evv_engine.validators.compliance import CRITICAL_FLAGS
from evv_engine.validators.types import ComplianceFlag

# Flags that describe success rather than an issue
_NON_ISSUE_FLAGS = {ComplianceFlag.COMPLIANT.value, ComplianceFlag.AGGREGATOR_READY.value}


@dataclass(frozen=True)
class IssueCount:
    flag: str
    count: int
    percentage: float


@dataclass(frozen=True)
class ComplianceDashboard:
    jurisdiction_code: str | None
    period_start: date | None
    period_end: date | None
    total_visits: int
    compliant_visits: int
    partially_compliant_visits: int
    non_compliant_visits: int
    compliance_rate: float
    geofence_passed: int
    geofence_failed: int
    average_distance_meters: float | None
    average_accuracy_meters: float | None
    top_issues: list[IssueCount] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "jurisdiction_code": self.jurisdiction_code,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "total_visits": self.total_visits,
            "compliant_visits": self.compliant_visits,
            "partially_compliant_visits": self.partially_compliant_visits,
            "non_compliant_visits": self.non_compliant_visits,
            "compliance_rate": self.compliance_rate,
            "geofence_passed": self.geofence_passed,
            "geofence_failed": self.geofence_failed,
            "average_distance_meters": self.average_distance_meters,
            "average_accuracy_meters": self.average_accuracy_meters,
            "top_issues": [
                {"flag": i.flag, "count": i.count, "percentage": i.percentage}
                for i in self.top_issues
            ],
        }


def _mean(values: list[float]) -> float | None:
    return round(sum(values) / len(values), 2) if values else None


def build_compliance_dashboard(
    records: Iterable[EVVRecord],
    jurisdiction_code: str | None = None,
    period_start: date | None = None,
    period_end: date | None = None,
    top_n: int = 10,
) -> ComplianceDashboard:
    """Aggregate stored compliance flags and clock-in verifications."""
    records = list(records)
    total = len(records)
    compliant = partial = non_compliant = 0
    passed = failed = 0
    distances: list[float] = []
    accuracies: list[float] = []
    issues: Counter[str] = Counter()

    for record in records:
        flags = set(record.compliance_flags or [])
        if ComplianceFlag.COMPLIANT.value in flags:
            compliant += 1
        elif flags & CRITICAL_FLAGS:
            non_compliant += 1
        else:
            partial += 1
        issues.update(flags - _NON_ISSUE_FLAGS)

        geofence = (record.clock_in_verification or {}).get("geofence") or {}
        if geofence:
            if geofence.get("compliance_level") == "VIOLATION":
                failed += 1
            else:
                passed += 1
            if geofence.get("distance_meters") is not None:
                distances.append(float(geofence["distance_meters"]))
            if geofence.get("gps_accuracy_meters") is not None:
                accuracies.append(float(geofence["gps_accuracy_meters"]))

    top = [
        IssueCount(flag=flag, count=count, percentage=round(count / total * 100, 2))
        for flag, count in sorted(issues.items(), key=lambda item: (-item[1], item[0]))[:top_n]
    ]

    return ComplianceDashboard(
        jurisdiction_code=jurisdiction_code,
        period_start=period_start,
        period_end=period_end,
        total_visits=total,
        compliant_visits=compliant,
        partially_compliant_visits=partial,
        non_compliant_visits=non_compliant,
        compliance_rate=round(compliant / total * 100, 2) if total else 0.0,
        geofence_passed=passed,
        geofence_failed=failed,
        average_distance_meters=_mean(distances),
        average_accuracy_meters=_mean(accuracies),
        top_issues=top,
    )


async def load_compliance_dashboard(
    session: AsyncSession,
    period_start: date,
    period_end: date,
    organization_id: UUID | None = None,
    jurisdiction_code: str | None = None,
) -> ComplianceDashboard:
    """Query records for a service-date range and build the dashboard."""
    query = select(EVVRecord).where(
        EVVRecord.service_date >= period_start,
        EVVRecord.service_date <= period_end,
    )
    if organization_id is not None:
        query = query.where(EVVRecord.organization_id == organization_id)
    if jurisdiction_code is not None:
        query = query.where(EVVRecord.jurisdiction_code == jurisdiction_code.upper())
    result = await session.execute(query)
    return build_compliance_dashboard(
        result.scalars().all(), jurisdiction_code, period_start, period_end
    )
