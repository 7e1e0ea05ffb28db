"""Jurisdiction profiles.

A jurisdiction bundles everything the compliance aggregator needs to know
about a payer/state: the six-elements profile, geofence parameters, the
grace window and the VMUR threshold. Adding a state is a data change made
through register_jurisdiction().
"""

from __future__ import annotations

from dataclasses import dataclass, field

from evv_engine.validators.six_elements import (
    FEDERAL_PROFILE,
    STATE_ENHANCED_PROFILE,
    ElementsProfile,
)


@dataclass(frozen=True)
class JurisdictionProfile:
    """
    Compliance parameters for one jurisdiction.

    Attributes:
        code: Short code (state postal code or FEDERAL).
        name: Display name.
        elements: Six-elements profile in force.
        geofence_radius_meters: Default base radius for new geofences.
        max_gps_accuracy_meters: Accuracy threshold for strict GPS checks.
        strict_gps_accuracy: Reject samples over the accuracy threshold.
        grace_period_minutes: Tolerance around scheduled start/end.
        vmur_threshold_days: Record age after which direct edits close and
            a VMUR is required.
        aggregators: Names of the payer aggregators accepting submissions.
    """

    code: str
    name: str
    elements: ElementsProfile = FEDERAL_PROFILE
    geofence_radius_meters: float = 100.0
    max_gps_accuracy_meters: float = 100.0
    strict_gps_accuracy: bool = True
    grace_period_minutes: float = 10.0
    vmur_threshold_days: int = 30
    aggregators: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.code:
            raise ValueError("code is required")
        if not 10 <= self.geofence_radius_meters <= 500:
            raise ValueError("geofence_radius_meters must be between 10 and 500")
        if self.grace_period_minutes < 0:
            raise ValueError("grace_period_minutes must not be negative")
        if self.vmur_threshold_days < 1:
            raise ValueError("vmur_threshold_days must be at least 1")


FEDERAL = JurisdictionProfile(code="FEDERAL", name="Federal minimum (Cures Act)")

TEXAS = JurisdictionProfile(
    code="TX",
    name="Texas HHSC",
    elements=STATE_ENHANCED_PROFILE,
    geofence_radius_meters=100.0,
    grace_period_minutes=10.0,
    aggregators=("HHAeXchange",),
)

FLORIDA = JurisdictionProfile(
    code="FL",
    name="Florida AHCA",
    elements=ElementsProfile(
        name="Florida AHCA",
        require_medicaid_id=True,
        require_gps_verification=True,
    ),
    geofence_radius_meters=150.0,
    grace_period_minutes=15.0,
    aggregators=("HHAeXchange", "Netsmart Tellus"),
)

_REGISTRY: dict[str, JurisdictionProfile] = {
    FEDERAL.code: FEDERAL,
    TEXAS.code: TEXAS,
    FLORIDA.code: FLORIDA,
}


def register_jurisdiction(profile: JurisdictionProfile) -> None:
    """Add or replace a jurisdiction profile."""
    _REGISTRY[profile.code.upper()] = profile


def get_jurisdiction(code: str | None) -> JurisdictionProfile:
    """Look up a jurisdiction, falling back to the federal minimum."""
    if not code:
        return FEDERAL
    return _REGISTRY.get(code.upper(), FEDERAL)


def list_jurisdictions() -> list[JurisdictionProfile]:
    return sorted(_REGISTRY.values(), key=lambda p: p.code)


def find_jurisdiction(code: str | None) -> JurisdictionProfile | None:
    """Look up a jurisdiction without falling back."""
    if not code:
        return None
    return _REGISTRY.get(code.upper())
