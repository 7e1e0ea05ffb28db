"""API endpoint integration tests.

Tests the FastAPI endpoints for EVV capture, sync and reporting.
"""

from uuid import uuid4

import pytest
from httpx import AsyncClient

from tests.conftest import CAREGIVER_ID, CENTER_LAT, CENTER_LON, VISIT_ID

from .conftest import ADDRESS_ID, OTHER_CAREGIVER_ID, auth_headers

pytestmark = pytest.mark.asyncio


def clock_event(visit_id=VISIT_ID, caregiver_id=CAREGIVER_ID, latitude=CENTER_LAT, **extra) -> dict:
    payload = {
        "visit_id": str(visit_id),
        "caregiver_id": str(caregiver_id),
        "location": {"latitude": latitude, "longitude": CENTER_LON, "accuracy_meters": 8.0},
        "device": {"device_id": "device-001", "device_model": "Pixel 8"},
    }
    payload.update(extra)
    return payload


async def clock_in(client: AsyncClient, caregiver, **kwargs):
    return await client.post(
        "/api/v1/evv/clock-in", headers=auth_headers(caregiver), json=clock_event(**kwargs)
    )


class TestHealthEndpoints:
    """Test health check endpoints."""

    async def test_health_check(self, client: AsyncClient):
        """Health endpoint should return 200."""
        response = await client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert "timestamp" in data

    async def test_readiness_check(self, client: AsyncClient):
        response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    async def test_liveness_check(self, client: AsyncClient):
        response = await client.get("/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"


class TestAuthentication:
    """Identity headers."""

    async def test_missing_user_header(self, client: AsyncClient):
        """Requests without X-User-Id are rejected."""
        response = await client.post("/api/v1/evv/clock-in", json=clock_event())
        assert response.status_code == 401

    async def test_malformed_user_header(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/evv/clock-in", headers={"X-User-Id": "nobody"}, json=clock_event()
        )
        assert response.status_code == 400
        assert "X-User-Id" in response.json()["detail"]


class TestClockEvents:
    """Clock-in, clock-out and the records they produce."""

    async def test_clock_in(self, client: AsyncClient, caregiver):
        """POST /api/v1/evv/clock-in should create the EVV record."""
        response = await clock_in(client, caregiver)
        assert response.status_code == 201

        data = response.json()
        assert data["evv_record"]["visit_id"] == str(VISIT_ID)
        assert data["evv_record"]["record_status"] == "PENDING"
        assert data["evv_record"]["jurisdiction_code"] == "TX"
        assert data["time_entry"]["entry_type"] == "CLOCK_IN"
        assert data["verification"]["compliance_level"] == "COMPLIANT"
        assert "INCOMPLETE_VISIT" in data["compliance"]["flags"]

    async def test_clock_in_then_out(self, client: AsyncClient, caregiver):
        record_id = (await clock_in(client, caregiver)).json()["evv_record"]["evv_record_id"]

        response = await client.post(
            "/api/v1/evv/clock-out",
            headers=auth_headers(caregiver),
            json=clock_event(client_signature="signature-bytes"),
        )
        assert response.status_code == 200
        assert response.json()["evv_record"]["record_status"] == "COMPLETE"
        assert response.json()["evv_record"]["client_attestation"]["client_present"] is True

        entries = await client.get(
            f"/api/v1/evv/visits/{VISIT_ID}/time-entries", headers=auth_headers(caregiver)
        )
        assert [e["entry_type"] for e in entries.json()] == ["CLOCK_IN", "CLOCK_OUT"]

        integrity = await client.get(
            f"/api/v1/evv/records/{record_id}/integrity", headers=auth_headers(caregiver)
        )
        assert integrity.json()["is_intact"] is True
        assert integrity.json()["amendments_valid"] is True

    async def test_get_record_for_visit(self, client: AsyncClient, caregiver):
        await clock_in(client, caregiver)

        response = await client.get(
            f"/api/v1/evv/visits/{VISIT_ID}/record", headers=auth_headers(caregiver)
        )
        assert response.status_code == 200
        assert response.json()["caregiver_id"] == str(CAREGIVER_ID)

    async def test_duplicate_clock_in_is_409(self, client: AsyncClient, caregiver):
        await clock_in(client, caregiver)

        response = await clock_in(client, caregiver)
        assert response.status_code == 409
        assert response.json()["code"] == "CONFLICT"

    async def test_unknown_visit_is_404(self, client: AsyncClient, caregiver):
        response = await clock_in(client, caregiver, visit_id=uuid4())
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    async def test_clocking_in_someone_else_is_403(self, client: AsyncClient, caregiver):
        response = await clock_in(client, caregiver, caregiver_id=OTHER_CAREGIVER_ID)
        assert response.status_code == 403
        assert response.json()["code"] == "PERMISSION_DENIED"

    async def test_bad_coordinates_are_422(self, client: AsyncClient, caregiver):
        response = await clock_in(client, caregiver, latitude=95.0)
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    async def test_unreachable_collaborator_is_503(
        self, client: AsyncClient, caregiver, visit_provider
    ):
        visit_provider.fail_with = ConnectionError("scheduling service down")

        response = await clock_in(client, caregiver)
        assert response.status_code == 503
        assert response.json()["code"] == "COLLABORATOR_UNAVAILABLE"

    async def test_unknown_record_is_404(self, client: AsyncClient, caregiver):
        response = await client.get(
            f"/api/v1/evv/records/{uuid4()}", headers=auth_headers(caregiver)
        )
        assert response.status_code == 404


class TestComplianceEndpoints:
    """Compliance recomputation and reporting."""

    async def test_get_compliance(self, client: AsyncClient, caregiver):
        record_id = (await clock_in(client, caregiver)).json()["evv_record"]["evv_record_id"]

        response = await client.get(
            f"/api/v1/evv/records/{record_id}/compliance", headers=auth_headers(caregiver)
        )
        assert response.status_code == 200
        data = response.json()
        assert data["jurisdiction_code"] == "TX"
        assert data["is_compliant"] is False
        assert "INCOMPLETE_VISIT" in data["flags"]

    async def test_get_compliance_does_not_touch_stored_flags(self, client: AsyncClient, caregiver):
        record_id = (await clock_in(client, caregiver)).json()["evv_record"]["evv_record_id"]
        later = {"as_of": "2026-12-31T00:00:00+00:00"}

        response = await client.get(
            f"/api/v1/evv/records/{record_id}/compliance",
            headers=auth_headers(caregiver),
            params=later,
        )
        assert "REQUIRES_VMUR" in response.json()["flags"]

        stored = await client.get(f"/api/v1/evv/records/{record_id}", headers=auth_headers(caregiver))
        assert "REQUIRES_VMUR" not in stored.json()["compliance_flags"]

    async def test_post_compliance_refreshes_stored_flags(self, client: AsyncClient, caregiver):
        record_id = (await clock_in(client, caregiver)).json()["evv_record"]["evv_record_id"]

        response = await client.post(
            f"/api/v1/evv/records/{record_id}/compliance",
            headers=auth_headers(caregiver),
            params={"as_of": "2026-12-31T00:00:00+00:00"},
        )
        assert response.status_code == 200

        stored = await client.get(f"/api/v1/evv/records/{record_id}", headers=auth_headers(caregiver))
        assert "REQUIRES_VMUR" in stored.json()["compliance_flags"]

    async def test_compliance_dashboard(self, client: AsyncClient, caregiver):
        await clock_in(client, caregiver)

        response = await client.get(
            "/api/v1/evv/reports/compliance",
            headers=auth_headers(caregiver),
            params={"start": "2026-03-01", "end": "2026-03-31"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["total_visits"] == 1
        assert data["compliant_visits"] == 0
        assert any(issue["flag"] == "INCOMPLETE_VISIT" for issue in data["top_issues"])


class TestGeofenceAndVMUREndpoints:
    """Supervisor operations."""

    async def test_supervisor_creates_geofence(self, client: AsyncClient, supervisor):
        response = await client.post(
            "/api/v1/evv/geofences",
            headers=auth_headers(supervisor),
            json={
                "address_id": str(ADDRESS_ID),
                "latitude": CENTER_LAT,
                "longitude": CENTER_LON,
                "radius_meters": 120,
            },
        )
        assert response.status_code == 201
        assert response.json()["radius_meters"] == 120
        assert response.json()["status"] == "ACTIVE"

    async def test_caregiver_cannot_create_geofence(self, client: AsyncClient, caregiver):
        response = await client.post(
            "/api/v1/evv/geofences",
            headers=auth_headers(caregiver),
            json={"address_id": str(ADDRESS_ID), "latitude": CENTER_LAT, "longitude": CENTER_LON},
        )
        assert response.status_code == 403

    async def test_vmur_for_fresh_record_is_422(self, client: AsyncClient, caregiver, supervisor):
        record_id = (await clock_in(client, caregiver)).json()["evv_record"]["evv_record_id"]

        response = await client.post(
            "/api/v1/evv/vmurs",
            headers=auth_headers(supervisor),
            json={
                "evv_record_id": record_id,
                "reason_code": "FORGOT_TO_CLOCK",
                "reason_details": "Forgot to clock out",
                "corrections": {"caregiver_npi": "9999999999"},
            },
        )
        assert response.status_code == 422

    async def test_amending_open_visit_is_409(self, client: AsyncClient, caregiver, supervisor):
        record_id = (await clock_in(client, caregiver)).json()["evv_record"]["evv_record_id"]

        response = await client.post(
            f"/api/v1/evv/records/{record_id}/amendments",
            headers=auth_headers(supervisor),
            json={"reason": "typo", "corrections": {"caregiver_npi": "9999999999"}},
        )
        assert response.status_code == 409


class TestSyncEndpoints:
    """Device sync over HTTP."""

    async def test_sync_device(self, client: AsyncClient, caregiver):
        record = (await clock_in(client, caregiver)).json()["evv_record"]

        response = await client.post(
            "/api/v1/sync/devices/device-001",
            headers=auth_headers(caregiver),
            json={
                "records": [
                    {
                        "evv_record_id": record["evv_record_id"],
                        "clock_in_time": record["clock_in_time"],
                        "client_attestation": {"client_present": True, "signature_hash": "ab" * 32},
                        "updated_at": "2100-01-01T00:00:00+00:00",
                    }
                ]
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["synced"] == 1
        assert data["results"][0]["server_record"]["client_attestation"]["client_present"] is True

        history = await client.get(
            "/api/v1/sync/devices/device-001/history", headers=auth_headers(caregiver)
        )
        assert [h["outcome"] for h in history.json()] == ["SYNCED"]

    async def test_sync_requires_permission(self, client: AsyncClient, supervisor):
        headers = {**auth_headers(supervisor), "X-User-Permissions": ""}

        response = await client.post(
            "/api/v1/sync/devices/device-001", headers=headers, json={"records": []}
        )
        assert response.status_code == 403

    async def test_resolve_without_storage(self, client: AsyncClient, caregiver):
        response = await client.post(
            "/api/v1/sync/resolve",
            headers=auth_headers(caregiver),
            json={
                "client_record": {"clock_in_time": "2026-03-02T08:50:00+00:00"},
                "server_record": {"clock_in_time": "2026-03-02T09:00:00+00:00"},
                "record_type": "evv_record",
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["strategy"] == "MANUAL"
        assert data["requires_manual_review"] is True

    async def test_detect_conflicts(self, client: AsyncClient, caregiver):
        response = await client.post(
            "/api/v1/sync/detect-conflicts",
            headers=auth_headers(caregiver),
            json={
                "local_record": {"clock_in_time": "2026-03-02T08:50:00+00:00", "notes": "x"},
                "server_record": {"clock_in_time": "2026-03-02T09:00:00+00:00", "notes": "x"},
            },
        )
        assert response.status_code == 200
        assert response.json() == {
            "has_conflict": True,
            "conflicting_fields": ["clock_in_time"],
            "severity": "HIGH",
        }

    async def test_resolve_unknown_record_is_404(self, client: AsyncClient, supervisor):
        response = await client.post(
            f"/api/v1/sync/records/{uuid4()}/resolve",
            headers=auth_headers(supervisor),
            json={"selected_strategy": "server"},
        )
        assert response.status_code == 404
