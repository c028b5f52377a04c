"""HTTP-level tests for the booking API.

The real application is used with ``get_db`` and ``get_notification_service``
overridden to point at the per-test database.
"""

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from house_haunters.app.main import app
from house_haunters.infra.database import get_db
from house_haunters.services.auth_service import create_access_token
from house_haunters.services.notification_service import get_notification_service


@pytest.fixture
async def client(session_factory, notifier):
    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_notification_service] = lambda: notifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def auth(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


@pytest.fixture
async def parties(make_user, make_property):
    tenant = await make_user("tenant", "Tina Tenant")
    hunter = await make_user("hunter", "Harry Hunter")
    prop = await make_property(hunter)
    return tenant, hunter, prop


# ---------------------------------------------------------------------------
# Health and auth
# ---------------------------------------------------------------------------


class TestHealthAndAuth:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "service": "house-haunters"}

    async def test_missing_token(self, client):
        resp = await client.get("/api/auth/me")
        assert resp.status_code == 401
        assert resp.json() == {"message": "Missing or invalid token"}

    async def test_garbage_token(self, client):
        resp = await client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401
        assert resp.json() == {"message": "Invalid or expired token"}

    async def test_me(self, client, parties):
        tenant, _, _ = parties
        resp = await client.get("/api/auth/me", headers=auth(tenant))
        assert resp.status_code == 200
        assert resp.json()["id"] == tenant.id
        assert resp.json()["role"] == "tenant"

    async def test_role_guard(self, client, parties):
        tenant, _, _ = parties
        resp = await client.get("/api/admin/disputes", headers=auth(tenant))
        assert resp.status_code == 403
        assert resp.json() == {"message": "Insufficient permissions"}


# ---------------------------------------------------------------------------
# Viewing request to released payment
# ---------------------------------------------------------------------------


class TestHappyPath:
    async def test_request_to_release(self, client, parties):
        tenant, hunter, prop = parties

        resp = await client.post(
            "/api/viewing-requests",
            headers=auth(tenant),
            json={
                "propertyId": prop.id,
                "proposedDates": [{"date": "2030-01-10", "timeSlot": "10:00"}],
                "amount": "1000.00",
                "message": "Keen to view",
            },
        )
        assert resp.status_code == 201
        request_id = resp.json()["viewing_request"]["id"]

        resp = await client.post(f"/api/viewing-requests/{request_id}/pay", headers=auth(tenant))
        assert resp.status_code == 200
        assert resp.json()["receipt"].startswith("SIM")

        resp = await client.post(
            f"/api/viewing-requests/{request_id}/accept", headers=auth(hunter), json={}
        )
        assert resp.status_code == 200
        booking = resp.json()["booking"]
        booking_id = booking["id"]
        assert booking["phase"] == "awaiting_meeting"
        assert booking["status"] == "CONFIRMED"
        assert Decimal(booking["amount"]) == Decimal("1000")
        assert "share_meeting_point" in booking["allowed_actions"]

        resp = await client.post(
            f"/api/bookings/{booking_id}/meeting-point",
            headers=auth(hunter),
            json={"type": "landmark", "location": {"name": "Yaya Centre"}},
        )
        assert resp.status_code == 200
        assert resp.json()["meeting_point"]["type"] == "LANDMARK"

        resp = await client.post(f"/api/bookings/{booking_id}/confirm-meeting", headers=auth(hunter))
        assert resp.json()["both_confirmed"] is False
        resp = await client.post(f"/api/bookings/{booking_id}/confirm-arrival", headers=auth(tenant))
        assert resp.status_code == 200
        assert resp.json()["both_confirmed"] is True
        assert resp.json()["booking"]["phase"] == "meeting_in_progress"

        resp = await client.post(
            f"/api/bookings/{booking_id}/outcome",
            headers=auth(tenant),
            json={"outcome": "COMPLETED_SATISFIED", "feedback": "Lovely place"},
        )
        assert resp.status_code == 200
        assert resp.json()["booking"]["phase"] == "completed_released"
        assert resp.json()["booking"]["payment_status"] == "RELEASED"

        resp = await client.get("/api/payments/earnings", headers=auth(hunter))
        assert resp.status_code == 200
        summary = resp.json()
        assert len(summary["earnings"]) == 1
        assert Decimal(summary["total_pending"]) == Decimal("850")
        assert Decimal(summary["total_earnings"]) == Decimal("850")

        resp = await client.post(
            "/api/payments/withdraw", headers=auth(tenant), json={"phoneNumber": "254700000001"}
        )
        assert resp.status_code == 403
        resp = await client.post(
            "/api/payments/withdraw", headers=auth(hunter), json={"phoneNumber": "254700000001"}
        )
        assert resp.status_code == 200
        withdrawal = resp.json()["withdrawal"]
        assert Decimal(withdrawal["amount"]) == Decimal("850")
        assert withdrawal["receipt_number"].startswith("WD")
        resp = await client.post(
            "/api/payments/withdraw", headers=auth(hunter), json={"amount": "10"}
        )
        assert resp.status_code == 400
        assert resp.json() == {"message": "Insufficient balance"}

        resp = await client.get("/api/payments/earnings", headers=auth(hunter))
        summary = resp.json()
        assert Decimal(summary["total_pending"]) == Decimal("0")
        assert Decimal(summary["total_withdrawn"]) == Decimal("850")

        resp = await client.get(f"/api/bookings/{booking_id}/timeline", headers=auth(tenant))
        event_types = [e["event_type"] for e in resp.json()]
        assert event_types[0] == "created"
        assert "physical_meeting_confirmed" in event_types
        assert event_types[-1] == "payment_released"


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------


class TestErrors:
    async def test_unknown_booking(self, client, parties):
        tenant, _, _ = parties
        resp = await client.get("/api/bookings/missing", headers=auth(tenant))
        assert resp.status_code == 404
        assert resp.json() == {"message": "Booking not found"}

    async def test_stranger_cannot_read_booking(self, client, parties, make_booking, make_user):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)
        stranger = await make_user("tenant")

        resp = await client.get(f"/api/bookings/{booking.id}", headers=auth(stranger))

        assert resp.status_code == 403
        assert resp.json() == {"message": "Access denied"}

    async def test_invalid_phase_is_400(self, client, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)

        resp = await client.post(
            f"/api/bookings/{booking.id}/outcome",
            headers=auth(tenant),
            json={"outcome": "COMPLETED_SATISFIED"},
        )

        assert resp.status_code == 400
        assert "Physical meeting" in resp.json()["message"]

    async def test_offering_a_foreign_property_is_403(
        self, client, parties, make_booking, make_user, make_property
    ):
        tenant, hunter, prop = parties
        booking = await make_booking(
            tenant, hunter, prop,
            physical_meeting_confirmed=True,
            viewing_outcome="ALTERNATIVE_REQUESTED",
        )
        other_hunter = await make_user("hunter")
        foreign = await make_property(other_hunter, "Penthouse, Lavington")

        resp = await client.post(
            f"/api/bookings/{booking.id}/offer-alternative",
            headers=auth(hunter),
            json={"propertyId": foreign.id},
        )

        assert resp.status_code == 403
        assert resp.json() == {"message": "You can only offer your own properties"}

    async def test_validation_error_shape(self, client, parties):
        tenant, _, prop = parties
        resp = await client.post(
            "/api/viewing-requests",
            headers=auth(tenant),
            json={"propertyId": prop.id, "proposedDates": [], "amount": "10"},
        )
        assert resp.status_code == 422
        body = resp.json()
        assert body["message"] == "Invalid request"
        assert body["errors"]

    async def test_conflict_is_409(self, client, parties, make_booking):
        tenant, hunter, prop = parties
        await make_booking(tenant, hunter, prop)

        resp = await client.post(
            "/api/viewing-requests",
            headers=auth(tenant),
            json={
                "propertyId": prop.id,
                "proposedDates": [{"date": "2030-01-10", "timeSlot": "10:00"}],
                "amount": "10",
            },
        )

        assert resp.status_code == 409
        assert resp.json() == {"message": "Property is already booked"}


# ---------------------------------------------------------------------------
# Cancellation, disputes and admin
# ---------------------------------------------------------------------------


class TestDisputeFlow:
    async def test_no_show_respond_and_refund(self, client, parties, make_booking, make_user):
        tenant, hunter, prop = parties
        admin = await make_user("admin")
        booking = await make_booking(tenant, hunter, prop)

        resp = await client.post(
            f"/api/bookings/{booking.id}/report-no-show",
            headers=auth(tenant),
            json={"reason": "Nobody at the gate"},
        )
        assert resp.status_code == 200
        dispute_id = resp.json()["dispute"]["id"]
        assert resp.json()["booking"]["phase"] == "cancelled"

        resp = await client.post(
            f"/api/disputes/{dispute_id}/respond",
            headers=auth(hunter),
            json={"response": "Traffic on Ngong Road", "evidenceUrls": ["https://img/map.png"]},
        )
        assert resp.status_code == 200
        assert resp.json()["dispute"]["status"] == "IN_PROGRESS"

        resp = await client.get(
            "/api/admin/disputes", headers=auth(admin), params={"category": "NO_SHOW_HUNTER"}
        )
        assert [d["id"] for d in resp.json()] == [dispute_id]

        resp = await client.post(
            f"/api/admin/disputes/{dispute_id}/resolve",
            headers=auth(admin),
            json={"resolution": "Refund the tenant", "action": "REFUND"},
        )
        assert resp.status_code == 200
        assert resp.json()["dispute"]["status"] == "RESOLVED"
        assert resp.json()["booking"]["phase"] == "refunded"

        resp = await client.post(
            f"/api/admin/disputes/{dispute_id}/resolve",
            headers=auth(admin),
            json={"resolution": "Again", "action": "RELEASE_PAYMENT"},
        )
        assert resp.status_code == 400
        assert resp.json() == {"message": "Dispute is already resolved"}

    async def test_cancel(self, client, parties, make_booking):
        tenant, hunter, prop = parties
        booking = await make_booking(tenant, hunter, prop)

        resp = await client.post(
            f"/api/bookings/{booking.id}/cancel", headers=auth(hunter), json={"reason": "Unit let"}
        )

        assert resp.status_code == 200
        assert resp.json()["booking"]["status"] == "CANCELLED"
        assert resp.json()["booking"]["allowed_actions"] == []


# ---------------------------------------------------------------------------
# Internal scheduler endpoints
# ---------------------------------------------------------------------------


class TestInternalScheduler:
    async def test_wrong_token(self, client):
        resp = await client.post(
            "/api/internal/scheduler/tick", headers={"X-Internal-Token": "nope"}
        )
        assert resp.status_code == 401
        assert resp.json() == {"message": "Invalid internal token"}

    async def test_missing_token(self, client):
        resp = await client.post("/api/internal/scheduler/tick")
        assert resp.status_code == 422

    async def test_tick_releases_overdue(self, client, parties, make_booking):
        tenant, hunter, prop = parties
        await make_booking(tenant, hunter, prop, scheduled_date="2025-03-01")

        resp = await client.post(
            "/api/internal/scheduler/tick", headers={"X-Internal-Token": "haunters-internal"}
        )

        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "results": {"auto_released": 1, "expired": 0}}

    async def test_morning_prompts(self, client):
        resp = await client.post(
            "/api/internal/scheduler/morning-prompts",
            headers={"X-Internal-Token": "haunters-internal"},
        )
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "results": {"prompted": 0}}
