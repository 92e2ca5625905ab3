"""
Integration tests for the HTTP surface.

Engines are replaced through FastAPI dependency overrides so these tests
exercise routing, auth guards, request/response models and error rendering
without a database.
"""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from api.dependencies import (
    get_current_user,
    get_funding_ledger,
    get_inventory_allocator,
    get_inventory_registry,
    get_slot_coordinator,
)
from api.main import app
from database.models import (
    Consultation,
    ConsultationMode,
    ConsultationSlot,
    ConsultationStatus,
    Donation,
    InventoryCondition,
    InventoryItem,
    InventoryType,
    MedicineRequest,
    MedicineRequestStatus,
    UserRole,
)
from engine.actor import Actor
from engine.transactions import DonationOutcome, FulfillmentResult
from shared.config import get_settings
from shared.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError

START = datetime(2026, 11, 2, 9, 0, tzinfo=UTC)


@pytest.fixture
def engines():
    mocks = {
        "slots": MagicMock(),
        "ledger": MagicMock(),
        "allocator": MagicMock(),
        "registry": MagicMock(),
    }
    app.dependency_overrides[get_slot_coordinator] = lambda: mocks["slots"]
    app.dependency_overrides[get_funding_ledger] = lambda: mocks["ledger"]
    app.dependency_overrides[get_inventory_allocator] = lambda: mocks["allocator"]
    app.dependency_overrides[get_inventory_registry] = lambda: mocks["registry"]
    yield mocks
    app.dependency_overrides.clear()


@pytest.fixture
def login():
    def _login(role: UserRole, user_id: int = 1) -> None:
        app.dependency_overrides[get_current_user] = lambda: Actor(id=user_id, role=role)

    return _login


@pytest.fixture
def client():
    return TestClient(app)


def booked_consultation():
    return Consultation(
        id=8,
        patient_id=1,
        doctor_id=2,
        slot_id=5,
        status=ConsultationStatus.PENDING,
        mode=ConsultationMode.VIDEO,
    )


# ============================================================================
# Auth
# ============================================================================


class TestAuth:
    def test_missing_token_is_401(self, client, engines):
        response = client.get("/medicine-requests")

        assert response.status_code == 401

    def test_wrong_role_is_403_with_error_code(self, client, engines, login):
        login(UserRole.PATIENT)

        response = client.post(
            "/consultation-slots",
            json={"start_datetime": START.isoformat(), "end_datetime": (START + timedelta(minutes=30)).isoformat()},
        )

        assert response.status_code == 403
        assert response.json()["error_code"] == "FORBIDDEN"


# ============================================================================
# Slots and consultations
# ============================================================================


class TestConsultationRoutes:
    def test_create_slots(self, client, engines, login):
        login(UserRole.DOCTOR, user_id=2)
        engines["slots"].create_recurring = AsyncMock(
            return_value=[
                ConsultationSlot(
                    id=5, doctor_id=2, start_datetime=START, end_datetime=START + timedelta(minutes=30), is_booked=False
                )
            ]
        )

        response = client.post(
            "/consultation-slots",
            json={
                "start_datetime": START.isoformat(),
                "end_datetime": (START + timedelta(minutes=30)).isoformat(),
                "recurrence_count": 0,
            },
        )

        assert response.status_code == 201
        assert response.json()["slots"][0]["id"] == 5
        assert engines["slots"].create_recurring.await_args.kwargs["doctor_id"] == 2

    def test_book_consultation(self, client, engines, login):
        login(UserRole.PATIENT, user_id=1)
        engines["slots"].book = AsyncMock(return_value=booked_consultation())

        response = client.post("/consultations", json={"doctor_id": 2, "slot_id": 5, "mode": "video"})

        assert response.status_code == 201
        body = response.json()["consultation"]
        assert body["status"] == "pending"
        assert body["slot_id"] == 5

    def test_book_taken_slot_is_400(self, client, engines, login):
        login(UserRole.PATIENT)
        engines["slots"].book = AsyncMock(
            side_effect=ConflictError("Selected slot is already booked", error_code="SLOT_ALREADY_BOOKED")
        )

        response = client.post("/consultations", json={"doctor_id": 2, "slot_id": 5, "mode": "video"})

        assert response.status_code == 400
        assert response.json() == {
            "error": "Selected slot is already booked",
            "error_code": "SLOT_ALREADY_BOOKED",
        }

    def test_cancel_consultation(self, client, engines, login):
        login(UserRole.PATIENT)
        cancelled = booked_consultation()
        cancelled.status = ConsultationStatus.CANCELLED
        engines["slots"].cancel = AsyncMock(return_value=cancelled)

        response = client.delete("/consultations/8")

        assert response.status_code == 200
        assert response.json()["consultation"]["status"] == "cancelled"

    def test_malformed_body_is_400(self, client, engines, login):
        login(UserRole.PATIENT)

        response = client.post("/consultations", json={"slot_id": "abc"})

        assert response.status_code == 400
        assert response.json()["error"] == "Validation error"

    def test_list_my_consultations(self, client, engines, login):
        login(UserRole.DOCTOR, user_id=2)
        engines["slots"].list_consultations = AsyncMock(return_value=[booked_consultation()])

        response = client.get("/consultations")

        assert response.status_code == 200
        assert [c["id"] for c in response.json()["consultations"]] == [8]

    def test_admin_lists_all_consultations(self, client, engines, login):
        login(UserRole.ADMIN, user_id=3)
        engines["slots"].list_all_consultations = AsyncMock(
            return_value={"consultations": [booked_consultation()], "meta": {"page": 1, "limit": 20, "total": 1}}
        )

        response = client.get("/consultations/all", params={"status": "pending", "sort_by": "status"})

        assert response.status_code == 200
        assert response.json()["meta"]["total"] == 1
        kwargs = engines["slots"].list_all_consultations.await_args.kwargs
        assert kwargs["status"] == "pending"
        assert kwargs["sort_by"] == "status"

    def test_all_consultations_is_admin_only(self, client, engines, login):
        login(UserRole.DOCTOR, user_id=2)

        response = client.get("/consultations/all")

        assert response.status_code == 403

    def test_get_slot(self, client, engines, login):
        login(UserRole.PATIENT)
        engines["slots"].get_slot = AsyncMock(
            return_value=ConsultationSlot(
                id=5,
                doctor_id=2,
                start_datetime=START,
                end_datetime=START + timedelta(minutes=30),
                is_booked=False,
            )
        )

        response = client.get("/consultation-slots/5")

        assert response.status_code == 200
        assert response.json()["slot"]["doctor_id"] == 2


# ============================================================================
# Donations
# ============================================================================


class TestDonationRoutes:
    def test_donate(self, client, engines, login):
        login(UserRole.DONOR, user_id=12)
        engines["ledger"].record_donation = AsyncMock(
            return_value=Donation(id=55, treatment_request_id=7, donor_id=12, amount=Decimal("25.50"))
        )

        response = client.post("/donations", json={"treatment_request_id": 7, "amount": 25.5})

        assert response.status_code == 201
        assert response.json()["donation"]["amount"] == 25.5

    def test_over_goal_reports_remaining(self, client, engines, login):
        login(UserRole.DONOR, user_id=12)
        engines["ledger"].record_donation = AsyncMock(
            side_effect=ValidationError(
                "Donation amount exceeds the remaining goal",
                error_code="EXCEEDS_REMAINING_GOAL",
                details={"remaining_amount": Decimal("50.00")},
            )
        )

        response = client.post("/donations", json={"treatment_request_id": 7, "amount": 100})

        assert response.status_code == 400
        assert response.json()["remaining_amount"] == 50.0

    def test_get_donation_denied(self, client, engines, login):
        login(UserRole.DONOR, user_id=13)
        engines["ledger"].get_donation = AsyncMock(
            side_effect=AuthorizationError("You do not have access to this donation", error_code="FORBIDDEN")
        )

        response = client.get("/donations/55")

        assert response.status_code == 403
        assert response.json()["error_code"] == "FORBIDDEN"


# ============================================================================
# Payment webhook
# ============================================================================


def signed(payload: dict) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode()
    timestamp = int(time.time())
    signature = hmac.new(
        get_settings().STRIPE_WEBHOOK_SECRET.encode(),
        f"{timestamp}.{body.decode()}".encode(),
        hashlib.sha256,
    ).hexdigest()
    return body, {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


class TestStripeWebhook:
    event = {
        "id": "evt_1",
        "type": "payment_intent.succeeded",
        "created": 1,
        "data": {"object": {"id": "pi_1", "metadata": {"treatment_request_id": "7", "donor_id": "12", "amount": "10.00"}}},
    }

    def test_applies_payment(self, client, engines):
        donation = Donation(id=55, treatment_request_id=7, donor_id=12, amount=Decimal("10.00"))
        engines["ledger"].record_donation_from_payment_confirmation = AsyncMock(
            return_value=DonationOutcome(donation=donation, duplicate=False)
        )
        body, headers = signed(self.event)

        response = client.post("/stripe-webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "donation_id": 55, "duplicate": False}

    def test_redelivery_acknowledged(self, client, engines):
        donation = Donation(id=55, treatment_request_id=7, donor_id=12, amount=Decimal("10.00"))
        engines["ledger"].record_donation_from_payment_confirmation = AsyncMock(
            return_value=DonationOutcome(donation=donation, duplicate=True)
        )
        body, headers = signed(self.event)

        response = client.post("/stripe-webhook", content=body, headers=headers)

        assert response.json()["duplicate"] is True

    def test_ignored_event(self, client, engines):
        engines["ledger"].record_donation_from_payment_confirmation = AsyncMock(return_value=None)
        body, headers = signed({**self.event, "type": "charge.refunded"})

        response = client.post("/stripe-webhook", content=body, headers=headers)

        assert response.json() == {"received": True}

    def test_bad_signature(self, client, engines):
        engines["ledger"].record_donation_from_payment_confirmation = AsyncMock()
        body, headers = signed(self.event)
        headers["Stripe-Signature"] = "t=1,v1=deadbeef"

        response = client.post("/stripe-webhook", content=body, headers=headers)

        assert response.status_code == 400
        engines["ledger"].record_donation_from_payment_confirmation.assert_not_awaited()


# ============================================================================
# Medicine requests and inventory
# ============================================================================


def medicine_request(status=MedicineRequestStatus.AVAILABLE):
    return MedicineRequest(
        id=20,
        patient_id=1,
        item_name_requested="Paracetamol",
        quantity_needed=10,
        delivery_location="Ward 3",
        assigned_source_id=10,
        status=status,
    )


class TestInventoryRoutes:
    def test_patient_creates_request_for_self(self, client, engines, login):
        login(UserRole.PATIENT, user_id=1)
        engines["allocator"].create_request = AsyncMock(return_value=medicine_request())

        response = client.post(
            "/medicine-requests",
            json={"item_name_requested": "Paracetamol", "quantity_needed": 10, "delivery_location": "Ward 3"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "available"
        assert body["assigned_source_id"] == 10
        assert body["data"]["status"] == "available"
        assert engines["allocator"].create_request.await_args.kwargs["patient_id"] == 1

    def test_fulfill_returns_allocations(self, client, engines, login):
        login(UserRole.HOSPITAL, user_id=10)
        engines["allocator"].fulfill = AsyncMock(
            return_value=FulfillmentResult(
                request=medicine_request(MedicineRequestStatus.FULFILLED), allocations=[(2, 7), (1, 3)]
            )
        )

        response = client.put("/medicine-requests/20/fulfill")

        assert response.status_code == 200
        body = response.json()
        assert body["data"]["status"] == "fulfilled"
        assert body["allocations"] == [{"item_id": 2, "quantity_taken": 7}, {"item_id": 1, "quantity_taken": 3}]

    def test_patient_cannot_accept(self, client, engines, login):
        login(UserRole.PATIENT)

        response = client.put("/medicine-requests/20/accept")

        assert response.status_code == 403

    def test_register_lot_defaults_source_to_caller(self, client, engines, login):
        login(UserRole.NGO, user_id=11)
        engines["registry"].register_lot = AsyncMock(
            return_value=InventoryItem(
                id=3,
                name="Wheelchair",
                type=InventoryType.EQUIPMENT,
                quantity_available=2,
                total_quantity=2,
                condition=InventoryCondition.GOOD,
                source_id=11,
            )
        )

        response = client.post(
            "/inventory-registry",
            json={"name": "Wheelchair", "type": "equipment", "quantity_available": 2, "total_quantity": 2},
        )

        assert response.status_code == 201
        assert engines["registry"].register_lot.await_args.kwargs["source_id"] == 11

    def test_get_medicine_request(self, client, engines, login):
        login(UserRole.DOCTOR, user_id=2)
        engines["allocator"].get_request = AsyncMock(return_value=medicine_request())

        response = client.get("/medicine-requests/20")

        assert response.status_code == 200
        assert response.json()["data"]["item_name_requested"] == "Paracetamol"

    def test_assigned_source_updates_notes(self, client, engines, login):
        login(UserRole.HOSPITAL, user_id=10)
        updated = medicine_request()
        updated.notes = "Collect at gate B"
        engines["allocator"].update_notes = AsyncMock(return_value=updated)

        response = client.put("/medicine-requests/20", json={"notes": "Collect at gate B"})

        assert response.status_code == 200
        assert response.json()["data"]["notes"] == "Collect at gate B"
        assert engines["allocator"].update_notes.await_args.args[:2] == (20, "Collect at gate B")

    def test_notes_field_is_required(self, client, engines, login):
        login(UserRole.ADMIN, user_id=3)

        response = client.put("/medicine-requests/20", json={})

        assert response.status_code == 400

    def test_get_lot_not_found(self, client, engines, login):
        login(UserRole.ADMIN, user_id=3)
        engines["registry"].get_lot = AsyncMock(
            side_effect=NotFoundError("Inventory item not found", error_code="INVENTORY_ITEM_NOT_FOUND")
        )

        response = client.get("/inventory-registry/404")

        assert response.status_code == 404
        assert response.json()["error_code"] == "INVENTORY_ITEM_NOT_FOUND"


# ============================================================================
# Health
# ============================================================================


class TestHealth:
    def test_degraded_when_redis_down(self, client, monkeypatch):
        database = MagicMock()
        database.ping = AsyncMock(return_value=True)
        redis_client = MagicMock()
        redis_client.ping = AsyncMock(side_effect=OSError("refused"))
        monkeypatch.setattr(app.state, "database", database, raising=False)
        monkeypatch.setattr(app.state, "redis", redis_client, raising=False)

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json() == {"status": "degraded", "postgres": "connected", "redis": "disconnected"}
