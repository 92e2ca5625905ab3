"""
Unit tests for SlotBookingCoordinator.

Tests coverage:
- book(): success path, already-booked slot, missing slot, invalid doctor/mode
- create_recurring(): window expansion in a single commit
- update_slot() / delete_slot(): ownership, booked-slot guard, cascade cancel
- cancel() / update_status(): participants, slot release, terminal states
- list_slots(): role scoping
"""

from datetime import UTC, datetime, timedelta

import pytest
from conftest import FakeDatabase, FakeUnitOfWork

from database.models import (
    Consultation,
    ConsultationMode,
    ConsultationSlot,
    ConsultationStatus,
    User,
    UserRole,
)
from engine.actor import Actor
from engine.transactions import SlotBookingCoordinator
from shared.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError

START = datetime(2026, 11, 2, 9, 0, tzinfo=UTC)
END = START + timedelta(minutes=30)

DOCTOR_ROW = User(id=2, username="dr", role=UserRole.DOCTOR)


def free_slot(slot_id=5, doctor_id=2):
    return ConsultationSlot(
        id=slot_id,
        doctor_id=doctor_id,
        start_datetime=START,
        end_datetime=END,
        is_booked=False,
        consultation_id=None,
    )


def booked_pair(consultation_status=ConsultationStatus.PENDING):
    slot = ConsultationSlot(
        id=5, doctor_id=2, start_datetime=START, end_datetime=END, is_booked=True, consultation_id=8
    )
    consultation = Consultation(
        id=8,
        patient_id=1,
        doctor_id=2,
        slot_id=5,
        status=consultation_status,
        mode=ConsultationMode.VIDEO,
    )
    return slot, consultation


# ============================================================================
# book()
# ============================================================================


class TestBook:
    @pytest.mark.asyncio
    async def test_books_free_slot(self):
        slot = free_slot()
        uow = FakeUnitOfWork(locked=[slot], rows={(User, 2): DOCTOR_ROW})
        coordinator = SlotBookingCoordinator(FakeDatabase(uow))

        consultation = await coordinator.book(patient_id=1, doctor_id=2, slot_id=5, mode="video")

        assert uow.committed is True
        assert consultation.status == ConsultationStatus.PENDING
        assert consultation.mode == ConsultationMode.VIDEO
        assert consultation.slot_id == 5
        assert slot.is_booked is True
        assert slot.consultation_id == consultation.id
        # The slot row is read under FOR UPDATE
        assert uow.lock_statements[0]._for_update_arg is not None

    @pytest.mark.asyncio
    async def test_booked_slot_is_refused(self):
        slot, _ = booked_pair()
        uow = FakeUnitOfWork(locked=[slot], rows={(User, 2): DOCTOR_ROW})
        coordinator = SlotBookingCoordinator(FakeDatabase(uow))

        with pytest.raises(ConflictError) as exc_info:
            await coordinator.book(patient_id=1, doctor_id=2, slot_id=5, mode="video")

        assert exc_info.value.status_code == 400
        assert exc_info.value.to_dict() == {
            "error": "Selected slot is already booked",
            "error_code": "SLOT_ALREADY_BOOKED",
        }
        assert uow.committed is False
        assert uow.added == []

    @pytest.mark.asyncio
    async def test_missing_slot(self):
        uow = FakeUnitOfWork(locked=[None], rows={(User, 2): DOCTOR_ROW})
        coordinator = SlotBookingCoordinator(FakeDatabase(uow))

        with pytest.raises(NotFoundError) as exc_info:
            await coordinator.book(patient_id=1, doctor_id=2, slot_id=404, mode="chat")

        assert exc_info.value.error_code == "SLOT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_not_a_doctor(self):
        uow = FakeUnitOfWork(rows={(User, 9): User(id=9, username="p", role=UserRole.PATIENT)})
        coordinator = SlotBookingCoordinator(FakeDatabase(uow))

        with pytest.raises(ValidationError) as exc_info:
            await coordinator.book(patient_id=1, doctor_id=9, slot_id=5, mode="video")

        assert exc_info.value.error_code == "INVALID_DOCTOR"
        assert uow.lock_statements == []

    @pytest.mark.asyncio
    async def test_invalid_mode_rejected_before_transaction(self):
        database = FakeDatabase()
        coordinator = SlotBookingCoordinator(database)

        with pytest.raises(ValidationError) as exc_info:
            await coordinator.book(patient_id=1, doctor_id=2, slot_id=5, mode="fax")

        assert exc_info.value.error_code == "INVALID_MODE"
        assert database.opened == []


# ============================================================================
# Slot maintenance
# ============================================================================


class TestSlotMaintenance:
    @pytest.mark.asyncio
    async def test_create_recurring(self):
        uow = FakeUnitOfWork(rows={(User, 2): DOCTOR_ROW})
        coordinator = SlotBookingCoordinator(FakeDatabase(uow))

        slots = await coordinator.create_recurring(doctor_id=2, start=START, end=END, count=2, interval_days=7)

        assert len(slots) == 3
        assert [s.start_datetime for s in slots] == [START, START + timedelta(days=7), START + timedelta(days=14)]
        assert all(s.is_booked is False for s in slots)
        assert uow.committed is True

    @pytest.mark.asyncio
    async def test_create_rejects_inverted_window(self):
        coordinator = SlotBookingCoordinator(FakeDatabase())

        with pytest.raises(ValidationError) as exc_info:
            await coordinator.create_recurring(doctor_id=2, start=END, end=START)

        assert exc_info.value.error_code == "INVALID_WINDOW"

    @pytest.mark.asyncio
    async def test_naive_datetimes_taken_as_utc(self):
        uow = FakeUnitOfWork(rows={(User, 2): DOCTOR_ROW})
        coordinator = SlotBookingCoordinator(FakeDatabase(uow))

        slots = await coordinator.create_recurring(
            doctor_id=2, start=START.replace(tzinfo=None), end=END.replace(tzinfo=None)
        )

        assert slots[0].start_datetime == START

    @pytest.mark.asyncio
    async def test_update_booked_slot_refused(self):
        slot, _ = booked_pair()
        coordinator = SlotBookingCoordinator(FakeDatabase(FakeUnitOfWork(locked=[slot])))

        with pytest.raises(ConflictError) as exc_info:
            await coordinator.update_slot(5, 2, start=START + timedelta(hours=1))

        assert exc_info.value.error_code == "SLOT_ALREADY_BOOKED"

    @pytest.mark.asyncio
    async def test_update_other_doctors_slot(self):
        coordinator = SlotBookingCoordinator(FakeDatabase(FakeUnitOfWork(locked=[free_slot(doctor_id=99)])))

        with pytest.raises(AuthorizationError) as exc_info:
            await coordinator.update_slot(5, 2, end=END + timedelta(minutes=15))

        assert exc_info.value.error_code == "NOT_SLOT_OWNER"

    @pytest.mark.asyncio
    async def test_update_moves_window(self):
        slot = free_slot()
        uow = FakeUnitOfWork(locked=[slot])
        coordinator = SlotBookingCoordinator(FakeDatabase(uow))

        await coordinator.update_slot(5, 2, start=START + timedelta(hours=1), end=END + timedelta(hours=1))

        assert slot.start_datetime == START + timedelta(hours=1)
        assert uow.committed is True

    @pytest.mark.asyncio
    async def test_delete_booked_slot_cancels_consultation(self):
        slot, consultation = booked_pair()
        uow = FakeUnitOfWork(locked=[consultation, slot], rows={(ConsultationSlot, 5): slot})
        coordinator = SlotBookingCoordinator(FakeDatabase(uow))

        await coordinator.delete_slot(5, 2)

        assert consultation.status == ConsultationStatus.CANCELLED
        assert consultation.slot_id is None
        assert uow.deleted == [slot]
        assert uow.committed is True

    @pytest.mark.asyncio
    async def test_delete_detects_concurrent_rebooking(self):
        peeked = free_slot()
        relocked, _ = booked_pair()
        uow = FakeUnitOfWork(locked=[relocked], rows={(ConsultationSlot, 5): peeked})
        coordinator = SlotBookingCoordinator(FakeDatabase(uow))

        with pytest.raises(ConflictError) as exc_info:
            await coordinator.delete_slot(5, 2)

        assert exc_info.value.error_code == "CONCURRENT_MODIFICATION"
        assert uow.deleted == []


# ============================================================================
# cancel() / update_status()
# ============================================================================


class TestCancellation:
    @pytest.mark.asyncio
    async def test_patient_cancel_frees_slot(self, patient):
        slot, consultation = booked_pair()
        uow = FakeUnitOfWork(locked=[consultation, slot])
        coordinator = SlotBookingCoordinator(FakeDatabase(uow))

        result = await coordinator.cancel(8, patient)

        assert result.status == ConsultationStatus.CANCELLED
        assert slot.is_booked is False
        assert slot.consultation_id is None
        assert uow.committed is True

    @pytest.mark.asyncio
    async def test_second_cancel_refused(self, patient):
        _, consultation = booked_pair(ConsultationStatus.CANCELLED)
        coordinator = SlotBookingCoordinator(FakeDatabase(FakeUnitOfWork(locked=[consultation])))

        with pytest.raises(ConflictError) as exc_info:
            await coordinator.cancel(8, patient)

        assert exc_info.value.error_code == "CONSULTATION_ALREADY_CANCELLED"

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self):
        _, consultation = booked_pair()
        coordinator = SlotBookingCoordinator(FakeDatabase(FakeUnitOfWork(locked=[consultation])))

        with pytest.raises(AuthorizationError):
            await coordinator.cancel(8, Actor(id=77, role=UserRole.PATIENT))

    @pytest.mark.asyncio
    async def test_admin_can_cancel(self, admin):
        slot, consultation = booked_pair(ConsultationStatus.CONFIRMED)
        coordinator = SlotBookingCoordinator(FakeDatabase(FakeUnitOfWork(locked=[consultation, slot])))

        result = await coordinator.cancel(8, admin)

        assert result.status == ConsultationStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_missing_consultation(self, patient):
        coordinator = SlotBookingCoordinator(FakeDatabase(FakeUnitOfWork(locked=[None])))

        with pytest.raises(NotFoundError):
            await coordinator.cancel(404, patient)

    @pytest.mark.asyncio
    async def test_doctor_confirms_and_edits_notes(self, doctor):
        _, consultation = booked_pair()
        uow = FakeUnitOfWork(locked=[consultation])
        coordinator = SlotBookingCoordinator(FakeDatabase(uow))

        result = await coordinator.update_status(8, "confirmed", doctor, notes="Bring prior scans")

        assert result.status == ConsultationStatus.CONFIRMED
        assert result.notes == "Bring prior scans"
        assert uow.committed is True

    @pytest.mark.asyncio
    async def test_status_cancel_frees_slot(self, doctor):
        slot, consultation = booked_pair()
        coordinator = SlotBookingCoordinator(FakeDatabase(FakeUnitOfWork(locked=[consultation, slot])))

        await coordinator.update_status(8, "cancelled", doctor)

        assert slot.is_booked is False

    @pytest.mark.asyncio
    async def test_patient_cannot_complete(self, patient):
        _, consultation = booked_pair()
        coordinator = SlotBookingCoordinator(FakeDatabase(FakeUnitOfWork(locked=[consultation])))

        with pytest.raises(AuthorizationError) as exc_info:
            await coordinator.update_status(8, "completed", patient)

        assert exc_info.value.error_code == "STATUS_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_unknown_status(self, doctor):
        coordinator = SlotBookingCoordinator(FakeDatabase())

        with pytest.raises(ValidationError) as exc_info:
            await coordinator.update_status(8, "teleported", doctor)

        assert exc_info.value.error_code == "INVALID_STATUS"


# ============================================================================
# list_slots()
# ============================================================================


class TestListSlots:
    @pytest.mark.asyncio
    async def test_patient_needs_doctor_id(self, patient):
        coordinator = SlotBookingCoordinator(FakeDatabase())

        with pytest.raises(ValidationError) as exc_info:
            await coordinator.list_slots(patient)

        assert exc_info.value.error_code == "MISSING_FIELDS"

    @pytest.mark.asyncio
    async def test_sources_cannot_list(self, hospital):
        coordinator = SlotBookingCoordinator(FakeDatabase())

        with pytest.raises(AuthorizationError):
            await coordinator.list_slots(hospital)

    @pytest.mark.asyncio
    async def test_returns_meta(self, doctor):
        slots = [free_slot(5), free_slot(6)]
        uow = FakeUnitOfWork(scalars_one=[2], scalar_lists=[slots])
        coordinator = SlotBookingCoordinator(FakeDatabase(uow))

        result = await coordinator.list_slots(doctor, page=1, limit=10)

        assert result["slots"] == slots
        assert result["meta"] == {"page": 1, "limit": 10, "total": 2}


class TestReads:
    @pytest.mark.asyncio
    async def test_doctor_views_own_slot(self, doctor):
        slot = free_slot()
        uow = FakeUnitOfWork(rows={(ConsultationSlot, 5): slot})

        assert await SlotBookingCoordinator(FakeDatabase(uow)).get_slot(5, doctor) is slot

    @pytest.mark.asyncio
    async def test_doctor_cannot_view_colleague_slot(self, doctor):
        uow = FakeUnitOfWork(rows={(ConsultationSlot, 5): free_slot(doctor_id=99)})

        with pytest.raises(AuthorizationError) as exc_info:
            await SlotBookingCoordinator(FakeDatabase(uow)).get_slot(5, doctor)

        assert exc_info.value.error_code == "NOT_SLOT_OWNER"

    @pytest.mark.asyncio
    async def test_patient_cannot_view_booked_slot(self, patient):
        slot, _ = booked_pair()
        uow = FakeUnitOfWork(rows={(ConsultationSlot, 5): slot})

        with pytest.raises(AuthorizationError) as exc_info:
            await SlotBookingCoordinator(FakeDatabase(uow)).get_slot(5, patient)

        assert exc_info.value.error_code == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_missing_slot(self, patient):
        with pytest.raises(NotFoundError) as exc_info:
            await SlotBookingCoordinator(FakeDatabase()).get_slot(404, patient)

        assert exc_info.value.error_code == "SLOT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_list_consultations_scoped_to_participant(self, patient):
        _, consultation = booked_pair()
        uow = FakeUnitOfWork(scalar_lists=[[consultation]])

        result = await SlotBookingCoordinator(FakeDatabase(uow)).list_consultations(patient)

        assert result == [consultation]
        assert "consultations.patient_id =" in str(uow.statements[0])

    @pytest.mark.asyncio
    async def test_admin_listing_sort_allow_list(self):
        with pytest.raises(ValidationError) as exc_info:
            await SlotBookingCoordinator(FakeDatabase()).list_all_consultations(sort_by="notes; drop")

        assert exc_info.value.error_code == "INVALID_SORT_FIELD"

    @pytest.mark.asyncio
    async def test_admin_listing_bad_status(self):
        with pytest.raises(ValidationError) as exc_info:
            await SlotBookingCoordinator(FakeDatabase()).list_all_consultations(status="paused")

        assert exc_info.value.error_code == "INVALID_STATUS"

    @pytest.mark.asyncio
    async def test_admin_listing_meta(self):
        _, consultation = booked_pair()
        uow = FakeUnitOfWork(scalars_one=[1], scalar_lists=[[consultation]])

        result = await SlotBookingCoordinator(FakeDatabase(uow)).list_all_consultations(
            doctor_id=2, sort_by="STATUS", sort_order="asc", limit=500
        )

        assert result["consultations"] == [consultation]
        assert result["meta"] == {"page": 1, "limit": 100, "total": 1}
