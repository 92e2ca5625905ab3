"""
Slot Booking Coordinator.

Single writer of consultation_slots.is_booked / consultation_id and of
consultation status. Every mutation follows:

    lock -> validate -> mutate -> commit (or roll back)

Lock order is always consultation before slot. book() only locks the slot, so
two concurrent bookings of one slot serialize on that row lock and exactly one
of them sees is_booked = false.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select

from database.connection import Database
from database.models import (
    Consultation,
    ConsultationSlot,
    ConsultationStatus,
    User,
    UserRole,
)
from database.unit_of_work import UnitOfWork
from engine.actor import Actor
from engine.services.recurrence_service import expand_slot_windows
from engine.validators import (
    raise_invalid,
    validate_consultation_mode,
    validate_consultation_transition,
    validate_recurrence,
    validate_slot_bookable,
    validate_slot_window,
    validate_sort_field,
)
from shared.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Column allow-list for list_all_consultations(sort_by=...)
CONSULTATION_SORT_COLUMNS = {
    "created_at": Consultation.created_at,
    "updated_at": Consultation.updated_at,
    "status": Consultation.status,
    "mode": Consultation.mode,
    "doctor_id": Consultation.doctor_id,
    "patient_id": Consultation.patient_id,
}


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes from clients are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class SlotBookingCoordinator:
    """Books, cancels and maintains consultation slots."""

    def __init__(self, database: Database) -> None:
        self.database = database

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def book(self, patient_id: int, doctor_id: int, slot_id: int, mode: str) -> Consultation:
        """
        Book a slot for a patient, creating a pending consultation.

        Flow:
        1. Validate mode (video / audio / chat)
        2. Check the doctor exists and has role doctor
        3. Lock the slot row (SELECT ... FOR UPDATE)
        4. Validate slot exists, belongs to the doctor and is free
        5. Insert consultation, mark slot booked, commit

        Raises:
            ValidationError: INVALID_MODE, INVALID_DOCTOR, SLOT_DOCTOR_MISMATCH
            NotFoundError: SLOT_NOT_FOUND
            ConflictError: SLOT_ALREADY_BOOKED (HTTP 400)
        """
        trace_id = f"book:slot={slot_id}"
        logger.info(
            f"[{trace_id}] Starting booking transaction",
            extra={"slot_id": slot_id, "patient_id": patient_id, "doctor_id": doctor_id},
        )

        mode_check = validate_consultation_mode(mode)
        if not mode_check["valid"]:
            logger.warning(f"[{trace_id}] Invalid consultation mode: {mode}")
        raise_invalid(mode_check)

        async with self.database.unit_of_work() as uow:
            await self._require_doctor(uow, doctor_id, trace_id)

            slot = await uow.lock_one(
                select(ConsultationSlot).where(ConsultationSlot.id == slot_id)
            )

            slot_check = validate_slot_bookable(slot, doctor_id)
            if not slot_check["valid"]:
                logger.warning(
                    f"[{trace_id}] Slot validation failed: {slot_check['error_code']}",
                    extra={"slot_id": slot_id},
                )
            raise_invalid(slot_check)

            consultation = Consultation(
                patient_id=patient_id,
                doctor_id=doctor_id,
                slot_id=slot.id,
                status=ConsultationStatus.PENDING,
                mode=mode_check["mode"],
            )
            uow.add(consultation)
            await uow.flush()

            slot.is_booked = True
            slot.consultation_id = consultation.id
            await uow.flush()

            await uow.commit()

        logger.info(
            f"[{trace_id}] Consultation booked",
            extra={"slot_id": slot_id, "consultation_id": consultation.id},
        )
        return consultation

    # ------------------------------------------------------------------
    # Slot maintenance (doctor)
    # ------------------------------------------------------------------

    async def create_recurring(
        self,
        doctor_id: int,
        start: datetime,
        end: datetime,
        count: int = 0,
        interval_days: int = 7,
    ) -> list[ConsultationSlot]:
        """
        Create a slot and `count` repeats, interval_days apart, in one commit.

        Returns:
            The created slots sorted by start time (count + 1 of them)
        """
        trace_id = f"create_slots:doctor={doctor_id}"
        start, end = _as_utc(start), _as_utc(end)

        raise_invalid(validate_slot_window(start, end))
        raise_invalid(validate_recurrence(count, interval_days))

        windows = expand_slot_windows(start, end, count=count, interval_days=interval_days)

        async with self.database.unit_of_work() as uow:
            await self._require_doctor(uow, doctor_id, trace_id)

            slots = [
                ConsultationSlot(
                    doctor_id=doctor_id,
                    start_datetime=window_start,
                    end_datetime=window_end,
                    is_booked=False,
                )
                for window_start, window_end in windows
            ]
            uow.add_all(slots)
            await uow.flush()
            await uow.commit()

        logger.info(
            f"[{trace_id}] Created {len(slots)} consultation slot(s)",
            extra={"doctor_id": doctor_id, "slot_count": len(slots)},
        )
        return sorted(slots, key=lambda s: s.start_datetime)

    async def update_slot(
        self,
        slot_id: int,
        doctor_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ConsultationSlot:
        """Move an unbooked slot owned by doctor_id to a new window."""
        trace_id = f"update_slot:slot={slot_id}"

        async with self.database.unit_of_work() as uow:
            slot = await self._lock_owned_slot(uow, slot_id, doctor_id)

            if slot.is_booked:
                logger.warning(f"[{trace_id}] Refusing to edit booked slot", extra={"slot_id": slot_id})
                raise ConflictError(
                    "Cannot update a booked slot",
                    error_code="SLOT_ALREADY_BOOKED",
                )

            new_start = _as_utc(start) if start is not None else slot.start_datetime
            new_end = _as_utc(end) if end is not None else slot.end_datetime
            raise_invalid(validate_slot_window(new_start, new_end))

            slot.start_datetime = new_start
            slot.end_datetime = new_end
            await uow.flush()
            await uow.commit()

        logger.info(f"[{trace_id}] Slot updated", extra={"slot_id": slot_id})
        return slot

    async def delete_slot(self, slot_id: int, doctor_id: int) -> None:
        """
        Delete a slot owned by doctor_id.

        A consultation booked on the slot is cancelled and detached
        (slot_id = NULL) in the same transaction.
        """
        trace_id = f"delete_slot:slot={slot_id}"

        async with self.database.unit_of_work() as uow:
            # Peek without a lock to learn which consultation to lock first
            peek = await uow.get(ConsultationSlot, slot_id)
            consultation = None
            if peek is not None and peek.consultation_id is not None:
                consultation = await uow.lock_one(
                    select(Consultation).where(Consultation.id == peek.consultation_id)
                )

            slot = await self._lock_owned_slot(uow, slot_id, doctor_id)

            locked_id = consultation.id if consultation is not None else None
            if slot.consultation_id != locked_id:
                raise ConflictError(
                    "Slot changed while it was being deleted, please retry",
                    error_code="CONCURRENT_MODIFICATION",
                )

            if consultation is not None:
                consultation.status = ConsultationStatus.CANCELLED
                consultation.slot_id = None
                slot.is_booked = False
                slot.consultation_id = None
                await uow.flush()
                logger.info(
                    f"[{trace_id}] Cancelled consultation on deleted slot",
                    extra={"slot_id": slot_id, "consultation_id": consultation.id},
                )

            await uow.delete(slot)
            await uow.flush()
            await uow.commit()

        logger.info(f"[{trace_id}] Slot deleted", extra={"slot_id": slot_id})

    # ------------------------------------------------------------------
    # Cancellation / status updates
    # ------------------------------------------------------------------

    async def cancel(self, consultation_id: int, actor: Actor) -> Consultation:
        """
        Cancel a consultation and free its slot atomically.

        The actor must be the consultation's patient or doctor, or an admin.
        """
        trace_id = f"cancel:consultation={consultation_id}"

        async with self.database.unit_of_work() as uow:
            consultation = await self._lock_consultation(uow, consultation_id)

            if not actor.is_admin and actor.id not in (consultation.patient_id, consultation.doctor_id):
                raise AuthorizationError(
                    "Not a participant of this consultation",
                    error_code="NOT_CONSULTATION_PARTICIPANT",
                )

            if consultation.status == ConsultationStatus.CANCELLED:
                raise ConflictError(
                    "Consultation is already cancelled",
                    error_code="CONSULTATION_ALREADY_CANCELLED",
                )
            if consultation.status == ConsultationStatus.COMPLETED:
                raise ConflictError(
                    "Consultation is completed and can no longer change",
                    error_code="CONSULTATION_TERMINAL",
                )

            await self._cancel_locked(uow, consultation, trace_id)
            await uow.commit()

        logger.info(
            f"[{trace_id}] Consultation cancelled",
            extra={"consultation_id": consultation_id, "slot_id": consultation.slot_id},
        )
        return consultation

    async def update_status(
        self,
        consultation_id: int,
        new_status: str | None,
        actor: Actor,
        notes: str | None = None,
    ) -> Consultation:
        """
        Update status and/or notes on behalf of the consultation's patient or doctor.

        Moving to cancelled frees the slot exactly like cancel().
        """
        trace_id = f"update_consultation:consultation={consultation_id}"

        target: ConsultationStatus | None = None
        if new_status is not None:
            try:
                target = ConsultationStatus(new_status)
            except ValueError as e:
                raise ValidationError(
                    "Invalid status. Must be one of: pending, confirmed, completed, cancelled",
                    error_code="INVALID_STATUS",
                ) from e

        async with self.database.unit_of_work() as uow:
            consultation = await self._lock_consultation(uow, consultation_id)

            is_patient = actor.role == UserRole.PATIENT and actor.id == consultation.patient_id
            is_doctor = actor.role == UserRole.DOCTOR and actor.id == consultation.doctor_id
            if not (is_patient or is_doctor):
                raise AuthorizationError(
                    "Not a participant of this consultation",
                    error_code="NOT_CONSULTATION_PARTICIPANT",
                )

            check = validate_consultation_transition(
                consultation,
                target or consultation.status,
                actor.role,
                notes_changed=notes is not None,
            )
            if not check["valid"]:
                logger.warning(f"[{trace_id}] {check['error_message']}")
            raise_invalid(check)

            if target == ConsultationStatus.CANCELLED:
                await self._cancel_locked(uow, consultation, trace_id)
            elif target is not None:
                consultation.status = target

            if notes is not None:
                consultation.notes = notes

            await uow.flush()
            await uow.commit()

        logger.info(
            f"[{trace_id}] Consultation updated",
            extra={"consultation_id": consultation_id, "status": consultation.status.value},
        )
        return consultation

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_slots(
        self,
        actor: Actor,
        doctor_id: int | None = None,
        is_booked: bool | None = None,
        start_from: datetime | None = None,
        end_to: datetime | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> dict[str, Any]:
        """
        List slots visible to the actor.

        Doctors see their own slots, patients see a given doctor's free future
        slots, admins see everything.
        """
        if actor.role == UserRole.DOCTOR:
            doctor_id = actor.id
        elif actor.role == UserRole.PATIENT:
            if doctor_id is None:
                raise ValidationError("doctor_id is required", error_code="MISSING_FIELDS")
            is_booked = False
            now = datetime.now(UTC)
            start_from = max(_as_utc(start_from), now) if start_from else now
        elif not actor.is_admin:
            raise AuthorizationError("Not authorized to view slots", error_code="FORBIDDEN")

        stmt = select(ConsultationSlot)
        if doctor_id is not None:
            stmt = stmt.where(ConsultationSlot.doctor_id == doctor_id)
        if is_booked is not None:
            stmt = stmt.where(ConsultationSlot.is_booked.is_(is_booked))
        if start_from is not None:
            stmt = stmt.where(ConsultationSlot.start_datetime >= _as_utc(start_from))
        if end_to is not None:
            stmt = stmt.where(ConsultationSlot.end_datetime <= _as_utc(end_to))

        page = max(page, 1)
        limit = max(min(limit, 100), 1)

        async with self.database.unit_of_work() as uow:
            total = await uow.scalar(select(func.count()).select_from(stmt.subquery()))
            slots = await uow.scalars(
                stmt.order_by(ConsultationSlot.start_datetime, ConsultationSlot.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )

        return {"slots": slots, "meta": {"page": page, "limit": limit, "total": total or 0}}

    async def get_slot(self, slot_id: int, actor: Actor) -> ConsultationSlot:
        """Doctors see their own slots, patients only free ones."""
        async with self.database.unit_of_work() as uow:
            slot = await uow.get(ConsultationSlot, slot_id)

        if slot is None:
            raise NotFoundError("Consultation slot not found", error_code="SLOT_NOT_FOUND")
        if actor.role == UserRole.DOCTOR and slot.doctor_id != actor.id:
            raise AuthorizationError("You can only view your own slots", error_code="NOT_SLOT_OWNER")
        if actor.role == UserRole.PATIENT and slot.is_booked:
            raise AuthorizationError("You can only view available slots", error_code="FORBIDDEN")
        return slot

    async def list_consultations(self, actor: Actor) -> list[Consultation]:
        """Consultations where the actor is the patient or the doctor, newest first."""
        async with self.database.unit_of_work() as uow:
            return await uow.scalars(
                select(Consultation)
                .where((Consultation.patient_id == actor.id) | (Consultation.doctor_id == actor.id))
                .order_by(Consultation.created_at.desc(), Consultation.id.desc())
            )

    async def list_all_consultations(
        self,
        status: str | None = None,
        mode: str | None = None,
        doctor_id: int | None = None,
        patient_id: int | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, Any]:
        """Admin listing with filters and allow-listed sorting."""
        sort_by = sort_by.lower()
        raise_invalid(validate_sort_field(sort_by, frozenset(CONSULTATION_SORT_COLUMNS)))
        if sort_order.lower() not in ("asc", "desc"):
            raise ValidationError("Sort order must be asc or desc", error_code="INVALID_SORT_ORDER")

        stmt = select(Consultation)
        if status:
            try:
                stmt = stmt.where(Consultation.status == ConsultationStatus(status))
            except ValueError as e:
                raise ValidationError("Invalid status filter", error_code="INVALID_STATUS") from e
        if mode:
            mode_check = validate_consultation_mode(mode)
            raise_invalid(mode_check)
            stmt = stmt.where(Consultation.mode == mode_check["mode"])
        if doctor_id is not None:
            stmt = stmt.where(Consultation.doctor_id == doctor_id)
        if patient_id is not None:
            stmt = stmt.where(Consultation.patient_id == patient_id)
        if created_from is not None:
            stmt = stmt.where(Consultation.created_at >= _as_utc(created_from))
        if created_to is not None:
            stmt = stmt.where(Consultation.created_at <= _as_utc(created_to))

        column = CONSULTATION_SORT_COLUMNS[sort_by]
        ordering = column.asc() if sort_order.lower() == "asc" else column.desc()

        page = max(page, 1)
        limit = max(min(limit, 100), 1)

        async with self.database.unit_of_work() as uow:
            total = await uow.scalar(select(func.count()).select_from(stmt.subquery()))
            consultations = await uow.scalars(
                stmt.order_by(ordering, Consultation.id.asc())
                .offset((page - 1) * limit)
                .limit(limit)
            )

        return {
            "consultations": consultations,
            "meta": {"page": page, "limit": limit, "total": total or 0},
        }

    # ------------------------------------------------------------------
    # Helpers (caller holds the UnitOfWork)
    # ------------------------------------------------------------------

    async def _require_doctor(self, uow: UnitOfWork, doctor_id: int, trace_id: str) -> User:
        doctor = await uow.get(User, doctor_id)
        if doctor is None or doctor.role != UserRole.DOCTOR:
            logger.warning(f"[{trace_id}] Invalid doctor: {doctor_id}")
            raise ValidationError("Invalid doctor", error_code="INVALID_DOCTOR")
        return doctor

    async def _lock_consultation(self, uow: UnitOfWork, consultation_id: int) -> Consultation:
        consultation = await uow.lock_one(
            select(Consultation).where(Consultation.id == consultation_id)
        )
        if consultation is None:
            raise NotFoundError("Consultation not found", error_code="CONSULTATION_NOT_FOUND")
        return consultation

    async def _lock_owned_slot(self, uow: UnitOfWork, slot_id: int, doctor_id: int) -> ConsultationSlot:
        slot = await uow.lock_one(select(ConsultationSlot).where(ConsultationSlot.id == slot_id))
        if slot is None:
            raise NotFoundError("Consultation slot not found", error_code="SLOT_NOT_FOUND")
        if slot.doctor_id != doctor_id:
            raise AuthorizationError("Not the owner of this slot", error_code="NOT_SLOT_OWNER")
        return slot

    async def _cancel_locked(self, uow: UnitOfWork, consultation: Consultation, trace_id: str) -> None:
        """Cancel an already-locked consultation and free its slot (locked here)."""
        if consultation.slot_id is not None:
            slot = await uow.lock_one(
                select(ConsultationSlot).where(ConsultationSlot.id == consultation.slot_id)
            )
            if slot is not None and slot.consultation_id == consultation.id:
                slot.is_booked = False
                slot.consultation_id = None
            else:
                logger.warning(
                    f"[{trace_id}] Slot no longer references consultation",
                    extra={"slot_id": consultation.slot_id, "consultation_id": consultation.id},
                )

        consultation.status = ConsultationStatus.CANCELLED
        await uow.flush()
