"""
Transaction Validators for allocation business rules.

Validators check invariants against rows the caller has already loaded (and,
for read-then-write paths, already locked). They never touch the database
themselves, so the same checks run unchanged under a real UnitOfWork or in
unit tests.

Every validator returns a dict:
    {
        "valid": bool,
        "error_code": str | None,
        "error_message": str | None,
        ...validator-specific fields
    }

The transaction engines turn an invalid result into the matching
AllocationError via `raise_invalid()`.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from database.models import (
    Consultation,
    ConsultationMode,
    ConsultationSlot,
    ConsultationStatus,
    InventoryCondition,
    InventoryType,
    MedicineRequestStatus,
    TreatmentRequest,
    TreatmentRequestStatus,
    UserRole,
)
from shared.errors import (
    AllocationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
# Largest magnitude a NUMERIC(10,2) column holds is below 10**8
MAX_AMOUNT_EXPONENT = 8

# Treatment request statuses that still accept money
FUNDABLE_STATUSES = frozenset({TreatmentRequestStatus.OPEN, TreatmentRequestStatus.FUNDED})

# Medicine request state machine: action -> statuses it may start from
MEDICINE_REQUEST_TRANSITIONS: dict[str, frozenset[MedicineRequestStatus]] = {
    "accept": frozenset({
        MedicineRequestStatus.PENDING,
        MedicineRequestStatus.AVAILABLE,
        MedicineRequestStatus.REJECTED,
    }),
    "reject": frozenset({
        MedicineRequestStatus.IN_PROGRESS,
        MedicineRequestStatus.AVAILABLE,
    }),
    "fulfill": frozenset({MedicineRequestStatus.IN_PROGRESS}),
    "cancel": frozenset({
        MedicineRequestStatus.PENDING,
        MedicineRequestStatus.AVAILABLE,
        MedicineRequestStatus.IN_PROGRESS,
        MedicineRequestStatus.REJECTED,
    }),
}

TERMINAL_CONSULTATION_STATUSES = frozenset({
    ConsultationStatus.CANCELLED,
    ConsultationStatus.COMPLETED,
})

# Statuses each participant role may move a consultation into
CONSULTATION_STATUS_PERMISSIONS: dict[UserRole, frozenset[ConsultationStatus]] = {
    UserRole.PATIENT: frozenset({ConsultationStatus.CANCELLED}),
    UserRole.DOCTOR: frozenset({
        ConsultationStatus.CONFIRMED,
        ConsultationStatus.COMPLETED,
        ConsultationStatus.CANCELLED,
    }),
}


def _ok(**fields: Any) -> dict:
    return {"valid": True, "error_code": None, "error_message": None, **fields}


def _fail(error_code: str, error_message: str, **fields: Any) -> dict:
    return {"valid": False, "error_code": error_code, "error_message": error_message, **fields}


# Error codes that are not plain ValidationErrors
ERROR_CLASSES: dict[str, type[AllocationError]] = {
    "SLOT_NOT_FOUND": NotFoundError,
    "SLOT_ALREADY_BOOKED": ConflictError,
    "CONSULTATION_ALREADY_CANCELLED": ConflictError,
    "CONSULTATION_TERMINAL": ConflictError,
    "STATUS_NOT_ALLOWED": AuthorizationError,
    "INVALID_STATUS_TRANSITION": ConflictError,
}


def raise_invalid(
    result: dict,
    error_cls: type[AllocationError] | None = None,
    detail_keys: tuple[str, ...] = (),
) -> None:
    """Raise the AllocationError for an invalid validator result; no-op when valid."""
    if result["valid"]:
        return
    error_cls = error_cls or ERROR_CLASSES.get(result["error_code"], ValidationError)
    details = {key: result[key] for key in detail_keys if key in result}
    raise error_cls(result["error_message"], error_code=result["error_code"], details=details)


# ============================================================================
# Slot booking
# ============================================================================


def validate_consultation_mode(mode: Any) -> dict:
    """
    Validate that mode is one of video/audio/chat.

    Returns:
        dict with "mode" set to the parsed ConsultationMode when valid.
    """
    try:
        parsed = ConsultationMode(mode)
    except ValueError:
        return _fail(
            "INVALID_MODE",
            "Invalid consultation mode. Must be one of: video, audio, chat",
            mode=None,
        )
    return _ok(mode=parsed)


def validate_slot_window(start: datetime, end: datetime) -> dict:
    if end <= start:
        return _fail("INVALID_WINDOW", "Slot end time must be after start time")
    return _ok()


def validate_recurrence(count: int, interval_days: int) -> dict:
    if count < 0:
        return _fail("INVALID_RECURRENCE", "Recurrence count must be zero or greater")
    if interval_days <= 0:
        return _fail("INVALID_RECURRENCE", "Recurrence interval must be a positive number of days")
    return _ok()


def validate_slot_bookable(slot: ConsultationSlot | None, doctor_id: int) -> dict:
    """
    Validate that a (locked) slot can be booked with the given doctor.

    Returns:
        dict with validation result:
            {
                "valid": bool,
                "error_code": "SLOT_NOT_FOUND" | "SLOT_DOCTOR_MISMATCH" | "SLOT_ALREADY_BOOKED" | None,
                "error_message": str | None,
            }
    """
    if slot is None:
        return _fail("SLOT_NOT_FOUND", "Consultation slot not found")

    if slot.doctor_id != doctor_id:
        return _fail("SLOT_DOCTOR_MISMATCH", "Slot does not belong to the selected doctor")

    if slot.is_booked:
        logger.warning(
            f"Slot already booked: {slot.id}",
            extra={"slot_id": slot.id, "consultation_id": slot.consultation_id},
        )
        return _fail("SLOT_ALREADY_BOOKED", "Selected slot is already booked")

    return _ok()


def validate_consultation_transition(
    consultation: Consultation,
    new_status: ConsultationStatus,
    role: UserRole,
    notes_changed: bool = False,
) -> dict:
    """
    Validate a consultation status/notes update by one of its participants.

    Patients may only cancel and may not edit notes; doctors may confirm,
    complete, cancel and edit notes. Nothing leaves cancelled or completed.
    """
    if consultation.status in TERMINAL_CONSULTATION_STATUSES:
        if consultation.status == ConsultationStatus.CANCELLED and new_status == ConsultationStatus.CANCELLED:
            return _fail("CONSULTATION_ALREADY_CANCELLED", "Consultation is already cancelled")
        return _fail(
            "CONSULTATION_TERMINAL",
            f"Consultation is {consultation.status.value} and can no longer change",
        )

    allowed = CONSULTATION_STATUS_PERMISSIONS.get(role, frozenset())
    if new_status != consultation.status and new_status not in allowed:
        return _fail(
            "STATUS_NOT_ALLOWED",
            f"Role {role.value} cannot set consultation status to {new_status.value}",
        )

    if notes_changed and role != UserRole.DOCTOR:
        return _fail("STATUS_NOT_ALLOWED", "Only the doctor can edit consultation notes")

    return _ok()


# ============================================================================
# Funding ledger
# ============================================================================


def validate_donation_amount(amount: Any) -> dict:
    """
    Validate a donation amount is a positive decimal with at most two places.

    Returns:
        dict with "amount" set to the parsed Decimal when valid.
    """
    try:
        parsed = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return _fail("INVALID_AMOUNT", "Amount must be a number", amount=None)

    if not parsed.is_finite() or parsed <= 0:
        return _fail("INVALID_AMOUNT", "Amount must be a positive number", amount=None)

    if parsed.adjusted() >= MAX_AMOUNT_EXPONENT:
        return _fail("INVALID_AMOUNT", "Amount is too large", amount=None)

    if parsed != parsed.quantize(CENT):
        return _fail("INVALID_AMOUNT", "Amount cannot have more than two decimal places", amount=None)

    return _ok(amount=parsed.quantize(CENT))


def validate_fundable(treatment_request: TreatmentRequest, amount: Decimal | None = None) -> dict:
    """
    Validate that a (locked) treatment request can accept `amount`.

    Returns:
        dict with validation result:
            {
                "valid": bool,
                "error_code": "NOT_SPONSORED" | "MISSING_GOAL" | "NOT_ACCEPTING_DONATIONS"
                              | "EXCEEDS_REMAINING_GOAL" | None,
                "error_message": str | None,
                "remaining_amount": Decimal  # goal - raised (0 if no goal)
            }

    Example:
        >>> validate_fundable(request_goal_1000_raised_950, Decimal("100"))
        {"valid": False, "error_code": "EXCEEDS_REMAINING_GOAL", ..., "remaining_amount": Decimal("50.00")}
    """
    remaining = treatment_request.remaining_amount

    if not treatment_request.sponsored:
        return _fail(
            "NOT_SPONSORED",
            "Treatment request is not open for sponsorship",
            remaining_amount=remaining,
        )

    if treatment_request.goal_amount is None or Decimal(treatment_request.goal_amount) <= 0:
        return _fail(
            "MISSING_GOAL",
            "Treatment request has no funding goal",
            remaining_amount=remaining,
        )

    if treatment_request.status not in FUNDABLE_STATUSES:
        return _fail(
            "NOT_ACCEPTING_DONATIONS",
            f"Treatment request is {treatment_request.status.value} and not accepting donations",
            remaining_amount=remaining,
        )

    if amount is not None and amount > remaining:
        return _fail(
            "EXCEEDS_REMAINING_GOAL",
            "Donation amount exceeds the remaining goal",
            remaining_amount=remaining,
        )

    return _ok(remaining_amount=remaining)


# ============================================================================
# Inventory
# ============================================================================


def validate_request_transition(current: MedicineRequestStatus, action: str) -> dict:
    """Validate a medicine request lifecycle action against the transition table."""
    allowed_from = MEDICINE_REQUEST_TRANSITIONS[action]
    if current not in allowed_from:
        return _fail(
            "INVALID_STATUS_TRANSITION",
            f"Cannot {action} a request with status {current.value}",
            current_status=current.value,
        )
    return _ok(current_status=current.value)


def validate_quantity_needed(quantity_needed: Any) -> dict:
    if isinstance(quantity_needed, bool) or not isinstance(quantity_needed, int) or quantity_needed <= 0:
        return _fail("INVALID_QUANTITY", "Quantity needed must be a positive integer")
    return _ok()


def validate_lot_fields(
    lot_type: Any,
    condition: Any,
    quantity_available: int,
    total_quantity: int,
    expiry_date: Any,
) -> dict:
    """
    Validate inventory lot registration fields.

    Returns:
        dict with parsed "type" and "condition" enums when valid.
    """
    try:
        parsed_type = InventoryType(lot_type)
    except ValueError:
        return _fail("INVALID_TYPE", "Type must be one of: medicine, equipment")

    try:
        parsed_condition = InventoryCondition(condition)
    except ValueError:
        return _fail(
            "INVALID_CONDITION",
            "Condition must be one of: good, needs_repair, out_of_service, expired, damaged",
        )

    if quantity_available < 0 or total_quantity < 0:
        return _fail("INVALID_QUANTITY", "Quantities cannot be negative")

    if quantity_available > total_quantity:
        return _fail("INVALID_QUANTITY", "Quantity available cannot exceed total quantity")

    if parsed_type == InventoryType.MEDICINE and expiry_date is None:
        return _fail("MISSING_EXPIRY_DATE", "Expiry date is required for medicine")

    return _ok(type=parsed_type, condition=parsed_condition)


def validate_sort_field(sort_by: str, allowed: frozenset[str] | set[str]) -> dict:
    if sort_by not in allowed:
        return _fail(
            "INVALID_SORT_FIELD",
            f"Invalid sort field. Allowed fields: {', '.join(sorted(allowed))}",
        )
    return _ok()
