"""
Transaction Validators.

Pure business-rule checks used by the allocation engines before they mutate
locked rows.
"""

from engine.validators.transaction_validators import (
    MEDICINE_REQUEST_TRANSITIONS,
    raise_invalid,
    validate_consultation_mode,
    validate_consultation_transition,
    validate_donation_amount,
    validate_fundable,
    validate_lot_fields,
    validate_quantity_needed,
    validate_recurrence,
    validate_request_transition,
    validate_slot_bookable,
    validate_slot_window,
    validate_sort_field,
)

__all__ = [
    "MEDICINE_REQUEST_TRANSITIONS",
    "raise_invalid",
    "validate_consultation_mode",
    "validate_consultation_transition",
    "validate_donation_amount",
    "validate_fundable",
    "validate_lot_fields",
    "validate_quantity_needed",
    "validate_recurrence",
    "validate_request_transition",
    "validate_slot_bookable",
    "validate_slot_window",
    "validate_sort_field",
]
