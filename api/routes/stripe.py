"""Stripe webhook route handler."""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends

from api.dependencies import get_funding_ledger
from api.middleware.signature_validation import validate_stripe_signature
from api.models.stripe_webhook import StripeWebhookResponse
from engine.transactions import FundingLedger

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe-webhook", response_model=StripeWebhookResponse, response_model_exclude_none=True)
async def receive_stripe_webhook(
    event: Annotated[dict[str, Any], Depends(validate_stripe_signature)],
    ledger: Annotated[FundingLedger, Depends(get_funding_ledger)],
) -> StripeWebhookResponse:
    """
    Receive Stripe payment confirmations.

    Only `payment_intent.succeeded` credits the ledger; every other verified
    event is acknowledged with {"received": true}. Redelivered events are
    acknowledged with duplicate=true and leave the ledger unchanged.

    Raises:
        HTTPException: 400/500 from signature validation
        ValidationError: MISSING_PAYMENT_METADATA or a funding rule (400),
            so Stripe keeps retrying until the event can be applied
    """
    outcome = await ledger.record_donation_from_payment_confirmation(event)

    if outcome is None:
        return StripeWebhookResponse()

    logger.info(
        f"Stripe event {event.get('id')} processed",
        extra={
            "stripe_event_id": event.get("id"),
            "donation_id": outcome.donation.id,
            "duplicate": outcome.duplicate,
        },
    )
    return StripeWebhookResponse(donation_id=outcome.donation.id, duplicate=outcome.duplicate)
