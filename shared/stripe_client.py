"""
Stripe API client for donation payments.

Donors pay through a PaymentIntent created here; the `payment_intent.succeeded`
webhook later credits the treatment request using the intent's metadata.
"""

import logging
from decimal import Decimal
from typing import Any

import stripe

from shared.config import get_settings

logger = logging.getLogger(__name__)


def amount_to_minor_units(amount: Decimal) -> int:
    """Convert a decimal amount to the smallest currency unit (cents)."""
    return int((amount * 100).to_integral_value())


async def create_donation_payment_intent(
    treatment_request_id: int,
    donor_id: int,
    amount: Decimal,
) -> dict[str, Any]:
    """
    Create a Stripe PaymentIntent for a donation.

    The metadata is exactly what the payment webhook consumes:
    treatment_request_id, donor_id and amount (decimal string).

    Args:
        treatment_request_id: Treatment request being funded
        donor_id: Donating user
        amount: Donation amount in major units (e.g. 25.50)

    Returns:
        dict with:
            - payment_intent_id: str - The PaymentIntent ID (pi_...)
            - client_secret: str - Secret the client uses to confirm payment

    Raises:
        stripe.StripeError: If Stripe API call fails
    """
    settings = get_settings()
    stripe.api_key = settings.STRIPE_SECRET_KEY

    metadata = {
        "treatment_request_id": str(treatment_request_id),
        "donor_id": str(donor_id),
        "amount": str(amount),
    }

    try:
        logger.info(
            f"Creating PaymentIntent for treatment request {treatment_request_id}, "
            f"amount: {amount} {settings.STRIPE_CURRENCY}",
            extra={"treatment_request_id": treatment_request_id},
        )

        intent = stripe.PaymentIntent.create(
            amount=amount_to_minor_units(amount),
            currency=settings.STRIPE_CURRENCY,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
        )

        logger.info(
            f"PaymentIntent created: {intent.id}",
            extra={"treatment_request_id": treatment_request_id},
        )

        return {
            "payment_intent_id": intent.id,
            "client_secret": intent.client_secret,
        }

    except stripe.StripeError as e:
        logger.error(
            f"Stripe API error creating PaymentIntent for treatment request "
            f"{treatment_request_id}: {str(e)}"
        )
        raise
