"""Dependency for payment webhook signature validation."""

import json
import logging
from typing import Any

import stripe
from fastapi import HTTPException, Request
from stripe import SignatureVerificationError

from shared.config import get_settings

logger = logging.getLogger(__name__)


async def validate_stripe_signature(request: Request) -> dict[str, Any]:
    """
    Validate Stripe webhook signature and parse event.

    Reads the raw body (the signature covers the exact bytes) and verifies the
    `Stripe-Signature` header against STRIPE_WEBHOOK_SECRET.

    Args:
        request: FastAPI request object

    Returns:
        Parsed Stripe event as a plain dict

    Raises:
        HTTPException: 500 if STRIPE_WEBHOOK_SECRET is not configured,
            400 if the header is missing or verification fails
    """
    settings = get_settings()

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    body = await request.body()

    # Extract signature from header
    signature_header: str | None = request.headers.get("Stripe-Signature")

    if not signature_header:
        logger.warning("Stripe webhook received without signature header")
        raise HTTPException(status_code=400, detail="Invalid Stripe signature")

    try:
        payload = body.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            payload,
            signature_header,
            settings.STRIPE_WEBHOOK_SECRET,
        )
        event = json.loads(payload)

    except SignatureVerificationError as e:
        logger.warning(f"Stripe signature verification failed: {e}")
        raise HTTPException(status_code=400, detail="Invalid Stripe signature") from e

    except (UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Stripe webhook body is not valid JSON: {e}")
        raise HTTPException(status_code=400, detail="Invalid webhook payload") from e

    logger.debug(f"Stripe signature validated: event_type={event.get('type')}")
    return event
