"""Pydantic models for Stripe webhook responses."""

from pydantic import BaseModel


class StripeWebhookResponse(BaseModel):
    """Acknowledgement returned to Stripe."""

    received: bool = True
    donation_id: int | None = None
    duplicate: bool | None = None
