"""Pydantic models for donation, funding and sponsorship verification endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, ConfigDict, PlainSerializer

from database.models import TreatmentRequestStatus

# Money is kept as Decimal internally and rendered as a JSON number
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class DonationCreateRequest(BaseModel):
    treatment_request_id: int
    # Parsed by the engine so bad values map to INVALID_AMOUNT
    amount: Decimal | float | str


class DonationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    treatment_request_id: int
    donor_id: int
    amount: Money
    donated_at: datetime | None = None
    stripe_payment_intent_id: str | None = None


class PaymentIntentResponse(BaseModel):
    client_secret: str
    payment_intent_id: str


class FundingStatusOut(BaseModel):
    treatment_request_id: int
    sponsored: bool
    goal_amount: Money | None = None
    raised_amount: Money
    remaining_amount: Money
    status: TreatmentRequestStatus
    fundable: bool


class VerificationCreateRequest(BaseModel):
    treatment_request_id: int
    receipt_url: str | None = None
    patient_feedback: str | None = None


class VerificationDecisionRequest(BaseModel):
    approved: bool


class VerificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    treatment_request_id: int
    approved: bool
    receipt_url: str | None = None
    patient_feedback: str | None = None
    approved_at: datetime | None = None
    approved_by: int | None = None
