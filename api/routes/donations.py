"""Donation and treatment-request funding routes."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from fastapi.encoders import jsonable_encoder

from api.dependencies import CurrentUser, get_funding_ledger, require_roles
from api.models.funding import (
    DonationCreateRequest,
    DonationOut,
    FundingStatusOut,
    PaymentIntentResponse,
)
from database.models import UserRole
from engine.actor import Actor
from engine.transactions import FundingLedger

logger = logging.getLogger(__name__)

router = APIRouter()

Ledger = Annotated[FundingLedger, Depends(get_funding_ledger)]


@router.post("/donations", status_code=status.HTTP_201_CREATED)
async def create_donation(body: DonationCreateRequest, user: CurrentUser, ledger: Ledger) -> dict:
    """
    Donate to a sponsored treatment request as the calling user.

    Over-goal donations are refused with 400 and the remaining amount:
        {"error": ..., "error_code": "EXCEEDS_REMAINING_GOAL", "remaining_amount": 50.0}
    """
    donation = await ledger.record_donation(
        treatment_request_id=body.treatment_request_id,
        donor_id=user.id,
        amount=body.amount,
    )
    return {"donation": DonationOut.model_validate(donation)}


@router.post(
    "/donations/payment-intent",
    status_code=status.HTTP_201_CREATED,
    response_model=PaymentIntentResponse,
)
async def create_payment_intent(body: DonationCreateRequest, user: CurrentUser, ledger: Ledger) -> dict:
    """Start a card donation; the ledger is credited by the payment webhook."""
    return await ledger.create_payment_intent(
        treatment_request_id=body.treatment_request_id,
        donor_id=user.id,
        amount=body.amount,
    )


@router.get("/donations")
async def list_my_donations(
    user: CurrentUser,
    ledger: Ledger,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> dict:
    result = await ledger.list_donations_for_donor(user.id, page=page, limit=limit)
    return {
        "donations": [DonationOut.model_validate(d) for d in result["donations"]],
        "meta": result["meta"],
    }


@router.get("/donations/by-treatment-request/{treatment_request_id}")
async def list_request_donations(treatment_request_id: int, user: CurrentUser, ledger: Ledger) -> dict:
    donations = await ledger.list_donations_for_request(treatment_request_id, user)
    return {"donations": [DonationOut.model_validate(d) for d in donations]}


@router.get("/donations/{donation_id}")
async def get_donation(donation_id: int, user: CurrentUser, ledger: Ledger) -> dict:
    donation = await ledger.get_donation(donation_id, user)
    return {"donation": DonationOut.model_validate(donation)}


@router.get("/treatment-requests/{treatment_request_id}/funding", response_model=FundingStatusOut)
async def get_funding_status(treatment_request_id: int, user: CurrentUser, ledger: Ledger) -> dict:
    return await ledger.get_funding_status(treatment_request_id)


@router.get("/treatment-requests/{treatment_request_id}/reconcile")
async def reconcile_treatment_request(
    treatment_request_id: int,
    admin: Annotated[Actor, Depends(require_roles(UserRole.ADMIN))],
    ledger: Ledger,
) -> dict:
    """Admin check that raised_amount equals the sum of its donations."""
    return jsonable_encoder(await ledger.reconcile(treatment_request_id))
