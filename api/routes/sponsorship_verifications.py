"""Sponsorship verification routes."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, status

from api.dependencies import CurrentUser, get_funding_ledger, require_roles
from api.models.funding import (
    VerificationCreateRequest,
    VerificationDecisionRequest,
    VerificationOut,
)
from database.models import UserRole
from engine.actor import Actor
from engine.transactions import FundingLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sponsorship-verifications")

Ledger = Annotated[FundingLedger, Depends(get_funding_ledger)]


@router.post("", status_code=status.HTTP_201_CREATED)
async def upload_verification(body: VerificationCreateRequest, user: CurrentUser, ledger: Ledger) -> dict:
    verification = await ledger.request_verification(
        body.treatment_request_id,
        receipt_url=body.receipt_url,
        patient_feedback=body.patient_feedback,
        actor=user,
    )
    return {"sponsorship_verification": VerificationOut.model_validate(verification)}


@router.put("/{verification_id}/approve")
async def decide_verification(
    verification_id: int,
    body: VerificationDecisionRequest,
    admin: Annotated[Actor, Depends(require_roles(UserRole.ADMIN))],
    ledger: Ledger,
) -> dict:
    """Approve (closes the request) or reject (deletes the verification)."""
    verification = await ledger.decide_verification(verification_id, body.approved, admin.id)
    return {
        "message": "Verification approved" if body.approved else "Verification rejected",
        "sponsorship_verification": (
            VerificationOut.model_validate(verification) if verification is not None else None
        ),
    }


@router.get("/{verification_id}")
async def get_verification(verification_id: int, user: CurrentUser, ledger: Ledger) -> dict:
    verification = await ledger.get_verification(verification_id, user)
    return {"sponsorship_verification": VerificationOut.model_validate(verification)}
