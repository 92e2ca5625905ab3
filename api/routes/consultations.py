"""Consultation routes: booking, status updates and listings."""

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from api.dependencies import CurrentUser, get_slot_coordinator, require_roles
from api.models.consultations import (
    ConsultationCreateRequest,
    ConsultationOut,
    ConsultationUpdateRequest,
)
from database.models import UserRole
from engine.actor import Actor
from engine.transactions import SlotBookingCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/consultations")

Coordinator = Annotated[SlotBookingCoordinator, Depends(get_slot_coordinator)]


@router.post("", status_code=status.HTTP_201_CREATED)
async def book_consultation(
    body: ConsultationCreateRequest,
    patient: Annotated[Actor, Depends(require_roles(UserRole.PATIENT))],
    coordinator: Coordinator,
) -> dict:
    """
    Book a slot for the calling patient.

    Returns 400 {"error": "Selected slot is already booked", "error_code": "SLOT_ALREADY_BOOKED"}
    when another booking won the slot.
    """
    consultation = await coordinator.book(
        patient_id=patient.id,
        doctor_id=body.doctor_id,
        slot_id=body.slot_id,
        mode=body.mode,
    )
    return {"consultation": ConsultationOut.model_validate(consultation)}


@router.put("/{consultation_id}")
async def update_consultation(
    consultation_id: int,
    body: ConsultationUpdateRequest,
    user: CurrentUser,
    coordinator: Coordinator,
) -> dict:
    consultation = await coordinator.update_status(
        consultation_id,
        body.status,
        user,
        notes=body.notes,
    )
    return {"consultation": ConsultationOut.model_validate(consultation)}


@router.delete("/{consultation_id}")
async def cancel_consultation(consultation_id: int, user: CurrentUser, coordinator: Coordinator) -> dict:
    """Cancel as the patient, the doctor or an admin; frees the slot."""
    consultation = await coordinator.cancel(consultation_id, user)
    return {"consultation": ConsultationOut.model_validate(consultation)}


@router.get("")
async def list_my_consultations(user: CurrentUser, coordinator: Coordinator) -> dict:
    """Consultations where the caller is the patient or the doctor."""
    consultations = await coordinator.list_consultations(user)
    return {"consultations": [ConsultationOut.model_validate(c) for c in consultations]}


@router.get("/all")
async def list_all_consultations(
    admin: Annotated[Actor, Depends(require_roles(UserRole.ADMIN))],
    coordinator: Coordinator,
    status: str | None = None,
    mode: str | None = None,
    doctor_id: int | None = None,
    patient_id: int | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> dict:
    result = await coordinator.list_all_consultations(
        status=status,
        mode=mode,
        doctor_id=doctor_id,
        patient_id=patient_id,
        created_from=created_from,
        created_to=created_to,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return {
        "consultations": [ConsultationOut.model_validate(c) for c in result["consultations"]],
        "meta": result["meta"],
    }
