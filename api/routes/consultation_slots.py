"""Consultation slot routes (doctor-owned bookable windows)."""

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from api.dependencies import CurrentUser, get_slot_coordinator, require_roles
from api.models.consultations import SlotCreateRequest, SlotOut, SlotUpdateRequest
from database.models import UserRole
from engine.actor import Actor
from engine.transactions import SlotBookingCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/consultation-slots")

Coordinator = Annotated[SlotBookingCoordinator, Depends(get_slot_coordinator)]
Doctor = Annotated[Actor, Depends(require_roles(UserRole.DOCTOR))]


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_slots(body: SlotCreateRequest, doctor: Doctor, coordinator: Coordinator) -> dict:
    """Create a slot, optionally repeated every `recurrence_interval_days`."""
    slots = await coordinator.create_recurring(
        doctor_id=doctor.id,
        start=body.start_datetime,
        end=body.end_datetime,
        count=body.recurrence_count,
        interval_days=body.recurrence_interval_days,
    )
    return {
        "message": f"{len(slots)} consultation slot(s) created",
        "slots": [SlotOut.model_validate(slot) for slot in slots],
    }


@router.get("")
async def list_slots(
    user: CurrentUser,
    coordinator: Coordinator,
    doctor_id: int | None = None,
    is_booked: bool | None = None,
    start_from: datetime | None = None,
    end_to: datetime | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> dict:
    result = await coordinator.list_slots(
        user,
        doctor_id=doctor_id,
        is_booked=is_booked,
        start_from=start_from,
        end_to=end_to,
        page=page,
        limit=limit,
    )
    return {
        "slots": [SlotOut.model_validate(slot) for slot in result["slots"]],
        "meta": result["meta"],
    }


@router.get("/{slot_id}")
async def get_slot(slot_id: int, user: CurrentUser, coordinator: Coordinator) -> dict:
    slot = await coordinator.get_slot(slot_id, user)
    return {"slot": SlotOut.model_validate(slot)}


@router.put("/{slot_id}")
async def update_slot(
    slot_id: int,
    body: SlotUpdateRequest,
    doctor: Doctor,
    coordinator: Coordinator,
) -> dict:
    slot = await coordinator.update_slot(
        slot_id,
        doctor.id,
        start=body.start_datetime,
        end=body.end_datetime,
    )
    return {"slot": SlotOut.model_validate(slot)}


@router.delete("/{slot_id}")
async def delete_slot(slot_id: int, doctor: Doctor, coordinator: Coordinator) -> dict:
    await coordinator.delete_slot(slot_id, doctor.id)
    return {"message": "Consultation slot deleted"}
