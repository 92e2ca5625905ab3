"""Medicine request routes: creation, matching lifecycle and fulfillment."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from api.dependencies import CurrentUser, get_inventory_allocator, require_roles
from api.models.inventory import (
    AllocationOut,
    MedicineRequestCreate,
    MedicineRequestNotesUpdate,
    MedicineRequestOut,
)
from database.models import SOURCE_ROLES, UserRole
from engine.actor import Actor
from engine.transactions import InventoryAllocator
from shared.errors import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/medicine-requests")

Allocator = Annotated[InventoryAllocator, Depends(get_inventory_allocator)]
Source = Annotated[Actor, Depends(require_roles(*SOURCE_ROLES))]


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_medicine_request(body: MedicineRequestCreate, user: CurrentUser, allocator: Allocator) -> dict:
    """
    Create a request and match it against current stock.

    The response status is `available` when some source holds enough,
    otherwise `pending`.
    """
    patient_id = body.patient_id
    if patient_id is None:
        if user.role != UserRole.PATIENT:
            raise ValidationError("patient_id is required", error_code="MISSING_FIELDS")
        patient_id = user.id

    request = await allocator.create_request(
        patient_id=patient_id,
        item_name=body.item_name_requested,
        quantity_needed=body.quantity_needed,
        delivery_location=body.delivery_location,
        actor=user,
        notes=body.notes,
    )
    return {
        "message": "Medicine request created",
        "status": request.status,
        "assigned_source_id": request.assigned_source_id,
        "data": MedicineRequestOut.model_validate(request),
    }


@router.get("")
async def list_medicine_requests(
    user: CurrentUser,
    allocator: Allocator,
    status: str | None = None,
    item_name: str | None = None,
    patient_id: int | None = None,
    assigned_source_id: int | None = None,
    sort_by: str = "requested_date",
    sort_order: str = "desc",
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> dict:
    result = await allocator.list_requests(
        user,
        status=status,
        item_name=item_name,
        patient_id=patient_id,
        assigned_source_id=assigned_source_id,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return {
        "data": [MedicineRequestOut.model_validate(r) for r in result["requests"]],
        "meta": result["meta"],
    }


@router.get("/{request_id}")
async def get_medicine_request(request_id: int, user: CurrentUser, allocator: Allocator) -> dict:
    request = await allocator.get_request(request_id, user)
    return {"data": MedicineRequestOut.model_validate(request)}


@router.put("/{request_id}")
async def update_medicine_request(
    request_id: int,
    body: MedicineRequestNotesUpdate,
    user: CurrentUser,
    allocator: Allocator,
) -> dict:
    """Update notes as an admin or the assigned source; nothing else is editable."""
    request = await allocator.update_notes(request_id, body.notes, user)
    return {"message": "Medicine request updated", "data": MedicineRequestOut.model_validate(request)}


@router.put("/{request_id}/accept")
async def accept_medicine_request(request_id: int, source: Source, allocator: Allocator) -> dict:
    request = await allocator.accept(request_id, source.id)
    return {"message": "Medicine request accepted", "data": MedicineRequestOut.model_validate(request)}


@router.put("/{request_id}/reject")
async def reject_medicine_request(request_id: int, source: Source, allocator: Allocator) -> dict:
    """Decline as the assigned source; the request is re-matched elsewhere."""
    request = await allocator.reject(request_id, source.id)
    return {"message": "Medicine request rejected", "data": MedicineRequestOut.model_validate(request)}


@router.put("/{request_id}/fulfill")
async def fulfill_medicine_request(
    request_id: int,
    actor: Annotated[Actor, Depends(require_roles(*SOURCE_ROLES, UserRole.ADMIN))],
    allocator: Allocator,
) -> dict:
    result = await allocator.fulfill(request_id, actor)
    return {
        "message": "Medicine request fulfilled",
        "data": MedicineRequestOut.model_validate(result.request),
        "allocations": [
            AllocationOut(item_id=item_id, quantity_taken=taken) for item_id, taken in result.allocations
        ],
    }


@router.put("/{request_id}/cancel")
async def cancel_medicine_request(
    request_id: int,
    patient: Annotated[Actor, Depends(require_roles(UserRole.PATIENT))],
    allocator: Allocator,
) -> dict:
    request = await allocator.cancel(request_id, patient.id)
    return {"message": "Medicine request cancelled", "data": MedicineRequestOut.model_validate(request)}
