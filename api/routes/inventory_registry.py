"""Inventory registry routes."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from api.dependencies import CurrentUser, get_inventory_registry
from api.models.inventory import InventoryLotCreate, InventoryLotOut
from engine.services.inventory_registry import InventoryRegistry
from shared.errors import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/inventory-registry")

Registry = Annotated[InventoryRegistry, Depends(get_inventory_registry)]


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_lot(body: InventoryLotCreate, user: CurrentUser, registry: Registry) -> dict:
    source_id = body.source_id
    if source_id is None:
        if not user.is_source:
            raise ValidationError("source_id is required", error_code="MISSING_FIELDS")
        source_id = user.id

    lot = await registry.register_lot(
        user,
        name=body.name,
        type=body.type,
        quantity_available=body.quantity_available,
        total_quantity=body.total_quantity,
        storage_location=body.storage_location,
        condition=body.condition,
        source_id=source_id,
        expiry_date=body.expiry_date,
    )
    return {"message": "Inventory item registered", "data": InventoryLotOut.model_validate(lot)}


@router.get("")
async def list_lots(
    user: CurrentUser,
    registry: Registry,
    source_id: int | None = None,
    name: str | None = None,
    type: str | None = None,
    condition: str | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> dict:
    result = await registry.list_lots(
        source_id=source_id,
        name=name,
        type=type,
        condition=condition,
        page=page,
        limit=limit,
    )
    return {
        "data": [InventoryLotOut.model_validate(lot) for lot in result["items"]],
        "page": result["page"],
        "limit": result["limit"],
    }


@router.get("/{lot_id}")
async def get_lot(lot_id: int, user: CurrentUser, registry: Registry) -> dict:
    lot = await registry.get_lot(lot_id, user)
    return {"data": InventoryLotOut.model_validate(lot)}
