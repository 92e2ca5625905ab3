"""Pydantic models for medicine request and inventory registry endpoints."""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from database.models import InventoryCondition, InventoryType, MedicineRequestStatus


class MedicineRequestCreate(BaseModel):
    # Defaults to the caller for patients
    patient_id: int | None = None
    item_name_requested: str = Field(min_length=1, max_length=255)
    quantity_needed: int
    delivery_location: str = Field(min_length=1, max_length=255)
    notes: str | None = None


class MedicineRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    item_name_requested: str
    quantity_needed: int
    delivery_location: str
    assigned_source_id: int | None = None
    status: MedicineRequestStatus
    notes: str | None = None
    requested_date: datetime | None = None
    fulfilled_by: int | None = None
    fulfilled_date: datetime | None = None


class MedicineRequestNotesUpdate(BaseModel):
    # Required; null clears the notes
    notes: str | None


class AllocationOut(BaseModel):
    item_id: int
    quantity_taken: int


class InventoryLotCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    type: str
    quantity_available: int
    total_quantity: int
    storage_location: str | None = None
    condition: str = InventoryCondition.GOOD.value
    # Defaults to the caller for source roles
    source_id: int | None = None
    expiry_date: date | None = None


class InventoryLotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: InventoryType
    quantity_available: int
    total_quantity: int
    storage_location: str | None = None
    condition: InventoryCondition
    expiry_date: date | None = None
    source_id: int
