"""Pydantic models for consultation slot and consultation endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from database.models import ConsultationMode, ConsultationStatus


class SlotCreateRequest(BaseModel):
    """Create one slot plus `recurrence_count` repeats."""

    start_datetime: datetime
    end_datetime: datetime
    recurrence_count: int = Field(default=0, ge=0, le=52)
    recurrence_interval_days: int = Field(default=7, gt=0)


class SlotUpdateRequest(BaseModel):
    start_datetime: datetime | None = None
    end_datetime: datetime | None = None

    @model_validator(mode="after")
    def require_one_field(self) -> "SlotUpdateRequest":
        if self.start_datetime is None and self.end_datetime is None:
            raise ValueError("At least one of start_datetime or end_datetime is required")
        return self


class SlotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    doctor_id: int
    start_datetime: datetime
    end_datetime: datetime
    is_booked: bool
    consultation_id: int | None = None


class ConsultationCreateRequest(BaseModel):
    doctor_id: int
    slot_id: int
    # Validated by the engine so an unknown mode maps to INVALID_MODE
    mode: str


class ConsultationUpdateRequest(BaseModel):
    status: str | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def require_one_field(self) -> "ConsultationUpdateRequest":
        if self.status is None and self.notes is None:
            raise ValueError("At least one of status or notes is required")
        return self


class ConsultationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    doctor_id: int
    slot_id: int | None = None
    status: ConsultationStatus
    mode: ConsultationMode
    notes: str | None = None
    created_at: datetime | None = None
