"""
SQLAlchemy ORM models for the allocation tables.

This module defines the tables shared by the allocation engines:
- users: platform accounts (read-only here; owned by the auth service)
- consultation_slots / consultations: doctor time slots and their bookings
- treatment_requests / donations / sponsorship_verifications: funding ledger
- inventory_registry / medicine_requests: supply lots and patient requests

All models use:
- Integer primary keys (auto-increment)
- TIMESTAMP WITH TIME ZONE for datetime fields
- CHECK constraints mirroring the engine invariants (the engines validate first;
  the constraints are the last line)
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    DATE,
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def utcnow() -> datetime:
    return datetime.now(UTC)


def _enum_column(enum_cls: type[PyEnum], name: str) -> SQLEnum:
    # Persist enum .value ("pending") rather than .name ("PENDING")
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda x: [e.value for e in x],
    )


# ============================================================================
# Enums
# ============================================================================


class UserRole(str, PyEnum):
    """Platform roles carried in bearer tokens."""

    PATIENT = "patient"
    DOCTOR = "doctor"
    DONOR = "donor"
    NGO = "ngo"
    ADMIN = "admin"
    HOSPITAL = "hospital"

    def __str__(self):
        return self.value


# Roles allowed to hold inventory and serve medicine requests
SOURCE_ROLES = frozenset({UserRole.HOSPITAL, UserRole.NGO, UserRole.DONOR})


class ConsultationStatus(str, PyEnum):
    """Consultation lifecycle status."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    def __str__(self):
        return self.value


class ConsultationMode(str, PyEnum):
    VIDEO = "video"
    AUDIO = "audio"
    CHAT = "chat"

    def __str__(self):
        return self.value


class TreatmentRequestStatus(str, PyEnum):
    """Funding status of a treatment request."""

    OPEN = "open"
    FUNDED = "funded"
    CLOSED = "closed"          # Verified and settled, terminal
    CANCELLED = "cancelled"

    def __str__(self):
        return self.value


class InventoryType(str, PyEnum):
    MEDICINE = "medicine"
    EQUIPMENT = "equipment"

    def __str__(self):
        return self.value


class InventoryCondition(str, PyEnum):
    GOOD = "good"
    NEEDS_REPAIR = "needs_repair"
    OUT_OF_SERVICE = "out_of_service"
    EXPIRED = "expired"
    DAMAGED = "damaged"

    def __str__(self):
        return self.value


class MedicineRequestStatus(str, PyEnum):
    """Medicine request lifecycle (driven by InventoryAllocator)."""

    PENDING = "pending"            # No single source can cover the quantity
    AVAILABLE = "available"        # A source qualifies, awaiting its acceptance
    IN_PROGRESS = "in_progress"    # Accepted by assigned source
    FULFILLED = "fulfilled"        # Inventory decremented, terminal
    REJECTED = "rejected"
    CANCELLED = "cancelled"        # Patient cancelled, terminal

    def __str__(self):
        return self.value


# ============================================================================
# Users (external collaborator)
# ============================================================================


class User(Base):
    """
    User model - Platform account.

    Owned by the auth/profile service. The allocation engines only read
    `role` to check that doctors, patients and sources are what they claim.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    role: Mapped[UserRole] = mapped_column(
        _enum_column(UserRole, "user_role"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username='{self.username}', role='{self.role.value}')>"


# ============================================================================
# Slot booking
# ============================================================================


class ConsultationSlot(Base):
    """
    ConsultationSlot model - A doctor-owned, bookable time window.

    Mutated only by SlotBookingCoordinator.
    Invariant: is_booked is true exactly when consultation_id is set.
    """

    __tablename__ = "consultation_slots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    start_datetime: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    end_datetime: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    is_booked: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    # use_alter: consultations.slot_id points back here
    consultation_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey(
            "consultations.id",
            ondelete="SET NULL",
            use_alter=True,
            name="fk_consultation_slots_consultation_id",
        ),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("end_datetime > start_datetime", name="check_slot_window_positive"),
        CheckConstraint(
            "is_booked = (consultation_id IS NOT NULL)",
            name="check_slot_booked_has_consultation",
        ),
        UniqueConstraint(
            "doctor_id", "start_datetime", "end_datetime", name="uq_slot_doctor_window"
        ),
        Index("idx_slots_doctor_start", "doctor_id", "start_datetime"),
    )

    def __repr__(self) -> str:
        return f"<ConsultationSlot(id={self.id}, doctor_id={self.doctor_id}, is_booked={self.is_booked})>"


class Consultation(Base):
    """
    Consultation model - A patient's booking of one slot.

    Created atomically with slot booking; cancellation atomically frees the slot.
    """

    __tablename__ = "consultations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    doctor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    slot_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("consultation_slots.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[ConsultationStatus] = mapped_column(
        _enum_column(ConsultationStatus, "consultation_status"),
        default=ConsultationStatus.PENDING,
        nullable=False,
        index=True,
    )
    mode: Mapped[ConsultationMode] = mapped_column(
        _enum_column(ConsultationMode, "consultation_mode"), nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        # At most one live consultation per slot
        Index(
            "uq_consultations_live_slot",
            "slot_id",
            unique=True,
            postgresql_where=text("slot_id IS NOT NULL AND status <> 'cancelled'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Consultation(id={self.id}, slot_id={self.slot_id}, status='{self.status.value}')>"


# ============================================================================
# Funding ledger
# ============================================================================


class TreatmentRequest(Base):
    """
    TreatmentRequest model - A doctor-issued treatment, optionally sponsored.

    FundingLedger is the only writer of raised_amount and status.
    Invariant: 0 <= raised_amount <= goal_amount for sponsored requests.
    """

    __tablename__ = "treatment_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    doctor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    treatment_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    sponsored: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    goal_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    raised_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0.00"), server_default="0", nullable=False
    )
    status: Mapped[TreatmentRequestStatus] = mapped_column(
        _enum_column(TreatmentRequestStatus, "treatment_request_status"),
        default=TreatmentRequestStatus.OPEN,
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("raised_amount >= 0", name="check_raised_non_negative"),
        CheckConstraint(
            "goal_amount IS NULL OR raised_amount <= goal_amount",
            name="check_raised_within_goal",
        ),
    )

    @property
    def remaining_amount(self) -> Decimal:
        if self.goal_amount is None:
            return Decimal("0.00")
        return Decimal(self.goal_amount) - Decimal(self.raised_amount or 0)

    def __repr__(self) -> str:
        return (
            f"<TreatmentRequest(id={self.id}, raised={self.raised_amount}/"
            f"{self.goal_amount}, status='{self.status.value}')>"
        )


class Donation(Base):
    """
    Donation model - Immutable, append-only ledger entry.

    sum(amount) over a request must equal its raised_amount.
    Donations applied from a payment confirmation carry the Stripe payment
    intent id (unique) so a redelivered webhook cannot credit twice.
    """

    __tablename__ = "donations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    treatment_request_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("treatment_requests.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    donor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    donated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    stripe_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="check_donation_amount_positive"),
    )

    def __repr__(self) -> str:
        return f"<Donation(id={self.id}, treatment_request_id={self.treatment_request_id}, amount={self.amount})>"


class SponsorshipVerification(Base):
    """
    SponsorshipVerification model - Evidence that a funded treatment happened.

    At most one per treatment request. Deleted on rejection so a new one can
    be uploaded.
    """

    __tablename__ = "sponsorship_verifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    treatment_request_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("treatment_requests.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    approved: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    receipt_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    patient_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    approved_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<SponsorshipVerification(id={self.id}, treatment_request_id={self.treatment_request_id}, approved={self.approved})>"


# ============================================================================
# Inventory
# ============================================================================


class InventoryItem(Base):
    """
    InventoryItem model - One lot of a named item held by one source.

    Invariant: 0 <= quantity_available <= total_quantity.
    A medicine lot past its expiry_date must carry condition = expired.
    """

    __tablename__ = "inventory_registry"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    type: Mapped[InventoryType] = mapped_column(
        _enum_column(InventoryType, "inventory_type"), nullable=False
    )
    quantity_available: Mapped[int] = mapped_column(Integer, nullable=False)
    total_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    condition: Mapped[InventoryCondition] = mapped_column(
        _enum_column(InventoryCondition, "inventory_condition"),
        default=InventoryCondition.GOOD,
        nullable=False,
    )
    expiry_date: Mapped[date | None] = mapped_column(DATE, nullable=True)
    source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("quantity_available >= 0", name="check_lot_quantity_non_negative"),
        CheckConstraint(
            "quantity_available <= total_quantity", name="check_lot_quantity_within_total"
        ),
        Index(
            "idx_inventory_source_available",
            "source_id",
            postgresql_where=text("quantity_available > 0"),
        ),
    )

    def __repr__(self) -> str:
        return f"<InventoryItem(id={self.id}, name='{self.name}', source_id={self.source_id}, available={self.quantity_available})>"


class MedicineRequest(Base):
    """
    MedicineRequest model - A patient's request for a quantity of an item.

    assigned_source_id is set while available/in_progress and after fulfilled.
    """

    __tablename__ = "medicine_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_name_requested: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity_needed: Mapped[int] = mapped_column(Integer, nullable=False)
    delivery_location: Mapped[str] = mapped_column(String(255), nullable=False)
    assigned_source_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    status: Mapped[MedicineRequestStatus] = mapped_column(
        _enum_column(MedicineRequestStatus, "medicine_request_status"),
        default=MedicineRequestStatus.PENDING,
        nullable=False,
        index=True,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_date: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    fulfilled_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    fulfilled_date: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("quantity_needed > 0", name="check_quantity_needed_positive"),
    )

    def __repr__(self) -> str:
        return f"<MedicineRequest(id={self.id}, item='{self.item_name_requested}', status='{self.status.value}')>"
