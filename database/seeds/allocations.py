"""
Seed script for slots, treatment requests and inventory lots.

Depends on users (see users.py). Slots are created through the
SlotBookingCoordinator so recurrence expansion matches the API.
"""

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select

from database.connection import Database
from database.models import (
    ConsultationSlot,
    InventoryItem,
    InventoryType,
    TreatmentRequest,
    User,
    UserRole,
)
from engine.transactions import SlotBookingCoordinator

INVENTORY_DATA = [
    # (holder role, name, type, available, total, days until expiry)
    (UserRole.HOSPITAL, "Paracetamol 500mg", InventoryType.MEDICINE, 200, 200, 365),
    (UserRole.HOSPITAL, "Insulin Glargine", InventoryType.MEDICINE, 15, 20, 90),
    (UserRole.NGO, "Paracetamol 500mg", InventoryType.MEDICINE, 50, 50, 180),
    (UserRole.NGO, "Wheelchair", InventoryType.EQUIPMENT, 3, 3, None),
    (UserRole.DONOR, "Amoxicillin 250mg", InventoryType.MEDICINE, 30, 30, 120),
]


async def seed_slots(database: Database, doctor: User) -> None:
    """Create one week of daily 30-minute slots for the doctor, once."""
    async with database.session() as session:
        existing = await session.scalar(
            select(func.count(ConsultationSlot.id)).where(ConsultationSlot.doctor_id == doctor.id)
        )
    if existing:
        print(f"⊙ {doctor.username} already has {existing} slots")
        return

    start = (datetime.now(UTC) + timedelta(days=1)).replace(hour=9, minute=0, second=0, microsecond=0)
    coordinator = SlotBookingCoordinator(database)
    slots = await coordinator.create_recurring(
        doctor_id=doctor.id,
        start=start,
        end=start + timedelta(minutes=30),
        count=6,
        interval_days=1,
    )
    print(f"✓ Created {len(slots)} consultation slots for {doctor.username}")


async def seed_treatment_requests(database: Database, doctor: User, patient: User) -> None:
    async with database.session() as session:
        async with session.begin():
            count = await session.scalar(
                select(func.count(TreatmentRequest.id)).where(TreatmentRequest.patient_id == patient.id)
            )
            if count:
                print(f"⊙ Treatment requests already exist for {patient.username}")
                return
            session.add_all(
                [
                    TreatmentRequest(
                        patient_id=patient.id,
                        doctor_id=doctor.id,
                        treatment_type="surgery",
                        description="Knee replacement",
                        sponsored=True,
                        goal_amount=Decimal("1500.00"),
                    ),
                    TreatmentRequest(
                        patient_id=patient.id,
                        doctor_id=doctor.id,
                        treatment_type="physiotherapy",
                        description="Post-operative sessions",
                        sponsored=False,
                    ),
                ]
            )
    print(f"✓ Created treatment requests for {patient.username}")


async def seed_inventory(database: Database, users: dict[UserRole, User]) -> None:
    async with database.session() as session:
        async with session.begin():
            count = await session.scalar(select(func.count(InventoryItem.id)))
            if count:
                print(f"⊙ Inventory already has {count} lots")
                return
            for role, name, item_type, available, total, expires_in in INVENTORY_DATA:
                session.add(
                    InventoryItem(
                        name=name,
                        type=item_type,
                        quantity_available=available,
                        total_quantity=total,
                        storage_location="Main store",
                        expiry_date=date.today() + timedelta(days=expires_in) if expires_in else None,
                        source_id=users[role].id,
                    )
                )
    print(f"✓ Created {len(INVENTORY_DATA)} inventory lots")
