"""
Seed script for users table.

Creates one account per role so the allocation flows can be exercised
locally:
- doctor, patient, admin
- hospital, ngo, donor (inventory sources; the donor also funds treatments)
"""

import asyncio
from typing import Any

from sqlalchemy import select

from database.connection import Database
from database.models import User, UserRole

USERS_DATA: list[dict[str, Any]] = [
    {"username": "dr_house", "email": "doctor@example.org", "role": UserRole.DOCTOR},
    {"username": "jane_patient", "email": "patient@example.org", "role": UserRole.PATIENT},
    {"username": "platform_admin", "email": "admin@example.org", "role": UserRole.ADMIN},
    {"username": "city_hospital", "email": "hospital@example.org", "role": UserRole.HOSPITAL},
    {"username": "health_ngo", "email": "ngo@example.org", "role": UserRole.NGO},
    {"username": "kind_donor", "email": "donor@example.org", "role": UserRole.DONOR},
]


async def seed_users(database: Database) -> dict[UserRole, User]:
    """
    Seed the users table, skipping emails that already exist.

    Returns:
        The seeded (or existing) user for each role
    """
    users: dict[UserRole, User] = {}

    async with database.session() as session:
        async with session.begin():
            for user_data in USERS_DATA:
                existing = await session.scalar(select(User).where(User.email == user_data["email"]))
                if existing is None:
                    existing = User(**user_data)
                    session.add(existing)
                    print(f"✓ Created user: {user_data['username']} ({user_data['role'].value})")
                else:
                    print(f"⊙ User already exists: {user_data['username']}")
                users[user_data["role"]] = existing
            await session.flush()

    return users


if __name__ == "__main__":
    print("Seeding users table...")
    print("=" * 60)
    asyncio.run(seed_users(Database.from_settings()))
