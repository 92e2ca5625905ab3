"""
Seed data orchestration module.

Provides seed_all() function to execute all seed scripts in dependency order.
Can be run standalone: python -m database.seeds
"""

import asyncio

from database.connection import Database
from database.models import UserRole
from database.seeds.allocations import seed_inventory, seed_slots, seed_treatment_requests
from database.seeds.users import seed_users


async def seed_all() -> None:
    """
    Execute all seed scripts in dependency order.

    Order:
    1. users - independent
    2. slots, treatment requests, inventory - depend on users
    """
    print("Starting database seeding...")
    print("-" * 50)

    database = Database.from_settings()
    try:
        users = await seed_users(database)
        await seed_slots(database, users[UserRole.DOCTOR])
        await seed_treatment_requests(database, users[UserRole.DOCTOR], users[UserRole.PATIENT])
        await seed_inventory(database, users)
    finally:
        await database.dispose()

    print("-" * 50)
    print(" Database seeding complete!")


if __name__ == "__main__":
    asyncio.run(seed_all())
