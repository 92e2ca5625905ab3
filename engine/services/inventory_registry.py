"""
Inventory Registry Service.

Owns creation of inventory lots and their `condition` field:
- register_lot(): add a lot for a supply source (hospital / ngo / donor)
- mark_expired_lots(): flag medicine lots whose expiry date has passed
- list_lots(), get_lot(): read-only (run the expiry sweep first)

quantity_available is NOT written here after creation; InventoryAllocator is
its only writer.
"""

import logging
from datetime import date, datetime
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import select, update

from database.connection import Database
from database.models import (
    SOURCE_ROLES,
    InventoryCondition,
    InventoryItem,
    InventoryType,
    User,
    UserRole,
    utcnow,
)
from database.unit_of_work import UnitOfWork
from engine.actor import Actor
from engine.validators import raise_invalid, validate_lot_fields
from shared.config import get_settings
from shared.errors import AuthorizationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Roles that may register lots on behalf of any source
REGISTRAR_ROLES = frozenset({UserRole.ADMIN, UserRole.DOCTOR})


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so user text matches literally (escape char: backslash)."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def today() -> date:
    return datetime.now(ZoneInfo(get_settings().TIMEZONE)).date()


async def mark_expired_lots(uow: UnitOfWork, as_of: date | None = None) -> int:
    """
    Set condition=expired on medicine lots past their expiry date.

    Runs inside the caller's UnitOfWork; the caller commits.

    Returns:
        Number of lots newly marked expired
    """
    as_of = as_of or today()
    stmt = (
        update(InventoryItem)
        .where(InventoryItem.type == InventoryType.MEDICINE)
        .where(InventoryItem.expiry_date.is_not(None))
        .where(InventoryItem.expiry_date < as_of)
        .where(InventoryItem.condition != InventoryCondition.EXPIRED)
        .values(condition=InventoryCondition.EXPIRED, updated_at=utcnow())
    )
    result = await uow.execute(stmt)
    marked = result.rowcount or 0

    if marked:
        logger.info(f"Marked {marked} medicine lot(s) as expired", extra={"as_of": as_of.isoformat()})

    return marked


class InventoryRegistry:
    """Lot registration and listing."""

    def __init__(self, database: Database) -> None:
        self.database = database

    async def register_lot(
        self,
        actor: Actor,
        name: str,
        type: str,
        quantity_available: int,
        total_quantity: int,
        storage_location: str | None,
        condition: str,
        source_id: int,
        expiry_date: date | None = None,
    ) -> InventoryItem:
        """
        Register a new inventory lot.

        Source roles may only register lots they hold themselves; admins and
        doctors may register for any source. A medicine registered already past
        its expiry date is stored with condition=expired.

        Raises:
            ValidationError: invalid enum values, quantities, missing expiry date,
                or source_id does not belong to a supply source
            AuthorizationError: actor may not register for this source
            NotFoundError: source user does not exist
        """
        trace_id = f"register_lot:source={source_id}"

        if not name or not name.strip():
            raise ValidationError("Name is required", error_code="MISSING_FIELDS")

        check = validate_lot_fields(type, condition, quantity_available, total_quantity, expiry_date)
        if not check["valid"]:
            logger.warning(f"[{trace_id}] {check['error_message']}")
        raise_invalid(check)

        if actor.is_source:
            if actor.id != source_id:
                raise AuthorizationError(
                    "Sources can only register their own inventory",
                    error_code="NOT_INVENTORY_OWNER",
                )
        elif actor.role not in REGISTRAR_ROLES:
            raise AuthorizationError(
                "Not authorized to register inventory",
                error_code="FORBIDDEN",
            )

        lot_condition = check["condition"]
        if check["type"] == InventoryType.MEDICINE and expiry_date < today():
            lot_condition = InventoryCondition.EXPIRED

        async with self.database.unit_of_work() as uow:
            source = await uow.get(User, source_id)
            if source is None:
                raise NotFoundError("Source not found", error_code="SOURCE_NOT_FOUND")
            if source.role not in SOURCE_ROLES:
                raise ValidationError(
                    "Inventory can only be held by a hospital, ngo or donor",
                    error_code="INVALID_SOURCE",
                )

            lot = InventoryItem(
                name=name.strip(),
                type=check["type"],
                quantity_available=quantity_available,
                total_quantity=total_quantity,
                storage_location=storage_location,
                condition=lot_condition,
                expiry_date=expiry_date,
                source_id=source_id,
            )
            uow.add(lot)
            await uow.flush()
            await uow.commit()

        logger.info(
            f"[{trace_id}] Inventory lot registered",
            extra={"source_id": source_id, "inventory_item_id": lot.id, "condition": lot_condition.value},
        )
        return lot

    async def list_lots(
        self,
        source_id: int | None = None,
        name: str | None = None,
        type: str | None = None,
        condition: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> dict[str, Any]:
        """List lots (newest first) after sweeping expired medicines."""
        async with self.database.unit_of_work() as uow:
            await mark_expired_lots(uow)

            stmt = select(InventoryItem)
            if source_id is not None:
                stmt = stmt.where(InventoryItem.source_id == source_id)
            if name:
                stmt = stmt.where(InventoryItem.name.ilike(f"%{escape_like(name)}%", escape="\\"))
            if type:
                try:
                    stmt = stmt.where(InventoryItem.type == InventoryType(type))
                except ValueError as e:
                    raise ValidationError("Invalid inventory type", error_code="INVALID_TYPE") from e
            if condition:
                try:
                    stmt = stmt.where(InventoryItem.condition == InventoryCondition(condition))
                except ValueError as e:
                    raise ValidationError("Invalid inventory condition", error_code="INVALID_CONDITION") from e

            page = max(page, 1)
            limit = max(min(limit, 100), 1)
            stmt = stmt.order_by(InventoryItem.created_at.desc(), InventoryItem.id.desc())
            lots = await uow.scalars(stmt.offset((page - 1) * limit).limit(limit))

            await uow.commit()

        return {"items": lots, "page": page, "limit": limit}

    async def get_lot(self, lot_id: int, actor: Actor) -> InventoryItem:
        """One lot; sources see their own, admins and doctors see any."""
        async with self.database.unit_of_work() as uow:
            await mark_expired_lots(uow)
            lot = await uow.get(InventoryItem, lot_id)
            await uow.commit()

        if lot is None:
            raise NotFoundError("Inventory item not found", error_code="INVENTORY_ITEM_NOT_FOUND")
        if actor.is_source:
            if lot.source_id != actor.id:
                raise AuthorizationError("Access denied", error_code="NOT_INVENTORY_OWNER")
        elif actor.role not in REGISTRAR_ROLES:
            raise AuthorizationError("Access denied", error_code="FORBIDDEN")
        return lot
