"""
UnitOfWork - one pooled connection, one explicit transaction.

Every allocation operation runs inside exactly one UnitOfWork:

    async with database.unit_of_work() as uow:
        slot = await uow.lock_one(select(ConsultationSlot).where(...))
        ...
        await uow.commit()

Guarantees:
- Leaving the block with an exception rolls back and re-raises.
- Leaving the block cleanly without commit() also rolls back (no implicit commit).
- The session (and its pooled connection) is closed on every exit path.
- SQLAlchemy errors are translated into the AllocationError taxonomy so the
  API layer never sees driver exceptions.
"""

import logging
from typing import Any, TypeVar

from sqlalchemy import Select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import AllocationError, ConflictError, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def translate_db_error(exc: SQLAlchemyError) -> AllocationError:
    """Map a SQLAlchemy exception onto the allocation error taxonomy."""
    if isinstance(exc, IntegrityError):
        return ConflictError(
            "Operation conflicts with existing data",
            error_code="DATABASE_INTEGRITY_ERROR",
        )
    return TransportError("Database operation failed", error_code="DATABASE_ERROR")


class UnitOfWork:
    """Async context manager wrapping one AsyncSession and one transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._committed = False

    async def __aenter__(self) -> "UnitOfWork":
        try:
            await self.begin()
        except SQLAlchemyError as e:
            await self.session.close()
            raise translate_db_error(e) from e
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is not None or not self._committed:
                await self._safe_rollback()
        finally:
            await self.session.close()

        if isinstance(exc, SQLAlchemyError):
            logger.error(f"Transaction rolled back after database error: {exc}", exc_info=exc)
            raise translate_db_error(exc) from exc

        return False

    async def _safe_rollback(self) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError as e:
            # Connection is already broken; close() below releases it
            logger.error(f"Rollback failed: {e}")

    # ------------------------------------------------------------------
    # Transaction control
    # ------------------------------------------------------------------

    async def begin(self) -> None:
        if not self.session.in_transaction():
            await self.session.begin()
        self._committed = False

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            raise translate_db_error(e) from e
        self._committed = True

    async def rollback(self) -> None:
        await self.session.rollback()
        self._committed = False

    # ------------------------------------------------------------------
    # Locked reads (SELECT ... FOR UPDATE)
    # ------------------------------------------------------------------

    async def lock_one(self, stmt: Select) -> Any | None:
        """Execute stmt with FOR UPDATE and return the single entity, or None."""
        result = await self.session.execute(
            stmt.with_for_update().execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def lock_all(self, stmt: Select) -> list[Any]:
        """Execute stmt with FOR UPDATE and return all entities (in stmt order)."""
        result = await self.session.execute(
            stmt.with_for_update().execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Passthroughs
    # ------------------------------------------------------------------

    async def get(self, model: type[T], ident: Any) -> T | None:
        return await self.session.get(model, ident)

    async def execute(self, stmt, params: dict[str, Any] | None = None):
        return await self.session.execute(stmt, params)

    async def scalar(self, stmt) -> Any:
        return await self.session.scalar(stmt)

    async def scalars(self, stmt) -> list[Any]:
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    def add(self, instance: Any) -> None:
        self.session.add(instance)

    def add_all(self, instances: list[Any]) -> None:
        self.session.add_all(instances)

    async def delete(self, instance: Any) -> None:
        await self.session.delete(instance)

    async def flush(self) -> None:
        await self.session.flush()

    async def refresh(self, instance: Any) -> None:
        await self.session.refresh(instance)
