"""
FastAPI dependencies: bearer-token auth, role guards and engine construction.

Tokens are issued by the auth service; this API only verifies them
(HS256, JWT_SECRET) and reads the `id` and `role` claims.
"""

import logging
from typing import Annotated, Any, Callable

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from database.connection import Database
from database.models import UserRole
from engine.actor import Actor
from engine.services.inventory_registry import InventoryRegistry
from engine.transactions import FundingLedger, InventoryAllocator, SlotBookingCoordinator
from shared.config import get_settings
from shared.errors import AuthorizationError

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def verify_token(token: str) -> dict[str, Any]:
    """Verify JWT signature/expiry and return the payload."""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> Actor:
    """Dependency to get the authenticated caller as an Actor."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(credentials.credentials)

    try:
        return Actor(id=int(payload["id"]), role=UserRole(payload["role"]))
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Token missing or carrying invalid id/role claims: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token claims",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


CurrentUser = Annotated[Actor, Depends(get_current_user)]


def require_roles(*roles: UserRole) -> Callable:
    """Build a dependency that only lets the given roles through (403 otherwise)."""
    allowed = frozenset(roles)

    async def _guard(user: CurrentUser) -> Actor:
        if user.role not in allowed:
            raise AuthorizationError(
                f"Requires role: {', '.join(sorted(r.value for r in allowed))}",
                error_code="FORBIDDEN",
            )
        return user

    return _guard


# =============================================================================
# Engines (built per request around the process-wide Database)
# =============================================================================


def get_database(request: Request) -> Database:
    return request.app.state.database


DatabaseDep = Annotated[Database, Depends(get_database)]


def get_slot_coordinator(database: DatabaseDep) -> SlotBookingCoordinator:
    return SlotBookingCoordinator(database)


def get_funding_ledger(database: DatabaseDep) -> FundingLedger:
    return FundingLedger(database)


def get_inventory_allocator(database: DatabaseDep) -> InventoryAllocator:
    return InventoryAllocator(database)


def get_inventory_registry(database: DatabaseDep) -> InventoryRegistry:
    return InventoryRegistry(database)
