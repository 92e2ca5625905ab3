"""Authenticated caller identity passed from the API layer into the engines."""

from dataclasses import dataclass

from database.models import SOURCE_ROLES, UserRole


@dataclass(frozen=True)
class Actor:
    id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_source(self) -> bool:
        return self.role in SOURCE_ROLES
