"""
Engine services module.

Services:
- recurrence_service: slot window expansion (dateutil rrule)
- inventory_registry: lot registration, listing and expiry sweep
"""

from engine.services.inventory_registry import InventoryRegistry, escape_like, mark_expired_lots
from engine.services.recurrence_service import expand_slot_windows

__all__ = [
    "InventoryRegistry",
    "escape_like",
    "expand_slot_windows",
    "mark_expired_lots",
]
