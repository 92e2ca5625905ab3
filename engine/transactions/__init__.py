"""
Allocation transaction engines.

Each engine encapsulates multi-step operations that must execute atomically
(all succeed or all roll back) inside one UnitOfWork:

1. SELECT ... FOR UPDATE row locks before any informing read
2. Invariant validation against the locked rows
3. Mutation, then commit; any error rolls back
4. Logging with a trace_id prefix per operation

Engines:
- SlotBookingCoordinator: consultation slots and bookings
- FundingLedger: donations, payment confirmations, sponsorship verification
- InventoryAllocator: medicine request matching and fulfillment
"""

from engine.transactions.funding_ledger import DonationOutcome, FundingLedger
from engine.transactions.inventory_allocator import (
    FulfillmentResult,
    InventoryAllocator,
    MatchResult,
)
from engine.transactions.slot_booking import SlotBookingCoordinator

__all__ = [
    "DonationOutcome",
    "FulfillmentResult",
    "FundingLedger",
    "InventoryAllocator",
    "MatchResult",
    "SlotBookingCoordinator",
]
