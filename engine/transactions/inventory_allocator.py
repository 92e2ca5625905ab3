"""
Inventory Allocator.

Matches medicine requests to supply sources and decrements inventory on
fulfillment. Single writer of medicine request lifecycle fields and of
inventory_registry.quantity_available.

State machine (see MEDICINE_REQUEST_TRANSITIONS):
    pending | available | rejected  --accept-->  in_progress
    in_progress | available         --reject-->  rejected (-> available on re-match)
    in_progress                     --fulfill--> fulfilled
    any non-terminal                --cancel-->  cancelled

Fulfillment locks the assigned source's matching lots, re-checks the aggregate
under those locks and decrements all-or-nothing, so inventory never goes
negative and sum(quantity taken) == quantity_needed.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select

from database.connection import Database
from database.models import (
    InventoryItem,
    MedicineRequest,
    MedicineRequestStatus,
    User,
    UserRole,
)
from database.unit_of_work import UnitOfWork
from engine.actor import Actor
from engine.services.inventory_registry import escape_like
from engine.validators import (
    raise_invalid,
    validate_quantity_needed,
    validate_request_transition,
    validate_sort_field,
)
from shared.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Column allow-list for list_requests(sort_by=...)
SORTABLE_COLUMNS = {
    "request_id": MedicineRequest.id,
    "patient_id": MedicineRequest.patient_id,
    "item_name_requested": MedicineRequest.item_name_requested,
    "quantity_needed": MedicineRequest.quantity_needed,
    "assigned_source_id": MedicineRequest.assigned_source_id,
    "status": MedicineRequest.status,
    "requested_date": MedicineRequest.requested_date,
    "fulfilled_date": MedicineRequest.fulfilled_date,
}

REQUEST_CREATOR_ROLES = frozenset({UserRole.DOCTOR, UserRole.ADMIN})


@dataclass(frozen=True)
class MatchResult:
    status: MedicineRequestStatus
    source_id: int | None = None


@dataclass
class FulfillmentResult:
    request: MedicineRequest
    # (inventory item id, quantity taken from it)
    allocations: list[tuple[int, int]] = field(default_factory=list)


def _name_matches(item_name: str):
    return InventoryItem.name.ilike(f"%{escape_like(item_name)}%", escape="\\")


class InventoryAllocator:
    """Medicine request matching, acceptance and fulfillment."""

    def __init__(self, database: Database) -> None:
        self.database = database

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    async def match_availability(
        self,
        item_name: str,
        quantity_needed: int,
        uow: UnitOfWork | None = None,
        exclude_source_id: int | None = None,
    ) -> MatchResult:
        """
        Find the single source that can cover quantity_needed on its own.

        Lots whose name contains item_name (case-insensitive, literal) with
        stock left are summed per source. The source with the largest total
        wins; ties go to the lowest source_id.

        Returns:
            MatchResult(available, source_id) or MatchResult(pending, None)
        """
        if uow is None:
            async with self.database.unit_of_work() as own_uow:
                return await self.match_availability(
                    item_name, quantity_needed, uow=own_uow, exclude_source_id=exclude_source_id
                )

        total_available = func.sum(InventoryItem.quantity_available).label("total_available")
        stmt = (
            select(InventoryItem.source_id, total_available)
            .where(_name_matches(item_name))
            .where(InventoryItem.quantity_available > 0)
        )
        if exclude_source_id is not None:
            stmt = stmt.where(InventoryItem.source_id != exclude_source_id)
        stmt = (
            stmt.group_by(InventoryItem.source_id)
            .having(total_available >= quantity_needed)
            .order_by(total_available.desc(), InventoryItem.source_id.asc())
            .limit(1)
        )

        result = await uow.execute(stmt)
        best = result.first()

        if best is None:
            return MatchResult(status=MedicineRequestStatus.PENDING)
        return MatchResult(status=MedicineRequestStatus.AVAILABLE, source_id=best.source_id)

    async def _source_total(self, uow: UnitOfWork, source_id: int, item_name: str) -> int:
        total = await uow.scalar(
            select(func.coalesce(func.sum(InventoryItem.quantity_available), 0))
            .where(InventoryItem.source_id == source_id)
            .where(_name_matches(item_name))
            .where(InventoryItem.quantity_available > 0)
        )
        return int(total or 0)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_request(
        self,
        patient_id: int,
        item_name: str,
        quantity_needed: int,
        delivery_location: str,
        actor: Actor,
        notes: str | None = None,
    ) -> MedicineRequest:
        """
        Create a medicine request and run the initial availability match.

        Patients create requests for themselves; doctors and admins for any patient.
        """
        trace_id = f"create_medicine_request:patient={patient_id}"

        if not item_name or not item_name.strip() or not delivery_location or not delivery_location.strip():
            raise ValidationError(
                "item_name_requested and delivery_location are required",
                error_code="MISSING_FIELDS",
            )
        raise_invalid(validate_quantity_needed(quantity_needed))

        if actor.role == UserRole.PATIENT:
            if actor.id != patient_id:
                raise AuthorizationError(
                    "Patients can only create requests for themselves",
                    error_code="FORBIDDEN",
                )
        elif actor.role not in REQUEST_CREATOR_ROLES:
            raise AuthorizationError(
                "Not authorized to create medicine requests",
                error_code="FORBIDDEN",
            )

        item_name = item_name.strip()

        async with self.database.unit_of_work() as uow:
            patient = await uow.get(User, patient_id)
            if patient is None:
                raise NotFoundError("Patient not found", error_code="PATIENT_NOT_FOUND")
            if patient.role != UserRole.PATIENT:
                raise ValidationError("User is not a patient", error_code="INVALID_PATIENT")

            match = await self.match_availability(item_name, quantity_needed, uow=uow)

            request = MedicineRequest(
                patient_id=patient_id,
                item_name_requested=item_name,
                quantity_needed=quantity_needed,
                delivery_location=delivery_location.strip(),
                assigned_source_id=match.source_id,
                status=match.status,
                notes=notes,
            )
            uow.add(request)
            await uow.flush()
            await uow.commit()

        logger.info(
            f"[{trace_id}] Medicine request created with status {request.status.value}",
            extra={"medicine_request_id": request.id, "source_id": request.assigned_source_id},
        )
        return request

    async def accept(self, request_id: int, source_id: int) -> MedicineRequest:
        """
        Accept a request on behalf of a source.

        The source's own matching stock must cover quantity_needed.

        Raises:
            ConflictError: INVALID_STATUS_TRANSITION
            ValidationError: INSUFFICIENT_INVENTORY
        """
        trace_id = f"accept:medicine_request={request_id}"

        async with self.database.unit_of_work() as uow:
            request = await self._lock_request(uow, request_id)

            transition = validate_request_transition(request.status, "accept")
            if not transition["valid"]:
                logger.warning(f"[{trace_id}] {transition['error_message']}")
            raise_invalid(transition, detail_keys=("current_status",))

            available = await self._source_total(uow, source_id, request.item_name_requested)
            if available < request.quantity_needed:
                logger.warning(
                    f"[{trace_id}] Source lacks stock: {available} < {request.quantity_needed}",
                    extra={"medicine_request_id": request_id, "source_id": source_id},
                )
                raise ValidationError(
                    "Insufficient inventory to accept this request",
                    error_code="INSUFFICIENT_INVENTORY",
                    details={"available": available, "needed": request.quantity_needed},
                )

            request.status = MedicineRequestStatus.IN_PROGRESS
            request.assigned_source_id = source_id
            await uow.flush()
            await uow.commit()

        logger.info(
            f"[{trace_id}] Medicine request accepted",
            extra={"medicine_request_id": request_id, "source_id": source_id},
        )
        return request

    async def reject(self, request_id: int, source_id: int) -> MedicineRequest:
        """
        Reject a request; another qualifying source is offered it immediately.

        When in_progress, only the assigned source may reject.
        """
        trace_id = f"reject:medicine_request={request_id}"

        async with self.database.unit_of_work() as uow:
            request = await self._lock_request(uow, request_id)

            transition = validate_request_transition(request.status, "reject")
            raise_invalid(transition, detail_keys=("current_status",))

            if request.status == MedicineRequestStatus.IN_PROGRESS and request.assigned_source_id != source_id:
                raise AuthorizationError(
                    "Only the assigned source can reject this request",
                    error_code="NOT_ASSIGNED_SOURCE",
                )

            request.status = MedicineRequestStatus.REJECTED
            request.assigned_source_id = None

            # Offered to another source only; the rejecting source is never re-picked
            match = await self.match_availability(
                request.item_name_requested,
                request.quantity_needed,
                uow=uow,
                exclude_source_id=source_id,
            )
            if match.status == MedicineRequestStatus.AVAILABLE:
                request.status = MedicineRequestStatus.AVAILABLE
                request.assigned_source_id = match.source_id

            await uow.flush()
            await uow.commit()

        logger.info(
            f"[{trace_id}] Medicine request rejected, now {request.status.value}",
            extra={"medicine_request_id": request_id, "source_id": request.assigned_source_id},
        )
        return request

    async def fulfill(self, request_id: int, actor: Actor) -> FulfillmentResult:
        """
        Fulfill an in-progress request by decrementing the assigned source's lots.

        Flow:
        1. Lock the request; actor must be the assigned source or an admin
        2. Lock the source's matching lots with stock (id order)
        3. Re-check the aggregate under the lock; short -> fail, nothing decremented
        4. Take stock greedily from the largest lots first
        5. Mark fulfilled, commit

        Raises:
            AuthorizationError: NOT_ASSIGNED_SOURCE
            ConflictError: INVALID_STATUS_TRANSITION, INSUFFICIENT_INVENTORY
        """
        trace_id = f"fulfill:medicine_request={request_id}"

        async with self.database.unit_of_work() as uow:
            request = await self._lock_request(uow, request_id)

            if not actor.is_admin and request.assigned_source_id != actor.id:
                raise AuthorizationError(
                    "Only the assigned source can fulfill this request",
                    error_code="NOT_ASSIGNED_SOURCE",
                )

            transition = validate_request_transition(request.status, "fulfill")
            if not transition["valid"]:
                logger.warning(f"[{trace_id}] {transition['error_message']}")
            raise_invalid(transition, detail_keys=("current_status",))

            # Locks are taken in id order; consumption order is by size below
            lots = await uow.lock_all(
                select(InventoryItem)
                .where(InventoryItem.source_id == request.assigned_source_id)
                .where(_name_matches(request.item_name_requested))
                .where(InventoryItem.quantity_available > 0)
                .order_by(InventoryItem.id.asc())
            )

            available = sum(lot.quantity_available for lot in lots)
            if available < request.quantity_needed:
                logger.warning(
                    f"[{trace_id}] Insufficient inventory at fulfillment: {available} < {request.quantity_needed}",
                    extra={"medicine_request_id": request_id, "source_id": request.assigned_source_id},
                )
                raise ConflictError(
                    "Insufficient inventory to fulfill this request",
                    error_code="INSUFFICIENT_INVENTORY",
                    details={"available": available, "needed": request.quantity_needed},
                )

            allocations: list[tuple[int, int]] = []
            remaining = request.quantity_needed
            for lot in sorted(lots, key=lambda lot: (-lot.quantity_available, lot.id)):
                if remaining == 0:
                    break
                taken = min(lot.quantity_available, remaining)
                lot.quantity_available -= taken
                remaining -= taken
                allocations.append((lot.id, taken))

            request.status = MedicineRequestStatus.FULFILLED
            request.fulfilled_by = actor.id
            request.fulfilled_date = datetime.now(UTC)

            await uow.flush()
            await uow.commit()

        logger.info(
            f"[{trace_id}] Medicine request fulfilled from {len(allocations)} lot(s)",
            extra={"medicine_request_id": request_id, "source_id": request.assigned_source_id},
        )
        return FulfillmentResult(request=request, allocations=allocations)

    async def cancel(self, request_id: int, patient_id: int) -> MedicineRequest:
        """Cancel a request on behalf of the patient who owns it."""
        trace_id = f"cancel:medicine_request={request_id}"

        async with self.database.unit_of_work() as uow:
            request = await self._lock_request(uow, request_id)

            if request.patient_id != patient_id:
                raise AuthorizationError(
                    "Only the requesting patient can cancel this request",
                    error_code="NOT_REQUEST_OWNER",
                )

            raise_invalid(
                validate_request_transition(request.status, "cancel"),
                detail_keys=("current_status",),
            )

            request.status = MedicineRequestStatus.CANCELLED
            request.assigned_source_id = None
            await uow.flush()
            await uow.commit()

        logger.info(f"[{trace_id}] Medicine request cancelled", extra={"medicine_request_id": request_id})
        return request

    async def update_notes(self, request_id: int, notes: str | None, actor: Actor) -> MedicineRequest:
        """Replace a request's notes; admins and the assigned source only."""
        trace_id = f"update_notes:medicine_request={request_id}"

        async with self.database.unit_of_work() as uow:
            request = await self._lock_request(uow, request_id)

            if not actor.is_admin:
                if not actor.is_source:
                    raise AuthorizationError(
                        "Only admins and assigned sources can update requests",
                        error_code="FORBIDDEN",
                    )
                if request.assigned_source_id != actor.id:
                    raise AuthorizationError(
                        "Only the assigned source can update this request",
                        error_code="NOT_ASSIGNED_SOURCE",
                    )

            request.notes = notes or None
            await uow.flush()
            await uow.commit()

        logger.info(f"[{trace_id}] Medicine request notes updated", extra={"medicine_request_id": request_id})
        return request

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_request(self, request_id: int, actor: Actor) -> MedicineRequest:
        """One request; patients see their own, every other role sees any."""
        async with self.database.unit_of_work() as uow:
            request = await uow.get(MedicineRequest, request_id)

        if request is None:
            raise NotFoundError("Medicine request not found", error_code="MEDICINE_REQUEST_NOT_FOUND")
        if actor.role == UserRole.PATIENT and request.patient_id != actor.id:
            raise AuthorizationError("Access denied", error_code="FORBIDDEN")
        return request

    async def list_requests(
        self,
        actor: Actor,
        status: str | None = None,
        item_name: str | None = None,
        patient_id: int | None = None,
        assigned_source_id: int | None = None,
        sort_by: str = "requested_date",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 10,
    ) -> dict[str, Any]:
        """
        List medicine requests with allow-listed sorting.

        Patients only see their own requests; sources and admins see all.
        """
        raise_invalid(validate_sort_field(sort_by, frozenset(SORTABLE_COLUMNS)))
        if sort_order.lower() not in ("asc", "desc"):
            raise ValidationError("Sort order must be asc or desc", error_code="INVALID_SORT_ORDER")

        if actor.role == UserRole.PATIENT:
            patient_id = actor.id
        elif not (actor.is_source or actor.is_admin):
            raise AuthorizationError("Not authorized to view medicine requests", error_code="FORBIDDEN")

        stmt = select(MedicineRequest)
        if status:
            try:
                stmt = stmt.where(MedicineRequest.status == MedicineRequestStatus(status))
            except ValueError as e:
                raise ValidationError("Invalid status filter", error_code="INVALID_STATUS") from e
        if item_name:
            stmt = stmt.where(
                MedicineRequest.item_name_requested.ilike(f"%{escape_like(item_name)}%", escape="\\")
            )
        if patient_id is not None:
            stmt = stmt.where(MedicineRequest.patient_id == patient_id)
        if assigned_source_id is not None:
            stmt = stmt.where(MedicineRequest.assigned_source_id == assigned_source_id)

        column = SORTABLE_COLUMNS[sort_by]
        ordering = column.asc() if sort_order.lower() == "asc" else column.desc()

        page = max(page, 1)
        limit = max(min(limit, 100), 1)

        async with self.database.unit_of_work() as uow:
            total = await uow.scalar(select(func.count()).select_from(stmt.subquery()))
            requests = await uow.scalars(
                stmt.order_by(ordering, MedicineRequest.id.asc())
                .offset((page - 1) * limit)
                .limit(limit)
            )

        return {"requests": requests, "meta": {"page": page, "limit": limit, "total": total or 0}}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _lock_request(self, uow: UnitOfWork, request_id: int) -> MedicineRequest:
        request = await uow.lock_one(select(MedicineRequest).where(MedicineRequest.id == request_id))
        if request is None:
            raise NotFoundError("Medicine request not found", error_code="MEDICINE_REQUEST_NOT_FOUND")
        return request
