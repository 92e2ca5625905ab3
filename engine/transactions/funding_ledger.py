"""
Funding Ledger.

Single writer of treatment_requests.raised_amount / status, of donations and
of sponsorship verifications.

Ledger invariants:
- raised_amount == sum(donations.amount) for every treatment request
- 0 <= raised_amount <= goal_amount (values are rejected, never clamped)
- a request becomes `funded` the moment raised_amount reaches goal_amount

Every write locks the treatment request row first, so concurrent donations to
the same request serialize and each one validates against the committed total
of all earlier ones.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import stripe
from sqlalchemy import func, select

from database.connection import Database
from database.models import (
    Donation,
    SponsorshipVerification,
    TreatmentRequest,
    TreatmentRequestStatus,
    UserRole,
)
from database.unit_of_work import UnitOfWork
from engine.actor import Actor
from engine.validators import raise_invalid, validate_donation_amount, validate_fundable
from shared.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TransportError,
    ValidationError,
)
from shared.stripe_client import create_donation_payment_intent

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED_EVENT = "payment_intent.succeeded"

# Roles allowed to upload proof that a sponsored treatment took place
VERIFICATION_UPLOADER_ROLES = frozenset({
    UserRole.DOCTOR,
    UserRole.HOSPITAL,
    UserRole.NGO,
    UserRole.ADMIN,
})

VERIFIABLE_STATUSES = frozenset({TreatmentRequestStatus.FUNDED, TreatmentRequestStatus.CLOSED})


@dataclass
class DonationOutcome:
    """Result of applying a payment confirmation."""

    donation: Donation
    duplicate: bool


class FundingLedger:
    """Donation ledger and sponsorship verification workflow."""

    def __init__(self, database: Database) -> None:
        self.database = database

    # ------------------------------------------------------------------
    # Donations
    # ------------------------------------------------------------------

    async def record_donation(
        self,
        treatment_request_id: int,
        donor_id: int,
        amount: Any,
    ) -> Donation:
        """
        Record a donation against a sponsored treatment request.

        Flow:
        1. Validate amount is a positive decimal
        2. Lock the treatment request row
        3. Validate sponsored / goal / status / remaining
        4. Insert donation, bump raised_amount, mark funded at goal, commit

        Raises:
            ValidationError: INVALID_AMOUNT, NOT_SPONSORED, MISSING_GOAL,
                NOT_ACCEPTING_DONATIONS, EXCEEDS_REMAINING_GOAL (+ remaining_amount)
            NotFoundError: TREATMENT_REQUEST_NOT_FOUND
        """
        trace_id = f"donate:treatment_request={treatment_request_id}"

        amount_check = validate_donation_amount(amount)
        if not amount_check["valid"]:
            logger.warning(f"[{trace_id}] Invalid donation amount: {amount}")
        raise_invalid(amount_check)

        async with self.database.unit_of_work() as uow:
            donation = await self._apply_donation(
                uow, treatment_request_id, donor_id, amount_check["amount"], trace_id
            )
            await uow.commit()

        logger.info(
            f"[{trace_id}] Donation recorded",
            extra={
                "treatment_request_id": treatment_request_id,
                "donation_id": donation.id,
                "amount": str(donation.amount),
            },
        )
        return donation

    async def record_donation_from_payment_confirmation(
        self,
        event: dict[str, Any],
    ) -> DonationOutcome | None:
        """
        Apply a verified Stripe `payment_intent.succeeded` event to the ledger.

        Idempotent on the payment intent id: a redelivered event returns the
        donation created the first time with duplicate=True and writes nothing.

        Returns:
            DonationOutcome, or None for event types that are not applied

        Raises:
            ValidationError: MISSING_PAYMENT_METADATA, or any record_donation rule
            NotFoundError: TREATMENT_REQUEST_NOT_FOUND
        """
        event_type = event.get("type")
        event_id = event.get("id")

        if event_type != PAYMENT_SUCCEEDED_EVENT:
            logger.debug(f"Ignoring payment event type: {event_type}")
            return None

        intent = event.get("data", {}).get("object", {}) or {}
        metadata = intent.get("metadata") or {}
        payment_intent_id = intent.get("id")

        try:
            treatment_request_id = int(metadata["treatment_request_id"])
            donor_id = int(metadata["donor_id"])
            raw_amount = metadata["amount"]
        except (KeyError, TypeError, ValueError) as e:
            logger.error(
                f"Missing donation metadata in payment event {event_id}",
                extra={"stripe_event_id": event_id},
            )
            raise ValidationError(
                "Missing treatment_request_id, donor_id or amount in payment metadata",
                error_code="MISSING_PAYMENT_METADATA",
            ) from e

        if not payment_intent_id:
            raise ValidationError(
                "Missing payment intent id in payment event",
                error_code="MISSING_PAYMENT_METADATA",
            )

        trace_id = f"webhook:{payment_intent_id}"

        amount_check = validate_donation_amount(raw_amount)
        if not amount_check["valid"]:
            logger.error(f"[{trace_id}] Invalid amount in payment metadata: {raw_amount}")
        raise_invalid(amount_check)

        try:
            async with self.database.unit_of_work() as uow:
                await self._lock_treatment_request(uow, treatment_request_id)

                existing = await self._find_by_payment_intent(uow, payment_intent_id)
                if existing is not None:
                    logger.info(
                        f"[{trace_id}] Duplicate payment confirmation, ledger unchanged",
                        extra={"donation_id": existing.id, "stripe_event_id": event_id},
                    )
                    return DonationOutcome(donation=existing, duplicate=True)

                donation = await self._apply_donation(
                    uow,
                    treatment_request_id,
                    donor_id,
                    amount_check["amount"],
                    trace_id,
                    payment_intent_id=payment_intent_id,
                    event_id=event_id,
                )
                await uow.commit()

        except ConflictError as e:
            if e.error_code != "DATABASE_INTEGRITY_ERROR":
                raise
            # A concurrent delivery inserted the same payment intent first
            async with self.database.unit_of_work() as uow:
                existing = await self._find_by_payment_intent(uow, payment_intent_id)
            if existing is None:
                raise
            logger.info(
                f"[{trace_id}] Duplicate payment confirmation (unique constraint)",
                extra={"donation_id": existing.id, "stripe_event_id": event_id},
            )
            return DonationOutcome(donation=existing, duplicate=True)

        logger.info(
            f"[{trace_id}] Payment confirmation applied",
            extra={
                "treatment_request_id": treatment_request_id,
                "donation_id": donation.id,
                "stripe_event_id": event_id,
            },
        )
        return DonationOutcome(donation=donation, duplicate=False)

    async def create_payment_intent(
        self,
        treatment_request_id: int,
        donor_id: int,
        amount: Any,
    ) -> dict[str, Any]:
        """
        Start a card donation: check fundability (no locks) and create a PaymentIntent.

        The ledger is only written when the payment webhook confirms the charge.
        """
        trace_id = f"payment_intent:treatment_request={treatment_request_id}"

        amount_check = validate_donation_amount(amount)
        raise_invalid(amount_check)
        parsed_amount = amount_check["amount"]

        async with self.database.unit_of_work() as uow:
            treatment_request = await uow.get(TreatmentRequest, treatment_request_id)
            if treatment_request is None:
                raise NotFoundError(
                    "Treatment request not found", error_code="TREATMENT_REQUEST_NOT_FOUND"
                )
            check = validate_fundable(treatment_request, parsed_amount)
            if not check["valid"]:
                logger.warning(f"[{trace_id}] {check['error_message']}")
            raise_invalid(check, detail_keys=("remaining_amount",))

        try:
            return await create_donation_payment_intent(treatment_request_id, donor_id, parsed_amount)
        except stripe.StripeError as e:
            raise TransportError(
                "Payment provider unavailable",
                error_code="PAYMENT_PROVIDER_ERROR",
            ) from e

    # ------------------------------------------------------------------
    # Sponsorship verification
    # ------------------------------------------------------------------

    async def request_verification(
        self,
        treatment_request_id: int,
        receipt_url: str | None,
        patient_feedback: str | None,
        actor: Actor,
    ) -> SponsorshipVerification:
        """Upload proof for a funded (or closed) sponsored treatment request."""
        trace_id = f"verification:treatment_request={treatment_request_id}"

        if actor.role not in VERIFICATION_UPLOADER_ROLES:
            raise AuthorizationError(
                "Not authorized to upload sponsorship verification",
                error_code="FORBIDDEN",
            )

        async with self.database.unit_of_work() as uow:
            treatment_request = await self._lock_treatment_request(uow, treatment_request_id)

            if not treatment_request.sponsored:
                raise ValidationError(
                    "Treatment request is not sponsored",
                    error_code="NOT_SPONSORED",
                )
            if treatment_request.status not in VERIFIABLE_STATUSES:
                raise ValidationError(
                    "Treatment request must be funded before verification",
                    error_code="NOT_FUNDED",
                )

            existing = await uow.scalar(
                select(SponsorshipVerification).where(
                    SponsorshipVerification.treatment_request_id == treatment_request_id
                )
            )
            if existing is not None:
                logger.warning(f"[{trace_id}] Verification already exists: {existing.id}")
                raise ConflictError(
                    "Verification already exists for this treatment request",
                    error_code="VERIFICATION_EXISTS",
                )

            verification = SponsorshipVerification(
                treatment_request_id=treatment_request_id,
                receipt_url=receipt_url,
                patient_feedback=patient_feedback,
                approved=False,
            )
            uow.add(verification)
            await uow.flush()
            await uow.commit()

        logger.info(
            f"[{trace_id}] Sponsorship verification uploaded",
            extra={"verification_id": verification.id, "treatment_request_id": treatment_request_id},
        )
        return verification

    async def decide_verification(
        self,
        verification_id: int,
        approved: bool,
        approver_id: int,
    ) -> SponsorshipVerification | None:
        """
        Approve or reject a verification.

        Approve closes the treatment request. Reject deletes the verification
        (so a new one can be uploaded) and reopens a closed request as funded.

        Returns:
            The approved verification, or None when rejected
        """
        trace_id = f"verification_decision:verification={verification_id}"

        async with self.database.unit_of_work() as uow:
            # Treatment request is locked before the verification row
            peek = await uow.get(SponsorshipVerification, verification_id)
            if peek is None:
                raise NotFoundError("Verification not found", error_code="VERIFICATION_NOT_FOUND")

            treatment_request = await self._lock_treatment_request(uow, peek.treatment_request_id)
            verification = await uow.lock_one(
                select(SponsorshipVerification).where(SponsorshipVerification.id == verification_id)
            )
            if verification is None:
                raise NotFoundError("Verification not found", error_code="VERIFICATION_NOT_FOUND")

            if approved:
                verification.approved = True
                verification.approved_at = datetime.now(UTC)
                verification.approved_by = approver_id
                treatment_request.status = TreatmentRequestStatus.CLOSED
                result: SponsorshipVerification | None = verification
            else:
                await uow.delete(verification)
                if treatment_request.status == TreatmentRequestStatus.CLOSED:
                    treatment_request.status = TreatmentRequestStatus.FUNDED
                result = None

            await uow.flush()
            await uow.commit()

        logger.info(
            f"[{trace_id}] Verification {'approved' if approved else 'rejected'}",
            extra={
                "verification_id": verification_id,
                "treatment_request_id": treatment_request.id,
                "status": treatment_request.status.value,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_funding_status(self, treatment_request_id: int) -> dict[str, Any]:
        """Report whether a treatment request can currently accept donations."""
        async with self.database.unit_of_work() as uow:
            treatment_request = await self._get_treatment_request(uow, treatment_request_id)

        check = validate_fundable(treatment_request)
        return {
            "treatment_request_id": treatment_request.id,
            "sponsored": treatment_request.sponsored,
            "goal_amount": treatment_request.goal_amount,
            "raised_amount": treatment_request.raised_amount,
            "remaining_amount": check["remaining_amount"],
            "status": treatment_request.status.value,
            "fundable": check["valid"] and check["remaining_amount"] > 0,
        }

    async def reconcile(self, treatment_request_id: int) -> dict[str, Any]:
        """Compare raised_amount with the sum of recorded donations."""
        async with self.database.unit_of_work() as uow:
            treatment_request = await self._get_treatment_request(uow, treatment_request_id)
            total = await uow.scalar(
                select(func.coalesce(func.sum(Donation.amount), 0)).where(
                    Donation.treatment_request_id == treatment_request_id
                )
            )

        donations_total = Decimal(total or 0)
        raised = Decimal(treatment_request.raised_amount or 0)
        consistent = donations_total == raised
        if not consistent:
            logger.error(
                f"Ledger mismatch for treatment request {treatment_request_id}: "
                f"raised={raised} donations={donations_total}",
                extra={"treatment_request_id": treatment_request_id},
            )

        return {
            "treatment_request_id": treatment_request_id,
            "raised_amount": raised,
            "donations_total": donations_total,
            "consistent": consistent,
        }

    async def list_donations_for_donor(
        self,
        donor_id: int,
        page: int = 1,
        limit: int = 10,
    ) -> dict[str, Any]:
        page = max(page, 1)
        limit = max(min(limit, 100), 1)

        async with self.database.unit_of_work() as uow:
            total = await uow.scalar(
                select(func.count()).select_from(Donation).where(Donation.donor_id == donor_id)
            )
            donations = await uow.scalars(
                select(Donation)
                .where(Donation.donor_id == donor_id)
                .order_by(Donation.donated_at.desc(), Donation.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )

        return {"donations": donations, "meta": {"page": page, "limit": limit, "total": total or 0}}

    async def list_donations_for_request(
        self,
        treatment_request_id: int,
        actor: Actor,
    ) -> list[Donation]:
        """Donations for one request; visible to its patient, its doctor and admins."""
        async with self.database.unit_of_work() as uow:
            treatment_request = await self._get_treatment_request(uow, treatment_request_id)

            if not actor.is_admin and actor.id not in (
                treatment_request.patient_id,
                treatment_request.doctor_id,
            ):
                raise AuthorizationError(
                    "Not authorized to view donations for this treatment request",
                    error_code="FORBIDDEN",
                )

            return await uow.scalars(
                select(Donation)
                .where(Donation.treatment_request_id == treatment_request_id)
                .order_by(Donation.donated_at.desc(), Donation.id.desc())
            )

    async def get_donation(self, donation_id: int, actor: Actor) -> Donation:
        """One donation; visible to its donor, the request's patient and doctor, and admins."""
        async with self.database.unit_of_work() as uow:
            donation = await uow.get(Donation, donation_id)
            if donation is None:
                raise NotFoundError("Donation not found", error_code="DONATION_NOT_FOUND")
            treatment_request = await self._get_treatment_request(uow, donation.treatment_request_id)

        if not (
            actor.is_admin
            or actor.id in (donation.donor_id, treatment_request.patient_id, treatment_request.doctor_id)
        ):
            raise AuthorizationError("You do not have access to this donation", error_code="FORBIDDEN")
        return donation

    async def get_verification(self, verification_id: int, actor: Actor) -> SponsorshipVerification:
        async with self.database.unit_of_work() as uow:
            verification = await uow.get(SponsorshipVerification, verification_id)
            if verification is None:
                raise NotFoundError("Verification not found", error_code="VERIFICATION_NOT_FOUND")
            treatment_request = await self._get_treatment_request(uow, verification.treatment_request_id)

        if not (actor.is_admin or actor.id in (treatment_request.patient_id, treatment_request.doctor_id)):
            raise AuthorizationError("You do not have access to this verification", error_code="FORBIDDEN")
        return verification

    # ------------------------------------------------------------------
    # Helpers (caller holds the UnitOfWork)
    # ------------------------------------------------------------------

    async def _apply_donation(
        self,
        uow: UnitOfWork,
        treatment_request_id: int,
        donor_id: int,
        amount: Decimal,
        trace_id: str,
        payment_intent_id: str | None = None,
        event_id: str | None = None,
    ) -> Donation:
        """Lock, validate and credit one donation. Caller commits."""
        treatment_request = await self._lock_treatment_request(uow, treatment_request_id)

        check = validate_fundable(treatment_request, amount)
        if not check["valid"]:
            logger.warning(
                f"[{trace_id}] Donation rejected: {check['error_code']}",
                extra={
                    "treatment_request_id": treatment_request_id,
                    "remaining_amount": str(check["remaining_amount"]),
                },
            )
        raise_invalid(check, detail_keys=("remaining_amount",))

        donation = Donation(
            treatment_request_id=treatment_request_id,
            donor_id=donor_id,
            amount=amount,
            stripe_payment_intent_id=payment_intent_id,
            stripe_event_id=event_id,
        )
        uow.add(donation)

        treatment_request.raised_amount = Decimal(treatment_request.raised_amount or 0) + amount
        if treatment_request.raised_amount >= Decimal(treatment_request.goal_amount):
            treatment_request.status = TreatmentRequestStatus.FUNDED

        await uow.flush()
        return donation

    async def _lock_treatment_request(self, uow: UnitOfWork, treatment_request_id: int) -> TreatmentRequest:
        treatment_request = await uow.lock_one(
            select(TreatmentRequest).where(TreatmentRequest.id == treatment_request_id)
        )
        if treatment_request is None:
            raise NotFoundError(
                "Treatment request not found", error_code="TREATMENT_REQUEST_NOT_FOUND"
            )
        return treatment_request

    async def _get_treatment_request(self, uow: UnitOfWork, treatment_request_id: int) -> TreatmentRequest:
        treatment_request = await uow.get(TreatmentRequest, treatment_request_id)
        if treatment_request is None:
            raise NotFoundError(
                "Treatment request not found", error_code="TREATMENT_REQUEST_NOT_FOUND"
            )
        return treatment_request

    async def _find_by_payment_intent(self, uow: UnitOfWork, payment_intent_id: str) -> Donation | None:
        return await uow.scalar(
            select(Donation).where(Donation.stripe_payment_intent_id == payment_intent_id)
        )
