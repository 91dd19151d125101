"""
Settlement orchestrator.

Drives a delivery confirmation through escrow release. The relational store
and the ledger cannot be updated atomically, so the flow is split around the
release call:

1. The confirmation and the delivery status are committed first.
2. The release call runs with no database lock held.
3. A failed or timed-out call is compensated: the confirmation is deleted
   and the delivery goes back to its previous status unless the allocation
   has meanwhile been observed as RELEASED. Otherwise the allocation was
   never touched and stays LOCKED.
4. After a successful release nothing is rolled back. Any failure from here
   on is reconciliation debt; the event reconciler converges the record
   when the funds-released event arrives.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from mealfund.core.exceptions import (
    AuthorizationError,
    ConflictError,
    ErrorCode,
    ExternalCallFailure,
    ResourceNotFoundError,
    ValidationError,
)
from mealfund.core.logging import log_execution_time
from mealfund.core.security import CurrentUser
from mealfund.models.allocation import Allocation, AllocationStatus
from mealfund.models.base import utcnow
from mealfund.models.delivery import (
    ConfirmationStatus,
    Delivery,
    DeliveryConfirmation,
    DeliveryStatus,
    Issue,
    IssueSeverity,
    IssueStatus,
)
from mealfund.repositories.allocation_repository import AllocationRepository
from mealfund.repositories.delivery_repository import DeliveryRepository
from mealfund.services.allocation.allocation_ledger import AllocationLedger
from mealfund.services.base_service import BaseService
from mealfund.services.escrow.escrow_bookkeeping import EscrowBookkeeping
from mealfund.services.escrow.escrow_gateway import (
    EscrowCallFailed,
    EscrowGateway,
    EscrowTimeout,
    ReleaseReceipt,
)
from mealfund.services.transparency.feed_projector import FeedProjector


@dataclass(frozen=True)
class ConfirmationInput:
    accepted: bool
    portions_received: int
    quality_rating: int
    notes: Optional[str] = None
    evidence: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class SettlementResult:
    delivery_id: int
    allocation_id: str
    confirmation_status: ConfirmationStatus
    confirmed_at: datetime
    released_amount: Optional[Decimal] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    reconciliation_pending: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SettlementOrchestrator(BaseService):
    def __init__(self, db: Session, gateway: EscrowGateway):
        super().__init__(db)
        self.gateway = gateway
        self.ledger = AllocationLedger(db)
        self.allocations = AllocationRepository(db)
        self.deliveries = DeliveryRepository(db)
        self.bookkeeping = EscrowBookkeeping(db, gateway.contract_address)
        self.feed = FeedProjector(db)

    @log_execution_time()
    def confirm_delivery(
        self,
        delivery_id: int,
        user: CurrentUser,
        confirmation: ConfirmationInput,
    ) -> SettlementResult:
        """
        Apply a school's confirmation of a delivery.

        Args:
            delivery_id: Delivery being confirmed
            user: Authenticated caller
            confirmation: Verdict and quality details

        Returns:
            SettlementResult describing what was applied

        Raises:
            ValidationError: Bad rating or portions
            ResourceNotFoundError: Unknown delivery or no allocation for it
            AuthorizationError: Caller may not act for the delivery's school
            ConflictError: Already confirmed, or the allocation is not LOCKED
            ExternalCallFailure: The escrow release failed or timed out
        """
        self._validate(confirmation)

        delivery = self.deliveries.get_by_id(delivery_id)
        if delivery is None:
            raise ResourceNotFoundError("Delivery", delivery_id)
        if not user.can_act_for_school(delivery.school_id):
            raise AuthorizationError(
                "Not allowed to confirm deliveries for this school",
                {"delivery_id": delivery_id},
            )

        allocation = self.allocations.get_by_delivery(delivery_id)
        if allocation is None:
            raise ResourceNotFoundError("Allocation", f"delivery:{delivery_id}")

        if self.deliveries.get_confirmation(delivery_id) is not None:
            raise ConflictError(
                "Delivery already confirmed",
                ErrorCode.ALREADY_CONFIRMED,
                {"delivery_id": delivery_id},
            )
        if allocation.status != AllocationStatus.LOCKED:
            raise ConflictError(
                f"Allocation is {allocation.status.value}, expected LOCKED",
                ErrorCode.ILLEGAL_TRANSITION,
                {"allocation_id": allocation.allocation_id, "status": allocation.status.value},
            )

        if confirmation.accepted:
            return self._accept(delivery, allocation, user, confirmation)
        return self._reject(delivery, allocation, user, confirmation)

    # -------------------------------------------------------------------------
    # Acceptance
    # -------------------------------------------------------------------------

    def _accept(
        self,
        delivery: Delivery,
        allocation: Allocation,
        user: CurrentUser,
        confirmation: ConfirmationInput,
    ) -> SettlementResult:
        previous_status = delivery.status
        allocation_ref = allocation.allocation_id

        with self.transaction():
            record = self.deliveries.add_confirmation(
                self._confirmation(delivery, allocation, user, confirmation, ConfirmationStatus.APPROVED)
            )
            self.deliveries.set_status(delivery.id, DeliveryStatus.CONFIRMED)
        confirmed_at = record.confirmed_at

        try:
            receipt = self.gateway.release(allocation_ref)
        except (EscrowCallFailed, EscrowTimeout) as e:
            outcome_unknown = isinstance(e, EscrowTimeout)
            settled = self._compensate(delivery.id, allocation, previous_status, str(e), outcome_unknown)
            if settled is not None:
                return self._settled_result(delivery.id, settled, confirmed_at)
            raise ExternalCallFailure(
                "Escrow release timed out; the outcome is unknown" if outcome_unknown else "Escrow release failed",
                outcome_unknown=outcome_unknown,
                details={
                    "allocation_id": allocation_ref,
                    "delivery_id": delivery.id,
                    "timeout_seconds": self.gateway.timeout_seconds if outcome_unknown else None,
                },
            ) from e
        except Exception as e:
            # Any other client error leaves the outcome unknown.
            settled = self._compensate(delivery.id, allocation, previous_status, str(e), True)
            if settled is not None:
                return self._settled_result(delivery.id, settled, confirmed_at)
            raise ExternalCallFailure(
                "Escrow release did not complete; the outcome is unknown",
                outcome_unknown=True,
                details={
                    "allocation_id": allocation_ref,
                    "delivery_id": delivery.id,
                    "error_type": type(e).__name__,
                },
            ) from e

        self._logger.info(
            f"Escrow released for {allocation_ref}",
            extra={"allocation_id": allocation_ref, "tx_hash": receipt.tx_hash, "block_number": receipt.block_number},
        )

        reconciliation_pending = not self._record_release(allocation_ref, receipt)
        if not reconciliation_pending:
            reconciliation_pending = not self._project_feed(allocation_ref)

        return SettlementResult(
            delivery_id=delivery.id,
            allocation_id=allocation_ref,
            confirmation_status=ConfirmationStatus.APPROVED,
            confirmed_at=confirmed_at,
            released_amount=allocation.amount,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            reconciliation_pending=reconciliation_pending,
        )

    def _compensate(
        self,
        delivery_id: int,
        allocation: Allocation,
        previous_status: DeliveryStatus,
        error: str,
        outcome_unknown: bool,
    ) -> Optional[Allocation]:
        """
        Undo the confirmation after a release call that did not report success.

        Returns:
            The allocation if it turned out to be RELEASED already, in which
            case nothing is rolled back; otherwise None
        """
        allocation_ref = allocation.allocation_id
        try:
            current = self.ledger.get(allocation_ref, refresh=True)
            if current.status == AllocationStatus.RELEASED:
                self._logger.warning(
                    f"Release for {allocation_ref} reported an error but the funds were released; keeping confirmation",
                    extra={"allocation_id": allocation_ref, "delivery_id": delivery_id, "error": error},
                )
                return current

            with self.transaction():
                if self.deliveries.set_status(
                    delivery_id,
                    previous_status,
                    only_from={DeliveryStatus.CONFIRMED},
                ):
                    self.deliveries.delete_confirmation(delivery_id)
                self.bookkeeping.record_failure(current, "release", error, outcome_unknown)
        except Exception as e:
            self._logger.critical(
                f"Compensation after failed release did not complete for delivery {delivery_id}: {e}",
                exc_info=True,
                extra={"allocation_id": allocation_ref},
            )
        return None

    def _settled_result(
        self,
        delivery_id: int,
        allocation: Allocation,
        confirmed_at: datetime,
    ) -> SettlementResult:
        return SettlementResult(
            delivery_id=delivery_id,
            allocation_id=allocation.allocation_id,
            confirmation_status=ConfirmationStatus.APPROVED,
            confirmed_at=confirmed_at,
            released_amount=allocation.amount,
            tx_hash=allocation.tx_hash_release,
            block_number=allocation.release_block_number,
            reconciliation_pending=False,
        )

    def _record_release(self, allocation_ref: str, receipt: ReleaseReceipt) -> bool:
        """Apply the post-release writes. Returns False if they were left to the reconciler."""
        try:
            with self.transaction():
                result = self.ledger.mark_released(allocation_ref, receipt.tx_hash, receipt.block_number)
                self.bookkeeping.record_release(
                    result.allocation,
                    receipt.tx_hash,
                    receipt.block_number,
                    gas_used=receipt.gas_used,
                    gas_price_gwei=receipt.gas_price_gwei,
                )
            return True
        except Exception as e:
            self._logger.error(
                f"Release of {allocation_ref} succeeded on-chain but was not recorded: {e}",
                exc_info=True,
                extra={"allocation_id": allocation_ref, "tx_hash": receipt.tx_hash, "reconciliation_debt": True},
            )
            return False

    def _project_feed(self, allocation_ref: str) -> bool:
        try:
            with self.transaction():
                self.feed.project(self.ledger.get(allocation_ref, refresh=True))
            return True
        except Exception as e:
            self._logger.error(
                f"Feed projection failed for {allocation_ref}: {e}",
                exc_info=True,
                extra={"allocation_id": allocation_ref, "reconciliation_debt": True},
            )
            return False

    # -------------------------------------------------------------------------
    # Rejection
    # -------------------------------------------------------------------------

    def _reject(
        self,
        delivery: Delivery,
        allocation: Allocation,
        user: CurrentUser,
        confirmation: ConfirmationInput,
    ) -> SettlementResult:
        with self.transaction():
            record = self.deliveries.add_confirmation(
                self._confirmation(delivery, allocation, user, confirmation, ConfirmationStatus.REJECTED)
            )
            self.deliveries.set_status(delivery.id, DeliveryStatus.REJECTED)
            self.deliveries.open_issue(
                Issue(
                    delivery_id=delivery.id,
                    reported_by=user.user_id,
                    issue_type="quality_issue",
                    description=confirmation.notes or "Delivery rejected by school",
                    severity=IssueSeverity.MEDIUM,
                    status=IssueStatus.OPEN,
                )
            )

        self._logger.info(
            f"Delivery {delivery.id} rejected; allocation {allocation.allocation_id} stays LOCKED",
            extra={"delivery_id": delivery.id, "allocation_id": allocation.allocation_id},
        )
        return SettlementResult(
            delivery_id=delivery.id,
            allocation_id=allocation.allocation_id,
            confirmation_status=ConfirmationStatus.REJECTED,
            confirmed_at=record.confirmed_at,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _validate(confirmation: ConfirmationInput) -> None:
        errors = {}
        if not 1 <= confirmation.quality_rating <= 5:
            errors["quality_rating"] = ["must be between 1 and 5"]
        if confirmation.portions_received < 0:
            errors["portions_received"] = ["must not be negative"]
        if errors:
            raise ValidationError("Invalid delivery confirmation", errors)

    @staticmethod
    def _confirmation(
        delivery: Delivery,
        allocation: Allocation,
        user: CurrentUser,
        confirmation: ConfirmationInput,
        status: ConfirmationStatus,
    ) -> DeliveryConfirmation:
        return DeliveryConfirmation(
            delivery_id=delivery.id,
            allocation_id=allocation.id,
            school_id=delivery.school_id,
            verified_by=user.user_id,
            status=status,
            portions_received=confirmation.portions_received,
            quality_rating=confirmation.quality_rating,
            notes=confirmation.notes,
            evidence=confirmation.evidence,
            confirmed_at=utcnow(),
        )


__all__ = ["ConfirmationInput", "SettlementOrchestrator", "SettlementResult"]
