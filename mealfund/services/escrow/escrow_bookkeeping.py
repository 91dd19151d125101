"""
Bookkeeping that follows an escrow outcome.

The settlement flow, the admin lock flow and the event reconciler all record
the same facts once a lock, release or cancellation is known: the payment
entry moves forward, the escrow audit trail gets a row and the payment event
log gets an entry. Rows keyed by transaction are appended at most once, so
whichever writer gets there second changes nothing.
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from mealfund.config.settings import settings
from mealfund.core.logging import get_logger
from mealfund.models.allocation import Allocation
from mealfund.models.base import utcnow
from mealfund.models.escrow import (
    EscrowTransactionKind,
    EscrowTransactionRecord,
    EscrowTransactionStatus,
)
from mealfund.models.payment import PaymentEvent, PaymentEventType, PaymentStatus
from mealfund.repositories.escrow_repository import EscrowTransactionRepository
from mealfund.repositories.payment_repository import PaymentRepository

logger = get_logger(__name__)


class EscrowBookkeeping:
    def __init__(self, db: Session, contract_address: Optional[str] = None):
        self.db = db
        self.payments = PaymentRepository(db)
        self.escrow_records = EscrowTransactionRepository(db)
        self.contract_address = contract_address or settings.ESCROW_CONTRACT_ADDRESS

    def record_lock(
        self,
        allocation: Allocation,
        tx_hash: str,
        block_number: Optional[int],
        gas_used: Optional[int] = None,
        gas_price_gwei: Optional[Decimal] = None,
        source: str = "settlement",
    ) -> None:
        self.payments.advance_status(allocation.id, PaymentStatus.LOCKED)
        payment = self.payments.get_by_allocation(allocation.id)

        self.escrow_records.append_once(
            self._record(
                allocation,
                EscrowTransactionKind.LOCK,
                tx_hash,
                block_number,
                gas_used=gas_used,
                gas_price_gwei=gas_price_gwei,
                to_address=self.contract_address,
            )
        )
        self.payments.append_event_once(
            PaymentEvent(
                payment_id=payment.id if payment else None,
                allocation_id=allocation.id,
                event_type=PaymentEventType.FUND_LOCKED,
                blockchain_tx_hash=tx_hash,
                blockchain_block_number=block_number,
                event_signature="FundLocked",
                event_data={"amount": str(allocation.amount), "source": source},
            )
        )

    def record_release(
        self,
        allocation: Allocation,
        tx_hash: str,
        block_number: Optional[int],
        gas_used: Optional[int] = None,
        gas_price_gwei: Optional[Decimal] = None,
        source: str = "settlement",
    ) -> None:
        released_at = allocation.released_at or utcnow()
        self.payments.advance_status(
            allocation.id,
            PaymentStatus.COMPLETED,
            blockchain_tx_hash=tx_hash,
            blockchain_block_number=block_number,
            released_to_catering_at=released_at,
        )
        payment = self.payments.get_by_allocation(allocation.id)
        payee = allocation.catering.wallet_address if allocation.catering else None

        self.escrow_records.append_once(
            self._record(
                allocation,
                EscrowTransactionKind.RELEASE,
                tx_hash,
                block_number,
                gas_used=gas_used,
                gas_price_gwei=gas_price_gwei,
                from_address=self.contract_address,
                to_address=payee,
            )
        )
        self.payments.append_event_once(
            PaymentEvent(
                payment_id=payment.id if payment else None,
                allocation_id=allocation.id,
                event_type=PaymentEventType.PAYMENT_RELEASED,
                blockchain_tx_hash=tx_hash,
                blockchain_block_number=block_number,
                event_signature="FundReleased",
                event_data={
                    "amount": str(allocation.amount),
                    "catering_id": allocation.catering_id,
                    "source": source,
                },
            )
        )

    def record_cancel(
        self,
        allocation: Allocation,
        reason: str,
        tx_hash: Optional[str],
        block_number: Optional[int],
    ) -> None:
        payment = self.payments.get_by_allocation(allocation.id)
        self.escrow_records.append_once(
            self._record(
                allocation,
                EscrowTransactionKind.FAILED,
                tx_hash,
                block_number,
                status=EscrowTransactionStatus.CONFIRMED,
                error_message=f"Cancelled: {reason}",
            )
        )
        self.payments.append_event_once(
            PaymentEvent(
                payment_id=payment.id if payment else None,
                allocation_id=allocation.id,
                event_type=PaymentEventType.FUND_CANCELLED,
                blockchain_tx_hash=tx_hash,
                blockchain_block_number=block_number,
                event_signature="FundCancelled",
                event_data={"reason": reason},
            )
        )

    def record_failure(self, allocation: Allocation, operation: str, error: str, outcome_unknown: bool) -> int:
        """
        Append a FAILED record for an escrow call that raised.

        Returns:
            The retry count stored on the record (number of failed attempts so far)
        """
        retry_count = self.escrow_records.count_failures(allocation.id) + 1
        self.escrow_records.append(
            self._record(
                allocation,
                EscrowTransactionKind.FAILED,
                None,
                None,
                status=EscrowTransactionStatus.FAILED,
                error_message=error,
                retry_count=retry_count,
                metadata={"operation": operation, "outcome_unknown": outcome_unknown},
            )
        )
        logger.warning(
            f"Escrow {operation} failed for {allocation.allocation_id}",
            extra={
                "allocation_id": allocation.allocation_id,
                "retry_count": retry_count,
                "outcome_unknown": outcome_unknown,
            },
        )
        return retry_count

    def _record(
        self,
        allocation: Allocation,
        kind: EscrowTransactionKind,
        tx_hash: Optional[str],
        block_number: Optional[int],
        status: EscrowTransactionStatus = EscrowTransactionStatus.CONFIRMED,
        error_message: Optional[str] = None,
        retry_count: int = 0,
        gas_used: Optional[int] = None,
        gas_price_gwei: Optional[Decimal] = None,
        from_address: Optional[str] = None,
        to_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EscrowTransactionRecord:
        now = utcnow()
        return EscrowTransactionRecord(
            allocation_id=allocation.id,
            kind=kind,
            amount=allocation.amount,
            currency=allocation.currency,
            tx_hash=tx_hash,
            block_number=block_number,
            gas_used=gas_used,
            gas_price_gwei=gas_price_gwei,
            from_address=from_address,
            to_address=to_address,
            contract_address=self.contract_address,
            status=status,
            retry_count=retry_count,
            error_message=error_message,
            extra_metadata=metadata,
            executed_at=now,
            confirmed_at=now if status == EscrowTransactionStatus.CONFIRMED else None,
        )


__all__ = ["EscrowBookkeeping"]
