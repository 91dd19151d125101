"""
Administrative allocation operations.

Each operation is its own unit of work around the allocation ledger. The
lock flow calls the escrow gateway between two commits so no database
transaction is held open across the ledger call.
"""

from datetime import date as Date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from mealfund.core.exceptions import ExternalCallFailure
from mealfund.models.allocation import Allocation, AllocationStatus
from mealfund.models.escrow import EscrowTransactionRecord
from mealfund.repositories.escrow_repository import EscrowTransactionRepository
from mealfund.services.allocation.allocation_ledger import AllocationLedger
from mealfund.services.base_service import BaseService
from mealfund.services.escrow.escrow_bookkeeping import EscrowBookkeeping
from mealfund.services.escrow.escrow_gateway import EscrowCallFailed, EscrowGateway, EscrowTimeout


class AllocationService(BaseService):
    def __init__(self, db: Session, gateway: EscrowGateway):
        super().__init__(db)
        self.gateway = gateway
        self.ledger = AllocationLedger(db)
        self.bookkeeping = EscrowBookkeeping(db, gateway.contract_address)
        self.escrow_records = EscrowTransactionRepository(db)

    def create(
        self,
        school_id: int,
        catering_id: int,
        amount: Decimal,
        delivery_date: Date,
        delivery_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Allocation:
        with self.transaction():
            allocation = self.ledger.create(
                school_id=school_id,
                catering_id=catering_id,
                amount=amount,
                delivery_date=delivery_date,
                delivery_id=delivery_id,
                metadata=metadata,
            )
        return allocation

    def get(self, allocation_ref: str) -> Allocation:
        return self.ledger.get(allocation_ref)

    def escrow_history(self, allocation: Allocation) -> List[EscrowTransactionRecord]:
        return self.escrow_records.list_for_allocation(allocation.id)

    def lock(self, allocation_ref: str) -> Allocation:
        """
        Lock an allocation's funds in escrow.

        A failed call leaves the allocation LOCKING, from where the lock can
        be retried; a funds-locked event observed later converges it too.

        Raises:
            IllegalTransition: Allocation is not PLANNED or LOCKING
            ExternalCallFailure: The gateway call failed or timed out
        """
        allocation = self.ledger.get(allocation_ref)
        if allocation.status == AllocationStatus.LOCKED:
            return allocation

        with self.transaction():
            allocation = self.ledger.mark_locking(allocation_ref).allocation

        payee = allocation.catering.wallet_address if allocation.catering else None
        try:
            receipt = self.gateway.lock(allocation_ref, allocation.amount, payee=payee)
        except (EscrowCallFailed, EscrowTimeout) as e:
            outcome_unknown = isinstance(e, EscrowTimeout)
            with self.transaction():
                retry_count = self.bookkeeping.record_failure(allocation, "lock", str(e), outcome_unknown)
            raise ExternalCallFailure(
                "Escrow lock timed out; the outcome is unknown" if outcome_unknown else "Escrow lock failed",
                outcome_unknown=outcome_unknown,
                details={"allocation_id": allocation_ref, "retry_count": retry_count},
            ) from e

        with self.transaction():
            allocation = self.ledger.mark_locked(allocation_ref, receipt.tx_hash, receipt.block_number).allocation
            self.ledger.record_lock_reference(allocation_ref, receipt.tx_hash, receipt.block_number)
            self.bookkeeping.record_lock(
                allocation,
                receipt.tx_hash,
                receipt.block_number,
                gas_used=receipt.gas_used,
                gas_price_gwei=receipt.gas_price_gwei,
            )
        return allocation

    def hold(self, allocation_ref: str, reason: str) -> Allocation:
        with self.transaction():
            return self.ledger.hold(allocation_ref, reason).allocation

    def cancel(self, allocation_ref: str, reason: str) -> Allocation:
        with self.transaction():
            return self.ledger.cancel(allocation_ref, reason).allocation


__all__ = ["AllocationService"]
