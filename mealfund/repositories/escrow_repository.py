"""
Escrow transaction audit trail persistence. Append-only.
"""

from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from mealfund.core.exceptions import RepositoryError
from mealfund.models.escrow import EscrowTransactionKind, EscrowTransactionRecord, EscrowTransactionStatus
from mealfund.repositories.base import BaseRepository


class EscrowTransactionRepository(BaseRepository[EscrowTransactionRecord]):
    def __init__(self, db: Session):
        super().__init__(EscrowTransactionRecord, db)

    def append(self, record: EscrowTransactionRecord) -> EscrowTransactionRecord:
        return self.create(record)

    def has_record(
        self,
        allocation_pk: int,
        kind: EscrowTransactionKind,
        tx_hash: Optional[str] = None,
    ) -> bool:
        stmt = select(EscrowTransactionRecord.id).where(
            EscrowTransactionRecord.allocation_id == allocation_pk,
            EscrowTransactionRecord.kind == kind,
        )
        if tx_hash is not None:
            stmt = stmt.where(EscrowTransactionRecord.tx_hash == tx_hash)
        try:
            return self.db.scalar(stmt.limit(1)) is not None
        except SQLAlchemyError as e:
            raise RepositoryError(f"Escrow record lookup failed: {str(e)}") from e

    def append_once(self, record: EscrowTransactionRecord) -> bool:
        """Append unless a record of the same kind already exists for this tx."""
        if self.has_record(record.allocation_id, record.kind, record.tx_hash):
            return False
        self.append(record)
        return True

    def count_failures(self, allocation_pk: int) -> int:
        stmt = select(func.count(EscrowTransactionRecord.id)).where(
            EscrowTransactionRecord.allocation_id == allocation_pk,
            EscrowTransactionRecord.kind == EscrowTransactionKind.FAILED,
        )
        try:
            return int(self.db.scalar(stmt) or 0)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Escrow record count failed: {str(e)}") from e

    def list_for_allocation(self, allocation_pk: int) -> List[EscrowTransactionRecord]:
        return self.find_by(allocation_id=allocation_pk)

    def list_public(
        self,
        page: int,
        limit: int,
        kinds: Iterable[EscrowTransactionKind],
    ) -> Tuple[List[EscrowTransactionRecord], int]:
        """
        Page through confirmed on-chain records, newest first.

        Args:
            page: 1-based page number
            limit: Page size
            kinds: Record kinds to include

        Returns:
            (records on the page with their allocation loaded, total matching records)
        """
        conditions = (
            EscrowTransactionRecord.kind.in_(list(kinds)),
            EscrowTransactionRecord.status == EscrowTransactionStatus.CONFIRMED,
            EscrowTransactionRecord.tx_hash.is_not(None),
        )
        stmt = (
            select(EscrowTransactionRecord)
            .options(joinedload(EscrowTransactionRecord.allocation))
            .where(*conditions)
            .order_by(EscrowTransactionRecord.confirmed_at.desc(), EscrowTransactionRecord.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        count_stmt = select(func.count(EscrowTransactionRecord.id)).where(*conditions)
        try:
            total = int(self.db.scalar(count_stmt) or 0)
            return list(self.db.scalars(stmt)), total
        except SQLAlchemyError as e:
            raise RepositoryError(f"Escrow record query failed: {str(e)}") from e


__all__ = ["EscrowTransactionRepository"]
