"""
Event reconciler.

Keeps the relational record in step with the escrow ledger. Events arrive
from the ledger subscription, are queued, and are applied one at a time.
Each event gets its own database session and its own commit, and the
database work runs in a worker thread so the event loop keeps serving
requests.

Every handler is idempotent: allocation transitions go through the ledger's
guarded writes, and audit rows are appended at most once per transaction
hash. Replays, duplicates and out-of-order delivery converge on the same
state.
"""

import asyncio
import threading
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from mealfund.core.exceptions import BaseAppException, ReconciliationMismatch
from mealfund.core.logging import get_logger
from mealfund.models.allocation import Allocation, AllocationStatus
from mealfund.models.delivery import DeliveryStatus
from mealfund.repositories.delivery_repository import DeliveryRepository
from mealfund.services.allocation.allocation_ledger import AllocationLedger, LOCK_SOURCES
from mealfund.services.escrow.escrow_bookkeeping import EscrowBookkeeping
from mealfund.services.escrow.escrow_gateway import (
    LedgerEventKind,
    LedgerEventSource,
    RawLedgerEvent,
)
from mealfund.services.notification.notification_dispatcher import NotificationDispatcher
from mealfund.services.reconciliation.event_decoder import (
    FundsCancelled,
    FundsLocked,
    FundsReleased,
    LedgerEvent,
    UndecodableEvent,
    decode_event,
)
from mealfund.services.transparency.feed_projector import FeedProjector

logger = get_logger(__name__)

_STOP = object()

# Apply order within one block
_KIND_ORDER = {
    LedgerEventKind.FUNDS_LOCKED: 0,
    LedgerEventKind.FUNDS_RELEASED: 1,
    LedgerEventKind.FUNDS_CANCELLED: 2,
}


class EventReconciler:
    """
    Lifecycle-scoped consumer of escrow ledger events.

    Usage:
        reconciler = EventReconciler(session_factory, event_source)
        await reconciler.start()
        ...
        await reconciler.stop()
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        event_source: LedgerEventSource,
        dispatcher: Optional[NotificationDispatcher] = None,
        start_block: int = 0,
        contract_address: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.event_source = event_source
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.contract_address = contract_address

        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._state_lock = threading.Lock()
        self._last_processed_block = start_block
        self._stats = {"processed": 0, "failed": 0, "dropped": 0, "mismatched": 0}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def last_processed_block(self) -> int:
        return self._last_processed_block

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name="event-reconciler")
        self.event_source.subscribe(self.enqueue)
        logger.info(
            "Event reconciler started",
            extra={"last_processed_block": self._last_processed_block},
        )

    async def stop(self) -> None:
        """Unsubscribe, let queued events drain, then stop the worker."""
        if not self.running:
            return
        self.event_source.unsubscribe()
        await self._queue.put(_STOP)
        try:
            await self._worker
        finally:
            self._worker = None
        logger.info("Event reconciler stopped", extra=self.status())

    async def enqueue(self, raw: RawLedgerEvent) -> None:
        """Subscription callback."""
        await self._queue.put(raw)

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def _run(self) -> None:
        while True:
            raw = await self._queue.get()
            try:
                if raw is _STOP:
                    return
                await asyncio.to_thread(self.process, raw)
            except Exception as e:
                # One bad event must not end the subscription
                logger.error(f"Unexpected reconciler error: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    def status(self) -> Dict[str, Any]:
        with self._state_lock:
            last_block = self._last_processed_block
            stats = dict(self._stats)
        return {
            "running": self.running,
            "queue_size": self._queue.qsize() if self._queue is not None else 0,
            "last_processed_block": last_block,
            **stats,
        }

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    def process(self, raw: RawLedgerEvent) -> bool:
        """
        Decode and apply one raw event.

        Returns:
            True if the event was applied
        """
        try:
            event = decode_event(raw)
        except UndecodableEvent as e:
            self._count("dropped")
            logger.warning(f"Dropping undecodable ledger event: {e}")
            return False
        return self.apply(event)

    def apply(self, event: LedgerEvent) -> bool:
        handler = self._handlers()[type(event)]
        session: Session = self.session_factory()
        try:
            handler(session, event)
            session.commit()
        except ReconciliationMismatch as e:
            session.rollback()
            self._count("mismatched")
            logger.warning(
                e.message,
                extra={"allocation_id": event.allocation_ref, "event_kind": event.kind.value},
            )
            return False
        except BaseAppException as e:
            session.rollback()
            self._count("failed")
            logger.error(
                f"Ledger event {event.kind.value} not applied: {e.message}",
                extra={"allocation_id": event.allocation_ref, "tx_hash": event.tx_hash, "error_code": e.error_code.value},
            )
            return False
        except Exception as e:
            session.rollback()
            self._count("failed")
            logger.error(
                f"Ledger event {event.kind.value} not applied: {e}",
                exc_info=True,
                extra={"allocation_id": event.allocation_ref, "tx_hash": event.tx_hash},
            )
            return False
        finally:
            session.close()

        self._count("processed")
        self._advance_cursor(event.block_number)

        if isinstance(event, FundsReleased):
            self._after_release(event)
        return True

    def catch_up(self, from_block: int, to_block: Optional[int] = None) -> Dict[str, int]:
        """
        Re-scan a block range and replay every escrow event in it.

        Returns:
            Counts of applied events per kind, failures, and the scanned range
        """
        if to_block is None:
            to_block = self.event_source.current_block()

        events: List[LedgerEvent] = []
        failed = 0
        for kind in LedgerEventKind:
            for raw in self.event_source.fetch_events(kind, from_block, to_block):
                try:
                    events.append(decode_event(raw))
                except UndecodableEvent as e:
                    failed += 1
                    logger.warning(f"Skipping undecodable historical event: {e}")

        events.sort(key=lambda ev: (ev.block_number, _KIND_ORDER[ev.kind]))
        counts = {"locked": 0, "released": 0, "cancelled": 0}
        names = {
            LedgerEventKind.FUNDS_LOCKED: "locked",
            LedgerEventKind.FUNDS_RELEASED: "released",
            LedgerEventKind.FUNDS_CANCELLED: "cancelled",
        }
        for event in events:
            if self.apply(event):
                counts[names[event.kind]] += 1
            else:
                failed += 1

        self._advance_cursor(to_block)
        logger.info(
            f"Catch-up scanned blocks {from_block}..{to_block}",
            extra={**counts, "failed": failed},
        )
        return {**counts, "failed": failed, "from_block": from_block, "to_block": to_block}

    def _advance_cursor(self, block_number: int) -> None:
        with self._state_lock:
            if block_number > self._last_processed_block:
                self._last_processed_block = block_number

    def _count(self, key: str) -> None:
        # process() runs on the worker thread and catch_up() on the request threadpool.
        with self._state_lock:
            self._stats[key] += 1

    def _handlers(self) -> Dict[type, Callable[[Session, Any], None]]:
        return {
            FundsLocked: self._on_locked,
            FundsReleased: self._on_released,
            FundsCancelled: self._on_cancelled,
        }

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _resolve(self, ledger: AllocationLedger, event: LedgerEvent) -> Allocation:
        allocation = ledger.find(event.allocation_ref)
        if allocation is None:
            raise ReconciliationMismatch(event.allocation_ref, event.kind.value)
        return allocation

    def _on_locked(self, session: Session, event: FundsLocked) -> None:
        ledger = AllocationLedger(session)
        allocation = self._resolve(ledger, event)

        if allocation.status in LOCK_SOURCES or allocation.status == AllocationStatus.LOCKED:
            allocation = ledger.mark_locked(event.allocation_ref, event.tx_hash, event.block_number).allocation
        else:
            # Lock observed after the allocation moved on
            logger.info(
                f"Late lock event for {event.allocation_ref} in status {allocation.status.value}",
                extra={"allocation_id": event.allocation_ref},
            )
        ledger.record_lock_reference(event.allocation_ref, event.tx_hash, event.block_number)

        EscrowBookkeeping(session, self.contract_address).record_lock(
            allocation, event.tx_hash, event.block_number, source="ledger-event"
        )
        ledger.observe_block(allocation, event.block_number)

    def _on_released(self, session: Session, event: FundsReleased) -> None:
        ledger = AllocationLedger(session)
        allocation = self._resolve(ledger, event)

        result = ledger.mark_released(event.allocation_ref, event.tx_hash, event.block_number, relaxed=True)
        allocation = result.allocation
        EscrowBookkeeping(session, self.contract_address).record_release(
            allocation, event.tx_hash, event.block_number, source="ledger-event"
        )
        if allocation.delivery_id is not None:
            DeliveryRepository(session).set_status(
                allocation.delivery_id,
                DeliveryStatus.VERIFIED,
                only_from=set(DeliveryStatus) - {DeliveryStatus.VERIFIED},
            )
        ledger.observe_block(allocation, event.block_number)

    def _on_cancelled(self, session: Session, event: FundsCancelled) -> None:
        ledger = AllocationLedger(session)
        self._resolve(ledger, event)

        allocation = ledger.cancel(event.allocation_ref, event.reason).allocation
        if allocation.delivery_id is not None:
            DeliveryRepository(session).set_status(
                allocation.delivery_id,
                DeliveryStatus.CANCELLED,
                reason=event.reason,
                only_from=set(DeliveryStatus) - {DeliveryStatus.VERIFIED, DeliveryStatus.CANCELLED},
            )
        EscrowBookkeeping(session, self.contract_address).record_cancel(
            allocation, event.reason, event.tx_hash, event.block_number
        )
        ledger.observe_block(allocation, event.block_number)

    def _after_release(self, event: FundsReleased) -> None:
        """Feed projection and notifications. Failures are logged; the record is already correct."""
        session: Session = self.session_factory()
        try:
            allocation = AllocationLedger(session).get(event.allocation_ref, refresh=True)
            FeedProjector(session).project(allocation)

            # Notify once per allocation, from the event carrying the recorded release
            metadata = allocation.extra_metadata or {}
            notify = allocation.tx_hash_release == event.tx_hash and not metadata.get("release_notified")
            if notify:
                allocation.extra_metadata = {**metadata, "release_notified": True}
            session.commit()

            if notify:
                self.dispatcher.notify_release(allocation)
        except Exception as e:
            session.rollback()
            logger.error(
                f"Post-release projection failed for {event.allocation_ref}: {e}",
                exc_info=True,
                extra={"allocation_id": event.allocation_ref},
            )
        finally:
            session.close()


__all__ = ["EventReconciler"]
