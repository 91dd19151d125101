"""
Payment gateway webhook handler.

Callbacks are authenticated with an HMAC-SHA256 of the raw body before
anything is parsed or written. The handler only ever moves payment ledger
entries forward; allocation state belongs to the allocation ledger.
"""

import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from mealfund.config.settings import settings
from mealfund.core.exceptions import AuthenticityFailure, ValidationError
from mealfund.models.base import utcnow
from mealfund.models.payment import PaymentStatus
from mealfund.repositories.allocation_repository import AllocationRepository
from mealfund.repositories.payment_repository import PaymentRepository
from mealfund.services.base_service import BaseService

INVOICE_PAID = "invoice.paid"
PAYOUT_SETTLED = "payout.settled"


@dataclass(frozen=True)
class WebhookOutcome:
    event: Optional[str]
    allocation_id: Optional[str]
    applied: bool
    acknowledged: bool = True


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``body`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class PaymentWebhookHandler(BaseService):
    def __init__(self, db: Session, secret: Optional[str] = None):
        super().__init__(db)
        self.secret = secret or settings.PAYMENT_WEBHOOK_SECRET
        self.allocations = AllocationRepository(db)
        self.payments = PaymentRepository(db)

    def verify(self, body: bytes, signature: Optional[str]) -> None:
        """
        Raises:
            AuthenticityFailure: Missing or mismatching signature
        """
        if not signature:
            raise AuthenticityFailure("Missing signature")
        expected = compute_signature(self.secret, body)
        if not hmac.compare_digest(expected.encode(), signature.strip().lower().encode("utf-8")):
            raise AuthenticityFailure()

    def handle(self, body: bytes, signature: Optional[str]) -> WebhookOutcome:
        """
        Authenticate and apply one gateway callback.

        Args:
            body: Raw request body exactly as received
            signature: Value of the signature header

        Returns:
            WebhookOutcome; unknown events and allocations are acknowledged unapplied

        Raises:
            AuthenticityFailure: Signature did not verify; nothing was written
            ValidationError: Authenticated body is not a JSON object
        """
        self.verify(body, signature)

        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise ValidationError("Callback body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise ValidationError("Callback body must be a JSON object")

        event = payload.get("event")
        data: Dict[str, Any] = payload.get("data") if isinstance(payload.get("data"), dict) else payload

        if event == INVOICE_PAID:
            return self._apply(
                event,
                data.get("external_id"),
                PaymentStatus.LOCKED,
                gateway_invoice_id=data.get("id"),
            )
        if event == PAYOUT_SETTLED:
            return self._apply(
                event,
                data.get("reference_id") or data.get("external_id"),
                PaymentStatus.COMPLETED,
                gateway_payout_id=data.get("id"),
                released_to_catering_at=utcnow(),
            )

        self._logger.info(f"Ignoring payment gateway event {event!r}")
        return WebhookOutcome(event=event if isinstance(event, str) else None, allocation_id=None, applied=False)

    def _apply(
        self,
        event: str,
        allocation_ref: Optional[str],
        target: PaymentStatus,
        **references: Any,
    ) -> WebhookOutcome:
        allocation = self.allocations.get_by_ref(allocation_ref) if isinstance(allocation_ref, str) else None
        if allocation is None:
            self._logger.warning(
                f"Payment gateway {event} for unknown allocation {allocation_ref!r}",
                extra={"event_type": event},
            )
            return WebhookOutcome(event=event, allocation_id=allocation_ref, applied=False)

        with self.transaction():
            advanced = self.payments.advance_status(allocation.id, target, **references)

        self._logger.info(
            f"Payment gateway {event} for {allocation_ref}: "
            f"{'advanced to ' + target.value if advanced else 'no status change'}",
            extra={"allocation_id": allocation_ref, "event_type": event},
        )
        return WebhookOutcome(event=event, allocation_id=allocation_ref, applied=advanced)


__all__ = [
    "INVOICE_PAID",
    "PAYOUT_SETTLED",
    "PaymentWebhookHandler",
    "WebhookOutcome",
    "compute_signature",
]
