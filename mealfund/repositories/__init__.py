"""Data access layer."""

from mealfund.repositories.base import BaseRepository
from mealfund.repositories.allocation_repository import AllocationRepository
from mealfund.repositories.delivery_repository import DeliveryRepository
from mealfund.repositories.escrow_repository import EscrowTransactionRepository
from mealfund.repositories.feed_repository import FeedRepository
from mealfund.repositories.payment_repository import PaymentRepository

__all__ = [
    "BaseRepository",
    "AllocationRepository",
    "DeliveryRepository",
    "EscrowTransactionRepository",
    "FeedRepository",
    "PaymentRepository",
]
