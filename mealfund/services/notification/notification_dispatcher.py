"""
Notification dispatcher for settlement notifications.

Channels are pluggable; the default channel writes a structured log line.
Delivery failures are logged and never propagate into settlement.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from mealfund.core.logging import get_logger
from mealfund.models.allocation import Allocation


class NotificationPriority(str, Enum):
    """Notification priority levels."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class RecipientType(str, Enum):
    SCHOOL = "school"
    CATERING = "catering"
    ADMIN = "admin"


@dataclass
class Notification:
    recipient_type: RecipientType
    recipient_id: Optional[int]
    title: str
    message: str
    notification_type: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    data: Dict[str, Any] = field(default_factory=dict)


class NotificationChannel(ABC):
    name = "channel"

    @abstractmethod
    def deliver(self, notification: Notification) -> None:
        ...


class LogNotificationChannel(NotificationChannel):
    name = "log"

    def __init__(self):
        self._logger = get_logger("mealfund.notifications")

    def deliver(self, notification: Notification) -> None:
        self._logger.info(
            notification.title,
            extra={
                "recipient_type": notification.recipient_type.value,
                "recipient_id": notification.recipient_id,
                "notification_type": notification.notification_type,
                "priority": notification.priority.value,
                **notification.data,
            },
        )


class NotificationDispatcher:
    """
    Fan notifications out to every registered channel.
    """

    def __init__(self, channels: Optional[Iterable[NotificationChannel]] = None):
        self.channels: List[NotificationChannel] = list(channels) if channels is not None else [LogNotificationChannel()]
        self._logger = get_logger(self.__class__.__name__)

    def register(self, channel: NotificationChannel) -> None:
        self.channels.append(channel)

    def dispatch(self, notifications: Iterable[Notification]) -> int:
        """
        Deliver notifications on every channel.

        Returns:
            Number of successful (notification, channel) deliveries
        """
        delivered = 0
        for notification in notifications:
            for channel in self.channels:
                try:
                    channel.deliver(notification)
                    delivered += 1
                except Exception as e:
                    self._logger.error(
                        f"Notification delivery failed on {channel.name}: {e}",
                        exc_info=True,
                        extra={"notification_type": notification.notification_type},
                    )
        return delivered

    def notify_release(self, allocation: Allocation) -> int:
        """Tell the school, the caterer and the admins that funds were released."""
        school_name = allocation.school.name if allocation.school else str(allocation.school_id)
        catering_name = allocation.catering.name if allocation.catering else str(allocation.catering_id)
        amount = f"{allocation.currency} {allocation.amount:,.2f}"
        data = {
            "allocation_id": allocation.allocation_id,
            "amount": str(allocation.amount),
            "tx_hash": allocation.tx_hash_release,
        }

        return self.dispatch(
            [
                Notification(
                    RecipientType.CATERING,
                    allocation.catering_id,
                    "Payment released",
                    f"{amount} for the delivery to {school_name} has been released to you.",
                    "payment_released",
                    NotificationPriority.HIGH,
                    data,
                ),
                Notification(
                    RecipientType.SCHOOL,
                    allocation.school_id,
                    "Payment to caterer completed",
                    f"{amount} has been released to {catering_name}.",
                    "payment_released",
                    NotificationPriority.NORMAL,
                    data,
                ),
                Notification(
                    RecipientType.ADMIN,
                    None,
                    "Escrow release confirmed",
                    f"Allocation {allocation.allocation_id} released {amount} to {catering_name}.",
                    "escrow_released",
                    NotificationPriority.LOW,
                    data,
                ),
            ]
        )


__all__ = [
    "LogNotificationChannel",
    "Notification",
    "NotificationChannel",
    "NotificationDispatcher",
    "NotificationPriority",
    "RecipientType",
]
