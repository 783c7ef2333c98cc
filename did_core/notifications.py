"""
Customer Notifications

Best-effort notification sending. Delivery itself belongs to an external
channel; the engine only asks for a message to go out and never lets a
delivery failure undo the state change that triggered it.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class NotificationType(str, Enum):
    """Customer-facing notification templates."""

    DID_ORDER_REQUESTED = "did_order_requested"
    DID_ORDER_APPROVED = "did_order_approved"
    DID_ORDER_REJECTED = "did_order_rejected"
    DID_ORDER_EXPIRED = "did_order_expired"
    DID_RELEASED_OVERDUE = "did_released_overdue"


class NotificationSender(ABC):
    """Outbound notification channel."""

    @abstractmethod
    async def send(
        self,
        company_id: str,
        notification_type: NotificationType,
        context: Dict[str, Any],
    ) -> None:
        """Deliver a notification. May raise on delivery failure."""
        pass


class LoggingNotificationSender(NotificationSender):
    """Sender that only logs, used when no delivery channel is configured."""

    async def send(
        self,
        company_id: str,
        notification_type: NotificationType,
        context: Dict[str, Any],
    ) -> None:
        logger.info(
            "notification",
            company_id=company_id,
            notification_type=notification_type.value,
            **context,
        )


class RecordingNotificationSender(NotificationSender):
    """Sender that keeps every message in memory."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send(
        self,
        company_id: str,
        notification_type: NotificationType,
        context: Dict[str, Any],
    ) -> None:
        self.sent.append({
            "company_id": company_id,
            "type": notification_type,
            "context": dict(context),
        })


async def notify_best_effort(
    sender: Optional[NotificationSender],
    company_id: str,
    notification_type: NotificationType,
    context: Dict[str, Any],
) -> bool:
    """Send a notification, logging and absorbing delivery failures."""
    if sender is None:
        return False
    try:
        await sender.send(company_id, notification_type, context)
    except Exception as e:
        logger.warning(
            "notification_failed",
            company_id=company_id,
            notification_type=notification_type.value,
            error=str(e),
        )
        return False
    return True


__all__ = [
    "NotificationType",
    "NotificationSender",
    "LoggingNotificationSender",
    "RecordingNotificationSender",
    "notify_best_effort",
]
