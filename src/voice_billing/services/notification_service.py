from __future__ import annotations

import logging
from typing import Any, Dict

from ..db.base import BaseDBManager
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..money import format_usd
from ..notifications.queue import AsyncNotificationQueue


logger = logging.getLogger(__name__)


class NotificationService:
    """
    Orchestrates billing notification creation and dispatch via a message queue.
    """

    def __init__(self, db: BaseDBManager, queue: AsyncNotificationQueue) -> None:
        self._db = db
        self._queue = queue

    async def notify_low_balance(
        self, user_id: str, balance: float, minimum_balance: float
    ) -> None:
        if balance > minimum_balance:
            return
        await self._dispatch(
            user_id,
            NotificationType.LOW_BALANCE,
            {
                "credit_balance": balance,
                "minimum_balance": minimum_balance,
                "message": f"Your credit balance is ${format_usd(balance)}. Top up to keep making calls.",
            },
        )

    async def notify_payment_failed(self, user_id: str, order_id: str, message: str) -> None:
        await self._dispatch(
            user_id,
            NotificationType.PAYMENT_FAILED,
            {"order_id": order_id, "message": message},
        )

    async def _dispatch(
        self, user_id: str, notification_type: NotificationType, payload: Dict[str, Any]
    ) -> None:
        event = NotificationEvent(
            user_id=user_id,
            notification_type=notification_type,
            payload=payload,
            status=NotificationStatus.PENDING,
        )
        event = await self._db.add_notification_event(event)

        await self._queue.enqueue(
            {
                "notification_id": event.id,
                "type": event.notification_type,
                "user_id": user_id,
                "payload": event.payload,
            }
        )
        logger.info(
            "Queued billing notification",
            extra={"user_id": user_id, "notification_type": event.notification_type},
        )
