"""Notification dispatch for order and stock events."""

from typing import Any, Protocol

import structlog

from .document_store import Collection, DocumentStore
from .models import Notification, _generate_id

logger = structlog.get_logger(__name__)

NEW_ORDER = "new_order"
PAYMENT_RECEIVED = "payment_received"
PAYMENT_FAILED = "payment_failed"
ORDER_STATUS_UPDATE = "order_status_update"
ORDER_CANCELLED = "order_cancelled"
LOW_INVENTORY = "low_inventory"
OUT_OF_STOCK = "product_out_of_stock"
ADMIN_ALERT = "admin_alert"

# Recipient id for alerts addressed to the operations team
ADMIN_RECIPIENT = "admins"


class NotificationDispatcher(Protocol):
    def notify(
        self,
        recipient_id: str,
        kind: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None: ...


def notify_after_commit(
    dispatcher: NotificationDispatcher,
    recipient_id: str,
    kind: str,
    message: str,
    data: dict[str, Any] | None = None,
) -> None:
    """
    Send a notification for a state change that is already persisted.

    A delivery failure is logged and does not undo or fail the transition.
    """
    try:
        dispatcher.notify(recipient_id, kind, message, data)
    except Exception:
        logger.exception("notification_failed", recipient_id=recipient_id, kind=kind)


class StoreNotificationDispatcher:
    """Persists notifications to the ``notifications`` collection."""

    def __init__(self, store: DocumentStore):
        self._notifications: Collection = store.collection("notifications")

    def notify(
        self,
        recipient_id: str,
        kind: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        notification = Notification(
            id=_generate_id(),
            recipient_id=recipient_id,
            kind=kind,
            message=message,
            data=data or {},
        )
        self._notifications.insert_one(notification.to_dict())
        logger.info("notification_sent", recipient_id=recipient_id, kind=kind)

    def list_for(self, recipient_id: str, limit: int = 20) -> list[Notification]:
        docs = self._notifications.find(
            {"recipient_id": recipient_id},
            sort=[("created_at", -1), ("_id", 1)],
            limit=limit,
        )
        return [Notification.from_dict(d) for d in docs]
