"""Temporary order staging and per-checkout payment transactions."""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog

from .document_store import DocumentStore
from .errors import NotFoundError
from .models import (
    Address,
    LineItem,
    Materialization,
    PaymentStatus,
    PaymentTransaction,
    TemporaryOrder,
    _generate_id,
    format_ts,
)

logger = structlog.get_logger(__name__)


class StagingArea:
    """
    Holds checkouts between initiation and payment settlement.

    A temp order is written once and never updated. Its companion
    ``PaymentTransaction`` is the document the reconciliation engine flips
    with conditional updates, so every "apply once" decision for a checkout is
    made on a single document.
    """

    def __init__(
        self,
        store: DocumentStore,
        ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] | None = None,
    ):
        self._temp_orders = store.collection("temp_orders")
        self._transactions = store.collection("payment_transactions")
        self.ttl = ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> str:
        return format_ts(self._clock())

    def new_temp_order_id(self) -> str:
        return _generate_id()

    def stage(
        self,
        temp_order_id: str,
        buyer_id: str,
        items: list[LineItem],
        address: Address,
        payment_transaction_id: str,
        currency: str,
    ) -> tuple[TemporaryOrder, PaymentTransaction]:
        """Persist a temp order and the payment transaction that settles it."""
        now = self._clock()
        total = round(sum(item.total_price for item in items), 2)
        temp_order = TemporaryOrder(
            id=temp_order_id,
            buyer_id=buyer_id,
            items=items,
            address=address,
            total_price=total,
            payment_transaction_id=payment_transaction_id,
            created_at=format_ts(now),
            expires_at=format_ts(now + self.ttl),
        )
        transaction = PaymentTransaction(
            id=payment_transaction_id,
            buyer_id=buyer_id,
            temp_order_id=temp_order_id,
            amount=total,
            currency=currency,
            created_at=format_ts(now),
            updated_at=format_ts(now),
        )
        self._temp_orders.insert_one(temp_order.to_dict())
        try:
            self._transactions.insert_one(transaction.to_dict())
        except Exception:
            self._temp_orders.delete_one({"_id": temp_order_id})
            raise

        logger.info(
            "checkout_staged",
            temp_order_id=temp_order_id,
            payment_transaction_id=payment_transaction_id,
            buyer_id=buyer_id,
            total_price=total,
            line_count=len(items),
        )
        return temp_order, transaction

    # --- Temp orders ---

    def get_temp_order(self, temp_order_id: str) -> TemporaryOrder:
        """
        Get an unexpired temp order.

        Raises:
            NotFoundError: If it doesn't exist or has expired.
        """
        doc = self._temp_orders.find_one(
            {"_id": temp_order_id, "expires_at": {"$gt": self._now()}}
        )
        if doc is None:
            raise NotFoundError("Temporary order", temp_order_id)
        return TemporaryOrder.from_dict(doc)

    def discard_temp_order(self, temp_order_id: str) -> bool:
        return self._temp_orders.delete_one({"_id": temp_order_id})

    def sweep_expired(self) -> int:
        """Delete expired temp orders. Returns the number removed."""
        removed = self._temp_orders.delete_many({"expires_at": {"$lte": self._now()}})
        if removed:
            logger.info("temp_orders_expired", count=removed)
        return removed

    # --- Payment transactions ---

    def get_transaction(self, payment_transaction_id: str) -> PaymentTransaction:
        """
        Raises:
            NotFoundError: If no checkout used this transaction ID.
        """
        doc = self._transactions.find_one({"_id": payment_transaction_id})
        if doc is None:
            raise NotFoundError("Payment transaction", payment_transaction_id)
        return PaymentTransaction.from_dict(doc)

    def find_transaction(self, payment_transaction_id: str) -> PaymentTransaction | None:
        doc = self._transactions.find_one({"_id": payment_transaction_id})
        return PaymentTransaction.from_dict(doc) if doc else None

    def find_transaction_by_payment(self, gateway_payment_id: str) -> PaymentTransaction | None:
        doc = self._transactions.find_one({"gateway_payment_id": gateway_payment_id})
        return PaymentTransaction.from_dict(doc) if doc else None

    def claim_materialization(self, payment_transaction_id: str) -> PaymentTransaction | None:
        """
        Take the right to materialize a pending checkout.

        Returns None if the transaction is not Pending or another caller
        already holds or finished the claim.
        """
        doc = self._transactions.find_one_and_update(
            {
                "_id": payment_transaction_id,
                "payment_status": PaymentStatus.PENDING.value,
                "materialization": Materialization.NONE.value,
            },
            {
                "$set": {
                    "materialization": Materialization.IN_PROGRESS.value,
                    "updated_at": self._now(),
                }
            },
        )
        return PaymentTransaction.from_dict(doc) if doc else None

    def release_materialization(self, payment_transaction_id: str, done: bool) -> None:
        """End a claim; a failed attempt returns to ``none`` so a retry can run."""
        state = Materialization.DONE if done else Materialization.NONE
        self._transactions.find_one_and_update(
            {
                "_id": payment_transaction_id,
                "materialization": Materialization.IN_PROGRESS.value,
            },
            {"$set": {"materialization": state.value, "updated_at": self._now()}},
        )

    def transition_payment(
        self,
        payment_transaction_id: str,
        expected: PaymentStatus,
        target: PaymentStatus,
        extra: dict[str, Any] | None = None,
        require_idle: bool = False,
    ) -> PaymentTransaction | None:
        """
        Atomically move payment_status from expected to target.

        With require_idle, the move only happens when no materialization is in
        progress. Returns the updated transaction, or None if the document was
        not in the expected state.
        """
        query: dict[str, Any] = {
            "_id": payment_transaction_id,
            "payment_status": expected.value,
        }
        if require_idle:
            query["materialization"] = {"$ne": Materialization.IN_PROGRESS.value}
        fields = {"payment_status": target.value, "updated_at": self._now()}
        fields.update(extra or {})
        doc = self._transactions.find_one_and_update(query, {"$set": fields})
        return PaymentTransaction.from_dict(doc) if doc else None
