"""Payment reconciliation: applies gateway events to checkouts exactly once.

Every decision is a conditional update on the checkout's PaymentTransaction
document. A retried or concurrent delivery of the same event loses the update
and reports ``already_processed`` instead of re-applying side effects.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog

from .errors import (
    ConflictError,
    NotFoundError,
    SignatureError,
    StockConflictError,
    ValidationError,
)
from .gateway import checkout_signature_message, verify_signature
from .models import (
    Materialization,
    Order,
    PaymentStatus,
    PaymentTransaction,
    User,
    parse_ts,
)
from .notifications import (
    ADMIN_ALERT,
    ADMIN_RECIPIENT,
    NEW_ORDER,
    PAYMENT_FAILED,
    PAYMENT_RECEIVED,
    NotificationDispatcher,
    notify_after_commit,
)
from .orders import OrderService
from .staging import StagingArea

logger = structlog.get_logger(__name__)

APPLIED = "applied"
ALREADY_PROCESSED = "already_processed"
IGNORED = "ignored"

CAPTURED = "payment.captured"
FAILED = "payment.failed"
REFUNDED = "payment.refunded"
REFUND_PROCESSED = "refund.processed"


@dataclass
class WebhookOutcome:
    event: str
    result: str
    payment_transaction_id: str | None = None


@dataclass
class RetryEligibility:
    payment_transaction_id: str
    can_retry: bool
    amount: float
    currency: str
    key_id: str
    minutes_left: int = 0
    reason: str | None = None


def _entity(payload: dict[str, Any], name: str) -> dict[str, Any]:
    entity: Any = payload
    for key in ("payload", name, "entity"):
        entity = entity.get(key) if isinstance(entity, dict) else None
    if not isinstance(entity, dict):
        raise ValidationError(f"Webhook payload has no {name} entity")
    return entity


class PaymentReconciler:
    def __init__(
        self,
        staging: StagingArea,
        orders: OrderService,
        notifier: NotificationDispatcher,
        webhook_secret: str,
        key_secret: str,
        retry_window: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] | None = None,
    ):
        self.staging = staging
        self.orders = orders
        self.notifier = notifier
        self._webhook_secret = webhook_secret
        self._key_secret = key_secret
        self.retry_window = retry_window
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # --- Entry points ---

    def handle_webhook(self, raw_body: bytes, signature: str | None) -> WebhookOutcome:
        """
        Verify and apply one gateway webhook delivery.

        The signature is checked over the raw bytes before anything is parsed.

        Raises:
            SignatureError: If the signature is missing or wrong.
            ValidationError: If the body is not a recognizable event.
            ConflictError: If the checkout is mid-materialization elsewhere;
                the gateway should redeliver.
            StockConflictError: If a captured checkout can no longer be filled.
        """
        if not verify_signature(self._webhook_secret, raw_body, signature):
            logger.warning("webhook_signature_rejected", has_signature=bool(signature))
            raise SignatureError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict) or not payload.get("event"):
            raise ValidationError("Webhook body has no event")

        event = payload["event"]
        log = logger.bind(event=event)

        if event in (CAPTURED, FAILED, REFUNDED):
            payment = _entity(payload, "payment")
            txn_id = payment.get("order_id")
            if not txn_id:
                raise ValidationError("Webhook payment entity has no order_id")
            if event == CAPTURED:
                result = self._apply_captured(txn_id, payment.get("id"))
            elif event == FAILED:
                reason = payment.get("error_description") or "Payment failed"
                result = self._apply_failed(txn_id, reason)
            else:
                result = self._apply_refunded(txn_id)
        elif event == REFUND_PROCESSED:
            refund = _entity(payload, "refund")
            transaction = self.staging.find_transaction_by_payment(refund.get("payment_id", ""))
            txn_id = transaction.id if transaction else None
            result = self._apply_refunded(txn_id) if txn_id else IGNORED
        else:
            log.info("webhook_event_ignored")
            return WebhookOutcome(event=event, result=IGNORED)

        log.info("webhook_processed", payment_transaction_id=txn_id, result=result)
        return WebhookOutcome(event=event, result=result, payment_transaction_id=txn_id)

    def confirm_checkout(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
        user: User,
    ) -> list[Order]:
        """
        Apply the captured path from the buyer's client-side confirmation.

        Raises:
            SignatureError: If the checkout signature doesn't verify.
            NotFoundError: If the checkout doesn't exist or isn't the user's.
            ConflictError: If the checkout was cancelled or has expired.
        """
        message = checkout_signature_message(gateway_order_id, gateway_payment_id)
        if not verify_signature(self._key_secret, message, signature):
            logger.warning(
                "checkout_signature_rejected", payment_transaction_id=gateway_order_id
            )
            raise SignatureError("Invalid payment signature")

        self._owned_transaction(gateway_order_id, user)
        result = self._apply_captured(gateway_order_id, gateway_payment_id)
        if result == IGNORED:
            raise ConflictError(
                "Payment can't be applied to this checkout",
                {"paymentTransactionId": gateway_order_id},
            )
        return self.orders.find_by_transaction(gateway_order_id)

    def handle_payment_cancellation(self, payment_transaction_id: str, user: User) -> list[Order]:
        """
        Buyer-initiated cancellation of a checkout that hasn't been paid.

        Raises:
            NotFoundError: If the checkout doesn't exist or isn't the user's.
            ConflictError: If the payment is no longer pending.
        """
        transaction = self._owned_transaction(payment_transaction_id, user)
        if transaction.payment_status != PaymentStatus.PENDING:
            raise ConflictError(
                f"Cannot cancel a payment that is {transaction.payment_status.value}",
                {"paymentStatus": transaction.payment_status.value},
            )

        result = self._apply_failed(payment_transaction_id, "Payment cancelled by user")
        if result != APPLIED:
            raise ConflictError(
                "Payment status changed while cancelling",
                {"paymentTransactionId": payment_transaction_id},
            )
        logger.info(
            "payment_cancelled_by_user",
            payment_transaction_id=payment_transaction_id,
            user_id=user.id,
        )
        return self.orders.find_by_transaction(payment_transaction_id)

    def retry_eligibility(self, payment_transaction_id: str, user: User) -> RetryEligibility:
        """Whether the buyer can reopen the gateway checkout for this transaction."""
        transaction = self._owned_transaction(payment_transaction_id, user)
        eligibility = RetryEligibility(
            payment_transaction_id=transaction.id,
            can_retry=False,
            amount=transaction.amount,
            currency=transaction.currency,
            key_id=self.orders.gateway.key_id,
        )

        if transaction.payment_status != PaymentStatus.PENDING:
            eligibility.reason = f"Payment is {transaction.payment_status.value}"
            return eligibility

        remaining = parse_ts(transaction.created_at) + self.retry_window - self._clock()
        if remaining <= timedelta(0):
            eligibility.reason = "Payment window has expired"
            return eligibility

        try:
            self.staging.get_temp_order(transaction.temp_order_id)
        except NotFoundError:
            eligibility.reason = "Checkout has expired"
            return eligibility

        eligibility.can_retry = True
        eligibility.minutes_left = int(remaining.total_seconds() // 60)
        return eligibility

    # --- Transitions ---

    def _owned_transaction(self, payment_transaction_id: str, user: User) -> PaymentTransaction:
        transaction = self.staging.get_transaction(payment_transaction_id)
        if not (user.is_admin or transaction.buyer_id == user.id):
            raise NotFoundError("Payment transaction", payment_transaction_id)
        return transaction

    def _alert(self, message: str, data: dict[str, Any]) -> None:
        logger.error("payment_alert", alert=message, **data)
        notify_after_commit(self.notifier, ADMIN_RECIPIENT, ADMIN_ALERT, message, data)

    def _materialize(self, transaction: PaymentTransaction, gateway_payment_id: str | None) -> bool:
        """
        Create the seller orders for a captured checkout under a claim.

        Returns False if the checkout can no longer be materialized because
        its temp order is gone.
        """
        txn_id = transaction.id
        if self.staging.claim_materialization(txn_id) is None:
            current = self.staging.get_transaction(txn_id)
            if current.materialization == Materialization.IN_PROGRESS:
                raise ConflictError(
                    "Payment is already being processed",
                    {"paymentTransactionId": txn_id},
                )
            return True

        try:
            self.orders.materialize_orders(transaction.temp_order_id, gateway_payment_id)
        except NotFoundError:
            self.staging.release_materialization(txn_id, done=False)
            self._alert(
                "Payment captured for an expired checkout",
                {"paymentTransactionId": txn_id, "gatewayPaymentId": gateway_payment_id},
            )
            return False
        except StockConflictError:
            self.staging.release_materialization(txn_id, done=False)
            self._alert(
                "Payment captured but stock could not be reserved",
                {"paymentTransactionId": txn_id, "gatewayPaymentId": gateway_payment_id},
            )
            raise
        except Exception:
            self.staging.release_materialization(txn_id, done=False)
            raise

        self.staging.release_materialization(txn_id, done=True)
        return True

    def _apply_captured(self, txn_id: str, gateway_payment_id: str | None) -> str:
        transaction = self.staging.find_transaction(txn_id)
        if transaction is None:
            logger.warning("webhook_unknown_transaction", payment_transaction_id=txn_id)
            return IGNORED

        if transaction.payment_status == PaymentStatus.PAID:
            # A crash between the flip and the sibling update leaves orders Pending.
            self.orders.settle_paid(txn_id, gateway_payment_id)
            return ALREADY_PROCESSED
        if transaction.payment_status != PaymentStatus.PENDING:
            self._alert(
                f"Payment captured for a {transaction.payment_status.value} checkout",
                {"paymentTransactionId": txn_id, "gatewayPaymentId": gateway_payment_id},
            )
            return IGNORED

        if not self.orders.find_by_transaction(txn_id):
            if not self._materialize(transaction, gateway_payment_id):
                return IGNORED

        extra = {"gateway_payment_id": gateway_payment_id} if gateway_payment_id else None
        won = self.staging.transition_payment(
            txn_id, PaymentStatus.PENDING, PaymentStatus.PAID, extra=extra
        )
        if won is None:
            current = self.staging.get_transaction(txn_id)
            if current.payment_status == PaymentStatus.PAID:
                return ALREADY_PROCESSED
            self._alert(
                f"Payment captured for a {current.payment_status.value} checkout",
                {"paymentTransactionId": txn_id, "gatewayPaymentId": gateway_payment_id},
            )
            return IGNORED

        siblings = self.orders.settle_paid(txn_id, gateway_payment_id)
        self.staging.discard_temp_order(transaction.temp_order_id)
        for order in siblings:
            notify_after_commit(
                self.notifier,
                order.seller_id,
                NEW_ORDER,
                f"New order received: #{order.id}",
                {"orderId": order.id, "totalPrice": order.total_price},
            )
            notify_after_commit(
                self.notifier,
                order.seller_id,
                PAYMENT_RECEIVED,
                f"Payment received for order #{order.id}",
                {"orderId": order.id, "amount": order.total_price},
            )
        logger.info(
            "payment_captured",
            payment_transaction_id=txn_id,
            order_ids=[o.id for o in siblings],
        )
        return APPLIED

    def _apply_failed(self, txn_id: str, reason: str) -> str:
        won = self.staging.transition_payment(
            txn_id, PaymentStatus.PENDING, PaymentStatus.FAILED, require_idle=True
        )
        if won is None:
            current = self.staging.find_transaction(txn_id)
            if current is None:
                logger.warning("webhook_unknown_transaction", payment_transaction_id=txn_id)
                return IGNORED
            if current.payment_status == PaymentStatus.FAILED:
                # Finish a cancellation interrupted before every sibling was updated.
                self.orders.settle_failed(txn_id, reason)
                return ALREADY_PROCESSED
            if current.payment_status == PaymentStatus.PENDING:
                raise ConflictError(
                    "Payment is already being processed",
                    {"paymentTransactionId": txn_id},
                )
            logger.info(
                "payment_failure_ignored",
                payment_transaction_id=txn_id,
                payment_status=current.payment_status.value,
            )
            return IGNORED

        self.orders.settle_failed(txn_id, reason)
        self.staging.discard_temp_order(won.temp_order_id)
        notify_after_commit(
            self.notifier,
            won.buyer_id,
            PAYMENT_FAILED,
            f"Payment failed: {reason}",
            {"paymentTransactionId": txn_id},
        )
        logger.info("payment_failed", payment_transaction_id=txn_id, reason=reason)
        return APPLIED

    def _apply_refunded(self, txn_id: str) -> str:
        won = self.staging.transition_payment(txn_id, PaymentStatus.PAID, PaymentStatus.REFUNDED)
        if won is None:
            current = self.staging.find_transaction(txn_id)
            if current is not None and current.payment_status == PaymentStatus.REFUNDED:
                return ALREADY_PROCESSED
            return IGNORED

        self.orders.settle_refunded(txn_id)
        logger.info("payment_refunded", payment_transaction_id=txn_id)
        return APPLIED
