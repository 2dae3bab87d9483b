"""Order aggregate: checkout, multi-seller materialization and fulfillment."""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from .catalog import Catalog, StockLedger
from .document_store import DocumentStore
from .errors import (
    ConflictError,
    DatabaseError,
    InsufficientStockError,
    NotFoundError,
    PermissionDeniedError,
    SignatureError,
    StockConflictError,
    ValidationError,
)
from .fraud_gate import FraudGate
from .gateway import PaymentGateway, verify_signature
from .models import (
    ORDER_TRANSITIONS,
    Address,
    LineItem,
    Order,
    OrderStatus,
    PaymentStatus,
    Role,
    StatusChange,
    User,
    _generate_id,
    can_transition,
    format_ts,
)
from .notifications import (
    ORDER_CANCELLED,
    ORDER_STATUS_UPDATE,
    NotificationDispatcher,
    notify_after_commit,
)
from .staging import StagingArea

logger = structlog.get_logger(__name__)

# Carrier status -> fulfillment status
SHIPMENT_STATUS_MAP: dict[str, OrderStatus] = {
    "NEW": OrderStatus.PROCESSING,
    "PICKUP_COMPLETED": OrderStatus.SHIPPED,
    "IN_TRANSIT": OrderStatus.SHIPPED,
    "OUT_FOR_DELIVERY": OrderStatus.SHIPPED,
    "DELIVERED": OrderStatus.DELIVERED,
    "CANCELLED": OrderStatus.CANCELLED,
}

PRICE_TOLERANCE = 0.005


@dataclass
class CartLine:
    """A line as submitted by the buyer."""

    product_id: str
    quantity: int
    price: float | None = None


@dataclass
class CheckoutHandle:
    """What the client needs to open the gateway checkout."""

    temp_order_id: str
    payment_transaction_id: str
    amount: float
    currency: str
    key_id: str
    seller_count: int


@dataclass
class ShipmentUpdate:
    order_id: str
    status: str
    awb_code: str | None = None
    courier_name: str | None = None
    shipment_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShipmentUpdate":
        order_id = data.get("order_id")
        status = data.get("status")
        if not order_id or not status:
            raise ValidationError("Shipment update requires order_id and status")
        return cls(
            order_id=str(order_id),
            status=str(status).upper(),
            awb_code=data.get("awb_code"),
            courier_name=data.get("courier_name"),
            shipment_id=str(data["shipment_id"]) if data.get("shipment_id") else None,
        )


def _transition_path(current: OrderStatus, target: OrderStatus) -> list[OrderStatus] | None:
    """Shortest chain of allowed transitions from current to target."""
    frontier: list[list[OrderStatus]] = [[current]]
    seen = {current}
    while frontier:
        path = frontier.pop(0)
        for nxt in sorted(ORDER_TRANSITIONS[path[-1]], key=lambda s: s.value):
            if nxt in seen:
                continue
            if nxt == target:
                return path[1:] + [nxt]
            seen.add(nxt)
            frontier.append(path + [nxt])
    return None


def can_view(order: Order, user: User) -> bool:
    return user.is_admin or user.id in (order.buyer_id, order.seller_id)


class OrderService:
    def __init__(
        self,
        store: DocumentStore,
        catalog: Catalog,
        ledger: StockLedger,
        staging: StagingArea,
        gateway: PaymentGateway,
        fraud_gate: FraudGate,
        notifier: NotificationDispatcher,
        currency: str = "INR",
        shipment_webhook_secret: str = "",
        clock: Callable[[], datetime] | None = None,
    ):
        self._orders = store.collection("orders")
        self.catalog = catalog
        self.ledger = ledger
        self.staging = staging
        self.gateway = gateway
        self.fraud_gate = fraud_gate
        self.notifier = notifier
        self.currency = currency
        self._shipment_secret = shipment_webhook_secret
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> str:
        return format_ts(self._clock())

    # --- Checkout ---

    def _validate_lines(self, cart_items: list[CartLine]) -> list[LineItem]:
        """Check every line against the catalog without touching stock."""
        if not cart_items:
            raise ValidationError("Cart is empty")

        requested: dict[str, int] = {}
        lines: list[LineItem] = []
        for index, line in enumerate(cart_items, start=1):
            detail = {"line": index, "productId": line.product_id}
            if line.quantity <= 0:
                raise ValidationError(
                    f"Line {index}: quantity must be greater than 0", detail
                )

            product = self.catalog.find_product(line.product_id)
            if product is None or not product.is_active:
                raise ValidationError(
                    f"Line {index}: product {line.product_id} is not available", detail
                )

            requested[product.id] = requested.get(product.id, 0) + line.quantity
            if requested[product.id] > product.quantity_available:
                raise ValidationError(
                    f"Insufficient stock for {product.title}. "
                    f"Available: {product.quantity_available}, "
                    f"Requested: {requested[product.id]}",
                    {**detail, "available": product.quantity_available},
                )

            if line.price is not None and abs(line.price - product.price) > PRICE_TOLERANCE:
                raise ValidationError(
                    f"Price for {product.title} has changed to {product.price}",
                    {**detail, "price": product.price},
                )

            lines.append(
                LineItem(
                    product_id=product.id,
                    quantity=line.quantity,
                    price=product.price,
                    seller_id=product.seller_id,
                )
            )
        return lines

    def create_from_cart(
        self,
        buyer: User,
        cart_items: list[CartLine],
        address: Address,
        ip: str,
    ) -> CheckoutHandle:
        """
        Stage a checkout for a (possibly multi-seller) cart.

        Stock is validated but not reserved; reservation happens when the
        payment is confirmed.

        Raises:
            PermissionDeniedError: If the buyer hasn't verified their account.
            RateExceededError: From the fraud gate.
            ValidationError: If any line can't be ordered.
            GatewayError: If the payment intent can't be created.
        """
        if not buyer.is_verified:
            raise PermissionDeniedError("Verify your account before placing orders")

        self.fraud_gate.check_and_record(ip, buyer.id)

        lines = self._validate_lines(cart_items)
        total = round(sum(line.total_price for line in lines), 2)
        sellers = {line.seller_id for line in lines}

        temp_order_id = self.staging.new_temp_order_id()
        gateway_order = self.gateway.create_order(
            total, self.currency, receipt=f"rcpt_{temp_order_id}"
        )
        self.staging.stage(
            temp_order_id=temp_order_id,
            buyer_id=buyer.id,
            items=lines,
            address=address,
            payment_transaction_id=gateway_order.id,
            currency=gateway_order.currency,
        )
        return CheckoutHandle(
            temp_order_id=temp_order_id,
            payment_transaction_id=gateway_order.id,
            amount=total,
            currency=gateway_order.currency,
            key_id=self.gateway.key_id,
            seller_count=len(sellers),
        )

    def create_from_buy_now(
        self,
        buyer: User,
        product_id: str,
        quantity: int,
        address: Address,
        ip: str,
    ) -> CheckoutHandle:
        """Single-item checkout at the current catalog price."""
        return self.create_from_cart(
            buyer, [CartLine(product_id=product_id, quantity=quantity)], address, ip
        )

    # --- Materialization ---

    def _compensate(self, payment_transaction_id: str, reserved: list[LineItem]) -> None:
        for item in reversed(reserved):
            try:
                self.ledger.restore_stock(item.product_id, item.quantity)
            except Exception:
                # Keep restoring the remaining lines; this one needs manual repair.
                logger.exception(
                    "stock_compensation_failed",
                    payment_transaction_id=payment_transaction_id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                )

    def materialize_orders(self, temp_order_id: str, gateway_payment_ref: str | None) -> list[Order]:
        """
        Split a staged checkout into one order per seller and reserve stock.

        All-or-nothing across every seller: if any line can't be reserved, the
        lines already reserved are restored and no order is written.

        Raises:
            NotFoundError: If the temp order is missing or expired.
            StockConflictError: If a line can't be reserved.
        """
        temp_order = self.staging.get_temp_order(temp_order_id)
        txn_id = temp_order.payment_transaction_id

        reserved: list[LineItem] = []
        for item in temp_order.items:
            try:
                self.ledger.reserve_stock(item.product_id, item.quantity)
            except InsufficientStockError as e:
                self._compensate(txn_id, reserved)
                logger.warning(
                    "materialization_rolled_back",
                    payment_transaction_id=txn_id,
                    product_id=item.product_id,
                    rolled_back_lines=len(reserved),
                )
                raise StockConflictError(txn_id, item.product_id, e.message) from e
            reserved.append(item)

        now = self._now()
        orders = []
        for seller_id, items in temp_order.seller_groups():
            order_items = [
                LineItem(product_id=i.product_id, quantity=i.quantity, price=i.price)
                for i in items
            ]
            orders.append(
                Order(
                    id=_generate_id(),
                    buyer_id=temp_order.buyer_id,
                    seller_id=seller_id,
                    items=order_items,
                    total_price=round(sum(i.total_price for i in order_items), 2),
                    address=temp_order.address,
                    payment_transaction_id=txn_id,
                    gateway_order_id=txn_id,
                    gateway_payment_id=gateway_payment_ref,
                    stock_reserved=True,
                    status_history=[
                        StatusChange(OrderStatus.PENDING.value, "Order created", now)
                    ],
                    created_at=now,
                    updated_at=now,
                )
            )

        try:
            self._orders.insert_many([o.to_dict() for o in orders])
        except DatabaseError:
            self._compensate(txn_id, reserved)
            self._orders.delete_many({"payment_transaction_id": txn_id})
            raise

        logger.info(
            "orders_materialized",
            payment_transaction_id=txn_id,
            temp_order_id=temp_order_id,
            order_ids=[o.id for o in orders],
        )
        return orders

    # --- Queries ---

    def find_by_transaction(self, payment_transaction_id: str) -> list[Order]:
        docs = self._orders.find(
            {"payment_transaction_id": payment_transaction_id},
            sort=[("created_at", 1), ("_id", 1)],
        )
        return [Order.from_dict(d) for d in docs]

    def get_order(self, order_id: str) -> Order:
        doc = self._orders.find_one({"_id": order_id})
        if doc is None:
            raise NotFoundError("Order", order_id)
        return Order.from_dict(doc)

    def get_order_for(self, order_id: str, user: User) -> Order:
        """
        Get an order the user may see (its buyer, its seller, or an admin).

        Raises:
            NotFoundError: If it doesn't exist or belongs to someone else.
        """
        order = self.get_order(order_id)
        if not can_view(order, user):
            raise NotFoundError("Order", order_id)
        return order

    def list_by_transaction(self, payment_transaction_id: str, user: User) -> list[Order]:
        """Sibling orders of a checkout that the user may see."""
        orders = [o for o in self.find_by_transaction(payment_transaction_id) if can_view(o, user)]
        if orders:
            return orders
        transaction = self.staging.find_transaction(payment_transaction_id)
        if transaction is None or not (user.is_admin or transaction.buyer_id == user.id):
            raise NotFoundError("Payment transaction", payment_transaction_id)
        return []

    def list_orders(self, user: User, page: int = 1, limit: int = 10) -> tuple[list[Order], int]:
        """Orders visible to the user's role, newest first."""
        if user.role == Role.BUYER:
            query: dict[str, Any] = {"buyer_id": user.id}
        elif user.role == Role.SELLER:
            query = {"seller_id": user.id}
        else:
            query = {}
        total = self._orders.count(query)
        docs = self._orders.find(
            query,
            sort=[("created_at", -1), ("_id", 1)],
            skip=(page - 1) * limit,
            limit=limit,
        )
        return [Order.from_dict(d) for d in docs], total

    # --- Payment settlement (called by the reconciliation engine) ---

    def settle_paid(self, payment_transaction_id: str, gateway_payment_id: str | None) -> list[Order]:
        """Mark every sibling Paid and move Pending siblings to Processing."""
        now = self._now()
        fields: dict[str, Any] = {"payment_status": PaymentStatus.PAID.value, "updated_at": now}
        if gateway_payment_id:
            fields["gateway_payment_id"] = gateway_payment_id
        self._orders.update_many(
            {
                "payment_transaction_id": payment_transaction_id,
                "payment_status": PaymentStatus.PENDING.value,
            },
            {"$set": fields},
        )
        for order in self.find_by_transaction(payment_transaction_id):
            if order.status == OrderStatus.PENDING:
                self._settle_sibling(order, OrderStatus.PROCESSING, "Payment confirmed")
        return self.find_by_transaction(payment_transaction_id)

    def settle_failed(self, payment_transaction_id: str, reason: str) -> list[Order]:
        """Mark every sibling Failed, cancel it and restore its stock once."""
        self._orders.update_many(
            {
                "payment_transaction_id": payment_transaction_id,
                "payment_status": PaymentStatus.PENDING.value,
            },
            {"$set": {"payment_status": PaymentStatus.FAILED.value, "updated_at": self._now()}},
        )
        for order in self.find_by_transaction(payment_transaction_id):
            if can_transition(order.status, OrderStatus.CANCELLED):
                self._settle_sibling(
                    order,
                    OrderStatus.CANCELLED,
                    reason,
                    extra={"cancellation_reason": reason},
                )
            self.restore_order_stock(order)
        return self.find_by_transaction(payment_transaction_id)

    def settle_refunded(self, payment_transaction_id: str) -> list[Order]:
        self._orders.update_many(
            {
                "payment_transaction_id": payment_transaction_id,
                "payment_status": PaymentStatus.PAID.value,
            },
            {"$set": {"payment_status": PaymentStatus.REFUNDED.value, "updated_at": self._now()}},
        )
        return self.find_by_transaction(payment_transaction_id)

    def restore_order_stock(self, order: Order) -> bool:
        """
        Return an order's reserved units to the catalog, at most once.

        The stock_restored flag is claimed with a conditional update before any
        unit moves, so duplicate or concurrent callers can't double-credit.
        Returns True if this call performed the restoration.
        """
        claimed = self._orders.find_one_and_update(
            {"_id": order.id, "stock_reserved": True, "stock_restored": False},
            {"$set": {"stock_restored": True, "updated_at": self._now()}},
        )
        if claimed is None:
            return False

        for item in order.items:
            try:
                self.ledger.restore_stock(item.product_id, item.quantity)
            except NotFoundError:
                logger.warning(
                    "stock_restore_skipped_missing_product",
                    order_id=order.id,
                    product_id=item.product_id,
                )
        logger.info("order_stock_restored", order_id=order.id, lines=len(order.items))
        return True

    # --- Fulfillment ---

    def _apply_transition(
        self,
        order: Order,
        target: OrderStatus,
        note: str,
        updated_by: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> Order:
        """
        Move one order to target if it's still in the state we read.

        Raises:
            ConflictError: If the move isn't allowed or the order changed underneath.
        """
        if not can_transition(order.status, target):
            raise ConflictError(
                f"Cannot change order status from {order.status.value} to {target.value}",
                {"orderId": order.id, "status": order.status.value, "target": target.value},
            )

        now = self._now()
        fields: dict[str, Any] = {"status": target.value, "updated_at": now}
        fields.update(extra or {})
        doc = self._orders.find_one_and_update(
            {"_id": order.id, "status": order.status.value},
            {
                "$set": fields,
                "$push": {
                    "status_history": StatusChange(target.value, note, now, updated_by).to_dict()
                },
            },
        )
        if doc is None:
            raise ConflictError(
                f"Order {order.id} was modified concurrently", {"orderId": order.id}
            )

        updated = Order.from_dict(doc)
        logger.info(
            "order_status_changed",
            order_id=order.id,
            previous=order.status.value,
            status=target.value,
        )
        if target == OrderStatus.CANCELLED:
            kind, message = ORDER_CANCELLED, f"Order #{updated.id} has been cancelled: {note}"
        else:
            kind, message = ORDER_STATUS_UPDATE, f"Order #{updated.id} status updated to {target.value}"
        notify_after_commit(
            self.notifier,
            updated.buyer_id,
            kind,
            message,
            {"orderId": updated.id, "status": target.value},
        )
        return updated

    def _settle_sibling(
        self,
        order: Order,
        target: OrderStatus,
        note: str,
        extra: dict[str, Any] | None = None,
    ) -> None:
        """
        Move one sibling as part of a payment settlement.

        Settlement can run twice at once (the winning delivery and a retry
        repairing it). Losing the conditional update to another settler is
        fine; losing it while the order still sits in the state we read is not.
        """
        try:
            self._apply_transition(order, target, note, extra=extra)
        except ConflictError:
            current = self.get_order(order.id)
            if current.status == order.status:
                raise
            logger.info(
                "order_settlement_superseded",
                order_id=order.id,
                status=current.status.value,
                target=target.value,
            )

    def transition(
        self,
        order_id: str,
        target: OrderStatus,
        user: User,
        note: str | None = None,
        shipment: dict[str, Any] | None = None,
    ) -> Order:
        """
        Seller/admin fulfillment transition.

        Raises:
            NotFoundError: If the order isn't visible to the user.
            PermissionDeniedError: If the user isn't the order's seller or an admin.
            ConflictError: If the transition isn't allowed.
        """
        order = self.get_order_for(order_id, user)
        if not (user.is_admin or user.id == order.seller_id):
            raise PermissionDeniedError("Only the seller or an admin can update this order")
        if target == OrderStatus.PROCESSING and order.payment_status != PaymentStatus.PAID:
            raise ConflictError(
                "Order can't be processed before payment is confirmed",
                {"orderId": order.id, "paymentStatus": order.payment_status.value},
            )

        extra = {k: v for k, v in (shipment or {}).items() if v is not None}
        if target == OrderStatus.CANCELLED:
            extra["cancellation_reason"] = note or "Cancelled by seller"
        updated = self._apply_transition(
            order,
            target,
            note or f"Status updated to {target.value}",
            updated_by=user.id,
            extra=extra,
        )
        if target == OrderStatus.CANCELLED:
            self.restore_order_stock(updated)
        return updated

    def handle_shipment_webhook(self, raw_body: bytes, signature: str | None) -> str:
        """
        Verify a signed carrier event and apply it.

        Raises:
            SignatureError: If the signature doesn't verify.
            ValidationError: If the body isn't a valid event.
            NotFoundError: If the order doesn't exist.
        """
        if not verify_signature(self._shipment_secret, raw_body, signature):
            logger.warning("shipment_webhook_signature_rejected")
            raise SignatureError("Invalid shipment webhook signature")
        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError("Shipment webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise ValidationError("Shipment webhook body must be an object")
        return self.apply_shipment_update(payload)

    def apply_shipment_update(self, payload: dict[str, Any]) -> str:
        """
        Apply a carrier status event.

        Returns "applied", "already_processed" or "ignored". Events that would
        move an order backwards or out of a terminal state are ignored.

        Raises:
            ValidationError: If the payload lacks an order id or status.
            NotFoundError: If the order doesn't exist.
        """
        update = ShipmentUpdate.from_dict(payload)
        order = self.get_order(update.order_id)
        shipment_fields = {
            k: v
            for k, v in (
                ("awb_code", update.awb_code),
                ("courier_name", update.courier_name),
                ("shipment_id", update.shipment_id),
            )
            if v is not None
        }

        target = SHIPMENT_STATUS_MAP.get(update.status)
        if target is None:
            logger.info("shipment_status_unmapped", order_id=order.id, carrier_status=update.status)
            return "ignored"

        if order.status == target:
            if shipment_fields:
                self._orders.find_one_and_update(
                    {"_id": order.id},
                    {"$set": {**shipment_fields, "updated_at": self._now()}},
                )
            return "already_processed"

        path = _transition_path(order.status, target)
        if path is None or (
            target != OrderStatus.CANCELLED and order.payment_status != PaymentStatus.PAID
        ):
            logger.info(
                "shipment_update_ignored",
                order_id=order.id,
                status=order.status.value,
                target=target.value,
            )
            return "ignored"

        for step in path:
            order = self._apply_transition(
                order,
                step,
                f"Carrier status {update.status}",
                extra=shipment_fields,
            )
        if target == OrderStatus.CANCELLED:
            self.restore_order_stock(order)
        return "applied"
