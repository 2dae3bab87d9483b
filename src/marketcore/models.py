"""Data models for marketcore."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return format_ts(datetime.now(timezone.utc))


def format_ts(value: datetime) -> str:
    """
    Format a datetime as a fixed-width UTC ISO 8601 string.

    Microseconds are always written so that stored timestamps sort and compare
    lexicographically in the same order as the instants they represent.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_ts(value: str) -> datetime:
    """Parse a timestamp written by format_ts."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _generate_id() -> str:
    """Generate a new document ID."""
    return uuid.uuid4().hex


class OrderStatus(str, Enum):
    """Fulfillment lifecycle of a single seller order."""

    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"
    REFUNDED = "Refunded"


class Role(str, Enum):
    BUYER = "Buyer"
    SELLER = "Seller"
    ADMIN = "Admin"


class Materialization(str, Enum):
    """Progress of splitting a paid checkout into seller orders."""

    NONE = "none"
    IN_PROGRESS = "in_progress"
    DONE = "done"


# Allowed fulfillment transitions; Delivered and Cancelled are terminal.
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Orders still moving through fulfillment.
ACTIVE_ORDER_STATUSES = (
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[current]


@dataclass
class Address:
    """Shipping address snapshot copied onto temp orders and orders."""

    name: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    pincode: str = ""
    phone: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "country": self.country,
            "pincode": self.pincode,
            "phone": self.phone,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Address":
        data = data or {}
        return cls(
            name=data.get("name", ""),
            street=data.get("street", ""),
            city=data.get("city", ""),
            state=data.get("state", ""),
            country=data.get("country", ""),
            pincode=data.get("pincode", ""),
            phone=data.get("phone", ""),
        )


@dataclass
class Product:
    """A catalog entry as seen by the order core."""

    id: str
    title: str
    price: float
    seller_id: str
    quantity_available: int
    is_active: bool = True
    created_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "title": self.title,
            "price": self.price,
            "seller_id": self.seller_id,
            "quantity_available": self.quantity_available,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Product":
        return cls(
            id=data["_id"],
            title=data.get("title", ""),
            price=data["price"],
            seller_id=data["seller_id"],
            quantity_available=data.get("quantity_available", 0),
            is_active=data.get("is_active", True),
            created_at=data.get("created_at", ""),
        )


@dataclass
class User:
    id: str
    full_name: str
    email: str
    role: Role
    is_verified: bool = False
    is_active: bool = True
    created_at: str = field(default_factory=_utc_now)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def to_dict(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "role": self.role.value,
            "is_verified": self.is_verified,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        return cls(
            id=data["_id"],
            full_name=data.get("full_name", ""),
            email=data.get("email", ""),
            role=Role(data.get("role", Role.BUYER.value)),
            is_verified=data.get("is_verified", False),
            is_active=data.get("is_active", True),
            created_at=data.get("created_at", ""),
        )


@dataclass
class LineItem:
    """One product line of a temp order or order."""

    product_id: str
    quantity: int
    price: float
    seller_id: str | None = None  # known on temp orders, implied on orders

    @property
    def total_price(self) -> float:
        return round(self.price * self.quantity, 2)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "price": self.price,
            "total_price": self.total_price,
        }
        if self.seller_id is not None:
            result["seller_id"] = self.seller_id
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineItem":
        return cls(
            product_id=data["product_id"],
            quantity=data["quantity"],
            price=data["price"],
            seller_id=data.get("seller_id"),
        )


@dataclass
class TemporaryOrder:
    """Pre-checkout snapshot handed to the payment gateway. Never mutated."""

    id: str
    buyer_id: str
    items: list[LineItem]
    address: Address
    total_price: float
    payment_transaction_id: str
    created_at: str
    expires_at: str

    def seller_groups(self) -> list[tuple[str, list[LineItem]]]:
        """Group items by seller, sellers in first-seen order, items in cart order."""
        groups: dict[str, list[LineItem]] = {}
        for item in self.items:
            groups.setdefault(item.seller_id or "", []).append(item)
        return list(groups.items())

    def to_dict(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "buyer_id": self.buyer_id,
            "items": [i.to_dict() for i in self.items],
            "address": self.address.to_dict(),
            "total_price": self.total_price,
            "payment_transaction_id": self.payment_transaction_id,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TemporaryOrder":
        return cls(
            id=data["_id"],
            buyer_id=data["buyer_id"],
            items=[LineItem.from_dict(i) for i in data.get("items", [])],
            address=Address.from_dict(data.get("address")),
            total_price=data["total_price"],
            payment_transaction_id=data["payment_transaction_id"],
            created_at=data.get("created_at", ""),
            expires_at=data.get("expires_at", ""),
        )


@dataclass
class PaymentTransaction:
    """Per-checkout payment record; the _id is the gateway order id."""

    id: str
    buyer_id: str
    temp_order_id: str
    amount: float
    currency: str
    payment_status: PaymentStatus = PaymentStatus.PENDING
    materialization: Materialization = Materialization.NONE
    gateway_payment_id: str | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "buyer_id": self.buyer_id,
            "temp_order_id": self.temp_order_id,
            "amount": self.amount,
            "currency": self.currency,
            "payment_status": self.payment_status.value,
            "materialization": self.materialization.value,
            "gateway_payment_id": self.gateway_payment_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentTransaction":
        return cls(
            id=data["_id"],
            buyer_id=data["buyer_id"],
            temp_order_id=data["temp_order_id"],
            amount=data["amount"],
            currency=data.get("currency", "INR"),
            payment_status=PaymentStatus(data.get("payment_status", "Pending")),
            materialization=Materialization(data.get("materialization", "none")),
            gateway_payment_id=data.get("gateway_payment_id"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class StatusChange:
    status: str
    note: str
    timestamp: str = field(default_factory=_utc_now)
    updated_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "note": self.note,
            "timestamp": self.timestamp,
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusChange":
        return cls(
            status=data["status"],
            note=data.get("note", ""),
            timestamp=data.get("timestamp", ""),
            updated_by=data.get("updated_by"),
        )


@dataclass
class Order:
    """A single seller's share of a checkout."""

    id: str
    buyer_id: str
    seller_id: str
    items: list[LineItem]
    total_price: float
    address: Address
    payment_transaction_id: str
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    gateway_order_id: str | None = None
    gateway_payment_id: str | None = None
    shipment_id: str | None = None
    awb_code: str | None = None
    courier_name: str | None = None
    stock_reserved: bool = False
    stock_restored: bool = False
    cancellation_reason: str | None = None
    status_history: list[StatusChange] = field(default_factory=list)
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "items": [i.to_dict() for i in self.items],
            "total_price": self.total_price,
            "address": self.address.to_dict(),
            "payment_transaction_id": self.payment_transaction_id,
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "gateway_order_id": self.gateway_order_id,
            "gateway_payment_id": self.gateway_payment_id,
            "shipment_id": self.shipment_id,
            "awb_code": self.awb_code,
            "courier_name": self.courier_name,
            "stock_reserved": self.stock_reserved,
            "stock_restored": self.stock_restored,
            "cancellation_reason": self.cancellation_reason,
            "status_history": [h.to_dict() for h in self.status_history],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        return cls(
            id=data["_id"],
            buyer_id=data["buyer_id"],
            seller_id=data["seller_id"],
            items=[LineItem.from_dict(i) for i in data.get("items", [])],
            total_price=data["total_price"],
            address=Address.from_dict(data.get("address")),
            payment_transaction_id=data["payment_transaction_id"],
            status=OrderStatus(data.get("status", "Pending")),
            payment_status=PaymentStatus(data.get("payment_status", "Pending")),
            gateway_order_id=data.get("gateway_order_id"),
            gateway_payment_id=data.get("gateway_payment_id"),
            shipment_id=data.get("shipment_id"),
            awb_code=data.get("awb_code"),
            courier_name=data.get("courier_name"),
            stock_reserved=data.get("stock_reserved", False),
            stock_restored=data.get("stock_restored", False),
            cancellation_reason=data.get("cancellation_reason"),
            status_history=[
                StatusChange.from_dict(h) for h in data.get("status_history", [])
            ],
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class Notification:
    id: str
    recipient_id: str
    kind: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    is_read: bool = False
    created_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "recipient_id": self.recipient_id,
            "kind": self.kind,
            "message": self.message,
            "data": self.data,
            "is_read": self.is_read,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Notification":
        return cls(
            id=data["_id"],
            recipient_id=data["recipient_id"],
            kind=data["kind"],
            message=data.get("message", ""),
            data=data.get("data", {}),
            is_read=data.get("is_read", False),
            created_at=data.get("created_at", ""),
        )
