"""Read-side projections for seller dashboards and admin analytics."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from .document_store import DocumentStore
from .models import (
    ACTIVE_ORDER_STATUSES,
    Order,
    OrderStatus,
    PaymentStatus,
    Product,
    Role,
    User,
    format_ts,
)

MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

RECENT_ORDER_LIMIT = 10
TOP_LIMIT = 5


def percentage_change(current: float, previous: float) -> float:
    """Growth from previous to current, in percent."""
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / previous * 100


@dataclass
class StatCard:
    title: str
    value: float
    change: float
    positive: bool

    @classmethod
    def compare(cls, title: str, current: float, previous: float) -> "StatCard":
        change = round(percentage_change(current, previous), 1)
        return cls(title=title, value=current, change=change, positive=change >= 0)


@dataclass
class RecentOrder:
    id: str
    product: str
    customer: str
    date: str
    status: OrderStatus
    payment_status: PaymentStatus
    amount: float


@dataclass
class TopProduct:
    id: str
    name: str
    sold: int
    revenue: float
    stock: int


@dataclass
class SellerDashboard:
    stats: list[StatCard]
    recent_orders: list[RecentOrder] = field(default_factory=list)
    top_products: list[TopProduct] = field(default_factory=list)


@dataclass
class MonthlyRevenue:
    name: str
    value: float


@dataclass
class TopSeller:
    id: str
    name: str
    sales: int
    revenue: float


@dataclass
class AdminAnalytics:
    year: int
    revenue_data: list[MonthlyRevenue]
    users_by_role: dict[str, int]
    top_sellers: list[TopSeller]
    current_month_revenue: float
    previous_month_revenue: float
    revenue_growth: float


def _start_of_day(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _month_start(year: int, month: int) -> datetime:
    return datetime(year, month, 1, tzinfo=timezone.utc)


def _next_month(year: int, month: int) -> tuple[int, int]:
    return (year + 1, 1) if month == 12 else (year, month + 1)


def _created_between(start: datetime, end: datetime) -> dict[str, Any]:
    return {"$gte": format_ts(start), "$lt": format_ts(end)}


# Orders that count as sales: paid and not cancelled.
SALE_QUERY: dict[str, Any] = {
    "payment_status": PaymentStatus.PAID.value,
    "status": {"$ne": OrderStatus.CANCELLED.value},
}


class DashboardService:
    def __init__(self, store: DocumentStore):
        self._orders = store.collection("orders")
        self._products = store.collection("products")
        self._users = store.collection("users")

    def _sales(self, query: dict[str, Any]) -> list[Order]:
        return [Order.from_dict(d) for d in self._orders.find({**SALE_QUERY, **query})]

    def _revenue(self, query: dict[str, Any]) -> float:
        return round(sum(o.total_price for o in self._sales(query)), 2)

    def seller_dashboard(self, seller_id: str, now: datetime | None = None) -> SellerDashboard:
        """
        Today's figures against yesterday's for one seller.

        Active orders and product counts compare the current total with the
        total as it stood before today began.
        """
        today = _start_of_day(now or datetime.now(timezone.utc))
        tomorrow = today + timedelta(days=1)
        yesterday = today - timedelta(days=1)
        before_today = {"$lt": format_ts(today)}
        seller = {"seller_id": seller_id}

        today_sales = self._revenue({**seller, "created_at": _created_between(today, tomorrow)})
        yesterday_sales = self._revenue(
            {**seller, "created_at": _created_between(yesterday, today)}
        )

        active = {
            **seller,
            "payment_status": PaymentStatus.PAID.value,
            "status": {"$in": [s.value for s in ACTIVE_ORDER_STATUSES]},
        }
        active_now = self._orders.count(active)
        active_before = self._orders.count({**active, "created_at": before_today})

        products = {"seller_id": seller_id, "is_active": True}
        products_now = self._products.count(products)
        products_before = self._products.count({**products, "created_at": before_today})

        all_time = self._sales(seller)

        stats = [
            StatCard.compare("Today's Sales", today_sales, yesterday_sales),
            StatCard.compare("Active Orders", active_now, active_before),
            StatCard.compare("Total Products", products_now, products_before),
            StatCard(
                title="Total Sales",
                value=round(sum(o.total_price for o in all_time), 2),
                change=0.0,
                positive=True,
            ),
        ]
        return SellerDashboard(
            stats=stats,
            recent_orders=self._recent_orders(seller_id),
            top_products=self._top_products(all_time),
        )

    def _recent_orders(self, seller_id: str) -> list[RecentOrder]:
        docs = self._orders.find(
            {"seller_id": seller_id},
            sort=[("created_at", -1), ("_id", 1)],
            limit=RECENT_ORDER_LIMIT,
        )
        orders = [Order.from_dict(d) for d in docs]

        titles = self._titles({o.items[0].product_id for o in orders if o.items})
        buyer_ids = list({o.buyer_id for o in orders})
        buyers = {
            d["_id"]: d.get("full_name", "")
            for d in self._users.find({"_id": {"$in": buyer_ids}})
        }
        return [
            RecentOrder(
                id=o.id,
                product=titles.get(o.items[0].product_id, "N/A") if o.items else "N/A",
                customer=buyers.get(o.buyer_id) or "Anonymous",
                date=o.created_at,
                status=o.status,
                payment_status=o.payment_status,
                amount=o.total_price,
            )
            for o in orders
        ]

    def _titles(self, product_ids: set[str]) -> dict[str, str]:
        docs = self._products.find({"_id": {"$in": list(product_ids)}})
        return {d["_id"]: d.get("title", "") for d in docs}

    def _top_products(self, sales: list[Order]) -> list[TopProduct]:
        sold: dict[str, int] = {}
        revenue: dict[str, float] = {}
        for order in sales:
            for item in order.items:
                sold[item.product_id] = sold.get(item.product_id, 0) + item.quantity
                revenue[item.product_id] = revenue.get(item.product_id, 0.0) + item.total_price

        ranked = sorted(revenue, key=lambda pid: (-revenue[pid], -sold[pid], pid))[:TOP_LIMIT]
        products = {
            d["_id"]: Product.from_dict(d)
            for d in self._products.find({"_id": {"$in": ranked}})
        }
        result = []
        for pid in ranked:
            product = products.get(pid)
            result.append(
                TopProduct(
                    id=pid,
                    name=product.title if product else "N/A",
                    sold=sold[pid],
                    revenue=round(revenue[pid], 2),
                    stock=product.quantity_available if product else 0,
                )
            )
        return result

    def admin_analytics(self, year: int | None = None, now: datetime | None = None) -> AdminAnalytics:
        """Platform-wide revenue by month, users by role and top sellers."""
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        year = year or now.year

        by_month: dict[int, float] = {}
        year_range = _created_between(_month_start(year, 1), _month_start(year + 1, 1))
        for order in self._sales({"created_at": year_range}):
            month = int(order.created_at[5:7])
            by_month[month] = by_month.get(month, 0.0) + order.total_price
        revenue_data = [
            MonthlyRevenue(name=name, value=round(by_month.get(index, 0.0), 2))
            for index, name in enumerate(MONTH_NAMES, start=1)
        ]

        users_by_role = {role.value: 0 for role in Role}
        for doc in self._users.find({}):
            role = doc.get("role", Role.BUYER.value)
            users_by_role[role] = users_by_role.get(role, 0) + 1

        this_month = _month_start(now.year, now.month)
        prev_year, prev_month = (now.year - 1, 12) if now.month == 1 else (now.year, now.month - 1)
        last_month = _month_start(prev_year, prev_month)
        current = self._revenue(
            {"created_at": _created_between(this_month, _month_start(*_next_month(now.year, now.month)))}
        )
        previous = self._revenue({"created_at": _created_between(last_month, this_month)})

        return AdminAnalytics(
            year=year,
            revenue_data=revenue_data,
            users_by_role=users_by_role,
            top_sellers=self._top_sellers(),
            current_month_revenue=current,
            previous_month_revenue=previous,
            revenue_growth=round(percentage_change(current, previous), 1),
        )

    def _top_sellers(self) -> list[TopSeller]:
        sales: dict[str, int] = {}
        revenue: dict[str, float] = {}
        for order in self._sales({}):
            sales[order.seller_id] = sales.get(order.seller_id, 0) + 1
            revenue[order.seller_id] = revenue.get(order.seller_id, 0.0) + order.total_price

        ranked = sorted(revenue, key=lambda sid: (-revenue[sid], sid))[:TOP_LIMIT]
        names = {
            d["_id"]: User.from_dict(d).full_name
            for d in self._users.find({"_id": {"$in": ranked}})
        }
        return [
            TopSeller(
                id=sid,
                name=names.get(sid) or "Unknown seller",
                sales=sales[sid],
                revenue=round(revenue[sid], 2),
            )
            for sid in ranked
        ]
