"""Construction of the order core from settings."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from .catalog import Catalog, ProductCache, StockLedger
from .config import Settings
from .dashboard import DashboardService
from .document_store import DocumentStore, open_store
from .fraud_gate import FraudGate, VelocityStore
from .gateway import PaymentGateway, RazorpayGateway
from .notifications import StoreNotificationDispatcher
from .orders import OrderService
from .reconciliation import PaymentReconciler
from .staging import StagingArea
from .users import TokenAuthority, UserDirectory


@dataclass
class Services:
    settings: Settings
    store: DocumentStore
    catalog: Catalog
    ledger: StockLedger
    users: UserDirectory
    tokens: TokenAuthority
    notifier: StoreNotificationDispatcher
    fraud_gate: FraudGate
    staging: StagingArea
    gateway: PaymentGateway
    orders: OrderService
    reconciler: PaymentReconciler
    dashboard: DashboardService


def build_services(
    settings: Settings,
    store: DocumentStore | None = None,
    gateway: PaymentGateway | None = None,
    velocity_store: VelocityStore | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Services:
    """Wire every component; store and gateway default to what settings name."""
    store = store or open_store(settings.database_url)
    gateway = gateway or RazorpayGateway(
        settings.razorpay_key_id,
        settings.razorpay_key_secret,
        api_url=settings.razorpay_api_url,
        timeout_s=settings.gateway_timeout_s,
    )

    cache = ProductCache(ttl_seconds=settings.product_cache_ttl_seconds)
    notifier = StoreNotificationDispatcher(store)
    catalog = Catalog(store, cache)
    ledger = StockLedger(store, cache, notifier, settings.low_stock_threshold)
    fraud_gate = FraudGate(
        velocity_store,
        ip_limit=settings.fraud_ip_limit,
        ip_window=timedelta(seconds=settings.fraud_ip_window_seconds),
        user_limit=settings.fraud_user_limit,
        user_window=timedelta(seconds=settings.fraud_user_window_seconds),
        clock=clock,
    )
    staging = StagingArea(
        store, ttl=timedelta(seconds=settings.temp_order_ttl_seconds), clock=clock
    )
    orders = OrderService(
        store,
        catalog,
        ledger,
        staging,
        gateway,
        fraud_gate,
        notifier,
        currency=settings.currency,
        shipment_webhook_secret=settings.shipment_webhook_secret,
        clock=clock,
    )
    reconciler = PaymentReconciler(
        staging,
        orders,
        notifier,
        webhook_secret=settings.razorpay_webhook_secret,
        key_secret=settings.razorpay_key_secret,
        retry_window=timedelta(seconds=settings.payment_retry_window_seconds),
        clock=clock,
    )
    return Services(
        settings=settings,
        store=store,
        catalog=catalog,
        ledger=ledger,
        users=UserDirectory(store),
        tokens=TokenAuthority(
            settings.jwt_secret, settings.jwt_algorithm, settings.jwt_ttl_seconds
        ),
        notifier=notifier,
        fraud_gate=fraud_gate,
        staging=staging,
        gateway=gateway,
        orders=orders,
        reconciler=reconciler,
        dashboard=DashboardService(store),
    )
