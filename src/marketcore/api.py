"""FastAPI REST API for the marketplace order core."""

import uuid
from functools import lru_cache
from typing import Any, Optional

import structlog
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from . import __version__
from .config import get_settings
from .dashboard import AdminAnalytics, SellerDashboard
from .errors import (
    AuthenticationError,
    ConflictError,
    DatabaseError,
    DuplicateDocumentError,
    GatewayError,
    InsufficientStockError,
    MarketcoreError,
    NotFoundError,
    PermissionDeniedError,
    RateExceededError,
    SignatureError,
    StockConflictError,
    ValidationError,
)
from .models import Address, OrderStatus, PaymentStatus, Role, User
from .orders import CartLine, CheckoutHandle
from .services import Services, build_services
from .users import authenticate, require_role

logger = structlog.get_logger(__name__)


# --- Pydantic Schemas ---


class CamelModel(BaseModel):
    """Wire schemas use camelCase; Python code uses snake_case."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class AddressSchema(CamelModel):
    name: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    pincode: str = ""
    phone: str = ""

    def to_address(self) -> Address:
        return Address(**self.model_dump())


class CartItemSchema(CamelModel):
    product_id: str
    quantity: int
    price: Optional[float] = None


class CartCheckoutRequest(CamelModel):
    cart_items: list[CartItemSchema]
    address: AddressSchema


class BuyNowRequest(CamelModel):
    product_id: str
    quantity: int = 1
    address: AddressSchema


class CheckoutResponse(CamelModel):
    temp_order_id: str
    payment_transaction_id: str
    amount: float
    currency: str
    key_id: str
    seller_count: int


class VerifyPaymentRequest(CamelModel):
    order_id: str
    payment_id: str
    signature: str


class CancelPaymentRequest(CamelModel):
    payment_transaction_id: str


class LineItemSchema(CamelModel):
    product_id: str
    quantity: int
    price: float
    total_price: float


class StatusChangeSchema(CamelModel):
    status: str
    note: str
    timestamp: str
    updated_by: Optional[str] = None


class OrderSchema(CamelModel):
    id: str
    buyer_id: str
    seller_id: str
    items: list[LineItemSchema]
    total_price: float
    address: AddressSchema
    payment_transaction_id: str
    status: OrderStatus
    payment_status: PaymentStatus
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    shipment_id: Optional[str] = None
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None
    cancellation_reason: Optional[str] = None
    status_history: list[StatusChangeSchema] = []
    created_at: str
    updated_at: str


class OrderListResponse(CamelModel):
    orders: list[OrderSchema]
    total: int
    page: int
    limit: int
    pages: int


class SiblingOrdersResponse(CamelModel):
    payment_transaction_id: str
    orders: list[OrderSchema]
    count: int
    message: Optional[str] = None


class StatusUpdateRequest(CamelModel):
    status: OrderStatus
    note: Optional[str] = None
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None
    shipment_id: Optional[str] = None


class WebhookResponse(CamelModel):
    status: str = "ok"
    event: Optional[str] = None
    result: str


class RetryEligibilitySchema(CamelModel):
    payment_transaction_id: str
    can_retry: bool
    amount: float
    currency: str
    key_id: str
    minutes_left: int
    reason: Optional[str] = None


class StatCardSchema(CamelModel):
    title: str
    value: float
    change: float
    positive: bool


class RecentOrderSchema(CamelModel):
    id: str
    product: str
    customer: str
    date: str
    status: OrderStatus
    payment_status: PaymentStatus
    amount: float


class TopProductSchema(CamelModel):
    id: str
    name: str
    sold: int
    revenue: float
    stock: int


class SellerDashboardSchema(CamelModel):
    stats: list[StatCardSchema]
    recent_orders: list[RecentOrderSchema]
    top_products: list[TopProductSchema]


class MonthlyRevenueSchema(CamelModel):
    name: str
    value: float


class TopSellerSchema(CamelModel):
    id: str
    name: str
    sales: int
    revenue: float


class AdminAnalyticsSchema(CamelModel):
    year: int
    revenue_data: list[MonthlyRevenueSchema]
    users_by_role: dict[str, int]
    top_sellers: list[TopSellerSchema]
    current_month_revenue: float
    previous_month_revenue: float
    revenue_growth: float


class ErrorResponse(CamelModel):
    message: str
    status_code: int
    error_type: str
    kind: str
    detail: dict[str, Any] = Field(default_factory=dict)


# --- Dependencies ---


@lru_cache
def get_services() -> Services:
    """Get the process-wide service graph."""
    return build_services(get_settings())


def current_user(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> User:
    user = authenticate(services.users, services.tokens, authorization)
    request.state.user_id = user.id
    return user


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def checkout_to_schema(handle: CheckoutHandle) -> CheckoutResponse:
    return CheckoutResponse.model_validate(handle)


def orders_response(
    transaction_id: str, orders: list, message: Optional[str] = None
) -> SiblingOrdersResponse:
    return SiblingOrdersResponse(
        payment_transaction_id=transaction_id,
        orders=[OrderSchema.model_validate(o) for o in orders],
        count=len(orders),
        message=message,
    )


# --- FastAPI App ---


app = FastAPI(
    title="marketcore API",
    description="Order lifecycle and payment reconciliation for a multi-seller marketplace",
    version=__version__,
)


@app.middleware("http")
async def bind_request_id(request: Request, call_next):
    """Tag every log line of a request with its id and echo the id back."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id, method=request.method, path=request.url.path
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    logger.info("request_completed", status_code=response.status_code)
    return response


# --- Global Exception Handlers ---


# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict[type, int] = {
    ValidationError: 400,
    InsufficientStockError: 400,
    StockConflictError: 409,
    RateExceededError: 429,
    SignatureError: 403,
    ConflictError: 409,
    NotFoundError: 404,
    AuthenticationError: 401,
    PermissionDeniedError: 403,
    GatewayError: 502,
    DatabaseError: 500,
    DuplicateDocumentError: 500,
}


def error_body(
    status_code: int, error_type: str, kind: str, message: str, detail: dict[str, Any]
) -> dict:
    return ErrorResponse(
        message=message,
        status_code=status_code,
        error_type=error_type,
        kind=kind,
        detail=detail,
    ).model_dump(by_alias=True)


@app.exception_handler(MarketcoreError)
async def marketcore_error_handler(request: Request, exc: MarketcoreError) -> JSONResponse:
    """Map MarketcoreError subclasses to appropriate HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    if status_code >= 500:
        logger.error("request_failed", error_type=type(exc).__name__, error=exc.message)
    else:
        logger.info("request_rejected", error_type=type(exc).__name__, status_code=status_code)
    return JSONResponse(
        status_code=status_code,
        content=error_body(status_code, type(exc).__name__, exc.kind, exc.message, exc.detail),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(p) for p in err["loc"][1:]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_body(
            400, ValidationError.__name__, ValidationError.kind, "Invalid request", {"errors": errors}
        ),
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        user_id=getattr(request.state, "user_id", None),
        error_type=type(exc).__name__,
    )
    if get_settings().is_production:
        message, detail = "Something went wrong", {}
    else:
        message, detail = str(exc), {"exception": type(exc).__name__}
    return JSONResponse(
        status_code=500, content=error_body(500, "InternalError", MarketcoreError.kind, message, detail)
    )


# --- Endpoints ---


@app.get("/health")
def health_check(services: Services = Depends(get_services)):
    """Report whether the document store is reachable."""
    try:
        services.store.ping()
    except DatabaseError as e:
        return JSONResponse(status_code=503, content={"status": "error", "detail": e.message})
    return {"status": "ok", "version": __version__}


# --- Checkout Endpoints ---


@app.post("/orders/cart-checkout", response_model=CheckoutResponse, status_code=201)
def cart_checkout(
    body: CartCheckoutRequest,
    request: Request,
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Stage a multi-seller cart and open a gateway payment for it."""
    lines = [
        CartLine(product_id=i.product_id, quantity=i.quantity, price=i.price)
        for i in body.cart_items
    ]
    handle = services.orders.create_from_cart(
        user, lines, body.address.to_address(), client_ip(request)
    )
    return checkout_to_schema(handle)


@app.post("/orders/buy-now", response_model=CheckoutResponse, status_code=201)
def buy_now(
    body: BuyNowRequest,
    request: Request,
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    handle = services.orders.create_from_buy_now(
        user, body.product_id, body.quantity, body.address.to_address(), client_ip(request)
    )
    return checkout_to_schema(handle)


# --- Payment Endpoints ---


async def _payment_webhook(request: Request, signature: Optional[str], services: Services):
    raw_body = await request.body()
    outcome = await run_in_threadpool(services.reconciler.handle_webhook, raw_body, signature)
    return WebhookResponse(event=outcome.event, result=outcome.result)


@app.post("/orders/razorpay-webhook", response_model=WebhookResponse)
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
):
    """Gateway webhook; the signature covers the raw request body."""
    return await _payment_webhook(request, x_razorpay_signature, services)


@app.post("/orders/webhook/payment", response_model=WebhookResponse)
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
):
    return await _payment_webhook(request, x_razorpay_signature, services)


@app.post("/orders/webhook/shipment", response_model=WebhookResponse)
async def shipment_webhook(
    request: Request,
    x_shipment_signature: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
):
    raw_body = await request.body()
    result = await run_in_threadpool(
        services.orders.handle_shipment_webhook, raw_body, x_shipment_signature
    )
    return WebhookResponse(result=result)


@app.post("/orders/verify-payment", response_model=SiblingOrdersResponse)
def verify_payment(
    body: VerifyPaymentRequest,
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Client-side confirmation after the gateway checkout completes."""
    orders = services.reconciler.confirm_checkout(
        body.order_id, body.payment_id, body.signature, user
    )
    return orders_response(body.order_id, orders, "Payment verified")


@app.post("/orders/cancel-payment", response_model=SiblingOrdersResponse)
def cancel_payment(
    body: CancelPaymentRequest,
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    orders = services.reconciler.handle_payment_cancellation(body.payment_transaction_id, user)
    return orders_response(body.payment_transaction_id, orders, "Payment cancelled")


@app.get("/orders/payment/{payment_transaction_id}", response_model=SiblingOrdersResponse)
def get_orders_by_payment(
    payment_transaction_id: str,
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    orders = services.orders.list_by_transaction(payment_transaction_id, user)
    return orders_response(payment_transaction_id, orders)


@app.get("/orders/payment/{payment_transaction_id}/retry", response_model=RetryEligibilitySchema)
def get_retry_eligibility(
    payment_transaction_id: str,
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    eligibility = services.reconciler.retry_eligibility(payment_transaction_id, user)
    return RetryEligibilitySchema.model_validate(eligibility)


# --- Order Endpoints ---


@app.get("/orders", response_model=OrderListResponse)
def list_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    orders, total = services.orders.list_orders(user, page=page, limit=limit)
    return OrderListResponse(
        orders=[OrderSchema.model_validate(o) for o in orders],
        total=total,
        page=page,
        limit=limit,
        pages=(total + limit - 1) // limit,
    )


@app.get("/orders/{order_id}", response_model=OrderSchema)
def get_order(
    order_id: str,
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    return OrderSchema.model_validate(services.orders.get_order_for(order_id, user))


@app.patch("/orders/{order_id}/status", response_model=OrderSchema)
def update_order_status(
    order_id: str,
    body: StatusUpdateRequest,
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    shipment = {
        "awb_code": body.awb_code,
        "courier_name": body.courier_name,
        "shipment_id": body.shipment_id,
    }
    order = services.orders.transition(order_id, body.status, user, body.note, shipment)
    return OrderSchema.model_validate(order)


# --- Dashboard Endpoints ---


@app.get("/dashboard/seller", response_model=SellerDashboardSchema)
def seller_dashboard(
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    require_role(user, Role.SELLER)
    dashboard: SellerDashboard = services.dashboard.seller_dashboard(user.id)
    return SellerDashboardSchema.model_validate(dashboard)


@app.get("/analytics/admin", response_model=AdminAnalyticsSchema)
def admin_analytics(
    year: Optional[int] = Query(default=None, ge=2000, le=2100),
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    require_role(user, Role.ADMIN)
    analytics: AdminAnalytics = services.dashboard.admin_analytics(year)
    return AdminAnalyticsSchema.model_validate(analytics)
