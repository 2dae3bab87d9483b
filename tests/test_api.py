"""Tests for the FastAPI API."""

import pytest
from fastapi.testclient import TestClient

from marketcore.api import ERROR_STATUS_CODES, app, get_services
from marketcore.config import get_settings
from marketcore.errors import MarketcoreError


@pytest.fixture
def api_client(services):
    """Create test client wired to the seeded test services."""
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth(services, users):
    """Authorization headers for a user in the users fixture."""

    def _auth(key):
        return {"Authorization": f"Bearer {services.tokens.issue(users[key].id)}"}

    return _auth


ADDRESS = {
    "name": "Asha",
    "street": "12 MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "country": "IN",
    "pincode": "560001",
    "phone": "9999999999",
}


def cart_body(*lines):
    return {
        "cartItems": [{"productId": pid, "quantity": qty} for pid, qty in lines],
        "address": ADDRESS,
    }


@pytest.fixture
def paid_checkout(api_client, auth, signed_webhook):
    """Check out prod-1 and prod-2 through the API and capture the payment."""
    response = api_client.post(
        "/orders/cart-checkout",
        json=cart_body(("prod-1", 2), ("prod-2", 1)),
        headers=auth("buyer"),
    )
    txn = response.json()["paymentTransactionId"]
    body, signature = signed_webhook("payment.captured", txn)
    api_client.post(
        "/orders/razorpay-webhook",
        content=body,
        headers={"x-razorpay-signature": signature},
    )
    return txn


class TestHealthCheck:
    def test_health_ok(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_request_id_echoed(self, api_client):
        response = api_client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated(self, api_client):
        response = api_client.get("/health")
        assert response.headers["X-Request-ID"]


class TestErrorResponses:
    def test_missing_token(self, api_client):
        response = api_client.get("/orders")
        assert response.status_code == 401
        assert response.json() == {
            "message": "Missing bearer token",
            "statusCode": 401,
            "errorType": "AuthenticationError",
            "kind": "authentication",
            "detail": {},
        }

    def test_invalid_token(self, api_client):
        response = api_client.get("/orders", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid token"

    def test_request_validation(self, api_client, auth):
        response = api_client.post(
            "/orders/cart-checkout", json={"address": ADDRESS}, headers=auth("buyer")
        )
        assert response.status_code == 400
        data = response.json()
        assert data["errorType"] == "ValidationError"
        assert data["detail"]["errors"][0]["field"] == "cartItems"

    def test_unexpected_error_hidden_in_production(self, services, auth, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("database password is hunter2")

        monkeypatch.setattr(services.orders, "list_orders", explode)
        monkeypatch.setenv("APP_ENV", "production")
        get_settings.cache_clear()
        app.dependency_overrides[get_services] = lambda: services
        try:
            client = TestClient(app, raise_server_exceptions=False)
            response = client.get("/orders", headers=auth("buyer"))
        finally:
            app.dependency_overrides.clear()
            get_settings.cache_clear()

        assert response.status_code == 500
        assert response.json()["message"] == "Something went wrong"
        assert response.json()["errorType"] == "InternalError"


class TestCheckout:
    def test_cart_checkout(self, api_client, auth):
        response = api_client.post(
            "/orders/cart-checkout",
            json=cart_body(("prod-1", 2), ("prod-2", 1)),
            headers=auth("buyer"),
        )
        assert response.status_code == 201
        data = response.json()
        assert data["amount"] == 450.0
        assert data["currency"] == "INR"
        assert data["keyId"] == "rzp_test_key"
        assert data["sellerCount"] == 2
        assert data["paymentTransactionId"] == "order_0001"
        assert data["tempOrderId"]

    def test_buy_now(self, api_client, auth):
        response = api_client.post(
            "/orders/buy-now",
            json={"productId": "prod-2", "quantity": 2, "address": ADDRESS},
            headers=auth("buyer"),
        )
        assert response.status_code == 201
        assert response.json()["amount"] == 500.0

    def test_insufficient_stock(self, api_client, auth):
        response = api_client.post(
            "/orders/cart-checkout",
            json=cart_body(("prod-2", 9)),
            headers=auth("buyer"),
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Insufficient stock for Teapot. Available: 5, Requested: 9"

    def test_unverified_buyer(self, api_client, auth):
        response = api_client.post(
            "/orders/cart-checkout",
            json=cart_body(("prod-1", 1)),
            headers=auth("unverified"),
        )
        assert response.status_code == 403

    def test_velocity_limit(self, api_client, auth):
        for _ in range(5):
            response = api_client.post(
                "/orders/cart-checkout", json=cart_body(("prod-3", 1)), headers=auth("buyer")
            )
            assert response.status_code == 201

        response = api_client.post(
            "/orders/cart-checkout", json=cart_body(("prod-3", 1)), headers=auth("buyer")
        )
        assert response.status_code == 429
        assert response.json()["errorType"] == "RateExceededError"

    def test_gateway_down(self, api_client, auth, gateway):
        gateway.fail = True
        response = api_client.post(
            "/orders/cart-checkout", json=cart_body(("prod-1", 1)), headers=auth("buyer")
        )
        assert response.status_code == 502


class TestPaymentWebhook:
    def test_captured_creates_orders(self, api_client, auth, paid_checkout):
        response = api_client.get(f"/orders/payment/{paid_checkout}", headers=auth("buyer"))
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert {o["paymentStatus"] for o in data["orders"]} == {"Paid"}
        assert {o["status"] for o in data["orders"]} == {"Processing"}

    def test_webhook_response(self, api_client, auth, signed_webhook):
        response = api_client.post(
            "/orders/cart-checkout", json=cart_body(("prod-1", 1)), headers=auth("buyer")
        )
        body, signature = signed_webhook("payment.captured", response.json()["paymentTransactionId"])

        first = api_client.post(
            "/orders/webhook/payment", content=body, headers={"x-razorpay-signature": signature}
        )
        second = api_client.post(
            "/orders/webhook/payment", content=body, headers={"x-razorpay-signature": signature}
        )

        assert first.json() == {"status": "ok", "event": "payment.captured", "result": "applied"}
        assert second.json()["result"] == "already_processed"

    def test_bad_signature_rejected(self, api_client, signed_webhook):
        body, _ = signed_webhook("payment.captured", "order_0001")
        response = api_client.post(
            "/orders/razorpay-webhook", content=body, headers={"x-razorpay-signature": "bad"}
        )
        assert response.status_code == 403
        assert response.json()["message"] == "Invalid webhook signature"

    def test_latin1_signature_header_rejected(self, api_client, signed_webhook):
        body, _ = signed_webhook("payment.captured", "order_0001")
        response = api_client.post(
            "/orders/razorpay-webhook",
            content=body,
            headers={"x-razorpay-signature": "é".encode("latin-1") * 64},
        )
        assert response.status_code == 403
        assert response.json()["kind"] == "signature"

    def test_other_buyer_cannot_see_payment(self, api_client, auth, paid_checkout):
        response = api_client.get(f"/orders/payment/{paid_checkout}", headers=auth("other_buyer"))
        assert response.status_code == 404


class TestPaymentEndpoints:
    def test_cancel_payment(self, api_client, auth, stock_of):
        checkout = api_client.post(
            "/orders/cart-checkout", json=cart_body(("prod-1", 2)), headers=auth("buyer")
        ).json()

        response = api_client.post(
            "/orders/cancel-payment",
            json={"paymentTransactionId": checkout["paymentTransactionId"]},
            headers=auth("buyer"),
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Payment cancelled"
        assert stock_of("prod-1") == 10

    def test_cancel_paid_conflicts(self, api_client, auth, paid_checkout):
        response = api_client.post(
            "/orders/cancel-payment",
            json={"paymentTransactionId": paid_checkout},
            headers=auth("buyer"),
        )
        assert response.status_code == 409

    def test_verify_payment_bad_signature(self, api_client, auth):
        checkout = api_client.post(
            "/orders/cart-checkout", json=cart_body(("prod-1", 1)), headers=auth("buyer")
        ).json()

        response = api_client.post(
            "/orders/verify-payment",
            json={
                "orderId": checkout["paymentTransactionId"],
                "paymentId": "pay_1",
                "signature": "forged",
            },
            headers=auth("buyer"),
        )
        assert response.status_code == 403

    def test_retry_eligibility(self, api_client, auth):
        checkout = api_client.post(
            "/orders/cart-checkout", json=cart_body(("prod-1", 1)), headers=auth("buyer")
        ).json()

        response = api_client.get(
            f"/orders/payment/{checkout['paymentTransactionId']}/retry", headers=auth("buyer")
        )

        assert response.status_code == 200
        data = response.json()
        assert data["canRetry"] is True
        assert data["minutesLeft"] == 30


class TestOrders:
    def test_list_orders_for_buyer(self, api_client, auth, paid_checkout):
        response = api_client.get("/orders?page=1&limit=1", headers=auth("buyer"))
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["pages"] == 2
        assert len(data["orders"]) == 1

    def test_list_orders_limit_bounds(self, api_client, auth):
        response = api_client.get("/orders?limit=500", headers=auth("buyer"))
        assert response.status_code == 400

    def test_seller_sees_own_orders(self, api_client, auth, paid_checkout):
        data = api_client.get("/orders", headers=auth("seller_a")).json()
        assert data["total"] == 1
        assert data["orders"][0]["sellerId"] == "seller-a"

    def test_other_buyer_gets_404(self, api_client, auth, services, paid_checkout):
        order = services.orders.find_by_transaction(paid_checkout)[0]
        response = api_client.get(f"/orders/{order.id}", headers=auth("other_buyer"))
        assert response.status_code == 404

    def test_seller_ships_order(self, api_client, auth, services, paid_checkout):
        order = next(
            o for o in services.orders.find_by_transaction(paid_checkout) if o.seller_id == "seller-a"
        )
        response = api_client.patch(
            f"/orders/{order.id}/status",
            json={"status": "Shipped", "awbCode": "AWB123", "courierName": "BlueDart"},
            headers=auth("seller_a"),
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "Shipped"
        assert data["awbCode"] == "AWB123"
        assert data["statusHistory"][-1]["status"] == "Shipped"

    def test_invalid_transition_conflicts(self, api_client, auth, services, paid_checkout):
        order = next(
            o for o in services.orders.find_by_transaction(paid_checkout) if o.seller_id == "seller-a"
        )
        response = api_client.patch(
            f"/orders/{order.id}/status", json={"status": "Delivered"}, headers=auth("seller_a")
        )
        assert response.status_code == 409

    def test_buyer_cannot_update_status(self, api_client, auth, services, paid_checkout):
        order = services.orders.find_by_transaction(paid_checkout)[0]
        response = api_client.patch(
            f"/orders/{order.id}/status", json={"status": "Shipped"}, headers=auth("buyer")
        )
        assert response.status_code == 403


class TestDashboards:
    def test_seller_dashboard(self, api_client, auth, paid_checkout):
        response = api_client.get("/dashboard/seller", headers=auth("seller_a"))
        assert response.status_code == 200
        data = response.json()
        assert [s["title"] for s in data["stats"]] == [
            "Today's Sales",
            "Active Orders",
            "Total Products",
            "Total Sales",
        ]
        assert data["topProducts"][0]["id"] == "prod-1"

    def test_seller_dashboard_requires_seller(self, api_client, auth):
        response = api_client.get("/dashboard/seller", headers=auth("buyer"))
        assert response.status_code == 403

    def test_admin_analytics(self, api_client, auth):
        response = api_client.get("/analytics/admin?year=2026", headers=auth("admin"))
        assert response.status_code == 200
        data = response.json()
        assert data["year"] == 2026
        assert len(data["revenueData"]) == 12
        assert data["usersByRole"]["Seller"] == 2

    def test_admin_analytics_requires_admin(self, api_client, auth):
        response = api_client.get("/analytics/admin", headers=auth("seller_a"))
        assert response.status_code == 403


def all_subclasses(cls):
    for sub in cls.__subclasses__():
        yield sub
        yield from all_subclasses(sub)


def test_every_error_has_a_status_code():
    assert set(all_subclasses(MarketcoreError)) <= set(ERROR_STATUS_CODES)
