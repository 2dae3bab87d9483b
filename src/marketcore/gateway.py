"""Payment gateway client (Razorpay REST API) and signature helpers."""

import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Protocol

import requests
import structlog

from .errors import GatewayError

logger = structlog.get_logger(__name__)


def compute_signature(secret: str, message: bytes) -> str:
    """Hex HMAC-SHA256 of message."""
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, message: bytes, signature: str | None) -> bool:
    """
    Constant-time check of a hex HMAC-SHA256 signature.

    An empty secret never verifies, so an unconfigured deployment rejects
    every signed request instead of accepting them.
    """
    if not secret or not signature:
        return False
    expected = compute_signature(secret, message).encode("ascii")
    # Headers arrive latin-1 decoded; compare bytes so any character is a mismatch.
    provided = signature.strip().encode("utf-8", "surrogateescape")
    return hmac.compare_digest(expected, provided)


def checkout_signature_message(gateway_order_id: str, gateway_payment_id: str) -> bytes:
    """Message the gateway signs when the buyer completes checkout."""
    return f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8")


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


@dataclass
class GatewayOrder:
    id: str
    amount: int  # minor units
    currency: str
    receipt: str
    status: str = "created"


class PaymentGateway(Protocol):
    key_id: str

    def create_order(self, amount: float, currency: str, receipt: str) -> GatewayOrder: ...


class RazorpayGateway:
    """Minimal client for the gateway call the order core makes."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        api_url: str = "https://api.razorpay.com/v1",
        timeout_s: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.key_id = key_id
        self._key_secret = key_secret
        self.api_url = api_url.rstrip("/")
        self.timeout_s = timeout_s
        self._session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.api_url}{path}"
        try:
            resp = self._session.request(
                method,
                url,
                auth=(self.key_id, self._key_secret),
                timeout=self.timeout_s,
                **kwargs,
            )
        except requests.Timeout as exc:
            logger.error("gateway_timeout", path=path)
            raise GatewayError("Payment gateway timed out") from exc
        except requests.RequestException as exc:
            logger.error("gateway_unreachable", path=path, error=str(exc))
            raise GatewayError("Payment gateway unreachable") from exc

        if resp.status_code >= 400:
            try:
                description = resp.json().get("error", {}).get("description", "")
            except ValueError:
                description = resp.text[:200]
            logger.error(
                "gateway_request_failed",
                path=path,
                status_code=resp.status_code,
                description=description,
            )
            raise GatewayError(
                f"Payment gateway rejected request ({resp.status_code})",
                {"gatewayStatus": resp.status_code, "description": description},
            )
        return resp.json()

    def create_order(self, amount: float, currency: str, receipt: str) -> GatewayOrder:
        """Create a gateway order (payment intent) for amount in major units."""
        data = self._request(
            "POST",
            "/orders",
            json={
                "amount": to_minor_units(amount),
                "currency": currency,
                "receipt": receipt,
                "payment_capture": 1,
            },
        )
        logger.info("gateway_order_created", gateway_order_id=data["id"], receipt=receipt)
        return GatewayOrder(
            id=data["id"],
            amount=data["amount"],
            currency=data.get("currency", currency),
            receipt=data.get("receipt", receipt),
            status=data.get("status", "created"),
        )
