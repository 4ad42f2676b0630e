# Overview: Payment gateway client (Paystack-compatible HTTP API) and webhook signature checks.

"""
Gateway contract

- initialize: POST /transaction/initialize with the amount in minor units
  (kobo for NGN). Returns the hosted checkout URL.
- verify:     GET /transaction/verify/{reference}. data.status == "success"
  is the only success signal; anything else is a non-success verification.
- webhooks:   body signed with HMAC-SHA512 of the raw request body using the
  webhook secret, sent in the x-paystack-signature header.

Any transport failure or non-2xx response raises PaymentError. Callers
decide whether that is fatal (it never is after an order is committed).
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field

import httpx
from flask import current_app

from ..errors import PaymentError


SIGNATURE_HEADER = "x-paystack-signature"
GATEWAY_NAME = "paystack"


@dataclass(frozen=True)
class GatewayInitResult:
    authorization_url: str | None
    reference: str
    access_code: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayVerification:
    success: bool
    status: str
    reference: str
    amount_minor: int | None = None
    external_id: str | None = None
    raw: dict = field(default_factory=dict)


class PaystackGateway:
    """Synchronous client; one instance per app, one httpx request per call."""

    name = GATEWAY_NAME

    def __init__(self, *, base_url: str, secret_key: str, timeout: float = 30.0, currency: str = "NGN"):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self.currency = currency

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/json",
            },
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            with self._client() as client:
                resp = client.request(method, path, **kwargs)
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPStatusError as exc:
            raise PaymentError(
                "Payment gateway rejected the request",
                details={"http_status": exc.response.status_code, "path": path},
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise PaymentError(
                "Payment gateway unreachable",
                details={"reason": exc.__class__.__name__, "path": path},
            ) from exc

        if not isinstance(body, dict) or not body.get("status"):
            raise PaymentError(
                body.get("message", "Payment gateway returned an error") if isinstance(body, dict)
                else "Payment gateway returned an error",
                details={"path": path},
            )
        return body

    def initialize(
        self,
        *,
        email: str,
        amount_minor: int,
        reference: str,
        callback_url: str | None = None,
        metadata: dict | None = None,
    ) -> GatewayInitResult:
        payload = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "currency": self.currency,
            "metadata": metadata or {},
        }
        if callback_url:
            payload["callback_url"] = callback_url

        body = self._request("POST", "/transaction/initialize", json=payload)
        data = body.get("data") or {}
        return GatewayInitResult(
            authorization_url=data.get("authorization_url"),
            reference=data.get("reference") or reference,
            access_code=data.get("access_code"),
            raw=body,
        )

    def verify(self, reference: str) -> GatewayVerification:
        body = self._request("GET", f"/transaction/verify/{reference}")
        data = body.get("data") or {}
        status = str(data.get("status") or "unknown")
        external_id = data.get("id")
        return GatewayVerification(
            success=status == "success",
            status=status,
            reference=data.get("reference") or reference,
            amount_minor=data.get("amount"),
            external_id=str(external_id) if external_id is not None else None,
            raw=body,
        )


def get_gateway():
    """
    Gateway for the current app.

    An object registered under app.extensions["payment_gateway"] wins; tests
    use this to substitute a fake.
    """
    gateway = current_app.extensions.get("payment_gateway")
    if gateway is not None:
        return gateway
    cfg = current_app.config
    return PaystackGateway(
        base_url=cfg["PAYMENT_GATEWAY_BASE_URL"],
        secret_key=cfg["PAYMENT_GATEWAY_SECRET_KEY"],
        timeout=float(cfg.get("PAYMENT_GATEWAY_TIMEOUT", 30)),
        currency=cfg.get("PAYMENT_CURRENCY", "NGN"),
    )


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_webhook_signature(raw_body: bytes, signature: str | None, secret: str | None) -> bool:
    """Constant-time comparison of the HMAC-SHA512 body signature."""
    if not signature or not secret:
        return False
    return hmac.compare_digest(compute_signature(raw_body, secret), signature)


def webhook_secret() -> str | None:
    cfg = current_app.config
    return cfg.get("PAYMENT_WEBHOOK_SECRET") or cfg.get("PAYMENT_GATEWAY_SECRET_KEY") or None
