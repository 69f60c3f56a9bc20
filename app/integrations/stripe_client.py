from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Protocol

import httpx

from app.core.config import settings


class GatewayError(Exception):
    """Processor rejected the request (4xx other than a card decline)."""


class GatewayDeclined(GatewayError):
    pass


class GatewayUnavailable(GatewayError):
    """Timeouts, transport errors, 429 and 5xx: safe to retry."""


class WebhookSignatureError(Exception):
    pass


@dataclass
class Authorization:
    reference: str
    redirect_url: str | None = None


class PaymentGateway(Protocol):
    async def authorize(
        self,
        *,
        amount: Decimal,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> Authorization: ...

    async def capture(self, reference: str, *, idempotency_key: str) -> None: ...

    async def refund(self, reference: str, *, idempotency_key: str) -> None: ...


def to_minor_units(amount: Decimal) -> int:
    # ₹100.50 -> 10050 paise
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeGateway:
    """
    Stripe REST client.

    Authorization is a Checkout Session whose PaymentIntent uses manual
    capture, so the funds stay authorized (escrowed) until the buyer
    confirms. Capture releases them to the platform; cancelling the intent
    voids the authorization and returns the money to the buyer.
    """

    def __init__(
        self,
        *,
        api_base: str | None = None,
        secret_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (api_base or settings.STRIPE_API_BASE).rstrip("/")
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.timeout = timeout or settings.PAYMENT_TIMEOUT_SECONDS
        self.transport = transport

    async def _post(self, path: str, data: dict[str, str], *, idempotency_key: str) -> dict:
        headers = {"Idempotency-Key": idempotency_key}

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                auth=(self.secret_key, ""),
                transport=self.transport,
            ) as client:
                r = await client.post(path, data=data, headers=headers)
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"Stripe request failed: {e!r}") from e

        if r.status_code == 429 or r.status_code >= 500:
            raise GatewayUnavailable(f"Stripe error {r.status_code}: {r.text}")

        try:
            body = r.json()
        except ValueError:
            raise GatewayError(f"Stripe returned non-JSON response ({r.status_code})")

        if r.status_code == 402:
            raise GatewayDeclined(_error_message(body))
        if r.status_code >= 400:
            raise GatewayError(_error_message(body))

        return body

    async def authorize(
        self,
        *,
        amount: Decimal,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> Authorization:
        coupon_id = metadata.get("coupon_id", "")
        # Stripe accepts session expiry between 30 minutes and 24 hours
        expires_in = max(settings.PENDING_TIMEOUT_MINUTES, 30)
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=expires_in)

        data = {
            "mode": "payment",
            "payment_method_types[0]": "card",
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]": settings.CURRENCY,
            "line_items[0][price_data][unit_amount]": str(to_minor_units(amount)),
            "line_items[0][price_data][product_data][name]": metadata.get("title") or "Coupon",
            "payment_intent_data[capture_method]": "manual",
            "success_url": f"{settings.FRONTEND_URL}/coupons/{coupon_id}?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{settings.FRONTEND_URL}/coupons/{coupon_id}?payment=cancelled",
            "expires_at": str(int(expires_at.timestamp())),
        }
        for key, value in metadata.items():
            data[f"metadata[{key}]"] = str(value)
            data[f"payment_intent_data[metadata][{key}]"] = str(value)

        session = await self._post("/v1/checkout/sessions", data, idempotency_key=idempotency_key)
        return Authorization(reference=session["id"], redirect_url=session.get("url"))

    async def capture(self, reference: str, *, idempotency_key: str) -> None:
        await self._post(f"/v1/payment_intents/{reference}/capture", {}, idempotency_key=idempotency_key)

    async def refund(self, reference: str, *, idempotency_key: str) -> None:
        # the intent was never captured: cancelling releases the hold on the card
        await self._post(
            f"/v1/payment_intents/{reference}/cancel",
            {"cancellation_reason": "requested_by_customer"},
            idempotency_key=idempotency_key,
        )


def _error_message(body: dict) -> str:
    err = body.get("error") or {}
    return err.get("message") or err.get("code") or "Stripe request rejected"


def verify_webhook_signature(
    payload: bytes,
    signature_header: str,
    secret: str,
    *,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> dict:
    """
    Check a `Stripe-Signature` header (t=<ts>,v1=<hex hmac>[,v1=...]) and
    return the decoded event.
    """
    timestamp: int | None = None
    signatures: list[str] = []

    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Malformed signature timestamp")
        elif key == "v1":
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Signature header missing t or v1")

    signed = f"{timestamp}.".encode("utf-8") + payload
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()

    if not any(hmac.compare_digest(expected, s) for s in signatures):
        raise WebhookSignatureError("No signature matches the payload")

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    try:
        return json.loads(payload)
    except ValueError as e:
        raise WebhookSignatureError("Payload is not JSON") from e
