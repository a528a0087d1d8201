"""Stripe-style adapter over the REST API (form-encoded, HTTP Basic with the key as user)."""

from datetime import timedelta
from decimal import Decimal

import requests
from requests import RequestException

from bloom.domain.errors import PaymentDeclined, PaymentSystemUnavailable
from bloom.domain.money import to_cents
from bloom.domain.types import (
    CardFields,
    ChargeResult,
    PaymentSource,
    PaymentToken,
    RefundResult,
    StoredPaymentMethod,
)
from bloom.services.payments.port import PaymentGateway
from bloom.utils.clock import utcnow
from bloom.utils.retry import http_retry
from bloom.utils.settings import (
    HTTP_TIMEOUT_SECONDS,
    PAYMENT_TOKEN_TTL_SECONDS,
    STRIPE_API_URL,
    STRIPE_PUBLISHABLE_KEY,
    STRIPE_SECRET_KEY,
)
from bloom.utils.logging import get_logger

logger = get_logger(__name__)


class StripeGateway(PaymentGateway):
    processor = "stripe"

    def __init__(
        self,
        publishable_key: str | None = None,
        secret_key: str | None = None,
        base_url: str | None = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.publishable_key = publishable_key or STRIPE_PUBLISHABLE_KEY
        self.secret_key = secret_key or STRIPE_SECRET_KEY
        self.base_url = (base_url or STRIPE_API_URL).rstrip("/")
        self.timeout = timeout

    @http_retry()
    def _send(self, path: str, data: dict, key: str, idempotency_key: str | None = None) -> requests.Response:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        return requests.post(
            f"{self.base_url}/{path}",
            data=data,
            auth=(key, ""),
            headers=headers,
            timeout=self.timeout,
        )

    def _post(self, path: str, data: dict, key: str, idempotency_key: str | None = None) -> tuple[int, dict]:
        try:
            resp = self._send(path, data, key, idempotency_key)
        except RequestException as e:
            logger.warning(f"Stripe {path} transport error: {type(e).__name__}")
            raise PaymentSystemUnavailable()

        if resp.status_code >= 500 or resp.status_code == 429:
            logger.warning(f"Stripe {path} HTTP {resp.status_code}")
            raise PaymentSystemUnavailable()

        try:
            body = resp.json()
        except ValueError:
            logger.warning(f"Stripe {path} returned non-JSON")
            raise PaymentSystemUnavailable()
        return resp.status_code, body

    def client_key(self) -> dict:
        return {"key": self.publishable_key}

    def _request_token(self, card: CardFields) -> PaymentToken:
        status, body = self._post(
            "tokens",
            {
                "card[number]": card.number,
                "card[exp_month]": card.exp_month,
                "card[exp_year]": card.exp_year,
                "card[cvc]": card.cvv,
            },
            key=self.publishable_key,
        )
        if status != 200 or "id" not in body:
            error = body.get("error", {}) if isinstance(body, dict) else {}
            logger.info(f"Stripe tokenization refused: {error.get('code')}")
            if status in (401, 403):
                raise PaymentSystemUnavailable()
            raise PaymentDeclined(error.get("code") or "card_error")

        return PaymentToken(
            value=body["id"],
            processor=self.processor,
            expires_at=utcnow() + timedelta(seconds=PAYMENT_TOKEN_TTL_SECONDS),
        )

    def charge(self, source: PaymentSource, amount: Decimal, idempotency_key: str) -> ChargeResult:
        data = {"amount": to_cents(amount), "currency": "usd"}
        if isinstance(source, StoredPaymentMethod):
            data["customer"] = source.customer_ref
            if source.payment_ref:
                data["source"] = source.payment_ref
        else:
            data["source"] = source.value

        status, body = self._post("charges", data, key=self.secret_key, idempotency_key=idempotency_key)

        if status == 200 and body.get("status") in ("succeeded", "pending"):
            details = body.get("payment_method_details") or {}
            last4 = (details.get("card") or {}).get("last4") or (body.get("source") or {}).get("last4")
            return ChargeResult(success=True, charge_id=body.get("id"), last4=last4)

        if status in (401, 403):
            logger.error("Stripe rejected our credentials")
            raise PaymentSystemUnavailable()

        error = body.get("error") or {}
        reason = error.get("decline_code") or error.get("code") or body.get("failure_code") or "declined"
        logger.info(f"Stripe charge declined: {reason}")
        return ChargeResult(success=False, charge_id=body.get("id"), declined_reason=reason)

    def refund(self, charge_id: str, amount: Decimal, last4: str | None = None) -> RefundResult:
        status, body = self._post(
            "refunds",
            {"charge": charge_id, "amount": to_cents(amount)},
            key=self.secret_key,
            idempotency_key=f"refund-{charge_id}",
        )
        if status == 200 and body.get("status") in ("succeeded", "pending"):
            return RefundResult(success=True, refund_id=body.get("id"))
        error = body.get("error") or {}
        return RefundResult(success=False, failure_reason=error.get("code") or "refund_failed")

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        status, body = self._post(
            "billing_portal/sessions",
            {"customer": customer_ref, "return_url": return_url},
            key=self.secret_key,
        )
        if status != 200 or not body.get("url"):
            logger.warning(f"Stripe portal session failed: HTTP {status}")
            raise PaymentSystemUnavailable()
        return body["url"]
