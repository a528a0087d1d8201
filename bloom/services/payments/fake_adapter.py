"""Configurable in-process gateway for development and tests.

No network calls. Replays of the same idempotency key return the first
result, like a real processor's idempotency window.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

from bloom.domain.errors import PaymentSystemUnavailable
from bloom.domain.types import (
    CardFields,
    ChargeResult,
    PaymentSource,
    PaymentToken,
    RefundResult,
)
from bloom.services.payments.port import PaymentGateway
from bloom.utils.clock import utcnow
from bloom.utils.settings import PAYMENT_TOKEN_TTL_SECONDS


class FakeGateway(PaymentGateway):
    processor = "fake"

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "card_declined"
        self.unavailable: bool = False
        self.calls: list[dict] = []
        self._charges: dict[str, ChargeResult] = {}

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "card_declined",
        unavailable: bool = False,
    ) -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.unavailable = unavailable

    @property
    def charges(self) -> list[dict]:
        return [c for c in self.calls if c["method"] == "charge"]

    def _request_token(self, card: CardFields) -> PaymentToken:
        self.calls.append({"method": "tokenize", "last4": card.number[-4:]})
        if self.unavailable:
            raise PaymentSystemUnavailable()
        return PaymentToken(
            value=f"fake_tok_{uuid.uuid4().hex[:12]}",
            processor=self.processor,
            expires_at=utcnow() + timedelta(seconds=PAYMENT_TOKEN_TTL_SECONDS),
        )

    def client_key(self) -> dict:
        return {"key": "fake_pk"}

    def charge(self, source: PaymentSource, amount: Decimal, idempotency_key: str) -> ChargeResult:
        self.calls.append(
            {
                "method": "charge",
                "source": source,
                "amount": amount,
                "idempotency_key": idempotency_key,
            }
        )
        if self.unavailable:
            raise PaymentSystemUnavailable()

        if idempotency_key in self._charges:
            return self._charges[idempotency_key]

        if self.should_succeed:
            result = ChargeResult(success=True, charge_id=f"fake_ch_{uuid.uuid4().hex[:12]}", last4="4242")
        else:
            result = ChargeResult(success=False, declined_reason=self.failure_reason)
        self._charges[idempotency_key] = result
        return result

    def refund(self, charge_id: str, amount: Decimal, last4: str | None = None) -> RefundResult:
        self.calls.append({"method": "refund", "charge_id": charge_id, "amount": amount})
        if self.unavailable:
            raise PaymentSystemUnavailable()
        if self.should_succeed:
            return RefundResult(success=True, refund_id=f"fake_re_{uuid.uuid4().hex[:12]}")
        return RefundResult(success=False, failure_reason=self.failure_reason)

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        self.calls.append({"method": "portal", "customer_ref": customer_ref})
        return f"https://billing.example.test/{customer_ref}?return={return_url}"
