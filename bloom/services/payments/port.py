"""Payment gateway port.

Both processor adapters implement this; the orchestrator only ever sees
PaymentToken / StoredPaymentMethod and the processor name, never card data.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from bloom.domain.types import (
    CardFields,
    ChargeResult,
    PaymentSource,
    PaymentToken,
    RefundResult,
)
from bloom.services.payments.card_validation import validate_card


class PaymentGateway(ABC):
    processor: str = ""

    def tokenize(self, card: CardFields) -> PaymentToken:
        """Validate locally, then exchange card fields for a single-use token.

        Raises InvalidInput (no network call made), PaymentDeclined or
        PaymentSystemUnavailable. Card fields do not outlive this call.
        """
        return self._request_token(validate_card(card))

    @abstractmethod
    def _request_token(self, card: CardFields) -> PaymentToken:
        ...

    @abstractmethod
    def client_key(self) -> dict:
        """Client-usable credentials for browser-side tokenization. Never a charging secret."""
        ...

    @abstractmethod
    def charge(self, source: PaymentSource, amount: Decimal, idempotency_key: str) -> ChargeResult:
        """Capture `amount`. A decline comes back as ChargeResult(success=False);
        transport problems raise PaymentSystemUnavailable."""
        ...

    @abstractmethod
    def refund(self, charge_id: str, amount: Decimal, last4: str | None = None) -> RefundResult:
        ...

    @abstractmethod
    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        """Self-service billing management URL, hosted by the processor."""
        ...
