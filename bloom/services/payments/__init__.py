"""Payment gateway factory.

One processor per deployment, picked from PAYMENT_PROCESSOR.
set_gateway() lets tests swap in a fake.
"""

from bloom.services.payments.port import PaymentGateway
from bloom.utils.settings import PAYMENT_PROCESSOR

_current_gateway: PaymentGateway | None = None


def build_gateway(processor: str) -> PaymentGateway:
    if processor == "stripe":
        from bloom.services.payments.stripe_adapter import StripeGateway

        return StripeGateway()
    if processor == "authorizenet":
        from bloom.services.payments.authorizenet_adapter import AuthorizeNetGateway

        return AuthorizeNetGateway()
    if processor == "fake":
        from bloom.services.payments.fake_adapter import FakeGateway

        return FakeGateway()
    raise ValueError(f"Unknown payment processor {processor}")


def get_gateway() -> PaymentGateway:
    global _current_gateway
    if _current_gateway is None:
        _current_gateway = build_gateway(PAYMENT_PROCESSOR)
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None
