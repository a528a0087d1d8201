# bloom/domain/errors.py
from decimal import Decimal


class CheckoutError(Exception):
    """
    Base for checkout/subscription failures.
    public_message is what the customer sees - upstream error text never goes there.
    """

    http_status = 500
    public_message = "something went wrong, please try again"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message


class InvalidInput(CheckoutError):
    http_status = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        #locally generated, safe to show
        self.public_message = detail


class NotDeliverable(CheckoutError):
    http_status = 422
    public_message = "we don't deliver there"


class QuoteStale(CheckoutError):
    http_status = 409
    public_message = "price changed, please confirm"

    def __init__(self, delivery_fee: Decimal, subtotal: Decimal, tax: Decimal, total: Decimal):
        super().__init__(f"quote changed: fee={delivery_fee} subtotal={subtotal} total={total}")
        self.delivery_fee = delivery_fee
        self.subtotal = subtotal
        self.tax = tax
        self.total = total


class PaymentDeclined(CheckoutError):
    http_status = 402
    public_message = "your card was declined"


class PaymentSystemUnavailable(CheckoutError):
    http_status = 503
    public_message = "payment system unavailable, please try again"


class FulfillmentRejected(CheckoutError):
    http_status = 502


class FulfillmentUnavailable(CheckoutError):
    http_status = 503
    public_message = "unable to verify delivery, please retry"


class Inconsistent(CheckoutError):
    """Internal invariant violation - a bug, never a business outcome."""


class CheckoutInProgress(CheckoutError):
    http_status = 409
    public_message = "this order is already being processed"
