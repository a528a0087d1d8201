# bloom/services/order_orchestrator.py
import hashlib
import json
from datetime import date, datetime, timedelta
from typing import List

from requests import RequestException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bloom.data.models.order import OrderModel
from bloom.data.models.order_item import OrderItemModel
from bloom.domain import status as st
from bloom.domain.errors import (
    CheckoutInProgress,
    FulfillmentRejected,
    FulfillmentUnavailable,
    Inconsistent,
    InvalidInput,
    PaymentDeclined,
    PaymentSystemUnavailable,
    QuoteStale,
)
from bloom.domain.money import to_money
from bloom.domain.schemas import RecipientIn, SenderIn
from bloom.domain.types import CartLine, CartSnapshot, DeliveryQuote, PaymentSource, PaymentToken
from bloom.repos.order_repo import OrderRepo
from bloom.services.delivery_resolver import DeliveryResolver
from bloom.services.florist_client import FloristClient, MalformedResponse
from bloom.services.lock_service import LockService
from bloom.services.notification_service import NotificationService
from bloom.services.payments.port import PaymentGateway
from bloom.utils.clock import utcnow
from bloom.utils.settings import (
    CHECKOUT_LOCK_TTL_SECONDS,
    FULFILLMENT_MAX_ATTEMPTS,
    FULFILLMENT_RETRY_BASE_SECONDS,
    PENDING_ORDER_TTL_SECONDS,
)
from bloom.utils.logging import get_logger

logger = get_logger(__name__)


def checkout_fingerprint(
    session_id: str,
    quote: DeliveryQuote,
    recipient: RecipientIn,
    sender: SenderIn,
    card_message: str,
    special_instructions: str | None,
) -> str:
    """Stable hash of what the client asked for. Token excluded, it is single-use."""
    payload = {
        "session": session_id,
        "zip": quote.zip,
        "date": quote.date.isoformat(),
        "fee": str(to_money(quote.fee)),
        "recipient": recipient.model_dump(mode="json"),
        "sender": sender.model_dump(mode="json"),
        "card": card_message,
        "instructions": special_instructions or "",
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


class OrderOrchestrator:
    """
    Only writer of Order/OrderItem state.

    pending -> processing -> confirmed -> delivered
    pending -> cancelled (never sent to the processor, declined, or operator found no capture)
    processing -> refunded (operator only)

    Sequence per checkout is strict: price check -> pending -> charge -> submit.
    """

    def __init__(
        self,
        db: Session,
        resolver: DeliveryResolver,
        gateway: PaymentGateway,
        florist: FloristClient,
        lock_service: LockService,
    ):
        self.db = db
        self.repo = OrderRepo(db)
        self.resolver = resolver
        self.gateway = gateway
        self.florist = florist
        self.lock_service = lock_service

    # =====================================================
    # CHECKOUT
    # =====================================================
    def place_order(
        self,
        cart: CartSnapshot,
        quote: DeliveryQuote,
        payment: PaymentSource,
        recipient: RecipientIn,
        sender: SenderIn,
        idempotency_key: str,
        card_message: str,
        special_instructions: str | None = None,
        user_id: str | None = None,
    ) -> OrderModel:
        """
        Use case: turn a cart + quote + payment into a durable Order.

        1. same key seen before -> return it (or resume a pending one)
        2. local validation
        3. live re-quote, reject on drift (no order written, no charge)
        4. pending row
        5. charge -> processing
        6. fulfillment submit -> confirmed (or stay processing + retry later)
        """
        if not idempotency_key or len(idempotency_key) > 200:
            raise InvalidInput("Idempotency key is required")

        request_hash = checkout_fingerprint(
            cart.session_id, quote, recipient, sender, card_message, special_instructions
        )

        lock_name = f"checkout:{idempotency_key}"
        owner = self.lock_service.acquire(lock_name, CHECKOUT_LOCK_TTL_SECONDS)
        if owner is None:
            logger.info(f"Checkout {idempotency_key} already in flight")
            raise CheckoutInProgress()

        try:
            existing = self.repo.get_by_idempotency_key(idempotency_key)
            if existing:
                return self._replay(existing, request_hash, payment)

            self._validate(cart, quote, payment, recipient)
            subtotal, fee, tax, total = self._price(cart, quote)

            order = self._create_pending(
                cart, quote, payment, recipient, sender, idempotency_key, request_hash,
                card_message, special_instructions, user_id, subtotal, fee, tax, total,
            )
            if order.status != st.PENDING:
                #lost an insert race to the same key
                return order
            return self._charge_and_submit(order, payment)
        finally:
            self.lock_service.release(lock_name, owner)

    def _replay(self, existing: OrderModel, request_hash: str, payment: PaymentSource) -> OrderModel:
        if existing.request_hash != request_hash:
            raise InvalidInput("Idempotency key was already used for a different order")

        if existing.status == st.PENDING:
            return self._resume(existing, payment)

        logger.info(f"Idempotent replay of order {existing.id} ({existing.status})")
        return existing

    def resume_pending(self, order_id: int, payment: PaymentSource) -> OrderModel:
        """Retry a charge whose outcome was never learned, under the same processor key."""
        order = self.repo.get_order(order_id)
        if not order:
            raise LookupError("Order does not exist")

        lock_name = f"checkout:{order.idempotency_key}"
        owner = self.lock_service.acquire(lock_name, CHECKOUT_LOCK_TTL_SECONDS)
        if owner is None:
            raise CheckoutInProgress()
        try:
            self.repo.refresh(order.id)
            if order.status != st.PENDING:
                return order
            return self._resume(order, payment)
        finally:
            self.lock_service.release(lock_name, owner)

    def _resume(self, order: OrderModel, payment: PaymentSource) -> OrderModel:
        if order.needs_reconciliation:
            #operator owns it now
            logger.info(f"Pending order {order.id} is held for reconciliation")
            return order

        self._check_payment(payment)
        if not self._price_still_holds(order):
            return order

        logger.info(f"Resuming pending order {order.id}")
        return self._charge_and_submit(order, payment)

    def _price_still_holds(self, order: OrderModel) -> bool:
        """
        Live re-quote before a resumed charge.
        Drift before any charge attempt -> QuoteStale.
        Drift after one -> the first attempt may have captured the old total,
        so the order is held for an operator instead of charged again.
        """
        first = order.items[0]
        lines = [
            CartLine(
                sku=item.product_code,
                name=item.product_name or item.product_code,
                quantity=item.quantity,
                unit_price=to_money(item.price),
            )
            for item in order.items
        ]
        check = self.resolver.price_check(lines, first.zip, first.delivery_date)

        fee = to_money(check.delivery_fee)
        subtotal = to_money(check.subtotal)
        tax = to_money(check.tax)
        if fee == to_money(order.delivery_fee) and subtotal == to_money(order.subtotal):
            return True

        logger.info(f"Pending order {order.id} price moved: fee {order.delivery_fee} -> {fee}")
        if order.charge_attempted_at is None:
            raise QuoteStale(delivery_fee=fee, subtotal=subtotal, tax=tax, total=subtotal + fee + tax)

        self._flag(order, f"price moved to fee {fee} after an unconfirmed charge of {order.total}")
        return False

    def _check_payment(self, payment: PaymentSource) -> None:
        if payment is None:
            raise InvalidInput("Payment token is required")
        if payment.processor != self.gateway.processor:
            raise InvalidInput("Payment token was issued by a different processor")
        if isinstance(payment, PaymentToken):
            if not payment.value:
                raise InvalidInput("Payment token is required")
            if payment.is_expired():
                raise InvalidInput("Payment token expired, please re-enter card details")

    def _validate(self, cart: CartSnapshot, quote: DeliveryQuote, payment: PaymentSource, recipient: RecipientIn) -> None:
        if cart.is_empty:
            raise InvalidInput("Cart is empty")
        self._check_payment(payment)
        if recipient.zip != quote.zip:
            raise InvalidInput("Recipient ZIP does not match the delivery quote")
        if quote.date < date.today():
            raise InvalidInput("Delivery date is in the past")

    def _price(self, cart: CartSnapshot, quote: DeliveryQuote):
        """Server-side money. Client totals are never consulted."""
        if quote.is_expired():
            #the date must still be offered before a stale quote can price anything
            logger.info(f"Quote for {quote.zip}/{quote.date} expired, re-resolving")
            self.resolver.quote(quote.zip, quote.date)

        check = self.resolver.price_check(cart.lines, quote.zip, quote.date)

        subtotal = to_money(cart.subtotal)
        fee = to_money(check.delivery_fee)
        tax = to_money(check.tax)
        total = subtotal + fee + tax

        if fee != to_money(quote.fee) or to_money(check.subtotal) != subtotal:
            logger.info(
                f"Quote drift for {quote.zip}/{quote.date}: fee {quote.fee} -> {fee}, "
                f"subtotal {subtotal} -> {check.subtotal}"
            )
            new_subtotal = to_money(check.subtotal)
            raise QuoteStale(
                delivery_fee=fee,
                subtotal=new_subtotal,
                tax=tax,
                total=new_subtotal + fee + tax,
            )

        if check.order_total is not None and to_money(check.order_total) != total:
            logger.critical(
                f"Total mismatch for {quote.zip}/{quote.date}: network {check.order_total} != computed {total}"
            )
            raise Inconsistent("network order total disagrees with computed total")

        return subtotal, fee, tax, total

    def _create_pending(
        self, cart, quote, payment, recipient, sender, idempotency_key, request_hash,
        card_message, special_instructions, user_id, subtotal, fee, tax, total,
    ) -> OrderModel:
        order = OrderModel(
            idempotency_key=idempotency_key,
            request_hash=request_hash,
            user_id=user_id,
            status=st.PENDING,
            subtotal=subtotal,
            delivery_fee=fee,
            tax=tax,
            total=total,
            customer_name=sender.full_name,
            customer_email=sender.email,
            customer_phone=sender.phone,
            billing_address1=sender.address1,
            billing_address2=sender.address2,
            billing_city=sender.city,
            billing_state=sender.state,
            billing_zip=sender.zip,
            payment_processor=payment.processor,
            fulfillment_attempts=0,
            needs_reconciliation=False,
        )
        for line in cart.lines:
            order.items.append(
                OrderItemModel(
                    product_code=line.sku,
                    product_name=line.name,
                    quantity=line.quantity,
                    price=to_money(line.unit_price),
                    recipient_name=recipient.full_name,
                    recipient_institution=recipient.institution,
                    recipient_phone=recipient.phone,
                    address1=recipient.address1,
                    address2=recipient.address2,
                    city=recipient.city,
                    state=recipient.state,
                    zip=recipient.zip,
                    delivery_date=quote.date,
                    card_message=card_message,
                    special_instructions=special_instructions,
                )
            )

        try:
            created = self.repo.create_order(order)
        except IntegrityError:
            self.repo.rollback()
            existing = self.repo.get_by_idempotency_key(idempotency_key)
            if existing is None:
                raise
            return self._replay(existing, request_hash, payment)

        logger.info(f"Order {created.id} pending, total {created.total}")
        return created

    def _assert_totals(self, order: OrderModel) -> None:
        expected = to_money(order.subtotal) + to_money(order.delivery_fee) + to_money(order.tax)
        if to_money(order.total) != expected:
            logger.critical(f"Order {order.id} total {order.total} != {expected}, halting")
            self._flag(order, "total does not equal subtotal + delivery fee + tax")
            raise Inconsistent(f"order {order.id} total mismatch")

    def _charge_and_submit(self, order: OrderModel, payment: PaymentSource) -> OrderModel:
        self._assert_totals(order)

        if order.charge_attempted_at is None:
            #past this point the pending row is never auto-cancelled
            self.repo.update_fields(order.id, st.PENDING, charge_attempted_at=utcnow())

        try:
            result = self.gateway.charge(payment, to_money(order.total), idempotency_key=f"order-{order.idempotency_key}")
        except PaymentSystemUnavailable:
            #outcome unknown: stay pending, a retry with the same key resumes here
            logger.warning(f"Order {order.id} charge outcome unknown, left pending")
            self.repo.update_fields(order.id, st.PENDING, failure_reason="payment system unavailable")
            raise

        now = utcnow()
        if not result.success:
            logger.info(f"Order {order.id} charge declined")
            self.repo.transition(
                order.id, st.PENDING, st.CANCELLED,
                failure_reason=f"declined: {result.declined_reason}"[:500],
                cancelled_at=now,
            )
            raise PaymentDeclined(result.declined_reason)

        won = self.repo.transition(
            order.id, st.PENDING, st.PROCESSING,
            charge_id=result.charge_id,
            payment_last4=result.last4,
            charged_at=now,
            failure_reason=None,
        )
        if not won:
            #money moved but the row is no longer pending
            self.repo.refresh(order.id)
            logger.critical(f"Order {order.id} charged ({result.charge_id}) but status is {order.status}")
            self._flag(order, f"charged {result.charge_id} while order was {order.status}")
            raise Inconsistent(f"order {order.id} charged outside pending")

        logger.info(f"Order {order.id} charged, processing")
        self._submit(order)
        return order

    # =====================================================
    # FULFILLMENT
    # =====================================================
    def _submit(self, order: OrderModel) -> OrderModel:
        """One fulfillment attempt. Never re-charges."""
        attempts = order.fulfillment_attempts + 1
        now = utcnow()

        try:
            ack = self.florist.place_order(order)
        except FulfillmentRejected as e:
            logger.error(f"Order {order.id} rejected by fulfillment, manual reconciliation")
            self.repo.update_fields(
                order.id, st.PROCESSING,
                fulfillment_attempts=attempts,
                next_fulfillment_attempt_at=None,
                needs_reconciliation=True,
                reconciliation_reason=f"fulfillment rejected: {e.detail}"[:500],
            )
            return order
        except FulfillmentUnavailable:
            if attempts >= FULFILLMENT_MAX_ATTEMPTS:
                logger.error(f"Order {order.id} fulfillment failed {attempts}x, manual reconciliation")
                self.repo.update_fields(
                    order.id, st.PROCESSING,
                    fulfillment_attempts=attempts,
                    next_fulfillment_attempt_at=None,
                    needs_reconciliation=True,
                    reconciliation_reason=f"fulfillment unavailable after {attempts} attempts",
                )
            else:
                delay = FULFILLMENT_RETRY_BASE_SECONDS * 2 ** (attempts - 1)
                logger.warning(f"Order {order.id} fulfillment attempt {attempts} failed, retry in {delay}s")
                self.repo.update_fields(
                    order.id, st.PROCESSING,
                    fulfillment_attempts=attempts,
                    next_fulfillment_attempt_at=now + timedelta(seconds=delay),
                )
            return order

        won = self.repo.transition(
            order.id, st.PROCESSING, st.CONFIRMED,
            confirmation_id=ack.confirmation_id,
            confirmed_at=now,
            fulfillment_attempts=attempts,
            next_fulfillment_attempt_at=None,
        )
        if won:
            logger.info(f"Order {order.id} confirmed ({ack.confirmation_id})")
            NotificationService.send_order_confirmation(order.id, order.customer_email, ack.confirmation_id)
        else:
            logger.warning(f"Order {order.id} was already moved past processing")
        return order

    def retry_due_fulfillments(self, now: datetime | None = None) -> int:
        """Periodic: re-submit charged orders whose backoff elapsed."""
        now = now or utcnow()
        count = 0
        for order in self.repo.due_fulfillment_retries(now):
            lock_name = f"fulfillment:{order.id}"
            owner = self.lock_service.acquire(lock_name, CHECKOUT_LOCK_TTL_SECONDS)
            if owner is None:
                continue
            try:
                self.repo.refresh(order.id)
                if order.status != st.PROCESSING or order.needs_reconciliation:
                    continue
                self._submit(order)
                count += 1
            finally:
                self.lock_service.release(lock_name, owner)
        return count

    def mark_delivered(self, confirmation_id: str) -> OrderModel:
        """Delivery signal from the network (webhook or poll). Never inferred from time."""
        order = self.repo.get_by_confirmation(confirmation_id)
        if not order:
            raise LookupError(f"No order with confirmation {confirmation_id}")

        if order.status == st.DELIVERED:
            return order

        if not self.repo.transition(order.id, st.CONFIRMED, st.DELIVERED, delivered_at=utcnow()):
            raise ValueError(f"Order {order.id} cannot be delivered from {order.status}")

        logger.info(f"Order {order.id} delivered")
        return order

    def poll_deliveries(self) -> int:
        delivered = 0
        for order in self.repo.confirmed_orders():
            try:
                remote = self.florist.get_order_status(order.confirmation_id)
            except (RequestException, MalformedResponse, ValueError) as e:
                logger.warning(f"Status poll failed for order {order.id}: {e}")
                continue
            if remote != "delivered":
                continue
            try:
                self.mark_delivered(order.confirmation_id)
            except ValueError as e:
                #webhook got there first
                logger.info(f"Order {order.id} not marked by poll: {e}")
                continue
            delivered += 1
        return delivered

    def expire_abandoned(self, now: datetime | None = None) -> int:
        """
        GC for pending checkouts.
        Never charged -> cancelled. Charge sent but outcome unknown -> held for an operator,
        the processor may have captured.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=PENDING_ORDER_TTL_SECONDS)
        count = 0
        for order in self.repo.abandoned_pending(cutoff):
            lock_name = f"checkout:{order.idempotency_key}"
            owner = self.lock_service.acquire(lock_name, CHECKOUT_LOCK_TTL_SECONDS)
            if owner is None:
                continue
            try:
                if self.repo.transition(
                    order.id, st.PENDING, st.CANCELLED,
                    failure_reason="abandoned",
                    cancelled_at=now,
                ):
                    count += 1
            finally:
                self.lock_service.release(lock_name, owner)
        if count:
            logger.info(f"Cancelled {count} abandoned pending orders")

        for order in self.repo.unresolved_charges(cutoff):
            lock_name = f"checkout:{order.idempotency_key}"
            owner = self.lock_service.acquire(lock_name, CHECKOUT_LOCK_TTL_SECONDS)
            if owner is None:
                continue
            try:
                self.repo.refresh(order.id)
                if order.status == st.PENDING and not order.needs_reconciliation:
                    logger.error(f"Order {order.id} charge outcome still unknown, manual reconciliation")
                    self._flag(order, "charge outcome unknown, check the processor before cancelling")
            finally:
                self.lock_service.release(lock_name, owner)
        return count

    # =====================================================
    # RECONCILIATION (operator)
    # =====================================================
    def _flag(self, order: OrderModel, reason: str) -> None:
        order.needs_reconciliation = True
        order.reconciliation_reason = reason[:500]
        self.db.add(order)
        self.db.commit()

    def list_reconciliation(self) -> List[OrderModel]:
        return self.repo.needing_reconciliation()

    def _flagged_processing(self, order_id: int) -> OrderModel:
        order = self.repo.get_order(order_id)
        if not order:
            raise LookupError("Order does not exist")
        if order.status != st.PROCESSING or not order.needs_reconciliation:
            raise ValueError(f"Order {order_id} is not awaiting reconciliation")
        return order

    def operator_retry_fulfillment(self, order_id: int) -> OrderModel:
        order = self._flagged_processing(order_id)
        logger.info(f"Operator retry of fulfillment for order {order.id}")
        self.repo.update_fields(
            order.id, st.PROCESSING,
            needs_reconciliation=False,
            reconciliation_reason=None,
            fulfillment_attempts=0,
            next_fulfillment_attempt_at=None,
        )
        return self._submit(order)

    def operator_refund(self, order_id: int, reason: str) -> OrderModel:
        order = self._flagged_processing(order_id)
        if order.payment_processor != self.gateway.processor:
            raise ValueError(f"Order {order.id} was charged through {order.payment_processor}")

        result = self.gateway.refund(order.charge_id, to_money(order.total), order.payment_last4)
        if not result.success:
            logger.error(f"Refund for order {order.id} failed: {result.failure_reason}")
            raise PaymentSystemUnavailable("refund failed")

        self.repo.transition(
            order.id, st.PROCESSING, st.REFUNDED,
            refund_id=result.refund_id,
            needs_reconciliation=False,
            reconciliation_reason=f"refunded: {reason}"[:500],
        )
        logger.info(f"Order {order.id} refunded by operator")
        return order

    def operator_resolve_charge(self, order_id: int, charge_id: str | None) -> OrderModel:
        """
        Close out a held pending order after checking the processor by hand.
        charge_id given -> it was captured, continue to fulfillment.
        No charge_id -> nothing was captured, cancel.
        """
        order = self.repo.get_order(order_id)
        if not order:
            raise LookupError("Order does not exist")

        lock_name = f"checkout:{order.idempotency_key}"
        owner = self.lock_service.acquire(lock_name, CHECKOUT_LOCK_TTL_SECONDS)
        if owner is None:
            raise CheckoutInProgress()
        try:
            self.repo.refresh(order.id)
            if order.status != st.PENDING or not order.needs_reconciliation:
                raise ValueError(f"Order {order_id} has no unresolved charge")

            now = utcnow()
            if charge_id:
                self.repo.transition(
                    order.id, st.PENDING, st.PROCESSING,
                    charge_id=charge_id,
                    charged_at=now,
                    failure_reason=None,
                    needs_reconciliation=False,
                    reconciliation_reason=None,
                )
                logger.info(f"Operator confirmed charge {charge_id} for order {order.id}")
                return self._submit(order)

            self.repo.transition(
                order.id, st.PENDING, st.CANCELLED,
                failure_reason="no capture at processor",
                cancelled_at=now,
                needs_reconciliation=False,
                reconciliation_reason=None,
            )
            logger.info(f"Operator cancelled uncharged order {order.id}")
            return order
        finally:
            self.lock_service.release(lock_name, owner)

    # =====================================================
    # QUERIES
    # =====================================================
    def get_order(self, order_id: int, user_id: str | None = None) -> OrderModel:
        order = self.repo.get_order(order_id)

        if not order:
            raise LookupError("Order does not exist")

        if order.user_id and order.user_id != user_id:
            raise PermissionError("No access to this order")

        return order

    def lookup(self, confirmation_id: str, email: str) -> OrderModel:
        order = self.repo.get_by_confirmation(confirmation_id)
        if not order or order.customer_email != email.strip().lower():
            raise LookupError("Order not found")
        return order
