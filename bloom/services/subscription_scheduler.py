# bloom/services/subscription_scheduler.py
import uuid
from datetime import date, datetime, timedelta
from typing import Dict

from sqlalchemy.orm import Session

from bloom.data.models.order import OrderModel
from bloom.data.models.subscription import SubscriptionModel
from bloom.data.models.subscription_delivery import SubscriptionDeliveryModel
from bloom.domain import status as st
from bloom.domain.errors import CheckoutError, CheckoutInProgress, InvalidInput, PaymentDeclined
from bloom.domain.schedule import FREQUENCIES, add_interval, first_on_or_after
from bloom.domain.schemas import RecipientIn, SenderIn, SubscriptionCreate
from bloom.domain.tiers import SUBSCRIPTION_TIERS
from bloom.domain.types import CartLine, CartSnapshot, StoredPaymentMethod
from bloom.repos.subscription_repo import SubscriptionRepo
from bloom.services.order_orchestrator import OrderOrchestrator
from bloom.utils.clock import utcnow
from bloom.utils.settings import SUBSCRIPTION_MAX_ATTEMPTS, SUBSCRIPTION_RETRY_DELAY_SECONDS
from bloom.utils.logging import get_logger

logger = get_logger(__name__)


class SubscriptionScheduler:
    """
    Turns a cadence into concrete deliveries.

    Invariant: an active subscription has exactly one open
    (scheduled / processing / failed) delivery, enforced by a partial unique index.
    Each cycle becomes an Order through the orchestrator, never directly.
    """

    def __init__(self, db: Session, orchestrator: OrderOrchestrator):
        self.db = db
        self.repo = SubscriptionRepo(db)
        self.orchestrator = orchestrator

    # =====================================================
    # QUERIES
    # =====================================================
    def get_subscription(self, subscription_id: int, user_id: str | None = None) -> SubscriptionModel:
        sub = self.repo.get(subscription_id)

        if not sub:
            raise LookupError("Subscription does not exist")

        if user_id is not None and sub.user_id != user_id:
            raise PermissionError("No access to this subscription")

        return sub

    def _delivery(self, delivery_id: int, user_id: str | None) -> SubscriptionDeliveryModel:
        delivery = self.repo.get_delivery(delivery_id)
        if not delivery:
            raise LookupError("Delivery does not exist")
        if user_id is not None and delivery.subscription.user_id != user_id:
            raise PermissionError("No access to this delivery")
        return delivery

    # =====================================================
    # LIFECYCLE
    # =====================================================
    def create_subscription(self, data: SubscriptionCreate, today: date | None = None) -> SubscriptionModel:
        today = today or date.today()

        tier = SUBSCRIPTION_TIERS.get(data.tier)
        if not tier:
            raise InvalidInput(f"Unknown subscription tier {data.tier}")
        if data.frequency not in FREQUENCIES:
            raise InvalidInput(f"Frequency must be one of {', '.join(FREQUENCIES)}")
        if data.payment_processor != self.orchestrator.gateway.processor:
            raise InvalidInput("Payment method was stored with a different processor")

        first = data.first_delivery_date or today + timedelta(days=7)
        if first <= today:
            raise InvalidInput("First delivery must be in the future")

        recipient, sender = data.recipient, data.sender
        sub = self.repo.create(
            SubscriptionModel(
                user_id=data.user_id,
                tier=data.tier,
                product_code=tier["product_code"],
                frequency=data.frequency,
                status=st.SUB_ACTIVE,
                price=tier["price"],
                next_delivery_date=first,
                anchor_day=first.day,
                address_ref=data.address_ref,
                recipient_first_name=recipient.first_name,
                recipient_last_name=recipient.last_name,
                recipient_phone=recipient.phone,
                recipient_institution=recipient.institution,
                address1=recipient.address1,
                address2=recipient.address2,
                city=recipient.city,
                state=recipient.state,
                zip=recipient.zip,
                card_message=data.card_message,
                customer_first_name=sender.first_name,
                customer_last_name=sender.last_name,
                customer_email=sender.email,
                customer_phone=sender.phone,
                billing_address1=sender.address1,
                billing_address2=sender.address2,
                billing_city=sender.city,
                billing_state=sender.state,
                billing_zip=sender.zip,
                payment_processor=data.payment_processor,
                payment_customer_ref=data.payment_customer_ref,
                payment_ref=data.payment_ref,
            )
        )
        self._schedule(sub, first)
        self.repo.commit()

        logger.info(f"Subscription {sub.id} ({sub.tier}, {sub.frequency}) first delivery {first}")
        return sub

    def _schedule(self, sub: SubscriptionModel, delivery_date: date) -> SubscriptionDeliveryModel:
        sub.next_delivery_date = delivery_date
        return self.repo.add_delivery(
            SubscriptionDeliveryModel(
                subscription_id=sub.id,
                delivery_date=delivery_date,
                status=st.DLV_SCHEDULED,
                attempts=0,
            )
        )

    def advance(self, sub: SubscriptionModel, previous: date | None = None) -> SubscriptionDeliveryModel | None:
        """
        Next cycle = previous cycle date + one interval, never today + interval.
        Caller commits.
        """
        previous = previous or sub.next_delivery_date
        nxt = add_interval(previous, sub.frequency, sub.anchor_day)

        if sub.status == st.SUB_PAUSED:
            #cycle finished while paused, resume picks up from here
            sub.paused_from = nxt
            return None
        if sub.status == st.SUB_CANCELLED:
            return None

        logger.info(f"Subscription {sub.id} advanced {previous} -> {nxt}")
        return self._schedule(sub, nxt)

    def skip(self, delivery_id: int, user_id: str | None = None) -> SubscriptionModel:
        delivery = self._delivery(delivery_id, user_id)
        sub = delivery.subscription

        if not self.repo.transition_delivery(delivery.id, st.DLV_SCHEDULED, st.DLV_SKIPPED):
            self.repo.rollback()
            raise ValueError(f"Only a scheduled delivery can be skipped (is {delivery.status})")

        self.advance(sub, delivery.delivery_date)
        self.repo.commit()
        logger.info(f"Delivery {delivery.id} skipped")
        return sub

    def pause(self, subscription_id: int, user_id: str | None = None) -> SubscriptionModel:
        sub = self.get_subscription(subscription_id, user_id)
        if sub.status != st.SUB_ACTIVE:
            raise ValueError(f"Only an active subscription can be paused (is {sub.status})")

        paused_from = sub.next_delivery_date
        open_delivery = self.repo.open_delivery(sub.id)
        if open_delivery is not None:
            if open_delivery.status == st.DLV_SCHEDULED:
                self.repo.transition_delivery(open_delivery.id, st.DLV_SCHEDULED, st.DLV_CANCELLED)
                paused_from = open_delivery.delivery_date
            elif open_delivery.status == st.DLV_FAILED:
                self.repo.transition_delivery(open_delivery.id, st.DLV_FAILED, st.DLV_SKIPPED)
                paused_from = add_interval(open_delivery.delivery_date, sub.frequency, sub.anchor_day)
            #processing: charge may be in flight, advance() records the pause point when it settles

        sub.status = st.SUB_PAUSED
        sub.next_delivery_date = None
        sub.paused_from = paused_from
        self.repo.commit()

        logger.info(f"Subscription {sub.id} paused from {paused_from}")
        return sub

    def resume(self, subscription_id: int, user_id: str | None = None, today: date | None = None) -> SubscriptionModel:
        today = today or date.today()
        sub = self.get_subscription(subscription_id, user_id)
        if sub.status != st.SUB_PAUSED:
            raise ValueError(f"Only a paused subscription can be resumed (is {sub.status})")

        sub.status = st.SUB_ACTIVE
        open_delivery = self.repo.open_delivery(sub.id)
        if open_delivery is not None:
            sub.next_delivery_date = open_delivery.delivery_date
        else:
            #same cadence as before the pause, first cycle strictly after today
            start = sub.paused_from or today
            nxt = first_on_or_after(start, today + timedelta(days=1), sub.frequency, sub.anchor_day)
            self._schedule(sub, nxt)
        sub.paused_from = None
        self.repo.commit()

        logger.info(f"Subscription {sub.id} resumed, next delivery {sub.next_delivery_date}")
        return sub

    def cancel(self, subscription_id: int, user_id: str | None = None) -> SubscriptionModel:
        sub = self.get_subscription(subscription_id, user_id)
        if sub.status == st.SUB_CANCELLED:
            return sub

        open_delivery = self.repo.open_delivery(sub.id)
        if open_delivery is not None:
            if open_delivery.status == st.DLV_SCHEDULED:
                self.repo.transition_delivery(open_delivery.id, st.DLV_SCHEDULED, st.DLV_CANCELLED)
            elif open_delivery.status == st.DLV_FAILED:
                self.repo.transition_delivery(open_delivery.id, st.DLV_FAILED, st.DLV_SKIPPED)

        sub.status = st.SUB_CANCELLED
        sub.next_delivery_date = None
        sub.paused_from = None
        sub.cancelled_at = utcnow()
        self.repo.commit()

        logger.info(f"Subscription {sub.id} cancelled")
        return sub

    def retry_delivery(self, delivery_id: int, user_id: str | None = None) -> SubscriptionModel:
        """Owner asked to try a failed cycle again (e.g. after updating the card)."""
        delivery = self._delivery(delivery_id, user_id)
        sub = delivery.subscription
        if delivery.status != st.DLV_FAILED:
            raise ValueError(f"Only a failed delivery can be retried (is {delivery.status})")
        if sub.status not in (st.SUB_ACTIVE, st.SUB_PAST_DUE):
            raise ValueError(f"Subscription is {sub.status}")

        delivery.attempts = 0
        delivery.next_attempt_at = utcnow()
        sub.status = st.SUB_ACTIVE
        self.repo.commit()

        logger.info(f"Delivery {delivery.id} queued for retry")
        return sub

    def abandon_delivery(self, delivery_id: int, user_id: str | None = None) -> SubscriptionModel:
        delivery = self._delivery(delivery_id, user_id)
        sub = delivery.subscription

        if not self.repo.transition_delivery(delivery.id, st.DLV_FAILED, st.DLV_SKIPPED):
            self.repo.rollback()
            raise ValueError(f"Only a failed delivery can be abandoned (is {delivery.status})")

        if sub.status == st.SUB_PAST_DUE:
            sub.status = st.SUB_ACTIVE
        self.advance(sub, delivery.delivery_date)
        self.repo.commit()

        logger.info(f"Delivery {delivery.id} abandoned")
        return sub

    def create_portal_session(self, subscription_id: int, return_url: str, user_id: str | None = None) -> str:
        sub = self.get_subscription(subscription_id, user_id)
        gateway = self.orchestrator.gateway
        if sub.payment_processor != gateway.processor:
            raise ValueError(f"Subscription payment is held by {sub.payment_processor}")
        return gateway.create_portal_session(sub.payment_customer_ref, return_url)

    # =====================================================
    # PERIODIC
    # =====================================================
    def tick(self, today: date | None = None, now: datetime | None = None) -> Dict[str, int]:
        today = today or date.today()
        now = now or utcnow()
        counts = {"settled": 0, "started": 0, "retried": 0}

        for delivery in self.repo.in_flight():
            try:
                settled = self._settle(delivery)
            except Exception:
                #one bad cycle must not stall the rest of the pass
                self.repo.rollback()
                logger.exception(f"Settling delivery {delivery.id} failed, will retry next tick")
                continue
            if settled:
                counts["settled"] += 1

        for delivery in self.repo.due_scheduled(today):
            if self._run_cycle(delivery, st.DLV_SCHEDULED, today):
                counts["started"] += 1

        for delivery in self.repo.due_retries(now, SUBSCRIPTION_MAX_ATTEMPTS):
            if self._run_cycle(delivery, st.DLV_FAILED, today):
                counts["retried"] += 1

        logger.info(f"Subscription tick {today}: {counts}")
        return counts

    def _settle(self, delivery: SubscriptionDeliveryModel) -> bool:
        order = self.db.get(OrderModel, delivery.order_id)
        if order is None:
            return False

        sub = delivery.subscription
        if order.status == st.DELIVERED:
            self.repo.transition_delivery(delivery.id, st.DLV_PROCESSING, st.DLV_DELIVERED)
            self.advance(sub, delivery.delivery_date)
            self.repo.commit()
            return True

        if order.status in (st.CANCELLED, st.REFUNDED):
            self._fail(delivery, order.failure_reason or order.status)
            return True

        if order.status == st.PENDING and not order.needs_reconciliation:
            #charge outcome unknown, same processor key so a capture is never doubled
            try:
                self.orchestrator.resume_pending(order.id, self._payment(sub))
            except PaymentDeclined as e:
                self._fail(delivery, f"PaymentDeclined: {e.public_message}")
                return True
            except CheckoutError as e:
                logger.info(f"Delivery {delivery.id} order {order.id} still pending: {type(e).__name__}")

        return False

    def _cycle_key(self, delivery: SubscriptionDeliveryModel) -> str:
        """Same key while the last order can still complete, fresh one after it was cancelled."""
        if delivery.idempotency_key and delivery.order_id:
            order = self.db.get(OrderModel, delivery.order_id)
            if order is not None and order.status not in (st.CANCELLED, st.REFUNDED):
                return delivery.idempotency_key
        elif delivery.idempotency_key:
            return delivery.idempotency_key
        return f"sub-{delivery.subscription_id}-{delivery.id}-{uuid.uuid4().hex[:12]}"

    def _run_cycle(self, delivery: SubscriptionDeliveryModel, from_status: str, today: date) -> bool:
        sub = delivery.subscription
        key = self._cycle_key(delivery)

        #claim: only one worker moves the cycle into processing
        claimed = self.repo.transition_delivery(
            delivery.id, from_status, st.DLV_PROCESSING,
            attempts=delivery.attempts + 1,
            idempotency_key=key,
            next_attempt_at=None,
        )
        self.repo.commit()
        if not claimed:
            return False

        #a missed date ships on the next day the network accepts, cadence stays on the cycle date
        target = max(delivery.delivery_date, today)
        logger.info(f"Running delivery {delivery.id} of subscription {sub.id} for {target} (attempt {delivery.attempts})")

        try:
            quote = self.orchestrator.resolver.quote(sub.zip, target)
            order = self.orchestrator.place_order(
                cart=self._cart(sub),
                quote=quote,
                payment=self._payment(sub),
                recipient=self._recipient(sub),
                sender=self._sender(sub),
                idempotency_key=key,
                card_message=sub.card_message,
                user_id=sub.user_id,
            )
        except CheckoutInProgress:
            return True
        except CheckoutError as e:
            order = self.orchestrator.repo.get_by_idempotency_key(key)
            if order is not None and order.status == st.PENDING:
                #charge outcome unknown, settled once the order leaves pending
                delivery.order_id = order.id
                delivery.last_error = e.public_message
                self.repo.commit()
                return True
            logger.warning(f"Delivery {delivery.id} of subscription {sub.id} failed: {type(e).__name__}")
            if order is not None:
                delivery.order_id = order.id
            self._fail(delivery, f"{type(e).__name__}: {e.public_message}")
            return True
        except Exception as e:
            #claimed but not placed: hand the cycle back to the retry path instead of stranding it
            self.repo.rollback()
            logger.exception(f"Delivery {delivery.id} of subscription {sub.id} errored after claim")
            order = self.orchestrator.repo.get_by_idempotency_key(key)
            if order is not None:
                delivery.order_id = order.id
            self._fail(delivery, f"{type(e).__name__}: internal error")
            return True

        delivery.order_id = order.id
        self.repo.commit()
        return True

    def _fail(self, delivery: SubscriptionDeliveryModel, reason: str) -> None:
        sub = delivery.subscription
        self.repo.transition_delivery(
            delivery.id, st.DLV_PROCESSING, st.DLV_FAILED,
            last_error=reason[:500],
            next_attempt_at=utcnow() + timedelta(seconds=SUBSCRIPTION_RETRY_DELAY_SECONDS),
        )
        if delivery.attempts >= SUBSCRIPTION_MAX_ATTEMPTS and sub.status == st.SUB_ACTIVE:
            logger.warning(f"Subscription {sub.id} past due after {delivery.attempts} attempts")
            sub.status = st.SUB_PAST_DUE
        self.repo.commit()

    # =====================================================
    # SNAPSHOTS
    # =====================================================
    @staticmethod
    def _cart(sub: SubscriptionModel) -> CartSnapshot:
        tier = SUBSCRIPTION_TIERS.get(sub.tier, {})
        return CartSnapshot(
            session_id=f"subscription-{sub.id}",
            lines=(
                CartLine(
                    sku=sub.product_code,
                    name=tier.get("name", sub.product_code),
                    quantity=1,
                    unit_price=sub.price,
                ),
            ),
        )

    @staticmethod
    def _payment(sub: SubscriptionModel) -> StoredPaymentMethod:
        return StoredPaymentMethod(
            processor=sub.payment_processor,
            customer_ref=sub.payment_customer_ref,
            payment_ref=sub.payment_ref,
        )

    @staticmethod
    def _recipient(
sub: SubscriptionModel) -> RecipientIn:
        return RecipientIn(
            first_name=sub.recipient_first_name,
            last_name=sub.recipient_last_name,
            phone=sub.recipient_phone,
            institution=sub.recipient_institution,
            address1=sub.address1,
            address2=sub.address2,
            city=sub.city,
            state=sub.state,
            zip=sub.zip,
        )

    @staticmethod
    def _sender(sub: SubscriptionModel) -> SenderIn:
        return SenderIn(
            first_name=sub.customer_first_name,
            last_name=sub.customer_last_name,
            email=sub.customer_email,
            phone=sub.customer_phone,
            address1=sub.billing_address1,
            address2=sub.billing_address2,
            city=sub.billing_city,
            state=sub.billing_state,
            zip=sub.billing_zip,
        )
