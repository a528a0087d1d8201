from datetime import date, timedelta
from decimal import Decimal

import pytest
import redis

from bloom.data.models.subscription_delivery import SubscriptionDeliveryModel
from bloom.domain import status as st
from bloom.domain.errors import InvalidInput
from bloom.domain.schedule import add_interval
from bloom.domain.schemas import SubscriptionCreate
from bloom.utils.clock import utcnow

from conftest import ZIP, make_recipient, make_sender


def _payload(**overrides) -> SubscriptionCreate:
    data = {
        "user_id": "u-1",
        "tier": "luxe",
        "frequency": "monthly",
        "recipient": make_recipient(),
        "sender": make_sender(),
        "payment_processor": "fake",
        "payment_customer_ref": "cus_123",
        "payment_ref": "pm_456",
    }
    data.update(overrides)
    return SubscriptionCreate(**data)


def _deliveries(db, sub):
    return (
        db.query(SubscriptionDeliveryModel)
        .filter(SubscriptionDeliveryModel.subscription_id == sub.id)
        .order_by(SubscriptionDeliveryModel.id)
        .all()
    )


def _open(db, sub):
    return [d for d in _deliveries(db, sub) if d.status in st.DLV_OPEN]


class TestCreate:
    def test_tier_price_and_first_cycle(self, scheduler, db):
        today = date(2024, 4, 1)

        sub = scheduler.create_subscription(_payload(first_delivery_date=date(2024, 5, 1)), today=today)

        assert sub.price == Decimal("95.00")
        assert sub.product_code == "GB-LUXE"
        assert sub.status == st.SUB_ACTIVE
        assert sub.next_delivery_date == date(2024, 5, 1)
        assert sub.anchor_day == 1
        [delivery] = _deliveries(db, sub)
        assert delivery.status == st.DLV_SCHEDULED

    def test_first_delivery_defaults_to_a_week_out(self, scheduler):
        today = date(2024, 4, 1)

        sub = scheduler.create_subscription(_payload(), today=today)

        assert sub.next_delivery_date == date(2024, 4, 8)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"tier": "mega"},
            {"frequency": "daily"},
            {"payment_processor": "stripe"},
            {"first_delivery_date": date(2024, 4, 1)},
        ],
    )
    def test_rejects_bad_input(self, scheduler, overrides):
        with pytest.raises(InvalidInput):
            scheduler.create_subscription(_payload(**overrides), today=date(2024, 4, 1))


class TestSkip:
    def test_skip_moves_one_month_without_charging(self, scheduler, gateway, florist, db):
        sub = scheduler.create_subscription(_payload(first_delivery_date=date(2024, 5, 1)), today=date(2024, 4, 1))
        [may] = _deliveries(db, sub)

        scheduler.skip(may.id, "u-1")

        assert may.status == st.DLV_SKIPPED
        assert sub.next_delivery_date == date(2024, 6, 1)
        [june] = _open(db, sub)
        assert june.delivery_date == date(2024, 6, 1)
        assert june.status == st.DLV_SCHEDULED
        assert gateway.calls == []
        assert florist.total_calls == []

    def test_monthly_keeps_anchor_day(self, scheduler, db):
        sub = scheduler.create_subscription(_payload(first_delivery_date=date(2024, 1, 31)), today=date(2024, 1, 1))

        scheduler.skip(_open(db, sub)[0].id)
        assert sub.next_delivery_date == date(2024, 2, 29)

        scheduler.skip(_open(db, sub)[0].id)
        assert sub.next_delivery_date == date(2024, 3, 31)

    def test_weekly(self, scheduler, db):
        sub = scheduler.create_subscription(
            _payload(frequency="weekly", first_delivery_date=date(2024, 5, 1)), today=date(2024, 4, 1)
        )

        scheduler.skip(_open(db, sub)[0].id)

        assert sub.next_delivery_date == date(2024, 5, 8)

    def test_only_scheduled_can_be_skipped(self, scheduler, db):
        sub = scheduler.create_subscription(_payload(first_delivery_date=date(2024, 5, 1)), today=date(2024, 4, 1))
        [may] = _deliveries(db, sub)
        scheduler.skip(may.id)

        with pytest.raises(ValueError):
            scheduler.skip(may.id)

    def test_other_owner(self, scheduler, db):
        sub = scheduler.create_subscription(_payload(first_delivery_date=date(2024, 5, 1)), today=date(2024, 4, 1))

        with pytest.raises(PermissionError):
            scheduler.skip(_open(db, sub)[0].id, "u-2")


class TestPauseResume:
    def test_pause_cancels_scheduled_cycle(self, scheduler, db):
        first = date(2024, 5, 1)
        sub = scheduler.create_subscription(_payload(frequency="weekly", first_delivery_date=first), today=date(2024, 4, 1))

        scheduler.pause(sub.id, "u-1")

        assert sub.status == st.SUB_PAUSED
        assert sub.next_delivery_date is None
        assert sub.paused_from == first
        assert _open(db, sub) == []
        assert _deliveries(db, sub)[0].status == st.DLV_CANCELLED

    def test_resume_keeps_cadence(self, scheduler, db):
        first = date(2024, 5, 1)
        sub = scheduler.create_subscription(_payload(frequency="weekly", first_delivery_date=first), today=date(2024, 4, 1))
        scheduler.pause(sub.id, "u-1")

        scheduler.resume(sub.id, "u-1", today=first + timedelta(days=10))

        assert sub.status == st.SUB_ACTIVE
        assert sub.next_delivery_date == first + timedelta(days=14)
        [nxt] = _open(db, sub)
        assert nxt.delivery_date == first + timedelta(days=14)

    def test_resume_requires_pause(self, scheduler):
        sub = scheduler.create_subscription(_payload(first_delivery_date=date(2024, 5, 1)), today=date(2024, 4, 1))

        with pytest.raises(ValueError):
            scheduler.resume(sub.id, "u-1")


class TestCancel:
    def test_cancel(self, scheduler, db):
        sub = scheduler.create_subscription(_payload(first_delivery_date=date(2024, 5, 1)), today=date(2024, 4, 1))

        scheduler.cancel(sub.id, "u-1")

        assert sub.status == st.SUB_CANCELLED
        assert sub.cancelled_at is not None
        assert sub.next_delivery_date is None
        assert _open(db, sub) == []

    def test_portal_session(self, scheduler):
        sub = scheduler.create_subscription(_payload(first_delivery_date=date(2024, 5, 1)), today=date(2024, 4, 1))

        url = scheduler.create_portal_session(sub.id, "https://shop.test/account", "u-1")

        assert "cus_123" in url


class TestTick:
    def _due(self, scheduler, florist, first=None):
        first = first or date.today() + timedelta(days=3)
        florist.available(ZIP, first)
        sub = scheduler.create_subscription(_payload(first_delivery_date=first), today=date.today())
        return sub, first

    def test_cycle_places_order_with_stored_method(self, scheduler, florist, gateway, db):
        sub, first = self._due(scheduler, florist)

        counts = scheduler.tick(today=first)

        assert counts["started"] == 1
        [delivery] = _deliveries(db, sub)
        assert delivery.status == st.DLV_PROCESSING
        assert delivery.order_id is not None
        [charge] = gateway.charges
        assert charge["source"].customer_ref == "cus_123"
        assert charge["amount"] == Decimal("95.00") + Decimal("14.99")

    def test_not_due_yet(self, scheduler, florist, gateway):
        sub, first = self._due(scheduler, florist)

        assert scheduler.tick(today=first - timedelta(days=1))["started"] == 0
        assert gateway.charges == []

    def test_delivered_order_advances_from_cycle_date(self, scheduler, orchestrator, florist, db):
        sub, first = self._due(scheduler, florist)
        scheduler.tick(today=first)
        [delivery] = _deliveries(db, sub)
        order = orchestrator.get_order(delivery.order_id, "u-1")
        orchestrator.mark_delivered(order.confirmation_id)

        #processed late, next cycle still keyed off the cycle date
        counts = scheduler.tick(today=first + timedelta(days=2))

        assert counts["settled"] == 1
        assert delivery.status == st.DLV_DELIVERED
        [nxt] = _open(db, sub)
        assert nxt.status == st.DLV_SCHEDULED
        assert sub.next_delivery_date == nxt.delivery_date
        assert nxt.delivery_date == add_interval(first, "monthly", first.day)

    def test_repeated_declines_end_past_due(self, scheduler, florist, gateway, db):
        sub, first = self._due(scheduler, florist)
        gateway.configure(should_succeed=False)

        scheduler.tick(today=first)
        [delivery] = _deliveries(db, sub)
        assert delivery.status == st.DLV_FAILED
        assert delivery.attempts == 1
        assert sub.status == st.SUB_ACTIVE

        later = utcnow() + timedelta(days=2)
        scheduler.tick(today=first, now=later)
        scheduler.tick(today=first, now=later + timedelta(days=2))

        assert delivery.attempts == 3
        assert delivery.status == st.DLV_FAILED
        assert sub.status == st.SUB_PAST_DUE
        assert len(gateway.charges) == 3
        #each attempt gets its own key once the previous order was cancelled
        assert len({c["idempotency_key"] for c in gateway.charges}) == 3

        scheduler.tick(today=first, now=later + timedelta(days=4))
        assert len(gateway.charges) == 3

    def test_retry_after_past_due(self, scheduler, florist, gateway, db):
        sub, first = self._due(scheduler, florist)
        gateway.configure(should_succeed=False)
        later = utcnow() + timedelta(days=2)
        scheduler.tick(today=first)
        scheduler.tick(today=first, now=later)
        scheduler.tick(today=first, now=later + timedelta(days=2))
        [delivery] = _deliveries(db, sub)

        scheduler.retry_delivery(delivery.id, "u-1")
        gateway.configure(should_succeed=True)
        scheduler.tick(today=first, now=later + timedelta(days=3))

        assert sub.status == st.SUB_ACTIVE
        assert delivery.status == st.DLV_PROCESSING
        assert delivery.attempts == 1

    def test_abandon_failed_cycle(self, scheduler, florist, gateway, db):
        sub, first = self._due(scheduler, florist)
        gateway.configure(should_succeed=False)
        scheduler.tick(today=first)
        [delivery] = _deliveries(db, sub)

        scheduler.abandon_delivery(delivery.id, "u-1")

        assert delivery.status == st.DLV_SKIPPED
        [nxt] = _open(db, sub)
        assert nxt.status == st.DLV_SCHEDULED

    def test_undeliverable_date_fails_cycle(self, scheduler, florist, gateway, db):
        sub, first = self._due(scheduler, florist)
        florist.dates[ZIP] = []

        scheduler.tick(today=first)

        [delivery] = _deliveries(db, sub)
        assert delivery.status == st.DLV_FAILED
        assert gateway.charges == []

    def test_unexpected_error_fails_cycle_and_pass_continues(self, scheduler, florist, gateway, locks, db, monkeypatch):
        first = date.today() + timedelta(days=3)
        florist.available(ZIP, first)
        broken = scheduler.create_subscription(_payload(first_delivery_date=first), today=date.today())
        healthy = scheduler.create_subscription(_payload(user_id="u-2", first_delivery_date=first), today=date.today())
        acquire = locks.acquire

        def flaky_acquire(name, ttl):
            if f"sub-{broken.id}-" in name:
                raise redis.ConnectionError("lock store down")
            return acquire(name, ttl)

        monkeypatch.setattr(locks, "acquire", flaky_acquire)

        scheduler.tick(today=first)

        [stuck] = _deliveries(db, broken)
        assert stuck.status == st.DLV_FAILED
        assert stuck.attempts == 1
        assert stuck.order_id is None
        assert stuck.next_attempt_at is not None
        [ok] = _deliveries(db, healthy)
        assert ok.status == st.DLV_PROCESSING
        assert ok.order_id is not None

        monkeypatch.setattr(locks, "acquire", acquire)
        scheduler.tick(today=first, now=utcnow() + timedelta(days=2))

        assert stuck.status == st.DLV_PROCESSING
        assert stuck.attempts == 2
        assert stuck.order_id is not None
        assert len(gateway.charges) == 2

    def test_unknown_charge_outcome_resumed_with_same_key(self, scheduler, orchestrator, florist, gateway, db):
        sub, first = self._due(scheduler, florist)
        gateway.configure(unavailable=True)

        scheduler.tick(today=first)

        [delivery] = _deliveries(db, sub)
        assert delivery.status == st.DLV_PROCESSING
        order = orchestrator.get_order(delivery.order_id, "u-1")
        assert order.status == st.PENDING

        gateway.configure(unavailable=False)
        scheduler.tick(today=first)

        assert order.status == st.CONFIRMED
        assert delivery.status == st.DLV_PROCESSING
        assert {c["idempotency_key"] for c in gateway.charges} == {f"order-{delivery.idempotency_key}"}

    def test_held_order_is_left_to_operator(self, scheduler, orchestrator, florist, gateway, db):
        sub, first = self._due(scheduler, florist)
        gateway.configure(unavailable=True)
        scheduler.tick(today=first)
        orchestrator.expire_abandoned(now=utcnow() + timedelta(hours=1))
        gateway.configure(unavailable=False)
        calls = len(gateway.charges)

        scheduler.tick(today=first)

        [delivery] = _deliveries(db, sub)
        assert delivery.status == st.DLV_PROCESSING
        assert len(gateway.charges) == calls


class TestMonotonicity:
    def _delivered(self, scheduler, orchestrator, florist, db):
        first = date.today() + timedelta(days=3)
        florist.available(ZIP, first)
        sub = scheduler.create_subscription(_payload(first_delivery_date=first), today=date.today())
        scheduler.tick(today=first)
        [delivery] = _deliveries(db, sub)
        order = orchestrator.get_order(delivery.order_id, "u-1")
        orchestrator.mark_delivered(order.confirmation_id)
        scheduler.tick(today=first)
        assert delivery.status == st.DLV_DELIVERED
        return delivery

    @pytest.mark.parametrize(
        "target",
        [st.DLV_SCHEDULED, st.DLV_PROCESSING, st.DLV_FAILED, st.DLV_SKIPPED, st.DLV_CANCELLED],
    )
    def test_delivered_is_terminal(self, scheduler, orchestrator, florist, db, target):
        delivery = self._delivered(scheduler, orchestrator, florist, db)

        with pytest.raises(ValueError):
            scheduler.repo.transition_delivery(delivery.id, st.DLV_DELIVERED, target)

        assert delivery.status == st.DLV_DELIVERED

    def test_delivered_cycle_cannot_be_skipped_or_abandoned(self, scheduler, orchestrator, florist, db):
        delivery = self._delivered(scheduler, orchestrator, florist, db)

        with pytest.raises(ValueError):
            scheduler.skip(delivery.id, "u-1")
        with pytest.raises(ValueError):
            scheduler.abandon_delivery(delivery.id, "u-1")

        assert delivery.status == st.DLV_DELIVERED
