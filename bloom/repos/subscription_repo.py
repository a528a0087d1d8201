# bloom/repos/subscription_repo.py
from datetime import date, datetime
from typing import List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from bloom.data.models.subscription import SubscriptionModel
from bloom.data.models.subscription_delivery import SubscriptionDeliveryModel
from bloom.domain import status as st


class SubscriptionRepo:
    def __init__(self, db: Session):
        self.db = db

    def create(self, subscription: SubscriptionModel) -> SubscriptionModel:
        self.db.add(subscription)
        self.db.flush()
        return subscription

    def get(self, subscription_id: int) -> SubscriptionModel | None:
        return self.db.get(SubscriptionModel, subscription_id)

    def get_delivery(self, delivery_id: int) -> SubscriptionDeliveryModel | None:
        return self.db.get(SubscriptionDeliveryModel, delivery_id)

    def open_delivery(self, subscription_id: int) -> SubscriptionDeliveryModel | None:
        return self.db.execute(
            select(SubscriptionDeliveryModel).where(
                SubscriptionDeliveryModel.subscription_id == subscription_id,
                SubscriptionDeliveryModel.status.in_(st.DLV_OPEN),
            )
        ).scalar_one_or_none()

    def add_delivery(self, delivery: SubscriptionDeliveryModel) -> SubscriptionDeliveryModel:
        self.db.add(delivery)
        self.db.flush()
        return delivery

    def transition_delivery(self, delivery_id: int, from_status: str, to_status: str, **fields) -> bool:
        if not st.can_transition(st.DELIVERY_TRANSITIONS, from_status, to_status):
            raise ValueError(f"Illegal delivery transition {from_status} -> {to_status}")

        result = self.db.execute(
            update(SubscriptionDeliveryModel)
            .where(
                SubscriptionDeliveryModel.id == delivery_id,
                SubscriptionDeliveryModel.status == from_status,
            )
            .values(status=to_status, **fields)
        )
        self.db.flush()
        won = result.rowcount == 1
        if won:
            delivery = self.db.get(SubscriptionDeliveryModel, delivery_id)
            self.db.refresh(delivery)
        return won

    def due_scheduled(self, today: date) -> List[SubscriptionDeliveryModel]:
        return list(
            self.db.execute(
                select(SubscriptionDeliveryModel)
                .join(SubscriptionModel)
                .where(
                    SubscriptionModel.status == st.SUB_ACTIVE,
                    SubscriptionDeliveryModel.status == st.DLV_SCHEDULED,
                    SubscriptionDeliveryModel.delivery_date <= today,
                )
                .order_by(SubscriptionDeliveryModel.delivery_date)
            ).scalars()
        )

    def due_retries(self, now: datetime, max_attempts: int) -> List[SubscriptionDeliveryModel]:
        return list(
            self.db.execute(
                select(SubscriptionDeliveryModel)
                .join(SubscriptionModel)
                .where(
                    SubscriptionModel.status == st.SUB_ACTIVE,
                    SubscriptionDeliveryModel.status == st.DLV_FAILED,
                    SubscriptionDeliveryModel.attempts < max_attempts,
                    SubscriptionDeliveryModel.next_attempt_at <= now,
                )
            ).scalars()
        )

    def in_flight(self) -> List[SubscriptionDeliveryModel]:
        return list(
            self.db.execute(
                select(SubscriptionDeliveryModel).where(
                    SubscriptionDeliveryModel.status == st.DLV_PROCESSING,
                    SubscriptionDeliveryModel.order_id.is_not(None),
                )
            ).scalars()
        )

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()
