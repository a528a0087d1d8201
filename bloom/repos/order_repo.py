# bloom/repos/order_repo.py
from datetime import datetime
from typing import List

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from bloom.data.models.order import OrderModel
from bloom.domain import status as st


class OrderRepo:
    def __init__(self, db: Session):
        self.db = db

    def create_order(self, order: OrderModel) -> OrderModel:
        self.db.add(order)
        self.db.commit()
        self.db.refresh(order)
        return order

    def get_order(self, order_id: int) -> OrderModel | None:
        return self.db.get(OrderModel, order_id)

    def get_by_idempotency_key(self, key: str) -> OrderModel | None:
        return self.db.execute(
            select(OrderModel).where(OrderModel.idempotency_key == key)
        ).scalar_one_or_none()

    def get_by_confirmation(self, confirmation_id: str) -> OrderModel | None:
        return self.db.execute(
            select(OrderModel).where(OrderModel.confirmation_id == confirmation_id)
        ).scalar_one_or_none()

    def transition(self, order_id: int, from_status: str, to_status: str, **fields) -> bool:
        """
        Compare-and-set on status: only advance from X to Y if the row is still X.
        Two concurrent retries cannot both win.
        """
        if not st.can_transition(st.ORDER_TRANSITIONS, from_status, to_status):
            raise ValueError(f"Illegal order transition {from_status} -> {to_status}")

        result = self.db.execute(
            update(OrderModel)
            .where(OrderModel.id == order_id, OrderModel.status == from_status)
            .values(status=to_status, **fields)
        )
        self.db.commit()
        won = result.rowcount == 1
        if won:
            self.refresh(order_id)
        return won

    def update_fields(self, order_id: int, expected_status: str, **fields) -> bool:
        #same guard as transition, status stays put
        result = self.db.execute(
            update(OrderModel)
            .where(OrderModel.id == order_id, OrderModel.status == expected_status)
            .values(**fields)
        )
        self.db.commit()
        if result.rowcount == 1:
            self.refresh(order_id)
        return result.rowcount == 1

    def refresh(self, order_id: int) -> None:
        order = self.db.get(OrderModel, order_id)
        if order is not None:
            self.db.refresh(order)

    def due_fulfillment_retries(self, now: datetime) -> List[OrderModel]:
        return list(
            self.db.execute(
                select(OrderModel).where(
                    OrderModel.status == st.PROCESSING,
                    OrderModel.needs_reconciliation.is_(False),
                    OrderModel.next_fulfillment_attempt_at.is_not(None),
                    OrderModel.next_fulfillment_attempt_at <= now,
                )
            ).scalars()
        )

    def confirmed_orders(self) -> List[OrderModel]:
        return list(
            self.db.execute(
                select(OrderModel).where(
                    OrderModel.status == st.CONFIRMED,
                    OrderModel.confirmation_id.is_not(None),
                )
            ).scalars()
        )

    def abandoned_pending(self, older_than: datetime) -> List[OrderModel]:
        #never reached the processor, safe to cancel
        return list(
            self.db.execute(
                select(OrderModel).where(
                    OrderModel.status == st.PENDING,
                    OrderModel.charge_attempted_at.is_(None),
                    OrderModel.created_at < older_than,
                )
            ).scalars()
        )

    def unresolved_charges(self, older_than: datetime) -> List[OrderModel]:
        #charge sent, outcome never learned
        return list(
            self.db.execute(
                select(OrderModel).where(
                    OrderModel.status == st.PENDING,
                    OrderModel.charge_attempted_at.is_not(None),
                    OrderModel.charge_attempted_at < older_than,
                    OrderModel.needs_reconciliation.is_(False),
                )
            ).scalars()
        )

    def needing_reconciliation(self) -> List[OrderModel]:
        return list(
            self.db.execute(
                select(OrderModel)
                .where(OrderModel.needs_reconciliation.is_(True))
                .order_by(OrderModel.created_at)
            ).scalars()
        )

    def rollback(self) -> None:
        self.db.rollback()
