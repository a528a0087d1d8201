# bloom/domain/status.py

# Order
PENDING = "pending"
PROCESSING = "processing"
CONFIRMED = "confirmed"
DELIVERED = "delivered"
CANCELLED = "cancelled"
REFUNDED = "refunded"

ORDER_TRANSITIONS = {
    PENDING: {PROCESSING, CANCELLED},
    PROCESSING: {CONFIRMED, CANCELLED, REFUNDED},
    CONFIRMED: {DELIVERED},
    DELIVERED: set(),
    CANCELLED: set(),
    REFUNDED: set(),
}

# Subscription
SUB_ACTIVE = "active"
SUB_PAUSED = "paused"
SUB_CANCELLED = "cancelled"
SUB_PAST_DUE = "past_due"

# SubscriptionDelivery
DLV_SCHEDULED = "scheduled"
DLV_PROCESSING = "processing"
DLV_DELIVERED = "delivered"
DLV_SKIPPED = "skipped"
DLV_FAILED = "failed"
DLV_CANCELLED = "cancelled"

#open = counts against "one pending delivery per subscription"
DLV_OPEN = (DLV_SCHEDULED, DLV_PROCESSING, DLV_FAILED)

DELIVERY_TRANSITIONS = {
    DLV_SCHEDULED: {DLV_PROCESSING, DLV_SKIPPED, DLV_CANCELLED},
    DLV_PROCESSING: {DLV_DELIVERED, DLV_FAILED},
    DLV_FAILED: {DLV_PROCESSING, DLV_SKIPPED},
    DLV_DELIVERED: set(),
    DLV_SKIPPED: set(),
    DLV_CANCELLED: set(),
}


def can_transition(transitions: dict, current: str, new: str) -> bool:
    return new in transitions.get(current, set())
