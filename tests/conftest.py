import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["FLORIST_WEBHOOK_SECRET"] = "hook-secret"
os.environ["ADMIN_API_TOKEN"] = "admin-token"

from datetime import date, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import bloom.data.models  # noqa: F401
from bloom.celery_worker import celery_app
from bloom.data.database import Base, get_db
from bloom.domain.errors import FulfillmentUnavailable
from bloom.domain.schemas import RecipientIn, SenderIn
from bloom.domain.types import CartLine, CartSnapshot, DeliveryDate, DeliveryQuote, FulfillmentAck, PaymentToken, PriceCheck
from bloom.services.cart_service import CartService
from bloom.services.delivery_resolver import DeliveryResolver
from bloom.services.order_orchestrator import OrderOrchestrator
from bloom.services.payments.fake_adapter import FakeGateway
from bloom.services.subscription_scheduler import SubscriptionScheduler

#notifications run inline, no broker in tests
celery_app.conf.task_always_eager = True

ZIP = "94102"
DELIVERY_DATE = date.today() + timedelta(days=5)
FEE = Decimal("14.99")


class FakeFloristClient:
    """In-process florist network. Configure per test, inspect calls after."""

    def __init__(self):
        self.products = {
            "F1-509": {"code": "F1-509", "name": "Sunny Day", "price": Decimal("49.00")},
            "F1-120": {"code": "F1-120", "name": "Pastel Mix", "price": Decimal("25.50")},
        }
        self.dates = {}
        self.total = None
        self.place_outcomes = []
        self.statuses = {}
        self.date_calls = []
        self.total_calls = []
        self.placed = []

    def available(self, zip_code, *days, fee=FEE):
        self.dates[zip_code] = [DeliveryDate(date=d, fee=fee, available=True) for d in days]

    def get_delivery_dates(self, zip_code):
        self.date_calls.append(zip_code)
        value = self.dates.get(zip_code, [])
        if isinstance(value, Exception):
            raise value
        return value

    def get_total(self, products, zip_code, delivery_date):
        self.total_calls.append((zip_code, delivery_date))
        if isinstance(self.total, Exception):
            raise self.total
        if self.total is not None:
            return self.total
        subtotal = sum((p["price"] * p["quantity"] for p in products), Decimal("0.00"))
        fee = next(
            (d.fee for d in self.dates.get(zip_code, []) if d.date == delivery_date),
            None,
        )
        if fee is None:
            raise FulfillmentUnavailable("no fee")
        return PriceCheck(subtotal=subtotal, delivery_fee=fee, tax=Decimal("0.00"))

    def get_product(self, code):
        if code not in self.products:
            raise LookupError(f"Product {code} not found")
        return dict(self.products[code])

    def place_order(self, order):
        #status as seen at submit time, must already be charged
        self.placed.append((order.id, order.status))
        if self.place_outcomes:
            outcome = self.place_outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return FulfillmentAck(confirmation_id=f"CONF-{order.id}")

    def get_order_status(self, confirmation_id):
        return self.statuses.get(confirmation_id, "in progress")


class FakeLockService:
    def __init__(self):
        self.held = {}
        self.acquired = []

    def acquire(self, name, ttl):
        if name in self.held:
            return None
        owner = f"owner-{len(self.acquired)}"
        self.held[name] = owner
        self.acquired.append(name)
        return owner

    def release(self, name, owner):
        if self.held.get(name) == owner:
            del self.held[name]
            return True
        return False


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    yield session
    session.close()


@pytest.fixture
def florist():
    florist = FakeFloristClient()
    florist.available(ZIP, DELIVERY_DATE, DELIVERY_DATE + timedelta(days=1))
    return florist


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def locks():
    return FakeLockService()


@pytest.fixture
def resolver(florist):
    return DeliveryResolver(florist)


@pytest.fixture
def orchestrator(db, resolver, gateway, florist, locks):
    return OrderOrchestrator(
        db=db,
        resolver=resolver,
        gateway=gateway,
        florist=florist,
        lock_service=locks,
    )


@pytest.fixture
def scheduler(db, orchestrator):
    return SubscriptionScheduler(db, orchestrator)


@pytest.fixture
def carts(db, florist):
    return CartService(db, florist)


@pytest.fixture
def client(db, florist, gateway, locks):
    from bloom.api import dependencies
    from bloom.main import create_app

    app = create_app()

    def _db():
        yield db

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[dependencies.get_florist] = lambda: florist
    app.dependency_overrides[dependencies.get_resolver] = lambda: DeliveryResolver(florist)
    app.dependency_overrides[dependencies.get_payment_gateway] = lambda: gateway
    app.dependency_overrides[dependencies.get_lock_service] = lambda: locks
    return TestClient(app)


# =====================================================
# BUILDERS
# =====================================================
def make_recipient(**overrides) -> RecipientIn:
    data = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "phone": "(415) 555-0100",
        "address1": "1 Market St",
        "city": "San Francisco",
        "state": "CA",
        "zip": ZIP,
    }
    data.update(overrides)
    return RecipientIn(**data)


def make_sender(**overrides) -> SenderIn:
    data = {
        "first_name": "Grace",
        "last_name": "Hopper",
        "email": "Grace@Example.com",
        "phone": "212-555-0199",
        "address1": "10 Broadway",
        "city": "New York",
        "state": "NY",
        "zip": "10004",
    }
    data.update(overrides)
    return SenderIn(**data)


def make_cart(*lines, session_id="sess-1") -> CartSnapshot:
    if not lines:
        lines = (CartLine(sku="F1-509", name="Sunny Day", quantity=1, unit_price=Decimal("49.00")),)
    return CartSnapshot(session_id=session_id, lines=tuple(lines))


def make_quote(fee=FEE, delivery_date=DELIVERY_DATE, zip_code=ZIP) -> DeliveryQuote:
    return DeliveryQuote.issue(zip_code, delivery_date, fee)


def make_token(processor="fake") -> PaymentToken:
    return PaymentToken(value="fake_tok_123", processor=processor)


def checkout(orchestrator, key="key-1", **overrides):
    kwargs = {
        "cart": make_cart(),
        "quote": make_quote(),
        "payment": make_token(),
        "recipient": make_recipient(),
        "sender": make_sender(),
        "idempotency_key": key,
        "card_message": "Happy birthday!",
    }
    kwargs.update(overrides)
    return orchestrator.place_order(**kwargs)
