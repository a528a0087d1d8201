# bloom/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI
import uvicorn

from bloom.data.database import Base, engine
import bloom.data.models  # noqa: F401  registers every model on Base.metadata
from bloom.api.routers import (
    admin,
    carts,
    checkout,
    delivery,
    health,
    orders,
    payments,
    subscriptions,
    webhooks,
)
from bloom.utils.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Creating tables: {list(Base.metadata.tables.keys())}")
    try:
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        logger.error(f"Failed to create tables: {e}")
        raise
    yield


def create_app() -> FastAPI:
    app = FastAPI(
        title="Bloom Checkout",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.include_router(health.router)
    app.include_router(carts.router)
    app.include_router(delivery.router)
    app.include_router(checkout.router)
    app.include_router(payments.router)
    app.include_router(orders.router)
    app.include_router(subscriptions.router)
    app.include_router(webhooks.router)
    app.include_router(admin.router)

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
