import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as redis
from fastapi import FastAPI
from fastapi_limiter import FastAPILimiter

from . import models
from .config import settings
from .database import engine
from .exceptions import AppError, app_error_handler
from .outbox_poller import run_outbox_poller
from .routers import (
    auth_router,
    blog_router,
    booking_router,
    payment_router,
    payout_router,
    review_router,
    subscription_router,
    tour_router,
    user_router,
)
from .scheduler import run_maintenance_scheduler
from .seed import run_startup_seeds

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("tourhub")

# Alembic owns the schema in production; this keeps local runs working
models.Base.metadata.create_all(bind=engine)


async def _stop_task(task: asyncio.Task, name: str) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.info(f"{name} task successfully cancelled.")
    except Exception as e:
        logger.error(f"Error during {name} shutdown: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Seeds reference data, wires the rate limiter to Redis and starts the
    outbox poller and maintenance scheduler.
    """
    logger.info("Tour booking API starting up...")
    run_startup_seeds()

    redis_client = None
    try:
        redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8")
        await FastAPILimiter.init(redis_client)
        logger.info("FastAPILimiter initialized with Redis.")
    except Exception as e:
        logger.error(f"Failed to initialize FastAPILimiter: {e}")

    poller_task = asyncio.create_task(run_outbox_poller())
    scheduler_task = asyncio.create_task(run_maintenance_scheduler())

    yield

    logger.info("Shutting down background tasks...")
    await _stop_task(poller_task, "Outbox poller")
    await _stop_task(scheduler_task, "Maintenance scheduler")

    if redis_client is not None:
        await redis_client.aclose()


app = FastAPI(
    title="Tour Booking API",
    description="Tours, bookings, payments, payouts and host subscriptions.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_exception_handler(AppError, app_error_handler)

app.include_router(auth_router.router)
app.include_router(user_router.router)
app.include_router(tour_router.router)
app.include_router(booking_router.router)
app.include_router(payment_router.router)
app.include_router(payout_router.router)
app.include_router(subscription_router.router)
app.include_router(review_router.router)
app.include_router(blog_router.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Tour Booking API"}
