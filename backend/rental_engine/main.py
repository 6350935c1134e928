"""
Rental Booking Engine - Main Application Entry Point

Booking lifecycle and payment orchestration for a peer-to-peer rental
marketplace:
- Atomic date-range holds guarded by a (listing, day) unique constraint
- Compare-and-swap booking transitions with a post-commit event feed
- Stripe authorization, capture, owner transfer and refunds, reconciled
  from processor state only
- Background expiration sweeper
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rental_engine.core.config import get_settings
from rental_engine.core.logging import setup_logging, get_logger
from rental_engine.core.metrics import metrics_endpoint
from rental_engine.api.errors import register_exception_handlers
from rental_engine.api.router import api_router
from rental_engine.api.middleware import RequestLoggingMiddleware
from rental_engine.db.session import SessionLocal
from rental_engine.services.cache_service import get_redis, close_redis, get_cache_stats
from rental_engine.services.events import RecordingSubscriber, TransitionPublisher
from rental_engine.services.payments.stripe_processor import StripeProcessor
from rental_engine.services.sweeper import run_sweeper_loop

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()
    logger = get_logger(__name__)

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
    )

    redis_client = await get_redis()
    if redis_client:
        logger.info("redis_ready")
    else:
        logger.warning("redis_unavailable", message="Running without cache or pub/sub feed")

    app.state.recent_transitions = RecordingSubscriber(limit=100)
    app.state.publisher = TransitionPublisher(redis_client, settings.TRANSITION_CHANNEL)
    app.state.publisher.subscribe(app.state.recent_transitions)
    app.state.processor = StripeProcessor(
        settings.STRIPE_SECRET_KEY,
        settings.STRIPE_WEBHOOK_SECRET,
        timeout=settings.PAYMENT_TIMEOUT_SECONDS,
    )

    sweeper_task = None
    if settings.SWEEPER_ENABLED:
        sweeper_task = asyncio.create_task(
            run_sweeper_loop(SessionLocal, app.state.processor, app.state.publisher, settings)
        )

    yield

    if sweeper_task is not None:
        sweeper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper_task
    await close_redis()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Booking lifecycle and payment orchestration for a rental marketplace",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)
register_exception_handlers(app)

app.include_router(api_router)
app.add_api_route("/metrics", metrics_endpoint, methods=["GET"], include_in_schema=False)


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    cache_stats = await get_cache_stats()
    recent = getattr(app.state, "recent_transitions", None)
    last = recent.events[-1].timestamp.isoformat() if recent and recent.events else None
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "cache": cache_stats,
        "last_transition_at": last,
    }


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
