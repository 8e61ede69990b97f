import asyncio
import logging
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import config
from .errors import (
    BookingNotFound,
    ConflictError,
    ExternalServiceError,
    PersistenceError,
    TransactionNotFound,
    ValidationError,
)
from .routes import router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [booking-service] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception):
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


async def _build_runtime(app: FastAPI):
    from shared.rabbitmq import RabbitPublisher
    from shared.redis_client import get_redis

    from .adapters.breaker import CircuitBreaker
    from .adapters.notifications import RabbitNotificationDispatcher
    from .adapters.payment_gateway import HttpPaymentGateway
    from .adapters.redis_scheduler import RedisTaskScheduler
    from .adapters.sql_store import SqlBookingStore
    from .adapters.tracking import RabbitLocationTracker
    from .db import SessionLocal, engine
    from .policy import load_policy
    from .service import BookingOrchestrator

    redis_client = get_redis(config.REDIS_URL)
    publisher = RabbitPublisher(config.RABBIT_URL)
    try:
        await publisher.connect()
    except Exception:
        logger.warning("RabbitMQ connect failed at startup; continuing")

    orchestrator = BookingOrchestrator(
        SqlBookingStore(SessionLocal),
        HttpPaymentGateway(
            config.PAYMENT_GATEWAY_URL,
            breaker=CircuitBreaker(redis_client, "payment-gateway", failure_threshold=5, reset_timeout_seconds=15),
        ),
        RabbitNotificationDispatcher(publisher),
        RedisTaskScheduler(redis_client),
        RabbitLocationTracker(publisher),
        policy=load_policy(config.SETTLE_DELAY_SECONDS, config.PAYOUT_DELAY_SECONDS),
        admin_target=config.ADMIN_NOTIFY_TARGET,
        platform_fee_rate=config.PLATFORM_FEE_RATE,
        stale_after=timedelta(minutes=config.STALE_TRANSACTION_MINUTES),
        poll_seconds=config.TASK_POLL_SECONDS,
    )

    app.state.orchestrator = orchestrator
    app.state.publisher = publisher
    app.state.redis = redis_client
    app.state.engine = engine


def create_app(orchestrator=None, jwt_secret: str | None = None, jwt_algorithm: str | None = None) -> FastAPI:
    app = FastAPI(title="Booking Service")
    app.include_router(router)

    app.state.orchestrator = orchestrator
    app.state.jwt_secret = jwt_secret or config.JWT_SECRET
    app.state.jwt_algorithm = jwt_algorithm or config.JWT_ALGORITHM
    app.state.stop_event = asyncio.Event()
    app.state.background = []
    app.state.owns_runtime = orchestrator is None

    app.add_exception_handler(BookingNotFound, _error_handler(404))
    app.add_exception_handler(TransactionNotFound, _error_handler(404))
    app.add_exception_handler(ValidationError, _error_handler(400))
    app.add_exception_handler(ConflictError, _error_handler(409))
    app.add_exception_handler(ExternalServiceError, _error_handler(502))
    app.add_exception_handler(PersistenceError, _error_handler(503))

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "booking-service"}

    @app.on_event("startup")
    async def startup():
        if not app.state.jwt_secret:
            raise RuntimeError("JWT_SECRET environment variable is not set")

        if app.state.owns_runtime:
            await _build_runtime(app)

        orch = app.state.orchestrator
        stop_event = app.state.stop_event
        app.state.background = [
            asyncio.create_task(orch.tasks.run(stop_event)),
            asyncio.create_task(orch.sweeper.run(stop_event)),
        ]
        logger.info("booking-service started")

    @app.on_event("shutdown")
    async def shutdown():
        app.state.stop_event.set()
        for task in app.state.background:
            try:
                await task
            except Exception:
                logger.exception("background loop ended with an error")

        if app.state.orchestrator:
            await app.state.orchestrator.drain()

        if app.state.owns_runtime:
            await app.state.publisher.close()
            await app.state.redis.aclose()
            await app.state.engine.dispose()

    return app


app = create_app()
