import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from hmarket.auth import AuthVerifier, JwtAuthVerifier
from hmarket.config import Settings, settings
from hmarket.db import PostgresOrderStore, close_pool, get_pool, init_schema
from hmarket.drivers import InMemoryDriverDirectory, RedisDriverDirectory
from hmarket.errors import (
    AlreadyAssignedError,
    AlreadyDeliveredError,
    ConcurrentModificationError,
    DriverUnavailableError,
    HMarketError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    UnauthenticatedError,
    ValidationError,
)
from hmarket.metrics import get_metrics_bytes, get_metrics_content_type
from hmarket.notifications import (
    LoggingNotifier,
    NotificationDispatcher,
    Notifier,
    RedisNotifier,
    SqsNotifier,
)
from hmarket.redis_client import close_redis, get_redis
from hmarket.routes import delivery, drivers, orders, webhooks
from hmarket.service import OrderService
from hmarket.store import InMemoryOrderStore

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

# Most specific first; looked up along the exception's MRO.
_STATUS_CODES: dict[type[HMarketError], int] = {
    NotFoundError: 404,
    PermissionDeniedError: 403,
    UnauthenticatedError: 401,
    InvalidTransitionError: 409,
    AlreadyAssignedError: 409,
    AlreadyDeliveredError: 409,
    ConcurrentModificationError: 409,
    DriverUnavailableError: 400,
    ValidationError: 400,
    StorageError: 503,
}


def status_code_for(exc: HMarketError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_CODES:
            return _STATUS_CODES[cls]
    return 500


async def build_service(cfg: Settings) -> OrderService:
    """Wire the configured backends."""
    if cfg.store_backend == "postgres":
        pool = await get_pool()
        await init_schema(pool)
        store = PostgresOrderStore(pool)
    else:
        store = InMemoryOrderStore()

    if cfg.driver_directory_backend == "redis":
        directory = RedisDriverDirectory(await get_redis())
    else:
        directory = InMemoryDriverDirectory()

    notifier: Notifier
    if cfg.notifier_backend == "redis":
        notifier = RedisNotifier(await get_redis())
    elif cfg.notifier_backend == "sqs":
        if not cfg.sqs_notifications_url:
            raise RuntimeError("SQS_NOTIFICATIONS_URL must be set when NOTIFIER_BACKEND=sqs")
        notifier = SqsNotifier(cfg.sqs_notifications_url)
    else:
        notifier = LoggingNotifier()

    logger.info(
        "Backends: store=%s drivers=%s notifier=%s",
        cfg.store_backend,
        cfg.driver_directory_backend,
        cfg.notifier_backend,
    )
    return OrderService(
        store,
        directory,
        NotificationDispatcher(notifier),
        delivery_fees=cfg.delivery_fees(),
        tax_rate=cfg.tax_rate,
        currency=cfg.currency,
        require_delivery_code=cfg.require_delivery_code,
        admin_user_ids=cfg.admin_user_ids,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.service is None:
        app.state.service = await build_service(settings)
    yield
    # Graceful shutdown: let in-flight notifications finish before closing connections
    await app.state.service.dispatcher.drain(timeout=settings.notification_drain_timeout_sec)
    await close_redis()
    await close_pool()


def create_app(
    service: OrderService | None = None,
    auth: AuthVerifier | None = None,
    webhook_secret: str | None = None,
) -> FastAPI:
    """
    service=None builds one from settings at startup. Tests pass their own
    (in-memory backends) along with a verifier.
    """
    app = FastAPI(title="H-Market Orders", lifespan=lifespan)
    app.state.service = service
    app.state.auth = auth or JwtAuthVerifier(settings.jwt_secret, settings.jwt_algorithm)
    app.state.webhook_secret = webhook_secret if webhook_secret is not None else settings.payment_webhook_secret

    app.include_router(orders.router)
    app.include_router(delivery.router)
    app.include_router(drivers.router)
    app.include_router(webhooks.router)

    @app.exception_handler(HMarketError)
    async def hmarket_error(request: Request, exc: HMarketError) -> JSONResponse:
        status = status_code_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.warning("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc)
        return JSONResponse(status_code=status, content={"error": exc.code, "message": str(exc)})

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus scrape endpoint: orders placed, transitions, claims, notifications."""
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


app = create_app()
