"""
Task Market - Main API Server

Task lifecycle and escrow transaction engine for a two-sided marketplace.
"""

from contextlib import asynccontextmanager
from datetime import timedelta

import redis.asyncio as redis
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import Settings, get_settings
from .core.interfaces import ILedgerStore, INotifier, IPaymentGateway
from .infrastructure.messaging import (
    LogNotifier,
    NotificationDispatcher,
    WebhookNotifier,
    create_webhook_config_from_settings,
)
from .infrastructure.payments import PaymentGatewayClient
from .infrastructure.persistence import InMemoryLedgerStore, SqlLedgerStore
from .infrastructure.persistence.postgres import get_engine, get_session_factory
from .logging import setup_logging
from .routes import dependencies, disputes, payments, work_items
from .services import (
    AssignmentService,
    BidLedger,
    DisputeService,
    EscrowService,
    EventPublisher,
    Marketplace,
)

logger = structlog.get_logger()


def build_marketplace(
    store: ILedgerStore,
    gateway: IPaymentGateway,
    notifier: INotifier | None,
    settings: Settings,
) -> Marketplace:
    """Wire the engine services over one store, gateway and notifier"""
    events = EventPublisher(notifier)
    escrow = EscrowService(
        store,
        gateway,
        events,
        currency=settings.default_currency,
        capture_callback_max_attempts=settings.capture_callback_max_attempts,
    )
    return Marketplace(
        assignments=AssignmentService(store, escrow, events),
        bids=BidLedger(store, escrow, events),
        escrow=escrow,
        disputes=DisputeService(
            store,
            escrow,
            events,
            grace_period=timedelta(hours=settings.dispute_grace_period_hours),
        ),
    )


def create_gateway_client(settings: Settings) -> PaymentGatewayClient:
    return PaymentGatewayClient(
        base_url=settings.gateway_base_url,
        merchant_code=settings.gateway_merchant_code,
        secret_key=settings.gateway_secret_key,
        success_url=settings.gateway_success_url,
        failure_url=settings.gateway_failure_url,
        timeout=settings.gateway_timeout,
    )


def create_store(settings: Settings) -> ILedgerStore:
    if not settings.database_url:
        logger.warning("ledger_store_in_memory")
        return InMemoryLedgerStore()
    engine = get_engine(settings.database_url)
    return SqlLedgerStore(get_session_factory(engine), engine=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager"""
    settings: Settings = app.state.settings
    setup_logging(settings.log_level, json_output=settings.log_json)

    # Startup
    store = create_store(settings)
    gateway = create_gateway_client(settings)

    redis_client = None
    if settings.redis_url:
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    webhook_config = create_webhook_config_from_settings(settings)
    webhook_notifier: WebhookNotifier | None = None
    if webhook_config:
        webhook_notifier = WebhookNotifier(webhook_config, redis=redis_client)
        await webhook_notifier.start()
        sink: INotifier = webhook_notifier
    else:
        sink = LogNotifier()

    dispatcher = NotificationDispatcher(
        sink,
        retry_count=settings.notifier_retry_count,
        retry_delay=settings.notifier_retry_delay,
        max_queue_size=settings.notifier_queue_size,
    )
    await dispatcher.start()

    marketplace = build_marketplace(store, gateway, dispatcher, settings)
    dependencies.init_services(marketplace, gateway)

    logger.info(
        "service_started",
        service=settings.service_name,
        version=__version__,
        store=type(store).__name__,
        webhook=webhook_config.url if webhook_config else None,
        gateway=settings.gateway_base_url,
    )

    yield

    # Shutdown
    await dispatcher.stop(drain=True)
    if webhook_notifier:
        await webhook_notifier.stop()
    if redis_client is not None:
        await redis_client.aclose()
    await store.close()
    logger.info("service_stopped", service=settings.service_name)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create the FastAPI application"""
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.service_name,
        description="Task lifecycle, bidding, escrow and dispute engine",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(work_items.router)
    app.include_router(work_items.bids_router)
    app.include_router(payments.router)
    app.include_router(disputes.router)

    @app.get("/health")
    async def health():
        """Health check"""
        return {"status": "healthy", "service": settings.service_name, "version": __version__}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run("taskmarket.api:app", host=_settings.host, port=_settings.port)
