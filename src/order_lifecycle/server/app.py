"""FastAPI application setup and configuration."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sqlalchemy.ext.asyncio import AsyncEngine

from order_lifecycle.api.paypal import PayPalClient
from order_lifecycle.api.stripe import StripeClient
from order_lifecycle.config.settings import Settings, get_settings
from order_lifecycle.core.errors import ErrorCategory, OrderLifecycleError, http_status_for
from order_lifecycle.core.event_logger import WebhookEventLogger
from order_lifecycle.core.logger import setup_logger
from order_lifecycle.core.monitoring import capture_exception
from order_lifecycle.db.base import get_engine, get_session_factory, init_db
from order_lifecycle.db.repository import OrderRepository
from order_lifecycle.db.seed import seed_transitions
from order_lifecycle.integrations.notifier import NotificationDispatcher
from order_lifecycle.server.auth import PrincipalResolver
from order_lifecycle.services.anomaly_manager import AnomalyManager
from order_lifecycle.services.carrier_webhook import CarrierWebhookProcessor
from order_lifecycle.services.escalation_scheduler import AnomalyEscalationScheduler
from order_lifecycle.services.payment_verifier import PaymentVerifier
from order_lifecycle.services.status_engine import StatusTransitionEngine
from order_lifecycle.services.stripe_webhook import StripeWebhookHandler

logger = setup_logger(__name__)


@dataclass
class ServiceContainer:
    """Everything a request handler needs, built once per application."""

    settings: Settings
    db_engine: AsyncEngine
    repository: OrderRepository
    notifier: NotificationDispatcher
    anomaly_manager: AnomalyManager
    status_engine: StatusTransitionEngine
    payment_verifier: PaymentVerifier
    carrier_webhook: CarrierWebhookProcessor
    stripe_webhook: StripeWebhookHandler
    principal_resolver: PrincipalResolver
    paypal_client: Optional[PayPalClient] = None
    stripe_client: Optional[StripeClient] = None
    scheduler: Optional[AnomalyEscalationScheduler] = None

    async def close(self) -> None:
        """Release network clients and the database pool."""
        for client in (self.paypal_client, self.stripe_client):
            if client is not None:
                await client.aclose()
        await self.db_engine.dispose()


def build_services(
    settings: Settings,
    db_engine: Optional[AsyncEngine] = None,
    paypal_transport: Optional[httpx.AsyncBaseTransport] = None,
    stripe_transport: Optional[httpx.AsyncBaseTransport] = None,
    auth_transport: Optional[httpx.AsyncBaseTransport] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> ServiceContainer:
    """
    Wire repositories, clients and services from settings.

    Transports and the notifier can be injected for tests.
    """
    db_engine = db_engine or get_engine(settings.database_url)
    repository = OrderRepository(get_session_factory(db_engine))

    if notifier is None:
        notifier = NotificationDispatcher(
            settings.functions_base_url,
            service_key=settings.functions_service_key,
            timeout=settings.notification_timeout_seconds,
        )

    paypal_client = None
    if settings.paypal_client_id and settings.paypal_client_secret:
        paypal_client = PayPalClient(
            settings.paypal_client_id,
            settings.paypal_client_secret,
            mode=settings.paypal_mode,
            timeout=settings.provider_timeout_seconds,
            transport=paypal_transport,
        )
    else:
        logger.warning("PayPal credentials not configured, PayPal verification disabled")

    stripe_client = None
    if settings.stripe_secret_key:
        stripe_client = StripeClient(
            settings.stripe_secret_key,
            timeout=settings.provider_timeout_seconds,
            transport=stripe_transport,
        )
    else:
        logger.warning("Stripe secret key not configured, Stripe verification disabled")

    event_logger = WebhookEventLogger(settings.event_log_dir, enabled=settings.event_log_enabled)

    anomaly_manager = AnomalyManager(
        repository,
        retry_base_minutes=settings.anomaly_retry_base_minutes,
        escalation_after_minutes=settings.anomaly_escalation_after_minutes,
        escalation_target=settings.anomaly_escalation_target,
    )
    payment_verifier = PaymentVerifier(
        repository,
        notifier,
        paypal_client=paypal_client,
        stripe_client=stripe_client,
        amount_tolerance=settings.amount_tolerance,
    )

    scheduler = None
    if settings.anomaly_escalation_enabled:
        scheduler = AnomalyEscalationScheduler(
            anomaly_manager,
            interval_minutes=settings.anomaly_escalation_interval_minutes,
        )

    return ServiceContainer(
        settings=settings,
        db_engine=db_engine,
        repository=repository,
        notifier=notifier,
        anomaly_manager=anomaly_manager,
        status_engine=StatusTransitionEngine(repository),
        payment_verifier=payment_verifier,
        carrier_webhook=CarrierWebhookProcessor(repository, anomaly_manager, notifier, event_logger=event_logger),
        stripe_webhook=StripeWebhookHandler(
            repository,
            payment_verifier,
            anomaly_manager,
            webhook_secret=settings.stripe_webhook_secret,
            event_logger=event_logger,
        ),
        principal_resolver=PrincipalResolver(
            internal_service_key=settings.internal_service_key,
            auth_url=settings.auth_url,
            auth_api_key=settings.auth_api_key,
            transport=auth_transport,
        ),
        paypal_client=paypal_client,
        stripe_client=stripe_client,
        scheduler=scheduler,
    )


def init_monitoring(settings: Settings) -> None:
    """Initialize GlitchTip error monitoring (Sentry-compatible)."""
    if not settings.glitchtip_dsn:
        return
    try:
        sentry_sdk.init(
            dsn=settings.glitchtip_dsn,
            environment=settings.environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                LoggingIntegration(
                    level=None,  # Capture all log levels as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR logs as events
                ),
            ],
            traces_sample_rate=0.1,
            profiles_sample_rate=0.0,
            send_default_pii=False,
        )
        logger.info("GlitchTip error monitoring initialized")
    except Exception as e:
        logger.error(f"Failed to initialize GlitchTip: {e}")


def create_app(settings: Optional[Settings] = None, services: Optional[ServiceContainer] = None) -> FastAPI:
    """Create and configure FastAPI application."""
    settings = settings or (services.settings if services else get_settings())

    app = FastAPI(
        title="Order Lifecycle Service",
        version="1.0.0",
        description="Order status machine, payment settlement and carrier webhook reconciliation",
    )

    init_monitoring(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.services = services or build_services(settings)

    @app.exception_handler(OrderLifecycleError)
    async def order_lifecycle_error_handler(request: Request, exc: OrderLifecycleError):
        status_code = http_status_for(exc)
        if exc.category == ErrorCategory.INTERNAL:
            logger.error(f"{exc.code} on {request.url.path}: {exc.message}", exc_info=exc)
            capture_exception(exc, context={"path": request.url.path})
        else:
            logger.info(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "INVALID_REQUEST",
                "message": "; ".join(
                    f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
                ),
                "retryable": False,
            },
        )

    from order_lifecycle.server import routes

    app.include_router(routes.router)

    @app.on_event("startup")
    async def startup_handler():
        """Create tables, seed the transition table and start the scheduler."""
        logger.info("Starting application resources...")
        container: ServiceContainer = app.state.services

        await init_db(container.db_engine)
        if settings.seed_transitions:
            await seed_transitions(container.repository)

        if container.scheduler is not None:
            await container.scheduler.start()

        logger.info("Application startup completed")

    @app.on_event("shutdown")
    async def shutdown_handler():
        """
        Gracefully shut down all resources.

        Pending notifications are given time to finish before the HTTP
        clients and the database pool are closed.
        """
        logger.info("Starting graceful shutdown...")
        container: ServiceContainer = app.state.services

        try:
            if container.scheduler is not None:
                await container.scheduler.stop()
            await container.notifier.drain()
            await container.close()
            logger.info("Graceful shutdown completed successfully")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}", exc_info=True)

    return app
