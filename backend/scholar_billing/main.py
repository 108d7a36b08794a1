"""
Scholar Billing Backend - Main FastAPI Application.

This is the entry point for the Scholar billing API.
It reconciles Stripe subscriptions into per-user billing profiles,
from Stripe webhooks and from on-demand subscription checks.

Run with:
    uvicorn scholar_billing.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from supabase import acreate_client

from scholar_billing.api.v1.billing import router as billing_router
from scholar_billing.config import get_settings
from scholar_billing.constants import API_TITLE, API_VERSION
from scholar_billing.errors import BillingError, ConfigurationError
from scholar_billing.logging_config import setup_logging
from scholar_billing.middleware import RequestContextMiddleware
from scholar_billing.services.billing_repository import (
    BillingProfileRepository,
    InMemoryBillingRepository,
    SupabaseBillingRepository,
)
from scholar_billing.services.checkout_service import CheckoutService
from scholar_billing.services.stripe_service import StripeService
from scholar_billing.services.subscription_service import SubscriptionService
from scholar_billing.services.webhook_service import WebhookReconciler

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug, settings.log_level, settings.service_name)

logger = structlog.get_logger(__name__)


async def _create_repository() -> BillingProfileRepository:
    if settings.supabase_url and settings.supabase_service_role_key:
        client = await acreate_client(
            settings.supabase_url,
            settings.supabase_service_role_key,
        )
        logger.info("supabase_configured")
        return SupabaseBillingRepository(
            client,
            profiles_table=settings.billing.profiles_table,
            history_table=settings.billing.history_table,
        )

    if settings.debug:
        logger.warning("supabase_not_configured", detail="Using in-memory billing repository")
        return InMemoryBillingRepository()

    raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    # Missing secrets are fatal; refuse to start rather than serve free tiers
    settings.stripe.require_secrets()

    if not settings.stripe.price_tiers:
        logger.warning("stripe_prices_missing", detail="Every subscription will resolve to free")

    repository = await _create_repository()
    stripe_service = StripeService(settings.stripe)
    subscription_service = SubscriptionService(
        repository,
        stripe_service,
        settings.stripe.price_tiers,
        settings.billing,
    )

    _app.state.repository = repository
    _app.state.stripe_service = stripe_service
    _app.state.subscription_service = subscription_service
    _app.state.webhook_reconciler = WebhookReconciler(stripe_service, subscription_service)
    _app.state.checkout_service = CheckoutService(
        repository, stripe_service, subscription_service, settings.stripe
    )

    logger.info("services_initialized")

    yield

    logger.info("api_shutdown")


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render a BillingError as {"error": message} with its HTTP status."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "billing_request_failed",
        error_kind=type(exc).__name__,
        error=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message},
    )


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    if first.get("type") == "json_invalid":
        return "Request body is not valid JSON"
    location = [str(part) for part in first.get("loc", ()) if part != "body"]
    if not location:
        return "Request body is required"
    return f"{'.'.join(location)}: {first.get('msg', 'invalid value')}"


async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render malformed or missing request bodies as 400 {"error": message}."""
    message = _validation_message(exc)
    logger.warning("billing_request_invalid", error=message)
    return JSONResponse(status_code=400, content={"error": message})


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Stripe subscription reconciliation for Scholar. Keeps each user's "
        "tier and subscription status in sync from webhooks and on-demand checks."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_exception_handler(BillingError, billing_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    # Credentials cannot be combined with a wildcard origin
    allow_credentials="*" not in settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(billing_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Stripe subscription reconciliation for Scholar",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
