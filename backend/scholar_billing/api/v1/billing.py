"""Billing API endpoints."""

import structlog
from fastapi import APIRouter, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from scholar_billing.errors import SignatureVerificationError
from scholar_billing.models.billing import SubscriptionCheckResponse
from scholar_billing.services.checkout_service import CheckoutService
from scholar_billing.services.subscription_service import SubscriptionService
from scholar_billing.services.webhook_service import WebhookReconciler

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class EmailRequest(BaseModel):
    """Body carrying the signed-in user's email."""

    model_config = ConfigDict(populate_by_name=True)

    user_email: str | None = Field(default=None, alias="userEmail")


class CheckoutRequest(EmailRequest):
    """Checkout session request."""

    tier: str | None = Field(default=None, description="premium or university")
    billing_period: str | None = Field(
        default="monthly", alias="billingPeriod", description="monthly or yearly"
    )


class UrlResponse(BaseModel):
    """Stripe-hosted page to redirect the browser to."""

    url: str


class CancelResponse(BaseModel):
    """Cancel-at-period-end confirmation."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd")
    period_end: str | None = Field(default=None, alias="periodEnd")


def _get_subscription_service(request: Request) -> SubscriptionService:
    service = getattr(request.app.state, "subscription_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Billing service unavailable")
    return service


def _get_webhook_reconciler(request: Request) -> WebhookReconciler:
    service = getattr(request.app.state, "webhook_reconciler", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Stripe webhooks not configured")
    return service


def _get_checkout_service(request: Request) -> CheckoutService:
    service = getattr(request.app.state, "checkout_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Checkout service unavailable")
    return service


@router.options("/{path:path}", include_in_schema=False)
async def options_route(path: str) -> Response:
    """Bare OPTIONS on any billing route.

    Browser preflights (Origin plus Access-Control-Request-Method) are
    answered by CORSMiddleware before reaching the router.
    """
    return Response(status_code=200)


@router.post("/stripe-webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="stripe-signature"),
) -> Response:
    """Verify a Stripe delivery and reconcile the affected profile.

    Non-2xx makes Stripe retry, so unexpected failures surface as 500.
    """
    reconciler = _get_webhook_reconciler(request)
    payload = await request.body()

    try:
        result = await reconciler.handle_webhook(payload, stripe_signature)
    except SignatureVerificationError as e:
        logger.warning("stripe_webhook_signature_invalid", error=e.message)
        return PlainTextResponse(f"Webhook Error: {e.message}", status_code=400)
    except Exception as e:
        logger.exception("stripe_webhook_failed")
        return JSONResponse({"error": str(e)}, status_code=500)

    logger.info(
        "stripe_webhook_processed",
        event_id=result.event_id,
        event_type=result.event_type,
        processed=result.processed,
    )
    return JSONResponse({"received": True})


@router.post("/check-subscription", response_model=SubscriptionCheckResponse)
async def check_subscription(body: EmailRequest, request: Request) -> SubscriptionCheckResponse:
    """Refresh and return the caller's subscription state from Stripe."""
    service = _get_subscription_service(request)
    profile = await service.check_subscription(body.user_email)
    return SubscriptionCheckResponse.from_profile(profile)


@router.post("/create-checkout", response_model=UrlResponse)
async def create_checkout(body: CheckoutRequest, request: Request) -> UrlResponse:
    """Create a Stripe Checkout session for a paid tier."""
    service = _get_checkout_service(request)
    session = await service.create_checkout(
        body.user_email,
        body.tier,
        body.billing_period,
        origin=request.headers.get("origin"),
    )
    return UrlResponse(**session)


@router.post("/customer-portal", response_model=UrlResponse)
async def customer_portal(body: EmailRequest, request: Request) -> UrlResponse:
    """Create a Stripe Customer Portal session."""
    service = _get_checkout_service(request)
    session = await service.create_portal(body.user_email, origin=request.headers.get("origin"))
    return UrlResponse(**session)


@router.post("/cancel-subscription", response_model=CancelResponse)
async def cancel_subscription(body: EmailRequest, request: Request) -> CancelResponse:
    """Cancel the caller's subscription at the end of the current period."""
    service = _get_checkout_service(request)
    result = await service.cancel_subscription(body.user_email)
    return CancelResponse.model_validate(result)
