"""
API Routes - FastAPI endpoints for checkout, webhooks and access checks.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    get_access_service,
    get_checkout_service,
    get_webhook_service,
)
from app.db.session import get_read_db
from app.exceptions import (
    EventValidationError,
    PaymentProviderError,
    PersistenceError,
    ResourceNotFoundError,
)
from app.models.api import (
    AccessLinkResponse,
    AccessResponse,
    CheckoutCompleteRequest,
    CheckoutCompleteResponse,
    HealthResponse,
    PurchaseListResponse,
    PurchaseResponse,
    WebhookResponse,
)
from app.services.access_decision import AccessService
from app.services.catalog import ProductCatalog
from app.services.checkout import CheckoutService
from app.services.line_renderer import render_purchase_lines
from app.services.purchase_store import SqlPurchaseStore
from app.services.webhooks import WebhookService

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Checkout
# =============================================================================


@router.post(
    "/v1/checkout/complete",
    response_model=CheckoutCompleteResponse,
    status_code=status.HTTP_200_OK,
)
async def complete_checkout(
    request: CheckoutCompleteRequest,
    service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutCompleteResponse:
    """
    Completion callback of a payment link.

    Idempotent per session id: a repeated call returns the stored purchase
    with status "already_processed".
    """
    try:
        result = await service.complete(request.session_id, dry_run=request.dry_run)
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Checkout session not found: {request.session_id}",
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=exc.message,
        ) from exc
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store purchase",
        ) from exc

    return CheckoutCompleteResponse(
        session_id=result.session_id,
        status=result.status.value,
        purchase_id=result.purchase_id,
        user_id=result.user_id,
        is_new_user=result.is_new_user,
        already_purchased=list(result.already_purchased),
        access_links=[AccessLinkResponse.from_domain(link) for link in result.access_links],
        lines=list(result.lines),
        dry_run=result.dry_run,
    )


# =============================================================================
# Webhooks
# =============================================================================


@router.post("/v1/webhooks/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
) -> WebhookResponse:
    """
    Handle Stripe webhook events.

    400 when the signature or payload is rejected (nothing written), 500 on
    any later failure so that Stripe redelivers, 200 otherwise.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        result = await service.handle(payload, signature)
    except EventValidationError as exc:
        logger.warning("stripe_webhook_rejected", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:
        logger.error("stripe_webhook_processing_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    return WebhookResponse(
        status=result.outcome.value,
        event_type=result.event_type,
        event_id=result.event_id,
        purchases_updated=result.purchases_updated,
        renewals_recorded=result.renewals_recorded,
    )


# =============================================================================
# Access
# =============================================================================


@router.get("/v1/users/{user_id}/access/{product_id}", response_model=AccessResponse)
async def check_access(
    user_id: int,
    product_id: int,
    service: AccessService = Depends(get_access_service),
) -> AccessResponse:
    """Whether the user currently has access to a product."""
    decision = await service.check(user_id, product_id)
    has_purchased = await service.has_purchased(user_id, product_id)
    return AccessResponse.from_domain(user_id, decision, has_purchased)


@router.get("/v1/users/{user_id}/purchases", response_model=PurchaseListResponse)
async def list_purchases(
    user_id: int,
    db: AsyncSession = Depends(get_read_db),
) -> PurchaseListResponse:
    """Purchases of a user, oldest first, with their rendered audit lines."""
    catalog = await ProductCatalog(db).snapshot()
    purchases = await SqlPurchaseStore(db).list_for_user(user_id)
    return PurchaseListResponse(
        user_id=user_id,
        purchases=[
            PurchaseResponse.from_domain(snapshot.record, render_purchase_lines(snapshot, catalog))
            for snapshot in purchases
        ],
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
