"""
FastAPI Dependencies - Authentication and service wiring.

Each provider builds one service over the request-scoped session.
"""

import secrets
from datetime import timedelta
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.session import get_read_db, get_write_db
from app.exceptions import AuthenticationError
from app.services.access_decision import AccessService
from app.services.catalog import ProductCatalog
from app.services.checkout import CheckoutService
from app.services.notifications import AccessMailPolicy, LoggingNotifier, Notifier
from app.services.payment_provider import PaymentProvider
from app.services.purchase_store import SqlPurchaseStore
from app.services.scope_migration import ScopeMigrationService
from app.services.stripe_provider import StripeProvider
from app.services.sync import SyncService
from app.services.user_directory import SqlUserDirectory
from app.services.webhooks import WebhookService

logger = get_logger(__name__)

# ============================================================================
# Admin Key Authentication (operator endpoints)
# ============================================================================


def verify_admin_key(provided: str | None, expected: str) -> None:
    """
    Constant-time comparison of the operator key.

    Raises:
        AuthenticationError: Key missing, wrong, or no key configured
    """
    if not expected:
        raise AuthenticationError("Admin API key not configured")
    if not provided:
        raise AuthenticationError("X-Admin-Key header required")
    if not secrets.compare_digest(provided.encode(), expected.encode()):
        raise AuthenticationError("Invalid admin key")


async def require_admin_key(
    x_admin_key: str | None = Header(None, description="Operator API key"),
) -> None:
    """
    FastAPI dependency guarding sync and product gating.

    Usage:
        @router.post("/v1/admin/sync", dependencies=[Depends(require_admin_key)])

    Raises:
        HTTPException 401 if the key is missing or invalid
    """
    try:
        verify_admin_key(x_admin_key, settings.admin_api_key)
    except AuthenticationError as exc:
        logger.warning("admin_auth_failed", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "ApiKey"},
        ) from exc


# ============================================================================
# Collaborators
# ============================================================================


@lru_cache(maxsize=1)
def get_provider() -> PaymentProvider:
    """Stripe provider configured for every account in settings."""
    return StripeProvider(
        api_keys=settings.stripe_api_key_list,
        webhook_secrets=settings.stripe_webhook_secret_list,
        max_network_retries=settings.stripe_max_network_retries,
    )


@lru_cache(maxsize=1)
def get_notifier() -> Notifier:
    return LoggingNotifier()


def _token_ttl() -> timedelta:
    return timedelta(minutes=settings.access_token_ttl_minutes)


# ============================================================================
# Services (one catalog snapshot per request)
# ============================================================================


async def get_checkout_service(
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_provider),
    notifier: Notifier = Depends(get_notifier),
) -> CheckoutService:
    catalog = await ProductCatalog(db).snapshot()
    return CheckoutService(
        store=SqlPurchaseStore(db),
        directory=SqlUserDirectory(db),
        provider=provider,
        catalog=catalog,
        notifier=notifier,
        mail_policy=AccessMailPolicy(settings.access_mail_policy),
        token_ttl=_token_ttl(),
        default_currency=settings.default_currency,
        base_url=settings.access_base_url,
    )


async def get_webhook_service(
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_provider),
) -> WebhookService:
    catalog = await ProductCatalog(db).snapshot()
    return WebhookService(store=SqlPurchaseStore(db), provider=provider, catalog=catalog)


async def get_access_service(db: AsyncSession = Depends(get_read_db)) -> AccessService:
    """Access checks read from the replica when one is configured."""
    catalog = await ProductCatalog(db).snapshot()
    return AccessService(store=SqlPurchaseStore(db), catalog=catalog)


async def get_sync_service(
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_provider),
) -> SyncService:
    catalog = await ProductCatalog(db).snapshot()
    return SyncService(
        store=SqlPurchaseStore(db),
        directory=SqlUserDirectory(db),
        provider=provider,
        catalog=catalog,
        default_currency=settings.default_currency,
        page_size=settings.sync_page_size,
    )


async def get_scope_migration_service(
    db: AsyncSession = Depends(get_write_db),
    notifier: Notifier = Depends(get_notifier),
) -> ScopeMigrationService:
    return ScopeMigrationService(
        store=SqlPurchaseStore(db),
        catalog=ProductCatalog(db),
        directory=SqlUserDirectory(db),
        notifier=notifier,
        token_ttl=_token_ttl(),
        base_url=settings.access_base_url,
    )
