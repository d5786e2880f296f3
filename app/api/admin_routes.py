"""
Admin API routes for operator tasks.

Protected by the shared X-Admin-Key header.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from structlog import get_logger

from app.api.dependencies import (
    get_scope_migration_service,
    get_sync_service,
    require_admin_key,
)
from app.exceptions import DataIntegrityError, ResourceNotFoundError
from app.models.api import (
    GateProductRequest,
    GateProductResponse,
    SyncRequest,
    SyncResponse,
)
from app.services.scope_migration import ScopeMigrationService
from app.services.sync import SyncOptions, SyncService

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


@router.post("/sync", response_model=SyncResponse)
async def run_sync(
    request: SyncRequest,
    service: SyncService = Depends(get_sync_service),
) -> SyncResponse:
    """
    Backfill sync of historical checkout sessions.

    Runs as a dry run unless dry_run is explicitly false. Per-session failures
    are reported as ERROR items; the run itself always completes.
    """
    options = SyncOptions(
        dry_run=request.dry_run,
        update_existing=request.update_existing,
        create_missing_users=request.create_missing_users,
        created_from=request.created_from,
        created_to=request.created_to,
        email=request.email,
        key_indices=tuple(request.key_indices),
    )
    report = await service.run(options)
    logger.info("admin_sync_completed", dry_run=report.dry_run, items=len(report.outcomes))
    return SyncResponse.from_domain(report)


@router.post("/products/{product_id}/gate", response_model=GateProductResponse)
async def gate_product(
    product_id: int,
    request: GateProductRequest,
    service: ScopeMigrationService = Depends(get_scope_migration_service),
) -> GateProductResponse:
    """
    Map a Stripe product to a catalog product and migrate stored purchases.

    Purchases stored while the Stripe product was unknown move their state and
    renewals to the product; each affected purchase triggers one notification.
    """
    try:
        report = await service.gate_product(
            product_id,
            request.stripe_product_id,
            requires_access=request.requires_access,
            dry_run=request.dry_run,
        )
    except ResourceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except DataIntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=exc.message,
        ) from exc

    return GateProductResponse(
        product_id=report.product_id,
        stripe_product_id=report.external_product_id,
        purchases_migrated=report.purchases_migrated,
        purchase_ids=list(report.purchase_ids),
        users_notified=report.users_notified,
        dry_run=report.dry_run,
    )
