"""
Access Decision - Answers "does this user currently have access to this product".

Derived on demand from stored purchases and access states; never persisted.
"""

import time
from collections.abc import Sequence

from structlog import get_logger

from app.models.domain import AccessDecision, MappedScope, PurchaseSnapshot
from app.observability import metrics
from app.services.purchase_store import PurchaseStore
from app.services.renewal_ledger import purchase_order
from app.services.scope_resolver import CatalogMapping, resolve_scope_keys

logger = get_logger(__name__)

REASON_NO_PURCHASE = "no_purchase"
REASON_PAUSED = "paused"
REASON_ACTIVE = "active"
REASON_EXPIRED = "expired"
REASON_LIFETIME = "lifetime"
REASON_NO_ACTIVE_PERIOD = "no_active_period"


def purchases_for_product(
    purchases: Sequence[PurchaseSnapshot], product_id: int, catalog: CatalogMapping
) -> list[PurchaseSnapshot]:
    """Purchases that include the product, either by current catalog resolution or stored ids."""
    scope = MappedScope(product_id)
    return [
        snapshot
        for snapshot in purchases
        if product_id in snapshot.record.product_ids
        or scope in resolve_scope_keys(snapshot.record.line_items, catalog)
    ]


def has_purchased_product(
    purchases: Sequence[PurchaseSnapshot], product_id: int, catalog: CatalogMapping
) -> bool:
    """Historical check: any purchase of the product, regardless of its state."""
    return bool(purchases_for_product(purchases, product_id, catalog))


def has_active_access(
    purchases: Sequence[PurchaseSnapshot],
    product_id: int,
    catalog: CatalogMapping,
    now: int,
) -> AccessDecision:
    """
    Evaluate access from the latest purchase of the product.

    1. paused on the latest purchase blocks access
    2. an end timestamp on the latest purchase must not be in the past
    3. no purchase of the product carries any state: lifetime access
    4. otherwise no access
    """
    candidates = purchases_for_product(purchases, product_id, catalog)
    if not candidates:
        return AccessDecision(product_id=product_id, has_access=False, reason=REASON_NO_PURCHASE)

    scope = MappedScope(product_id)
    latest = max(candidates, key=purchase_order)
    state = latest.access_states.get(scope)

    if state is not None and state.paused:
        return AccessDecision(
            product_id=product_id,
            has_access=False,
            reason=REASON_PAUSED,
            purchase_id=latest.record.id,
            end_timestamp=state.end_timestamp or None,
        )

    if state is not None and state.end_timestamp:
        active = state.end_timestamp >= now
        return AccessDecision(
            product_id=product_id,
            has_access=active,
            reason=REASON_ACTIVE if active else REASON_EXPIRED,
            purchase_id=latest.record.id,
            end_timestamp=state.end_timestamp,
        )

    if not any(scope in snapshot.access_states for snapshot in candidates):
        return AccessDecision(
            product_id=product_id,
            has_access=True,
            reason=REASON_LIFETIME,
            purchase_id=latest.record.id,
        )

    return AccessDecision(
        product_id=product_id,
        has_access=False,
        reason=REASON_NO_ACTIVE_PERIOD,
        purchase_id=latest.record.id,
    )


class AccessService:
    """Loads a user's purchases and evaluates access against the current catalog."""

    def __init__(self, store: PurchaseStore, catalog: CatalogMapping) -> None:
        self.store = store
        self.catalog = catalog

    async def check(self, user_id: int, product_id: int, now: int | None = None) -> AccessDecision:
        purchases = await self.store.list_for_user(user_id)
        decision = has_active_access(
            purchases, product_id, self.catalog, int(time.time()) if now is None else now
        )
        metrics.record_access_check(decision.has_access, decision.reason)
        logger.debug(
            "access_checked",
            user_id=user_id,
            product_id=product_id,
            has_access=decision.has_access,
            reason=decision.reason,
        )
        return decision

    async def has_purchased(self, user_id: int, product_id: int) -> bool:
        purchases = await self.store.list_for_user(user_id)
        return has_purchased_product(purchases, product_id, self.catalog)
