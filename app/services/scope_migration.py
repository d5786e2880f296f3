"""
Scope Migration - Moves state from an unmapped scope to the newly mapped product.

When an operator maps an external product id to a catalog product, purchases
that were stored while the product was unknown keep their history: the state
under UnmappedScope(ext) is merged into MappedScope(product) (end = max,
canceled dominates paused), the unmapped entry is removed, renewals follow,
and the product id joins the purchase's product ids. Each affected purchase
produces exactly one "access granted" notification.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from itertools import groupby

from structlog import get_logger

from app.models.domain import (
    ZERO_STATE,
    AccessLink,
    AccessState,
    MappedScope,
    ProductData,
    PurchaseSnapshot,
    RenewalEntry,
    ScopeKey,
    UnmappedScope,
)
from app.observability import log_context, metrics, trace_operation
from app.services.catalog import ProductCatalog
from app.services.checkout import absolute_url, with_access_token
from app.services.locks import user_locks
from app.services.notifications import AccessNotification, NotificationReason, Notifier
from app.services.purchase_store import PurchaseStore
from app.services.renewal_ledger import append_renewal
from app.services.user_directory import UserDirectory

logger = get_logger(__name__)


def merge_migrated_state(old: AccessState, new: AccessState) -> AccessState:
    """Combine the unmapped state into the mapped one."""
    canceled = old.canceled or new.canceled
    paused = (old.paused or new.paused) and not canceled
    return AccessState(
        end_timestamp=max(old.end_timestamp, new.end_timestamp), paused=paused, canceled=canceled
    )


def migrate_states(
    states: Mapping[ScopeKey, AccessState], old: UnmappedScope, new: MappedScope
) -> dict[ScopeKey, AccessState]:
    """States after migration; unchanged when nothing is stored under ``old``."""
    migrated = dict(states)
    old_state = migrated.pop(old, None)
    if old_state is None:
        return migrated
    migrated[new] = merge_migrated_state(old_state, migrated.get(new, ZERO_STATE))
    return migrated


def migrate_renewals(
    renewals: Mapping[ScopeKey, tuple[RenewalEntry, ...]], old: UnmappedScope, new: MappedScope
) -> dict[ScopeKey, tuple[RenewalEntry, ...]]:
    """Renewal lists after migration, deduplicated by invoice id."""
    migrated = dict(renewals)
    moved = migrated.pop(old, ())
    if not moved:
        return migrated
    entries = migrated.get(new, ())
    for entry in moved:
        entries = append_renewal(entries, entry)
    migrated[new] = entries
    return migrated


@dataclass(frozen=True)
class PurchaseMigration:
    """Writes required to migrate one purchase."""

    purchase_id: int
    user_id: int
    new_state: AccessState | None
    remove_old_state: bool
    renewals_to_add: tuple[RenewalEntry, ...]
    remove_old_renewals: bool
    product_ids: tuple[int, ...]
    adds_product_id: bool

    @property
    def affected(self) -> bool:
        return self.adds_product_id or self.remove_old_state or self.remove_old_renewals


def plan_scope_migration(
    snapshot: PurchaseSnapshot, external_product_id: str, product_id: int
) -> PurchaseMigration:
    old = UnmappedScope(external_product_id)
    new = MappedScope(product_id)

    states = migrate_states(snapshot.access_states, old, new)
    has_old_state = old in snapshot.access_states

    existing_new = snapshot.renewals.get(new, ())
    migrated_new = migrate_renewals(snapshot.renewals, old, new).get(new, ())
    has_old_renewals = bool(snapshot.renewals.get(old))

    product_ids = snapshot.record.product_ids
    adds_product_id = product_id not in product_ids
    if adds_product_id:
        product_ids = (*product_ids, product_id)

    return PurchaseMigration(
        purchase_id=snapshot.purchase_id,
        user_id=snapshot.record.user_id,
        new_state=states.get(new) if has_old_state else None,
        remove_old_state=has_old_state,
        renewals_to_add=migrated_new[len(existing_new) :],
        remove_old_renewals=has_old_renewals,
        product_ids=product_ids,
        adds_product_id=adds_product_id,
    )


@dataclass(frozen=True)
class MigrationReport:
    product_id: int
    external_product_id: str
    purchase_ids: tuple[int, ...]
    users_notified: int
    dry_run: bool

    @property
    def purchases_migrated(self) -> int:
        return len(self.purchase_ids)


class ScopeMigrationService:
    """Gates a product (maps its external id) and migrates affected purchases."""

    def __init__(
        self,
        store: PurchaseStore,
        catalog: ProductCatalog,
        directory: UserDirectory,
        notifier: Notifier,
        token_ttl: timedelta = timedelta(minutes=30),
        base_url: str | None = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.directory = directory
        self.notifier = notifier
        self.token_ttl = token_ttl
        self.base_url = base_url

    async def gate_product(
        self,
        product_id: int,
        external_product_id: str,
        requires_access: bool | None = None,
        dry_run: bool = False,
    ) -> MigrationReport:
        """
        Map the product and migrate every purchase referencing the external id.

        Raises:
            ResourceNotFoundError: Product does not exist
            DataIntegrityError: Conflicting mapping
        """
        with log_context(product_id=product_id, stripe_product_id=external_product_id), trace_operation(
            "scope_migration", product_id=product_id, dry_run=dry_run
        ):
            product = await self.catalog.gate_product(
                product_id, external_product_id, requires_access=requires_access, dry_run=dry_run
            )
            if dry_run:
                await self.store.rollback()
            else:
                await self.store.commit()

            candidates = await self.store.list_containing_external_product(external_product_id)
            user_ids = [user_id for user_id, _ in groupby(candidates, key=lambda s: s.record.user_id)]

            migrated: list[int] = []
            notified = 0
            for user_id in user_ids:
                purchase_ids = await self._migrate_user(
                    user_id, external_product_id, product, dry_run
                )
                migrated.extend(purchase_ids)
                if purchase_ids and not dry_run:
                    await self._notify(user_id, product, purchase_ids, external_product_id)
                    notified += 1

            logger.info(
                "scope_migration_finished",
                purchases_migrated=len(migrated),
                users_notified=notified,
                dry_run=dry_run,
            )
            return MigrationReport(
                product_id=product_id,
                external_product_id=external_product_id,
                purchase_ids=tuple(migrated),
                users_notified=notified,
                dry_run=dry_run,
            )

    async def _migrate_user(
        self, user_id: int, external_product_id: str, product: ProductData, dry_run: bool
    ) -> list[int]:
        old = UnmappedScope(external_product_id)
        new = MappedScope(product.product_id)
        migrated: list[int] = []

        try:
            async with user_locks.hold(user_id):
                purchases = await self.store.list_for_user(user_id, for_update=True)
                for snapshot in purchases:
                    if external_product_id not in snapshot.record.external_product_ids:
                        continue
                    plan = plan_scope_migration(snapshot, external_product_id, product.product_id)
                    if not plan.affected:
                        continue
                    migrated.append(plan.purchase_id)
                    if dry_run:
                        continue

                    if plan.new_state is not None:
                        await self.store.save_access_state(plan.purchase_id, new, plan.new_state)
                    if plan.remove_old_state:
                        await self.store.delete_access_state(plan.purchase_id, old)
                    for entry in plan.renewals_to_add:
                        await self.store.append_renewal(plan.purchase_id, new, entry)
                    if plan.remove_old_renewals:
                        await self.store.delete_renewals(plan.purchase_id, old)
                    if plan.adds_product_id:
                        await self.store.set_product_ids(plan.purchase_id, plan.product_ids)
                    metrics.scope_migrations_total.inc()

                if dry_run:
                    await self.store.rollback()
                else:
                    await self.store.commit()
        except Exception:
            await self.store.rollback()
            metrics.record_error("scope_migration_failed", "gate_product")
            logger.exception("scope_migration_failed", user_id=user_id)
            raise

        return migrated

    async def _notify(
        self,
        user_id: int,
        product: ProductData,
        purchase_ids: list[int],
        external_product_id: str,
    ) -> None:
        """One notification per migrated purchase; the token is shared by the user's links."""
        user = await self.directory.get_user(user_id)
        if user is None:
            logger.warning("scope_migration_user_missing", user_id=user_id)
            return

        links: tuple[AccessLink, ...] = ()
        if product.url:
            token = await self.directory.issue_access_token(user_id, self.token_ttl)
            await self.store.commit()
            links = (
                AccessLink(
                    product_id=product.product_id,
                    title=product.title,
                    url=with_access_token(absolute_url(product.url, self.base_url), token),
                ),
            )

        for purchase_id in purchase_ids:
            await self.notifier.notify(
                AccessNotification(
                    user=user,
                    links=links,
                    reason=NotificationReason.SCOPE_MIGRATED,
                    product_id=product.product_id,
                    purchase_id=purchase_id,
                    external_product_id=external_product_id,
                )
            )
