"""
Purchase Ingestor - Turns a fetched checkout session into a stored purchase.

Shared by the checkout callback and the backfill sync. Provider round trips
(subscription lookup, invoice listing) happen in prepare(), before the caller
takes the per-user lock; store() runs under that lock.
"""

import time
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

from structlog import get_logger

from app.exceptions import PaymentProviderError, ResourceNotFoundError
from app.models.domain import (
    Event,
    EventKind,
    LineItem,
    MappedScope,
    PurchaseRecord,
    PurchaseSnapshot,
)
from app.services.access_decision import has_active_access
from app.services.line_renderer import render_purchase_lines
from app.services.normalization import (
    as_timestamp,
    embedded_subscription,
    event_from_checkout,
    event_from_invoice,
    line_items_from_session,
    reference_id,
)
from app.services.payment_provider import FetchedSession, PaymentProvider
from app.services.purchase_store import PurchaseStore
from app.services.scope_resolver import CatalogMapping, mapped_product_ids
from app.services.state_merger import MergePlan, StateMerger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PreparedPurchase:
    """Everything derived from the provider before any write."""

    fetched: FetchedSession
    line_items: tuple[LineItem, ...]
    event: Event
    product_ids: tuple[int, ...]
    renewal_events: tuple[Event, ...] = ()

    @property
    def session_id(self) -> str:
        return self.fetched.session_id

    @property
    def payload(self) -> Mapping[str, Any]:
        return self.fetched.payload


@dataclass(frozen=True)
class IngestResult:
    """Stored (or, in a dry run, would-be stored) purchase after merging."""

    snapshot: PurchaseSnapshot
    plan: MergePlan
    lines: tuple[str, ...]
    created: bool
    already_purchased: tuple[int, ...] = ()

    @property
    def purchase_id(self) -> int | None:
        return self.snapshot.record.id or None


class PurchaseIngestor:
    """Builds purchase records and folds their checkout event into access state."""

    def __init__(
        self,
        store: PurchaseStore,
        provider: PaymentProvider,
        catalog: CatalogMapping,
        default_currency: str = "EUR",
    ) -> None:
        self.store = store
        self.provider = provider
        self.catalog = catalog
        self.default_currency = default_currency
        self.merger = StateMerger(store)

    async def _subscription_for(self, fetched: FetchedSession) -> Mapping[str, Any] | None:
        """Embedded subscription, else a fresh fetch; a failed fetch is logged and skipped."""
        subscription = embedded_subscription(fetched.payload)
        if subscription is not None:
            return subscription

        subscription_id = reference_id(fetched.payload.get("subscription"))
        if not subscription_id:
            return None
        try:
            return await self.provider.fetch_subscription(subscription_id, fetched.api_key)
        except (PaymentProviderError, ResourceNotFoundError) as e:
            logger.warning(
                "subscription_fetch_failed",
                session_id=fetched.session_id,
                subscription_id=subscription_id,
                error=str(e),
            )
            return None

    async def _renewal_events(self, subscription_id: str, api_key: str) -> tuple[Event, ...]:
        invoices = await self.provider.list_invoices(subscription_id, api_key)
        events = (
            event_from_invoice(
                EventKind.INVOICE_PAID,
                invoice,
                self.catalog,
                as_timestamp(invoice.get("created")) or 0,
            )
            for invoice in invoices
            if invoice.get("status") == "paid"
        )
        return tuple(event for event in events if event.records_renewal)

    async def prepare(
        self, fetched: FetchedSession, backfill_renewals: bool = False
    ) -> PreparedPurchase:
        """Provider-side work: line items, subscription, checkout event, renewal invoices."""
        line_items = line_items_from_session(fetched.payload, self.default_currency)
        subscription = await self._subscription_for(fetched)
        event = event_from_checkout(fetched.payload, subscription, line_items, self.catalog)

        renewal_events: tuple[Event, ...] = ()
        if backfill_renewals and event.subscription_id:
            renewal_events = await self._renewal_events(event.subscription_id, fetched.api_key)

        return PreparedPurchase(
            fetched=fetched,
            line_items=line_items,
            event=event,
            product_ids=mapped_product_ids(line_items, self.catalog),
            renewal_events=renewal_events,
        )

    def build_record(
        self, prepared: PreparedPurchase, user_id: int, record_id: int | None = None
    ) -> PurchaseRecord:
        payload = prepared.payload
        return PurchaseRecord(
            id=record_id,
            user_id=user_id,
            purchased_at=as_timestamp(payload.get("created")) or int(time.time()),
            external_session_id=prepared.session_id,
            customer_id=prepared.event.customer_id,
            subscription_id=prepared.event.subscription_id,
            currency=str(payload.get("currency") or self.default_currency).upper(),
            line_items=prepared.line_items,
            product_ids=prepared.product_ids,
            raw_snapshot=payload,
        )

    def _already_purchased(
        self, purchases: list[PurchaseSnapshot], product_ids: tuple[int, ...], now: int
    ) -> tuple[int, ...]:
        """Mapped products that forbid repeat purchases and were already active."""
        flagged: list[int] = []
        for product_id in product_ids:
            product = self.catalog.product(product_id)
            if product is None or product.allow_multiple:
                continue
            if has_active_access(purchases, product_id, self.catalog, now).has_access:
                flagged.append(product_id)
        return tuple(flagged)

    async def store_purchase(
        self,
        prepared: PreparedPurchase,
        user_id: int,
        existing: PurchaseSnapshot | None = None,
        dry_run: bool = False,
        now: int | None = None,
    ) -> IngestResult:
        """
        Create (or update ``existing``) and merge the checkout event.

        The caller holds the user lock and commits. In a dry run nothing is
        written and a new purchase carries id 0.
        """
        now = int(time.time()) if now is None else now
        purchases = await self.store.list_for_user(user_id, for_update=True) if user_id else []
        if existing is not None:
            # Merge against the row as locked, not as read before the lock.
            existing = next(
                (p for p in purchases if p.purchase_id == existing.purchase_id), existing
            )
        already_purchased = (
            self._already_purchased(purchases, prepared.product_ids, now) if existing is None else ()
        )

        record = self.build_record(prepared, user_id, existing.record.id if existing else None)
        if dry_run:
            record = replace(record, id=record.id or 0)
        elif existing is None:
            record = await self.store.create_purchase(record)
        else:
            record = await self.store.update_purchase(record)

        snapshot = PurchaseSnapshot(
            record=record,
            access_states=dict(existing.access_states) if existing else {},
            renewals=dict(existing.renewals) if existing else {},
        )
        plan = await self.merger.apply(
            snapshot, prepared.event, prepared.event.target_scope_keys, now, dry_run=dry_run
        )
        states = dict(snapshot.access_states)
        states.update({change.scope_key: change.after for change in plan.changes if change.changed})
        snapshot = replace(snapshot, access_states=states)

        for renewal_event in prepared.renewal_events:
            renewal_plan = await self.merger.apply(
                snapshot, renewal_event, (), now, dry_run=dry_run, record_renewals=True
            )
            renewals = {key: tuple(entries) for key, entries in snapshot.renewals.items()}
            for scope_key, entry in renewal_plan.renewals:
                renewals[scope_key] = (*renewals.get(scope_key, ()), entry)
            snapshot = replace(snapshot, renewals=renewals)

        lines = tuple(render_purchase_lines(snapshot, self.catalog))
        logger.info(
            "purchase_ingested",
            session_id=prepared.session_id,
            user_id=user_id,
            purchase_id=record.id,
            created=existing is None,
            products=list(prepared.product_ids),
            unmapped=[
                str(key)
                for key in prepared.event.scope_keys
                if not isinstance(key, MappedScope)
            ],
            dry_run=dry_run,
        )
        return IngestResult(
            snapshot=snapshot,
            plan=plan,
            lines=lines,
            created=existing is None,
            already_purchased=already_purchased,
        )
