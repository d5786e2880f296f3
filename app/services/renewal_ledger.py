"""
Renewal Ledger - Append-only record of recurring payments per scope.

Entries are unique by invoice id within one (purchase, scope) list. Order is
not enforced.
"""

from collections.abc import Iterable, Sequence

from app.models.domain import Event, PurchaseSnapshot, RenewalEntry, ScopeKey
from app.services.scope_resolver import CatalogMapping, resolve_scope_keys


def has_invoice(entries: Iterable[RenewalEntry], invoice_id: str) -> bool:
    return any(entry.invoice_id == invoice_id for entry in entries)


def append_renewal(
    entries: tuple[RenewalEntry, ...], entry: RenewalEntry
) -> tuple[RenewalEntry, ...]:
    """Return entries with ``entry`` appended, or unchanged if its invoice is already present."""
    if has_invoice(entries, entry.invoice_id):
        return entries
    return (*entries, entry)


def renewal_entries_for(event: Event) -> list[tuple[ScopeKey, RenewalEntry]]:
    """
    One ledger entry per scope of a renewal invoice.

    Empty for anything that is not a renewal (initial subscription invoices,
    invoices without billing reason, non-invoice events).
    """
    if not event.records_renewal or event.invoice_id is None:
        return []
    return [
        (
            scope_key,
            RenewalEntry(
                date=event.occurred_at,
                amount=event.amount_for(scope_key),
                invoice_id=event.invoice_id,
                subscription_id=event.subscription_id,
            ),
        )
        for scope_key in event.scope_keys
    ]


def purchase_order(snapshot: PurchaseSnapshot) -> tuple[int, int]:
    """Oldest purchase first; ties broken by record id."""
    return (snapshot.record.purchased_at, snapshot.record.id or 0)


def attribute_invoice(
    purchases: Sequence[PurchaseSnapshot], event: Event, catalog: CatalogMapping
) -> PurchaseSnapshot | None:
    """
    Purchase that receives the renewal entries of an invoice event.

    With a subscription id only a purchase carrying the same subscription id
    qualifies. Without one, the first purchase whose line items resolve to any
    of the invoice's scopes is used (best effort).
    """
    ordered = sorted(purchases, key=purchase_order)

    if event.subscription_id:
        for snapshot in ordered:
            if snapshot.record.subscription_id == event.subscription_id:
                return snapshot
        return None

    invoice_scopes = set(event.scope_keys)
    for snapshot in ordered:
        if invoice_scopes.intersection(resolve_scope_keys(snapshot.record.line_items, catalog)):
            return snapshot
    return None
