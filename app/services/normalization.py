"""
Normalization Adapter - Converts provider payloads into canonical events.

Every Stripe shape (StripeObject or plain dict, expanded or id-only
references, several API versions) is flattened here. Nothing downstream of
this module reads provider payloads; the state merger only sees Event.
"""

from collections.abc import Mapping
from typing import Any

from app.exceptions import MalformedPayloadError
from app.models.domain import Event, EventKind, LineItem, PriceType, ScopeKey
from app.services.scope_resolver import (
    CatalogMapping,
    recurring_scope_keys,
    resolve_scope_keys,
    scope_key_for_product,
)

SUBSCRIPTION_EVENT_KINDS: Mapping[str, EventKind] = {
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
}

INVOICE_EVENT_KINDS: Mapping[str, EventKind] = {
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.payment_failed": EventKind.INVOICE_FAILED,
}

HANDLED_EVENT_TYPES = frozenset(SUBSCRIPTION_EVENT_KINDS) | frozenset(INVOICE_EVENT_KINDS)


# ============================================================================
# Generic helpers
# ============================================================================


def to_plain(value: Any) -> Any:
    """Recursively convert StripeObjects and mappings into plain dicts and lists."""
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict) and not isinstance(value, dict):
        value = to_dict()
    if isinstance(value, Mapping):
        return {str(key): to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    return value


def dig(source: Any, *path: str) -> Any:
    """Safe nested lookup; None as soon as a segment is missing."""
    current = source
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def reference_id(value: Any) -> str | None:
    """Id of an expandable reference: either the id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        ref = value.get("id")
        return str(ref) if ref else None
    return None


def as_timestamp(value: Any) -> int | None:
    """Positive integer timestamp or None."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        ts = int(value)
    except (TypeError, ValueError):
        return None
    return ts if ts > 0 else None


def _list_data(value: Any) -> list[Any]:
    """Items of a Stripe list object (or of a bare list)."""
    if isinstance(value, list):
        return value
    data = dig(value, "data")
    return data if isinstance(data, list) else []


# ============================================================================
# Checkout sessions
# ============================================================================


def line_item_from_payload(raw: Mapping[str, Any], fallback_currency: str) -> LineItem:
    """Build a LineItem from a checkout session line item."""
    price = raw.get("price") or {}
    product = price.get("product") if isinstance(price, Mapping) else None

    quantity = max(1, int(raw.get("quantity") or 1))
    amount_total = int(raw.get("amount_total") or raw.get("amount") or 0)
    unit_amount = dig(price, "unit_amount")
    if unit_amount is None:
        unit_amount = amount_total // quantity

    is_recurring = dig(price, "type") == "recurring" or dig(price, "recurring") is not None
    description = (
        dig(product, "name")
        or raw.get("description")
        or dig(price, "nickname")
        or "Item"
    )
    currency = str(raw.get("currency") or fallback_currency).upper()

    return LineItem(
        external_product_id=reference_id(product),
        quantity=quantity,
        unit_amount=int(unit_amount),
        amount_total=amount_total,
        currency=currency,
        price_type=PriceType.RECURRING if is_recurring else PriceType.ONE_TIME,
        description=str(description),
    )


def line_items_from_session(
    session: Mapping[str, Any], fallback_currency: str = "EUR"
) -> tuple[LineItem, ...]:
    """All line items of an (expanded) checkout session."""
    currency = str(session.get("currency") or fallback_currency).upper()
    return tuple(
        line_item_from_payload(raw, currency)
        for raw in _list_data(session.get("line_items"))
        if isinstance(raw, Mapping)
    )


def session_email(session: Mapping[str, Any]) -> str | None:
    """Buyer email: customer_details, expanded customer, then customer_email."""
    email = (
        dig(session, "customer_details", "email")
        or dig(session, "customer", "email")
        or session.get("customer_email")
    )
    return str(email).strip() or None if email else None


def session_name(session: Mapping[str, Any]) -> str | None:
    """Buyer display name, if the session carries one."""
    name = (
        dig(session, "customer_details", "name")
        or dig(session, "customer", "name")
        or dig(session, "shipping", "name")
    )
    return str(name).strip() or None if name else None


def session_is_paid(session: Mapping[str, Any]) -> bool:
    return session.get("payment_status") == "paid"


def embedded_subscription(session: Mapping[str, Any]) -> Mapping[str, Any] | None:
    """The subscription object when the session was retrieved with it expanded."""
    subscription = session.get("subscription")
    return subscription if isinstance(subscription, Mapping) else None


# ============================================================================
# Subscriptions
# ============================================================================


def subscription_period_end(subscription: Mapping[str, Any]) -> int | None:
    """current_period_end from the subscription, or from its first item (newer API versions)."""
    period_end = as_timestamp(subscription.get("current_period_end"))
    if period_end:
        return period_end
    for item in _list_data(subscription.get("items")):
        period_end = as_timestamp(dig(item, "current_period_end"))
        if period_end:
            return period_end
    return None


def subscription_is_paused(subscription: Mapping[str, Any]) -> bool:
    return subscription.get("pause_collection") is not None


def subscription_scope_keys(
    subscription: Mapping[str, Any], catalog: CatalogMapping
) -> tuple[ScopeKey, ...]:
    """Distinct scope keys of the subscription's items."""
    keys: list[ScopeKey] = []
    for item in _list_data(subscription.get("items")):
        product_id = reference_id(dig(item, "price", "product")) or reference_id(
            dig(item, "plan", "product")
        )
        if not product_id:
            continue
        key = scope_key_for_product(product_id, catalog)
        if key not in keys:
            keys.append(key)
    return tuple(keys)


def event_from_checkout(
    session: Mapping[str, Any],
    subscription: Mapping[str, Any] | None,
    line_items: tuple[LineItem, ...],
    catalog: CatalogMapping,
) -> Event:
    """
    Canonical event for a completed checkout session.

    Flags and period end come from the subscription only; a purchase without
    a subscription yields an event that leaves all state untouched.
    """
    scope_keys = resolve_scope_keys(line_items, catalog)
    recurring = recurring_scope_keys(line_items, catalog)
    occurred_at = as_timestamp(session.get("created")) or 0
    customer_id = reference_id(session.get("customer"))

    if subscription is None:
        return Event(
            kind=EventKind.CHECKOUT_COMPLETED,
            scope_keys=scope_keys,
            recurring_scope_keys=recurring,
            occurred_at=occurred_at,
            customer_id=customer_id,
            subscription_id=reference_id(session.get("subscription")),
        )

    canceled = subscription.get("status") == "canceled"
    paused = False if canceled else subscription_is_paused(subscription)
    return Event(
        kind=EventKind.CHECKOUT_COMPLETED,
        scope_keys=scope_keys,
        recurring_scope_keys=recurring,
        occurred_at=occurred_at,
        period_end=subscription_period_end(subscription),
        paused=paused,
        canceled=canceled,
        resume=not paused and not canceled,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        ended_at=as_timestamp(subscription.get("ended_at")),
        cancel_at=as_timestamp(subscription.get("cancel_at")),
        subscription_id=reference_id(subscription),
        customer_id=customer_id or reference_id(subscription.get("customer")),
    )


def event_from_subscription(
    kind: EventKind,
    subscription: Mapping[str, Any],
    catalog: CatalogMapping,
    occurred_at: int,
    event_id: str | None = None,
) -> Event:
    """Canonical event for a customer.subscription.* notification."""
    scope_keys = subscription_scope_keys(subscription, catalog)
    common: dict[str, Any] = {
        "kind": kind,
        "scope_keys": scope_keys,
        "recurring_scope_keys": frozenset(scope_keys),
        "occurred_at": occurred_at,
        "period_end": subscription_period_end(subscription),
        "subscription_id": reference_id(subscription),
        "customer_id": reference_id(subscription.get("customer")),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        "event_id": event_id,
    }

    if kind == EventKind.SUBSCRIPTION_DELETED:
        return Event(
            canceled=True,
            ended_at=as_timestamp(subscription.get("ended_at")),
            cancel_at=as_timestamp(subscription.get("cancel_at")),
            **common,
        )
    if kind == EventKind.SUBSCRIPTION_UPDATED:
        paused = subscription_is_paused(subscription)
        return Event(paused=paused, resume=not paused, **common)
    return Event(resume=True, **common)


# ============================================================================
# Invoices
# ============================================================================


def invoice_line_product_id(line: Mapping[str, Any]) -> str | None:
    """
    Product id of an invoice line across API versions.

    Newer versions: pricing.price_details.product
    Older versions: price.product
    Oldest:         plan.product
    """
    return (
        reference_id(dig(line, "pricing", "price_details", "product"))
        or reference_id(dig(line, "price", "product"))
        or reference_id(dig(line, "plan", "product"))
    )


def invoice_line_is_recurring(line: Mapping[str, Any]) -> bool:
    if dig(line, "price", "type") == "recurring":
        return True
    if dig(line, "plan") is not None:
        return True
    return dig(line, "parent", "type") == "subscription_item_details"


def invoice_subscription_id(invoice: Mapping[str, Any]) -> str | None:
    """Subscription of an invoice (top-level on older versions, under parent on newer)."""
    return reference_id(invoice.get("subscription")) or reference_id(
        dig(invoice, "parent", "subscription_details", "subscription")
    )


def event_from_invoice(
    kind: EventKind,
    invoice: Mapping[str, Any],
    catalog: CatalogMapping,
    occurred_at: int,
    event_id: str | None = None,
) -> Event:
    """
    Canonical event for an invoice notification.

    period_end is the latest period end over recurring lines only, so a
    one-time line on the same invoice never moves an end timestamp.
    """
    scope_keys: list[ScopeKey] = []
    recurring: set[ScopeKey] = set()
    scope_amounts: dict[ScopeKey, int] = {}
    period_end: int | None = None

    for line in _list_data(invoice.get("lines")):
        if not isinstance(line, Mapping):
            continue
        product_id = invoice_line_product_id(line)
        if not product_id:
            continue
        key = scope_key_for_product(product_id, catalog)
        if key not in scope_keys:
            scope_keys.append(key)
        scope_amounts[key] = int(line.get("amount") or 0)

        if invoice_line_is_recurring(line):
            recurring.add(key)
            line_end = as_timestamp(dig(line, "period", "end"))
            if line_end and (period_end is None or line_end > period_end):
                period_end = line_end

    invoice_id = invoice.get("id")
    return Event(
        kind=kind,
        scope_keys=tuple(scope_keys),
        recurring_scope_keys=frozenset(recurring),
        occurred_at=as_timestamp(invoice.get("created")) or occurred_at,
        period_end=period_end,
        resume=kind == EventKind.INVOICE_PAID,
        invoice_id=str(invoice_id) if invoice_id else None,
        amount=int(invoice.get("amount_paid") or 0),
        scope_amounts=tuple(scope_amounts.items()),
        subscription_id=invoice_subscription_id(invoice),
        customer_id=reference_id(invoice.get("customer")),
        billing_reason=invoice.get("billing_reason") or None,
        event_id=event_id,
    )


# ============================================================================
# Webhook envelopes
# ============================================================================


def event_from_webhook(payload: Mapping[str, Any], catalog: CatalogMapping) -> Event | None:
    """
    Canonical event for a verified webhook envelope.

    Returns None for notification types the engine does not reconcile.
    Raises MalformedPayloadError when a handled type carries no object.
    """
    event_type = payload.get("type")
    if event_type not in HANDLED_EVENT_TYPES:
        return None

    obj = dig(payload, "data", "object")
    if not isinstance(obj, Mapping):
        raise MalformedPayloadError(f"{event_type} notification has no data.object")

    occurred_at = as_timestamp(payload.get("created")) or 0
    event_id = payload.get("id")

    if event_type in SUBSCRIPTION_EVENT_KINDS:
        return event_from_subscription(
            SUBSCRIPTION_EVENT_KINDS[event_type], obj, catalog, occurred_at, event_id
        )
    return event_from_invoice(INVOICE_EVENT_KINDS[event_type], obj, catalog, occurred_at, event_id)
