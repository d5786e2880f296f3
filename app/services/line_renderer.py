"""
Line Renderer - Human-readable audit lines for stored purchases.

Format per line:
    "<scope> • <qty> • <name> • <amount> <CUR><suffix>"

The suffix reflects only the state stored under that exact scope; there is
no fallback to other scopes.
"""

from datetime import UTC, datetime

from app.models.domain import ZERO_STATE, AccessState, LineItem, PurchaseSnapshot, ScopeKey
from app.services.scope_resolver import CatalogMapping, compute_scope_key

SEPARATOR = " • "


def format_date(timestamp: int) -> str:
    """UTC calendar date of a unix timestamp."""
    return datetime.fromtimestamp(timestamp, tz=UTC).strftime("%Y-%m-%d")


def format_amount(amount_minor: int, currency: str) -> str:
    return f"{amount_minor / 100:.2f} {currency.upper()}"


def state_suffix(state: AccessState) -> str:
    """CANCELED (date) > PAUSED > date > nothing."""
    if state.canceled:
        if state.end_timestamp:
            return f"{SEPARATOR}CANCELED ({format_date(state.end_timestamp)})"
        return f"{SEPARATOR}CANCELED"
    if state.paused:
        return f"{SEPARATOR}PAUSED"
    if state.end_timestamp:
        return f"{SEPARATOR}{format_date(state.end_timestamp)}"
    return ""


def render_line(item: LineItem, scope_key: ScopeKey, state: AccessState) -> str:
    parts = (
        str(scope_key),
        str(item.quantity),
        item.description,
        format_amount(item.amount_total, item.currency),
    )
    return SEPARATOR.join(parts) + state_suffix(state)


def render_purchase_lines(snapshot: PurchaseSnapshot, catalog: CatalogMapping) -> list[str]:
    """
    Render every stored line item of a purchase.

    Scopes are resolved under the current catalog, so a purchase whose product
    was mapped after the fact renders under the mapped scope (and its migrated
    state).
    """
    lines: list[str] = []
    for item in snapshot.record.line_items:
        scope_key = compute_scope_key(item, catalog)
        state = snapshot.access_states.get(scope_key, ZERO_STATE)
        lines.append(render_line(item, scope_key, state))
    return lines
