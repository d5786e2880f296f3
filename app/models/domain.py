"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PriceType(str, Enum):
    """Billing mode of a line item price."""

    ONE_TIME = "one_time"
    RECURRING = "recurring"


# ============================================================================
# Scope Keys
# ============================================================================


@dataclass(frozen=True)
class MappedScope:
    """Scope of a line item whose product is known to the catalog."""

    product_id: int

    def __post_init__(self) -> None:
        """Validate product id."""
        if self.product_id <= 0:
            raise ValueError(f"Mapped scope requires a positive product id: {self.product_id}")

    def serialize(self) -> str:
        """Stable storage form."""
        return f"mapped:{self.product_id}"

    def __str__(self) -> str:
        return str(self.product_id)


@dataclass(frozen=True)
class UnmappedScope:
    """Scope of a line item whose product has no catalog entry (yet)."""

    external_product_id: str

    def __post_init__(self) -> None:
        """Validate external product id."""
        if not self.external_product_id:
            raise ValueError("external_product_id cannot be empty")

    def serialize(self) -> str:
        """Stable storage form."""
        return f"unmapped:{self.external_product_id}"

    def __str__(self) -> str:
        return f"unmapped:{self.external_product_id}"


ScopeKey = MappedScope | UnmappedScope

UNKNOWN_EXTERNAL_PRODUCT = "unknown"


def parse_scope_key(raw: str) -> ScopeKey:
    """Parse the storage form produced by ``serialize``."""
    kind, sep, value = raw.partition(":")
    if not sep or not value:
        raise ValueError(f"Invalid scope key: {raw!r}")
    if kind == "mapped":
        if not value.isdigit():
            raise ValueError(f"Invalid mapped scope key: {raw!r}")
        return MappedScope(int(value))
    if kind == "unmapped":
        return UnmappedScope(value)
    raise ValueError(f"Unknown scope key kind: {raw!r}")


# ============================================================================
# Purchases
# ============================================================================


@dataclass(frozen=True)
class LineItem:
    """One purchased line of a checkout session."""

    external_product_id: str | None
    quantity: int
    unit_amount: int
    amount_total: int
    currency: str
    price_type: PriceType
    description: str

    def __post_init__(self) -> None:
        """Validate line item constraints."""
        if self.quantity < 1:
            raise ValueError(f"Quantity must be positive: {self.quantity}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")

    @property
    def is_recurring(self) -> bool:
        return self.price_type == PriceType.RECURRING


@dataclass(frozen=True)
class PurchaseRecord:
    """
    Stored artifact created once per completed checkout or synced session.

    raw_snapshot is kept for audit only and is never reparsed after ingestion.
    """

    id: int | None
    user_id: int
    purchased_at: int
    external_session_id: str
    customer_id: str | None
    subscription_id: str | None
    currency: str
    line_items: tuple[LineItem, ...]
    product_ids: tuple[int, ...] = ()
    raw_snapshot: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @property
    def external_product_ids(self) -> tuple[str, ...]:
        """Distinct external product ids referenced by the line items."""
        seen: list[str] = []
        for item in self.line_items:
            if item.external_product_id and item.external_product_id not in seen:
                seen.append(item.external_product_id)
        return tuple(seen)


@dataclass(frozen=True)
class AccessState:
    """End timestamp and flags for one (purchase, scope) pair."""

    end_timestamp: int = 0
    paused: bool = False
    canceled: bool = False

    def __post_init__(self) -> None:
        """Validate flag exclusivity and timestamp range."""
        if self.canceled and self.paused:
            raise ValueError("Access state cannot be both canceled and paused")
        if self.end_timestamp < 0:
            raise ValueError(f"End timestamp cannot be negative: {self.end_timestamp}")


ZERO_STATE = AccessState()


@dataclass(frozen=True)
class RenewalEntry:
    """One recurring-billing payment attributed to a scope."""

    date: int
    amount: int
    invoice_id: str
    subscription_id: str | None

    def __post_init__(self) -> None:
        """Validate renewal fields."""
        if not self.invoice_id:
            raise ValueError("invoice_id cannot be empty")


@dataclass(frozen=True)
class PurchaseSnapshot:
    """A purchase together with its access states and renewal ledger."""

    record: PurchaseRecord
    access_states: Mapping[ScopeKey, AccessState] = field(default_factory=dict)
    renewals: Mapping[ScopeKey, tuple[RenewalEntry, ...]] = field(default_factory=dict)

    @property
    def purchase_id(self) -> int:
        if self.record.id is None:
            raise ValueError("Purchase snapshot has no persisted id")
        return self.record.id


# ============================================================================
# Events
# ============================================================================


class EventKind(str, Enum):
    """Lifecycle transitions understood by the state merger."""

    CHECKOUT_COMPLETED = "checkout.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.payment_succeeded"
    INVOICE_FAILED = "invoice.payment_failed"


@dataclass(frozen=True)
class Event:
    """
    Canonical lifecycle event.

    Produced by the normalization adapter from any provider shape; the state
    merger never sees provider payloads. ``paused`` / ``canceled`` are None when
    the source says nothing about them.
    """

    kind: EventKind
    scope_keys: tuple[ScopeKey, ...]
    occurred_at: int
    recurring_scope_keys: frozenset[ScopeKey] = frozenset()
    period_end: int | None = None
    paused: bool | None = None
    canceled: bool | None = None
    resume: bool = False
    cancel_at_period_end: bool = False
    ended_at: int | None = None
    cancel_at: int | None = None
    invoice_id: str | None = None
    amount: int | None = None
    scope_amounts: tuple[tuple[ScopeKey, int], ...] = ()
    subscription_id: str | None = None
    customer_id: str | None = None
    billing_reason: str | None = None
    event_id: str | None = None

    @property
    def target_scope_keys(self) -> tuple[ScopeKey, ...]:
        """Scopes whose access state this event may touch (recurring only)."""
        return tuple(k for k in self.scope_keys if k in self.recurring_scope_keys)

    @property
    def records_renewal(self) -> bool:
        """Invoices after the initial subscription invoice are renewals."""
        return (
            self.kind == EventKind.INVOICE_PAID
            and self.invoice_id is not None
            and bool(self.billing_reason)
            and self.billing_reason != "subscription_create"
        )

    def amount_for(self, scope_key: ScopeKey) -> int:
        """Amount attributed to a single scope of this event."""
        for key, amount in self.scope_amounts:
            if key == scope_key:
                return amount
        return self.amount or 0


# ============================================================================
# Users, Products, Notifications
# ============================================================================


@dataclass(frozen=True)
class UserData:
    """Immutable user snapshot."""

    user_id: int
    email: str
    name: str | None
    is_new: bool = False


@dataclass(frozen=True)
class ProductData:
    """Immutable catalog product snapshot."""

    product_id: int
    title: str
    external_product_id: str | None
    requires_access: bool
    allow_multiple: bool
    url: str | None


@dataclass(frozen=True)
class AccessLink:
    """Link handed to the notification collaborator."""

    product_id: int
    title: str
    url: str


# ============================================================================
# Sync Report
# ============================================================================


class SyncStatus(str, Enum):
    """Outcome of one session in a backfill sync run."""

    LINKED = "LINKED"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    SKIP = "SKIP"
    ERROR = "ERROR"


@dataclass(frozen=True)
class SyncOutcome:
    """Per-item sync result."""

    session_id: str
    status: SyncStatus
    detail: str
    email: str | None = None
    lines: tuple[str, ...] = ()


@dataclass(frozen=True)
class SyncReport:
    """Structured result of a sync run."""

    dry_run: bool
    update_existing: bool
    create_missing_users: bool
    created_from: int | None
    created_to: int | None
    email_filter: str | None
    outcomes: tuple[SyncOutcome, ...]
    sessions_scanned: int
    sessions_matched: int
    duration_ms: int

    def count(self, status: SyncStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)


# ============================================================================
# Access Decision
# ============================================================================


@dataclass(frozen=True)
class AccessDecision:
    """Derived answer to "does this user currently have access"."""

    product_id: int
    has_access: bool
    reason: str
    purchase_id: int | None = None
    end_timestamp: int | None = None
