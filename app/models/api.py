"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.domain import (
    AccessDecision,
    AccessLink,
    PurchaseRecord,
    SyncOutcome,
    SyncReport,
    SyncStatus,
)

# ============================================================================
# Checkout Models
# ============================================================================


class CheckoutCompleteRequest(BaseModel):
    """POST /v1/checkout/complete request body."""

    session_id: str = Field(..., min_length=1, max_length=255, description="Checkout session id")
    dry_run: bool = False

    @field_validator("session_id")
    @classmethod
    def validate_session_id(cls, v: str) -> str:
        """Session ids are opaque but never contain whitespace."""
        v = v.strip()
        if not v or any(ch.isspace() for ch in v):
            raise ValueError("session_id must be a non-empty token")
        return v


class AccessLinkResponse(BaseModel):
    product_id: int
    title: str
    url: str

    @classmethod
    def from_domain(cls, link: AccessLink) -> "AccessLinkResponse":
        return cls(product_id=link.product_id, title=link.title, url=link.url)


class CheckoutCompleteResponse(BaseModel):
    """POST /v1/checkout/complete response."""

    session_id: str
    status: Literal["created", "already_processed", "unpaid", "no_email"]
    purchase_id: int | None = None
    user_id: int | None = None
    is_new_user: bool = False
    already_purchased: list[int] = Field(default_factory=list)
    access_links: list[AccessLinkResponse] = Field(default_factory=list)
    lines: list[str] = Field(default_factory=list)
    dry_run: bool = False


# ============================================================================
# Webhook Models
# ============================================================================


class WebhookResponse(BaseModel):
    """POST /v1/webhooks/stripe response."""

    status: Literal["processed", "ignored", "no_user", "acknowledged"]
    event_type: str
    event_id: str | None = None
    purchases_updated: int = 0
    renewals_recorded: int = 0


# ============================================================================
# Access Models
# ============================================================================


class AccessResponse(BaseModel):
    """GET /v1/users/{user_id}/access/{product_id} response."""

    user_id: int
    product_id: int
    has_access: bool
    has_purchased: bool
    reason: str
    purchase_id: int | None = None
    end_timestamp: int | None = None

    @classmethod
    def from_domain(
        cls, user_id: int, decision: AccessDecision, has_purchased: bool
    ) -> "AccessResponse":
        return cls(
            user_id=user_id,
            product_id=decision.product_id,
            has_access=decision.has_access,
            has_purchased=has_purchased,
            reason=decision.reason,
            purchase_id=decision.purchase_id,
            end_timestamp=decision.end_timestamp,
        )


class PurchaseResponse(BaseModel):
    """One stored purchase with its rendered audit lines."""

    purchase_id: int
    purchased_at: int
    session_id: str
    customer_id: str | None
    subscription_id: str | None
    currency: str
    product_ids: list[int]
    lines: list[str]

    @classmethod
    def from_domain(cls, record: PurchaseRecord, lines: list[str]) -> "PurchaseResponse":
        return cls(
            purchase_id=record.id or 0,
            purchased_at=record.purchased_at,
            session_id=record.external_session_id,
            customer_id=record.customer_id,
            subscription_id=record.subscription_id,
            currency=record.currency,
            product_ids=list(record.product_ids),
            lines=lines,
        )


class PurchaseListResponse(BaseModel):
    """GET /v1/users/{user_id}/purchases response."""

    user_id: int
    purchases: list[PurchaseResponse]


# ============================================================================
# Admin Models
# ============================================================================


class SyncRequest(BaseModel):
    """POST /v1/admin/sync request body."""

    dry_run: bool = True
    update_existing: bool = False
    create_missing_users: bool = False
    created_from: int | None = Field(None, ge=0, description="Unix timestamp, inclusive")
    created_to: int | None = Field(None, ge=0, description="Unix timestamp, inclusive")
    email: str | None = Field(None, min_length=3, max_length=255)
    key_indices: list[int] = Field(
        default_factory=list, description="Indices into the configured API keys; empty = all"
    )

    @field_validator("key_indices")
    @classmethod
    def validate_key_indices(cls, v: list[int]) -> list[int]:
        if any(index < 0 for index in v):
            raise ValueError("key indices must be non-negative")
        return v

    @model_validator(mode="after")
    def validate_email(self) -> "SyncRequest":
        if self.email is not None and "@" not in self.email:
            raise ValueError("email filter must be an email address")
        return self


class SyncOutcomeResponse(BaseModel):
    session_id: str
    status: SyncStatus
    detail: str
    email: str | None = None
    lines: list[str] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, outcome: SyncOutcome) -> "SyncOutcomeResponse":
        return cls(
            session_id=outcome.session_id,
            status=outcome.status,
            detail=outcome.detail,
            email=outcome.email,
            lines=list(outcome.lines),
        )


class SyncTotals(BaseModel):
    scanned: int
    matched: int
    linked: int
    created: int
    updated: int
    skipped: int
    errors: int


class SyncResponse(BaseModel):
    """POST /v1/admin/sync response."""

    dry_run: bool
    update_existing: bool
    create_missing_users: bool
    created_from: int | None
    created_to: int | None
    email_filter: str | None
    totals: SyncTotals
    duration_ms: int
    outcomes: list[SyncOutcomeResponse]

    @classmethod
    def from_domain(cls, report: SyncReport) -> "SyncResponse":
        return cls(
            dry_run=report.dry_run,
            update_existing=report.update_existing,
            create_missing_users=report.create_missing_users,
            created_from=report.created_from,
            created_to=report.created_to,
            email_filter=report.email_filter,
            totals=SyncTotals(
                scanned=report.sessions_scanned,
                matched=report.sessions_matched,
                linked=report.count(SyncStatus.LINKED),
                created=report.count(SyncStatus.CREATE),
                updated=report.count(SyncStatus.UPDATE),
                skipped=report.count(SyncStatus.SKIP),
                errors=report.count(SyncStatus.ERROR),
            ),
            duration_ms=report.duration_ms,
            outcomes=[SyncOutcomeResponse.from_domain(o) for o in report.outcomes],
        )


class GateProductRequest(BaseModel):
    """POST /v1/admin/products/{product_id}/gate request body."""

    stripe_product_id: str = Field(..., min_length=1, max_length=255, pattern=r"^\S+$")
    requires_access: bool | None = None
    dry_run: bool = False


class GateProductResponse(BaseModel):
    product_id: int
    stripe_product_id: str
    purchases_migrated: int
    purchase_ids: list[int]
    users_notified: int
    dry_run: bool


# ============================================================================
# Health Check Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str


# ============================================================================
# Error Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
