"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
Line items and the raw provider snapshot are the only JSONB columns; they are
converted to and from domain dataclasses at the store boundary.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    ARRAY,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    Buyers are identified by email; the access token backs one-time login links.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    access_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    access_expires: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    purchases: Mapped[list["Purchase"]] = relationship(back_populates="user")

    __table_args__ = (
        UniqueConstraint("email", name="uq_users_email"),
        Index("idx_users_access_token", "access_token", postgresql_where=(access_token.isnot(None))),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<User(id={self.id}, email={self.email})>"


class Product(Base):
    """
    ORM model for products table.

    A product is "mapped" once stripe_product_id is set; that mapping is what
    the scope resolver consults.
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    stripe_product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    requires_access: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    allow_multiple: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (UniqueConstraint("stripe_product_id", name="uq_products_stripe_product_id"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Product(id={self.id}, stripe_product_id={self.stripe_product_id})>"


class Purchase(Base):
    """
    ORM model for purchases table.

    Created once per completed checkout session; never deleted by the engine.
    customer_id is indexed so webhook notifications resolve to a user without
    scanning every purchase.
    """

    __tablename__ = "purchases"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    purchased_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    stripe_session_id: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    line_items: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False, default=list)
    raw_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    product_ids: Mapped[list[int]] = mapped_column(ARRAY(Integer), nullable=False, default=list)
    external_product_ids: Mapped[list[str]] = mapped_column(
        ARRAY(String(255)), nullable=False, default=list
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    user: Mapped["User"] = relationship(back_populates="purchases")
    access_states: Mapped[list["AccessStateRow"]] = relationship(
        back_populates="purchase", cascade="all, delete-orphan"
    )
    renewals: Mapped[list["Renewal"]] = relationship(
        back_populates="purchase", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("stripe_session_id", name="uq_purchases_stripe_session_id"),
        Index("idx_purchases_user_id", "user_id"),
        Index("idx_purchases_customer_id", "customer_id", postgresql_where=(customer_id.isnot(None))),
        Index(
            "idx_purchases_subscription_id",
            "subscription_id",
            postgresql_where=(subscription_id.isnot(None)),
        ),
        Index("idx_purchases_external_product_ids", "external_product_ids", postgresql_using="gin"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Purchase(id={self.id}, user_id={self.user_id}, "
            f"session={self.stripe_session_id})>"
        )


class AccessStateRow(Base):
    """
    ORM model for access_states table.

    One row per (purchase, scope). Rows exist only for recurring scopes.
    """

    __tablename__ = "access_states"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    purchase_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("purchases.id", ondelete="CASCADE"), nullable=False
    )
    scope_key: Mapped[str] = mapped_column(String(300), nullable=False)
    end_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    purchase: Mapped["Purchase"] = relationship(back_populates="access_states")

    __table_args__ = (
        CheckConstraint("NOT (paused AND canceled)", name="ck_access_state_flags_exclusive"),
        CheckConstraint("end_timestamp >= 0", name="ck_access_state_end_non_negative"),
        UniqueConstraint("purchase_id", "scope_key", name="uq_access_state_scope"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<AccessStateRow(purchase_id={self.purchase_id}, scope={self.scope_key}, "
            f"end={self.end_timestamp}, paused={self.paused}, canceled={self.canceled})>"
        )


class Renewal(Base):
    """
    ORM model for renewals table.

    Append-only; an invoice is recorded at most once per (purchase, scope).
    """

    __tablename__ = "renewals"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    purchase_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("purchases.id", ondelete="CASCADE"), nullable=False
    )
    scope_key: Mapped[str] = mapped_column(String(300), nullable=False)
    invoice_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    renewed_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    purchase: Mapped["Purchase"] = relationship(back_populates="renewals")

    __table_args__ = (
        UniqueConstraint("purchase_id", "scope_key", "invoice_id", name="uq_renewal_invoice"),
        Index("idx_renewals_purchase_id", "purchase_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Renewal(purchase_id={self.purchase_id}, invoice={self.invoice_id})>"
