"""
Purchase Store - Persistence of purchases, access states and renewals.

Rows are converted to domain dataclasses at this boundary.
All writes follow the write-verification pattern:
1. Execute write
2. Flush to database
3. Read back and verify
Transactions are owned by the caller (commit/rollback).
"""

from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from structlog import get_logger

from app.db.models import AccessStateRow, Purchase, Renewal
from app.exceptions import PersistenceError, WriteVerificationError
from app.models.domain import (
    AccessState,
    LineItem,
    PriceType,
    PurchaseRecord,
    PurchaseSnapshot,
    RenewalEntry,
    ScopeKey,
    parse_scope_key,
)

logger = get_logger(__name__)


class PurchaseStore(Protocol):
    """Per-user purchase list with access states and renewal ledger."""

    async def get_by_session_id(self, session_id: str) -> PurchaseSnapshot | None:
        ...

    async def list_for_user(self, user_id: int, for_update: bool = False) -> list[PurchaseSnapshot]:
        """Purchases of a user ordered by (purchased_at, id); row-locked when for_update."""
        ...

    async def find_user_id_by_customer(self, customer_id: str) -> int | None:
        ...

    async def list_containing_external_product(
        self, external_product_id: str
    ) -> list[PurchaseSnapshot]:
        ...

    async def create_purchase(self, record: PurchaseRecord) -> PurchaseRecord:
        ...

    async def update_purchase(self, record: PurchaseRecord) -> PurchaseRecord:
        ...

    async def save_access_state(
        self, purchase_id: int, scope_key: ScopeKey, state: AccessState
    ) -> None:
        ...

    async def delete_access_state(self, purchase_id: int, scope_key: ScopeKey) -> None:
        ...

    async def append_renewal(
        self, purchase_id: int, scope_key: ScopeKey, entry: RenewalEntry
    ) -> bool:
        """Append unless the invoice is already recorded for the scope; True when written."""
        ...

    async def delete_renewals(self, purchase_id: int, scope_key: ScopeKey) -> None:
        ...

    async def set_product_ids(self, purchase_id: int, product_ids: Sequence[int]) -> None:
        ...

    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...


# ============================================================================
# Row <-> domain conversion
# ============================================================================


def line_item_to_json(item: LineItem) -> dict[str, Any]:
    return {
        "external_product_id": item.external_product_id,
        "quantity": item.quantity,
        "unit_amount": item.unit_amount,
        "amount_total": item.amount_total,
        "currency": item.currency,
        "price_type": item.price_type.value,
        "description": item.description,
    }


def line_item_from_json(raw: Mapping[str, Any]) -> LineItem:
    return LineItem(
        external_product_id=raw.get("external_product_id"),
        quantity=int(raw["quantity"]),
        unit_amount=int(raw["unit_amount"]),
        amount_total=int(raw["amount_total"]),
        currency=str(raw["currency"]),
        price_type=PriceType(raw["price_type"]),
        description=str(raw["description"]),
    )


def record_from_row(row: Purchase) -> PurchaseRecord:
    return PurchaseRecord(
        id=row.id,
        user_id=row.user_id,
        purchased_at=row.purchased_at,
        external_session_id=row.stripe_session_id,
        customer_id=row.customer_id,
        subscription_id=row.subscription_id,
        currency=row.currency,
        line_items=tuple(line_item_from_json(raw) for raw in row.line_items),
        product_ids=tuple(row.product_ids or ()),
        raw_snapshot=row.raw_snapshot or {},
    )


def snapshot_from_row(row: Purchase) -> PurchaseSnapshot:
    states: dict[ScopeKey, AccessState] = {
        parse_scope_key(state.scope_key): AccessState(
            end_timestamp=state.end_timestamp, paused=state.paused, canceled=state.canceled
        )
        for state in row.access_states
    }
    renewals: dict[ScopeKey, list[RenewalEntry]] = {}
    for renewal in sorted(row.renewals, key=lambda r: r.id):
        renewals.setdefault(parse_scope_key(renewal.scope_key), []).append(
            RenewalEntry(
                date=renewal.renewed_at,
                amount=renewal.amount_minor,
                invoice_id=renewal.invoice_id,
                subscription_id=renewal.subscription_id,
            )
        )
    return PurchaseSnapshot(
        record=record_from_row(row),
        access_states=states,
        renewals={key: tuple(entries) for key, entries in renewals.items()},
    )


def _apply_record(row: Purchase, record: PurchaseRecord) -> None:
    row.user_id = record.user_id
    row.purchased_at = record.purchased_at
    row.stripe_session_id = record.external_session_id
    row.customer_id = record.customer_id
    row.subscription_id = record.subscription_id
    row.currency = record.currency
    row.line_items = [line_item_to_json(item) for item in record.line_items]
    row.raw_snapshot = dict(record.raw_snapshot)
    row.product_ids = list(record.product_ids)
    row.external_product_ids = list(record.external_product_ids)


class SqlPurchaseStore:
    """PurchaseStore backed by the purchases / access_states / renewals tables."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize store with database session."""
        self.session = session

    def _purchase_query(self) -> Any:
        return (
            select(Purchase)
            .options(selectinload(Purchase.access_states), selectinload(Purchase.renewals))
            .execution_options(populate_existing=True)
        )

    async def _flush(self, operation: str, **context: Any) -> None:
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.error("purchase_store_integrity_error", operation=operation, error=str(e), **context)
            raise PersistenceError(f"{operation} violated a constraint: {e.orig}", **context) from e
        except SQLAlchemyError as e:
            logger.error("purchase_store_write_failed", operation=operation, error=str(e), **context)
            raise PersistenceError(f"{operation} failed: {e}", **context) from e

    async def _load(self, purchase_id: int) -> Purchase:
        result = await self.session.execute(
            self._purchase_query().where(Purchase.id == purchase_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise WriteVerificationError(f"Purchase {purchase_id} not found")
        return row

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_by_session_id(self, session_id: str) -> PurchaseSnapshot | None:
        result = await self.session.execute(
            self._purchase_query().where(Purchase.stripe_session_id == session_id)
        )
        row = result.scalar_one_or_none()
        return snapshot_from_row(row) if row is not None else None

    async def list_for_user(self, user_id: int, for_update: bool = False) -> list[PurchaseSnapshot]:
        stmt = (
            self._purchase_query()
            .where(Purchase.user_id == user_id)
            .order_by(Purchase.purchased_at, Purchase.id)
        )
        if for_update:
            stmt = stmt.with_for_update(of=Purchase)
        result = await self.session.execute(stmt)
        return [snapshot_from_row(row) for row in result.scalars().all()]

    async def find_user_id_by_customer(self, customer_id: str) -> int | None:
        result = await self.session.execute(
            select(Purchase.user_id)
            .where(Purchase.customer_id == customer_id)
            .order_by(Purchase.purchased_at.desc(), Purchase.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_containing_external_product(
        self, external_product_id: str
    ) -> list[PurchaseSnapshot]:
        result = await self.session.execute(
            self._purchase_query()
            .where(Purchase.external_product_ids.contains([external_product_id]))
            .order_by(Purchase.user_id, Purchase.purchased_at, Purchase.id)
        )
        return [snapshot_from_row(row) for row in result.scalars().all()]

    # ========================================================================
    # Writes
    # ========================================================================

    async def create_purchase(self, record: PurchaseRecord) -> PurchaseRecord:
        """Insert a purchase and return it with its assigned id."""
        row = Purchase()
        _apply_record(row, record)
        self.session.add(row)
        await self._flush(
            "create_purchase", session_id=record.external_session_id, user_id=record.user_id
        )

        verified = await self.session.get(Purchase, row.id)
        if verified is None or verified.stripe_session_id != record.external_session_id:
            raise WriteVerificationError(
                f"Purchase for session {record.external_session_id} not found after insert",
                session_id=record.external_session_id,
                user_id=record.user_id,
            )
        return record_from_row(verified)

    async def update_purchase(self, record: PurchaseRecord) -> PurchaseRecord:
        if record.id is None:
            raise PersistenceError(
                "Cannot update a purchase without id", session_id=record.external_session_id
            )
        row = await self._load(record.id)
        _apply_record(row, record)
        await self._flush(
            "update_purchase", session_id=record.external_session_id, user_id=record.user_id
        )
        return record_from_row(row)

    async def save_access_state(
        self, purchase_id: int, scope_key: ScopeKey, state: AccessState
    ) -> None:
        """Insert or update the state row of one (purchase, scope) pair."""
        serialized = scope_key.serialize()
        result = await self.session.execute(
            select(AccessStateRow).where(
                AccessStateRow.purchase_id == purchase_id,
                AccessStateRow.scope_key == serialized,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = AccessStateRow(purchase_id=purchase_id, scope_key=serialized)
            self.session.add(row)
        row.end_timestamp = state.end_timestamp
        row.paused = state.paused
        row.canceled = state.canceled
        await self._flush("save_access_state", scope_key=serialized)

        await self.session.refresh(row)
        if (row.end_timestamp, row.paused, row.canceled) != (
            state.end_timestamp,
            state.paused,
            state.canceled,
        ):
            raise WriteVerificationError(
                f"Access state mismatch for purchase {purchase_id}", scope_key=serialized
            )

    async def delete_access_state(self, purchase_id: int, scope_key: ScopeKey) -> None:
        serialized = scope_key.serialize()
        try:
            await self.session.execute(
                delete(AccessStateRow).where(
                    AccessStateRow.purchase_id == purchase_id,
                    AccessStateRow.scope_key == serialized,
                )
            )
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"delete_access_state failed: {e}", scope_key=serialized
            ) from e

    async def append_renewal(
        self, purchase_id: int, scope_key: ScopeKey, entry: RenewalEntry
    ) -> bool:
        serialized = scope_key.serialize()
        result = await self.session.execute(
            select(Renewal.id).where(
                Renewal.purchase_id == purchase_id,
                Renewal.scope_key == serialized,
                Renewal.invoice_id == entry.invoice_id,
            )
        )
        if result.scalar_one_or_none() is not None:
            return False

        self.session.add(
            Renewal(
                purchase_id=purchase_id,
                scope_key=serialized,
                invoice_id=entry.invoice_id,
                subscription_id=entry.subscription_id,
                renewed_at=entry.date,
                amount_minor=entry.amount,
            )
        )
        await self._flush("append_renewal", scope_key=serialized)
        return True

    async def delete_renewals(self, purchase_id: int, scope_key: ScopeKey) -> None:
        serialized = scope_key.serialize()
        try:
            await self.session.execute(
                delete(Renewal).where(
                    Renewal.purchase_id == purchase_id, Renewal.scope_key == serialized
                )
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"delete_renewals failed: {e}", scope_key=serialized) from e

    async def set_product_ids(self, purchase_id: int, product_ids: Iterable[int]) -> None:
        row = await self._load(purchase_id)
        row.product_ids = list(dict.fromkeys(product_ids))
        await self._flush("set_product_ids")

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            logger.error("purchase_store_commit_failed", error=str(e))
            raise PersistenceError(f"commit failed: {e}") from e

    async def rollback(self) -> None:
        await self.session.rollback()
