"""
Backfill Sync - Operator-triggered reconciliation of historical checkout sessions.

Lists sessions of the selected accounts (all pages), keeps paid ones and
decides per session:

    LINKED  session already stored, update_existing off
    UPDATE  session already stored, record refreshed and state re-merged
    CREATE  new purchase (buyer created when create_missing_users is on)
    SKIP    no email, or buyer unknown and creation disabled
    ERROR   provider or persistence failure for that item only

Every item commits on its own, so a run can be interrupted between items.
"""

import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from structlog import get_logger

from app.exceptions import PaymentProviderError
from app.models.domain import SyncOutcome, SyncReport, SyncStatus, UserData
from app.observability import log_context, metrics, trace_operation
from app.services.locks import user_locks
from app.services.normalization import dig, session_is_paid, session_name
from app.services.payment_provider import PaymentProvider
from app.services.purchase_ingestor import PurchaseIngestor
from app.services.purchase_store import PurchaseStore
from app.services.scope_resolver import CatalogMapping
from app.services.user_directory import UserDirectory, normalize_email

logger = get_logger(__name__)

DAY_SECONDS = 86400


@dataclass(frozen=True)
class SyncOptions:
    """Parameters of one sync run."""

    dry_run: bool = True
    update_existing: bool = False
    create_missing_users: bool = False
    created_from: int | None = None
    created_to: int | None = None
    email: str | None = None
    key_indices: tuple[int, ...] = ()


def normalize_date_range(
    created_from: int | None, created_to: int | None
) -> tuple[int | None, int | None]:
    """
    Widen a date-only upper bound to the end of its day and order the bounds.

    A bound equal to the lower bound, or a midnight timestamp, is treated as a
    calendar day and extended to 23:59:59.
    """
    if created_to:
        if created_from and created_from == created_to:
            created_to += DAY_SECONDS - 1
        elif created_to % DAY_SECONDS == 0:
            created_to += DAY_SECONDS - 1
    if created_from and created_to and created_to < created_from:
        created_from, created_to = created_to, created_from
    return created_from or None, created_to or None


def select_keys(keys: Sequence[str], indices: Sequence[int]) -> list[tuple[int, str]]:
    """(index, key) pairs for the requested indices; all keys when none are given."""
    if not indices:
        return list(enumerate(keys))
    return [(index, keys[index]) for index in dict.fromkeys(indices) if 0 <= index < len(keys)]


def listed_email(session: Mapping[str, Any]) -> str | None:
    """Buyer email as present in a listed (non-expanded) session."""
    email = dig(session, "customer_details", "email") or session.get("customer_email")
    return str(email).strip() or None if email else None


def session_matches_email(session: Mapping[str, Any], target: str) -> bool:
    candidates = (dig(session, "customer_details", "email"), session.get("customer_email"))
    return any(value and normalize_email(str(value)) == target for value in candidates)


class SyncService:
    """Runs backfill syncs and returns a structured report."""

    def __init__(
        self,
        store: PurchaseStore,
        directory: UserDirectory,
        provider: PaymentProvider,
        catalog: CatalogMapping,
        default_currency: str = "EUR",
        page_size: int = 100,
    ) -> None:
        self.store = store
        self.directory = directory
        self.provider = provider
        self.catalog = catalog
        self.page_size = page_size
        self.ingestor = PurchaseIngestor(store, provider, catalog, default_currency)

    async def run(self, options: SyncOptions) -> SyncReport:
        started = time.monotonic()
        created_from, created_to = normalize_date_range(options.created_from, options.created_to)
        target = normalize_email(options.email) if options.email else None

        outcomes: list[SyncOutcome] = []
        scanned = 0
        matched = 0

        logger.info(
            "sync_started",
            dry_run=options.dry_run,
            update_existing=options.update_existing,
            create_missing_users=options.create_missing_users,
            created_from=created_from,
            created_to=created_to,
            email=target,
        )

        for index, api_key in select_keys(self.provider.api_keys, options.key_indices):
            try:
                async for session in self.provider.list_sessions(
                    api_key, created_from, created_to, self.page_size
                ):
                    scanned += 1
                    if target is not None and not session_matches_email(session, target):
                        continue
                    matched += 1
                    outcome = await self._sync_session(session, api_key, options)
                    if outcome is not None:
                        outcomes.append(outcome)
                        metrics.record_sync_item(outcome.status.value, options.dry_run)
            except PaymentProviderError as e:
                logger.error("sync_key_failed", key_index=index, error=str(e))
                outcomes.append(
                    SyncOutcome(session_id=f"key#{index}", status=SyncStatus.ERROR, detail=e.message)
                )
                metrics.record_sync_item(SyncStatus.ERROR.value, options.dry_run)

        duration = time.monotonic() - started
        metrics.sync_duration_seconds.observe(duration)
        report = SyncReport(
            dry_run=options.dry_run,
            update_existing=options.update_existing,
            create_missing_users=options.create_missing_users,
            created_from=created_from,
            created_to=created_to,
            email_filter=target,
            outcomes=tuple(outcomes),
            sessions_scanned=scanned,
            sessions_matched=matched,
            duration_ms=int(duration * 1000),
        )
        logger.info(
            "sync_finished",
            scanned=scanned,
            matched=matched,
            created=report.count(SyncStatus.CREATE),
            updated=report.count(SyncStatus.UPDATE),
            linked=report.count(SyncStatus.LINKED),
            skipped=report.count(SyncStatus.SKIP),
            errors=report.count(SyncStatus.ERROR),
            duration_ms=report.duration_ms,
        )
        return report

    async def _sync_session(
        self, session: Mapping[str, Any], api_key: str, options: SyncOptions
    ) -> SyncOutcome | None:
        """Decide and (unless dry run) apply one listed session; unpaid sessions yield None."""
        session_id = str(session.get("id") or "")
        if not session_id or not session_is_paid(session):
            return None

        email = listed_email(session)
        if not email:
            return SyncOutcome(session_id=session_id, status=SyncStatus.SKIP, detail="no email")

        with log_context(session_id=session_id), trace_operation(
            "sync_item", session_id=session_id, dry_run=options.dry_run
        ):
            try:
                return await self._reconcile(session_id, session, email, api_key, options)
            except Exception as e:
                await self.store.rollback()
                metrics.record_error(type(e).__name__, "sync_item")
                logger.exception("sync_item_failed", error=str(e))
                return SyncOutcome(
                    session_id=session_id,
                    status=SyncStatus.ERROR,
                    detail=f"{type(e).__name__}: {e}",
                    email=email,
                )

    async def _reconcile(
        self,
        session_id: str,
        session: Mapping[str, Any],
        email: str,
        api_key: str,
        options: SyncOptions,
    ) -> SyncOutcome:
        linked = await self.store.get_by_session_id(session_id)
        if linked is not None and not options.update_existing:
            return SyncOutcome(
                session_id=session_id,
                status=SyncStatus.LINKED,
                detail=f"linked to purchase #{linked.record.id}",
                email=email,
            )

        user: UserData | None = None
        if linked is None:
            user = await self.directory.find_by_email(email)
            if user is None and not options.create_missing_users:
                return SyncOutcome(
                    session_id=session_id, status=SyncStatus.SKIP, detail="user missing", email=email
                )

        fetched = await self.provider.fetch_session(session_id, api_key=api_key)
        prepared = await self.ingestor.prepare(fetched, backfill_renewals=True)

        if linked is not None:
            user_id = linked.record.user_id
            status = SyncStatus.UPDATE
        else:
            if user is None:
                user = (
                    UserData(user_id=0, email=email, name=session_name(session), is_new=True)
                    if options.dry_run
                    else await self.directory.create_user(email, session_name(fetched.payload))
                )
            user_id = user.user_id
            status = SyncStatus.CREATE

        async with user_locks.hold(user_id):
            existing = await self.store.get_by_session_id(session_id) if linked else None
            result = await self.ingestor.store_purchase(
                prepared, user_id, existing=existing, dry_run=options.dry_run
            )
            if options.dry_run:
                await self.store.rollback()
            else:
                await self.store.commit()

        if status == SyncStatus.UPDATE:
            detail = f"updated purchase #{result.purchase_id}"
        elif result.purchase_id:
            detail = f"created purchase #{result.purchase_id}"
        else:
            detail = "would create purchase"
        return SyncOutcome(
            session_id=session_id, status=status, detail=detail, email=email, lines=result.lines
        )
