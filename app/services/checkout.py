"""
Checkout Completion - Synchronous callback after a buyer finished a payment link.

Flow:
1. Idempotency by session id (a repeated callback returns the stored purchase)
2. Retrieve the expanded session (every configured account is tried)
3. Find or create the buyer by email
4. Store the purchase and merge its subscription state under the user lock
5. Build access links, issue a magic-link token for new users, notify
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from urllib.parse import urljoin, urlsplit

from structlog import get_logger

from app.models.domain import AccessLink, UserData
from app.observability import log_context, metrics, trace_operation
from app.services.line_renderer import render_purchase_lines
from app.services.locks import user_locks
from app.services.normalization import session_email, session_is_paid, session_name
from app.services.notifications import (
    AccessMailPolicy,
    AccessNotification,
    NotificationReason,
    Notifier,
)
from app.services.payment_provider import PaymentProvider
from app.services.purchase_ingestor import IngestResult, PurchaseIngestor
from app.services.purchase_store import PurchaseStore
from app.services.scope_resolver import CatalogMapping
from app.services.user_directory import UserDirectory

logger = get_logger(__name__)


class CheckoutStatus(str, Enum):
    CREATED = "created"
    ALREADY_PROCESSED = "already_processed"
    UNPAID = "unpaid"
    NO_EMAIL = "no_email"


@dataclass(frozen=True)
class CheckoutResult:
    """Outcome of one checkout completion."""

    session_id: str
    status: CheckoutStatus
    purchase_id: int | None = None
    user_id: int | None = None
    is_new_user: bool = False
    access_links: tuple[AccessLink, ...] = ()
    already_purchased: tuple[int, ...] = ()
    lines: tuple[str, ...] = ()
    dry_run: bool = False


def absolute_url(url: str, base_url: str | None) -> str:
    """Resolve a relative product url against the public base url."""
    if not base_url or urlsplit(url).scheme:
        return url
    return urljoin(base_url.rstrip("/") + "/", url.lstrip("/"))


def with_access_token(url: str, token: str) -> str:
    glue = "&" if "?" in url else "?"
    return f"{url}{glue}access={token}"


class CheckoutService:
    """Handles the checkout completion callback."""

    def __init__(
        self,
        store: PurchaseStore,
        directory: UserDirectory,
        provider: PaymentProvider,
        catalog: CatalogMapping,
        notifier: Notifier,
        mail_policy: AccessMailPolicy = AccessMailPolicy.NEW_USERS_ONLY,
        token_ttl: timedelta = timedelta(minutes=30),
        default_currency: str = "EUR",
        base_url: str | None = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.provider = provider
        self.catalog = catalog
        self.notifier = notifier
        self.mail_policy = mail_policy
        self.token_ttl = token_ttl
        self.base_url = base_url
        self.ingestor = PurchaseIngestor(store, provider, catalog, default_currency)

    async def complete(
        self, session_id: str, dry_run: bool = False, now: int | None = None
    ) -> CheckoutResult:
        """
        Process a completed checkout session.

        Raises:
            ResourceNotFoundError: No configured account knows the session
            PaymentProviderError: Provider call failed
            PersistenceError: Write failed (transaction rolled back)
        """
        with log_context(session_id=session_id), trace_operation(
            "checkout_complete", session_id=session_id, dry_run=dry_run
        ):
            existing = await self.store.get_by_session_id(session_id)
            if existing is not None:
                logger.info("checkout_already_processed", purchase_id=existing.record.id)
                metrics.record_checkout(CheckoutStatus.ALREADY_PROCESSED.value)
                return CheckoutResult(
                    session_id=session_id,
                    status=CheckoutStatus.ALREADY_PROCESSED,
                    purchase_id=existing.record.id,
                    user_id=existing.record.user_id,
                    lines=tuple(render_purchase_lines(existing, self.catalog)),
                    dry_run=dry_run,
                )

            fetched = await self.provider.fetch_session(session_id)
            if not session_is_paid(fetched.payload):
                logger.info(
                    "checkout_not_paid", payment_status=fetched.payload.get("payment_status")
                )
                metrics.record_checkout(CheckoutStatus.UNPAID.value)
                return CheckoutResult(
                    session_id=session_id, status=CheckoutStatus.UNPAID, dry_run=dry_run
                )

            email = session_email(fetched.payload)
            if not email:
                logger.warning("checkout_without_email")
                metrics.record_checkout(CheckoutStatus.NO_EMAIL.value)
                return CheckoutResult(
                    session_id=session_id, status=CheckoutStatus.NO_EMAIL, dry_run=dry_run
                )

            prepared = await self.ingestor.prepare(fetched)
            user = await self._find_or_create_user(email, session_name(fetched.payload), dry_run)

            try:
                async with user_locks.hold(user.user_id):
                    stored = await self.store.get_by_session_id(session_id)
                    if stored is not None:
                        # Concurrent delivery of the same session won the race.
                        await self.store.rollback()
                        metrics.record_checkout(CheckoutStatus.ALREADY_PROCESSED.value)
                        return CheckoutResult(
                            session_id=session_id,
                            status=CheckoutStatus.ALREADY_PROCESSED,
                            purchase_id=stored.record.id,
                            user_id=stored.record.user_id,
                            lines=tuple(render_purchase_lines(stored, self.catalog)),
                            dry_run=dry_run,
                        )

                    result = await self.ingestor.store_purchase(
                        prepared, user.user_id, dry_run=dry_run, now=now
                    )
                    links = await self._access_links(user, result, dry_run)
                    if dry_run:
                        await self.store.rollback()
                    else:
                        await self.store.commit()
            except Exception:
                await self.store.rollback()
                metrics.record_error("checkout_failed", "checkout_complete")
                raise

            if links and not dry_run and self.mail_policy.should_notify(user.is_new):
                await self.notifier.notify(
                    AccessNotification(
                        user=user,
                        links=links,
                        reason=NotificationReason.PURCHASE_CREATED,
                        purchase_id=result.purchase_id,
                    )
                )

            if result.already_purchased:
                logger.warning(
                    "checkout_duplicate_purchase", product_ids=list(result.already_purchased)
                )

            metrics.record_checkout(CheckoutStatus.CREATED.value)
            logger.info(
                "checkout_completed",
                user_id=user.user_id,
                purchase_id=result.purchase_id,
                is_new_user=user.is_new,
                access_links=len(links),
                dry_run=dry_run,
            )
            return CheckoutResult(
                session_id=session_id,
                status=CheckoutStatus.CREATED,
                purchase_id=result.purchase_id,
                user_id=user.user_id or None,
                is_new_user=user.is_new,
                access_links=links,
                already_purchased=result.already_purchased,
                lines=result.lines,
                dry_run=dry_run,
            )

    async def _find_or_create_user(self, email: str, name: str | None, dry_run: bool) -> UserData:
        user = await self.directory.find_by_email(email)
        if user is not None:
            if name and not dry_run:
                await self.directory.update_name(user.user_id, name)
            return user
        if dry_run:
            # Placeholder for a user that would be created.
            return UserData(user_id=0, email=email, name=name, is_new=True)
        return await self.directory.create_user(email, name)

    async def _access_links(
        self, user: UserData, result: IngestResult, dry_run: bool
    ) -> tuple[AccessLink, ...]:
        """Links to access-gated products; new users get a one-time token appended."""
        token: str | None = None
        links: list[AccessLink] = []
        for product_id in result.snapshot.record.product_ids:
            product = self.catalog.product(product_id)
            if product is None or not product.requires_access or not product.url:
                continue
            url = absolute_url(product.url, self.base_url)
            if user.is_new and not dry_run:
                if token is None:
                    token = await self.directory.issue_access_token(user.user_id, self.token_ttl)
                url = with_access_token(url, token)
            links.append(AccessLink(product_id=product_id, title=product.title, url=url))
        return tuple(links)
