"""
Webhook Ingestion - Applies provider notifications to stored access state.

HTTP contract of the caller:
- EventValidationError (bad signature, unparseable payload): 400, nothing written
- any other failure after verification: 500, provider redelivers
- everything else, including "no matching user": 200
"""

import time
from dataclasses import dataclass
from enum import Enum

from structlog import get_logger

from app.models.domain import Event, EventKind, PurchaseSnapshot, ScopeKey
from app.observability import log_context, metrics, trace_operation
from app.services.locks import user_locks
from app.services.normalization import event_from_webhook
from app.services.payment_provider import PaymentProvider
from app.services.purchase_store import PurchaseStore
from app.services.renewal_ledger import attribute_invoice
from app.services.scope_resolver import CatalogMapping, resolve_scope_keys
from app.services.state_merger import StateMerger

logger = get_logger(__name__)


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    NO_USER = "no_user"
    ACKNOWLEDGED = "acknowledged"


@dataclass(frozen=True)
class WebhookResult:
    outcome: WebhookOutcome
    event_type: str
    event_id: str | None = None
    user_id: int | None = None
    purchases_updated: int = 0
    renewals_recorded: int = 0


def scopes_for_purchase(
    snapshot: PurchaseSnapshot, event: Event, catalog: CatalogMapping
) -> tuple[ScopeKey, ...]:
    """
    Target scopes of an event inside one purchase.

    A purchase carrying the event's subscription receives every recurring scope
    of the event. Without a subscription id the scopes are limited to those the
    purchase's own line items resolve to.
    """
    targets = event.target_scope_keys
    if event.subscription_id:
        if snapshot.record.subscription_id != event.subscription_id:
            return ()
        return targets
    own = set(resolve_scope_keys(snapshot.record.line_items, catalog))
    return tuple(key for key in targets if key in own)


class WebhookService:
    """Verifies, normalizes and merges one webhook notification."""

    def __init__(
        self, store: PurchaseStore, provider: PaymentProvider, catalog: CatalogMapping
    ) -> None:
        self.store = store
        self.provider = provider
        self.catalog = catalog
        self.merger = StateMerger(store)

    async def handle(self, payload: bytes, signature: str, now: int | None = None) -> WebhookResult:
        """
        Handle one raw webhook request.

        Raises:
            WebhookVerificationError: Signature not valid for any secret
            MalformedPayloadError: Payload not parseable
        """
        envelope = await self.provider.verify_webhook(payload, signature)
        event_type = str(envelope.get("type") or "(unknown)")
        event_id = envelope.get("id")

        with log_context(event_id=event_id, event_type=event_type):
            event = event_from_webhook(envelope, self.catalog)
            if event is None:
                logger.info("webhook_event_ignored")
                return self._result(WebhookOutcome.IGNORED, event_type, event_id)

            if event.kind == EventKind.INVOICE_FAILED:
                logger.info("webhook_invoice_payment_failed", customer_id=event.customer_id)
                return self._result(WebhookOutcome.ACKNOWLEDGED, event_type, event_id)

            if not event.customer_id:
                logger.warning("webhook_missing_customer")
                return self._result(WebhookOutcome.NO_USER, event_type, event_id)

            user_id = await self.store.find_user_id_by_customer(event.customer_id)
            if user_id is None:
                logger.info("webhook_no_user_for_customer", customer_id=event.customer_id)
                return self._result(WebhookOutcome.NO_USER, event_type, event_id)

            with log_context(user_id=user_id), trace_operation(
                "webhook_apply", event_type=event_type, user_id=user_id
            ):
                try:
                    async with user_locks.hold(user_id):
                        updated, renewals = await self._apply(
                            user_id, event, int(time.time()) if now is None else now
                        )
                        await self.store.commit()
                except Exception:
                    await self.store.rollback()
                    metrics.record_error("webhook_apply_failed", event_type)
                    logger.exception("webhook_apply_failed")
                    raise

            logger.info(
                "webhook_event_applied",
                subscription_id=event.subscription_id,
                scopes=[key.serialize() for key in event.target_scope_keys],
                purchases_updated=updated,
                renewals_recorded=renewals,
            )
            return self._result(
                WebhookOutcome.PROCESSED,
                event_type,
                event_id,
                user_id=user_id,
                purchases_updated=updated,
                renewals_recorded=renewals,
            )

    async def _apply(self, user_id: int, event: Event, now: int) -> tuple[int, int]:
        purchases = await self.store.list_for_user(user_id, for_update=True)
        if event.subscription_id and not any(
            p.record.subscription_id == event.subscription_id for p in purchases
        ):
            logger.info("webhook_no_purchase_for_subscription", subscription_id=event.subscription_id)

        renewal_target = (
            attribute_invoice(purchases, event, self.catalog) if event.records_renewal else None
        )

        updated = 0
        renewals = 0
        for snapshot in purchases:
            scope_keys = scopes_for_purchase(snapshot, event, self.catalog)
            record_renewals = (
                renewal_target is not None and snapshot.purchase_id == renewal_target.purchase_id
            )
            if not scope_keys and not record_renewals:
                continue
            plan = await self.merger.apply(
                snapshot, event, scope_keys, now, record_renewals=record_renewals
            )
            if plan.changed_scopes:
                updated += 1
            renewals += len(plan.renewals)
        return updated, renewals

    def _result(
        self,
        outcome: WebhookOutcome,
        event_type: str,
        event_id: str | None,
        **kwargs: int,
    ) -> WebhookResult:
        metrics.record_webhook_event(event_type, outcome.value)
        return WebhookResult(outcome=outcome, event_type=event_type, event_id=event_id, **kwargs)
