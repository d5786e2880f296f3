"""
Tests for WebhookService.

Signature verification, routing to purchases by customer and subscription,
renewal recording and transactional behavior.
"""

import json
from dataclasses import replace

import pytest

from app.exceptions import MalformedPayloadError, PersistenceError, WebhookVerificationError
from app.models.domain import AccessState, MappedScope, PurchaseSnapshot, UnmappedScope
from app.services.access_decision import has_active_access
from app.services.normalization import event_from_webhook
from app.services.webhooks import WebhookOutcome, WebhookService, scopes_for_purchase
from tests.payloads import (
    APR_1,
    FEB_1,
    JAN_1,
    MAR_1,
    VALID_SIGNATURE,
    envelope,
    invoice,
    purchase_record,
    stored_line,
    subscription,
)

CLUB = MappedScope(1)
NOW = FEB_1 + 3600


def body(payload) -> bytes:
    return json.dumps(payload).encode()


@pytest.fixture
def service(store, provider, catalog):
    return WebhookService(store, provider, catalog)


@pytest.fixture
def club_purchase(store):
    return store.seed(purchase_record(), states={CLUB: AccessState(end_timestamp=FEB_1)})


class TestVerification:
    """Tests for rejected notifications."""

    @pytest.mark.asyncio
    async def test_bad_signature(self, service, club_purchase, store):
        payload = body(envelope("customer.subscription.deleted", subscription(status="canceled")))
        with pytest.raises(WebhookVerificationError):
            await service.handle(payload, "t=1,v1=forged", now=NOW)
        assert not store.snapshot(club_purchase.purchase_id).access_states[CLUB].canceled
        assert store.commits == 0

    @pytest.mark.asyncio
    async def test_unparseable_payload(self, service):
        with pytest.raises(MalformedPayloadError):
            await service.handle(b"{not json", VALID_SIGNATURE, now=NOW)


class TestRouting:
    """Tests for outcomes that write nothing."""

    @pytest.mark.asyncio
    async def test_unhandled_type_is_ignored(self, service):
        result = await service.handle(
            body(envelope("charge.refunded", {"id": "ch_1"}, event_id="evt_9")), VALID_SIGNATURE
        )
        assert result.outcome == WebhookOutcome.IGNORED
        assert result.event_id == "evt_9"

    @pytest.mark.asyncio
    async def test_payment_failed_is_acknowledged(self, service, club_purchase, store):
        result = await service.handle(
            body(envelope("invoice.payment_failed", invoice(status="open"))), VALID_SIGNATURE
        )
        assert result.outcome == WebhookOutcome.ACKNOWLEDGED
        assert store.commits == 0

    @pytest.mark.asyncio
    async def test_unknown_customer(self, service, club_purchase):
        result = await service.handle(
            body(envelope("customer.subscription.updated", subscription(customer="cus_other"))),
            VALID_SIGNATURE,
        )
        assert result.outcome == WebhookOutcome.NO_USER


class TestSubscriptionEvents:
    """Tests for customer.subscription.* notifications."""

    @pytest.mark.asyncio
    async def test_pause_targets_only_matching_subscription(self, service, store, club_purchase):
        other = store.seed(
            purchase_record(session_id="cs_other", subscription_id="sub_2", purchased_at=JAN_1 + 1),
            states={CLUB: AccessState(end_timestamp=FEB_1)},
        )

        result = await service.handle(
            body(envelope("customer.subscription.updated", subscription(paused=True))),
            VALID_SIGNATURE,
            now=NOW,
        )

        assert result.outcome == WebhookOutcome.PROCESSED
        assert result.user_id == 100
        assert result.purchases_updated == 1
        assert store.snapshot(club_purchase.purchase_id).access_states[CLUB].paused
        assert not store.snapshot(other.purchase_id).access_states[CLUB].paused
        assert store.commits == 1

    @pytest.mark.asyncio
    async def test_deletion_cancels_with_ended_at(self, service, store, club_purchase):
        await service.handle(
            body(
                envelope(
                    "customer.subscription.deleted",
                    subscription(status="canceled", ended_at=FEB_1 + 600),
                )
            ),
            VALID_SIGNATURE,
            now=NOW,
        )
        state = store.snapshot(club_purchase.purchase_id).access_states[CLUB]
        assert state == AccessState(end_timestamp=FEB_1 + 600, canceled=True)

    @pytest.mark.asyncio
    async def test_redelivery_changes_nothing(self, service, store, club_purchase):
        payload = body(envelope("customer.subscription.updated", subscription(period_end=MAR_1)))

        first = await service.handle(payload, VALID_SIGNATURE, now=NOW)
        second = await service.handle(payload, VALID_SIGNATURE, now=NOW + 60)

        assert first.purchases_updated == 1
        assert second.outcome == WebhookOutcome.PROCESSED
        assert second.purchases_updated == 0
        assert store.snapshot(club_purchase.purchase_id).access_states[CLUB].end_timestamp == MAR_1

    @pytest.mark.asyncio
    async def test_unmapped_item_gets_unmapped_scope(self, service, store):
        snapshot = store.seed(purchase_record(lines=(stored_line("prod_new", name="New"),)))

        await service.handle(
            body(envelope("customer.subscription.created", subscription(products=("prod_new",)))),
            VALID_SIGNATURE,
            now=NOW,
        )

        states = store.snapshot(snapshot.purchase_id).access_states
        assert states == {UnmappedScope("prod_new"): AccessState(end_timestamp=FEB_1)}


class TestInvoiceEvents:
    """Tests for invoice notifications."""

    @pytest.mark.asyncio
    async def test_renewal_extends_access_and_records_entry(self, service, store, club_purchase, catalog):
        purchase_id = club_purchase.purchase_id
        assert not has_active_access(store.all_purchases(), 1, catalog, FEB_1 + 86400).has_access

        result = await service.handle(
            body(envelope("invoice.payment_succeeded", invoice(period_end=MAR_1))),
            VALID_SIGNATURE,
            now=NOW,
        )

        assert result.renewals_recorded == 1
        snapshot = store.snapshot(purchase_id)
        assert snapshot.access_states[CLUB].end_timestamp == MAR_1
        [entry] = snapshot.renewals[CLUB]
        assert (entry.invoice_id, entry.amount, entry.date) == ("in_1", 1500, FEB_1)
        assert has_active_access(store.all_purchases(), 1, catalog, FEB_1 + 86400).has_access

    @pytest.mark.asyncio
    async def test_renewal_redelivery_is_deduplicated(self, service, store, club_purchase):
        payload = body(envelope("invoice.paid", invoice()))
        await service.handle(payload, VALID_SIGNATURE, now=NOW)
        again = await service.handle(payload, VALID_SIGNATURE, now=NOW)

        assert again.renewals_recorded == 0
        assert len(store.snapshot(club_purchase.purchase_id).renewals[CLUB]) == 1

    @pytest.mark.asyncio
    async def test_renewal_attributed_to_first_purchase(self, service, store, club_purchase):
        later = store.seed(purchase_record(session_id="cs_later", purchased_at=JAN_1 + 86400))

        await service.handle(body(envelope("invoice.paid", invoice())), VALID_SIGNATURE, now=NOW)

        assert CLUB in store.snapshot(club_purchase.purchase_id).renewals
        assert store.snapshot(later.purchase_id).renewals == {}

    @pytest.mark.asyncio
    async def test_initial_invoice_is_not_a_renewal(self, service, store, club_purchase):
        result = await service.handle(
            body(envelope("invoice.paid", invoice(billing_reason="subscription_create", period_end=APR_1))),
            VALID_SIGNATURE,
            now=NOW,
        )
        snapshot = store.snapshot(club_purchase.purchase_id)
        assert result.renewals_recorded == 0
        assert snapshot.renewals == {}
        assert snapshot.access_states[CLUB].end_timestamp == APR_1

    @pytest.mark.asyncio
    async def test_write_failure_rolls_back(self, service, store, club_purchase):
        store.fail_on = "append_renewal"

        with pytest.raises(PersistenceError):
            await service.handle(body(envelope("invoice.paid", invoice())), VALID_SIGNATURE, now=NOW)

        snapshot = store.snapshot(club_purchase.purchase_id)
        assert snapshot.access_states[CLUB].end_timestamp == FEB_1
        assert snapshot.renewals == {}
        assert store.rollbacks == 1


class TestScopesForPurchase:
    """Tests for scopes_for_purchase."""

    def test_without_subscription_limits_to_own_lines(self, catalog):
        ebook = PurchaseSnapshot(
            record=replace(
                purchase_record(lines=(stored_line("prod_ebook"),), subscription_id=None), id=1
            )
        )
        payload = invoice(subscription_id=None, products=("prod_club", "prod_ebook"))
        event = event_from_webhook(envelope("invoice.paid", payload), catalog)
        assert scopes_for_purchase(ebook, event, catalog) == (MappedScope(3),)
