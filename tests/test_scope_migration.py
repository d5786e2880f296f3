"""
Tests for scope migration.

Gating a product moves state and renewals from the unmapped scope of its
external id to the mapped scope, once per purchase.
"""

from datetime import timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from app.exceptions import DataIntegrityError, ResourceNotFoundError
from app.models.domain import AccessState, MappedScope, RenewalEntry, UnmappedScope
from app.services.notifications import NotificationReason
from app.services.scope_migration import (
    ScopeMigrationService,
    merge_migrated_state,
    migrate_renewals,
    migrate_states,
)
from tests.payloads import FEB_1, JAN_1, MAR_1, purchase_record, stored_line

OLD = UnmappedScope("prod_ws")
NEW = MappedScope(4)

states = st.builds(
    lambda end, flag: AccessState(
        end_timestamp=end, paused=flag == "paused", canceled=flag == "canceled"
    ),
    st.integers(min_value=0, max_value=4_000_000_000),
    st.sampled_from(["none", "paused", "canceled"]),
)


def renewal(invoice_id: str, date: int = FEB_1) -> RenewalEntry:
    return RenewalEntry(date=date, amount=2000, invoice_id=invoice_id, subscription_id="sub_1")


def workshop_purchase(session_id: str = "cs_ws_1", user_id: int = 100, **kwargs):
    return purchase_record(
        user_id=user_id,
        session_id=session_id,
        lines=(stored_line("prod_ws", name="Workshop", amount=2000),),
        product_ids=(),
        **kwargs,
    )


@pytest.fixture
def service(store, product_catalog, directory, notifier):
    return ScopeMigrationService(
        store,
        product_catalog,
        directory,
        notifier,
        token_ttl=timedelta(minutes=10),
        base_url="https://shop.example.com",
    )


class TestMigrationRules:
    """Pure state and ledger migration rules."""

    def test_unmapped_state_moves_to_absent_mapped_scope(self):
        migrated = migrate_states({OLD: AccessState(end_timestamp=FEB_1, paused=True)}, OLD, NEW)
        assert migrated == {NEW: AccessState(end_timestamp=FEB_1, paused=True)}

    def test_nothing_to_migrate(self):
        existing = {NEW: AccessState(end_timestamp=FEB_1)}
        assert migrate_states(existing, OLD, NEW) == existing

    def test_canceled_dominates_paused(self):
        merged = merge_migrated_state(
            AccessState(end_timestamp=FEB_1, paused=True),
            AccessState(end_timestamp=JAN_1, canceled=True),
        )
        assert merged == AccessState(end_timestamp=FEB_1, canceled=True)

    @given(states, states)
    def test_merge_keeps_latest_end_and_valid_flags(self, old, new):
        merged = merge_migrated_state(old, new)
        assert merged.end_timestamp == max(old.end_timestamp, new.end_timestamp)
        assert merged.canceled == (old.canceled or new.canceled)
        assert not (merged.canceled and merged.paused)

    def test_renewals_merge_without_duplicates(self):
        migrated = migrate_renewals(
            {OLD: (renewal("in_1"), renewal("in_2", MAR_1)), NEW: (renewal("in_1"),)}, OLD, NEW
        )
        assert OLD not in migrated
        assert [entry.invoice_id for entry in migrated[NEW]] == ["in_1", "in_2"]


class TestGateProduct:
    """Tests for ScopeMigrationService.gate_product."""

    @pytest.mark.asyncio
    async def test_migrates_state_and_renewals(self, service, store, directory, product_catalog):
        directory.add("buyer@example.com")
        seeded = store.seed(
            workshop_purchase(),
            states={OLD: AccessState(end_timestamp=FEB_1, paused=True)},
            renewals={OLD: [renewal("in_1")]},
        )

        report = await service.gate_product(4, "prod_ws")

        assert report.purchase_ids == (seeded.purchase_id,)
        assert report.purchases_migrated == 1
        snapshot = store.snapshot(seeded.purchase_id)
        assert snapshot.access_states == {NEW: AccessState(end_timestamp=FEB_1, paused=True)}
        assert list(snapshot.renewals) == [NEW]
        assert snapshot.record.product_ids == (4,)
        assert product_catalog.products[4].external_product_id == "prod_ws"

    @pytest.mark.asyncio
    async def test_one_time_purchase_gains_product_id(self, service, store, directory):
        directory.add("buyer@example.com")
        seeded = store.seed(workshop_purchase(subscription_id=None))

        report = await service.gate_product(4, "prod_ws")

        assert report.purchase_ids == (seeded.purchase_id,)
        assert store.snapshot(seeded.purchase_id).access_states == {}
        assert store.snapshot(seeded.purchase_id).record.product_ids == (4,)

    @pytest.mark.asyncio
    async def test_one_notification_per_purchase(self, service, store, directory, notifier):
        buyer = directory.add("buyer@example.com")
        other = directory.add("other@example.com")
        store.seed(workshop_purchase("cs_ws_1"))
        store.seed(workshop_purchase("cs_ws_2", purchased_at=FEB_1))
        store.seed(workshop_purchase("cs_ws_3", user_id=other.user_id))
        store.seed(purchase_record(session_id="cs_club"))

        report = await service.gate_product(4, "prod_ws")

        assert report.purchases_migrated == 3
        assert report.users_notified == 2
        assert [(n.user.user_id, n.purchase_id) for n in notifier.sent] == [
            (buyer.user_id, 1),
            (buyer.user_id, 2),
            (other.user_id, 3),
        ]
        first = notifier.sent[0]
        assert first.reason == NotificationReason.SCOPE_MIGRATED
        assert first.external_product_id == "prod_ws"
        assert [link.url for link in first.links] == ["https://example.com/workshop?access=tok100x0"]
        assert directory.token_ttls == [timedelta(minutes=10), timedelta(minutes=10)]

    @pytest.mark.asyncio
    async def test_rerun_notifies_nobody(self, service, store, directory, notifier):
        directory.add("buyer@example.com")
        store.seed(workshop_purchase(), states={OLD: AccessState(end_timestamp=FEB_1)})

        await service.gate_product(4, "prod_ws")
        again = await service.gate_product(4, "prod_ws")

        assert again.purchases_migrated == 0
        assert again.users_notified == 0
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, service, store, directory, notifier, product_catalog):
        directory.add("buyer@example.com")
        seeded = store.seed(workshop_purchase(), states={OLD: AccessState(end_timestamp=FEB_1)})

        report = await service.gate_product(4, "prod_ws", dry_run=True)

        assert report.dry_run
        assert report.purchase_ids == (seeded.purchase_id,)
        assert report.users_notified == 0
        assert store.snapshot(seeded.purchase_id).access_states == {OLD: AccessState(end_timestamp=FEB_1)}
        assert product_catalog.products[4].external_product_id is None
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_unknown_product(self, service):
        with pytest.raises(ResourceNotFoundError):
            await service.gate_product(99, "prod_ws")

    @pytest.mark.asyncio
    async def test_external_id_owned_by_other_product(self, service):
        with pytest.raises(DataIntegrityError):
            await service.gate_product(4, "prod_club")
