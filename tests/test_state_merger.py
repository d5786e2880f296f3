"""
Tests for the state merger.

Pure merge rules, property-based checks over random event sequences,
and the persisting StateMerger.
"""

from dataclasses import replace

import pytest
from hypothesis import given
from hypothesis import strategies as st

from app.models.domain import (
    ZERO_STATE,
    AccessState,
    Event,
    EventKind,
    MappedScope,
    PurchaseSnapshot,
    RenewalEntry,
    UnmappedScope,
)
from app.services.state_merger import (
    ScopeChange,
    StateMerger,
    candidate_end,
    merge_access_state,
    plan_merge,
)
from tests.payloads import FEB_1, JAN_1, MAR_1, purchase_record

SCOPE = MappedScope(1)
NOW = JAN_1 + 86400


def event(**kwargs) -> Event:
    defaults = {
        "kind": EventKind.SUBSCRIPTION_UPDATED,
        "scope_keys": (SCOPE,),
        "recurring_scope_keys": frozenset({SCOPE}),
        "occurred_at": JAN_1,
    }
    defaults.update(kwargs)
    return Event(**defaults)


# ============================================================================
# Hypothesis Strategies
# ============================================================================

timestamps = st.one_of(st.none(), st.integers(min_value=1, max_value=4_000_000_000))

states = st.builds(
    lambda end, flag: AccessState(
        end_timestamp=end, paused=flag == "paused", canceled=flag == "canceled"
    ),
    st.integers(min_value=0, max_value=4_000_000_000),
    st.sampled_from(["none", "paused", "canceled"]),
)

events = st.builds(
    lambda kind, period_end, paused, canceled, resume, ended_at, cancel_at: event(
        kind=kind,
        period_end=period_end,
        paused=paused,
        canceled=canceled,
        resume=resume,
        ended_at=ended_at,
        cancel_at=cancel_at,
    ),
    st.sampled_from(list(EventKind)),
    timestamps,
    st.one_of(st.none(), st.booleans()),
    st.one_of(st.none(), st.booleans()),
    st.booleans(),
    timestamps,
    timestamps,
)

non_canceling_events = events.filter(lambda e: not e.canceled)

now_values = st.integers(min_value=1, max_value=4_000_000_000)


class TestMergeProperties:
    """Invariants that hold for any state and event."""

    @given(states, events, now_values)
    def test_idempotent(self, state, evt, now):
        """Applying the same event twice equals applying it once."""
        once = merge_access_state(state, evt, now)
        assert merge_access_state(once, evt, now) == once

    @given(states, events, now_values)
    def test_replay_with_later_now_is_idempotent(self, state, evt, now):
        """A redelivered cancellation does not move the end again."""
        once = merge_access_state(state, evt, now)
        assert merge_access_state(once, evt, now + 3600) == once

    @given(states, st.lists(non_canceling_events, max_size=8), now_values)
    def test_end_never_decreases(self, state, sequence, now):
        """Non-canceling events only raise the end timestamp."""
        current = state
        for evt in sequence:
            merged = merge_access_state(current, evt, now)
            assert merged.end_timestamp >= current.end_timestamp
            current = merged

    @given(states, st.lists(events, max_size=8), now_values)
    def test_flags_exclusive(self, state, sequence, now):
        """canceled implies not paused after any sequence."""
        current = state
        for evt in sequence:
            current = merge_access_state(current, evt, now)
            assert not (current.canceled and current.paused)

    @given(states, events, now_values)
    def test_canceled_is_sticky(self, state, evt, now):
        """Nothing un-cancels a scope."""
        if state.canceled:
            assert merge_access_state(state, evt, now).canceled


class TestMergeRules:
    """Concrete flag-priority and end-candidate rules."""

    def test_period_end_raises_end(self):
        merged = merge_access_state(ZERO_STATE, event(period_end=FEB_1), NOW)
        assert merged == AccessState(end_timestamp=FEB_1)

    def test_older_period_end_is_ignored(self):
        """Out-of-order delivery never lowers the end."""
        state = AccessState(end_timestamp=MAR_1)
        assert merge_access_state(state, event(period_end=FEB_1), NOW) == state

    def test_pause_sets_paused(self):
        merged = merge_access_state(AccessState(end_timestamp=FEB_1), event(paused=True), NOW)
        assert merged.paused and not merged.canceled

    def test_resume_clears_paused(self):
        state = AccessState(end_timestamp=FEB_1, paused=True)
        merged = merge_access_state(state, event(paused=False, resume=True), NOW)
        assert not merged.paused

    def test_paused_none_without_resume_keeps_flag(self):
        """An event that says nothing about pausing leaves the flag alone."""
        state = AccessState(end_timestamp=FEB_1, paused=True)
        assert merge_access_state(state, event(period_end=MAR_1), NOW).paused

    def test_cancel_clears_paused(self):
        state = AccessState(end_timestamp=FEB_1, paused=True)
        merged = merge_access_state(state, event(canceled=True, ended_at=FEB_1), NOW)
        assert merged == AccessState(end_timestamp=FEB_1, canceled=True)

    def test_pause_after_cancel_is_ignored(self):
        state = AccessState(end_timestamp=FEB_1, canceled=True)
        assert merge_access_state(state, event(paused=True), NOW) == state

    def test_resume_after_cancel_is_ignored(self):
        state = AccessState(end_timestamp=FEB_1, canceled=True)
        assert merge_access_state(state, event(resume=True), NOW) == state

    def test_cancel_end_candidates_in_order(self):
        """ended_at, then cancel_at, then period_end, then now."""
        base = AccessState()
        assert candidate_end(base, event(canceled=True, ended_at=1, cancel_at=2, period_end=3), 9) == 1
        assert candidate_end(base, event(canceled=True, cancel_at=2, period_end=3), 9) == 2
        assert candidate_end(base, event(canceled=True, period_end=3), 9) == 3
        assert candidate_end(base, event(canceled=True), 9) == 9

    def test_cancel_now_fallback_only_once(self):
        """An already canceled scope gets no 'now' candidate."""
        canceled = AccessState(end_timestamp=5, canceled=True)
        assert candidate_end(canceled, event(canceled=True), 9) is None

    def test_cancel_never_lowers_end(self):
        state = AccessState(end_timestamp=MAR_1)
        merged = merge_access_state(state, event(canceled=True, ended_at=FEB_1), NOW)
        assert merged == AccessState(end_timestamp=MAR_1, canceled=True)


class TestPlanMerge:
    """Tests for plan_merge."""

    def _snapshot(self, states=None, renewals=None):
        return PurchaseSnapshot(
            record=replace(purchase_record(), id=7),
            access_states=states or {},
            renewals=renewals or {},
        )

    def test_absent_scope_with_no_effect_is_not_written(self):
        """A zero result on an absent scope never creates a row."""
        plan = plan_merge(self._snapshot(), event(resume=True), (SCOPE,), NOW)
        assert plan.changed_scopes == ()
        assert plan.is_noop

    def test_changes_listed_per_scope(self):
        other = UnmappedScope("prod_new")
        plan = plan_merge(
            self._snapshot({SCOPE: AccessState(end_timestamp=MAR_1)}),
            event(period_end=FEB_1, scope_keys=(SCOPE, other)),
            (SCOPE, other, SCOPE),
            NOW,
        )
        assert [c.scope_key for c in plan.changes] == [SCOPE, other]
        assert plan.changed_scopes == (other,)

    def test_renewals_deduplicated_against_ledger(self):
        existing = RenewalEntry(date=FEB_1, amount=1500, invoice_id="in_1", subscription_id="sub_1")
        snapshot = self._snapshot(renewals={SCOPE: (existing,)})
        renewal = event(
            kind=EventKind.INVOICE_PAID,
            invoice_id="in_1",
            billing_reason="subscription_cycle",
            amount=1500,
        )
        assert plan_merge(snapshot, renewal, (), NOW, record_renewals=True).renewals == ()

        fresh = event(
            kind=EventKind.INVOICE_PAID,
            invoice_id="in_2",
            billing_reason="subscription_cycle",
            amount=1500,
            occurred_at=MAR_1,
        )
        plan = plan_merge(snapshot, fresh, (), NOW, record_renewals=True)
        assert [(key, entry.invoice_id) for key, entry in plan.renewals] == [(SCOPE, "in_2")]

    def test_renewals_only_when_requested(self):
        renewal = event(kind=EventKind.INVOICE_PAID, invoice_id="in_1", billing_reason="subscription_cycle")
        assert plan_merge(self._snapshot(), renewal, (), NOW).renewals == ()

    def test_scope_change_changed_flag(self):
        assert ScopeChange(SCOPE, ZERO_STATE, AccessState(end_timestamp=1)).changed
        assert not ScopeChange(SCOPE, ZERO_STATE, ZERO_STATE).changed


class TestStateMerger:
    """Tests for the persisting StateMerger."""

    @pytest.mark.asyncio
    async def test_apply_writes_changed_scopes(self, store):
        snapshot = store.seed(purchase_record())
        merger = StateMerger(store)

        plan = await merger.apply(snapshot, event(period_end=FEB_1), (SCOPE,), NOW)

        assert plan.changed_scopes == (SCOPE,)
        assert store.snapshot(snapshot.purchase_id).access_states[SCOPE].end_timestamp == FEB_1

    @pytest.mark.asyncio
    async def test_apply_twice_is_noop(self, store):
        snapshot = store.seed(purchase_record())
        merger = StateMerger(store)
        evt = event(period_end=FEB_1, paused=True)

        await merger.apply(snapshot, evt, (SCOPE,), NOW)
        second = await merger.apply(store.snapshot(snapshot.purchase_id), evt, (SCOPE,), NOW)

        assert second.is_noop

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, store):
        snapshot = store.seed(purchase_record())
        renewal = event(
            kind=EventKind.INVOICE_PAID,
            invoice_id="in_9",
            billing_reason="subscription_cycle",
            period_end=MAR_1,
        )

        plan = await StateMerger(store).apply(
            snapshot, renewal, (SCOPE,), NOW, dry_run=True, record_renewals=True
        )

        assert plan.changed_scopes == (SCOPE,)
        assert len(plan.renewals) == 1
        stored = store.snapshot(snapshot.purchase_id)
        assert stored.access_states == {}
        assert stored.renewals == {}
