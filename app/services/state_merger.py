"""
State Merger - Folds canonical events into per-(purchase, scope) access states.

The merge is a pure function; StateMerger only adds persistence, metrics and
tracing around it. Applying the same event twice leaves state unchanged.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from structlog import get_logger

from app.models.domain import (
    ZERO_STATE,
    AccessState,
    Event,
    PurchaseSnapshot,
    RenewalEntry,
    ScopeKey,
)
from app.observability import metrics, trace_operation
from app.services.purchase_store import PurchaseStore
from app.services.renewal_ledger import has_invoice, renewal_entries_for

logger = get_logger(__name__)


def candidate_end(state: AccessState, event: Event, now: int) -> int | None:
    """
    End timestamp proposed by an event.

    Cancellations fall back to ``now`` only for a scope that is not canceled
    yet, so a replayed cancellation never moves the end again.
    """
    if not event.canceled:
        return event.period_end
    for value in (event.ended_at, event.cancel_at, event.period_end):
        if value:
            return value
    return None if state.canceled else now


def merge_access_state(state: AccessState, event: Event, now: int) -> AccessState:
    """Apply one event to one scope state. Pure and idempotent."""
    canceled = state.canceled
    paused = state.paused

    if event.canceled:
        canceled = True
        paused = False
    elif event.paused:
        if not canceled:
            paused = True
    elif event.resume:
        if not canceled:
            paused = False

    end = state.end_timestamp
    proposed = candidate_end(state, event, now)
    if proposed is not None and proposed > end:
        end = proposed

    return AccessState(end_timestamp=end, paused=paused, canceled=canceled)


@dataclass(frozen=True)
class ScopeChange:
    """Before/after state of one scope touched by a merge."""

    scope_key: ScopeKey
    before: AccessState
    after: AccessState

    @property
    def changed(self) -> bool:
        """Absent states equal the zero state, so a zero result is never written."""
        return self.before != self.after


@dataclass(frozen=True)
class MergePlan:
    """Everything one event would write for one purchase."""

    purchase_id: int
    changes: tuple[ScopeChange, ...]
    renewals: tuple[tuple[ScopeKey, RenewalEntry], ...] = ()

    @property
    def changed_scopes(self) -> tuple[ScopeKey, ...]:
        return tuple(change.scope_key for change in self.changes if change.changed)

    @property
    def is_noop(self) -> bool:
        return not self.changed_scopes and not self.renewals


def plan_merge(
    snapshot: PurchaseSnapshot,
    event: Event,
    scope_keys: Iterable[ScopeKey],
    now: int,
    record_renewals: bool = False,
) -> MergePlan:
    """
    Compute the writes for one purchase without performing them.

    ``scope_keys`` is the subset of the event's recurring scopes that belongs to
    this purchase. Renewal entries already present (same invoice id) are dropped.
    """
    changes: list[ScopeChange] = []
    for scope_key in dict.fromkeys(scope_keys):
        existing = snapshot.access_states.get(scope_key)
        before = existing if existing is not None else ZERO_STATE
        after = merge_access_state(before, event, now)
        changes.append(ScopeChange(scope_key=scope_key, before=before, after=after))

    renewals: list[tuple[ScopeKey, RenewalEntry]] = []
    if record_renewals:
        for scope_key, entry in renewal_entries_for(event):
            if not has_invoice(snapshot.renewals.get(scope_key, ()), entry.invoice_id):
                renewals.append((scope_key, entry))

    return MergePlan(
        purchase_id=snapshot.purchase_id, changes=tuple(changes), renewals=tuple(renewals)
    )


class StateMerger:
    """
    Persists merge plans through the purchase store.

    The caller holds the per-user lock and owns the transaction; nothing is
    committed here.
    """

    def __init__(self, store: PurchaseStore) -> None:
        self.store = store

    async def apply(
        self,
        snapshot: PurchaseSnapshot,
        event: Event,
        scope_keys: Iterable[ScopeKey],
        now: int,
        dry_run: bool = False,
        record_renewals: bool = False,
    ) -> MergePlan:
        """Plan and (unless dry run) write the merge of one event into one purchase."""
        plan = plan_merge(snapshot, event, scope_keys, now, record_renewals=record_renewals)

        with trace_operation(
            "state_merge",
            purchase_id=plan.purchase_id,
            event_kind=event.kind.value,
            dry_run=dry_run,
        ) as span:
            for change in plan.changes:
                metrics.record_merge(event.kind.value, change.changed)
                if change.changed and not dry_run:
                    await self.store.save_access_state(
                        plan.purchase_id, change.scope_key, change.after
                    )

            for scope_key, entry in plan.renewals:
                if not dry_run:
                    await self.store.append_renewal(plan.purchase_id, scope_key, entry)
                    metrics.renewals_recorded_total.inc()

            span.set_attribute("scopes_changed", len(plan.changed_scopes))
            span.set_attribute("renewals", len(plan.renewals))

        if not plan.is_noop:
            logger.info(
                "access_state_merged",
                purchase_id=plan.purchase_id,
                event_kind=event.kind.value,
                scopes=[scope.serialize() for scope in plan.changed_scopes],
                renewals=len(plan.renewals),
                dry_run=dry_run,
            )
        return plan
