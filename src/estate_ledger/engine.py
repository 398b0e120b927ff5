# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Reconciliation engine facade for Estate Ledger.

This module ties the pure computations (balances.py, ledger.py, kpi.py) to
the record store (store.py) and the payout writer (payouts.py).

The engine orchestrates three responsibilities:

1. Explicit recomputation
   -----------------------
   Every read is a pure function of the store's current Snapshot. The
   per-pass intermediates (record index, category index, P&L exclusion set,
   resolved scopes) are built once into an AggregationContext and memoised,
   keyed by the Snapshot the store currently publishes. A write publishes a
   new Snapshot (new version), so the next read rebuilds the context.
   ``recompute()`` forces the rebuild explicitly.

2. Reads
   -----
   ``balances``, ``ledger``, ``kpi`` and ``kpis`` delegate to the pure
   functions with the memoised context. ``outstanding_commissions`` lists
   what a broker can be paid.

3. Writes and checks
   -----------------
   ``pay_owner`` and ``pay_broker`` delegate to the payout writer.
   ``check`` runs the data-quality checks (missing system categories,
   dangling references, inconsistent bill / invoice statuses) and returns a
   CheckReport without modifying anything.

Notes
-----
With ``policy.strict_categories`` on, the engine validates the required
system categories when it is created and fails fast with
MissingSystemCategory.
"""

import datetime as dt
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import structlog

from .balances import (
    AggregationContext,
    Balance,
    BucketKind,
    CommissionContext,
    accumulate,
)
from .categories import validate_system_categories
from .config import PolicyConfig
from .exceptions import InconsistentBillState, UnresolvedScope
from .kpi import KpiResult, compute_kpi, compute_kpis
from .ledger import LedgerRow, build_ledger
from .models import Transaction
from .payouts import (
    CommissionItem,
    outstanding_commissions,
    record_broker_payouts,
    record_payout,
)
from .resolver import dangling_references
from .store import RecordStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CheckReport:
    """Result of ``ReconciliationEngine.check``."""

    missing_categories: list[str] = field(default_factory=list)
    dangling_references: list[UnresolvedScope] = field(default_factory=list)
    inconsistent_documents: list[InconsistentBillState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (
            self.missing_categories
            or self.dangling_references
            or self.inconsistent_documents
        )


class ReconciliationEngine:
    """Pull-based facade over a RecordStore."""

    def __init__(self, store: RecordStore, policy: Optional[PolicyConfig] = None):
        self.store = store
        self.policy = policy or PolicyConfig()
        self._lock = threading.Lock()
        self._context: Optional[AggregationContext] = None

        if self.policy.strict_categories:
            validate_system_categories(
                store.snapshot.categories, self.policy.rules, self.policy.required
            )

    # ------------------------------------------------------------------
    # Per-pass context
    # ------------------------------------------------------------------

    def context(self) -> AggregationContext:
        """Return the context of the current snapshot, building it if stale."""
        snapshot = self.store.snapshot
        with self._lock:
            cached = self._context
            if cached is not None and cached.snapshot is snapshot:
                return cached
        return self.recompute()

    def recompute(self) -> AggregationContext:
        """Rebuild the per-pass context from the current snapshot."""
        snapshot = self.store.snapshot
        agg = AggregationContext.build(snapshot, self.policy)
        with self._lock:
            self._context = agg
        logger.debug(
            "context_recomputed",
            version=snapshot.version,
            transactions=len(snapshot.transactions),
        )
        return agg

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def balances(
        self,
        bucket: Union[str, BucketKind],
        *,
        building_id: Optional[str] = None,
        context: Union[str, CommissionContext, None] = None,
    ) -> dict[str, Balance]:
        agg = self.context()
        return accumulate(
            agg.snapshot,
            bucket,
            building_id=building_id,
            context=context,
            aggregation=agg,
        )

    def ledger(
        self,
        entity_id: str,
        bucket: Union[str, BucketKind],
        *,
        building_id: Optional[str] = None,
        context: Union[str, CommissionContext, None] = None,
        sort_key: str = "date",
        sort_dir: str = "desc",
    ) -> list[LedgerRow]:
        agg = self.context()
        return build_ledger(
            agg.snapshot,
            entity_id,
            bucket,
            building_id=building_id,
            context=context,
            sort_key=sort_key,
            sort_dir=sort_dir,
            aggregation=agg,
        )

    def kpi(self, kpi_id: str, *, as_of: Optional[dt.date] = None) -> float:
        agg = self.context()
        return compute_kpi(kpi_id, agg.snapshot, as_of=as_of, aggregation=agg)

    def kpis(
        self, ids: Optional[list[str]] = None, *, as_of: Optional[dt.date] = None
    ) -> list[KpiResult]:
        agg = self.context()
        return compute_kpis(agg.snapshot, ids=ids, as_of=as_of, aggregation=agg)

    def outstanding_commissions(
        self, broker_id: str, context: Union[str, CommissionContext, None] = None
    ) -> list[CommissionItem]:
        agg = self.context()
        return outstanding_commissions(
            agg.snapshot, broker_id, context=context, aggregation=agg
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def pay_owner(self, **kwargs: Any) -> Transaction:
        """Record an owner payout (see payouts.record_payout)."""
        return record_payout(self.store, policy=self.policy, **kwargs)

    def pay_broker(self, **kwargs: Any) -> list[Transaction]:
        """Record a broker payout batch (see payouts.record_broker_payouts)."""
        return record_broker_payouts(self.store, policy=self.policy, **kwargs)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check(self) -> CheckReport:
        """Run the data-quality checks on the current snapshot."""
        agg = self.context()
        missing = [
            rule.display_name for rule in agg.categories.missing(self.policy.required)
        ]
        if missing:
            logger.warning("missing_system_categories", categories=missing)
        return CheckReport(
            missing_categories=missing,
            dangling_references=dangling_references(agg.snapshot, agg.records),
            inconsistent_documents=self.store.audit_documents(),
        )
