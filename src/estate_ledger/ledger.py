# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Ledger construction for Estate Ledger.

A ledger is the list of records attributable to a single entity in a single
bucket, projected into rows with a debit, a credit and a running balance.
Rows come from the exact same routing functions as the balance accumulator
(balances.py), so the last row of a ledger always lands on the entity's
accumulated balance:

    collected contribution  -> credit
    paid contribution       -> debit
    negative collected      -> debit (e.g. service charge deducted from rent)

Sorting
-------
Rows can be sorted by date, description, credit, debit or balance, ascending
or descending. The sort is stable: rows with equal keys keep their store
order (earned commissions first, then transactions in insertion order).
Description comparisons are case-insensitive. The "balance" key sorts on the
row's own net effect (credit - debit), since the running balance does not
exist until the order is fixed.

The running balance is computed *after* sorting, as the prefix sum of
``credit - debit``. Changing the sort order therefore changes the
intermediate balances shown per row but never the final one.
"""

import datetime as dt
from dataclasses import dataclass, replace
from typing import Optional, Union

from .balances import (
    AggregationContext,
    BucketKind,
    CommissionContext,
    Contribution,
    Side,
    iter_contributions,
)
from .config import PolicyConfig
from .models import Snapshot

SORT_KEYS: tuple[str, ...] = ("date", "description", "credit", "debit", "balance")
SORT_DIRS: tuple[str, ...] = ("asc", "desc")


@dataclass(frozen=True)
class LedgerRow:
    """One record projected into an entity ledger.

    Attributes:
        date: Date of the underlying record (None if unknown).
        description: Particulars shown to the user.
        debit: Outflow for the entity (>= 0).
        credit: Inflow for the entity (>= 0).
        balance: Running balance after this row, in the displayed order.
        kind: Contribution kind (e.g. "rental_income", "commission_paid").
        source_id: Id of the transaction or agreement behind the row.
    """

    date: Optional[dt.date]
    description: str
    debit: float
    credit: float
    balance: float = 0.0
    kind: str = ""
    source_id: str = ""

    @property
    def net(self) -> float:
        return self.credit - self.debit


def _to_row(c: Contribution) -> LedgerRow:
    debit = credit = 0.0
    if c.side == Side.COLLECTED:
        if c.amount >= 0:
            credit = c.amount
        else:
            debit = -c.amount
    else:
        debit = c.amount
    return LedgerRow(
        date=c.date,
        description=c.description,
        debit=debit,
        credit=credit,
        kind=c.kind,
        source_id=c.source_id,
    )


def _sort_value(row: LedgerRow, sort_key: str):
    if sort_key == "date":
        # Undated rows sort before every dated row.
        return row.date or dt.date.min
    if sort_key == "description":
        return row.description.lower()
    if sort_key == "credit":
        return row.credit
    if sort_key == "debit":
        return row.debit
    return row.net


def sort_rows(
    rows: list[LedgerRow], sort_key: str = "date", sort_dir: str = "desc"
) -> list[LedgerRow]:
    """Stable sort of ledger rows, ties keep their input order.

    Raises:
        ValueError: on unknown sort key or direction.
    """
    if sort_key not in SORT_KEYS:
        raise ValueError(
            f"Invalid sort key: {sort_key!r}. Expected one of {', '.join(SORT_KEYS)}."
        )
    if sort_dir not in SORT_DIRS:
        raise ValueError(
            f"Invalid sort direction: {sort_dir!r}. Expected 'asc' or 'desc'."
        )

    return sorted(
        rows,
        key=lambda r: _sort_value(r, sort_key),
        reverse=(sort_dir == "desc"),
    )


def with_running_balance(rows: list[LedgerRow]) -> list[LedgerRow]:
    """Return the rows with ``balance`` set to the prefix sum of credit - debit."""
    running = 0.0
    out: list[LedgerRow] = []
    for row in rows:
        running += row.credit - row.debit
        out.append(replace(row, balance=running))
    return out


def build_ledger(
    snapshot: Snapshot,
    entity_id: str,
    bucket: Union[str, BucketKind],
    policy: Optional[PolicyConfig] = None,
    *,
    building_id: Optional[str] = None,
    context: Union[str, CommissionContext, None] = None,
    sort_key: str = "date",
    sort_dir: str = "desc",
    aggregation: Optional[AggregationContext] = None,
) -> list[LedgerRow]:
    """Build the ledger of one entity in one bucket.

    Args:
        snapshot: Records to project.
        entity_id: Owner, broker, project or building id.
        bucket: Bucket of the ledger.
        policy: Classification policy (defaults to PolicyConfig()).
        building_id: Restrict to records resolved to this building.
        context: Broker ledgers only: "rental" or "project".
        sort_key: date | description | credit | debit | balance.
        sort_dir: asc | desc.
        aggregation: Pre-built per-pass context.

    Returns:
        Sorted rows with running balances.
    """
    agg = aggregation or AggregationContext.build(snapshot, policy)
    rows = [
        _to_row(c)
        for c in iter_contributions(bucket, agg, building_id=building_id, context=context)
        if c.entity_id == entity_id
    ]
    return with_running_balance(sort_rows(rows, sort_key, sort_dir))


def ledger_total(rows: list[LedgerRow]) -> float:
    """Final balance of a ledger (0.0 when empty)."""
    return rows[-1].balance if rows else 0.0
