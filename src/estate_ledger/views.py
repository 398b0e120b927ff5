# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
View utilities for Estate Ledger.

This module turns the results of the engine (balances, ledgers, KPI results,
outstanding commissions) into pandas DataFrames ready for display.

The computations themselves are performed by balances.py, ledger.py, kpi.py
and payouts.py. The helpers below only reshape and round their results:

- balances_frame:     one row per entity, sorted by balance (descending),
- ledger_frame:       one row per ledger line, in the requested order,
- kpi_frame:          one row per KPI, in definition order,
- commissions_frame:  one row per agreement with a commission.

Amounts are rounded to ``decimals`` places (2 by default) for display only;
the engine always works on unrounded floats.
"""

from collections.abc import Iterable, Mapping

import pandas as pd

from .balances import Balance
from .kpi import KpiResult
from .ledger import LedgerRow
from .payouts import CommissionItem

BALANCE_COLUMNS = ["entity_id", "name", "collected", "paid", "balance", "entries"]
LEDGER_COLUMNS = [
    "date", "description", "debit", "credit", "balance", "kind", "source_id"
]
KPI_COLUMNS = ["id", "label", "group", "unit", "value"]
COMMISSION_COLUMNS = [
    "agreement_id",
    "agreement_number",
    "context",
    "entity_name",
    "fee",
    "paid_already",
    "remaining",
]


def _round(df: pd.DataFrame, columns: list[str], decimals: int) -> pd.DataFrame:
    for col in columns:
        df[col] = df[col].astype(float).round(decimals)
    return df


def balances_frame(balances: Mapping[str, Balance], decimals: int = 2) -> pd.DataFrame:
    """Return balances as a DataFrame, keeping the accumulator's order."""
    rows = [
        {
            "entity_id": b.entity_id,
            "name": b.name,
            "collected": b.collected,
            "paid": b.paid,
            "balance": b.balance,
            "entries": b.entries,
        }
        for b in balances.values()
    ]
    df = pd.DataFrame(rows, columns=BALANCE_COLUMNS)
    return _round(df, ["collected", "paid", "balance"], decimals)


def ledger_frame(rows: Iterable[LedgerRow], decimals: int = 2) -> pd.DataFrame:
    """Return ledger rows as a DataFrame.

    Dates are rendered as ISO strings and unknown dates as empty strings, so
    that the frame prints the same way whatever the sort order.
    """
    data = [
        {
            "date": r.date.isoformat() if r.date is not None else "",
            "description": r.description,
            "debit": r.debit,
            "credit": r.credit,
            "balance": r.balance,
            "kind": r.kind,
            "source_id": r.source_id,
        }
        for r in rows
    ]
    df = pd.DataFrame(data, columns=LEDGER_COLUMNS)
    return _round(df, ["debit", "credit", "balance"], decimals)


def kpi_frame(results: Iterable[KpiResult], decimals: int = 2) -> pd.DataFrame:
    """Return KPI results as a DataFrame.

    Count KPIs (occupied / vacant units) are kept as integers-looking floats;
    amount KPIs are rounded to ``decimals``.
    """
    data = [
        {
            "id": r.id,
            "label": r.label,
            "group": r.group,
            "unit": r.unit,
            "value": round(r.value, 0 if r.unit == "count" else decimals),
        }
        for r in results
    ]
    return pd.DataFrame(data, columns=KPI_COLUMNS)


def commissions_frame(items: Iterable[CommissionItem], decimals: int = 2) -> pd.DataFrame:
    """Return outstanding commissions as a DataFrame."""
    data = [
        {
            "agreement_id": i.agreement_id,
            "agreement_number": i.agreement_number,
            "context": i.context.value,
            "entity_name": i.entity_name,
            "fee": i.fee,
            "paid_already": i.paid_already,
            "remaining": i.remaining,
        }
        for i in items
    ]
    df = pd.DataFrame(data, columns=COMMISSION_COLUMNS)
    return _round(df, ["fee", "paid_already", "remaining"], decimals)
