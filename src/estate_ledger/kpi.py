# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Dashboard KPIs for Estate Ledger.

1. Definitions
   -----------
   Each KPI is a KpiDefinition registered in KPI_DEFINITIONS:
       - id (stable identifier, e.g. 'net_income'),
       - label and group (General, Rental, Project),
       - unit ('amount' or 'count'),
       - a pure reduction ``compute(agg, as_of) -> float``.

2. Independence
   ------------
   KPIs share nothing but the immutable AggregationContext of the pass
   (record index, category index, P&L exclusion set). No KPI writes to a
   shared accumulator, so evaluation order never changes any value and a KPI
   computed alone equals the same KPI computed in a batch.

3. Company P&L vs. liabilities
   ----------------------------
   Income and expense KPIs exclude every category whose role is liability-in,
   liability-out or pass-through (rental income held for owners, security
   deposits, payouts, equity movements). The liability KPIs
   (rental_liability_held, security_deposit_held) and the fund KPIs
   (project_funds, building_funds) reuse the bucket routing of balances.py,
   summed over every entity including unattributed records.
"""

import datetime as dt
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Optional

from .balances import AggregationContext, BucketKind, iter_contributions
from .categories import SystemCategory
from .config import PolicyConfig
from .models import (
    ContactType,
    DocumentStatus,
    InvoiceType,
    LoanSubtype,
    ProjectAgreementStatus,
    RentalAgreementStatus,
    Snapshot,
    TransactionType,
)

S = SystemCategory

TRANSFER_WINDOW_DAYS = 30

# Expense categories borne by owners, never by the building management fund.
OWNER_EXPENSE_KEYS = (
    S.OWNER_PAYOUT,
    S.SECURITY_DEPOSIT_REFUND,
    S.BROKER_FEE,
    S.OWNER_SECURITY_PAYOUT,
)
SERVICE_CHARGE_KEYS = (S.SERVICE_CHARGE_INCOME, S.OWNER_SERVICE_CHARGE_PAYMENT)

KpiFunction = Callable[[AggregationContext, dt.date], float]


@dataclass(frozen=True)
class KpiDefinition:
    id: str
    label: str
    group: str
    unit: str
    compute: KpiFunction


@dataclass(frozen=True)
class KpiResult:
    """
    Computed KPI as returned by this module.

    Attributes:
        id: Internal identifier (e.g. 'accounts_receivable').
        label: Human-readable label for display.
        group: Dashboard group ('General', 'Rental', 'Project').
        unit: 'amount' or 'count'.
        value: Numeric value.
    """

    id: str
    label: str
    group: str
    unit: str
    value: float


# ---------------------------------------------------------------------------
# General KPIs
# ---------------------------------------------------------------------------


def _total_balance(agg: AggregationContext, as_of: dt.date) -> float:
    return sum(a.balance for a in agg.snapshot.accounts if a.is_settlement_account)


def _pl_income(agg: AggregationContext) -> float:
    return sum(
        tx.amount
        for tx in agg.snapshot.transactions
        if tx.type == TransactionType.INCOME
        and not agg.categories.is_excluded(tx.category_id)
    )


def _total_income(agg: AggregationContext, as_of: dt.date) -> float:
    return _pl_income(agg)


def _net_income(agg: AggregationContext, as_of: dt.date) -> float:
    expense = sum(
        tx.amount
        for tx in agg.snapshot.transactions
        if tx.type == TransactionType.EXPENSE
        and not agg.categories.is_excluded(tx.category_id)
    )
    return _pl_income(agg) - expense


def _total_expense(agg: AggregationContext, as_of: dt.date) -> float:
    """Company expenses.

    Also excludes Internal Clearing adjustments and expenses booked against
    an Income category (refunds reduce revenue, they are not expenses).
    """
    total = 0.0
    for tx in agg.snapshot.transactions:
        if tx.type != TransactionType.EXPENSE:
            continue
        if agg.categories.is_excluded(tx.category_id):
            continue
        if tx.account_id in agg.clearing_account_ids:
            continue
        if agg.categories.is_income_type(tx.category_id):
            continue
        total += tx.amount
    return total


def _accounts_receivable(agg: AggregationContext, as_of: dt.date) -> float:
    total = 0.0
    for inv in agg.snapshot.invoices:
        if inv.status == DocumentStatus.PAID:
            continue
        if "VOIDED" in inv.description:
            continue
        agreement = agg.records.project_agreements.get(inv.agreement_id or "")
        if agreement is not None and agreement.status == ProjectAgreementStatus.CANCELLED:
            continue
        total += inv.amount - inv.paid_amount
    return total


def _accounts_payable(agg: AggregationContext, as_of: dt.date) -> float:
    return sum(
        bill.amount - bill.paid_amount
        for bill in agg.snapshot.bills
        if bill.paid_amount < bill.amount - agg.epsilon
    )


def _outstanding_loan(agg: AggregationContext, as_of: dt.date) -> float:
    received = repaid = 0.0
    for tx in agg.snapshot.transactions:
        if tx.type != TransactionType.LOAN:
            continue
        if tx.subtype == LoanSubtype.RECEIVE:
            received += tx.amount
        elif tx.subtype == LoanSubtype.REPAY:
            repaid += tx.amount
    return received - repaid


def _transfer_volume(agg: AggregationContext, as_of: dt.date) -> float:
    since = as_of - dt.timedelta(days=TRANSFER_WINDOW_DAYS)
    return sum(
        tx.amount
        for tx in agg.snapshot.transactions
        if tx.type == TransactionType.TRANSFER and tx.date >= since
    )


# ---------------------------------------------------------------------------
# Rental KPIs
# ---------------------------------------------------------------------------


def _bm_funds(agg: AggregationContext, as_of: dt.date) -> float:
    """Building management funds: service charges collected minus building costs.

    Building costs are expenses and bills scoped to a building but not to a
    property, not charged to a tenant and not in an owner expense category.
    Expenses settling a bill are skipped; the bill itself is counted.
    """
    cats = agg.categories
    records = agg.records
    collected = expenses = 0.0

    for tx, scope in agg.transactions_with_scopes():
        building_id = tx.building_id or records.property_building(tx.property_id)
        if not building_id:
            continue
        if tx.type == TransactionType.INCOME and cats.is_rule(
            tx.category_id, *SERVICE_CHARGE_KEYS
        ):
            collected += tx.amount
        elif tx.type == TransactionType.EXPENSE and not tx.bill_id:
            if tx.property_id or scope.is_tenant_contact:
                continue
            if not cats.is_rule(tx.category_id, *OWNER_EXPENSE_KEYS):
                expenses += tx.amount

    for bill in agg.snapshot.bills:
        if not bill.building_id or bill.property_id:
            continue
        if records.contact_type(bill.contact_id) == ContactType.TENANT:
            continue
        if not cats.is_rule(bill.category_id, *OWNER_EXPENSE_KEYS):
            expenses += bill.amount

    return collected - expenses


def _active_rentals(agg: AggregationContext):
    return [
        ra
        for ra in agg.snapshot.rental_agreements
        if ra.status == RentalAgreementStatus.ACTIVE
    ]


def _occupied_units(agg: AggregationContext, as_of: dt.date) -> float:
    return float(len(_active_rentals(agg)))


def _vacant_units(agg: AggregationContext, as_of: dt.date) -> float:
    occupied = {ra.property_id for ra in _active_rentals(agg)}
    return float(len(agg.snapshot.properties) - len(occupied))


def _unpaid_invoices(agg: AggregationContext, types: Iterable[InvoiceType]) -> float:
    wanted = set(types)
    return sum(
        inv.amount - inv.paid_amount
        for inv in agg.snapshot.invoices
        if inv.invoice_type in wanted and inv.status != DocumentStatus.PAID
    )


def _rental_arrears(agg: AggregationContext, as_of: dt.date) -> float:
    return _unpaid_invoices(agg, (InvoiceType.RENTAL, InvoiceType.SERVICE_CHARGE))


def _bucket_total(agg: AggregationContext, bucket: BucketKind) -> float:
    """Net of every contribution to ``bucket``, attributed or not."""
    return sum(c.signed_amount for c in iter_contributions(bucket, agg))


def _rental_liability(agg: AggregationContext, as_of: dt.date) -> float:
    return _bucket_total(agg, BucketKind.RENTAL_INCOME)


def _security_liability(agg: AggregationContext, as_of: dt.date) -> float:
    return _bucket_total(agg, BucketKind.SECURITY_DEPOSIT)


# ---------------------------------------------------------------------------
# Project / building KPIs
# ---------------------------------------------------------------------------


def _project_funds(agg: AggregationContext, as_of: dt.date) -> float:
    return _bucket_total(agg, BucketKind.PROJECT_FUNDS)


def _project_receivable(agg: AggregationContext, as_of: dt.date) -> float:
    return _unpaid_invoices(agg, (InvoiceType.INSTALLMENT,))


def _building_funds(agg: AggregationContext, as_of: dt.date) -> float:
    return _bucket_total(agg, BucketKind.BUILDING_FUNDS)


_DEFINITIONS: tuple[KpiDefinition, ...] = (
    KpiDefinition(
        "total_balance", "Total Balance", "General", "amount", _total_balance
    ),
    KpiDefinition(
        "net_income", "Net Income (Company)", "General", "amount", _net_income
    ),
    KpiDefinition(
        "total_income", "Total Revenue (Company)", "General", "amount", _total_income
    ),
    KpiDefinition(
        "total_expense", "Total Expense (Company)", "General", "amount", _total_expense
    ),
    KpiDefinition(
        "accounts_receivable",
        "Accounts Receivable",
        "General",
        "amount",
        _accounts_receivable,
    ),
    KpiDefinition(
        "accounts_payable", "Accounts Payable", "General", "amount", _accounts_payable
    ),
    KpiDefinition(
        "outstanding_loan", "Outstanding Loan", "General", "amount", _outstanding_loan
    ),
    KpiDefinition(
        "transfer_volume_30d",
        "Transfer Vol. (30d)",
        "General",
        "amount",
        _transfer_volume,
    ),
    KpiDefinition(
        "bm_funds", "BM Funds", "Rental", "amount", _bm_funds
    ),
    KpiDefinition(
        "occupied_units", "Occupied Units", "Rental", "count", _occupied_units
    ),
    KpiDefinition(
        "vacant_units", "Vacant Units", "Rental", "count", _vacant_units
    ),
    KpiDefinition(
        "rental_arrears", "Rental Arrears", "Rental", "amount", _rental_arrears
    ),
    KpiDefinition(
        "rental_liability_held", "Rental Liability", "Rental", "amount", _rental_liability
    ),
    KpiDefinition(
        "security_deposit_held",
        "Security Liability",
        "Rental",
        "amount",
        _security_liability,
    ),
    KpiDefinition(
        "project_funds", "Project Funds", "Project", "amount", _project_funds
    ),
    KpiDefinition(
        "project_receivable",
        "Project Receivables",
        "Project",
        "amount",
        _project_receivable,
    ),
    KpiDefinition(
        "building_funds", "Building Funds", "Rental", "amount", _building_funds
    ),
)

KPI_DEFINITIONS: dict[str, KpiDefinition] = {d.id: d for d in _DEFINITIONS}
KPI_IDS: tuple[str, ...] = tuple(KPI_DEFINITIONS)


def get_definition(kpi_id: str) -> KpiDefinition:
    """Return the definition of ``kpi_id``.

    Raises:
        ValueError: if the KPI id is unknown.
    """
    try:
        return KPI_DEFINITIONS[kpi_id]
    except KeyError as exc:
        raise ValueError(
            f"Unknown KPI: {kpi_id!r}. Expected one of: {', '.join(KPI_IDS)}."
        ) from exc


def compute_kpi(
    kpi_id: str,
    snapshot: Snapshot,
    policy: Optional[PolicyConfig] = None,
    *,
    as_of: Optional[dt.date] = None,
    aggregation: Optional[AggregationContext] = None,
) -> float:
    """Compute a single KPI over ``snapshot``.

    Args:
        kpi_id: KPI identifier (see KPI_IDS).
        snapshot: Records to reduce.
        policy: Classification policy (defaults to PolicyConfig()).
        as_of: Reference date for windowed KPIs (defaults to today).
        aggregation: Pre-built per-pass context.

    Raises:
        ValueError: if the KPI id is unknown.
    """
    definition = get_definition(kpi_id)
    agg = aggregation or AggregationContext.build(snapshot, policy)
    return float(definition.compute(agg, as_of or dt.date.today()))


def compute_kpis(
    snapshot: Snapshot,
    policy: Optional[PolicyConfig] = None,
    ids: Optional[Iterable[str]] = None,
    *,
    as_of: Optional[dt.date] = None,
    aggregation: Optional[AggregationContext] = None,
) -> list[KpiResult]:
    """Compute several KPIs (all of them by default) over one shared context.

    Unknown ids are rejected before anything is computed.
    """
    definitions = [get_definition(i) for i in (ids if ids is not None else KPI_IDS)]
    agg = aggregation or AggregationContext.build(snapshot, policy)
    as_of = as_of or dt.date.today()
    return [
        KpiResult(
            id=d.id,
            label=d.label,
            group=d.group,
            unit=d.unit,
            value=float(d.compute(agg, as_of)),
        )
        for d in definitions
    ]
