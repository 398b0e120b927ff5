# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Balance accumulation for Estate Ledger.

This module folds the records of a snapshot into per-entity balances, one
bucket at a time. A bucket is a named balance category tracked per party:

    rental_income      rent collected on behalf of property owners
    security_deposit   security deposits held on behalf of owners
    broker_commission  commission earned by brokers / dealers
    project_funds      funds available per project
    building_funds     funds available per building

Every bucket has a routing function. Given one record, it returns at most one
Contribution ``{entity_id, side, amount, kind, ...}`` where ``side`` is
either "collected" or "paid". The routing predicates of a bucket are
evaluated in a fixed precedence order (explicit payout category first, then
property / contact based inference, then the default), so a record can never
feed the same bucket twice.

The same routing feeds three consumers:
- ``accumulate`` (this module) sums contributions per entity,
- ``ledger.build_ledger`` turns them into ledger rows,
- ``kpi`` sums them without entity partitioning.

A contribution may have ``entity_id=None`` (e.g. rental income on a property
without an owner, or a tenant deduction from the security deposit pool).
Such contributions count in entity-independent KPIs but are skipped by
``accumulate``.

Per-pass context
----------------
AggregationContext bundles everything a pass needs and builds it exactly
once: the RecordIndex, the CategoryIndex (with the P&L exclusion set), the
resolved scope of every transaction and the set of broker ids. It is
immutable and may be shared by any number of reductions over the same
snapshot. The engine facade memoises it per published snapshot.
"""

import datetime as dt
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .categories import CategoryIndex, SystemCategory
from .config import PolicyConfig
from .models import (
    INTERNAL_CLEARING_ACCOUNT,
    AccountType,
    ContactType,
    LoanSubtype,
    ProjectAgreement,
    RentalAgreement,
    Snapshot,
    Transaction,
    TransactionType,
)
from .resolver import RecordIndex, Scope, resolve_scope

S = SystemCategory


class BucketKind(str, Enum):
    RENTAL_INCOME = "rental_income"
    SECURITY_DEPOSIT = "security_deposit"
    BROKER_COMMISSION = "broker_commission"
    PROJECT_FUNDS = "project_funds"
    BUILDING_FUNDS = "building_funds"


class CommissionContext(str, Enum):
    """Optional narrowing of the broker commission bucket."""

    RENTAL = "rental"
    PROJECT = "project"


class Side(str, Enum):
    COLLECTED = "collected"
    PAID = "paid"


# Buckets whose entities are owners (and therefore payable by record_payout).
OWNER_BUCKETS = (BucketKind.RENTAL_INCOME, BucketKind.SECURITY_DEPOSIT)

# Category keys treated as equity movements by the project funds bucket.
EQUITY_IN_KEYS = (S.OWNER_EQUITY, S.CAPITAL_IN)
EQUITY_OUT_KEYS = (
    S.OWNER_WITHDRAWN,
    S.CAPITAL_OUT,
    S.OWNER_PAYOUT,
    S.OWNER_SECURITY_PAYOUT,
    S.SECURITY_DEPOSIT_REFUND,
)

LOAN_IN = (LoanSubtype.RECEIVE, LoanSubtype.COLLECT)
LOAN_OUT = (LoanSubtype.GIVE, LoanSubtype.REPAY)


@dataclass(frozen=True)
class Contribution:
    """The effect of one record on one bucket.

    Attributes:
        entity_id: Entity credited / debited, or None if unattributable.
        side: Collected (inflow) or paid (outflow).
        amount: Amount as recorded. Only rental income may be negative.
        kind: Short machine label (e.g. "rental_income", "owner_payout").
        description: Human-readable label used by ledgers.
        date: Date of the underlying record.
        source_id: Id of the transaction or agreement.
        building_id: Resolved building of the record, if any.
    """

    entity_id: Optional[str]
    side: Side
    amount: float
    kind: str
    description: str
    date: Optional[dt.date]
    source_id: str
    building_id: Optional[str] = None

    @property
    def signed_amount(self) -> float:
        """Effect on the entity balance (collected minus paid)."""
        return self.amount if self.side == Side.COLLECTED else -self.amount


@dataclass(frozen=True)
class Balance:
    """Accumulated balance of one entity in one bucket."""

    entity_id: str
    name: str
    bucket: BucketKind
    collected: float = 0.0
    paid: float = 0.0
    entries: int = 0

    @property
    def balance(self) -> float:
        return self.collected - self.paid


# ---------------------------------------------------------------------------
# Per-pass context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AggregationContext:
    """Immutable intermediates shared by every reduction of one pass."""

    snapshot: Snapshot
    policy: PolicyConfig
    records: RecordIndex
    categories: CategoryIndex
    scopes: tuple[Scope, ...]
    broker_ids: frozenset[str]
    equity_account_ids: frozenset[str]
    clearing_account_ids: frozenset[str]

    @classmethod
    def build(
        cls, snapshot: Snapshot, policy: Optional[PolicyConfig] = None
    ) -> "AggregationContext":
        policy = policy or PolicyConfig()
        records = RecordIndex.from_snapshot(snapshot)
        categories = CategoryIndex(snapshot.categories, policy.rules)
        scopes = tuple(resolve_scope(tx, records) for tx in snapshot.transactions)

        broker_ids = {
            c.id
            for c in snapshot.contacts
            if c.type in (ContactType.BROKER, ContactType.DEALER)
        }
        broker_ids.update(a.broker_id for a in snapshot.rental_agreements if a.broker_id)
        broker_ids.update(
            a.rebate_broker_id for a in snapshot.project_agreements if a.rebate_broker_id
        )

        return cls(
            snapshot=snapshot,
            policy=policy,
            records=records,
            categories=categories,
            scopes=scopes,
            broker_ids=frozenset(broker_ids),
            equity_account_ids=frozenset(
                a.id for a in snapshot.accounts if a.type == AccountType.EQUITY
            ),
            clearing_account_ids=frozenset(
                a.id for a in snapshot.accounts if a.name == INTERNAL_CLEARING_ACCOUNT
            ),
        )

    @property
    def epsilon(self) -> float:
        return self.policy.epsilon

    def transactions_with_scopes(self) -> Iterator[tuple[Transaction, Scope]]:
        return zip(self.snapshot.transactions, self.scopes)

    def entity_name(self, entity_id: str, bucket: BucketKind) -> str:
        if bucket == BucketKind.PROJECT_FUNDS:
            found = self.records.projects.get(entity_id)
        elif bucket == BucketKind.BUILDING_FUNDS:
            found = self.records.buildings.get(entity_id)
        else:
            found = self.records.contacts.get(entity_id)
        return found.name if found else "Unknown"


def _describe(tx: Transaction, agg: AggregationContext, fallback: str) -> str:
    if tx.description:
        return tx.description
    category = agg.categories.category(tx.category_id)
    return category.name if category else fallback


def _contribution(
    tx: Transaction,
    scope: Scope,
    agg: AggregationContext,
    entity_id: Optional[str],
    side: Side,
    kind: str,
    fallback: str,
) -> Contribution:
    return Contribution(
        entity_id=entity_id,
        side=side,
        amount=tx.amount,
        kind=kind,
        description=_describe(tx, agg, fallback),
        date=tx.date,
        source_id=tx.id,
        building_id=scope.building_id,
    )


# ---------------------------------------------------------------------------
# Routing functions (one per bucket)
# ---------------------------------------------------------------------------


def is_tenant_deduction(scope: Scope, agg: AggregationContext, tx: Transaction) -> bool:
    """Expense charged to a tenant: tenant contact or "(Tenant)" category."""
    return scope.is_tenant_contact or agg.categories.is_rule(
        tx.category_id, S.TENANT_CHARGE
    )


def route_rental_income(
    tx: Transaction, scope: Scope, agg: AggregationContext
) -> Optional[Contribution]:
    """Route a transaction to the owner rental income bucket.

    Precedence:
        1. Income "Rental Income"           -> collected, property owner
        2. Income "Owner Service Charge Payment" -> collected, owner contact
        3. Expense "Owner Payout"           -> paid, owner contact
        4. Other property-linked expenses   -> paid, property owner, unless
           security related or charged to a tenant. When the policy flag
           ``unclassified_property_expense_is_owner_deduction`` is off, only
           Broker Fee and "(Owner)" categories are deducted.
    """
    cats = agg.categories

    if tx.type == TransactionType.INCOME:
        if cats.is_rule(tx.category_id, S.RENTAL_INCOME):
            return _contribution(
                tx, scope, agg, scope.property_owner_id, Side.COLLECTED,
                "rental_income", "Rental Income",
            )
        if cats.is_rule(tx.category_id, S.OWNER_SERVICE_CHARGE_PAYMENT):
            return _contribution(
                tx, scope, agg, scope.owner_id, Side.COLLECTED,
                "service_charge_payment", "Owner Service Charge Payment",
            )
        return None

    if tx.type != TransactionType.EXPENSE:
        return None

    if cats.is_rule(tx.category_id, S.OWNER_PAYOUT):
        return _contribution(
            tx, scope, agg, scope.owner_id, Side.PAID, "owner_payout", "Owner Payout"
        )

    if not scope.property_id:
        return None
    if cats.is_rule(tx.category_id, S.SECURITY_DEPOSIT_REFUND, S.OWNER_SECURITY_PAYOUT):
        return None
    if is_tenant_deduction(scope, agg, tx):
        return None

    if agg.policy.unclassified_property_expense_is_owner_deduction or cats.is_rule(
        tx.category_id, S.BROKER_FEE, S.OWNER_CHARGE
    ):
        return _contribution(
            tx, scope, agg, scope.property_owner_id, Side.PAID,
            "owner_deduction", "Property expense",
        )
    return None


def route_security_deposit(
    tx: Transaction, scope: Scope, agg: AggregationContext
) -> Optional[Contribution]:
    """Route a transaction to the owner security deposit bucket.

    Tenant deductions (repairs charged to a tenant) reduce the deposit pool
    but are not attributed to an owner: they are returned with
    ``entity_id=None``.
    """
    cats = agg.categories

    if tx.type == TransactionType.INCOME:
        if cats.is_rule(tx.category_id, S.SECURITY_DEPOSIT):
            return _contribution(
                tx, scope, agg, scope.property_owner_id, Side.COLLECTED,
                "security_deposit", "Security Deposit",
            )
        return None

    if tx.type != TransactionType.EXPENSE:
        return None

    if cats.is_rule(tx.category_id, S.OWNER_SECURITY_PAYOUT):
        return _contribution(
            tx, scope, agg, scope.owner_id, Side.PAID,
            "security_payout", "Owner Security Payout",
        )
    if cats.is_rule(tx.category_id, S.SECURITY_DEPOSIT_REFUND):
        return _contribution(
            tx, scope, agg, scope.property_owner_id, Side.PAID,
            "deposit_refund", "Security Deposit Refund",
        )
    if is_tenant_deduction(scope, agg, tx):
        return _contribution(
            tx, scope, agg, None, Side.PAID, "tenant_deduction", "Tenant deduction"
        )
    return None


def is_project_commission(tx: Transaction, scope: Scope, agg: AggregationContext) -> bool:
    """Commission payment belonging to the project context."""
    return bool(scope.project_id) or agg.categories.is_rule(
        tx.category_id, S.REBATE_AMOUNT
    )


def route_broker_commission(
    tx: Transaction,
    scope: Scope,
    agg: AggregationContext,
    context: Optional[CommissionContext] = None,
) -> Optional[Contribution]:
    """Route a commission payment (Broker Fee / Rebate Amount expense)."""
    if tx.type != TransactionType.EXPENSE or not tx.contact_id:
        return None
    if not agg.categories.is_rule(tx.category_id, S.BROKER_FEE, S.REBATE_AMOUNT):
        return None
    if tx.contact_id not in agg.broker_ids:
        return None

    project_side = is_project_commission(tx, scope, agg)
    if context == CommissionContext.PROJECT and not project_side:
        return None
    if context == CommissionContext.RENTAL and project_side:
        return None

    description = tx.description or "Commission Payment"
    project = agg.records.projects.get(scope.project_id) if scope.project_id else None
    if project is not None:
        description += f" ({project.name})"

    return Contribution(
        entity_id=tx.contact_id,
        side=Side.PAID,
        amount=tx.amount,
        kind="commission_paid",
        description=description,
        date=tx.date,
        source_id=tx.id,
        building_id=scope.building_id,
    )


def rental_commission(ra: RentalAgreement, agg: AggregationContext) -> Contribution:
    """Commission earned by the broker of a rental agreement."""
    prop = agg.records.properties.get(ra.property_id)
    return Contribution(
        entity_id=ra.broker_id,
        side=Side.COLLECTED,
        amount=ra.broker_fee,
        kind="commission_earned",
        description=(
            f"Commission for {prop.name if prop else 'Unit'} "
            f"(Agr #{ra.agreement_number})"
        ),
        date=ra.start_date,
        source_id=ra.id,
        building_id=prop.building_id if prop else None,
    )


def project_commission(pa: ProjectAgreement, agg: AggregationContext) -> Contribution:
    """Rebate earned by the broker of a project agreement."""
    project = agg.records.projects.get(pa.project_id)
    return Contribution(
        entity_id=pa.rebate_broker_id,
        side=Side.COLLECTED,
        amount=pa.rebate_amount,
        kind="commission_earned",
        description=(
            f"Commission for {project.name if project else 'Project'} "
            f"(Agr #{pa.agreement_number})"
        ),
        date=pa.issue_date,
        source_id=pa.id,
    )


def _loan_side(tx: Transaction) -> Optional[Side]:
    if tx.subtype in LOAN_IN:
        return Side.COLLECTED
    if tx.subtype in LOAN_OUT:
        return Side.PAID
    return None


def route_project_funds(
    tx: Transaction, scope: Scope, agg: AggregationContext
) -> Optional[Contribution]:
    """Route a transaction to the funds of its project.

    The project is resolved through transaction -> bill -> invoice ->
    agreement. Only existing projects are credited.
    """
    project_id = scope.project_id
    if not project_id or project_id not in agg.records.projects:
        return None
    cats = agg.categories

    def make(side: Side, kind: str) -> Contribution:
        label = kind.replace("_", " ").title()
        return _contribution(tx, scope, agg, project_id, side, kind, label)

    if tx.type == TransactionType.INCOME:
        if cats.is_rule(tx.category_id, *EQUITY_IN_KEYS):
            return make(Side.COLLECTED, "investment")
        return make(Side.COLLECTED, "income")

    if tx.type == TransactionType.EXPENSE:
        if cats.is_rule(tx.category_id, *EQUITY_OUT_KEYS):
            return make(Side.PAID, "equity_out")
        return make(Side.PAID, "expense")

    if tx.type == TransactionType.TRANSFER:
        text = tx.description.lower()
        from_equity = tx.from_account_id in agg.equity_account_ids
        to_equity = tx.to_account_id in agg.equity_account_ids
        if from_equity or "equity move in" in text:
            return make(Side.COLLECTED, "investment")
        if to_equity or "equity move out" in text:
            # Property management fees moved out of the clearing account are
            # reinvested in the project.
            if tx.from_account_id in agg.clearing_account_ids and "pm fee" in text:
                return make(Side.COLLECTED, "investment")
            return make(Side.PAID, "equity_out")
        return None

    if tx.type == TransactionType.LOAN:
        side = _loan_side(tx)
        return make(side, "loan") if side else None
    return None


def route_building_funds(
    tx: Transaction, scope: Scope, agg: AggregationContext
) -> Optional[Contribution]:
    """Route a transaction to the funds of its building (direct or via property)."""
    building_id = scope.building_id
    if not building_id or building_id not in agg.records.buildings:
        return None

    if tx.type == TransactionType.INCOME:
        side, kind = Side.COLLECTED, "income"
    elif tx.type == TransactionType.EXPENSE:
        side, kind = Side.PAID, "expense"
    elif tx.type == TransactionType.LOAN and _loan_side(tx):
        side, kind = _loan_side(tx), "loan"
    else:
        return None
    return _contribution(tx, scope, agg, building_id, side, kind, kind.title())


# ---------------------------------------------------------------------------
# Contribution stream
# ---------------------------------------------------------------------------


def as_commission_context(
    context: Union[str, CommissionContext, None],
) -> Optional[CommissionContext]:
    if context is None:
        return None
    try:
        return CommissionContext(str(getattr(context, "value", context)).lower())
    except ValueError as exc:
        raise ValueError(
            f"Unknown commission context: {context!r}, expected 'rental' or 'project'"
        ) from exc


def iter_contributions(
    bucket: Union[str, BucketKind],
    agg: AggregationContext,
    *,
    building_id: Optional[str] = None,
    context: Union[str, CommissionContext, None] = None,
) -> Iterator[Contribution]:
    """Yield every contribution of the snapshot to ``bucket``, in store order.

    For the broker bucket, earned commissions (rental agreements, then
    project agreements) come before payments.

    Args:
        bucket: Bucket to route to.
        agg: Per-pass context.
        building_id: Keep only contributions resolved to that building.
        context: Broker bucket only: "rental" or "project".
    """
    bucket = BucketKind(bucket)
    context = as_commission_context(context)

    def keep(c: Optional[Contribution]) -> bool:
        if c is None:
            return False
        return building_id is None or c.building_id == building_id

    if bucket == BucketKind.BROKER_COMMISSION:
        if context in (None, CommissionContext.RENTAL):
            for ra in agg.snapshot.rental_agreements:
                if ra.broker_id and ra.broker_fee > 0:
                    c = rental_commission(ra, agg)
                    if keep(c):
                        yield c
        if context in (None, CommissionContext.PROJECT):
            for pa in agg.snapshot.project_agreements:
                if pa.rebate_broker_id and pa.rebate_amount > 0:
                    c = project_commission(pa, agg)
                    if keep(c):
                        yield c
        for tx, scope in agg.transactions_with_scopes():
            c = route_broker_commission(tx, scope, agg, context)
            if keep(c):
                yield c
        return

    router = {
        BucketKind.RENTAL_INCOME: route_rental_income,
        BucketKind.SECURITY_DEPOSIT: route_security_deposit,
        BucketKind.PROJECT_FUNDS: route_project_funds,
        BucketKind.BUILDING_FUNDS: route_building_funds,
    }[bucket]
    for tx, scope in agg.transactions_with_scopes():
        c = router(tx, scope, agg)
        if keep(c):
            yield c


def _known_entities(bucket: BucketKind, agg: AggregationContext) -> list[str]:
    """Entities initialised with a zero balance for ``bucket``."""
    snapshot = agg.snapshot
    if bucket in OWNER_BUCKETS:
        return [c.id for c in snapshot.contacts if c.type == ContactType.OWNER]
    if bucket == BucketKind.BROKER_COMMISSION:
        return [
            c.id
            for c in snapshot.contacts
            if c.type in (ContactType.BROKER, ContactType.DEALER)
        ]
    if bucket == BucketKind.PROJECT_FUNDS:
        return [p.id for p in snapshot.projects]
    return [b.id for b in snapshot.buildings]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def accumulate(
    snapshot: Snapshot,
    bucket: Union[str, BucketKind],
    policy: Optional[PolicyConfig] = None,
    *,
    building_id: Optional[str] = None,
    context: Union[str, CommissionContext, None] = None,
    aggregation: Optional[AggregationContext] = None,
) -> dict[str, Balance]:
    """Fold the snapshot into per-entity balances for one bucket.

    Steps:
        1. initialise a zero balance for every known entity of the bucket,
        2. route every record exactly once and add its amount to the
           collected or paid side of its entity,
        3. drop entities with ``|balance| <= epsilon`` and no activity,
        4. order by balance descending (stable).

    Args:
        snapshot: Records to aggregate.
        bucket: Bucket to compute.
        policy: Classification policy (defaults to PolicyConfig()).
        building_id: Restrict to records resolved to this building.
        context: Broker bucket only: "rental" or "project".
        aggregation: Pre-built per-pass context (must match ``snapshot``).

    Returns:
        Ordered dict ``{entity_id -> Balance}``.
    """
    bucket = BucketKind(bucket)
    agg = aggregation or AggregationContext.build(snapshot, policy)

    # 1) Zero balances for every known entity.
    totals: dict[str, list[float]] = {
        eid: [0.0, 0.0] for eid in _known_entities(bucket, agg)
    }
    entries: dict[str, int] = {eid: 0 for eid in totals}

    # 2) Fold.
    for c in iter_contributions(bucket, agg, building_id=building_id, context=context):
        if c.entity_id is None:
            continue
        slot = totals.setdefault(c.entity_id, [0.0, 0.0])
        if c.side == Side.COLLECTED:
            slot[0] += c.amount
        else:
            slot[1] += c.amount
        entries[c.entity_id] = entries.get(c.entity_id, 0) + 1

    balances = [
        Balance(
            entity_id=eid,
            name=agg.entity_name(eid, bucket),
            bucket=bucket,
            collected=collected,
            paid=paid,
            entries=entries[eid],
        )
        for eid, (collected, paid) in totals.items()
    ]

    # 3) Drop idle zero balances, 4) sort.
    kept = [b for b in balances if abs(b.balance) > agg.epsilon or b.entries > 0]
    kept = sorted(kept, key=lambda b: b.balance, reverse=True)
    return {b.entity_id: b for b in kept}


def balance_of(
    snapshot: Snapshot,
    entity_id: str,
    bucket: Union[str, BucketKind],
    policy: Optional[PolicyConfig] = None,
    *,
    building_id: Optional[str] = None,
    context: Union[str, CommissionContext, None] = None,
    aggregation: Optional[AggregationContext] = None,
) -> Balance:
    """Balance of a single entity (a zero Balance if it has no activity)."""
    bucket = BucketKind(bucket)
    agg = aggregation or AggregationContext.build(snapshot, policy)
    balances = accumulate(
        snapshot, bucket, building_id=building_id, context=context, aggregation=agg
    )
    return balances.get(
        entity_id,
        Balance(
            entity_id=entity_id,
            name=agg.entity_name(entity_id, bucket),
            bucket=bucket,
        ),
    )
