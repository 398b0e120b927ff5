# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Payout writer for Estate Ledger.

Payouts are the only engine operation that writes records. Each payout is an
Expense transaction appended to the record store; balances move because the
next computation sees the new transaction, never because a stored balance is
incremented.

Two flows are supported:

- ``record_payout``: pays an owner out of the rental income or the security
  deposit bucket. One transaction per call.
- ``record_broker_payouts``: pays a broker several outstanding commissions
  in one action. One transaction per agreement (never an aggregate), each
  carrying its ``agreement_id``; the batch is committed atomically.

Preconditions are checked before anything is written, while holding the
store's writer lock: a concurrent payout waits and then sees this one. A
failing check raises and appends nothing.

Payouts are not idempotent: calling a payout twice for the same intent pays
twice. Callers own de-duplication.
"""

import datetime as dt
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Optional, Union

import structlog

from .balances import (
    OWNER_BUCKETS,
    AggregationContext,
    BucketKind,
    CommissionContext,
    as_commission_context,
    balance_of,
)
from .categories import SystemCategory, make_system_category
from .config import PolicyConfig
from .exceptions import (
    InvalidAccount,
    InvalidAmount,
    MissingSystemCategory,
    RecordNotFoundError,
)
from .models import (
    Category,
    ContactType,
    Snapshot,
    Transaction,
    TransactionType,
    parse_amount,
)
from .store import RecordStore

logger = structlog.get_logger(__name__)

S = SystemCategory

_PAYOUT_CATEGORY = {
    BucketKind.RENTAL_INCOME: S.OWNER_PAYOUT,
    BucketKind.SECURITY_DEPOSIT: S.OWNER_SECURITY_PAYOUT,
}
_PAYOUT_LABEL = {
    BucketKind.RENTAL_INCOME: "Owner Payout",
    BucketKind.SECURITY_DEPOSIT: "Security Deposit Payout",
}


@dataclass(frozen=True)
class CommissionItem:
    """Commission of one agreement, as seen by the broker payout flow.

    Attributes:
        agreement_id: Rental or project agreement id.
        agreement_number: Human-readable agreement number.
        context: "rental" or "project".
        entity_id: Property id (rental) or project id (project).
        entity_name: Property or project name.
        fee: Commission earned on the agreement.
        paid_already: Commission payments already recorded against it.
    """

    agreement_id: str
    agreement_number: str
    context: CommissionContext
    entity_id: str
    entity_name: str
    fee: float
    paid_already: float

    @property
    def remaining(self) -> float:
        return max(0.0, self.fee - self.paid_already)


def _new_id() -> str:
    return uuid.uuid4().hex


def _positive_amount(raw: Any, label: str = "Payout amount") -> float:
    amount = parse_amount(raw)
    if amount <= 0:
        raise InvalidAmount(f"{label} must be greater than zero, got {raw!r}")
    return amount


def _settlement_account(agg: AggregationContext, account_id: str):
    account = agg.records.accounts.get(account_id)
    if account is None:
        raise InvalidAccount(f"Account {account_id!r} not found")
    if not account.is_settlement_account:
        raise InvalidAccount(
            f"Account {account.name!r} cannot be used for payouts "
            "(expected a bank or cash account other than Internal Clearing)"
        )
    return account


def _contact(agg: AggregationContext, contact_id: str, allowed: tuple[ContactType, ...]):
    contact = agg.records.contacts.get(contact_id)
    if contact is None:
        raise RecordNotFoundError(f"Contact {contact_id!r} not found")
    if contact.type not in allowed:
        expected = " or ".join(t.value for t in allowed)
        raise ValueError(
            f"Contact {contact.name!r} is a {contact.type.value}, expected {expected}"
        )
    return contact


def payout_description(
    bucket: BucketKind,
    contact_name: str,
    *,
    notes: Optional[str] = None,
    reference: Optional[str] = None,
    building_name: Optional[str] = None,
) -> str:
    """Build the description of an owner payout transaction."""
    description = f"{_PAYOUT_LABEL[bucket]} to {contact_name}"
    if notes:
        description += f" - {notes}"
    if reference:
        description += f" (Ref: {reference})"
    if building_name:
        description += f" [{building_name}]"
    return description


def record_payout(
    store: RecordStore,
    *,
    contact_id: str,
    bucket: Union[str, BucketKind],
    amount: Any,
    account_id: str,
    payout_date: dt.date,
    building_id: Optional[str] = None,
    notes: Optional[str] = None,
    reference: Optional[str] = None,
    policy: Optional[PolicyConfig] = None,
    enforce_balance: bool = True,
) -> Transaction:
    """Pay an owner out of the rental income or security deposit bucket.

    Preconditions, checked in this order:
        1. the amount parses and is > 0,
        2. the contact exists and is an owner,
        3. the account is a settlement account,
        4. the payout category exists, or is created on the fly when its
           rule allows it and ``policy.auto_create_missing_categories`` is on
           (the category is committed together with the transaction),
        5. the amount does not exceed the balance due (+ epsilon), unless
           ``enforce_balance`` is False.

    Returns:
        The appended Expense transaction.

    Raises:
        InvalidAmount, RecordNotFoundError, ValueError, InvalidAccount,
        MissingSystemCategory
    """
    policy = policy or PolicyConfig()
    bucket = BucketKind(bucket)
    if bucket not in OWNER_BUCKETS:
        raise ValueError(
            f"Bucket {bucket.value!r} cannot be paid out to an owner, "
            "expected 'rental_income' or 'security_deposit'"
        )

    # 1) Amount
    value = _positive_amount(amount)

    with store.writer() as snapshot:
        agg = AggregationContext.build(snapshot, policy)

        # 2) Contact, 3) account
        owner = _contact(agg, contact_id, (ContactType.OWNER,))
        account = _settlement_account(agg, account_id)

        # 4) Category
        key = _PAYOUT_CATEGORY[bucket]
        new_categories: list[Category] = []
        category_id = agg.categories.category_id_for(key)
        if category_id is None:
            rule = agg.categories.rule(key)
            if not (rule.auto_create and policy.auto_create_missing_categories):
                raise MissingSystemCategory([rule.display_name])
            category = make_system_category(rule)
            new_categories.append(category)
            category_id = category.id
            logger.info("system_category_created", category=category.name)

        # 5) Balance due
        if enforce_balance:
            due = balance_of(
                snapshot, owner.id, bucket, building_id=building_id, aggregation=agg
            ).balance
            if value > due + policy.epsilon:
                raise InvalidAmount(
                    f"Payout amount {value:.2f} exceeds balance due {due:.2f} "
                    f"for {owner.name}"
                )

        building = agg.records.buildings.get(building_id) if building_id else None
        tx = Transaction(
            id=_new_id(),
            type=TransactionType.EXPENSE,
            amount=value,
            date=payout_date,
            description=payout_description(
                bucket,
                owner.name,
                notes=notes,
                reference=reference,
                building_name=building.name if building else None,
            ),
            account_id=account.id,
            contact_id=owner.id,
            category_id=category_id,
            building_id=building_id,
        )
        store.append_transactions([tx], categories=new_categories)
    logger.info(
        "owner_payout_recorded",
        transaction_id=tx.id,
        contact_id=owner.id,
        bucket=bucket.value,
        amount=value,
    )
    return tx


# ---------------------------------------------------------------------------
# Broker commissions
# ---------------------------------------------------------------------------


def _commission_payments(agg: AggregationContext, broker_id: str) -> list[Transaction]:
    return [
        tx
        for tx in agg.snapshot.transactions
        if tx.type == TransactionType.EXPENSE
        and tx.contact_id == broker_id
        and agg.categories.is_rule(tx.category_id, S.BROKER_FEE, S.REBATE_AMOUNT)
    ]


def outstanding_commissions(
    snapshot: Snapshot,
    broker_id: str,
    policy: Optional[PolicyConfig] = None,
    context: Union[str, CommissionContext, None] = None,
    *,
    aggregation: Optional[AggregationContext] = None,
) -> list[CommissionItem]:
    """List the commission earned by a broker, agreement by agreement.

    A payment counts against an agreement when it carries that agreement id.
    For rental agreements, a payment without agreement id also counts when it
    is linked to the agreement's property.
    """
    agg = aggregation or AggregationContext.build(snapshot, policy)
    context = as_commission_context(context)
    payments = _commission_payments(agg, broker_id)
    items: list[CommissionItem] = []

    if context in (None, CommissionContext.RENTAL):
        for ra in snapshot.rental_agreements:
            if ra.broker_id != broker_id or ra.broker_fee <= 0:
                continue
            prop = agg.records.properties.get(ra.property_id)
            paid = sum(
                tx.amount
                for tx in payments
                if tx.agreement_id == ra.id
                or (not tx.agreement_id and tx.property_id == ra.property_id)
            )
            items.append(
                CommissionItem(
                    agreement_id=ra.id,
                    agreement_number=ra.agreement_number,
                    context=CommissionContext.RENTAL,
                    entity_id=ra.property_id,
                    entity_name=prop.name if prop else "Unit",
                    fee=ra.broker_fee,
                    paid_already=paid,
                )
            )

    if context in (None, CommissionContext.PROJECT):
        for pa in snapshot.project_agreements:
            if pa.rebate_broker_id != broker_id or pa.rebate_amount <= 0:
                continue
            project = agg.records.projects.get(pa.project_id)
            paid = sum(tx.amount for tx in payments if tx.agreement_id == pa.id)
            items.append(
                CommissionItem(
                    agreement_id=pa.id,
                    agreement_number=pa.agreement_number,
                    context=CommissionContext.PROJECT,
                    entity_id=pa.project_id,
                    entity_name=project.name if project else "Project",
                    fee=pa.rebate_amount,
                    paid_already=paid,
                )
            )

    return items


def _allocation_pairs(
    allocations: Union[Mapping[str, Any], Iterable[tuple[str, Any]]],
) -> list[tuple[str, Any]]:
    if isinstance(allocations, Mapping):
        return list(allocations.items())
    return list(allocations)


def record_broker_payouts(
    store: RecordStore,
    *,
    broker_id: str,
    allocations: Union[Mapping[str, Any], Iterable[tuple[str, Any]]],
    account_id: str,
    payout_date: dt.date,
    policy: Optional[PolicyConfig] = None,
    context: Union[str, CommissionContext, None] = None,
    enforce_remaining: bool = True,
) -> list[Transaction]:
    """Pay several outstanding commissions of one broker in a single batch.

    Args:
        store: Record store to append to.
        broker_id: Broker or dealer contact id.
        allocations: ``{agreement_id: amount}`` (or pairs), one entry per
            agreement to pay.
        account_id: Settlement account paid from.
        payout_date: Date of the payments.
        policy: Classification policy.
        context: Restrict payable agreements to "rental" or "project".
        enforce_remaining: Reject amounts above the agreement's remaining
            commission (+ epsilon).

    Returns:
        One Expense transaction per allocation, in allocation order.

    Raises:
        InvalidAmount: empty batch, non-positive amount or overpayment.
        InvalidAccount: account missing or not a settlement account.
        MissingSystemCategory: no Broker Fee category (nor Rebate Amount for
            project agreements).
        ValueError: agreement not payable to this broker.
    """
    policy = policy or PolicyConfig()
    pairs = _allocation_pairs(allocations)
    if not pairs:
        raise InvalidAmount("Select at least one commission to pay")

    with store.writer() as snapshot:
        agg = AggregationContext.build(snapshot, policy)
        broker = _contact(agg, broker_id, (ContactType.BROKER, ContactType.DEALER))
        account = _settlement_account(agg, account_id)

        items = {
            item.agreement_id: item
            for item in outstanding_commissions(
                snapshot, broker.id, context=context, aggregation=agg
            )
        }
        fee_category = agg.categories.category_id_for(S.BROKER_FEE)
        rebate_category = agg.categories.category_id_for(S.REBATE_AMOUNT)

        transactions: list[Transaction] = []
        allocated: dict[str, float] = {}
        for agreement_id, raw_amount in pairs:
            item = items.get(agreement_id)
            if item is None:
                raise ValueError(
                    f"Agreement {agreement_id!r} has no commission payable "
                    f"to {broker.name}"
                )
            value = _positive_amount(raw_amount, f"Commission for {item.entity_name}")
            # Repeated agreement ids share the same remaining commission.
            total = allocated.get(item.agreement_id, 0.0) + value
            if enforce_remaining and total > item.remaining + policy.epsilon:
                raise InvalidAmount(
                    f"Commission {total:.2f} exceeds remaining {item.remaining:.2f} "
                    f"for {item.entity_name} (Agr #{item.agreement_number})"
                )
            allocated[item.agreement_id] = total

            if item.context == CommissionContext.PROJECT:
                category_id = rebate_category or fee_category
            else:
                category_id = fee_category
            if category_id is None:
                fee_rule = agg.categories.rule(S.BROKER_FEE)
                raise MissingSystemCategory([fee_rule.display_name])

            rental = item.context == CommissionContext.RENTAL
            transactions.append(
                Transaction(
                    id=_new_id(),
                    type=TransactionType.EXPENSE,
                    amount=value,
                    date=payout_date,
                    description=f"Broker Commission for {item.entity_name}",
                    account_id=account.id,
                    contact_id=broker.id,
                    category_id=category_id,
                    agreement_id=item.agreement_id,
                    property_id=item.entity_id if rental else None,
                    project_id=None if rental else item.entity_id,
                    building_id=(
                        agg.records.property_building(item.entity_id) if rental else None
                    ),
                )
            )

        store.append_transactions(transactions)
    logger.info(
        "broker_payouts_recorded",
        broker_id=broker.id,
        count=len(transactions),
        total=sum(t.amount for t in transactions),
    )
    return transactions
