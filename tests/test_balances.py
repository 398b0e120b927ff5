from datetime import date

import pytest

from conftest import (
    CONSULTING,
    EQUITY,
    FEE,
    OWNER_SC,
    PAYOUT,
    REBATE,
    REFUND,
    RENT,
    REPAIRS,
    make_tx,
    with_records,
)
from estate_ledger.balances import (
    AggregationContext,
    BucketKind,
    Side,
    accumulate,
    balance_of,
    iter_contributions,
)
from estate_ledger.config import PolicyConfig
from estate_ledger.models import Category, LoanSubtype, TransactionType


def test_rent_minus_payout_scenario(estate) -> None:
    """1000 of rental income and a 300 payout leave 700 due to the owner."""
    snapshot = with_records(
        estate,
        transactions=[
            make_tx("t1", "Income", 1000.0, category_id=RENT, property_id="p-1"),
            make_tx("t2", "Expense", 300.0, category_id=PAYOUT, contact_id="owner-1"),
        ],
    )

    balances = accumulate(snapshot, BucketKind.RENTAL_INCOME)
    alice = balances["owner-1"]

    assert alice.collected == pytest.approx(1000.0)
    assert alice.paid == pytest.approx(300.0)
    assert alice.balance == pytest.approx(700.0)
    assert alice.name == "Alice"
    assert alice.entries == 2


def test_balance_equals_collected_minus_paid(rental_snapshot) -> None:
    for bucket in BucketKind:
        for b in accumulate(rental_snapshot, bucket).values():
            assert b.balance == pytest.approx(b.collected - b.paid)


def test_rental_bucket_deducts_property_expenses_but_not_tenant_charges(
    rental_snapshot,
) -> None:
    alice = accumulate(rental_snapshot, "rental_income")["owner-1"]

    # rent 1000 - payout 300 - repairs 50; the tenant repair is not deducted
    assert alice.collected == pytest.approx(1000.0)
    assert alice.paid == pytest.approx(350.0)
    assert alice.balance == pytest.approx(650.0)


def test_idle_owners_are_dropped(rental_snapshot) -> None:
    balances = accumulate(rental_snapshot, BucketKind.RENTAL_INCOME)
    assert list(balances) == ["owner-1"]


def test_policy_flag_limits_owner_deductions(rental_snapshot) -> None:
    policy = PolicyConfig(unclassified_property_expense_is_owner_deduction=False)
    alice = accumulate(rental_snapshot, BucketKind.RENTAL_INCOME, policy)["owner-1"]

    assert alice.paid == pytest.approx(300.0)
    assert alice.balance == pytest.approx(700.0)


def test_security_deposit_bucket(rental_snapshot) -> None:
    balances = accumulate(rental_snapshot, BucketKind.SECURITY_DEPOSIT)

    assert balances["owner-1"].collected == pytest.approx(1000.0)
    assert balances["owner-1"].balance == pytest.approx(1000.0)

    # The tenant deduction reduces the pool without being attributed.
    agg = AggregationContext.build(rental_snapshot)
    unattributed = [
        c for c in iter_contributions(BucketKind.SECURITY_DEPOSIT, agg)
        if c.entity_id is None
    ]
    assert [(c.source_id, c.side, c.amount) for c in unattributed] == [
        ("t-tenant", Side.PAID, 80.0)
    ]


def test_owner_service_charge_payment_is_credited_to_owner(estate) -> None:
    snapshot = with_records(
        estate,
        transactions=[
            make_tx("t1", "Income", 120.0, category_id=OWNER_SC, contact_id="owner-2"),
        ],
    )
    bob = accumulate(snapshot, BucketKind.RENTAL_INCOME)["owner-2"]
    assert bob.collected == pytest.approx(120.0)


def test_negative_rental_income_reduces_collected(estate) -> None:
    snapshot = with_records(
        estate,
        transactions=[
            make_tx("t1", "Income", 1000.0, category_id=RENT, property_id="p-1"),
            make_tx("t2", "Income", -100.0, category_id=RENT, property_id="p-1"),
        ],
    )
    alice = accumulate(snapshot, BucketKind.RENTAL_INCOME)["owner-1"]
    assert alice.collected == pytest.approx(900.0)
    assert alice.balance == pytest.approx(900.0)


def test_building_filter_restricts_owner_balances(estate) -> None:
    snapshot = with_records(
        estate,
        transactions=[
            make_tx("t1", "Income", 1000.0, category_id=RENT, property_id="p-1"),
            make_tx("t2", "Income", 2000.0, category_id=RENT, property_id="p-3"),
        ],
    )

    everywhere = accumulate(snapshot, BucketKind.RENTAL_INCOME)["owner-1"]
    in_tower = accumulate(snapshot, BucketKind.RENTAL_INCOME, building_id="b-1")

    assert everywhere.balance == pytest.approx(3000.0)
    assert in_tower["owner-1"].balance == pytest.approx(1000.0)


def test_balances_sorted_by_balance_descending(estate) -> None:
    snapshot = with_records(
        estate,
        transactions=[
            make_tx("t1", "Income", 500.0, category_id=RENT, property_id="p-1"),
            make_tx("t2", "Income", 900.0, category_id=RENT, property_id="p-2"),
        ],
    )
    balances = accumulate(snapshot, BucketKind.RENTAL_INCOME)
    assert list(balances) == ["owner-2", "owner-1"]


def test_broker_commission_earned_and_paid(estate) -> None:
    snapshot = with_records(
        estate,
        transactions=[
            make_tx("t1", "Expense", 150.0, category_id=FEE, contact_id="broker-1",
                    agreement_id="ra-1", property_id="p-1"),
        ],
    )

    brian = accumulate(snapshot, BucketKind.BROKER_COMMISSION)["broker-1"]
    assert brian.collected == pytest.approx(400.0 + 250.0 + 300.0)
    assert brian.paid == pytest.approx(150.0)
    assert brian.balance == pytest.approx(800.0)


def test_broker_commission_context_split(estate) -> None:
    snapshot = with_records(
        estate,
        transactions=[
            make_tx("t1", "Expense", 100.0, category_id=FEE, contact_id="broker-1",
                    property_id="p-1"),
            make_tx("t2", "Expense", 120.0, category_id=REBATE, contact_id="broker-1",
                    project_id="prj-1"),
        ],
    )

    kind = BucketKind.BROKER_COMMISSION
    rental = balance_of(snapshot, "broker-1", kind, context="rental")
    project = balance_of(snapshot, "broker-1", kind, context="project")

    assert rental.balance == pytest.approx(650.0 - 100.0)
    assert project.balance == pytest.approx(300.0 - 120.0)


def test_unknown_commission_context_is_rejected(estate) -> None:
    with pytest.raises(ValueError, match="commission context"):
        accumulate(estate, BucketKind.BROKER_COMMISSION, context="retail")


def test_project_funds(estate) -> None:
    snapshot = with_records(
        estate,
        transactions=[
            make_tx("t1", "Income", 5000.0, category_id=EQUITY, project_id="prj-1"),
            make_tx("t2", "Income", 2000.0, category_id=CONSULTING, agreement_id="pa-1"),
            make_tx("t3", "Expense", 1500.0, category_id=REPAIRS, project_id="prj-1"),
            make_tx("t4", "Transfer", 700.0, project_id="prj-1",
                    from_account_id="acc-bank", to_account_id="acc-equity"),
            make_tx("t5", "Loan", 400.0, subtype=LoanSubtype.RECEIVE, project_id="prj-1"),
            make_tx("t6", "Income", 999.0, category_id=CONSULTING, project_id="prj-x"),
        ],
    )

    funds = accumulate(snapshot, BucketKind.PROJECT_FUNDS)

    assert list(funds) == ["prj-1"]
    assert funds["prj-1"].collected == pytest.approx(5000.0 + 2000.0 + 400.0)
    assert funds["prj-1"].paid == pytest.approx(1500.0 + 700.0)
    assert funds["prj-1"].name == "Green Valley"


def test_pm_fee_moved_out_of_clearing_counts_as_investment(estate) -> None:
    snapshot = with_records(
        estate,
        transactions=[
            make_tx("t1", "Transfer", 250.0, project_id="prj-1",
                    description="PM Fee equity move out",
                    from_account_id="acc-clearing", to_account_id="acc-equity"),
        ],
    )
    funds = accumulate(snapshot, BucketKind.PROJECT_FUNDS)
    assert funds["prj-1"].collected == pytest.approx(250.0)
    assert funds["prj-1"].paid == pytest.approx(0.0)


def test_building_funds_include_property_linked_records(estate) -> None:
    snapshot = with_records(
        estate,
        transactions=[
            make_tx("t1", "Income", 300.0, category_id=RENT, property_id="p-2"),
            make_tx("t2", "Expense", 80.0, category_id=REPAIRS, building_id="b-1"),
            make_tx("t3", "Expense", 999.0, category_id=REPAIRS, property_id="p-3"),
        ],
    )
    funds = accumulate(snapshot, BucketKind.BUILDING_FUNDS)

    assert list(funds) == ["b-1"]
    assert funds["b-1"].balance == pytest.approx(220.0)


def test_record_contributes_at_most_once_per_bucket(rental_snapshot) -> None:
    agg = AggregationContext.build(rental_snapshot)
    for bucket in BucketKind:
        sources = [c.source_id for c in iter_contributions(bucket, agg)]
        assert len(sources) == len(set(sources))


def test_record_counts_once_per_entity_across_buckets(rental_snapshot) -> None:
    security_payout = Category(
        "cat-sec-payout", "Owner Security Payout", TransactionType.EXPENSE
    )
    snapshot = with_records(
        rental_snapshot,
        categories=[*rental_snapshot.categories, security_payout],
        transactions=[
            *rental_snapshot.transactions,
            make_tx("t-refund", "Expense", 200.0, category_id=REFUND,
                    property_id="p-1", contact_id="tenant-1"),
            make_tx("t-sec-payout", "Expense", 150.0, category_id="cat-sec-payout",
                    property_id="p-1", contact_id="owner-1"),
            make_tx("t-fee", "Expense", 100.0, category_id=FEE,
                    property_id="p-1", contact_id="broker-1"),
            make_tx("t-rebate", "Expense", 50.0, category_id=REBATE,
                    contact_id="broker-1", agreement_id="pa-1"),
            make_tx("t-sc", "Income", 40.0, category_id=OWNER_SC,
                    contact_id="owner-2"),
            make_tx("t-bm", "Expense", 60.0, category_id=REPAIRS, building_id="b-1"),
        ],
    )
    amounts = {tx.id: tx.amount for tx in snapshot.transactions}
    agg = AggregationContext.build(snapshot)

    seen: dict[tuple[str, str], str] = {}
    for bucket in BucketKind:
        for c in iter_contributions(bucket, agg):
            if c.entity_id is None or c.source_id not in amounts:
                continue
            key = (c.source_id, c.entity_id)
            assert key not in seen, f"{key} routed to {seen[key]} and {bucket.value}"
            seen[key] = bucket.value
            assert c.amount == pytest.approx(amounts[c.source_id])

    assert seen[("t-refund", "owner-1")] == "security_deposit"
    assert seen[("t-sec-payout", "owner-1")] == "security_deposit"
    assert seen[("t-deposit", "owner-1")] == "security_deposit"
    assert seen[("t-rent", "owner-1")] == "rental_income"
    assert seen[("t-fee", "owner-1")] == "rental_income"
    assert seen[("t-fee", "broker-1")] == "broker_commission"
    assert seen[("t-sc", "owner-2")] == "rental_income"


def test_accumulate_is_idempotent(rental_snapshot) -> None:
    first = accumulate(rental_snapshot, BucketKind.RENTAL_INCOME)
    second = accumulate(rental_snapshot, BucketKind.RENTAL_INCOME)
    assert first == second


def test_unknown_owner_has_zero_balance(rental_snapshot) -> None:
    b = balance_of(rental_snapshot, "owner-2", BucketKind.RENTAL_INCOME)
    assert b.balance == 0.0
    assert b.entries == 0
    assert b.name == "Bob"


def test_contribution_dates_follow_records(estate) -> None:
    agg = AggregationContext.build(estate)
    earned = list(iter_contributions(BucketKind.BROKER_COMMISSION, agg))

    assert [c.source_id for c in earned] == ["ra-1", "ra-2", "pa-1"]
    assert earned[0].date == date(2025, 1, 1)
    assert earned[0].description == "Commission for Unit 101 (Agr #1001)"
    assert earned[2].description == "Commission for Green Valley (Agr #P-1)"
