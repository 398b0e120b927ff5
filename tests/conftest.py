from dataclasses import replace
from datetime import date

import pytest

from estate_ledger.models import (
    Account,
    AccountType,
    Building,
    Category,
    Contact,
    ContactType,
    Project,
    ProjectAgreement,
    Property,
    RentalAgreement,
    Snapshot,
    Transaction,
    TransactionType,
)

# Category ids used across the test-suite.
RENT = "cat-rent"
DEPOSIT = "cat-deposit"
REFUND = "cat-refund"
PAYOUT = "cat-payout"
FEE = "cat-fee"
REBATE = "cat-rebate"
OWNER_SC = "cat-owner-sc"
SC_INCOME = "cat-sc-income"
REPAIRS = "cat-repairs"
TENANT_REPAIRS = "cat-tenant-repairs"
OFFICE = "cat-office"
CONSULTING = "cat-consulting"
EQUITY = "cat-equity"


def make_categories() -> list[Category]:
    income, expense = TransactionType.INCOME, TransactionType.EXPENSE
    return [
        Category(RENT, "Rental Income", income, is_permanent=True),
        Category(DEPOSIT, "Security Deposit", income, is_permanent=True),
        Category(REFUND, "Security Deposit Refund", expense, is_permanent=True),
        Category(PAYOUT, "Owner Payout", expense, is_permanent=True),
        Category(FEE, "Broker Fee", expense, is_permanent=True),
        Category(REBATE, "Rebate Amount", expense),
        Category(OWNER_SC, "Owner Service Charge Payment", income),
        Category(SC_INCOME, "Service Charge Income", income),
        Category(REPAIRS, "Repairs", expense),
        Category(TENANT_REPAIRS, "Repairs (Tenant)", expense),
        Category(OFFICE, "Office Rent", expense),
        Category(CONSULTING, "Consulting", income),
        Category(EQUITY, "Owner Equity", income),
    ]


def make_estate(**overrides) -> Snapshot:
    """Reference records of a small estate, without financial records.

    - owners Alice (owner-1) and Bob (owner-2), tenant Tina, broker Brian,
    - Tower A (b-1) holding Unit 101 (Alice) and Unit 102 (Bob),
    - Villa 7 (p-3, Alice) outside any building,
    - project Green Valley with one unit sale rebated to Brian,
    - rental agreements on Unit 101 (fee 400) and Unit 102 (fee 250).
    """
    snapshot = Snapshot.build(
        categories=make_categories(),
        contacts=[
            Contact("owner-1", "Alice", ContactType.OWNER),
            Contact("owner-2", "Bob", ContactType.OWNER),
            Contact("tenant-1", "Tina", ContactType.TENANT),
            Contact("broker-1", "Brian", ContactType.BROKER),
            Contact("client-1", "Carl", ContactType.CLIENT),
            Contact("vendor-1", "Fixit Ltd", ContactType.VENDOR),
        ],
        accounts=[
            Account("acc-bank", "Main Bank", AccountType.BANK, balance=10000.0),
            Account("acc-cash", "Petty Cash", AccountType.CASH, balance=500.0),
            Account("acc-clearing", "Internal Clearing", AccountType.BANK),
            Account("acc-equity", "Partners Equity", AccountType.EQUITY),
        ],
        buildings=[Building("b-1", "Tower A")],
        properties=[
            Property("p-1", "Unit 101", owner_id="owner-1", building_id="b-1"),
            Property("p-2", "Unit 102", owner_id="owner-2", building_id="b-1"),
            Property("p-3", "Villa 7", owner_id="owner-1"),
        ],
        projects=[Project("prj-1", "Green Valley")],
        rental_agreements=[
            RentalAgreement(
                "ra-1",
                "1001",
                tenant_id="tenant-1",
                property_id="p-1",
                start_date=date(2025, 1, 1),
                broker_id="broker-1",
                broker_fee=400.0,
                security_deposit=1000.0,
            ),
            RentalAgreement(
                "ra-2",
                "1002",
                tenant_id="tenant-1",
                property_id="p-2",
                start_date=date(2025, 2, 1),
                broker_id="broker-1",
                broker_fee=250.0,
            ),
        ],
        project_agreements=[
            ProjectAgreement(
                "pa-1",
                "P-1",
                client_id="client-1",
                project_id="prj-1",
                issue_date=date(2025, 3, 1),
                rebate_broker_id="broker-1",
                rebate_amount=300.0,
            ),
        ],
    )
    return replace(snapshot, **overrides) if overrides else snapshot


def make_tx(tx_id: str, tx_type, amount: float, **kwargs) -> Transaction:
    """Build a transaction dated 2025-01-15 unless ``date`` is given."""
    kwargs.setdefault("date", date(2025, 1, 15))
    return Transaction(
        id=tx_id, type=TransactionType(tx_type), amount=amount, **kwargs
    )


def with_records(snapshot: Snapshot, **collections) -> Snapshot:
    """Return ``snapshot`` with the given collections replaced (as tuples)."""
    return replace(snapshot, **{k: tuple(v) for k, v in collections.items()})


@pytest.fixture
def estate() -> Snapshot:
    return make_estate()


@pytest.fixture
def rental_snapshot(estate) -> Snapshot:
    """Alice's Unit 101: rent 1000, payout 300, repairs 50, tenant repairs 80."""
    return with_records(
        estate,
        transactions=[
            make_tx("t-rent", "Income", 1000.0, category_id=RENT, property_id="p-1",
                    contact_id="tenant-1", account_id="acc-bank",
                    date=date(2025, 1, 5)),
            make_tx("t-payout", "Expense", 300.0, category_id=PAYOUT,
                    contact_id="owner-1", account_id="acc-bank",
                    date=date(2025, 1, 20)),
            make_tx("t-repairs", "Expense", 50.0, category_id=REPAIRS,
                    property_id="p-1", contact_id="vendor-1",
                    account_id="acc-bank", date=date(2025, 1, 10)),
            make_tx("t-tenant", "Expense", 80.0, category_id=TENANT_REPAIRS,
                    property_id="p-1", contact_id="vendor-1",
                    account_id="acc-bank", date=date(2025, 1, 12)),
            make_tx("t-deposit", "Income", 1000.0, category_id=DEPOSIT,
                    property_id="p-1", contact_id="tenant-1",
                    account_id="acc-bank", date=date(2025, 1, 1)),
        ],
    )
