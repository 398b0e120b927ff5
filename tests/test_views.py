from datetime import date

from estate_ledger.balances import BucketKind, accumulate
from estate_ledger.kpi import compute_kpis
from estate_ledger.ledger import LedgerRow, build_ledger
from estate_ledger.payouts import outstanding_commissions
from estate_ledger.views import (
    BALANCE_COLUMNS,
    COMMISSION_COLUMNS,
    KPI_COLUMNS,
    LEDGER_COLUMNS,
    balances_frame,
    commissions_frame,
    kpi_frame,
    ledger_frame,
)


def test_balances_frame(rental_snapshot):
    df = balances_frame(accumulate(rental_snapshot, BucketKind.RENTAL_INCOME))

    assert list(df.columns) == BALANCE_COLUMNS
    assert df.to_dict(orient="records") == [
        {
            "entity_id": "owner-1",
            "name": "Alice",
            "collected": 1000.0,
            "paid": 350.0,
            "balance": 650.0,
            "entries": 3,
        }
    ]


def test_empty_frames_keep_their_columns():
    assert list(balances_frame({}).columns) == BALANCE_COLUMNS
    assert list(ledger_frame([]).columns) == LEDGER_COLUMNS
    assert list(kpi_frame([]).columns) == KPI_COLUMNS
    assert list(commissions_frame([]).columns) == COMMISSION_COLUMNS
    assert ledger_frame([]).empty


def test_ledger_frame_renders_dates_and_rounds():
    rows = [
        LedgerRow(date(2025, 1, 5), "Rent", 0.0, 1000.004),
        LedgerRow(None, "Adjustment", 0.333, 0.0),
    ]
    df = ledger_frame(rows)

    assert df["date"].tolist() == ["2025-01-05", ""]
    assert df["credit"].tolist() == [1000.0, 0.0]
    assert df["debit"].tolist() == [0.0, 0.33]


def test_ledger_frame_follows_row_order(rental_snapshot):
    rows = build_ledger(rental_snapshot, "owner-1", "rental_income", sort_dir="asc")
    df = ledger_frame(rows)
    assert df["source_id"].tolist() == ["t-rent", "t-repairs", "t-payout"]


def test_kpi_frame_rounds_counts_to_units(rental_snapshot):
    ids = ["occupied_units", "security_deposit_held"]
    results = compute_kpis(rental_snapshot, ids=ids)
    df = kpi_frame(results, decimals=1)

    assert df["id"].tolist() == ["occupied_units", "security_deposit_held"]
    assert df["unit"].tolist() == ["count", "amount"]
    assert df["value"].tolist() == [2.0, 920.0]


def test_commissions_frame(estate):
    df = commissions_frame(outstanding_commissions(estate, "broker-1"))

    assert df["agreement_id"].tolist() == ["ra-1", "ra-2", "pa-1"]
    assert df["context"].tolist() == ["rental", "rental", "project"]
    assert df["remaining"].tolist() == [400.0, 250.0, 300.0]
