from datetime import date

import pytest

from estate_ledger.io import normalize_column, read_records, read_snapshot
from estate_ledger.models import (
    DocumentStatus,
    LoanSubtype,
    TransactionType,
)


def _write(path, text: str) -> None:
    path.write_text(text.strip() + "\n", encoding="utf-8")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("category_id", "category_id"),
        ("categoryId", "category_id"),
        ("Category Id", "category_id"),
        ("  Amount ", "amount"),
        ("from-account-id", "from_account_id"),
    ],
)
def test_normalize_column(raw, expected) -> None:
    assert normalize_column(raw) == expected


def test_read_transactions(tmp_path) -> None:
    path = tmp_path / "transactions.csv"
    _write(
        path,
        """
id,type,amount,date,categoryId,Property Id,subtype,notes
t1,Income,"1,250.50",2025-01-05,cat-rent,p-1,,ignored
t2,Expense,40,2025-01-06,,,,
t3,Loan,300,2025-01-07T10:00:00,,,Receive Loan,
""",
    )

    t1, t2, t3 = read_records(path, "transactions")

    assert t1.type == TransactionType.INCOME
    assert t1.amount == pytest.approx(1250.5)
    assert t1.date == date(2025, 1, 5)
    assert t1.category_id == "cat-rent"
    assert t1.property_id == "p-1"
    assert t1.subtype is None
    assert t2.category_id is None
    assert t3.subtype == LoanSubtype.RECEIVE
    assert t3.date == date(2025, 1, 7)


def test_read_bills_without_contact(tmp_path) -> None:
    path = tmp_path / "bills.csv"
    _write(
        path,
        """
id,amount,paid_amount,status,contact_id
bill-1,500,200,Partially Paid,
bill-2,100,,,vendor-1
""",
    )

    bill_1, bill_2 = read_records(path, "bills")

    assert bill_1.contact_id is None
    assert bill_1.status == DocumentStatus.PARTIALLY_PAID
    assert bill_2.paid_amount == 0.0
    assert bill_2.status == DocumentStatus.UNPAID


def test_missing_required_column(tmp_path) -> None:
    path = tmp_path / "transactions.csv"
    _write(path, "id,type,date\nt1,Income,2025-01-01")

    with pytest.raises(ValueError, match="missing required column"):
        read_records(path, "transactions")


@pytest.mark.parametrize(
    "row, message",
    [
        ("t1,Income,abc,2025-01-01", "Invalid amount"),
        ("t1,Income,10,01/02/2025", "Invalid date"),
        ("t1,Gift,10,2025-01-01", "Invalid TransactionType"),
    ],
)
def test_malformed_values_name_the_line(tmp_path, row, message) -> None:
    path = tmp_path / "transactions.csv"
    _write(path, f"id,type,amount,date\nt0,Income,1,2025-01-01\n{row}")

    with pytest.raises(ValueError, match=message) as excinfo:
        read_records(path, "transactions")
    assert str(excinfo.value).startswith("transactions.csv, line 3:")


def test_unknown_kind(tmp_path) -> None:
    path = tmp_path / "things.csv"
    _write(path, "id\nx")
    with pytest.raises(ValueError, match="Unknown record kind"):
        read_records(path, "things")


def test_read_snapshot_with_partial_directory(tmp_path) -> None:
    _write(
        tmp_path / "categories.csv",
        """
id,name,type,is_permanent
cat-rent,Rental Income,Income,true
""",
    )
    _write(
        tmp_path / "transactions.csv",
        """
id,type,amount,date,category_id
t2,Income,100,2025-02-01,cat-rent
t1,Income,200,2025-01-01,cat-rent
""",
    )

    snapshot = read_snapshot(tmp_path)

    assert [c.name for c in snapshot.categories] == ["Rental Income"]
    assert snapshot.categories[0].is_permanent is True
    # File order is kept as store order.
    assert [t.id for t in snapshot.transactions] == ["t2", "t1"]
    assert snapshot.contacts == ()
    assert snapshot.bills == ()


def test_read_snapshot_missing_directory(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        read_snapshot(tmp_path / "nowhere")
