from datetime import date

import pytest

from estate_ledger.exceptions import InvalidAmount
from estate_ledger.models import (
    Bill,
    DocumentStatus,
    Invoice,
    InvoiceType,
    Transaction,
    TransactionType,
    parse_amount,
    record_from_mapping,
    record_to_mapping,
    settle_document,
    settlement_status,
)


def test_fully_paid_bill_is_paid() -> None:
    bill = settle_document(Bill(id="b1", amount=500.0), 500.0)
    assert bill.status == DocumentStatus.PAID
    assert bill.outstanding == pytest.approx(0.0)


def test_partially_paid_bill_keeps_outstanding_amount() -> None:
    bill = settle_document(Bill(id="b1", amount=500.0), 200.0)
    assert bill.status == DocumentStatus.PARTIALLY_PAID
    assert bill.outstanding == pytest.approx(300.0)


def test_settlement_status_uses_epsilon() -> None:
    assert settlement_status(500.0, 499.995) == DocumentStatus.PAID
    assert settlement_status(500.0, 0.005) == DocumentStatus.UNPAID
    assert settlement_status(500.0, 0.0) == DocumentStatus.UNPAID


def test_settle_document_clamps_negative_paid_amount() -> None:
    invoice = settle_document(Invoice(id="i1", amount=100.0, paid_amount=50.0), -20.0)
    assert invoice.paid_amount == 0.0
    assert invoice.status == DocumentStatus.UNPAID
    assert isinstance(invoice, Invoice)


@pytest.mark.parametrize(
    "raw, expected",
    [(1200, 1200.0), ("1200.50", 1200.5), (" 75 ", 75.0), ("1,250.00", 1250.0)],
)
def test_parse_amount_accepts_numbers_and_numeric_strings(raw, expected) -> None:
    assert parse_amount(raw) == pytest.approx(expected)


@pytest.mark.parametrize("raw", ["abc", "", None, float("nan"), float("inf"), True])
def test_parse_amount_rejects_invalid_values(raw) -> None:
    with pytest.raises(InvalidAmount):
        parse_amount(raw)


def test_parse_amount_negative_only_when_allowed() -> None:
    with pytest.raises(InvalidAmount, match="negative"):
        parse_amount("-10")
    assert parse_amount("-10", allow_negative=True) == -10.0


def test_record_from_mapping_converts_raw_values() -> None:
    tx = record_from_mapping(
        Transaction,
        {
            "id": "t1",
            "type": "income",
            "amount": "1,000.00",
            "date": "2025-01-05",
            "category_id": "cat-rent",
            "property_id": "",
        },
    )
    assert tx.type == TransactionType.INCOME
    assert tx.amount == 1000.0
    assert tx.date == date(2025, 1, 5)
    assert tx.category_id == "cat-rent"
    assert tx.property_id is None


def test_record_from_mapping_requires_mandatory_fields() -> None:
    with pytest.raises(ValueError, match="'date'"):
        record_from_mapping(Transaction, {"id": "t1", "type": "Income", "amount": 5})


def test_record_from_mapping_rejects_unknown_enum_value() -> None:
    with pytest.raises(ValueError, match="InvoiceType"):
        record_from_mapping(
            Invoice, {"id": "i1", "amount": 10, "invoice_type": "Parking"}
        )


def test_record_to_mapping_flattens_enums_and_dates() -> None:
    invoice = Invoice(
        id="i1",
        amount=10.0,
        issue_date=date(2025, 2, 1),
        invoice_type=InvoiceType.SERVICE_CHARGE,
    )
    data = record_to_mapping(invoice)

    assert data["invoice_type"] == "Service Charge"
    assert data["status"] == "Unpaid"
    assert data["issue_date"] == "2025-02-01"
    assert record_from_mapping(Invoice, data) == invoice
