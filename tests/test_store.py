from dataclasses import replace

import pytest

from conftest import RENT, REPAIRS, make_tx
from estate_ledger.exceptions import (
    InvalidAmount,
    RecordNotFoundError,
    RecordReferencedError,
)
from estate_ledger.models import Bill, DocumentStatus, Invoice, LoanSubtype
from estate_ledger.store import ChangeSet, RecordStore, audit_documents


class RecordingBackend:
    """Persistence backend that records commits, optionally failing."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.commits: list[ChangeSet] = []

    def commit(self, changes: ChangeSet) -> None:
        if self.fail:
            raise RuntimeError("disk full")
        self.commits.append(changes)


def _account(store: RecordStore, account_id: str):
    return next(a for a in store.snapshot.accounts if a.id == account_id)


def test_append_updates_account_balances_and_version(estate) -> None:
    store = RecordStore(estate)

    store.append_transactions(
        [
            make_tx("t1", "Income", 1000.0, category_id=RENT, account_id="acc-bank"),
            make_tx("t2", "Expense", 250.0, category_id=REPAIRS, account_id="acc-bank"),
            make_tx("t3", "Transfer", 100.0, from_account_id="acc-bank",
                    to_account_id="acc-cash"),
            make_tx("t4", "Loan", 40.0, subtype=LoanSubtype.GIVE, account_id="acc-cash"),
        ]
    )

    assert store.version == 1
    assert [t.id for t in store.snapshot.transactions] == ["t1", "t2", "t3", "t4"]
    assert _account(store, "acc-bank").balance == pytest.approx(10000 + 1000 - 250 - 100)
    assert _account(store, "acc-cash").balance == pytest.approx(500 + 100 - 40)


def test_previous_snapshot_is_not_mutated(estate) -> None:
    store = RecordStore(estate)
    before = store.snapshot

    store.append_transactions([make_tx("t1", "Income", 10.0, account_id="acc-bank")])

    assert before.transactions == ()
    assert store.snapshot is not before


def test_batch_is_atomic(estate) -> None:
    store = RecordStore(estate)

    with pytest.raises(InvalidAmount):
        store.append_transactions(
            [
                make_tx("t1", "Income", 10.0, account_id="acc-bank"),
                make_tx("t2", "Expense", 0.0, account_id="acc-bank"),
            ]
        )

    assert store.snapshot is estate
    assert store.version == 0


def test_duplicate_transaction_id_is_rejected(estate) -> None:
    store = RecordStore(estate)
    store.append_transactions([make_tx("t1", "Income", 10.0)])

    with pytest.raises(ValueError, match="Duplicate transaction id"):
        store.append_transactions(
            [make_tx("t2", "Income", 5.0), make_tx("t1", "Income", 5.0)]
        )
    assert [t.id for t in store.snapshot.transactions] == ["t1"]


def test_negative_amount_only_allowed_on_income(estate) -> None:
    store = RecordStore(estate)
    store.append_transactions([make_tx("t1", "Income", -20.0, category_id=RENT)])

    with pytest.raises(InvalidAmount, match="negative"):
        store.append_transactions([make_tx("t2", "Expense", -20.0)])


def test_payments_settle_invoice(estate) -> None:
    store = RecordStore(estate)
    store.add_invoice(Invoice(id="inv-1", amount=500.0))

    store.append_transactions([make_tx("t1", "Income", 200.0, invoice_id="inv-1")])
    invoice = store.snapshot.invoices[0]
    assert invoice.status == DocumentStatus.PARTIALLY_PAID
    assert invoice.paid_amount == pytest.approx(200.0)

    store.append_transactions([make_tx("t2", "Income", 300.0, invoice_id="inv-1")])
    assert store.snapshot.invoices[0].status == DocumentStatus.PAID


def test_update_and_delete_move_bill_payment(estate) -> None:
    store = RecordStore(estate)
    store.add_bill(Bill(id="bill-1", amount=500.0, contact_id="vendor-1"))
    store.append_transactions(
        [make_tx("t1", "Expense", 500.0, bill_id="bill-1", account_id="acc-bank")]
    )
    assert store.snapshot.bills[0].status == DocumentStatus.PAID

    store.update_transaction(
        make_tx("t1", "Expense", 200.0, bill_id="bill-1", account_id="acc-bank")
    )
    bill = store.snapshot.bills[0]
    assert bill.status == DocumentStatus.PARTIALLY_PAID
    assert bill.outstanding == pytest.approx(300.0)
    assert _account(store, "acc-bank").balance == pytest.approx(9800.0)

    store.delete_transaction("t1")
    assert store.snapshot.bills[0].status == DocumentStatus.UNPAID
    assert _account(store, "acc-bank").balance == pytest.approx(10000.0)


def test_update_unknown_transaction_raises(estate) -> None:
    store = RecordStore(estate)
    with pytest.raises(RecordNotFoundError, match="not found"):
        store.update_transaction(make_tx("nope", "Income", 1.0))
    with pytest.raises(RecordNotFoundError):
        store.delete_transaction("nope")


def test_add_document_recomputes_status(estate) -> None:
    store = RecordStore(estate)
    bill = store.add_bill(
        Bill(id="bill-1", amount=500.0, paid_amount=500.0, status=DocumentStatus.UNPAID)
    )
    assert bill.status == DocumentStatus.PAID

    updated = store.update_bill(replace(bill, paid_amount=200.0))
    assert updated.status == DocumentStatus.PARTIALLY_PAID


def test_referenced_bill_cannot_be_deleted(estate) -> None:
    store = RecordStore(estate)
    store.add_bill(Bill(id="bill-1", amount=500.0))
    store.append_transactions([make_tx("t1", "Expense", 100.0, bill_id="bill-1")])
    before = store.snapshot

    with pytest.raises(RecordReferencedError) as excinfo:
        store.delete_bill("bill-1")
    assert excinfo.value.referenced_by == ["t1"]
    assert store.snapshot is before

    store.delete_bill("bill-1", force=True)
    assert store.snapshot.bills == ()


def test_unreferenced_invoice_can_be_deleted(estate) -> None:
    store = RecordStore(estate)
    store.add_invoice(Invoice(id="inv-1", amount=50.0))
    store.delete_invoice("inv-1")
    assert store.snapshot.invoices == ()


def test_backend_receives_change_set(estate) -> None:
    backend = RecordingBackend()
    store = RecordStore(estate, backend=backend)

    store.append_transactions(
        [make_tx("t1", "Income", 100.0, account_id="acc-bank")]
    )

    (changes,) = backend.commits
    assert [t.id for t in changes.upserts["transactions"]] == ["t1"]
    assert [a.id for a in changes.upserts["accounts"]] == ["acc-bank"]
    assert changes.deletes == {}


def test_backend_failure_keeps_previous_snapshot(estate) -> None:
    store = RecordStore(estate, backend=RecordingBackend(fail=True))

    with pytest.raises(RuntimeError, match="disk full"):
        store.append_transactions([make_tx("t1", "Income", 100.0)])

    assert store.snapshot is estate


def test_audit_reports_inconsistent_documents(estate) -> None:
    snapshot = replace(
        estate,
        bills=(Bill(id="bill-1", amount=500.0, paid_amount=500.0),),
        invoices=(Invoice(id="inv-1", amount=100.0, status=DocumentStatus.PAID),),
    )

    findings = audit_documents(snapshot)

    assert [(f.kind, f.document_id, f.expected_status) for f in findings] == [
        ("bill", "bill-1", "Paid"),
        ("invoice", "inv-1", "Unpaid"),
    ]
    # Findings are reported, never corrected.
    assert snapshot.bills[0].status == DocumentStatus.UNPAID
