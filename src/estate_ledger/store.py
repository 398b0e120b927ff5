# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Record store for Estate Ledger.

The record store owns the current Snapshot and is the only place where
records change. Every write:

1. takes the store lock (writers are serialised, readers never block),
   which callers can also hold across a read-check-write sequence with
   ``RecordStore.writer()``,
2. works on a draft copy of the collections it touches,
3. applies the side effects of the change:
   - account balances move with income, expenses, transfers and loans,
   - the bill / invoice linked by a transaction has its paid amount moved
     and its status recomputed in the same step (``settle_document``),
4. hands the resulting ChangeSet to the persistence backend, if any,
5. swaps in the new Snapshot with an incremented version.

If any step raises, the draft is dropped: the current Snapshot (and the
backend) are left untouched. A batch of transactions is therefore committed
all-or-nothing.

Deleting a bill or invoice that transactions still reference is refused
unless forced. Deleting a transaction linked to a document reverses its
effect on that document and is logged as a warning.

``audit_documents`` reports bills / invoices whose stored status disagrees
with their paid amount. Findings are logged, never corrected.
"""

import math
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Optional, Protocol

import structlog

from .exceptions import (
    InconsistentBillState,
    InvalidAmount,
    RecordNotFoundError,
    RecordReferencedError,
)
from .models import (
    EPSILON,
    Bill,
    Category,
    Invoice,
    LoanSubtype,
    Snapshot,
    Transaction,
    TransactionType,
    settle_document,
    settlement_status,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ChangeSet:
    """Records written and ids deleted by one commit, per record kind."""

    upserts: dict[str, tuple[Any, ...]] = field(default_factory=dict)
    deletes: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.upserts and not self.deletes


class PersistenceBackend(Protocol):
    def commit(self, changes: ChangeSet) -> None: ...


class _Draft:
    """Mutable working copy of the collections touched by one write."""

    def __init__(self, snapshot: Snapshot):
        self.snapshot = snapshot
        self._lists: dict[str, list[Any]] = {}
        self._upserts: dict[str, dict[str, Any]] = {}
        self._deletes: dict[str, list[str]] = {}

    def items(self, kind: str) -> list[Any]:
        if kind not in self._lists:
            self._lists[kind] = list(getattr(self.snapshot, kind))
        return self._lists[kind]

    def find(self, kind: str, record_id: Optional[str]) -> Optional[Any]:
        if not record_id:
            return None
        for record in self.items(kind):
            if record.id == record_id:
                return record
        return None

    def put(self, kind: str, record: Any) -> None:
        """Replace the record with the same id, or append it."""
        items = self.items(kind)
        for i, existing in enumerate(items):
            if existing.id == record.id:
                items[i] = record
                break
        else:
            items.append(record)
        self._upserts.setdefault(kind, {})[record.id] = record

    def remove(self, kind: str, record_id: str) -> Any:
        items = self.items(kind)
        for i, existing in enumerate(items):
            if existing.id == record_id:
                del items[i]
                self._upserts.get(kind, {}).pop(record_id, None)
                self._deletes.setdefault(kind, []).append(record_id)
                return existing
        label = kind[:-1].replace("_", " ").capitalize()
        raise RecordNotFoundError(f"{label} {record_id!r} not found")

    def build(self) -> Snapshot:
        return replace(
            self.snapshot,
            version=self.snapshot.version + 1,
            **{kind: tuple(items) for kind, items in self._lists.items()},
        )

    def changes(self) -> ChangeSet:
        return ChangeSet(
            upserts={k: tuple(v.values()) for k, v in self._upserts.items() if v},
            deletes={k: tuple(v) for k, v in self._deletes.items() if v},
        )


def _account_changes(tx: Transaction) -> list[tuple[Optional[str], float]]:
    """Balance changes implied by a transaction, as (account_id, delta) pairs."""
    if tx.type == TransactionType.INCOME:
        return [(tx.account_id, tx.amount)]
    if tx.type == TransactionType.EXPENSE:
        return [(tx.account_id, -tx.amount)]
    if tx.type == TransactionType.TRANSFER:
        return [(tx.from_account_id, -tx.amount), (tx.to_account_id, tx.amount)]
    if tx.type == TransactionType.LOAN:
        if tx.subtype in (LoanSubtype.RECEIVE, LoanSubtype.COLLECT):
            return [(tx.account_id, tx.amount)]
        return [(tx.account_id, -tx.amount)]
    return []


def validate_transaction_amount(tx: Transaction) -> None:
    """Reject zero, non-finite, and negative non-income amounts.

    Negative amounts are only accepted on Income transactions, where they
    record service charges deducted from rent.

    Raises:
        InvalidAmount
    """
    if not math.isfinite(tx.amount) or tx.amount == 0:
        raise InvalidAmount(f"Transaction {tx.id!r} has invalid amount {tx.amount!r}")
    if tx.amount < 0 and tx.type != TransactionType.INCOME:
        raise InvalidAmount(
            f"Transaction {tx.id!r}: negative amounts are only allowed on income"
        )


def audit_documents(
    snapshot: Snapshot, epsilon: float = EPSILON
) -> list[InconsistentBillState]:
    """Report every bill / invoice whose status disagrees with its paid amount."""
    findings: list[InconsistentBillState] = []
    for kind, documents in (("bill", snapshot.bills), ("invoice", snapshot.invoices)):
        for doc in documents:
            expected = settlement_status(doc.amount, doc.paid_amount, epsilon)
            if doc.status != expected:
                finding = InconsistentBillState(
                    doc.id, doc.status.value, expected.value, kind=kind
                )
                logger.warning(
                    "inconsistent_document_state",
                    kind=kind,
                    document_id=doc.id,
                    stored_status=doc.status.value,
                    expected_status=expected.value,
                )
                findings.append(finding)
    return findings


class RecordStore:
    """Serialised write surface over an immutable Snapshot."""

    def __init__(
        self,
        snapshot: Optional[Snapshot] = None,
        *,
        backend: Optional[PersistenceBackend] = None,
        epsilon: float = EPSILON,
    ):
        self._snapshot = snapshot or Snapshot()
        self._backend = backend
        self._lock = threading.RLock()
        self.epsilon = epsilon

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def audit_documents(self) -> list[InconsistentBillState]:
        return audit_documents(self._snapshot, self.epsilon)

    @contextmanager
    def writer(self) -> Iterator[Snapshot]:
        """Hold the write lock and yield the current Snapshot.

        Writes made by the same thread inside the block go through; other
        writers wait until the block exits, so checks made against the
        yielded Snapshot still hold when the write commits.
        """
        with self._lock:
            yield self._snapshot

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _commit(self, draft: _Draft, event: str, **log_fields: Any) -> Snapshot:
        """Persist the draft (if a backend is set) then publish it."""
        new_snapshot = draft.build()
        changes = draft.changes()
        if self._backend is not None and not changes.is_empty:
            self._backend.commit(changes)
        self._snapshot = new_snapshot
        logger.info(event, version=new_snapshot.version, **log_fields)
        return new_snapshot

    def _apply_effect(self, draft: _Draft, tx: Transaction, factor: int) -> None:
        """Apply (factor=1) or reverse (factor=-1) the side effects of ``tx``."""
        for account_id, delta in _account_changes(tx):
            account = draft.find("accounts", account_id)
            if account is not None:
                balance = account.balance + delta * factor
                draft.put("accounts", replace(account, balance=balance))

        for kind, doc_id in (("invoices", tx.invoice_id), ("bills", tx.bill_id)):
            doc = draft.find(kind, doc_id)
            if doc is not None:
                draft.put(
                    kind,
                    settle_document(
                        doc, doc.paid_amount + tx.amount * factor, self.epsilon
                    ),
                )

    def _add_transaction(self, draft: _Draft, tx: Transaction) -> None:
        validate_transaction_amount(tx)
        if draft.find("transactions", tx.id) is not None:
            raise ValueError(f"Duplicate transaction id: {tx.id!r}")
        draft.put("transactions", tx)
        self._apply_effect(draft, tx, 1)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def append_transactions(
        self,
        transactions: Iterable[Transaction],
        *,
        categories: Iterable[Category] = (),
    ) -> tuple[Transaction, ...]:
        """Append a batch of transactions (and the categories they need) atomically.

        Raises:
            InvalidAmount: if any transaction has an invalid amount.
            ValueError: on duplicate ids.
        """
        txs = tuple(transactions)
        new_categories = tuple(categories)
        with self._lock:
            draft = _Draft(self._snapshot)
            for category in new_categories:
                if draft.find("categories", category.id) is not None:
                    raise ValueError(f"Duplicate category id: {category.id!r}")
                draft.put("categories", category)
            for tx in txs:
                self._add_transaction(draft, tx)
            self._commit(
                draft,
                "transactions_appended",
                count=len(txs),
                total=sum(tx.amount for tx in txs),
                categories_created=[c.name for c in new_categories],
            )
        return txs

    def update_transaction(self, tx: Transaction) -> Transaction:
        """Replace a transaction, moving its side effects accordingly."""
        validate_transaction_amount(tx)
        with self._lock:
            draft = _Draft(self._snapshot)
            original = draft.find("transactions", tx.id)
            if original is None:
                raise RecordNotFoundError(f"Transaction {tx.id!r} not found")
            self._apply_effect(draft, original, -1)
            draft.put("transactions", tx)
            self._apply_effect(draft, tx, 1)
            self._commit(draft, "transaction_updated", transaction_id=tx.id)
        return tx

    def delete_transaction(self, transaction_id: str) -> Transaction:
        """Delete a transaction and reverse its effect on accounts and documents."""
        with self._lock:
            draft = _Draft(self._snapshot)
            tx = draft.remove("transactions", transaction_id)
            if tx.bill_id or tx.invoice_id:
                logger.warning(
                    "linked_transaction_deleted",
                    transaction_id=tx.id,
                    bill_id=tx.bill_id,
                    invoice_id=tx.invoice_id,
                )
            self._apply_effect(draft, tx, -1)
            self._commit(draft, "transaction_deleted", transaction_id=tx.id)
        return tx

    # ------------------------------------------------------------------
    # Bills / invoices
    # ------------------------------------------------------------------

    def _add_document(self, kind: str, doc: Any) -> Any:
        doc = settle_document(doc, doc.paid_amount, self.epsilon)
        with self._lock:
            draft = _Draft(self._snapshot)
            if draft.find(kind, doc.id) is not None:
                raise ValueError(f"Duplicate {kind[:-1]} id: {doc.id!r}")
            draft.put(kind, doc)
            self._commit(draft, f"{kind[:-1]}_added", document_id=doc.id)
        return doc

    def _update_document(self, kind: str, doc: Any) -> Any:
        doc = settle_document(doc, doc.paid_amount, self.epsilon)
        with self._lock:
            draft = _Draft(self._snapshot)
            if draft.find(kind, doc.id) is None:
                label = kind[:-1].capitalize()
                raise RecordNotFoundError(f"{label} {doc.id!r} not found")
            draft.put(kind, doc)
            self._commit(draft, f"{kind[:-1]}_updated", document_id=doc.id)
        return doc

    def _delete_document(self, kind: str, doc_id: str, force: bool) -> Any:
        link = "bill_id" if kind == "bills" else "invoice_id"
        with self._lock:
            draft = _Draft(self._snapshot)
            referenced_by = [
                t.id for t in draft.snapshot.transactions if getattr(t, link) == doc_id
            ]
            if referenced_by and not force:
                raise RecordReferencedError(doc_id, referenced_by)
            doc = draft.remove(kind, doc_id)
            if referenced_by:
                logger.warning(
                    "referenced_document_deleted",
                    kind=kind[:-1],
                    document_id=doc_id,
                    referenced_by=referenced_by,
                )
            self._commit(draft, f"{kind[:-1]}_deleted", document_id=doc_id)
        return doc

    def add_bill(self, bill: Bill) -> Bill:
        return self._add_document("bills", bill)

    def add_invoice(self, invoice: Invoice) -> Invoice:
        return self._add_document("invoices", invoice)

    def update_bill(self, bill: Bill) -> Bill:
        """Replace a bill; its status is recomputed from its paid amount."""
        return self._update_document("bills", bill)

    def update_invoice(self, invoice: Invoice) -> Invoice:
        """Replace an invoice; its status is recomputed from its paid amount."""
        return self._update_document("invoices", invoice)

    def delete_bill(self, bill_id: str, *, force: bool = False) -> Bill:
        """Delete a bill.

        Raises:
            RecordReferencedError: if transactions reference it and not ``force``.
            RecordNotFoundError: if the bill does not exist.
        """
        return self._delete_document("bills", bill_id, force)

    def delete_invoice(self, invoice_id: str, *, force: bool = False) -> Invoice:
        """Delete an invoice (same rules as ``delete_bill``)."""
        return self._delete_document("invoices", invoice_id, force)

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    def add_category(self, category: Category) -> Category:
        with self._lock:
            draft = _Draft(self._snapshot)
            if draft.find("categories", category.id) is not None:
                raise ValueError(f"Duplicate category id: {category.id!r}")
            draft.put("categories", category)
            self._commit(draft, "category_added", category=category.name)
        return category
