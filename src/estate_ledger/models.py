# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Data model for Estate Ledger.

This module defines the immutable records the engine computes over:

- financial records: Transaction, Bill, Invoice,
- reference records: Category, Contact, Account, Building, Property, Project,
- agreements carrying earned broker commission: RentalAgreement,
  ProjectAgreement,
- the Snapshot container grouping all of the above.

All records are frozen dataclasses. They are never mutated in place: the
record store (store.py) replaces them with updated copies and swaps in a new
Snapshot, so that any Snapshot handed to a reader stays valid for the whole
computation.

Amounts
-------
Amounts are plain floats expressed in currency units. A transaction amount is
a positive magnitude whose direction is implied by its type (Income, Expense,
Transfer, Loan). The only signed amounts accepted are Rental Income
transactions recording service-charge deductions, exactly as they are
produced by the rental invoicing flow.

Comparisons against zero always go through EPSILON (0.01 currency unit) to
absorb floating rounding.

Bill / Invoice settlement
-------------------------
The status of a bill or invoice is a function of its amount and paid amount:

    paid_amount >= amount - EPSILON   -> Paid
    paid_amount >  EPSILON            -> Partially Paid
    otherwise                         -> Unpaid

``settle_document`` is the single helper that changes ``paid_amount``; it
recomputes the status in the same operation so that both fields can never
desynchronize.
"""

from __future__ import annotations

import datetime as dt
import math
from collections.abc import Iterable, Mapping
from dataclasses import MISSING, dataclass, fields, replace
from enum import Enum
from typing import Any, TypeVar, Union

from .exceptions import InvalidAmount

EPSILON = 0.01
INTERNAL_CLEARING_ACCOUNT = "Internal Clearing"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class TransactionType(str, Enum):
    INCOME = "Income"
    EXPENSE = "Expense"
    TRANSFER = "Transfer"
    LOAN = "Loan"


class LoanSubtype(str, Enum):
    GIVE = "Give Loan"
    RECEIVE = "Receive Loan"
    REPAY = "Repay Loan"
    COLLECT = "Collect Loan"


class AccountType(str, Enum):
    BANK = "Bank"
    CASH = "Cash"
    ASSET = "Asset"
    LIABILITY = "Liability"
    EQUITY = "Equity"


class ContactType(str, Enum):
    OWNER = "Owner"
    TENANT = "Tenant"
    STAFF = "Staff"
    BROKER = "Broker"
    DEALER = "Dealer"
    FRIEND_FAMILY = "Friend & Family"
    CLIENT = "Client"
    LEAD = "Lead"
    VENDOR = "Vendor"


class DocumentStatus(str, Enum):
    """Settlement status shared by bills and invoices."""

    UNPAID = "Unpaid"
    PARTIALLY_PAID = "Partially Paid"
    PAID = "Paid"


class InvoiceType(str, Enum):
    RENTAL = "Rental"
    SECURITY_DEPOSIT = "Security Deposit"
    SERVICE_CHARGE = "Service Charge"
    INSTALLMENT = "Installment"


class RentalAgreementStatus(str, Enum):
    ACTIVE = "Active"
    TERMINATED = "Terminated"
    EXPIRED = "Expired"
    RENEWED = "Renewed"


class ProjectAgreementStatus(str, Enum):
    ACTIVE = "Active"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"


# ---------------------------------------------------------------------------
# Amount helpers
# ---------------------------------------------------------------------------


def parse_amount(value: Any, allow_negative: bool = False) -> float:
    """Convert a raw amount (number or numeric string) into a float.

    Args:
        value: Raw value, e.g. 1200, "1200.50", " 75 ".
        allow_negative: Accept negative values (used when loading signed
            rental income deductions). Zero is always accepted here; callers
            that need a strictly positive amount check it themselves.

    Raises:
        InvalidAmount: if the value cannot be parsed, is not finite, or is
            negative while ``allow_negative`` is False.
    """
    if isinstance(value, bool):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    try:
        amount = float(str(value).strip().replace(",", "")) if isinstance(
            value, str
        ) else float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidAmount(f"Invalid amount: {value!r}") from exc

    if not math.isfinite(amount):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if amount < 0 and not allow_negative:
        raise InvalidAmount(f"Amount cannot be negative: {value!r}")
    return amount


def is_zero(amount: float, epsilon: float = EPSILON) -> bool:
    """Return True if ``amount`` is within ``epsilon`` of zero."""
    return abs(amount) <= epsilon


# ---------------------------------------------------------------------------
# Reference records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    type: TransactionType
    is_permanent: bool = False
    description: str = ""


@dataclass(frozen=True)
class Contact:
    id: str
    name: str
    type: ContactType


@dataclass(frozen=True)
class Account:
    """Bank, cash or internal account. ``balance`` is maintained by the store."""

    id: str
    name: str
    type: AccountType
    balance: float = 0.0

    @property
    def is_settlement_account(self) -> bool:
        """Accounts a payout may be paid from (bank or cash, not clearing)."""
        return (
            self.type in (AccountType.BANK, AccountType.CASH)
            and self.name != INTERNAL_CLEARING_ACCOUNT
        )


@dataclass(frozen=True)
class Building:
    id: str
    name: str


@dataclass(frozen=True)
class Property:
    id: str
    name: str
    owner_id: str | None = None
    building_id: str | None = None


@dataclass(frozen=True)
class Project:
    id: str
    name: str


@dataclass(frozen=True)
class RentalAgreement:
    """Tenancy of a property. ``broker_fee`` is commission earned by the broker."""

    id: str
    agreement_number: str
    tenant_id: str
    property_id: str
    start_date: dt.date
    status: RentalAgreementStatus = RentalAgreementStatus.ACTIVE
    broker_id: str | None = None
    broker_fee: float = 0.0
    security_deposit: float = 0.0
    owner_id: str | None = None


@dataclass(frozen=True)
class ProjectAgreement:
    """Unit sale within a project. ``rebate_amount`` is earned by the broker."""

    id: str
    agreement_number: str
    client_id: str
    project_id: str
    issue_date: dt.date
    status: ProjectAgreementStatus = ProjectAgreementStatus.ACTIVE
    rebate_broker_id: str | None = None
    rebate_amount: float = 0.0


# ---------------------------------------------------------------------------
# Financial records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Transaction:
    """A single money movement.

    ``amount`` is a positive magnitude; the direction is given by ``type``
    (and ``subtype`` for loans, ``from_account_id``/``to_account_id`` for
    transfers). Every reference field is optional: general ledger entries
    and unscoped transfers legitimately carry none of them.
    """

    id: str
    type: TransactionType
    amount: float
    date: dt.date
    description: str = ""
    subtype: LoanSubtype | None = None
    account_id: str | None = None
    from_account_id: str | None = None
    to_account_id: str | None = None
    contact_id: str | None = None
    category_id: str | None = None
    property_id: str | None = None
    building_id: str | None = None
    project_id: str | None = None
    bill_id: str | None = None
    invoice_id: str | None = None
    agreement_id: str | None = None


def settlement_status(
    amount: float, paid_amount: float, epsilon: float = EPSILON
) -> DocumentStatus:
    """Derive the settlement status of a bill or invoice."""
    if paid_amount >= amount - epsilon:
        return DocumentStatus.PAID
    if paid_amount > epsilon:
        return DocumentStatus.PARTIALLY_PAID
    return DocumentStatus.UNPAID


@dataclass(frozen=True)
class Bill:
    """Payable document. ``amount - paid_amount`` is still owed."""

    id: str
    amount: float
    contact_id: str | None = None
    paid_amount: float = 0.0
    status: DocumentStatus = DocumentStatus.UNPAID
    description: str = ""
    issue_date: dt.date | None = None
    category_id: str | None = None
    property_id: str | None = None
    building_id: str | None = None
    project_id: str | None = None

    @property
    def outstanding(self) -> float:
        return self.amount - self.paid_amount

    @property
    def expected_status(self) -> DocumentStatus:
        return settlement_status(self.amount, self.paid_amount)


@dataclass(frozen=True)
class Invoice(Bill):
    """Receivable document, optionally tied to a rental or project agreement."""

    invoice_type: InvoiceType = InvoiceType.RENTAL
    agreement_id: str | None = None


Document = Union[Bill, Invoice]
D = TypeVar("D", Bill, Invoice)


def settle_document(document: D, paid_amount: float, epsilon: float = EPSILON) -> D:
    """Return a copy of ``document`` with a new paid amount and matching status.

    This is the only supported way to change ``paid_amount``. Negative paid
    amounts (e.g. after reversing more than was applied) are clamped to zero.
    """
    paid = max(0.0, paid_amount)
    return replace(
        document,
        paid_amount=paid,
        status=settlement_status(document.amount, paid, epsilon),
    )


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Snapshot:
    """Immutable view of every record at a given store version.

    Collections are tuples and keep insertion order, which is the order used
    to break ties in ledgers.
    """

    transactions: tuple[Transaction, ...] = ()
    bills: tuple[Bill, ...] = ()
    invoices: tuple[Invoice, ...] = ()
    categories: tuple[Category, ...] = ()
    contacts: tuple[Contact, ...] = ()
    accounts: tuple[Account, ...] = ()
    buildings: tuple[Building, ...] = ()
    properties: tuple[Property, ...] = ()
    projects: tuple[Project, ...] = ()
    rental_agreements: tuple[RentalAgreement, ...] = ()
    project_agreements: tuple[ProjectAgreement, ...] = ()
    version: int = 0

    @classmethod
    def build(cls, version: int = 0, **collections: Iterable[Any]) -> Snapshot:
        """Build a Snapshot from any iterables (lists, generators, tuples).

        Unknown collection names raise TypeError, like the dataclass itself.
        """
        return cls(
            version=version,
            **{name: tuple(items) for name, items in collections.items()},
        )


# Record kinds in dependency order (referenced kinds first). The keys match
# both the Snapshot attribute names and the CSV / table names used by io.py
# and db.py.
RECORD_KINDS: dict[str, type] = {
    "categories": Category,
    "contacts": Contact,
    "accounts": Account,
    "buildings": Building,
    "properties": Property,
    "projects": Project,
    "rental_agreements": RentalAgreement,
    "project_agreements": ProjectAgreement,
    "bills": Bill,
    "invoices": Invoice,
    "transactions": Transaction,
}


# ---------------------------------------------------------------------------
# Conversion from / to flat mappings (CSV rows, SQLite rows)
# ---------------------------------------------------------------------------

DATE_FIELDS = frozenset({"date", "issue_date", "start_date"})
AMOUNT_FIELDS = frozenset(
    {
        "amount",
        "paid_amount",
        "balance",
        "broker_fee",
        "rebate_amount",
        "security_deposit",
    }
)
_BOOL_FIELDS = frozenset({"is_permanent"})

_ENUM_FIELDS: dict[type, dict[str, type[Enum]]] = {
    Category: {"type": TransactionType},
    Contact: {"type": ContactType},
    Account: {"type": AccountType},
    RentalAgreement: {"status": RentalAgreementStatus},
    ProjectAgreement: {"status": ProjectAgreementStatus},
    Transaction: {"type": TransactionType, "subtype": LoanSubtype},
    Bill: {"status": DocumentStatus},
    Invoice: {"status": DocumentStatus, "invoice_type": InvoiceType},
}


def _is_missing(raw: Any) -> bool:
    if raw is None:
        return True
    if isinstance(raw, float) and math.isnan(raw):
        return True
    return isinstance(raw, str) and raw.strip() == ""


def _parse_enum(enum_cls: type[Enum], raw: Any) -> Enum:
    """Look an enum member up by value, falling back to a case-insensitive match."""
    if isinstance(raw, enum_cls):
        return raw
    text = str(raw).strip()
    try:
        return enum_cls(text)
    except ValueError:
        for member in enum_cls:
            if member.value.lower() == text.lower() or member.name == text.upper():
                return member
        raise ValueError(f"Invalid {enum_cls.__name__} value: {raw!r}") from None


def _parse_date(raw: Any) -> dt.date:
    if isinstance(raw, dt.datetime):
        return raw.date()
    if isinstance(raw, dt.date):
        return raw
    try:
        return dt.date.fromisoformat(str(raw).strip()[:10])
    except ValueError as exc:
        raise ValueError(f"Invalid date value: {raw!r}, expected YYYY-MM-DD") from exc


def record_from_mapping(cls: type, data: Mapping[str, Any]) -> Any:
    """Build a record of type ``cls`` from a flat mapping of raw values.

    Missing optional fields fall back to their dataclass default. Dates are
    parsed from ISO strings, amounts via ``parse_amount`` (signed amounts
    accepted), enums by value.

    Raises:
        ValueError: if a required field is missing or a value cannot be
            converted (InvalidAmount is a ValueError).
    """
    enum_fields = _ENUM_FIELDS.get(cls, {})
    values: dict[str, Any] = {}

    for f in fields(cls):
        raw = data.get(f.name)
        if _is_missing(raw):
            if f.default is MISSING and f.default_factory is MISSING:
                raise ValueError(
                    f"Missing required field {f.name!r} for {cls.__name__}."
                )
            continue

        if f.name in enum_fields:
            values[f.name] = _parse_enum(enum_fields[f.name], raw)
        elif f.name in DATE_FIELDS:
            values[f.name] = _parse_date(raw)
        elif f.name in AMOUNT_FIELDS:
            values[f.name] = parse_amount(raw, allow_negative=True)
        elif f.name in _BOOL_FIELDS:
            values[f.name] = str(raw).strip().lower() in ("1", "true", "yes")
        else:
            values[f.name] = str(raw).strip()

    return cls(**values)


def record_to_mapping(record: Any) -> dict[str, Any]:
    """Flatten a record into plain Python values (enum values, ISO dates)."""
    out: dict[str, Any] = {}
    for f in fields(record):
        value = getattr(record, f.name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, dt.date):
            value = value.isoformat()
        out[f.name] = value
    return out
