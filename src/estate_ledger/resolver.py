# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Entity resolution for Estate Ledger.

Financial records only carry the references their author filled in. A rental
payment may point at a property but not at its owner; a supplier payment may
point at a bill whose project is known while the transaction itself is
unscoped. This module derives the full scope of a record by following
reference chains, field by field, in a fixed order:

    direct field -> linked Bill / Invoice -> linked Property -> linked Agreement

Resolution is total: any field that cannot be resolved is None. General
ledger entries and unscoped transfers legitimately resolve to an empty scope.
A dangling reference (an id pointing at a record that does not exist) is
treated as absent, unless ``strict=True`` in which case UnresolvedScope is
raised. ``dangling_references`` lists such references for data checks.

This module exposes:
- RecordIndex: id -> record dictionaries, built once per pass
- Scope:       resolved scope of one record
- resolve_scope()
- dangling_references()
"""

from dataclasses import dataclass, field
from typing import Optional, Union

import structlog

from .exceptions import UnresolvedScope
from .models import (
    Account,
    Bill,
    Building,
    Category,
    Contact,
    ContactType,
    Invoice,
    Project,
    ProjectAgreement,
    Property,
    RentalAgreement,
    Snapshot,
    Transaction,
)

logger = structlog.get_logger(__name__)

Record = Union[Transaction, Bill, Invoice]


@dataclass(frozen=True)
class RecordIndex:
    """Dictionaries of every reference record of a snapshot, keyed by id."""

    contacts: dict[str, Contact] = field(default_factory=dict)
    categories: dict[str, Category] = field(default_factory=dict)
    accounts: dict[str, Account] = field(default_factory=dict)
    properties: dict[str, Property] = field(default_factory=dict)
    buildings: dict[str, Building] = field(default_factory=dict)
    projects: dict[str, Project] = field(default_factory=dict)
    bills: dict[str, Bill] = field(default_factory=dict)
    invoices: dict[str, Invoice] = field(default_factory=dict)
    rental_agreements: dict[str, RentalAgreement] = field(default_factory=dict)
    project_agreements: dict[str, ProjectAgreement] = field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "RecordIndex":
        return cls(
            contacts={c.id: c for c in snapshot.contacts},
            categories={c.id: c for c in snapshot.categories},
            accounts={a.id: a for a in snapshot.accounts},
            properties={p.id: p for p in snapshot.properties},
            buildings={b.id: b for b in snapshot.buildings},
            projects={p.id: p for p in snapshot.projects},
            bills={b.id: b for b in snapshot.bills},
            invoices={i.id: i for i in snapshot.invoices},
            rental_agreements={a.id: a for a in snapshot.rental_agreements},
            project_agreements={a.id: a for a in snapshot.project_agreements},
        )

    def contact_type(self, contact_id: Optional[str]) -> Optional[ContactType]:
        contact = self.contacts.get(contact_id) if contact_id else None
        return contact.type if contact else None

    def property_owner(self, property_id: Optional[str]) -> Optional[str]:
        prop = self.properties.get(property_id) if property_id else None
        return prop.owner_id if prop else None

    def property_building(self, property_id: Optional[str]) -> Optional[str]:
        prop = self.properties.get(property_id) if property_id else None
        return prop.building_id if prop else None


@dataclass(frozen=True)
class Scope:
    """Resolved scope of a financial record. Unresolved fields are None."""

    contact_id: Optional[str] = None
    contact_type: Optional[ContactType] = None
    property_id: Optional[str] = None
    property_owner_id: Optional[str] = None
    building_id: Optional[str] = None
    project_id: Optional[str] = None
    agreement_id: Optional[str] = None
    broker_id: Optional[str] = None
    tenant_id: Optional[str] = None

    @property
    def owner_id(self) -> Optional[str]:
        """The owner concerned: the contact if it is an owner, else the property's."""
        if self.contact_type == ContactType.OWNER:
            return self.contact_id
        return self.property_owner_id

    @property
    def is_tenant_contact(self) -> bool:
        return self.contact_type == ContactType.TENANT


# (field on the record, index attribute) pairs checked for dangling references.
_REFERENCE_FIELDS: tuple[tuple[str, str], ...] = (
    ("contact_id", "contacts"),
    ("category_id", "categories"),
    ("account_id", "accounts"),
    ("from_account_id", "accounts"),
    ("to_account_id", "accounts"),
    ("property_id", "properties"),
    ("building_id", "buildings"),
    ("project_id", "projects"),
    ("bill_id", "bills"),
    ("invoice_id", "invoices"),
)


def _lookup(record: Record, index: RecordIndex, attr: str, table: str, strict: bool):
    """Return the record referenced by ``record.<attr>`` or None."""
    target_id = getattr(record, attr, None)
    if not target_id:
        return None
    found = getattr(index, table).get(target_id)
    if found is None and strict:
        raise UnresolvedScope(record.id, attr, target_id)
    return found


def _first(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value:
            return value
    return None


def resolve_scope(record: Record, index: RecordIndex, strict: bool = False) -> Scope:
    """Resolve the full scope of a transaction, bill or invoice.

    Args:
        record: The financial record.
        index: RecordIndex of the snapshot the record belongs to.
        strict: Raise UnresolvedScope on dangling references instead of
            treating them as absent.

    Returns:
        A Scope whose unresolved fields are None.
    """
    # 1) Linked documents (transactions only).
    bill = _lookup(record, index, "bill_id", "bills", strict)
    invoice = _lookup(record, index, "invoice_id", "invoices", strict)
    doc = bill or invoice

    # 2) Agreement: direct, then through the invoice.
    agreement_id = _first(
        getattr(record, "agreement_id", None),
        getattr(invoice, "agreement_id", None),
    )
    if isinstance(record, Invoice):
        agreement_id = _first(record.agreement_id, agreement_id)
    rental = index.rental_agreements.get(agreement_id) if agreement_id else None
    project_agreement = (
        index.project_agreements.get(agreement_id) if agreement_id else None
    )
    if strict and agreement_id and rental is None and project_agreement is None:
        raise UnresolvedScope(record.id, "agreement_id", agreement_id)

    # 3) Contact.
    contact_id = _first(record.contact_id, getattr(doc, "contact_id", None))
    if contact_id and contact_id not in index.contacts:
        if strict:
            raise UnresolvedScope(record.id, "contact_id", contact_id)
    contact_type = index.contact_type(contact_id)

    # 4) Property: direct -> document -> rental agreement.
    property_id = _first(
        record.property_id,
        getattr(doc, "property_id", None),
        getattr(rental, "property_id", None),
    )
    prop = index.properties.get(property_id) if property_id else None
    if property_id and prop is None:
        if strict:
            raise UnresolvedScope(record.id, "property_id", property_id)
        logger.debug(
            "dangling_property_reference", record_id=record.id, property_id=property_id
        )

    # 5) Building: direct -> document -> property.
    building_id = _first(
        record.building_id,
        getattr(doc, "building_id", None),
        getattr(prop, "building_id", None),
    )
    if strict and building_id and building_id not in index.buildings:
        raise UnresolvedScope(record.id, "building_id", building_id)

    # 6) Project: direct -> bill -> invoice -> project agreement.
    project_id = _first(
        record.project_id,
        getattr(bill, "project_id", None),
        getattr(invoice, "project_id", None),
        getattr(project_agreement, "project_id", None),
    )
    if strict and project_id and project_id not in index.projects:
        raise UnresolvedScope(record.id, "project_id", project_id)

    # 7) Parties.
    property_owner_id = _first(
        getattr(prop, "owner_id", None), getattr(rental, "owner_id", None)
    )
    broker_id = _first(
        getattr(rental, "broker_id", None),
        getattr(project_agreement, "rebate_broker_id", None),
    )
    if broker_id is None and contact_type in (ContactType.BROKER, ContactType.DEALER):
        broker_id = contact_id
    tenant_id = getattr(rental, "tenant_id", None)
    if tenant_id is None and contact_type == ContactType.TENANT:
        tenant_id = contact_id

    return Scope(
        contact_id=contact_id,
        contact_type=contact_type,
        property_id=property_id,
        property_owner_id=property_owner_id,
        building_id=building_id,
        project_id=project_id,
        agreement_id=agreement_id,
        broker_id=broker_id,
        tenant_id=tenant_id,
    )


def dangling_references(
    snapshot: Snapshot, index: Optional[RecordIndex] = None
) -> list[UnresolvedScope]:
    """List every reference of a financial record to a missing record.

    Returns one UnresolvedScope per dangling reference (not raised), in
    record order: transactions, then bills, then invoices.
    """
    index = index or RecordIndex.from_snapshot(snapshot)
    findings: list[UnresolvedScope] = []

    records: list[Record] = [*snapshot.transactions, *snapshot.bills, *snapshot.invoices]
    for record in records:
        for attr, table in _REFERENCE_FIELDS:
            target_id = getattr(record, attr, None)
            if target_id and target_id not in getattr(index, table):
                findings.append(UnresolvedScope(record.id, attr, target_id))

        agreement_id = getattr(record, "agreement_id", None)
        if (
            agreement_id
            and agreement_id not in index.rental_agreements
            and agreement_id not in index.project_agreements
        ):
            findings.append(UnresolvedScope(record.id, "agreement_id", agreement_id))

    for finding in findings:
        logger.warning(
            "dangling_reference",
            record_id=finding.record_id,
            field=finding.field,
            target_id=finding.target_id,
        )
    return findings
