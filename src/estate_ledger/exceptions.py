# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Error taxonomy for Estate Ledger.

Read paths (classification, scope resolution, aggregation) degrade gracefully
and almost never raise. Write paths (store mutations, payouts) raise one of
the exceptions below and leave the record store untouched.

All exceptions derive from EstateLedgerError so that outer layers (CLI,
services) can catch the whole family at once, while still inheriting from the
closest builtin (ValueError, LookupError, ...) for callers that only know
about the standard hierarchy.
"""

from typing import Iterable, Optional


class EstateLedgerError(Exception):
    """Base class for every error raised by the engine."""


class MissingSystemCategory(EstateLedgerError, LookupError):
    """One or more required system categories are absent from the category set.

    Attributes:
        names: Human-readable category names that could not be found
            (e.g. ["Owner Payout"]).
    """

    def __init__(self, names: Iterable[str]):
        self.names = list(names)
        joined = ", ".join(repr(n) for n in self.names)
        super().__init__(f"Required system category not found: {joined}")


class InvalidAmount(EstateLedgerError, ValueError):
    """Amount is non-positive, unparsable or exceeds what may be paid."""


class InvalidAccount(EstateLedgerError, ValueError):
    """The settlement account does not exist or cannot be paid from."""


class UnresolvedScope(EstateLedgerError, LookupError):
    """A record references an entity that does not exist.

    Only raised when scope resolution is run in strict mode; aggregations
    treat such records as unscoped instead.
    """

    def __init__(self, record_id: str, field: str, target_id: str):
        self.record_id = record_id
        self.field = field
        self.target_id = target_id
        super().__init__(
            f"Record {record_id!r} references unknown {field} {target_id!r}"
        )


class RecordNotFoundError(EstateLedgerError, KeyError):
    """A record targeted by an update or delete does not exist."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the message readable.
        return str(self.args[0]) if self.args else ""


class RecordReferencedError(EstateLedgerError, RuntimeError):
    """A delete was refused because other records still reference the target."""

    def __init__(self, record_id: str, referenced_by: Iterable[str]):
        self.record_id = record_id
        self.referenced_by = list(referenced_by)
        super().__init__(
            f"Record {record_id!r} is referenced by "
            f"{len(self.referenced_by)} transaction(s): "
            + ", ".join(self.referenced_by)
        )


class InconsistentBillState(EstateLedgerError):
    """Data-integrity finding: stored status disagrees with paid_amount.

    Instances are reported by ``store.audit_documents`` rather than raised;
    the offending document is never corrected automatically.
    """

    def __init__(
        self,
        document_id: str,
        stored_status: str,
        expected_status: str,
        kind: Optional[str] = None,
    ):
        self.document_id = document_id
        self.stored_status = stored_status
        self.expected_status = expected_status
        self.kind = kind or "document"
        super().__init__(
            f"{self.kind.capitalize()} {document_id!r} has status "
            f"{stored_status!r} but its paid amount implies {expected_status!r}"
        )
