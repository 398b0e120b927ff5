# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Category classification for Estate Ledger.

Categories are user-editable records identified by their *name*. The engine
needs stable semantics on top of them ("this is rental income held for an
owner", "this is a payout to an owner", ...), so this module maps category
names to semantic roles through a declarative rule table.

A rule table is an ordered tuple of ClassificationRule. Each rule defines:
- a stable key (SystemCategory) used by the rest of the engine,
- one or more name patterns,
- a match mode: exact (case-insensitive on the trimmed name) or contains,
- an optional category type restriction (Income / Expense),
- the semantic role (CategoryRole) attached to matching categories,
- whether the category may be created on first use by the payout writer.

The first matching rule wins. Categories matching no rule (or records without
a category) get the role ``uncategorized``: they count in company revenue /
expense totals but never in a liability bucket.

The table is resolved once per aggregation pass into a CategoryIndex, which
holds every derived lookup (role by id, rule by id, ids by rule and the P&L
exclusion set) so that reductions never re-scan the category list per
record.

This module exposes:
- CategoryRole, SystemCategory, MatchKind, ClassificationRule
- DEFAULT_RULES, DEFAULT_REQUIRED
- CategoryIndex
- validate_system_categories()
- make_system_category()
"""

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .exceptions import MissingSystemCategory
from .models import Category, TransactionType


class CategoryRole(str, Enum):
    """Semantic role of a category."""

    REVENUE = "revenue"
    EXPENSE = "expense"
    LIABILITY_IN = "liability_in"
    LIABILITY_OUT = "liability_out"
    PASS_THROUGH = "pass_through"
    UNCATEGORIZED = "uncategorized"


# Roles excluded from company P&L aggregates.
EXCLUDED_ROLES = frozenset(
    {CategoryRole.LIABILITY_IN, CategoryRole.LIABILITY_OUT, CategoryRole.PASS_THROUGH}
)


class SystemCategory(str, Enum):
    """Stable keys of the classification rules."""

    RENTAL_INCOME = "rental_income"
    SECURITY_DEPOSIT = "security_deposit"
    SECURITY_DEPOSIT_REFUND = "security_deposit_refund"
    OWNER_PAYOUT = "owner_payout"
    OWNER_SECURITY_PAYOUT = "owner_security_payout"
    OWNER_EQUITY = "owner_equity"
    OWNER_WITHDRAWN = "owner_withdrawn"
    BROKER_FEE = "broker_fee"
    REBATE_AMOUNT = "rebate_amount"
    OWNER_SERVICE_CHARGE_PAYMENT = "owner_service_charge_payment"
    CAPITAL_IN = "capital_in"
    CAPITAL_OUT = "capital_out"
    TENANT_CHARGE = "tenant_charge"
    OWNER_CHARGE = "owner_charge"
    SERVICE_CHARGE_INCOME = "service_charge_income"


class MatchKind(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"


@dataclass(frozen=True)
class ClassificationRule:
    """One entry of the classification table.

    Attributes:
        key: Stable rule key (usually a SystemCategory value).
        patterns: Category names (exact) or fragments (contains). The first
            pattern is the canonical name used in error messages and when the
            category is auto-created.
        role: Semantic role of matching categories.
        match: Matching mode.
        category_type: If set, only categories of that type match.
        auto_create: The payout writer may create the category on first use.
    """

    key: str
    patterns: tuple[str, ...]
    role: CategoryRole
    match: MatchKind = MatchKind.EXACT
    category_type: Optional[TransactionType] = None
    auto_create: bool = False

    @property
    def display_name(self) -> str:
        return self.patterns[0]

    def matches(self, category: Category) -> bool:
        """Return True if ``category`` is covered by this rule."""
        if self.category_type is not None and category.type != self.category_type:
            return False

        name = category.name.strip().lower()
        if self.match == MatchKind.EXACT:
            return any(name == p.strip().lower() for p in self.patterns)
        return any(p.strip().lower() in name for p in self.patterns)


def _rule(
    key: SystemCategory,
    *patterns: str,
    role: CategoryRole,
    match: MatchKind = MatchKind.EXACT,
    category_type: Optional[TransactionType] = None,
    auto_create: bool = False,
) -> ClassificationRule:
    return ClassificationRule(
        key=key.value,
        patterns=tuple(patterns),
        role=role,
        match=match,
        category_type=category_type,
        auto_create=auto_create,
    )


# Precedence order matters: exact system names come before the "contains"
# rules, so that e.g. "Owner Service Charge Payment" is never classified as
# generic service-charge income.
DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    _rule(
        SystemCategory.RENTAL_INCOME,
        "Rental Income",
        role=CategoryRole.LIABILITY_IN,
        category_type=TransactionType.INCOME,
    ),
    _rule(
        SystemCategory.SECURITY_DEPOSIT,
        "Security Deposit",
        role=CategoryRole.LIABILITY_IN,
        category_type=TransactionType.INCOME,
    ),
    _rule(
        SystemCategory.SECURITY_DEPOSIT_REFUND,
        "Security Deposit Refund",
        role=CategoryRole.LIABILITY_OUT,
        category_type=TransactionType.EXPENSE,
    ),
    _rule(
        SystemCategory.OWNER_PAYOUT,
        "Owner Payout",
        role=CategoryRole.LIABILITY_OUT,
        category_type=TransactionType.EXPENSE,
    ),
    _rule(
        SystemCategory.OWNER_SECURITY_PAYOUT,
        "Owner Security Payout",
        role=CategoryRole.LIABILITY_OUT,
        category_type=TransactionType.EXPENSE,
        auto_create=True,
    ),
    _rule(SystemCategory.OWNER_EQUITY, "Owner Equity", role=CategoryRole.PASS_THROUGH),
    _rule(
        SystemCategory.OWNER_WITHDRAWN, "Owner Withdrawn", role=CategoryRole.PASS_THROUGH
    ),
    _rule(
        SystemCategory.BROKER_FEE,
        "Broker Fee",
        role=CategoryRole.EXPENSE,
        category_type=TransactionType.EXPENSE,
    ),
    _rule(
        SystemCategory.REBATE_AMOUNT,
        "Rebate Amount",
        role=CategoryRole.EXPENSE,
        category_type=TransactionType.EXPENSE,
    ),
    _rule(
        SystemCategory.OWNER_SERVICE_CHARGE_PAYMENT,
        "Owner Service Charge Payment",
        role=CategoryRole.REVENUE,
        category_type=TransactionType.INCOME,
    ),
    _rule(
        SystemCategory.CAPITAL_IN,
        "Share Capital",
        "Investment",
        "Capital Injection",
        role=CategoryRole.REVENUE,
    ),
    _rule(
        SystemCategory.CAPITAL_OUT,
        "Drawings",
        "Dividends",
        "Profit Share",
        role=CategoryRole.EXPENSE,
    ),
    _rule(
        SystemCategory.TENANT_CHARGE,
        "(Tenant)",
        role=CategoryRole.EXPENSE,
        match=MatchKind.CONTAINS,
    ),
    _rule(
        SystemCategory.OWNER_CHARGE,
        "(Owner)",
        role=CategoryRole.EXPENSE,
        match=MatchKind.CONTAINS,
    ),
    _rule(
        SystemCategory.SERVICE_CHARGE_INCOME,
        "service charge",
        role=CategoryRole.REVENUE,
        match=MatchKind.CONTAINS,
        category_type=TransactionType.INCOME,
    ),
)

DEFAULT_REQUIRED: tuple[str, ...] = (
    SystemCategory.RENTAL_INCOME.value,
    SystemCategory.SECURITY_DEPOSIT.value,
    SystemCategory.SECURITY_DEPOSIT_REFUND.value,
    SystemCategory.OWNER_PAYOUT.value,
    SystemCategory.BROKER_FEE.value,
)


def _key(value) -> str:
    return value.value if isinstance(value, Enum) else str(value)


class CategoryIndex:
    """Resolved classification of a category set under a rule table.

    Built once per aggregation pass. All lookups are O(1).
    """

    def __init__(
        self,
        categories: Iterable[Category],
        rules: Sequence[ClassificationRule] = DEFAULT_RULES,
    ):
        self.rules: tuple[ClassificationRule, ...] = tuple(rules)
        self._rules_by_key = {r.key: r for r in self.rules}
        self._categories: dict[str, Category] = {}
        self._rule_by_id: dict[str, str] = {}
        self._ids_by_rule: dict[str, list[str]] = {r.key: [] for r in self.rules}

        for category in categories:
            self._categories[category.id] = category
            for rule in self.rules:
                if rule.matches(category):
                    self._rule_by_id[category.id] = rule.key
                    self._ids_by_rule[rule.key].append(category.id)
                    break

        self.excluded_ids: frozenset[str] = frozenset(
            cid
            for cid, key in self._rule_by_id.items()
            if self._rules_by_key[key].role in EXCLUDED_ROLES
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def category(self, category_id: Optional[str]) -> Optional[Category]:
        if category_id is None:
            return None
        return self._categories.get(category_id)

    def rule_of(self, category_id: Optional[str]) -> Optional[str]:
        """Return the rule key of a category, or None if unclassified."""
        if category_id is None:
            return None
        return self._rule_by_id.get(category_id)

    def role_of(self, category_id: Optional[str]) -> CategoryRole:
        """Return the semantic role of a category (uncategorized by default)."""
        key = self.rule_of(category_id)
        if key is None:
            return CategoryRole.UNCATEGORIZED
        return self._rules_by_key[key].role

    def is_rule(self, category_id: Optional[str], *keys) -> bool:
        """Return True if the category is classified under one of ``keys``."""
        key = self.rule_of(category_id)
        return key is not None and key in {_key(k) for k in keys}

    def is_excluded(self, category_id: Optional[str]) -> bool:
        """Return True if the category is excluded from company P&L."""
        return category_id is not None and category_id in self.excluded_ids

    def is_income_type(self, category_id: Optional[str]) -> bool:
        category = self.category(category_id)
        return category is not None and category.type == TransactionType.INCOME

    def category_id_for(self, key) -> Optional[str]:
        """Return the id of the first category classified under ``key``."""
        ids = self._ids_by_rule.get(_key(key))
        return ids[0] if ids else None

    def rule(self, key) -> ClassificationRule:
        try:
            return self._rules_by_key[_key(key)]
        except KeyError as exc:
            raise ValueError(f"Unknown classification rule: {_key(key)!r}") from exc

    def missing(self, required: Iterable) -> list[ClassificationRule]:
        """Return the rules in ``required`` that no category satisfies."""
        return [
            self.rule(key) for key in required if self.category_id_for(key) is None
        ]


def validate_system_categories(
    categories: Iterable[Category],
    rules: Sequence[ClassificationRule] = DEFAULT_RULES,
    required: Iterable = DEFAULT_REQUIRED,
) -> CategoryIndex:
    """Resolve the rule table and fail fast on missing required categories.

    Args:
        categories: Category records of the snapshot.
        rules: Classification table.
        required: Rule keys that must be satisfied by at least one category.

    Returns:
        The resolved CategoryIndex.

    Raises:
        MissingSystemCategory: listing every missing category at once.
    """
    index = CategoryIndex(categories, rules)
    missing = index.missing(required)
    if missing:
        raise MissingSystemCategory(r.display_name for r in missing)
    return index


def make_system_category(rule: ClassificationRule) -> Category:
    """Build the Category record created on first use of ``rule``."""
    return Category(
        id=uuid.uuid4().hex,
        name=rule.display_name,
        type=rule.category_type or TransactionType.EXPENSE,
        is_permanent=True,
        description="System category created on first payout",
    )
