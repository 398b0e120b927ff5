# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Configuration helpers for Estate Ledger.

This module is responsible for:
- loading the main application configuration from a TOML file,
- building the classification policy (rule table + policy flags),
- exposing typed dataclasses used by the rest of the application.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

import tomllib  # Python 3.11+

from .categories import (
    DEFAULT_REQUIRED,
    DEFAULT_RULES,
    CategoryRole,
    ClassificationRule,
    MatchKind,
)
from .db import DatabaseConfig
from .models import EPSILON, TransactionType

DEFAULT_CONFIG_FILE = "estate_ledger_config.toml"


@dataclass(frozen=True)
class PolicyConfig:
    """
    Classification policy shared by every computation.

    Attributes:
        unclassified_property_expense_is_owner_deduction: Treat every
            property-linked expense that is not a payout, not security related
            and not charged to a tenant as a deduction from the owner's rental
            balance. When False, only Broker Fee and "(Owner)" categories are.
        auto_create_missing_categories: Allow the payout writer to create a
            missing system category whose rule is flagged ``auto_create``.
        strict_categories: Validate required categories when the engine is
            built instead of on first payout.
        epsilon: Tolerance used for every comparison against zero.
        rules: Ordered classification table.
        required: Rule keys that must be satisfied by an existing category.
    """

    unclassified_property_expense_is_owner_deduction: bool = True
    auto_create_missing_categories: bool = True
    strict_categories: bool = False
    epsilon: float = EPSILON
    rules: tuple[ClassificationRule, ...] = DEFAULT_RULES
    required: tuple[str, ...] = DEFAULT_REQUIRED


@dataclass(frozen=True)
class LoggingConfig:
    """Logging options (see logging_config.configure_logging)."""

    level: str = "INFO"
    format: str = "console"


@dataclass(frozen=True)
class AppConfig:
    """
    Application-wide configuration for Estate Ledger.

    This aggregates:
    - the classification policy,
    - the database configuration (where records are stored),
    - the optional CSV snapshot directory,
    - logging and display options.
    """

    policy: PolicyConfig
    database: DatabaseConfig
    snapshot_dir: Optional[Path]
    currency: str
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    amount_decimals: int = 2
    default_sort_key: str = "date"
    default_sort_dir: str = "desc"


def _load_toml(path: Path) -> dict[str, Any]:
    """
    Load a TOML file and return its content as a dictionary.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValueError: if the TOML content cannot be parsed or is not a table.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Failed to parse TOML config file: {path}") from exc

    if not isinstance(data, dict):
        raise ValueError(f"Invalid TOML root type in {path}, expected a table.")

    return data


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, Mapping):
        return {}
    return section


def _patterns(value: Any, key: str) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not value:
        raise ValueError(
            f"Invalid 'patterns' for rule {key!r}: expected a non-empty list of names."
        )
    return tuple(str(p) for p in value)


def _flag(section: Mapping[str, Any], name: str, default: bool, where: str) -> bool:
    """Read a TOML boolean. Quoted strings such as "false" are rejected."""
    value = section.get(name, default)
    if not isinstance(value, bool):
        raise ValueError(
            f"Invalid value for '{where}.{name}' in the configuration. "
            "Expected true or false."
        )
    return value


def _parse_rule_override(
    key: str, data: Mapping[str, Any], base: Optional[ClassificationRule]
) -> ClassificationRule:
    """
    Build a rule from a [policy.rules.<key>] table.

    Existing rules are updated field by field; unknown keys define a new rule,
    in which case 'patterns' and 'role' are mandatory.

    Raises:
        ValueError: on invalid role, match mode or category type.
    """
    try:
        role = CategoryRole(data["role"]) if "role" in data else None
        match = MatchKind(data["match"]) if "match" in data else None
        category_type = (
            TransactionType(data["category_type"]) if "category_type" in data else None
        )
    except ValueError as exc:
        raise ValueError(f"Invalid value in [policy.rules.{key}]: {exc}") from exc

    if base is None:
        if "patterns" not in data or role is None:
            raise ValueError(
                f"New rule [policy.rules.{key}] requires 'patterns' and 'role'."
            )
        return ClassificationRule(
            key=key,
            patterns=_patterns(data["patterns"], key),
            role=role,
            match=match or MatchKind.EXACT,
            category_type=category_type,
            auto_create=_flag(data, "auto_create", False, f"policy.rules.{key}"),
        )

    updated = base
    if "patterns" in data:
        updated = replace(updated, patterns=_patterns(data["patterns"], key))
    if role is not None:
        updated = replace(updated, role=role)
    if match is not None:
        updated = replace(updated, match=match)
    if category_type is not None:
        updated = replace(updated, category_type=category_type)
    if "auto_create" in data:
        auto_create = _flag(data, "auto_create", False, f"policy.rules.{key}")
        updated = replace(updated, auto_create=auto_create)
    return updated


def parse_policy(policy_section: Mapping[str, Any]) -> PolicyConfig:
    """
    Build a PolicyConfig from the raw [policy] table.

    Rule overrides keep the precedence of the default table; new rules are
    appended after it, in file order.

    Raises:
        ValueError: if epsilon is not a positive number or a rule is invalid.
            Flags must be TOML booleans, not quoted strings.
    """
    defaults = PolicyConfig()

    try:
        epsilon = float(policy_section.get("epsilon", defaults.epsilon))
    except (TypeError, ValueError) as exc:
        raise ValueError(
            "Invalid value for 'policy.epsilon' in the configuration. "
            "Expected a number."
        ) from exc
    if epsilon <= 0:
        raise ValueError("'policy.epsilon' must be strictly positive.")

    rules_section = policy_section.get("rules") or {}
    if not isinstance(rules_section, Mapping):
        rules_section = {}

    rules = list(defaults.rules)
    positions = {r.key: i for i, r in enumerate(rules)}
    for key, data in rules_section.items():
        if not isinstance(data, Mapping):
            continue
        key = str(key)
        if key in positions:
            rules[positions[key]] = _parse_rule_override(key, data, rules[positions[key]])
        else:
            positions[key] = len(rules)
            rules.append(_parse_rule_override(key, data, None))

    required_raw = policy_section.get("required")
    if required_raw is None:
        required = defaults.required
    else:
        required = tuple(str(k) for k in required_raw)
        unknown = [k for k in required if k not in positions]
        if unknown:
            raise ValueError(
                "Unknown rule key(s) in 'policy.required': " + ", ".join(unknown)
            )

    return PolicyConfig(
        unclassified_property_expense_is_owner_deduction=_flag(
            policy_section,
            "unclassified_property_expense_is_owner_deduction",
            defaults.unclassified_property_expense_is_owner_deduction,
            "policy",
        ),
        auto_create_missing_categories=_flag(
            policy_section,
            "auto_create_missing_categories",
            defaults.auto_create_missing_categories,
            "policy",
        ),
        strict_categories=_flag(
            policy_section, "strict_categories", defaults.strict_categories, "policy"
        ),
        epsilon=epsilon,
        rules=tuple(rules),
        required=required,
    )


def load_app_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load the Estate Ledger application configuration from a TOML file.

    Expected top-level sections in the TOML file
    --------------------------------------------
    [policy]
        Classification policy flags (owner deduction fallback, category
        auto-creation, epsilon) and the list of required rule keys.

    [policy.rules.<key>]
        Optional override of a classification rule (patterns, role, match,
        category_type, auto_create), or definition of a new one.

    [data]
        Optional directory holding one CSV file per record kind.

    [database]
        Database engine and SQLite file path.

    [logging]
        Log level and renderer ("console" or "json").

    [display]
        Currency, number of decimals and default ledger ordering.

    Notes
    -----
    All file paths in the TOML are resolved relative to the directory of the
    TOML file itself.

    Parameters
    ----------
    config_path : str, optional
        Path to the TOML configuration file. Defaults to
        ``estate_ledger_config.toml`` in the current directory.

    Returns
    -------
    AppConfig
        Parsed and validated application configuration.
    """
    if config_path is None:
        config_file = Path(DEFAULT_CONFIG_FILE).resolve()
    else:
        config_file = Path(config_path).resolve()

    raw = _load_toml(config_file)
    base_dir = config_file.parent

    # 1) Policy
    policy = parse_policy(_section(raw, "policy"))

    # 2) Data section
    data_section = _section(raw, "data")
    snapshot_dir_raw = data_section.get("snapshot_dir") or None
    snapshot_dir = None
    if snapshot_dir_raw:
        snapshot_dir = (base_dir / str(snapshot_dir_raw)).resolve()

    # 3) Database section
    database_section = _section(raw, "database")
    db_engine = str(database_section.get("engine") or "sqlite")
    db_path_raw = database_section.get("path") or "data/db/estate_ledger.sqlite"
    db_path = (base_dir / str(db_path_raw)).resolve()
    database_config = DatabaseConfig(engine=db_engine, path=db_path)

    # 4) Logging
    logging_section = _section(raw, "logging")
    log_format = str(logging_section.get("format", "console")).lower()
    if log_format not in ("console", "json"):
        raise ValueError(
            f"Invalid logging format: {log_format!r}. Expected 'console' or 'json'."
        )
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
    )

    # 5) Display options
    display_section = _section(raw, "display")
    currency = str(display_section.get("currency") or "USD")
    try:
        amount_decimals = int(display_section.get("amount_decimals", 2))
    except (TypeError, ValueError):
        amount_decimals = 2

    return AppConfig(
        policy=policy,
        database=database_config,
        snapshot_dir=snapshot_dir,
        currency=currency,
        logging=logging_config,
        amount_decimals=amount_decimals,
        default_sort_key=str(display_section.get("sort_key", "date")),
        default_sort_dir=str(display_section.get("sort_dir", "desc")),
    )
