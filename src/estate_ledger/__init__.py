# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Estate Ledger
-------------

A Python reconciliation engine for property management and project
accounting. From a snapshot of transactions, bills, invoices, agreements
and reference records, it derives who is owed what.

Main capabilities:
- category classification through a configurable rule table,
- scope resolution of transactions (owner, building, project, broker),
- per-entity balances for five buckets: owner rental income, owner security
  deposits, broker commissions, project funds and building funds,
- entity ledgers with stable sorting and running balance,
- dashboard KPIs (receivables, payables, arrears, liabilities held, ...),
- owner payouts and broker commission batches, appended atomically,
- bill / invoice settlement status and data-quality checks,
- CSV snapshot import and SQLite persistence.

Estate Ledger separates computation (engine), configuration (TOML), and
presentation (CLI), making it suitable for scripting and automation.


Version: 0.1.0

Usage:
    estate-ledger --help
"""

__all__ = ["engine", "balances", "ledger", "kpi", "payouts", "store", "views", "io"]

__version__ = "0.1.0"
