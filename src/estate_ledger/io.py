# Estate Ledger - Reconciliation engine for property & project accounting
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
I/O module for Estate Ledger.

This module reads a snapshot of records from a directory of CSV files and
normalizes them into the immutable record dataclasses used by the engine.

Expected directory layout
-------------------------

One CSV file per record kind, named after the kind:

    categories.csv, contacts.csv, accounts.csv, buildings.csv,
    properties.csv, projects.csv, rental_agreements.csv,
    project_agreements.csv, bills.csv, invoices.csv, transactions.csv

A missing file is read as an empty collection, so a directory holding only
``transactions.csv`` and ``categories.csv`` is a valid snapshot.

Column conventions
------------------
- Column names are case-insensitive and may use spaces or camelCase
  (``Category Id``, ``categoryId`` and ``category_id`` are equivalent).
- Columns are matched to the dataclass fields of the record kind (see
  models.py). Unknown columns are ignored.
- ``date``, ``issue_date`` and ``start_date`` are ISO dates (YYYY-MM-DD).
- Amount columns accept thousands separators (``1,250.00``).
- Empty cells mean "not set" and fall back to the field default.

Row order is preserved: it is the store order used to break ties when
sorting ledgers.

Any malformed value (bad date, non-numeric amount, unknown enum value,
missing required column) raises a ValueError naming the file and row.
"""

import os
import re
from dataclasses import MISSING, fields
from pathlib import Path
from typing import Any, Union

import pandas as pd
import structlog

from .models import RECORD_KINDS, Snapshot, record_from_mapping

logger = structlog.get_logger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def normalize_column(name: str) -> str:
    """Return the snake_case form of a CSV header (``Category Id`` -> ``category_id``)."""
    text = _CAMEL_BOUNDARY.sub("_", str(name).strip())
    text = re.sub(r"[\s\-]+", "_", text)
    return text.lower()


def read_records(path: Union[str, "os.PathLike[str]"], kind: str) -> list[Any]:
    """
    Read one CSV file into a list of records of the given kind.

    Parameters
    ----------
    path:
        Path to the CSV file.
    kind:
        Record kind, one of ``models.RECORD_KINDS``.

    Returns
    -------
    list
        Records in file order.

    Raises
    ------
    ValueError
        If ``kind`` is unknown, a required column is missing, or a value
        cannot be converted.
    """
    if kind not in RECORD_KINDS:
        raise ValueError(
            f"Unknown record kind: {kind!r}. "
            f"Expected one of: {', '.join(RECORD_KINDS)}."
        )
    cls = RECORD_KINDS[kind]

    # Read everything as text: conversion is done per field by the models.
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    df.columns = [normalize_column(c) for c in df.columns]

    known = {f.name for f in fields(cls)}
    required = {
        f.name
        for f in fields(cls)
        if f.default is MISSING and f.default_factory is MISSING
    }
    missing = sorted(required - set(df.columns))
    if missing:
        raise ValueError(
            f"Invalid {kind} file {str(path)!r}: missing required column(s) "
            f"{', '.join(missing)}."
        )

    columns = [c for c in df.columns if c in known]
    records: list[Any] = []
    for position, row in enumerate(df[columns].to_dict(orient="records"), start=2):
        try:
            records.append(record_from_mapping(cls, row))
        except ValueError as exc:
            raise ValueError(f"{Path(path).name}, line {position}: {exc}") from exc

    return records


def read_snapshot(directory: Union[str, "os.PathLike[str]"]) -> Snapshot:
    """
    Read a whole snapshot from a directory of ``<kind>.csv`` files.

    Raises
    ------
    FileNotFoundError
        If ``directory`` does not exist.
    ValueError
        If any file is malformed (see ``read_records``).
    """
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Snapshot directory not found: {root}")

    collections: dict[str, list[Any]] = {}
    for kind in RECORD_KINDS:
        path = root / f"{kind}.csv"
        collections[kind] = read_records(path, kind) if path.exists() else []

    logger.info(
        "snapshot_read",
        directory=str(root),
        **{kind: len(items) for kind, items in collections.items()},
    )
    return Snapshot.build(**collections)
