"""Spreadsheet readers feeding the staging tables."""

from __future__ import annotations

from .spreadsheet import READERS, ParsedSheet, SheetRow, read_csv, read_spreadsheet, read_xlsx

__all__ = [
    "READERS",
    "ParsedSheet",
    "SheetRow",
    "read_csv",
    "read_spreadsheet",
    "read_xlsx",
]
