"""Spreadsheet readers for roster uploads.

Both readers produce the same ``ParsedSheet``: a header tuple plus one dict per
data line, with every value rendered as text. Nothing is trimmed or dropped
here; blank rows, stray whitespace and placeholders are the cleaning step's
business.
"""

from __future__ import annotations

import csv
import io
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable, Sequence

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from roster_app.importer.errors import SpreadsheetReadError

CSV_ENCODINGS: tuple[str, ...] = ("utf-8-sig", "cp1252", "latin-1")
CSV_DELIMITERS = ",;\t|"


@dataclass(frozen=True)
class SheetRow:
    source_line: int
    values: dict[str, str]


@dataclass
class ParsedSheet:
    headers: tuple[str, ...]
    rows: list[SheetRow] = field(default_factory=list)
    encoding: str | None = None
    delimiter: str | None = None
    sheet_name: str | None = None


def _sanitize_headers(raw_headers: Sequence[Any]) -> tuple[str, ...]:
    """Strip BOMs, name blank headers and suffix duplicates so every key is unique."""

    headers: list[str] = []
    seen: dict[str, int] = {}
    for position, raw in enumerate(raw_headers, start=1):
        header = _render(raw).strip().lstrip("\ufeff").strip()
        if not header:
            header = f"Kolonne {position}"
        count = seen.get(header.lower(), 0)
        seen[header.lower()] = count + 1
        if count:
            header = f"{header} ({count + 1})"
        headers.append(header)
    return tuple(headers)


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.hour or value.minute or value.second:
            return value.isoformat(sep=" ")
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _trim_trailing_blank(rows: list[list[Any]]) -> list[list[Any]]:
    while rows and all(_render(cell).strip() == "" for cell in rows[-1]):
        rows.pop()
    return rows


def _build_sheet(raw_headers: Sequence[Any], body: Iterable[Sequence[Any]], *, max_rows: int | None) -> ParsedSheet:
    headers = _sanitize_headers(raw_headers)
    if not headers:
        raise SpreadsheetReadError("The file has no header row.")

    body_rows = _trim_trailing_blank([list(row) for row in body])
    if max_rows is not None and len(body_rows) > max_rows:
        raise SpreadsheetReadError(
            f"The file has {len(body_rows)} data rows; the limit is {max_rows}.",
            row_count=len(body_rows),
            max_rows=max_rows,
        )

    sheet = ParsedSheet(headers=headers)
    for offset, row in enumerate(body_rows):
        padded = list(row) + [None] * (len(headers) - len(row))
        sheet.rows.append(
            SheetRow(
                source_line=offset + 2,
                values={header: _render(padded[index]) for index, header in enumerate(headers)},
            )
        )
    return sheet


def _decode(payload: bytes) -> tuple[str, str]:
    for encoding in CSV_ENCODINGS:
        try:
            return payload.decode(encoding), encoding
        except UnicodeDecodeError:
            continue
    raise SpreadsheetReadError("Could not decode the file as text.")  # pragma: no cover - latin-1 never fails


def _sniff_delimiter(text: str) -> str:
    sample = "\n".join(text.splitlines()[:20])
    try:
        return csv.Sniffer().sniff(sample, delimiters=CSV_DELIMITERS).delimiter
    except csv.Error:
        first_line = sample.splitlines()[0] if sample else ""
        return max(CSV_DELIMITERS, key=first_line.count) if first_line else ","


def read_csv(payload: bytes, *, max_rows: int | None = None) -> ParsedSheet:
    """Parse CSV bytes, detecting encoding and delimiter."""

    if not payload or not payload.strip():
        raise SpreadsheetReadError("The uploaded file is empty.")
    text, encoding = _decode(payload)
    delimiter = _sniff_delimiter(text)
    try:
        rows = list(csv.reader(io.StringIO(text, newline=""), delimiter=delimiter))
    except csv.Error as exc:
        raise SpreadsheetReadError(f"Malformed CSV: {exc}") from exc
    if not rows:
        raise SpreadsheetReadError("The uploaded file is empty.")
    sheet = _build_sheet(rows[0], rows[1:], max_rows=max_rows)
    sheet.encoding = encoding
    sheet.delimiter = delimiter
    return sheet


def read_xlsx(payload: bytes, *, max_rows: int | None = None) -> ParsedSheet:
    """Parse the first worksheet of an Excel workbook."""

    try:
        workbook = load_workbook(io.BytesIO(payload), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise SpreadsheetReadError(f"Could not open the workbook: {exc}") from exc
    try:
        worksheet = workbook.worksheets[0] if workbook.worksheets else None
        if worksheet is None:
            raise SpreadsheetReadError("The workbook has no worksheets.")
        rows = list(worksheet.iter_rows(values_only=True))
        sheet_name = worksheet.title
    finally:
        workbook.close()

    rows = [list(row) for row in rows]
    while rows and all(_render(cell).strip() == "" for cell in rows[0]):
        rows.pop(0)
    if not rows:
        raise SpreadsheetReadError("The worksheet is empty.")
    sheet = _build_sheet(rows[0], rows[1:], max_rows=max_rows)
    sheet.sheet_name = sheet_name
    return sheet


READERS = {
    "csv": read_csv,
    "xlsx": read_xlsx,
}


def read_spreadsheet(
    source: bytes | str | Path,
    adapter: str,
    *,
    max_rows: int | None = None,
) -> ParsedSheet:
    """Read ``source`` (bytes or a path) with the named adapter."""

    reader = READERS.get(adapter)
    if reader is None:
        raise SpreadsheetReadError(f"No reader registered for adapter '{adapter}'.")
    payload = source if isinstance(source, bytes) else Path(source).read_bytes()
    return reader(payload, max_rows=max_rows)
