"""
Per-type value coercion applied when a column mapping is materialized.

Coercion never fails: a value that cannot be converted is kept as the trimmed
source text so the validator can report it against the original input.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import Any, Mapping, Sequence

from roster_app.importer.contracts import get_customer_field_specs

NORWEGIAN_MONTHS: Mapping[str, int] = {
    "januar": 1,
    "jan": 1,
    "februar": 2,
    "feb": 2,
    "mars": 3,
    "mar": 3,
    "april": 4,
    "apr": 4,
    "mai": 5,
    "juni": 6,
    "jun": 6,
    "juli": 7,
    "jul": 7,
    "august": 8,
    "aug": 8,
    "september": 9,
    "sep": 9,
    "sept": 9,
    "oktober": 10,
    "okt": 10,
    "november": 11,
    "nov": 11,
    "desember": 12,
    "des": 12,
    "january": 1,
    "february": 2,
    "march": 3,
    "may": 5,
    "june": 6,
    "july": 7,
    "october": 10,
    "december": 12,
}

_ISO_DATE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
_DAY_MONTH_YEAR = re.compile(r"^(\d{1,2})[./-](\d{1,2})[./-](\d{2,4})$")
_MONTH_YEAR = re.compile(r"^(\d{1,2})[./-](\d{4})$")
_QUARTER = re.compile(r"^Q([1-4])\s*[/\s]\s*(\d{4})$", re.IGNORECASE)
_KVARTAL = re.compile(r"^(?:(\d)\.\s*)?kvartal\s*(\d)?\s+(\d{4})$", re.IGNORECASE)
_DAY_MONTH_NAME_YEAR = re.compile(r"^(\d{1,2})\.?\s+([a-zæøå]+)\.?\s+(\d{4})$")
_MONTH_NAME_YEAR = re.compile(r"^([a-zæøå]+)\.?\s+(\d{4})$")
_EXCEL_SERIAL = re.compile(r"^\d{1,6}(?:\.0+)?$")
_INTEGER = re.compile(r"^[+-]?\d+(?:[.,]\d+)?$")

EXCEL_EPOCH = date(1899, 12, 31)


def _expand_year(year: int) -> int:
    if year < 100:
        return year + (2000 if year < 50 else 1900)
    return year


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _quarter_start(quarter: int, year: int) -> date | None:
    if 1 <= quarter <= 4:
        return date(year, (quarter - 1) * 3 + 1, 1)
    return None


def parse_date(value: Any) -> date | None:
    """Parse the date formats seen in Norwegian rosters; ``None`` when unrecognized."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    if not text:
        return None

    match = _QUARTER.match(text)
    if match:
        return _quarter_start(int(match.group(1)), int(match.group(2)))
    match = _KVARTAL.match(text)
    if match:
        return _quarter_start(int(match.group(1) or match.group(2) or 0), int(match.group(3)))

    match = _ISO_DATE.match(text)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    match = _DAY_MONTH_YEAR.match(text)
    if match:
        day, month = int(match.group(1)), int(match.group(2))
        return _safe_date(_expand_year(int(match.group(3))), month, day)

    match = _MONTH_YEAR.match(text)
    if match:
        return _safe_date(int(match.group(2)), int(match.group(1)), 1)

    lowered = text.lower()
    match = _DAY_MONTH_NAME_YEAR.match(lowered)
    if match and match.group(2) in NORWEGIAN_MONTHS:
        return _safe_date(int(match.group(3)), NORWEGIAN_MONTHS[match.group(2)], int(match.group(1)))
    match = _MONTH_NAME_YEAR.match(lowered)
    if match and match.group(1) in NORWEGIAN_MONTHS:
        return date(int(match.group(2)), NORWEGIAN_MONTHS[match.group(1)], 1)

    if _EXCEL_SERIAL.match(text):
        return _excel_serial_to_date(int(float(text)))
    return None


def _excel_serial_to_date(serial: int) -> date | None:
    # Serial 60 is Excel's phantom 29 Feb 1900.
    if serial < 1 or serial > 100000 or serial == 60:
        return None
    adjusted = serial - 1 if serial > 60 else serial
    parsed = EXCEL_EPOCH + timedelta(days=adjusted)
    if 1900 <= parsed.year <= 2100:
        return parsed
    return None


def parse_integer(value: Any) -> int | None:
    """Parse whole numbers, accepting a decimal comma ("12,0")."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value or "").strip().replace(" ", "")
    if not _INTEGER.match(text):
        return None
    number = float(text.replace(",", "."))
    if not number.is_integer():
        return None
    return int(number)


def coerce_value(value: Any, field_type: str) -> Any:
    """Convert ``value`` for a target field type; unparseable input is returned trimmed."""

    if value is None:
        return None
    text = value.strip() if isinstance(value, str) else str(value).strip()
    if text == "":
        return None
    if field_type == "email":
        return text.lower()
    if field_type == "date":
        parsed = parse_date(text)
        return parsed.isoformat() if parsed else text
    if field_type == "integer":
        parsed_int = parse_integer(text)
        return parsed_int if parsed_int is not None else text
    return text


def materialize_row(values: Mapping[str, Any], mappings: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
    """
    Build the mapped payload for one row.

    Target fields land at the top level keyed by field name; custom columns are
    kept verbatim under ``extra``; ignored columns are dropped.
    """

    specs = get_customer_field_specs()
    mapped: dict[str, Any] = {}
    extra: dict[str, Any] = {}
    for entry in mappings:
        source = entry.get("source_column")
        if not source or entry.get("ignored"):
            continue
        raw_value = values.get(source)
        if entry.get("custom"):
            coerced = coerce_value(raw_value, "string")
            if coerced is not None:
                extra[str(entry.get("custom_name") or source)] = coerced
            continue
        target = entry.get("target_field")
        spec = specs.get(target) if target else None
        if spec is None:
            continue
        mapped[spec.name] = coerce_value(raw_value, spec.field_type)
    if extra:
        mapped["extra"] = extra
    return mapped
