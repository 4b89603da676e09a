from __future__ import annotations

import io
from datetime import datetime

import pytest
from openpyxl import Workbook

from roster_app.importer.adapters import read_csv, read_spreadsheet, read_xlsx
from roster_app.importer.errors import SpreadsheetReadError
from roster_app.importer.registry import adapter_for_filename, get_adapter_registry, resolve_adapters


def _workbook_bytes(rows):
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Kunder"
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def test_read_csv_detects_semicolon_and_keeps_raw_text():
    payload = "Kundenavn;Adresse\n  Fjordkafeen AS ;Strandgata 4\n".encode("utf-8")

    sheet = read_csv(payload)

    assert sheet.delimiter == ";"
    assert sheet.headers == ("Kundenavn", "Adresse")
    assert sheet.rows[0].source_line == 2
    assert sheet.rows[0].values["Kundenavn"] == "  Fjordkafeen AS "


def test_read_csv_falls_back_to_cp1252():
    payload = "Kundenavn;Adresse\nBlåbær AS;Østre vei 1\n".encode("cp1252")

    sheet = read_csv(payload)

    assert sheet.encoding == "cp1252"
    assert sheet.rows[0].values["Kundenavn"] == "Blåbær AS"


def test_read_csv_names_blank_and_duplicate_headers():
    payload = b"Navn,,Navn\nA,B,C\n"

    sheet = read_csv(payload)

    assert sheet.headers == ("Navn", "Kolonne 2", "Navn (2)")
    assert sheet.rows[0].values == {"Navn": "A", "Kolonne 2": "B", "Navn (2)": "C"}


def test_read_csv_pads_short_rows_and_drops_trailing_blank_lines():
    payload = b"Navn;Adresse;Telefon\nA;Gate 1\n;;\n"

    sheet = read_csv(payload)

    assert len(sheet.rows) == 1
    assert sheet.rows[0].values["Telefon"] == ""


def test_read_csv_rejects_empty_payload():
    with pytest.raises(SpreadsheetReadError):
        read_csv(b"   ")


def test_read_csv_enforces_row_limit():
    payload = b"Navn;Adresse\nA;1\nB;2\nC;3\n"

    with pytest.raises(SpreadsheetReadError) as excinfo:
        read_csv(payload, max_rows=2)

    assert excinfo.value.details["row_count"] == 3
    assert excinfo.value.code == "UNREADABLE_FILE"


def test_read_xlsx_renders_dates_and_whole_numbers_as_text():
    payload = _workbook_bytes(
        [
            [None, None, None],
            ["Kundenavn", "Postnummer", "Siste kontroll"],
            ["Hotell Vest", 150.0, datetime(2023, 5, 17)],
        ]
    )

    sheet = read_xlsx(payload)

    assert sheet.sheet_name == "Kunder"
    assert sheet.headers == ("Kundenavn", "Postnummer", "Siste kontroll")
    assert sheet.rows[0].values == {
        "Kundenavn": "Hotell Vest",
        "Postnummer": "150",
        "Siste kontroll": "2023-05-17",
    }


def test_read_xlsx_rejects_non_workbook_bytes():
    with pytest.raises(SpreadsheetReadError):
        read_xlsx(b"not a workbook")


def test_read_spreadsheet_accepts_paths(tmp_path):
    path = tmp_path / "kunder.csv"
    path.write_bytes(b"Navn,Adresse\nA,Gate 1\n")

    sheet = read_spreadsheet(path, "csv")

    assert sheet.rows[0].values["Adresse"] == "Gate 1"


def test_read_spreadsheet_unknown_adapter():
    with pytest.raises(SpreadsheetReadError):
        read_spreadsheet(b"x", "ods")


def test_registry_resolves_and_routes_by_extension():
    registry = get_adapter_registry()
    active = resolve_adapters(("csv", "xlsx"), registry)

    assert adapter_for_filename("Kunder.XLSX", active).name == "xlsx"
    assert adapter_for_filename("kunder.txt", active).name == "csv"
    assert adapter_for_filename("kunder.ods", active) is None


def test_registry_rejects_unknown_adapters():
    with pytest.raises(ValueError, match="ods"):
        resolve_adapters(("csv", "ods"))
