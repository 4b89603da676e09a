"""
Importer-specific utilities for handling uploaded files.
"""

from __future__ import annotations

from typing import Iterable

SPREADSHEET_EXTENSIONS: tuple[str, ...] = ("csv", "txt", "xlsx", "xlsm")


def allowed_file(filename: str, allowed_extensions: Iterable[str] = SPREADSHEET_EXTENSIONS) -> bool:
    if not filename or "." not in filename:
        return False
    extension = filename.rsplit(".", 1)[1].lower()
    return extension in {ext.lower().lstrip(".") for ext in allowed_extensions}
