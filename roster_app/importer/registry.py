"""
Spreadsheet adapter registry.

Adapters register metadata here so configuration validation can occur without
importing the reader libraries, and uploads can be routed by file extension.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Tuple


@dataclass(frozen=True)
class AdapterDescriptor:
    """Metadata describing a spreadsheet adapter."""

    name: str
    title: str
    extensions: Tuple[str, ...] = ()
    optional_dependencies: Tuple[str, ...] = ()
    summary: str | None = None


def get_adapter_registry() -> Mapping[str, AdapterDescriptor]:
    """Return the registry of supported adapters."""
    return OrderedDict(
        (
            (
                "csv",
                AdapterDescriptor(
                    name="csv",
                    title="CSV Flat File",
                    extensions=(".csv", ".txt"),
                    summary="Customer rosters exported as comma or semicolon separated text.",
                ),
            ),
            (
                "xlsx",
                AdapterDescriptor(
                    name="xlsx",
                    title="Excel Workbook",
                    extensions=(".xlsx", ".xlsm"),
                    optional_dependencies=("openpyxl",),
                    summary="First worksheet of an Excel workbook.",
                ),
            ),
        )
    )


def resolve_adapters(
    configured: Sequence[str],
    registry: Mapping[str, AdapterDescriptor] | None = None,
) -> Iterable[AdapterDescriptor]:
    """
    Map configured adapter names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_adapter_registry()
    unknown = sorted({adapter for adapter in configured if adapter not in registry})
    if unknown:
        raise ValueError(
            "Unknown importer adapters configured: "
            + ", ".join(unknown)
            + ". Update configuration or register these adapters first."
        )
    return tuple(registry[adapter] for adapter in configured)


def adapter_for_filename(
    filename: str,
    active: Iterable[AdapterDescriptor],
) -> AdapterDescriptor | None:
    """Return the active adapter that handles ``filename``'s extension, if any."""
    lowered = (filename or "").lower()
    for descriptor in active:
        if any(lowered.endswith(ext) for ext in descriptor.extensions):
            return descriptor
    return None
