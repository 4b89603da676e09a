"""Loading of the header pattern catalog used for deterministic column mapping."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml
from flask import current_app, has_app_context

from roster_app.importer.contracts import get_customer_field_specs

DEFAULT_PATTERNS_PATH = Path(__file__).with_name("header_patterns.yaml")


class MappingLoadError(RuntimeError):
    """Raised when a header pattern catalog cannot be loaded or validated."""


@dataclass(frozen=True)
class HeaderPattern:
    field: str
    regex: re.Pattern[str]
    priority: int

    @property
    def confidence(self) -> float:
        return round(max(0.0, 1.0 - 0.1 * (self.priority - 1)), 2)


@dataclass(frozen=True)
class HeaderPatternCatalog:
    version: int
    patterns: Sequence[HeaderPattern]
    checksum: str
    path: Path


def _compute_checksum(raw: Mapping[str, Any]) -> str:
    encoded = json.dumps(raw, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def load_header_patterns(path: str | Path) -> HeaderPatternCatalog:
    """
    Load and validate a YAML header pattern catalog.

    Every field key must exist in the customer field catalog and every pattern
    must compile.
    """

    path = Path(path)
    if not path.exists():
        raise MappingLoadError(f"Header pattern file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - YAML parser errors
        raise MappingLoadError(f"Failed to parse header patterns at {path}: {exc}") from exc

    try:
        version = int(raw["version"])
        fields_payload = raw["fields"]
    except KeyError as exc:
        raise MappingLoadError(f"Missing required header pattern attribute: {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise MappingLoadError(f"Invalid header pattern attribute: {exc}") from exc

    if not isinstance(fields_payload, Mapping):
        raise MappingLoadError("'fields' must map field names to pattern lists.")

    known_fields = get_customer_field_specs()
    patterns: list[HeaderPattern] = []
    for field_name, entries in fields_payload.items():
        if field_name not in known_fields:
            raise MappingLoadError(f"Unknown target field '{field_name}' in header patterns.")
        for entry in entries or ():
            if not isinstance(entry, Mapping) or not entry.get("pattern"):
                raise MappingLoadError(f"Pattern entry for '{field_name}' must define 'pattern': {entry!r}")
            try:
                regex = re.compile(str(entry["pattern"]), re.IGNORECASE)
                priority = int(entry.get("priority", 1))
            except re.error as exc:
                raise MappingLoadError(f"Invalid pattern for '{field_name}': {exc}") from exc
            except (TypeError, ValueError) as exc:
                raise MappingLoadError(f"Invalid priority for '{field_name}': {exc}") from exc
            if priority < 1:
                raise MappingLoadError(f"Priority for '{field_name}' must be >= 1.")
            patterns.append(HeaderPattern(field=str(field_name), regex=regex, priority=priority))

    return HeaderPatternCatalog(
        version=version,
        patterns=tuple(patterns),
        checksum=_compute_checksum(raw),
        path=path,
    )


def get_header_patterns() -> HeaderPatternCatalog:
    """
    Return the active header pattern catalog, cached per application.

    ``IMPORTER_HEADER_PATTERNS_PATH`` overrides the packaged catalog. The cache
    is refreshed when the file's modification time changes.
    """

    if not has_app_context():
        return load_header_patterns(DEFAULT_PATTERNS_PATH)

    configured = current_app.config.get("IMPORTER_HEADER_PATTERNS_PATH")
    config_path = Path(configured) if configured else DEFAULT_PATTERNS_PATH
    cache: dict[str, tuple[HeaderPatternCatalog, float]] = current_app.extensions.setdefault(
        "_importer_header_patterns_cache", {}
    )
    key = str(config_path)
    mtime = config_path.stat().st_mtime if config_path.exists() else 0.0
    cached = cache.get(key)
    if cached and cached[1] == mtime:
        return cached[0]

    catalog = load_header_patterns(config_path)
    cache[key] = (catalog, mtime)
    current_app.logger.debug("Loaded header pattern catalog %s (checksum=%s)", key, catalog.checksum[:12])
    return catalog


_SEPARATORS = re.compile(r"[_\s-]+")


@dataclass(frozen=True)
class HeaderMatch:
    field: str
    confidence: float
    pattern: str


def match_header(header: str, catalog: HeaderPatternCatalog | None = None) -> HeaderMatch | None:
    """
    Return the best pattern match for ``header``.

    The lower-cased header and its compact form (separators removed) are both
    tried; the highest confidence wins and ties keep catalog order.
    """

    catalog = catalog or get_header_patterns()
    lowered = str(header or "").strip().lower()
    if not lowered:
        return None
    candidates = {lowered, _SEPARATORS.sub("", lowered)}
    best: HeaderMatch | None = None
    for pattern in catalog.patterns:
        if not any(pattern.regex.search(candidate) for candidate in candidates):
            continue
        if best is None or pattern.confidence > best.confidence:
            best = HeaderMatch(field=pattern.field, confidence=pattern.confidence, pattern=pattern.regex.pattern)
    return best
