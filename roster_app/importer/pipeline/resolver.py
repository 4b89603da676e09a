"""
Column mapping: suggestion, confirmation and application.

Suggestions come from strategy objects composed by priority: a saved template
for the same header set, the deterministic header catalog, then the external
classifier for headers still unresolved. Each target field goes to at most one
column, the one with the highest confidence.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Protocol, Sequence

from flask import current_app, has_app_context
from rapidfuzz import fuzz, process
from sqlalchemy.orm import Session

from roster_app.importer.contracts import (
    REQUIRED_FIELDS,
    get_customer_field_specs,
    is_required_field,
    normalize_header,
)
from roster_app.importer.errors import (
    AmbiguousRequiredField,
    BatchStateError,
    MappingConfigError,
    RequiredFieldUnmapped,
)
from roster_app.importer.mapping import HeaderPatternCatalog, match_header
from roster_app.models import db
from roster_app.models.base import utcnow
from roster_app.models.importer.schema import (
    ImportBatch,
    ImportBatchStatus,
    ImportMappingTemplate,
    StagingRow,
)

from .batch_store import BatchStore, compute_column_fingerprint
from .classifier import ColumnClassifier, DisabledClassifier
from .cleaning import EDITABLE_STATUSES, is_row_removed, load_toggles, source_values
from .locks import batch_locks
from .transform import materialize_row

DEFAULT_CONFIDENCE_THRESHOLD = 0.7
ALIAS_EXACT_CONFIDENCE = 0.9
ALIAS_FUZZY_CUTOFF = 85
ALIAS_FUZZY_WEIGHT = 0.8
AGREEMENT_BOOST = 0.1
RENAME_SIMILARITY = 0.6
SAMPLE_ROWS = 3

ORIGIN_TEMPLATE = "template"
ORIGIN_DETERMINISTIC = "deterministic"
ORIGIN_AI = "ai"
ORIGIN_HUMAN = "human"
ORIGINS = (ORIGIN_AI, ORIGIN_DETERMINISTIC, ORIGIN_HUMAN, ORIGIN_TEMPLATE)


@dataclass(frozen=True)
class ColumnMapping:
    """How one source column is treated when the mapping is applied."""

    source_column: str
    target_field: str | None = None
    field_type: str | None = None
    required: bool = False
    confidence: float = 0.0
    origin: str = ORIGIN_HUMAN
    human_confirmed: bool = False
    ignored: bool = False
    custom: bool = False
    custom_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_column": self.source_column,
            "target_field": self.target_field,
            "field_type": self.field_type,
            "required": self.required,
            "confidence": round(self.confidence, 3),
            "origin": self.origin,
            "human_confirmed": self.human_confirmed,
            "ignored": self.ignored,
            "custom": self.custom,
            "custom_name": self.custom_name,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ColumnMapping":
        source = payload.get("source_column")
        if not source:
            raise MappingConfigError("Each mapping entry needs a 'source_column'.")
        target = payload.get("target_field") or None
        ignored = bool(payload.get("ignored"))
        custom = bool(payload.get("custom"))
        if target is not None:
            spec = get_customer_field_specs().get(target)
            if spec is None:
                raise MappingConfigError(
                    f"Unknown target field '{target}'.", source_column=source, field=target
                )
            field_type, required = spec.field_type, spec.required
        else:
            field_type, required = None, False
        if target and (ignored or custom):
            raise MappingConfigError(
                f"Column '{source}' cannot both target '{target}' and be ignored or custom.",
                source_column=source,
                field=target,
            )
        origin = payload.get("origin") or ORIGIN_HUMAN
        if origin not in ORIGINS:
            raise MappingConfigError(f"Unknown mapping origin '{origin}'.", source_column=source)
        try:
            confidence = float(payload.get("confidence", 1.0 if origin == ORIGIN_HUMAN else 0.0))
        except (TypeError, ValueError) as exc:
            raise MappingConfigError(f"Invalid confidence for column '{source}'.", source_column=source) from exc
        return cls(
            source_column=str(source),
            target_field=target,
            field_type=field_type,
            required=required,
            confidence=min(max(confidence, 0.0), 1.0),
            origin=origin,
            human_confirmed=bool(payload.get("human_confirmed")),
            ignored=ignored,
            custom=custom,
            custom_name=payload.get("custom_name") or None,
        )


@dataclass(frozen=True)
class Suggestion:
    target_field: str
    confidence: float
    origin: str


@dataclass
class Resolution:
    mappings: list[ColumnMapping] = field(default_factory=list)
    open_questions: list[dict[str, Any]] = field(default_factory=list)
    confirmations_required: list[dict[str, Any]] = field(default_factory=list)
    template_id: int | None = None
    format_change: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mappings": [mapping.to_dict() for mapping in self.mappings],
            "open_questions": list(self.open_questions),
            "confirmations_required": list(self.confirmations_required),
            "template_id": self.template_id,
            "format_change": self.format_change,
        }


# ---- Strategies ----


class MappingStrategy(Protocol):
    def suggest(self, header: str, samples: Sequence[str]) -> Suggestion | None:
        ...


def _first_suggestion(
    strategies: Sequence[MappingStrategy], header: str, samples: Sequence[str]
) -> Suggestion | None:
    for strategy in strategies:
        suggestion = strategy.suggest(header, samples)
        if suggestion is not None:
            return suggestion
    return None


class TemplateStrategy:
    """Reuses the saved mapping for an identical header set."""

    def __init__(self, template: ImportMappingTemplate | None) -> None:
        self._targets: dict[str, str] = {}
        if template is not None:
            for entry in template.mapping_config_json or ():
                if entry.get("target_field") and not entry.get("ignored") and not entry.get("custom"):
                    self._targets[entry["source_column"]] = entry["target_field"]

    def suggest(self, header: str, samples: Sequence[str]) -> Suggestion | None:
        target = self._targets.get(header)
        if target is None:
            return None
        return Suggestion(target, 1.0, ORIGIN_TEMPLATE)


class DeterministicStrategy:
    """Header pattern catalog, falling back to exact or fuzzy alias matching."""

    def __init__(self, catalog: HeaderPatternCatalog | None = None) -> None:
        self.catalog = catalog
        self._aliases: dict[str, str] = {}
        for spec in get_customer_field_specs().values():
            for alias in spec.headers():
                self._aliases.setdefault(normalize_header(alias), spec.name)

    def suggest(self, header: str, samples: Sequence[str]) -> Suggestion | None:
        best: Suggestion | None = None
        match = match_header(header, self.catalog)
        if match is not None:
            best = Suggestion(match.field, match.confidence, ORIGIN_DETERMINISTIC)

        normalized = normalize_header(header)
        alias_suggestion: Suggestion | None = None
        if normalized in self._aliases:
            alias_suggestion = Suggestion(self._aliases[normalized], ALIAS_EXACT_CONFIDENCE, ORIGIN_DETERMINISTIC)
        elif normalized:
            found = process.extractOne(
                normalized, list(self._aliases), scorer=fuzz.ratio, score_cutoff=ALIAS_FUZZY_CUTOFF
            )
            if found is not None:
                alias, score, _ = found
                alias_suggestion = Suggestion(
                    self._aliases[alias], round(score / 100 * ALIAS_FUZZY_WEIGHT, 2), ORIGIN_DETERMINISTIC
                )

        if alias_suggestion and (best is None or alias_suggestion.confidence > best.confidence):
            return alias_suggestion
        return best


class ClassifierStrategy:
    """Answers from one classifier call made for all unresolved headers."""

    def __init__(self, classifier: ColumnClassifier) -> None:
        self.classifier = classifier
        self._answers: dict[str, Suggestion] = {}

    def prepare(
        self,
        headers: Sequence[str],
        samples: Mapping[str, Sequence[str]],
        already_mapped: Mapping[str, str],
    ) -> None:
        self._answers = {}
        if not headers:
            return
        suggestions = self.classifier.classify(headers, samples, already_mapped) or ()
        for item in suggestions:
            current = self._answers.get(item.source_column)
            if current is None or item.confidence > current.confidence:
                self._answers[item.source_column] = Suggestion(item.target_field, item.confidence, ORIGIN_AI)

    def suggest(self, header: str, samples: Sequence[str]) -> Suggestion | None:
        return self._answers.get(header)


def combine(current: Suggestion | None, classified: Suggestion | None) -> Suggestion | None:
    """Merge a classifier answer into an earlier suggestion for the same header."""

    if classified is None:
        return current
    if current is None:
        return classified
    if current.target_field == classified.target_field:
        boosted = min(1.0, max(current.confidence, classified.confidence) + AGREEMENT_BOOST)
        return Suggestion(current.target_field, round(boosted, 2), current.origin)
    if classified.confidence > current.confidence:
        return classified
    return current


# ---- Required field invariant ----


def check_required_fields(mappings: Iterable[ColumnMapping], *, require_confirmation: bool = True) -> None:
    """
    Enforce that the required fields resolve to distinct, confirmed columns.

    One column feeding several required fields is reported first, then a
    missing required field, then an unconfirmed one.
    """

    mappings = list(mappings)
    _check_ambiguous(mappings)
    active = [mapping for mapping in mappings if mapping.target_field and not mapping.ignored]

    for required in REQUIRED_FIELDS:
        owners = [mapping for mapping in active if mapping.target_field == required]
        if not owners:
            raise RequiredFieldUnmapped(required)
        if require_confirmation and not all(owner.human_confirmed for owner in owners):
            raise RequiredFieldUnmapped(required, reason="unconfirmed")


def parse_mapping_config(config: Sequence[Mapping[str, Any]], headers: Sequence[str]) -> list[ColumnMapping]:
    """Parse operator-submitted mapping entries and check them against the batch headers."""

    if not isinstance(config, (list, tuple)):
        raise MappingConfigError("'mappings' must be a list of column entries.")
    known = set(headers)
    mappings = [ColumnMapping.from_dict(entry) for entry in config if isinstance(entry, Mapping)]
    if len(mappings) != len(config):
        raise MappingConfigError("Each mapping entry must be an object.")

    for mapping in mappings:
        if mapping.source_column not in known:
            raise MappingConfigError(
                f"Column '{mapping.source_column}' is not part of this batch.",
                source_column=mapping.source_column,
            )

    # Ambiguity across required fields is reported before generic duplicates.
    _check_ambiguous(mappings)

    seen_columns: set[str] = set()
    seen_targets: dict[str, str] = {}
    for mapping in mappings:
        if mapping.source_column in seen_columns:
            raise MappingConfigError(
                f"Column '{mapping.source_column}' is mapped more than once.",
                source_column=mapping.source_column,
            )
        seen_columns.add(mapping.source_column)
        if mapping.target_field and not mapping.ignored:
            previous = seen_targets.get(mapping.target_field)
            if previous is not None:
                raise MappingConfigError(
                    f"Field '{mapping.target_field}' is mapped from both '{previous}' and '{mapping.source_column}'.",
                    field=mapping.target_field,
                    source_column=mapping.source_column,
                )
            seen_targets[mapping.target_field] = mapping.source_column
    return mappings


def _check_ambiguous(mappings: Iterable[ColumnMapping]) -> None:
    required_by_column: dict[str, set[str]] = {}
    for mapping in mappings:
        if mapping.target_field and not mapping.ignored and is_required_field(mapping.target_field):
            required_by_column.setdefault(mapping.source_column, set()).add(mapping.target_field)
    for column, fields in required_by_column.items():
        if len(fields) > 1:
            raise AmbiguousRequiredField(column, sorted(fields, key=REQUIRED_FIELDS.index))


def load_mappings(batch: ImportBatch) -> list[ColumnMapping]:
    return [ColumnMapping.from_dict(entry) for entry in batch.mapping_config_json or ()]


def remap_rows(batch: ImportBatch, rows: Iterable[StagingRow], mappings: Sequence[ColumnMapping]) -> None:
    """Recompute ``mapped_json`` for ``rows`` from their current source values."""

    entries = [mapping.to_dict() for mapping in mappings]
    for row in rows:
        row.mapped_json = materialize_row(source_values(row, batch), entries)


# ---- Format change ----


def compare_headers(previous: Sequence[str], current: Sequence[str]) -> dict[str, Any]:
    """Describe how ``current`` differs from ``previous`` (normalized header names)."""

    old = [normalize_header(header) for header in previous]
    new = [normalize_header(header) for header in current]
    old_set, new_set = set(old), set(new)
    matched = old_set & new_set
    removed = [header for header in old if header not in new_set]
    added = [header for header in new if header not in old_set]

    renamed: list[dict[str, Any]] = []
    claimed: set[str] = set()
    for old_header in removed:
        best: tuple[str, float] | None = None
        for new_header in added:
            if new_header in claimed:
                continue
            similarity = fuzz.ratio(old_header, new_header) / 100
            if similarity >= RENAME_SIMILARITY and (best is None or similarity > best[1]):
                best = (new_header, similarity)
        if best is not None:
            claimed.add(best[0])
            renamed.append({"old": old_header, "new": best[0], "similarity": round(best[1], 2)})

    renamed_old = {item["old"] for item in renamed}
    total_unique = len(old_set | new_set) - len(renamed)
    similarity = (len(matched) + len(renamed)) / total_unique if total_unique else 1.0
    return {
        "similarity": round(similarity, 3),
        "added": [header for header in added if header not in claimed],
        "removed": [header for header in removed if header not in renamed_old],
        "renamed": renamed,
    }


# ---- Resolver ----


def _log_info(message: str, *args: Any, **extra: Any) -> None:
    if has_app_context():
        current_app.logger.info(message, *args, extra=extra)


def _configured_classifier() -> ColumnClassifier:
    if has_app_context():
        state = current_app.extensions.get("importer") or {}
        classifier = state.get("classifier")
        if classifier is not None:
            return classifier
    return DisabledClassifier()


def _configured_threshold() -> float:
    if has_app_context():
        return float(current_app.config.get("IMPORTER_MAPPING_CONFIDENCE_THRESHOLD", DEFAULT_CONFIDENCE_THRESHOLD))
    return DEFAULT_CONFIDENCE_THRESHOLD


class MappingResolver:
    """Suggests column mappings and applies the operator's confirmed mapping."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        classifier: ColumnClassifier | None = None,
        threshold: float | None = None,
        catalog: HeaderPatternCatalog | None = None,
    ) -> None:
        self.session = session or db.session
        self.store = BatchStore(self.session)
        self.classifier = classifier
        self.threshold = threshold
        self.catalog = catalog

    # ---- Public API ----

    def resolve(
        self,
        headers: Sequence[str],
        samples: Mapping[str, Sequence[str]],
        *,
        organization_id: int | None = None,
    ) -> Resolution:
        threshold = self.threshold if self.threshold is not None else _configured_threshold()
        template = self._find_template(organization_id, headers) if organization_id is not None else None
        local_strategies: tuple[MappingStrategy, ...] = (TemplateStrategy(template), DeterministicStrategy(self.catalog))
        classifier = ClassifierStrategy(self.classifier or _configured_classifier())

        suggestions: dict[str, Suggestion | None] = {}
        for header in headers:
            header_samples = samples.get(header, ())
            suggestions[header] = _first_suggestion(local_strategies, header, header_samples)

        unresolved = [
            header
            for header in headers
            if suggestions[header] is None
            or (suggestions[header].origin != ORIGIN_TEMPLATE and suggestions[header].confidence < threshold)
        ]
        already_mapped = {
            header: suggestion.target_field
            for header, suggestion in suggestions.items()
            if suggestion is not None and header not in unresolved
        }
        classifier.prepare(unresolved, samples, already_mapped)
        for header in unresolved:
            suggestions[header] = combine(suggestions[header], classifier.suggest(header, samples.get(header, ())))

        winners = _assign_targets(headers, suggestions)
        resolution = Resolution(template_id=template.id if template is not None else None)
        specs = get_customer_field_specs()
        for header in headers:
            suggestion = suggestions[header]
            if suggestion is not None and winners.get(suggestion.target_field) == header:
                spec = specs[suggestion.target_field]
                mapping = ColumnMapping(
                    source_column=header,
                    target_field=spec.name,
                    field_type=spec.field_type,
                    required=spec.required,
                    confidence=suggestion.confidence,
                    origin=suggestion.origin,
                )
            else:
                mapping = ColumnMapping(source_column=header, origin=ORIGIN_DETERMINISTIC)
            resolution.mappings.append(mapping)

            if mapping.target_field is None or mapping.confidence < threshold:
                resolution.open_questions.append(
                    {
                        "source_column": header,
                        "suggested_field": mapping.target_field,
                        "confidence": round(mapping.confidence, 3),
                        "options": (["accept"] if mapping.target_field else []) + ["custom", "ignore"],
                        "samples": [value for value in samples.get(header, ()) if value][:SAMPLE_ROWS],
                    }
                )
            if mapping.required and not mapping.human_confirmed:
                resolution.confirmations_required.append(
                    {
                        "source_column": header,
                        "target_field": mapping.target_field,
                        "confidence": round(mapping.confidence, 3),
                    }
                )

        if template is None and organization_id is not None:
            resolution.format_change = self._detect_format_change(organization_id, headers)
        return resolution

    def suggest_for_batch(self, batch: ImportBatch) -> Resolution:
        """Resolve a batch's headers using sample values from its first kept rows."""

        toggles = load_toggles(batch)
        samples: dict[str, list[str]] = {header: [] for header in batch.headers}
        for row in self.store.get_rows(batch.id):
            if is_row_removed(row, batch, toggles):
                continue
            values = source_values(row, batch)
            for header in batch.headers:
                if len(samples[header]) < SAMPLE_ROWS and values.get(header):
                    samples[header].append(values[header])
            if all(len(collected) >= SAMPLE_ROWS for collected in samples.values()):
                break

        resolution = self.resolve(batch.headers, samples, organization_id=batch.organization_id)
        batch.format_change_json = resolution.format_change
        self.session.commit()
        return resolution

    def apply_mapping(
        self,
        batch_id: int,
        mapping_config: Sequence[Mapping[str, Any]],
        *,
        update_on_duplicate: bool | None = None,
        actor_user_id: int | None = None,
    ) -> ImportBatch:
        """
        Validate and store a mapping, then materialize ``mapped_json`` for every row.

        Raises ``AmbiguousRequiredField``, ``MappingConfigError`` or
        ``RequiredFieldUnmapped`` without touching the batch.
        """

        with batch_locks.hold(batch_id, "apply_mapping"):
            batch = self.store.get_batch(batch_id)
            if batch.status not in EDITABLE_STATUSES:
                raise BatchStateError(
                    f"Batch {batch.id} is {batch.status.value}; the mapping can no longer change.",
                    batch_id=batch.id,
                    status=batch.status.value,
                )
            mappings = parse_mapping_config(mapping_config, batch.headers)
            check_required_fields(mappings)

            try:
                remap_rows(batch, self.store.get_rows(batch.id), mappings)
                batch.mapping_config_json = [mapping.to_dict() for mapping in mappings]
                batch.mapping_applied_at = utcnow()
                if update_on_duplicate is not None:
                    batch.update_on_duplicate = bool(update_on_duplicate)
                if batch.status in (ImportBatchStatus.UPLOADED, ImportBatchStatus.CLEANED, ImportBatchStatus.VALIDATED):
                    batch.status = ImportBatchStatus.MAPPED
                self._save_template(batch, mappings)
                self.store.record_audit(
                    batch,
                    "map",
                    actor_user_id=actor_user_id,
                    details={
                        "mapped": {m.source_column: m.target_field for m in mappings if m.target_field},
                        "custom": [m.source_column for m in mappings if m.custom],
                        "ignored": [m.source_column for m in mappings if m.ignored],
                    },
                )
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

        _log_info(
            "Mapping applied to batch %s (%s columns)",
            batch.id,
            len(mappings),
            importer_batch_id=batch.id,
        )
        return batch

    # ---- Internal helpers ----

    def _find_template(self, organization_id: int, headers: Sequence[str]) -> ImportMappingTemplate | None:
        return (
            self.session.query(ImportMappingTemplate)
            .filter(
                ImportMappingTemplate.organization_id == organization_id,
                ImportMappingTemplate.column_fingerprint == compute_column_fingerprint(headers),
            )
            .one_or_none()
        )

    def _save_template(self, batch: ImportBatch, mappings: Sequence[ColumnMapping]) -> ImportMappingTemplate:
        template = self._find_template(batch.organization_id, batch.headers)
        if template is None:
            template = ImportMappingTemplate(
                organization_id=batch.organization_id,
                column_fingerprint=batch.column_fingerprint,
                use_count=0,
            )
            self.session.add(template)
        template.headers_json = batch.headers
        template.mapping_config_json = [replace(mapping, origin=ORIGIN_TEMPLATE).to_dict() for mapping in mappings]
        template.human_confirmed = all(
            mapping.human_confirmed for mapping in mappings if mapping.required and mapping.target_field
        )
        template.use_count = (template.use_count or 0) + 1
        template.last_used_at = utcnow()
        return template

    def _detect_format_change(self, organization_id: int, headers: Sequence[str]) -> dict[str, Any] | None:
        latest = (
            self.session.query(ImportMappingTemplate)
            .filter(ImportMappingTemplate.organization_id == organization_id)
            .order_by(ImportMappingTemplate.last_used_at.desc(), ImportMappingTemplate.id.desc())
            .first()
        )
        if latest is None:
            return None
        comparison = compare_headers(latest.headers_json or (), headers)
        comparison["template_id"] = latest.id
        return comparison


def _assign_targets(headers: Sequence[str], suggestions: Mapping[str, Suggestion | None]) -> dict[str, str]:
    """Give each target field to its highest-confidence column; ties keep header order."""

    winners: dict[str, str] = {}
    best: dict[str, float] = {}
    for header in headers:
        suggestion = suggestions.get(header)
        if suggestion is None:
            continue
        if suggestion.target_field not in best or suggestion.confidence > best[suggestion.target_field]:
            best[suggestion.target_field] = suggestion.confidence
            winners[suggestion.target_field] = header
    return winners
