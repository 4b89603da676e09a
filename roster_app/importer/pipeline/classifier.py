"""
Client for the external column classifier.

The classifier is an opaque, best-effort suggester. Any failure (disabled,
timeout, HTTP error, malformed body) is logged and yields no suggestions so
the mapping step always falls back to deterministic matching.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

import requests

from roster_app.importer.contracts import get_customer_field_specs
from roster_app.importer.metrics import record_classifier_call

logger = logging.getLogger(__name__)

MIN_CLASSIFIER_CONFIDENCE = 0.5
MAX_SAMPLES_PER_COLUMN = 3
_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


@dataclass(frozen=True)
class ClassifierSuggestion:
    source_column: str
    target_field: str
    confidence: float


class ColumnClassifier(Protocol):
    def classify(
        self,
        headers: Sequence[str],
        samples: Mapping[str, Sequence[str]],
        already_mapped: Mapping[str, str],
    ) -> list[ClassifierSuggestion] | None:
        ...


class DisabledClassifier:
    """Stand-in used when no classifier endpoint is configured."""

    def classify(self, headers, samples, already_mapped):
        record_classifier_call("skipped")
        return None


class HttpColumnClassifier:
    """Posts unresolved headers with sample values to a JSON endpoint."""

    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
        http: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.http = http or requests.Session()

    def classify(
        self,
        headers: Sequence[str],
        samples: Mapping[str, Sequence[str]],
        already_mapped: Mapping[str, str],
    ) -> list[ClassifierSuggestion] | None:
        if not headers:
            return []
        taken = set(already_mapped.values())
        fields = [
            {"field": spec.name, "description": spec.description, "type": spec.field_type}
            for spec in get_customer_field_specs().values()
            if spec.name not in taken
        ]
        if not fields:
            return []

        payload = {
            "headers": list(headers),
            "samples": {
                header: [value for value in samples.get(header, ()) if value][:MAX_SAMPLES_PER_COLUMN]
                for header in headers
            },
            "fields": fields,
            "already_mapped": dict(already_mapped),
        }
        request_headers = {"Content-Type": "application/json"}
        if self.api_key:
            request_headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = self.http.post(self.url, json=payload, headers=request_headers, timeout=self.timeout)
            response.raise_for_status()
            suggestions = parse_classifier_response(response.text, headers)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Column classifier call failed: %s", exc)
            record_classifier_call("failure")
            return None

        record_classifier_call("success")
        return suggestions


def parse_classifier_response(body: str, headers: Sequence[str]) -> list[ClassifierSuggestion]:
    """
    Parse ``{"mappings": [{source_column, target_field, confidence}]}``.

    Markdown code fences around the JSON are tolerated. Entries for unknown
    columns or fields, and entries under the minimum confidence, are dropped.
    Raises ``ValueError`` when the body is not the expected shape.
    """

    text = _FENCE.sub("", (body or "").strip()).strip()
    data = json.loads(text)
    if not isinstance(data, Mapping) or not isinstance(data.get("mappings"), list):
        raise ValueError("Classifier response is missing a 'mappings' list.")

    known_fields = get_customer_field_specs()
    known_headers = set(headers)
    suggestions: list[ClassifierSuggestion] = []
    for entry in data["mappings"]:
        if not isinstance(entry, Mapping):
            continue
        source = entry.get("source_column") or entry.get("sourceColumn")
        target = entry.get("target_field") or entry.get("targetField")
        try:
            confidence = float(entry.get("confidence", 0))
        except (TypeError, ValueError):
            continue
        if source not in known_headers or target not in known_fields:
            continue
        if confidence < MIN_CLASSIFIER_CONFIDENCE:
            continue
        suggestions.append(
            ClassifierSuggestion(source_column=source, target_field=target, confidence=min(confidence, 1.0))
        )
    return suggestions


def build_classifier(config: Mapping[str, Any]) -> ColumnClassifier:
    """Build the classifier described by the importer configuration."""

    url = config.get("IMPORTER_CLASSIFIER_URL")
    if not config.get("IMPORTER_CLASSIFIER_ENABLED") or not url:
        return DisabledClassifier()
    return HttpColumnClassifier(
        url,
        api_key=config.get("IMPORTER_CLASSIFIER_API_KEY"),
        timeout=float(config.get("IMPORTER_CLASSIFIER_TIMEOUT_SECONDS") or 10.0),
    )
