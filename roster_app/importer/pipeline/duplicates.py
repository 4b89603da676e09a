"""
Duplicate detection on normalized customer name and address.

A duplicate is never an error: later rows of the batch and rows matching an
existing customer of the same organization are flagged with a warning and
still committed (as an update when the batch allows it).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy import or_
from sqlalchemy.orm import Session

from roster_app.models.customer import Customer

_COMPANY_SUFFIX = re.compile(r"\s+(a\.?\s?s\.?|a/s|a\.?n\.?s\.?|d\.?a\.?|enk\.?|enkeltpersonforetak|nuf\.?)$")
_PUNCTUATION = re.compile(r"[^\w\s]")
_ADDRESS_ABBREVIATIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bgt\.?(?=\s|$)"), "gate"),
    (re.compile(r"\bvn\.?(?=\s|$)"), "veien"),
    (re.compile(r"\bv\.?(?=\s|$)"), "vei"),
    (re.compile(r"\bpl\.?(?=\s|$)"), "plass"),
)


def normalize_company_name(value: Any) -> str:
    """Lower-case, drop the company form suffix, punctuation and extra whitespace."""

    name = " ".join(str(value or "").lower().split())
    name = _COMPANY_SUFFIX.sub("", name)
    name = _PUNCTUATION.sub(" ", name)
    return " ".join(name.split())


def normalize_address(value: Any) -> str:
    """Lower-case and expand common street abbreviations (gt. to gate, vn. to veien)."""

    address = " ".join(str(value or "").lower().split())
    for pattern, replacement in _ADDRESS_ABBREVIATIONS:
        address = pattern.sub(replacement, address)
    address = _PUNCTUATION.sub(" ", address)
    return " ".join(address.split())


@dataclass(frozen=True)
class DuplicateKey:
    name: str
    address: str

    @classmethod
    def from_values(cls, name: Any, address: Any) -> "DuplicateKey | None":
        key = cls(normalize_company_name(name), normalize_address(address))
        if not key.name or not key.address:
            return None
        return key

    @classmethod
    def from_mapped(cls, mapped: Mapping[str, Any]) -> "DuplicateKey | None":
        return cls.from_values(mapped.get("navn"), mapped.get("adresse"))


class DuplicateDetector:
    """
    Tracks keys seen in a batch and looks up existing customers of the tenant.

    Customers created by ``batch_id`` itself are not "existing": a reimport
    must not turn the batch's own earlier writes into duplicates.
    """

    def __init__(self, session: Session, organization_id: int, *, batch_id: int | None = None) -> None:
        self.session = session
        self.organization_id = organization_id
        self.batch_id = batch_id
        self._existing: dict[DuplicateKey, int] | None = None
        self._seen: dict[DuplicateKey, int] = {}

    def existing_index(self) -> dict[DuplicateKey, int]:
        if self._existing is None:
            index: dict[DuplicateKey, int] = {}
            query = self.session.query(Customer.id, Customer.name, Customer.address).filter(
                Customer.organization_id == self.organization_id
            )
            if self.batch_id is not None:
                query = query.filter(
                    or_(Customer.import_batch_id.is_(None), Customer.import_batch_id != self.batch_id)
                )
            query = query.order_by(Customer.id)
            for customer_id, name, address in query:
                key = DuplicateKey.from_values(name, address)
                if key is not None:
                    index.setdefault(key, customer_id)
            self._existing = index
        return self._existing

    def find_existing(self, key: DuplicateKey | None) -> int | None:
        if key is None:
            return None
        return self.existing_index().get(key)

    def register(self, key: DuplicateKey | None, row_index: int) -> int | None:
        """Record ``row_index`` under ``key``; return the first row seen with it, if earlier."""

        if key is None:
            return None
        first = self._seen.get(key)
        if first is None:
            self._seen[key] = row_index
            return None
        return first

    def reset(self) -> None:
        self._seen = {}
        self._existing = None
