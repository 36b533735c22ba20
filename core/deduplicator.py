#!/usr/bin/env python3
"""
Record Deduplicator - Normalize raw input rows and keep one per identifier.

Pure function of its input: no network, no disk.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import ValidationError
from .models import Record

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("identifier", "name", "phone")

# Accepted column names per logical field, in lookup order
FIELD_ALIASES: Dict[str, tuple] = {
    "identifier": ("identifier", "ktp", "nik", "national_id"),
    "name": ("name", "nama"),
    "phone": ("phone", "phone_number", "hp"),
}

_NON_DIGITS = re.compile(r"\D")


@dataclass
class RejectedRecord:
    """An input row dropped before scheduling."""
    index: int
    raw: Mapping[str, Any]
    reason: str
    identifier: str = ""


@dataclass
class DeduplicationResult:
    """Outcome of deduplicating one batch."""
    accepted: List[Record] = field(default_factory=list)
    rejected: List[RejectedRecord] = field(default_factory=list)
    duplicates: List[RejectedRecord] = field(default_factory=list)

    @property
    def total_input(self) -> int:
        return len(self.accepted) + len(self.rejected) + len(self.duplicates)


def lookup_field(raw: Mapping[str, Any], logical_name: str) -> Optional[Any]:
    """Find a logical field in a raw row, honoring aliases and header case."""
    lowered = {str(k).strip().lower(): v for k, v in raw.items()}
    for alias in FIELD_ALIASES[logical_name]:
        if alias in lowered and lowered[alias] is not None:
            return lowered[alias]
    return None


def has_field(raw: Mapping[str, Any], logical_name: str) -> bool:
    """True when the row carries some column for the logical field."""
    keys = {str(k).strip().lower() for k in raw.keys()}
    return any(alias in keys for alias in FIELD_ALIASES[logical_name])


class RecordDeduplicator:
    """
    Normalizes and deduplicates records by identifier.

    - All fields trimmed
    - Identifier and phone reduced to digits and length-capped
    - First occurrence of a normalized identifier wins
    """

    def __init__(self, identifier_max_digits: int = 16, phone_max_digits: int = 12):
        self.identifier_max_digits = identifier_max_digits
        self.phone_max_digits = phone_max_digits

    def normalize(self, raw: Mapping[str, Any]) -> Record:
        """
        Normalize one raw row.

        Raises:
            ValidationError: a required field is empty after normalization
        """
        name = str(lookup_field(raw, "name") or "").strip()
        identifier = _NON_DIGITS.sub("", str(lookup_field(raw, "identifier") or ""))
        identifier = identifier[:self.identifier_max_digits]
        phone = _NON_DIGITS.sub("", str(lookup_field(raw, "phone") or ""))
        phone = phone[:self.phone_max_digits]

        values = {"identifier": identifier, "name": name, "phone": phone}
        for field_name in REQUIRED_FIELDS:
            if not values[field_name]:
                raise ValidationError(f"missing required field '{field_name}'", field_name=field_name)

        return Record(identifier=identifier, name=name, phone=phone)

    def deduplicate(self, raw_records: Iterable[Mapping[str, Any]]) -> DeduplicationResult:
        """Produce one record per distinct normalized identifier."""
        result = DeduplicationResult()
        seen = set()

        for index, raw in enumerate(raw_records):
            try:
                record = self.normalize(raw)
            except ValidationError as e:
                raw_id = _NON_DIGITS.sub("", str(lookup_field(raw, "identifier") or ""))
                result.rejected.append(RejectedRecord(
                    index=index,
                    raw=raw,
                    reason=e.message,
                    identifier=raw_id[:self.identifier_max_digits],
                ))
                logger.warning(f"[Dedup] Row {index + 1} rejected: {e.message}")
                continue

            if record.identifier in seen:
                result.duplicates.append(RejectedRecord(
                    index=index,
                    raw=raw,
                    reason="duplicate identifier",
                    identifier=record.identifier,
                ))
                logger.info(f"[Dedup] Row {index + 1} duplicate of {record.identifier}, skipped")
                continue

            seen.add(record.identifier)
            result.accepted.append(record)

        logger.info(
            f"[Dedup] {len(result.accepted)} accepted, {len(result.rejected)} rejected, "
            f"{len(result.duplicates)} duplicates"
        )
        return result
