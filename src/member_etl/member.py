"""member_etl.member

Normalized member record shape and record-level normalization.

The persistence boundary accepts the legacy document shape (``type`` and
``types`` side by side, a single ``address`` field) and converts it into
``MemberRecord``, where the single-value qualification field is derived
from the tag list and never stored on its own.

Record-level operations return a result describing the outcome plus the
field changes to persist; they never mutate the record they are given.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from member_etl.normalize import (
    has_embedded_street_number,
    has_full_width_digit,
    migrate_qualification_types,
    normalize_postal_code,
    split_address,
    to_half_width,
    trim,
)

if TYPE_CHECKING:
    from member_etl.migration_rules import TypeMigrationRule

log = logging.getLogger(__name__)

OUTCOME_UNCHANGED = "unchanged"
OUTCOME_SPLIT = "split"
OUTCOME_MIGRATED = "migrated"

VALID_OUTCOMES = (OUTCOME_UNCHANGED, OUTCOME_SPLIT, OUTCOME_MIGRATED)

# MemberRecord attribute -> legacy document key
_DOCUMENT_KEYS = {
    "name": "name",
    "furigana": "furigana",
    "phone": "phone",
    "prefecture": "prefecture",
    "member_number": "number",
    "email": "email",
    "city_address": "address",
    "street_address": "streetAddress",
    "postal_code": "postalCode",
    "notes": "notes",
}


# ---------------------------------------------------------------------------
# MemberRecord
# ---------------------------------------------------------------------------

@dataclass
class MemberRecord:
    name: str
    furigana: str = ""
    qualification_types: list[str] = field(default_factory=list)
    phone: str = ""
    prefecture: str = ""
    member_number: str = ""
    email: str = ""
    city_address: str = ""
    street_address: str = ""
    postal_code: str = ""
    notes: str = ""
    member_id: str | None = None

    @property
    def qualification_type(self) -> str:
        """Legacy single-value tag: always the first entry of the list."""
        return self.qualification_types[0] if self.qualification_types else ""

    @classmethod
    def from_document(
        cls, doc: dict[str, Any], member_id: str | None = None
    ) -> MemberRecord:
        """Build a record from a legacy member document.

        A non-empty ``types`` list wins; otherwise a non-blank ``type``
        becomes a one-element list.
        """
        kwargs: dict[str, Any] = {}
        for attr, key in _DOCUMENT_KEYS.items():
            value = doc.get(key)
            kwargs[attr] = "" if value is None else str(value)

        raw_types = doc.get("types")
        types: list[str] = []
        if isinstance(raw_types, list):
            types = [t for t in (trim(str(t)) for t in raw_types if t is not None) if t]
        if not types:
            # legacy documents may carry only the single-value field
            raw_type = doc.get("type")
            legacy = trim(str(raw_type)) if raw_type is not None else None
            types = [legacy] if legacy else []

        return cls(
            qualification_types=types,
            member_id=member_id or doc.get("id"),
            **kwargs,
        )

    def to_document(self) -> dict[str, Any]:
        """Emit the legacy document shape, including the derived ``type``."""
        doc: dict[str, Any] = {key: getattr(self, attr) for attr, key in _DOCUMENT_KEYS.items()}
        doc["types"] = list(self.qualification_types)
        doc["type"] = self.qualification_type
        if self.member_id is not None:
            doc["id"] = self.member_id
        return doc


def apply_changes(record: MemberRecord, changes: dict[str, Any]) -> MemberRecord:
    """Return a copy of *record* with *changes* applied."""
    return dataclasses.replace(record, **changes)


# ---------------------------------------------------------------------------
# Address normalization
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AddressFixResult:
    outcome: str
    changes: dict[str, str]
    width_converted: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.changes)


def needs_address_fix(record: MemberRecord) -> bool:
    """True when the record carries an unsplit street number or full-width digits."""
    if (
        record.city_address
        and not record.street_address
        and has_embedded_street_number(record.city_address)
    ):
        return True
    return has_full_width_digit(record.city_address) or has_full_width_digit(
        record.street_address
    )


def normalize_member_address(
    record: MemberRecord, allow_loose: bool = True
) -> AddressFixResult:
    """Convert address digits to half width and split off the street number.

    The split is only taken when it is unambiguous: the street portion must
    appear verbatim in the original address, and the city portion must
    differ from the original and must not contain the street portion.
    """
    city = to_half_width(record.city_address)
    street = to_half_width(record.street_address)
    width_converted = city != record.city_address or street != record.street_address

    outcome = OUTCOME_UNCHANGED
    if city and not street and has_embedded_street_number(city):
        split = split_address(city, allow_loose=allow_loose)
        if (
            split.is_split
            and split.city_portion != city
            and split.street_portion in city
            and split.street_portion not in split.city_portion
        ):
            city, street = split.city_portion, split.street_portion
            outcome = OUTCOME_SPLIT
        else:
            log.debug("address left unsplit member_id=%s", record.member_id)

    changes: dict[str, str] = {}
    if city != record.city_address:
        changes["city_address"] = city
    if street != record.street_address:
        changes["street_address"] = street
    return AddressFixResult(outcome, changes, width_converted=width_converted)


def normalize_new_member(record: MemberRecord) -> MemberRecord:
    """Normalize a record on its way into the store.

    Address digits go to half width and the postal code is reduced to
    7 digits (or dropped).  Splitting is left to the address-fix run.
    """
    return apply_changes(
        record,
        {
            "city_address": to_half_width(record.city_address).strip(),
            "street_address": to_half_width(record.street_address).strip(),
            "postal_code": normalize_postal_code(record.postal_code) or "",
        },
    )


# ---------------------------------------------------------------------------
# Qualification-tag migration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TypeMigrationResult:
    outcome: str
    qualification_types: list[str]
    applied_rules: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.outcome == OUTCOME_MIGRATED


def migrate_member_types(
    record: MemberRecord, rules: list[TypeMigrationRule]
) -> TypeMigrationResult:
    """Apply every tag-migration rule in order to *record*'s tag list."""
    types = list(record.qualification_types)
    legacy = record.qualification_type
    applied: list[str] = []
    for rule in rules:
        result = migrate_qualification_types(
            types, legacy, rule.deprecated, rule.replacement
        )
        if result.changed:
            applied.append(rule.name)
            types = list(result.types)
            legacy = result.legacy_type

    outcome = OUTCOME_MIGRATED if applied else OUTCOME_UNCHANGED
    return TypeMigrationResult(outcome, types, applied)
