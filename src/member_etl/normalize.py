"""Normalization rules for member address and qualification-tag data.

All functions are pure: they never mutate their arguments and never raise
for any ``str`` input.  A rule that cannot decide leaves its input alone.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

# Full-width digits, hyphen, ideographic space and parentheses.
_HALF_WIDTH_TABLE = str.maketrans(
    "０１２３４５６７８９－　（）",
    "0123456789- ()",
)

_DIGITS = "[0-9０-９]"
_HYPHEN = "[-－]"

# Administrative-unit markers a city portion must contain.
_REGION_MARKER_RE = re.compile(r"[都道府県市区町村]")

_STREET_NUMBER_RE = re.compile(rf"{_DIGITS}+{_HYPHEN}{_DIGITS}+")
_BANCHI_RE = re.compile(rf"{_DIGITS}+番地")
_FULL_WIDTH_DIGIT_RE = re.compile(r"[０-９]")

# A "N丁目" block directly before the number belongs to the street portion.
_CHOME = rf"(?:{_DIGITS}+丁目)?"

_SPLIT_NUMERIC_RE = re.compile(rf"(.*?)({_CHOME}{_DIGITS}+{_HYPHEN}{_DIGITS}+.*)", re.S)
_SPLIT_BANCHI_RE = re.compile(rf"(.*?)({_CHOME}{_DIGITS}+番地.*)", re.S)
_SPLIT_LOOSE_RE = re.compile(rf"(.*?)({_DIGITS}.*)", re.S)


# ---------------------------------------------------------------------------
# Rule 1: trim / normalize_space
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 2: to_half_width
# ---------------------------------------------------------------------------

def to_half_width(text: str) -> str:
    """Replace full-width digits, hyphen, space and parentheses with ASCII.

    Character-for-character, so the result has the same length as the input
    and applying it twice is a no-op.
    """
    return text.translate(_HALF_WIDTH_TABLE)


def has_full_width_digit(text: str) -> bool:
    return bool(_FULL_WIDTH_DIGIT_RE.search(text))


# ---------------------------------------------------------------------------
# Rule 3: has_embedded_street_number
# ---------------------------------------------------------------------------

def has_embedded_street_number(address: str) -> bool:
    """Return True if *address* looks like it carries a street/lot number.

    Matches ``digits-digits`` (e.g. "2-8-1") or ``digits番地`` in either
    width.  A bare number is not enough: postal codes and floor numbers
    would false-positive.
    """
    return bool(_STREET_NUMBER_RE.search(address) or _BANCHI_RE.search(address))


# ---------------------------------------------------------------------------
# Rule 4: split_address
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AddressSplit:
    city_portion: str
    street_portion: str

    @property
    def is_split(self) -> bool:
        return self.street_portion != ""


def split_address(address: str, allow_loose: bool = True) -> AddressSplit:
    """Split a freeform address into (city portion, street portion).

    Patterns are tried in order and the first one that matches decides:
      1. prefix + ``digits-digits...``
      2. prefix + ``digits番地...``
      3. prefix + first digit onwards (only when *allow_loose*)

    The candidate is accepted only when the city portion is non-empty,
    contains an administrative marker (都道府県市区町村) and does not itself
    contain the street portion.  Otherwise the address is returned unsplit
    with an empty street portion.
    """
    patterns = [_SPLIT_NUMERIC_RE, _SPLIT_BANCHI_RE]
    if allow_loose:
        patterns.append(_SPLIT_LOOSE_RE)

    for pattern in patterns:
        m = pattern.fullmatch(address)
        if m is None:
            continue
        city = m.group(1).strip()
        street = m.group(2).strip()
        if _is_acceptable_split(city, street):
            return AddressSplit(city, street)
        break

    return AddressSplit(address, "")


def _is_acceptable_split(city: str, street: str) -> bool:
    if not city or not street:
        return False
    if not _REGION_MARKER_RE.search(city):
        return False
    return street not in city


# ---------------------------------------------------------------------------
# Rule 5: migrate_qualification_types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TypeMigration:
    types: tuple[str, ...]
    legacy_type: str
    changed: bool


def migrate_qualification_types(
    types: Sequence[str],
    legacy_type: str,
    deprecated: Iterable[str],
    replacement: str,
) -> TypeMigration:
    """Rewrite deprecated qualification tags to *replacement*.

    1. Any deprecated tag in *types*: drop all deprecated tags, append
       *replacement* at the end unless already present.
    2. *types* empty but *legacy_type* deprecated: types = [replacement].
    3. Otherwise nothing changes.

    After a rewrite the legacy single-value field is recomputed as the first
    tag (or "" for an empty list).  Idempotent as long as *replacement* is
    not itself deprecated.
    """
    deprecated_set = frozenset(deprecated)
    current = list(types)

    if any(t in deprecated_set for t in current):
        migrated = [t for t in current if t not in deprecated_set]
        if replacement not in migrated:
            migrated.append(replacement)
    elif not current and legacy_type in deprecated_set:
        migrated = [replacement]
    else:
        return TypeMigration(tuple(current), legacy_type, changed=False)

    return TypeMigration(
        tuple(migrated),
        migrated[0] if migrated else "",
        changed=True,
    )


# ---------------------------------------------------------------------------
# Helper: normalize_postal_code
# ---------------------------------------------------------------------------

def normalize_postal_code(value: str | None) -> str | None:
    """Return a 7-digit postal code, or None.

    Accepts full-width digits and separators ("〒１００－０００１" → "1000001").
    """
    v = trim(value)
    if v is None:
        return None
    digits = re.sub(r"\D", "", to_half_width(v))
    # \D keeps other Unicode digits; only ASCII counts here.
    if len(digits) != 7 or not digits.isascii():
        return None
    return digits
