"""member_etl.migration_rules

YAML-based normalization rules for member data.

Responsibilities:
  - Load and validate YAML rule files from config/normalization_rules/*.yml
  - Describe qualification-tag migrations (deprecated tag set -> replacement)
  - Carry the address-split policy (whether the loose fallback is allowed)
  - Hash YAML content for traceability in run reports

Usage:
    from pathlib import Path
    from member_etl.migration_rules import load_rule_set

    rule_set = load_rule_set(Path("config/normalization_rules/baby_massage.yml"))
    for rule in rule_set.type_migrations:
        print(rule.name, sorted(rule.deprecated), "->", rule.replacement)
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUIRED_YAML_KEYS = frozenset({"version", "type_migrations"})

REQUIRED_MIGRATION_KEYS = frozenset({"name", "deprecated", "replacement"})

BABY_MASSAGE_DEPRECATED = frozenset({
    "ベビーマッサージマスター",
    "ベビーマッサージインストラクター",
    "ベビーマッサージ",
})
BABY_MASSAGE_REPLACEMENT = "ベビマ"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RuleSetValidationError(ValueError):
    """Raised when a YAML rule file fails schema validation."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TypeMigrationRule:
    name: str
    deprecated: frozenset[str]
    replacement: str


@dataclass
class RuleSet:
    """Parsed, validated normalization rule set loaded from a YAML file."""

    version: str
    yaml_hash: str
    type_migrations: list[TypeMigrationRule]
    allow_loose_split: bool = True
    raw_yaml: str = field(repr=False, default="")


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_rule_set(yaml_path: Path) -> RuleSet:
    """Load, validate, and return a RuleSet from a YAML file.

    Args:
        yaml_path: Absolute or relative path to the YAML rule file.

    Returns:
        A validated RuleSet instance.

    Raises:
        RuleSetValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    return parse_rule_set(raw)


def parse_rule_set(raw: str) -> RuleSet:
    """Validate and build a RuleSet from raw YAML text."""
    try:
        data: dict[str, Any] = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise RuleSetValidationError(f"Invalid YAML: {exc}") from exc
    validate_rule_set(data)
    yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    address = data.get("address") or {}
    return RuleSet(
        version=str(data["version"]),
        yaml_hash=yaml_hash,
        type_migrations=[
            TypeMigrationRule(
                name=str(m["name"]),
                deprecated=frozenset(str(t).strip() for t in m["deprecated"]),
                replacement=str(m["replacement"]).strip(),
            )
            for m in data["type_migrations"]
        ],
        allow_loose_split=bool(address.get("allow_loose_split", True)),
        raw_yaml=raw,
    )


def validate_rule_set(data: dict[str, Any]) -> None:
    """Raise RuleSetValidationError if data does not match required schema.

    Validates:
      - Required top-level keys present
      - type_migrations is a list of mappings with unique names
      - each migration has a non-empty deprecated list and a non-blank
        replacement that is not itself deprecated
      - address.allow_loose_split, when present, is a boolean
    """
    if not isinstance(data, dict):
        raise RuleSetValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise RuleSetValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    migrations = data.get("type_migrations")
    if not isinstance(migrations, list):
        raise RuleSetValidationError("'type_migrations' must be a list.")

    seen_names: set[str] = set()
    for idx, migration in enumerate(migrations):
        if not isinstance(migration, dict):
            raise RuleSetValidationError(f"type_migrations[{idx}] must be a mapping.")
        missing = REQUIRED_MIGRATION_KEYS - set(migration.keys())
        if missing:
            raise RuleSetValidationError(
                f"type_migrations[{idx}] missing keys: {sorted(missing)}"
            )

        name = str(migration["name"])
        if name in seen_names:
            raise RuleSetValidationError(f"Duplicate type_migration name '{name}'.")
        seen_names.add(name)

        deprecated = migration["deprecated"]
        if not isinstance(deprecated, list) or not deprecated:
            raise RuleSetValidationError(
                f"type_migration '{name}': 'deprecated' must be a non-empty list."
            )

        replacement = migration["replacement"]
        if replacement is None or not str(replacement).strip():
            raise RuleSetValidationError(
                f"type_migration '{name}': 'replacement' must not be blank."
            )
        if str(replacement).strip() in {str(t).strip() for t in deprecated}:
            raise RuleSetValidationError(
                f"type_migration '{name}': replacement '{replacement}' "
                "is itself in the deprecated set."
            )

    address = data.get("address")
    if address is not None:
        if not isinstance(address, dict):
            raise RuleSetValidationError("'address' must be a mapping.")
        loose = address.get("allow_loose_split", True)
        if not isinstance(loose, bool):
            raise RuleSetValidationError(
                f"'address.allow_loose_split' must be a boolean, got '{loose}'."
            )


def default_rule_set() -> RuleSet:
    """Built-in rule set: fold the baby-massage certifications into ベビマ."""
    return RuleSet(
        version="builtin",
        yaml_hash="",
        type_migrations=[
            TypeMigrationRule(
                name="baby_massage",
                deprecated=BABY_MASSAGE_DEPRECATED,
                replacement=BABY_MASSAGE_REPLACEMENT,
            )
        ],
    )
