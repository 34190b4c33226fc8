"""member_etl.type_migration

Batch qualification-tag migration: rewrite deprecated tags across every
member according to the rule set, one write per changed member.
"""

from __future__ import annotations

import logging

from member_etl.member import migrate_member_types
from member_etl.migration_rules import TypeMigrationRule
from member_etl.shared import RejectWriter, RunCounters
from member_etl.store import MemberStore, MemberStoreError

log = logging.getLogger(__name__)


def run_type_migration(
    store: MemberStore,
    rules: list[TypeMigrationRule],
    counters: RunCounters,
    rejects: RejectWriter,
    dry_run: bool = False,
) -> None:
    members = store.list_all()
    counters.members_read = len(members)

    for record in members:
        result = migrate_member_types(record, rules)
        if not result.changed:
            counters.members_unchanged += 1
            continue

        counters.members_migrated += 1
        log.info(
            "migrate member_id=%s name=%s %s -> %s (rules=%s)",
            record.member_id,
            record.name,
            ", ".join(record.qualification_types) or "-",
            ", ".join(result.qualification_types) or "-",
            ",".join(result.applied_rules),
        )
        if dry_run:
            continue

        try:
            store.update(record.member_id, {"qualification_types": result.qualification_types})
        except MemberStoreError as exc:
            counters.write_failures += 1
            counters.warnings.append(f"write failed member_id={record.member_id}: {exc}")
            log.warning("type migration write failed member_id=%s: %s", record.member_id, exc)
            rejects.write(
                {
                    "member_id": record.member_id,
                    "name": record.name,
                    "qualification_types": "|".join(record.qualification_types),
                },
                "write_failed",
            )
            continue
        counters.members_updated += 1
