"""member_etl.address_fix

Batch address normalization over the whole member population.

Processing order:
  1.  Read every member once (store.list_all)
  2.  Select members with an unsplit street number or full-width digits
  3.  Per selected member:
      a.  Convert city/street address digits to half width
      b.  Split the street number off the city address when unambiguous
      c.  One store.update with every changed field (skipped on dry-run)

A failed write is counted, logged and written to the rejects file; the
remaining members are still processed.
"""

from __future__ import annotations

import logging

from member_etl.member import (
    OUTCOME_SPLIT,
    needs_address_fix,
    normalize_member_address,
)
from member_etl.shared import RejectWriter, RunCounters
from member_etl.store import MemberStore, MemberStoreError

log = logging.getLogger(__name__)


def run_address_fix(
    store: MemberStore,
    counters: RunCounters,
    rejects: RejectWriter,
    allow_loose: bool = True,
    dry_run: bool = False,
) -> None:
    members = store.list_all()
    counters.members_read = len(members)

    for record in members:
        if not needs_address_fix(record):
            counters.members_unchanged += 1
            continue
        counters.members_selected += 1

        result = normalize_member_address(record, allow_loose=allow_loose)
        if result.outcome == OUTCOME_SPLIT:
            counters.addresses_split += 1
        if result.width_converted:
            counters.width_converted += 1

        if not result.changed:
            counters.members_unchanged += 1
            continue

        log.info(
            "address fix member_id=%s %r/%r -> %r",
            record.member_id, record.city_address, record.street_address, result.changes,
        )
        if dry_run:
            continue

        try:
            store.update(record.member_id, result.changes)
        except MemberStoreError as exc:
            counters.write_failures += 1
            counters.warnings.append(f"write failed member_id={record.member_id}: {exc}")
            log.warning("address fix write failed member_id=%s: %s", record.member_id, exc)
            rejects.write(
                {
                    "member_id": record.member_id,
                    "name": record.name,
                    "city_address": record.city_address,
                    "street_address": record.street_address,
                },
                "write_failed",
            )
            continue
        counters.members_updated += 1
