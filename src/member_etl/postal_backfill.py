"""member_etl.postal_backfill

Fill in missing postal codes from the member's address.

For every member with an address but no postal code, the full address
(prefecture + city address + street address) is searched on the lookup
service and the first hit is written back.  Lookups are rate limited;
consecutive lookup failures past the limiter's threshold stop the run
with safe_stop_reason set.
"""

from __future__ import annotations

import logging

from member_etl.member import MemberRecord
from member_etl.postal_lookup import (
    PostalLookupClient,
    PostalLookupError,
    RateLimiter,
    search_query,
)
from member_etl.shared import RejectWriter, RunCounters
from member_etl.store import MemberStore, MemberStoreError

log = logging.getLogger(__name__)


def _search_address(record: MemberRecord) -> str:
    city = record.city_address
    if record.prefecture and not city.startswith(record.prefecture):
        city = record.prefecture + city
    return city + record.street_address


def run_postal_backfill(
    store: MemberStore,
    client: PostalLookupClient,
    rate_limiter: RateLimiter,
    counters: RunCounters,
    rejects: RejectWriter,
    dry_run: bool = False,
    max_lookups: int | None = None,
) -> None:
    members = store.list_all()
    counters.members_read = len(members)

    for record in members:
        if record.postal_code or not record.city_address:
            counters.members_unchanged += 1
            continue
        address = _search_address(record)
        if search_query(address) is None:
            # no request would be made
            log.debug("address not searchable member_id=%s %r", record.member_id, address)
            counters.members_unchanged += 1
            continue
        if max_lookups is not None and counters.postal_lookups >= max_lookups:
            counters.warnings.append(f"max_lookups={max_lookups} reached")
            break

        if counters.postal_lookups:
            rate_limiter.sleep()
        counters.postal_lookups += 1
        try:
            postal_code = client.search_postal_code(address)
        except PostalLookupError as exc:
            counters.lookup_errors += 1
            counters.warnings.append(f"lookup failed member_id={record.member_id}: {exc}")
            log.warning("postal lookup failed member_id=%s: %s", record.member_id, exc)
            if rate_limiter.on_failure(str(exc)):
                counters.safe_stop_reason = "lookup_failed_safe_stop"
                log.error("stopping after %d consecutive lookup failures",
                          rate_limiter.consecutive_failures)
                break
            continue
        rate_limiter.on_success()

        if postal_code is None:
            counters.postal_codes_not_found += 1
            continue
        counters.postal_codes_found += 1
        log.info("postal code member_id=%s -> %s", record.member_id, postal_code)
        if dry_run:
            continue

        try:
            store.update(record.member_id, {"postal_code": postal_code})
        except MemberStoreError as exc:
            counters.write_failures += 1
            counters.warnings.append(f"write failed member_id={record.member_id}: {exc}")
            log.warning("postal backfill write failed member_id=%s: %s", record.member_id, exc)
            rejects.write(
                {"member_id": record.member_id, "name": record.name, "postal_code": postal_code},
                "write_failed",
            )
            continue
        counters.members_updated += 1
