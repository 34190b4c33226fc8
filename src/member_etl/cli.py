"""member_etl.cli

Unified member-data CLI.

Modes:
  import_members   load a JSON array of legacy member documents
  address_fix      split street numbers off city addresses, half-width digits
  type_migration   rewrite deprecated qualification tags
  postal_backfill  fill missing postal codes from the member's address
  postal_lookup    print the address for one postal code (no database)

The database DSN is read from --db-dsn or from the env var named by
--db-dsn-env and handed to the workflow through a RunContext.
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import click
import psycopg

from member_etl.context import (
    DEFAULT_DSN_ENV,
    MissingCredentialError,
    RunContext,
    resolve_db_dsn,
)
from member_etl.migration_rules import (
    RuleSet,
    RuleSetValidationError,
    default_rule_set,
    load_rule_set,
)
from member_etl.postal_lookup import PostalLookupClient, PostalLookupError, RateLimiter
from member_etl.shared import RejectWriter, RunCounters, build_run_report, write_run_report
from member_etl.store import MemberStore, MemberStoreError, PgMemberStore

log = logging.getLogger(__name__)

MODES = [
    "import_members",
    "address_fix",
    "type_migration",
    "postal_backfill",
    "postal_lookup",
]


@contextmanager
def _open_store(ctx: RunContext) -> Iterator[MemberStore]:
    """Yield a PgMemberStore; commit on success unless dry-run, else roll back."""
    conn = psycopg.connect(ctx.require_dsn(), autocommit=False)
    try:
        yield PgMemberStore(conn)
        if ctx.dry_run:
            conn.rollback()
        else:
            conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _load_rules(rule_file: str | None, run_id: str) -> RuleSet:
    if not rule_file:
        return default_rule_set()
    try:
        return load_rule_set(Path(rule_file))
    except (RuleSetValidationError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: cannot load rule file {rule_file}: {exc}", err=True)
        sys.exit(1)


def _run_postal_lookup(postal_code: str | None, allow_loose: bool, run_id: str) -> None:
    if not postal_code:
        click.echo(f"[{run_id}] ERROR: --postal-code is required for postal_lookup", err=True)
        sys.exit(1)
    client = PostalLookupClient()
    try:
        address = client.lookup(postal_code)
    except PostalLookupError as exc:
        click.echo(f"[{run_id}] ERROR: lookup failed: {exc}", err=True)
        sys.exit(1)
    if address is None:
        click.echo(f"[{run_id}] no address found for postal code {postal_code}", err=True)
        sys.exit(1)

    split = address.split(allow_loose=allow_loose)
    click.echo(f"postal_code   : {address.postal_code}")
    click.echo(f"prefecture    : {address.prefecture}")
    click.echo(f"municipality  : {address.municipality_and_below}")
    click.echo(f"city_portion  : {split.city_portion}")
    click.echo(f"street_portion: {split.street_portion}")


@click.command()
@click.option(
    "--mode",
    required=True,
    type=click.Choice(MODES),
    help="Batch mode",
)
@click.option("--db-dsn", default=None, help="PostgreSQL DSN (overrides --db-dsn-env)")
@click.option(
    "--db-dsn-env",
    default=DEFAULT_DSN_ENV,
    show_default=True,
    help="Env var name holding the PostgreSQL DSN",
)
@click.option("--rule-file", default=None, type=click.Path(), help="YAML normalization rule file")
@click.option("--json-path", default=None, type=click.Path(), help="[import_members] Input JSON array")
@click.option("--postal-code", default=None, help="[postal_lookup] 7-digit postal code")
@click.option(
    "--loose-split/--no-loose-split",
    default=None,
    help="[address_fix|postal_lookup] Allow the first-digit fallback split "
         "(default: from rule file, else on)",
)
@click.option("--request-delay-seconds", default=1.0, type=float, show_default=True,
              help="[postal_backfill] Base delay between lookups in seconds")
@click.option("--request-jitter-seconds", default=0.5, type=float, show_default=True,
              help="[postal_backfill] Random ±jitter added to each delay")
@click.option("--max-consecutive-failures", default=5, type=int, show_default=True,
              help="[postal_backfill] Stop after this many consecutive lookup failures")
@click.option("--max-lookups", default=None, type=int,
              help="[postal_backfill] Limit total lookups (for testing)")
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/member_rejects.csv",
    show_default=True,
)
@click.option("--report-dir", default="./artifacts/reports", show_default=True, type=click.Path())
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str | None,
    db_dsn_env: str,
    rule_file: str | None,
    json_path: str | None,
    postal_code: str | None,
    loose_split: bool | None,
    request_delay_seconds: float,
    request_jitter_seconds: float,
    max_consecutive_failures: int,
    max_lookups: int | None,
    dry_run: bool,
    rejects_path: str,
    report_dir: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Member data normalization and migration CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    rules = _load_rules(rule_file, run_id)
    allow_loose = rules.allow_loose_split if loose_split is None else loose_split

    if mode == "postal_lookup":
        _run_postal_lookup(postal_code, allow_loose, run_id)
        return

    if mode == "import_members" and not json_path:
        click.echo(f"[{run_id}] ERROR: --json-path is required for import_members", err=True)
        sys.exit(1)

    # Credentials come from the CLI or env, never from module state
    try:
        dsn = resolve_db_dsn(db_dsn, db_dsn_env)
    except MissingCredentialError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    ctx = RunContext(mode=mode, dry_run=dry_run, db_dsn=dsn, run_id=run_id)
    counters = RunCounters()
    rejects = RejectWriter(Path(rejects_path))
    click.echo(f"[{ctx.run_id}] Starting {mode} run (dry_run={dry_run})")

    source_paths: dict[str, str] = {"rejects_path": rejects_path}
    if rule_file:
        source_paths["rule_file"] = rule_file
        source_paths["rule_yaml_hash"] = rules.yaml_hash

    try:
        with _open_store(ctx) as store:
            if mode == "import_members":
                from member_etl.import_members import ImportFormatError, run_import

                source_paths["json_path"] = json_path  # type: ignore[assignment]
                try:
                    run_import(Path(json_path), store, counters, rejects, dry_run=dry_run)  # type: ignore[arg-type]
                except (ImportFormatError, FileNotFoundError) as exc:
                    click.echo(f"[{ctx.run_id}] FATAL: {exc}", err=True)
                    sys.exit(1)

            elif mode == "address_fix":
                from member_etl.address_fix import run_address_fix

                run_address_fix(store, counters, rejects, allow_loose=allow_loose, dry_run=dry_run)

            elif mode == "type_migration":
                from member_etl.type_migration import run_type_migration

                run_type_migration(store, rules.type_migrations, counters, rejects, dry_run=dry_run)

            elif mode == "postal_backfill":
                from member_etl.postal_backfill import run_postal_backfill

                rate_limiter = RateLimiter(
                    base_delay=request_delay_seconds,
                    jitter=request_jitter_seconds,
                    max_consecutive_failures=max_consecutive_failures,
                )
                run_postal_backfill(
                    store, PostalLookupClient(), rate_limiter, counters, rejects,
                    dry_run=dry_run, max_lookups=max_lookups,
                )
    except (psycopg.Error, MemberStoreError) as exc:
        click.echo(f"[{ctx.run_id}] FATAL: database error: {exc}", err=True)
        sys.exit(1)
    finally:
        rejects.close()

    click.echo(build_run_report(ctx, counters))
    report_path = write_run_report(ctx, source_paths, counters, report_dir=Path(report_dir))
    click.echo(f"[{ctx.run_id}] Run report: {report_path}")

    if counters.write_failures > 0 and not dry_run:
        click.echo(
            f"[{ctx.run_id}] {counters.write_failures} write failures; exiting non-zero",
            err=True,
        )
        sys.exit(1)
    if counters.safe_stop_reason:
        click.echo(f"[{ctx.run_id}] Safe stop: {counters.safe_stop_reason}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
