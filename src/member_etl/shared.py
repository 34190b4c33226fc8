"""member_etl.shared

Shared utilities used by every batch mode: RejectWriter, RunCounters and
run-report writing.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any

from member_etl.context import RunContext


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Common counters
    members_read: int = 0
    members_updated: int = 0
    members_unchanged: int = 0
    write_failures: int = 0
    # import_members
    members_inserted: int = 0
    members_rejected: int = 0
    # address_fix
    members_selected: int = 0
    addresses_split: int = 0
    width_converted: int = 0
    # type_migration
    members_migrated: int = 0
    # postal_backfill
    postal_lookups: int = 0
    postal_codes_found: int = 0
    postal_codes_not_found: int = 0
    lookup_errors: int = 0
    safe_stop_reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

_REPORT_SECTIONS: dict[str, tuple[str, ...]] = {
    "import_members": ("members_read", "members_inserted", "members_rejected", "write_failures"),
    "address_fix": (
        "members_read", "members_selected", "addresses_split", "width_converted",
        "members_updated", "members_unchanged", "write_failures",
    ),
    "type_migration": (
        "members_read", "members_migrated", "members_unchanged",
        "members_updated", "write_failures",
    ),
    "postal_backfill": (
        "members_read", "postal_lookups", "postal_codes_found",
        "postal_codes_not_found", "lookup_errors", "members_updated", "write_failures",
    ),
}


def build_run_report(ctx: RunContext, counters: RunCounters) -> str:
    """Render the counters relevant to ctx.mode as a fixed-width text block."""
    keys = _REPORT_SECTIONS.get(ctx.mode, tuple(counters.to_dict().keys()))
    width = max(len(k) for k in keys) + 1
    lines = [
        f"=== {ctx.mode} run report ===",
        f"{'run_id'.ljust(width)}: {ctx.run_id}",
        f"{'dry_run'.ljust(width)}: {ctx.dry_run}",
        "",
    ]
    for key in keys:
        lines.append(f"{key.ljust(width)}: {getattr(counters, key)}")
    if counters.safe_stop_reason:
        lines.append(f"{'safe_stop_reason'.ljust(width)}: {counters.safe_stop_reason}")
    if counters.warnings:
        lines.append("")
        lines.append(f"--- Warnings ({len(counters.warnings)}) ---")
        lines.extend(f"  {w}" for w in counters.warnings[:20])
    return "\n".join(lines)


def write_run_report(
    ctx: RunContext,
    source_paths: dict[str, str],
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": ctx.run_id,
        "mode": ctx.mode,
        "started_at": ctx.started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": ctx.dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{ctx.run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str, ensure_ascii=False), encoding="utf-8")
    return report_path
