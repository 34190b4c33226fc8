"""member_etl.import_members

Bulk import of legacy member documents.

Input is a JSON array of member documents in the legacy shape
(``name``, ``furigana``, ``type``/``types``, ``address``, ``streetAddress``,
``postalCode``, ``number``, ...).  Rows without a name are rejected with
reason ``blank_name``; everything else is normalized on the way in
(half-width address digits, 7-digit postal code) and created.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from member_etl.member import MemberRecord, normalize_new_member
from member_etl.normalize import normalize_space
from member_etl.shared import RejectWriter, RunCounters
from member_etl.store import MemberStore, MemberStoreError

log = logging.getLogger(__name__)


class ImportFormatError(ValueError):
    """Raised when the import file is not a JSON array of objects."""


def load_documents(path: Path) -> list[dict[str, Any]]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ImportFormatError(f"{path}: invalid JSON: {exc}") from exc
    if not isinstance(data, list):
        raise ImportFormatError(f"{path}: expected a JSON array of member documents")
    return data


def run_import(
    path: Path,
    store: MemberStore,
    counters: RunCounters,
    rejects: RejectWriter,
    dry_run: bool = False,
) -> None:
    for idx, doc in enumerate(load_documents(path)):
        counters.members_read += 1
        if not isinstance(doc, dict):
            counters.members_rejected += 1
            rejects.write({"row": idx, "document": json.dumps(doc, ensure_ascii=False)}, "not_an_object")
            continue

        name = normalize_space(str(doc.get("name") or ""))
        if not name:
            counters.members_rejected += 1
            rejects.write({"row": idx, "document": json.dumps(doc, ensure_ascii=False)}, "blank_name")
            continue

        record = normalize_new_member(MemberRecord.from_document({**doc, "name": name}))
        if dry_run:
            counters.members_inserted += 1
            continue

        try:
            member_id = store.create(record)
        except MemberStoreError as exc:
            counters.write_failures += 1
            counters.warnings.append(f"insert failed row={idx}: {exc}")
            log.warning("import insert failed row=%d: %s", idx, exc)
            rejects.write({"row": idx, "document": json.dumps(doc, ensure_ascii=False)}, "write_failed")
            continue
        log.debug("imported row=%d member_id=%s", idx, member_id)
        counters.members_inserted += 1
