"""Shared test fixtures: an in-memory MemberStore for workflow tests."""

from __future__ import annotations

import dataclasses
from typing import Any

import pytest

from member_etl.member import MemberRecord, apply_changes
from member_etl.store import MEMBER_COLUMNS, MemberNotFoundError, MemberStoreError


class InMemoryMemberStore:
    """Dict-backed MemberStore.  Ids listed in fail_ids raise on update."""

    def __init__(self, records: list[MemberRecord] | None = None, fail_ids: set[str] | None = None) -> None:
        self.records: dict[str, MemberRecord] = {}
        self.fail_ids = set(fail_ids or ())
        self.updates: list[tuple[str, dict[str, Any]]] = []
        for record in records or []:
            self.create(record)

    def create(self, record: MemberRecord) -> str:
        member_id = record.member_id or f"m{len(self.records) + 1}"
        self.records[member_id] = dataclasses.replace(
            record,
            member_id=member_id,
            qualification_types=list(record.qualification_types),
        )
        return member_id

    def get(self, member_id: str) -> MemberRecord | None:
        return self.records.get(member_id)

    def update(self, member_id: str, changes: dict[str, Any]) -> None:
        unknown = set(changes) - set(MEMBER_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown member fields: {sorted(unknown)}")
        if member_id in self.fail_ids:
            raise MemberStoreError(f"simulated write failure for {member_id}")
        if member_id not in self.records:
            raise MemberNotFoundError(member_id)
        self.records[member_id] = apply_changes(self.records[member_id], changes)
        self.updates.append((member_id, dict(changes)))

    def delete(self, member_id: str) -> bool:
        return self.records.pop(member_id, None) is not None

    def list_all(self) -> list[MemberRecord]:
        return list(self.records.values())

    def search_by_furigana(self, prefix: str) -> list[MemberRecord]:
        return [r for r in self.records.values() if r.furigana.startswith(prefix)]


@pytest.fixture
def make_store():
    def _make(records: list[MemberRecord], fail_ids: set[str] | None = None) -> InMemoryMemberStore:
        return InMemoryMemberStore(records, fail_ids)

    return _make
