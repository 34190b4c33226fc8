"""member_etl.store

Member persistence boundary.

MemberStore is the interface the batch workflows depend on; PgMemberStore
implements it over a psycopg connection and the ``member`` table
(migrations/0001_member.sql).  The legacy ``qualification_type`` column is
generated from ``qualification_types`` so it can never be written directly.

Transaction control stays with the caller: PgMemberStore never commits.
Each write runs inside ``conn.transaction()``, which becomes a savepoint
when a transaction is already open, so a failed write rolls back only
itself and the batch can carry on.
"""

from __future__ import annotations

import uuid
from typing import Any, Protocol

import psycopg

from member_etl.member import MemberRecord

# MemberRecord attributes stored as plain columns
MEMBER_COLUMNS = (
    "name",
    "furigana",
    "qualification_types",
    "phone",
    "prefecture",
    "member_number",
    "email",
    "city_address",
    "street_address",
    "postal_code",
    "notes",
)

_SELECT_MEMBER = f"SELECT id, {', '.join(MEMBER_COLUMNS)} FROM member"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MemberStoreError(Exception):
    """Raised when the underlying store rejects a read or write."""


class MemberNotFoundError(MemberStoreError):
    """Raised when updating a member id that does not exist."""


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class MemberStore(Protocol):
    def create(self, record: MemberRecord) -> str:
        """Insert *record* and return its new id."""
        ...

    def get(self, member_id: str) -> MemberRecord | None:
        ...

    def update(self, member_id: str, changes: dict[str, Any]) -> None:
        ...

    def delete(self, member_id: str) -> bool:
        ...

    def list_all(self) -> list[MemberRecord]:
        ...

    def search_by_furigana(self, prefix: str) -> list[MemberRecord]:
        ...


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

def _row_to_record(row: tuple[Any, ...]) -> MemberRecord:
    values = dict(zip(MEMBER_COLUMNS, row[1:]))
    values["qualification_types"] = list(values["qualification_types"] or [])
    return MemberRecord(member_id=str(row[0]), **values)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _is_member_id(value: str) -> bool:
    """True when *value* can be an id in the member table (a UUID)."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PgMemberStore:
    """MemberStore over a psycopg connection (autocommit off)."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def create(self, record: MemberRecord) -> str:
        placeholders = ", ".join(["%s"] * len(MEMBER_COLUMNS))
        params = [
            list(record.qualification_types) if col == "qualification_types" else getattr(record, col)
            for col in MEMBER_COLUMNS
        ]
        try:
            with self._conn.transaction():
                row = self._conn.execute(
                    f"INSERT INTO member ({', '.join(MEMBER_COLUMNS)}) "
                    f"VALUES ({placeholders}) RETURNING id",
                    params,
                ).fetchone()
        except psycopg.Error as exc:
            raise MemberStoreError(f"insert failed for {record.name!r}: {exc}") from exc
        return str(row[0])

    def get(self, member_id: str) -> MemberRecord | None:
        if not _is_member_id(member_id):
            return None
        try:
            with self._conn.transaction():
                row = self._conn.execute(
                    f"{_SELECT_MEMBER} WHERE id = %s", (member_id,)
                ).fetchone()
        except psycopg.Error as exc:
            raise MemberStoreError(f"read failed for member_id={member_id}: {exc}") from exc
        return _row_to_record(row) if row else None

    def update(self, member_id: str, changes: dict[str, Any]) -> None:
        """Write *changes* (MemberRecord attribute -> value) and bump updated_at."""
        unknown = set(changes) - set(MEMBER_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown member fields: {sorted(unknown)}")
        if not changes:
            return
        if not _is_member_id(member_id):
            raise MemberNotFoundError(f"member_id={member_id} not found")

        assignments = ", ".join(f"{col} = %s" for col in changes)
        params = [list(v) if col == "qualification_types" else v for col, v in changes.items()]
        try:
            with self._conn.transaction():
                cur = self._conn.execute(
                    f"UPDATE member SET {assignments}, updated_at = now() WHERE id = %s",
                    [*params, member_id],
                )
                if cur.rowcount == 0:
                    raise MemberNotFoundError(f"member_id={member_id} not found")
        except psycopg.Error as exc:
            raise MemberStoreError(f"update failed for member_id={member_id}: {exc}") from exc

    def delete(self, member_id: str) -> bool:
        if not _is_member_id(member_id):
            return False
        try:
            with self._conn.transaction():
                cur = self._conn.execute("DELETE FROM member WHERE id = %s", (member_id,))
        except psycopg.Error as exc:
            raise MemberStoreError(f"delete failed for member_id={member_id}: {exc}") from exc
        return cur.rowcount > 0

    def list_all(self) -> list[MemberRecord]:
        try:
            rows = self._conn.execute(
                f"{_SELECT_MEMBER} ORDER BY created_at DESC, id"
            ).fetchall()
        except psycopg.Error as exc:
            raise MemberStoreError(f"list failed: {exc}") from exc
        return [_row_to_record(r) for r in rows]

    def search_by_furigana(self, prefix: str) -> list[MemberRecord]:
        """Members whose furigana starts with *prefix*."""
        try:
            rows = self._conn.execute(
                f"{_SELECT_MEMBER} WHERE furigana LIKE %s ORDER BY furigana, id",
                (_escape_like(prefix) + "%",),
            ).fetchall()
        except psycopg.Error as exc:
            raise MemberStoreError(f"search failed: {exc}") from exc
        return [_row_to_record(r) for r in rows]
