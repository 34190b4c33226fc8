"""Integration tests for PgMemberStore.

Requires a real PostgreSQL database (via pytest-postgresql).
"""

from __future__ import annotations

import uuid

import pytest

from member_etl.member import MemberRecord
from member_etl.store import MemberNotFoundError, MemberStoreError, PgMemberStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def conn(db_conn):
    connection, _ = db_conn
    yield connection


@pytest.fixture()
def store(conn):
    return PgMemberStore(conn)


def _record(**kwargs) -> MemberRecord:
    defaults = dict(
        name="桐谷 舞",
        furigana="きりたに まい",
        qualification_types=["ベビーマッサージマスター", "ベビーヨガマスター"],
        phone="090-9874-4033",
        prefecture="大阪府",
        city_address="大阪市淀川区新高4-3-11",
    )
    defaults.update(kwargs)
    return MemberRecord(**defaults)


# ---------------------------------------------------------------------------
# create / get
# ---------------------------------------------------------------------------

class TestCreateAndGet:
    def test_round_trip(self, store):
        member_id = store.create(_record())
        record = store.get(member_id)
        assert record.member_id == member_id
        assert record.name == "桐谷 舞"
        assert record.qualification_types == ["ベビーマッサージマスター", "ベビーヨガマスター"]
        assert record.street_address == ""

    def test_generated_legacy_type_column(self, store, conn):
        member_id = store.create(_record())
        row = conn.execute("SELECT qualification_type FROM member WHERE id = %s", (member_id,)).fetchone()
        assert row[0] == "ベビーマッサージマスター"

    def test_empty_types(self, store, conn):
        member_id = store.create(_record(qualification_types=[]))
        assert store.get(member_id).qualification_types == []
        row = conn.execute("SELECT qualification_type FROM member WHERE id = %s", (member_id,)).fetchone()
        assert row[0] == ""

    def test_get_missing(self, store):
        assert store.get(str(uuid.uuid4())) is None

    def test_get_malformed_id_returns_none(self, store):
        assert store.get("not-a-uuid") is None
        member_id = store.create(_record())
        assert store.get(member_id) is not None

    def test_invalid_postal_code_rejected(self, store):
        with pytest.raises(MemberStoreError):
            store.create(_record(postal_code="123"))
        # failed insert rolled back only its own savepoint
        assert store.create(_record(postal_code="5320033"))


# ---------------------------------------------------------------------------
# update
# ---------------------------------------------------------------------------

class TestUpdate:
    def test_partial_update(self, store, conn):
        member_id = store.create(_record())
        store.update(member_id, {"city_address": "大阪市淀川区新高", "street_address": "4-3-11"})
        record = store.get(member_id)
        assert record.city_address == "大阪市淀川区新高"
        assert record.street_address == "4-3-11"
        assert record.phone == "090-9874-4033"

    def test_updating_types_moves_legacy_type(self, store, conn):
        member_id = store.create(_record())
        store.update(member_id, {"qualification_types": ["ベビーヨガマスター", "ベビマ"]})
        row = conn.execute("SELECT qualification_type FROM member WHERE id = %s", (member_id,)).fetchone()
        assert row[0] == "ベビーヨガマスター"

    def test_bumps_updated_at(self, store, conn):
        member_id = store.create(_record())
        conn.commit()
        store.update(member_id, {"notes": "moved"})
        created, updated = conn.execute(
            "SELECT created_at, updated_at FROM member WHERE id = %s", (member_id,)
        ).fetchone()
        assert updated > created

    def test_unknown_field(self, store):
        member_id = store.create(_record())
        with pytest.raises(ValueError, match="qualification_type"):
            store.update(member_id, {"qualification_type": "ベビマ"})

    def test_missing_member(self, store):
        with pytest.raises(MemberNotFoundError):
            store.update(str(uuid.uuid4()), {"notes": "x"})

    def test_constraint_violation_keeps_other_writes(self, store):
        keep = store.create(_record(name="朝田 海瑠"))
        bad = store.create(_record())
        with pytest.raises(MemberStoreError):
            store.update(bad, {"postal_code": "abc"})
        store.update(keep, {"postal_code": "5300001"})
        assert store.get(keep).postal_code == "5300001"
        assert store.get(bad).postal_code == ""

    def test_empty_changes_is_noop(self, store):
        member_id = store.create(_record())
        store.update(member_id, {})
        assert store.get(member_id).name == "桐谷 舞"


# ---------------------------------------------------------------------------
# delete / list / search
# ---------------------------------------------------------------------------

class TestQueries:
    def test_delete(self, store):
        member_id = store.create(_record())
        assert store.delete(member_id) is True
        assert store.get(member_id) is None
        assert store.delete(member_id) is False

    def test_delete_malformed_id(self, store):
        assert store.delete("not-a-uuid") is False

    def test_update_malformed_id(self, store):
        with pytest.raises(MemberNotFoundError):
            store.update("not-a-uuid", {"notes": "x"})

    def test_list_all_newest_first(self, store, conn):
        first = store.create(_record(name="first"))
        conn.commit()
        second = store.create(_record(name="second"))
        conn.commit()
        assert [r.member_id for r in store.list_all()] == [second, first]

    def test_search_by_furigana_prefix(self, store):
        store.create(_record(name="桐谷 舞", furigana="きりたに まい"))
        store.create(_record(name="朝田 海瑠", furigana="あさだ みる"))
        store.create(_record(name="桐山 優", furigana="きりやま ゆう"))
        names = [r.name for r in store.search_by_furigana("きり")]
        assert names == ["桐谷 舞", "桐山 優"]

    def test_search_escapes_wildcards(self, store):
        store.create(_record(name="a", furigana="あさだ"))
        assert store.search_by_furigana("%") == []
        assert store.search_by_furigana("_さだ") == []
