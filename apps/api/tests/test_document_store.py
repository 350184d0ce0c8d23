"""
Tests for the document store

Documents are JSON maps keyed by (collection, id) in the `document` table.
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy.dialects import postgresql

from core.database import SessionLocal
from core.document_store import (
    DocumentNotFound,
    DocumentStore,
    _sql_condition,
    get_field,
    parse_timestamp,
    to_timestamp,
)


class TestReadWrite:

    def test_set_then_get_returns_a_copy(self, store):
        store.set("users", "u1", {"email": "a@example.com", "tags": ["x"]})
        doc = store.get("users", "u1")
        doc["tags"].append("y")

        assert store.get("users", "u1") == {"email": "a@example.com", "tags": ["x"]}

    def test_get_missing_or_empty_id(self, store):
        assert store.get("users", "nobody") is None
        assert store.get("users", "") is None
        assert store.exists("users", "nobody") is False

    def test_set_overwrites_without_merge(self, store):
        store.set("users", "u1", {"a": 1, "b": 2})
        store.set("users", "u1", {"a": 3})
        assert store.get("users", "u1") == {"a": 3}

    def test_merge_is_deep(self, store):
        store.set("users", "u1", {"profile": {"first": "Sam", "last": "Lee"}, "role": "athlete"})
        store.set("users", "u1", {"profile": {"last": "Li"}}, merge=True)

        assert store.get("users", "u1") == {"profile": {"first": "Sam", "last": "Li"}, "role": "athlete"}

    def test_update_replaces_top_level_fields(self, store):
        store.set("users", "u1", {"profile": {"first": "Sam"}, "role": "athlete"})
        store.update("users", "u1", {"profile": {"last": "Lee"}})
        assert store.get("users", "u1") == {"profile": {"last": "Lee"}, "role": "athlete"}

    def test_update_missing_document_raises(self, store):
        with pytest.raises(DocumentNotFound):
            store.update("users", "ghost", {"role": "coach"})

    def test_datetimes_are_stored_as_utc_iso_strings(self, store):
        when = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
        store.set("invitations", "inv", {"expiresAt": when, "history": [{"at": when}]})
        doc = store.get("invitations", "inv")

        assert doc["expiresAt"] == "2026-03-01T12:30:00+00:00"
        assert doc["history"][0]["at"] == doc["expiresAt"]
        assert parse_timestamp(doc["expiresAt"]) == when

    def test_delete(self, store):
        store.set("creators_index", "c1", {"uid": "c1"})
        assert store.delete("creators_index", "c1") is True
        assert store.delete("creators_index", "c1") is False
        assert store.get("creators_index", "c1") is None

    def test_collections_are_separate(self, store):
        store.set("users", "same-id", {"kind": "user"})
        store.set("athletes", "same-id", {"kind": "athlete"})
        assert store.get("users", "same-id")["kind"] == "user"
        assert store.get("athletes", "same-id")["kind"] == "athlete"

    def test_locking_read_sees_other_sessions_commits(self, store):
        store.set("invitations", "i1", {"used": False})
        store.commit()
        assert store.get("invitations", "i1") == {"used": False}

        other = SessionLocal()
        try:
            DocumentStore(other).update("invitations", "i1", {"used": True})
            other.commit()
        finally:
            other.close()

        assert store.get_for_update("invitations", "i1") == {"used": True}
        assert store.get_for_update("invitations", "missing") is None


class TestQueries:

    @pytest.fixture(autouse=True)
    def _seed(self, store):
        store.set("invitations", "a", {"status": "pending", "role": "athlete", "n": 1, "tags": ["soccer"]})
        store.set("invitations", "b", {"status": "accepted", "role": "coach", "n": 5, "tags": ["tennis"]})
        store.set("invitations", "c", {"status": "pending", "role": "coach", "n": 3})
        store.commit()

    def test_equality(self, store):
        assert [s.id for s in store.where("invitations", "status", "==", "pending")] == ["a", "c"]

    def test_not_equal_skips_documents_without_the_field(self, store):
        assert [s.id for s in store.where("invitations", "tags", "!=", ["soccer"])] == ["b"]

    def test_ranges_and_in(self, store):
        assert [s.id for s in store.where("invitations", "n", ">=", 3)] == ["b", "c"]
        assert [s.id for s in store.where("invitations", "role", "in", ["coach"])] == ["b", "c"]

    def test_array_contains(self, store):
        assert [s.id for s in store.where("invitations", "tags", "array-contains", "tennis")] == ["b"]

    def test_limit(self, store):
        assert len(store.where("invitations", "status", "==", "pending", limit=1)) == 1

    def test_limit_keeps_id_order(self, store):
        assert [s.id for s in store.where("invitations", "status", "==", "pending", limit=1)] == ["a"]

    def test_dotted_path(self, store):
        store.set("athletes", "x", {"athleticProfile": {"primarySport": "Soccer"}})
        store.set("athletes", "y", {"athleticProfile": {"primarySport": "Tennis"}})
        store.set("athletes", "z", {"displayName": "No profile"})
        store.commit()
        found = store.where("athletes", "athleticProfile.primarySport", "==", "Tennis")
        assert [s.id for s in found] == ["y"]

    def test_timestamp_range(self, store):
        store.set("slots", "early", {"at": datetime(2026, 1, 1, tzinfo=timezone.utc)})
        store.set("slots", "late", {"at": datetime(2026, 6, 1, tzinfo=timezone.utc)})
        store.commit()
        found = store.where("slots", "at", "<", datetime(2026, 3, 1, tzinfo=timezone.utc))
        assert [s.id for s in found] == ["early"]

    def test_boolean_equality(self, store):
        store.set("coach_profiles", "on", {"isActive": True})
        store.set("coach_profiles", "off", {"isActive": False})
        store.commit()
        assert [s.id for s in store.where("coach_profiles", "isActive", "==", True)] == ["on"]

    def test_scalar_filters_are_built_in_sql(self):
        condition = _sql_condition("email", "==", "coach@example.com")
        assert condition is not None
        # Same shape as the expression index on data->>'email'.
        assert "->>" in str(condition.compile(dialect=postgresql.dialect()))
        assert _sql_condition("status", "in", ["pending", "expired"]) is not None
        assert _sql_condition("n", ">=", 3) is not None

    def test_list_values_fall_back_to_python_matching(self):
        assert _sql_condition("tags", "array-contains", "tennis") is None
        assert _sql_condition("tags", "!=", ["soccer"]) is None
        assert _sql_condition("role", "in", ["coach", 1]) is None

    def test_unknown_operator(self, store):
        with pytest.raises(ValueError):
            store.where("invitations", "status", "~=", "pending")

    def test_stream_is_ordered_by_id(self, store):
        assert [s.id for s in store.stream("invitations")] == ["a", "b", "c"]


class TestTransactions:

    def test_commit_on_success(self, store, read_doc):
        with store.transaction():
            store.set("users", "u1", {"role": "athlete"})
            store.set("athletes", "a1", {"uid": "u1"})

        assert read_doc("users", "u1") == {"role": "athlete"}
        assert read_doc("athletes", "a1") == {"uid": "u1"}

    def test_rollback_on_error(self, store):
        store.set("users", "u1", {"role": "athlete"})
        store.commit()

        with pytest.raises(RuntimeError):
            with store.transaction():
                store.set("users", "u1", {"role": "coach"}, merge=True)
                store.set("athletes", "a1", {"uid": "u1"})
                raise RuntimeError("boom")

        assert store.get("users", "u1") == {"role": "athlete"}
        assert store.get("athletes", "a1") is None


class TestHelpers:

    def test_get_field_dotted_path(self):
        doc = {"athleticProfile": {"primarySport": "Soccer"}}
        assert get_field(doc, "athleticProfile.primarySport") == "Soccer"
        assert get_field(doc, "athleticProfile.skillLevel") is None
        assert get_field(doc, "missing.path") is None

    def test_parse_timestamp_formats(self):
        expected = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert parse_timestamp("2026-01-01T00:00:00Z") == expected
        assert parse_timestamp(expected.timestamp()) == expected
        assert parse_timestamp(expected.timestamp() * 1000) == expected
        assert parse_timestamp(datetime(2026, 1, 1)) == expected
        assert parse_timestamp("not a date") is None
        assert parse_timestamp(None) is None

    def test_naive_datetimes_are_treated_as_utc(self):
        assert to_timestamp(datetime(2026, 1, 1)) == "2026-01-01T00:00:00+00:00"
