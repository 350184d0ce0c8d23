"""
Tests for coach-athlete link maintenance: roster dedup, read-back repair
after onboarding, and the admin backfill.
"""
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from main import app
from core.document_store import ATHLETES, USERS
from services.coach_athlete_links import (
    add_athlete_to_roster,
    fix_all_athlete_coach_assignments,
    roster_entry,
    verify_and_repair_link,
)
from fixtures.onboarding_fixtures import auth_headers, make_invitation, make_user


client = TestClient(app)

JOINED = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _entry(athlete_id, uid):
    return roster_entry(
        athlete_id=athlete_id,
        uid=uid,
        name="Sam Lee",
        email="sam@example.com",
        sport="Soccer",
        skill_level="beginner",
        joined_at=JOINED,
    )


@pytest.fixture
def coach(store):
    return make_user(store, "coach-1", "coach", email="coach@example.com")


class TestRoster:

    def test_adds_entry_and_count(self, coach, store):
        assert add_athlete_to_roster(store, "coach-1", _entry("a1", "u1")) is True
        doc = store.get(USERS, "coach-1")
        assert doc["athleteCount"] == 1
        assert doc["athletes"][0]["joinedAt"] == "2026-01-01T00:00:00+00:00"

    def test_dedup_by_athlete_id(self, coach, store):
        add_athlete_to_roster(store, "coach-1", _entry("a1", "u1"))
        assert add_athlete_to_roster(store, "coach-1", _entry("a1", "u1")) is False
        assert store.get(USERS, "coach-1")["athleteCount"] == 1

    def test_dedup_by_uid(self, coach, store):
        add_athlete_to_roster(store, "coach-1", _entry("a1", "u1"))
        assert add_athlete_to_roster(store, "coach-1", _entry("a2", "u1")) is False
        assert len(store.get(USERS, "coach-1")["athletes"]) == 1

    def test_stale_count_is_corrected(self, store):
        make_user(store, "coach-1", "coach", athletes=[_entry("a1", "u1")], athleteCount=0)
        add_athlete_to_roster(store, "coach-1", _entry("a1", "u1"))
        assert store.get(USERS, "coach-1")["athleteCount"] == 1

    def test_missing_coach_document(self, store):
        assert add_athlete_to_roster(store, "ghost", _entry("a1", "u1")) is False


class TestVerifyAndRepair:

    def test_consistent_link_is_left_alone(self, store):
        store.set(ATHLETES, "a1", {"uid": "u1", "coachId": "coach-1", "assignedCoachId": "coach-1"})
        store.set(USERS, "u1", {"coachId": "coach-1", "assignedCoachId": "coach-1"})

        check = verify_and_repair_link(store, athlete_id="a1", uid="u1", coach_uid="coach-1")
        assert check.ok

    def test_empty_and_disagreeing_fields_are_repaired(self, store, read_doc, caplog):
        store.set(ATHLETES, "a1", {"uid": "u1", "coachId": "coach-1", "assignedCoachId": ""})
        store.set(USERS, "u1", {"coachId": "coach-2", "assignedCoachId": "coach-1", "role": "athlete"})

        check = verify_and_repair_link(store, athlete_id="a1", uid="u1", coach_uid="coach-1")

        assert not check.ok
        assert check.repaired == [ATHLETES, USERS]
        athlete = read_doc(ATHLETES, "a1")
        user = read_doc(USERS, "u1")
        assert athlete["coachId"] == athlete["assignedCoachId"] == "coach-1"
        assert user["coachId"] == user["assignedCoachId"] == "coach-1"
        assert user["role"] == "athlete"
        assert "EMERGENCY" in caplog.text


class TestFixAllAssignments:

    def test_backfill_then_rerun_skips(self, coach, store):
        make_invitation(store, "athlete-invite-1-a", coach_uid="coach-1")
        store.set(ATHLETES, "a1", {"uid": "u1", "email": "one@example.com", "invitationId": "athlete-invite-1-a",
                                   "displayName": "One"})
        make_user(store, "u1", "athlete", email="one@example.com")
        store.set(ATHLETES, "a2", {"uid": "u2", "email": "two@example.com",
                                   "coachId": "coach-1", "assignedCoachId": "coach-1"})
        make_user(store, "u2", "athlete", email="two@example.com", coachId="coach-1", assignedCoachId="coach-1")

        first = fix_all_athlete_coach_assignments(store)
        assert first["totalAthletes"] == 2
        assert first["fixedCount"] == 1
        assert first["skippedCount"] == 1
        assert first["errorCount"] == 0
        fixed = next(r for r in first["results"] if r["athleteId"] == "a1")
        assert fixed["status"] == "fixed"
        assert fixed["coachUid"] == "coach-1"

        assert store.get(ATHLETES, "a1")["assignedCoachId"] == "coach-1"
        assert store.get(USERS, "u1")["coachId"] == "coach-1"
        assert [a["id"] for a in store.get(USERS, "coach-1")["athletes"]] == ["a1"]

        second = fix_all_athlete_coach_assignments(store)
        assert second["fixedCount"] == 0
        assert second["skippedCount"] == 2

    def test_falls_back_to_coach_on_athlete_doc(self, coach, store):
        store.set(ATHLETES, "a1", {"uid": "u1", "creatorUid": "coach-1"})
        make_user(store, "u1", "athlete")

        summary = fix_all_athlete_coach_assignments(store)
        assert summary["fixedCount"] == 1
        assert store.get(USERS, "u1")["assignedCoachId"] == "coach-1"

    def test_reports_errors_per_athlete(self, coach, store):
        store.set(ATHLETES, "a1", {"uid": "u1", "invitationId": "missing-invite"})
        store.set(ATHLETES, "a2", {"uid": "u2", "coachId": "ghost-coach"})
        store.commit()

        summary = fix_all_athlete_coach_assignments(store)
        assert summary["errorCount"] == 2
        reasons = {r["athleteId"]: r["reason"] for r in summary["results"]}
        assert reasons["a1"] == "Invitation missing-invite not found"
        assert reasons["a2"] == "Coach account not found"

    def test_endpoint(self, store):
        make_user(store, "admin-1", "admin")
        resp = client.post("/v1/admin/fix-athlete-coach-assignment", headers=auth_headers("admin-1"))
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"] == {
            "totalAthletes": 0,
            "fixedCount": 0,
            "skippedCount": 0,
            "errorCount": 0,
            "results": [],
        }

    def test_endpoint_requires_admin(self, coach):
        resp = client.post("/v1/admin/fix-athlete-coach-assignment", headers=auth_headers("coach-1"))
        assert resp.status_code == 403
