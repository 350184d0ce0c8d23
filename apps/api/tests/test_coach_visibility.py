"""
Tests for coach visibility sync: profile merge precedence, the visibility
predicate, projection into creators_index / creatorPublic, and the
public browse endpoints.
"""
import pytest
from fastapi.testclient import TestClient

from main import app
from core.config import settings
from core.document_store import COACH_PROFILES, CREATOR_PROFILES, CREATOR_PUBLIC, CREATORS_INDEX, USERS
from core.exceptions import NotFoundError
from services.coach_visibility import (
    is_visible,
    merge_profile_sources,
    project_public_profile,
    sync_all_coaches,
    sync_coach,
)
from fixtures.onboarding_fixtures import auth_headers, make_user


client = TestClient(app)

VISIBLE = {"isActive": True, "profileComplete": True, "status": "approved"}


def _coach(store, uid="coach-1", name="Jasmine Aikey", **profile):
    first, _, last = name.partition(" ")
    make_user(store, uid, "coach", email=f"{uid}@example.com", display_name=name, firstName=first, lastName=last)
    store.set(COACH_PROFILES, uid, {"displayName": name, "sport": "Soccer", **profile}, merge=True)
    store.commit()


class TestMergeSources:

    def test_precedence(self, store):
        store.set(USERS, "c1", {"displayName": "From Users", "email": "c1@example.com", "role": "coach",
                                "isActive": False})
        store.set(CREATOR_PROFILES, "c1", {"displayName": "From Creator", "bio": "old bio", "tagline": "old"})
        store.set(COACH_PROFILES, "c1", {"tagline": "new", "bio": ""})

        merged = merge_profile_sources(store, "c1", overrides={"sport": "Tennis"})

        assert merged["displayName"] == "From Creator"
        assert merged["tagline"] == "new"
        # empty values never override
        assert merged["bio"] == "old bio"
        assert merged["sport"] == "Tennis"
        assert merged["email"] == "c1@example.com"
        # visibility flags are not taken from the users doc
        assert "isActive" not in merged
        assert merged["uid"] == "c1"

    def test_social_links_are_merged(self, store):
        store.set(CREATOR_PROFILES, "c1", {"socialLinks": {"instagram": "@old", "youtube": "yt"}})
        store.set(COACH_PROFILES, "c1", {"socialLinks": {"instagram": "@new", "twitter": ""}})

        links = merge_profile_sources(store, "c1")["socialLinks"]
        assert links == {"instagram": "@new", "youtube": "yt"}

    def test_no_sources(self, store):
        assert merge_profile_sources(store, "nobody") == {}


class TestVisibilityPredicate:

    def test_all_flags_required(self):
        assert is_visible(dict(VISIBLE))
        assert not is_visible({**VISIBLE, "isActive": False})
        assert not is_visible({**VISIBLE, "profileComplete": False})
        assert not is_visible({**VISIBLE, "status": "pending"})

    def test_missing_flags_are_not_visible(self):
        assert not is_visible({"status": "approved"})

    def test_missing_status(self):
        profile = {"isActive": True, "profileComplete": True}
        assert is_visible(profile, require_explicit_approval=False)
        assert not is_visible(profile, require_explicit_approval=True)

    def test_setting_controls_default(self, monkeypatch):
        monkeypatch.setattr(settings, "COACH_VISIBILITY_REQUIRE_EXPLICIT_APPROVAL", True)
        assert not is_visible({"isActive": True, "profileComplete": True})


class TestSync:

    def test_visible_coach_is_published(self, store, read_doc):
        _coach(store, instagram="@jas", profileImageUrl="https://img/j.png", **VISIBLE)

        outcome = sync_coach(store, "coach-1")

        assert outcome.visible and outcome.action == "published"
        assert outcome.slug == "jasmine-aikey-oach-1"
        index = read_doc(CREATORS_INDEX, "coach-1")
        assert index["slug"] == outcome.slug
        assert index["socialLinks"]["instagram"] == "@jas"
        assert index["headshotUrl"] == "https://img/j.png"
        assert index["photoURL"] == "https://img/j.png"
        assert read_doc(CREATOR_PUBLIC, "coach-1")["isActive"] is True
        assert read_doc(COACH_PROFILES, "coach-1")["slug"] == outcome.slug

    def test_slug_is_reused_on_resync(self, store):
        _coach(store, **VISIBLE)
        first = sync_coach(store, "coach-1").slug
        assert sync_coach(store, "coach-1").slug == first

    def test_hidden_coach_is_withdrawn(self, store, read_doc):
        _coach(store, **VISIBLE)
        sync_coach(store, "coach-1")

        store.set(COACH_PROFILES, "coach-1", {"isActive": False}, merge=True)
        store.commit()
        outcome = sync_coach(store, "coach-1")

        assert not outcome.visible and outcome.action == "hidden"
        assert read_doc(CREATORS_INDEX, "coach-1") is None
        assert read_doc(CREATOR_PUBLIC, "coach-1")["isActive"] is False

    def test_overrides_win(self, store, read_doc):
        _coach(store, tagline="stored", **VISIBLE)
        sync_coach(store, "coach-1", overrides={"tagline": "override"})
        assert read_doc(CREATORS_INDEX, "coach-1")["tagline"] == "override"

    def test_unknown_coach(self, store):
        with pytest.raises(NotFoundError):
            sync_coach(store, "ghost")

    def test_public_profile_toggles(self):
        profile = {"uid": "c1", "displayName": "C One", "tagline": "hi", "specialties": ["a"],
                   "visibility": {"tagline": False, "specialties": False}}
        public = project_public_profile(profile, now=None)
        assert public["tagline"] == ""
        assert public["specialties"] == []
        assert public["name"] == "C One"


class TestSyncAll:

    def test_zero_profiles(self, store):
        assert sync_all_coaches(store) == {
            "totalCoaches": 0,
            "syncedCount": 0,
            "hiddenCount": 0,
            "errorCount": 0,
            "results": [],
        }

    def test_mixed(self, store):
        _coach(store, "coach-1", "Jasmine Aikey", **VISIBLE)
        _coach(store, "coach-2", "Pat Hidden", isActive=False, profileComplete=True)
        store.set(CREATOR_PROFILES, "coach-3", {"displayName": "Legacy Only", **VISIBLE})
        store.commit()

        summary = sync_all_coaches(store)

        assert summary["totalCoaches"] == 3
        assert summary["syncedCount"] == 2
        assert summary["hiddenCount"] == 1
        assert summary["errorCount"] == 0
        assert {r["uid"] for r in summary["results"] if r["visible"]} == {"coach-1", "coach-3"}

    def test_admin_endpoints(self, store):
        make_user(store, "admin-1", "admin")
        _coach(store, **VISIBLE)

        resp = client.post("/v1/admin/sync-coaches", headers=auth_headers("admin-1"))
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["syncedCount"] == 1

        one = client.post("/v1/admin/coaches/coach-1/sync", headers=auth_headers("admin-1"))
        assert one.status_code == 200, one.text
        assert one.json()["data"]["visible"] is True

        missing = client.post("/v1/admin/coaches/ghost/sync", headers=auth_headers("admin-1"))
        assert missing.status_code == 404
        assert missing.json()["code"] == "coach_profile_not_found"


class TestCoachProfileEndpoints:

    def test_update_then_browse(self, store):
        _coach(store, **VISIBLE)

        resp = client.put("/v1/coach-profile", json={"tagline": "Quick feet", "sport": "Futsal"},
                          headers=auth_headers("coach-1"))
        assert resp.status_code == 200, resp.text
        data = resp.json()["data"]
        assert data["visible"] is True
        assert data["updatedFields"] == ["sport", "tagline"]

        browse = client.get("/v1/coaches", params={"sport": "futsal"}).json()["data"]
        assert browse["count"] == 1
        assert browse["coaches"][0]["tagline"] == "Quick feet"

        page = client.get(f"/v1/coach-profile/{data['slug']}")
        assert page.status_code == 200
        assert page.json()["data"]["uid"] == "coach-1"

    def test_coach_hides_profile(self, store):
        _coach(store, **VISIBLE)
        first = client.put("/v1/coach-profile", json={"bio": "hello"}, headers=auth_headers("coach-1"))
        slug = first.json()["data"]["slug"]

        resp = client.put("/v1/coach-profile", json={"isActive": False}, headers=auth_headers("coach-1"))
        assert resp.json()["data"]["visible"] is False
        assert client.get("/v1/coaches").json()["data"]["count"] == 0
        assert client.get(f"/v1/coach-profile/{slug}").status_code == 404

    def test_status_is_not_editable(self, store):
        _coach(store, isActive=True, profileComplete=True, status="pending")
        resp = client.put("/v1/coach-profile", json={"status": "approved"}, headers=auth_headers("coach-1"))
        assert resp.status_code == 200
        assert resp.json()["data"]["visible"] is False

    def test_athlete_cannot_edit(self, store):
        make_user(store, "ath-1", "athlete")
        resp = client.put("/v1/coach-profile", json={"bio": "x"}, headers=auth_headers("ath-1"))
        assert resp.status_code == 403

    def test_unknown_slug(self):
        resp = client.get("/v1/coach-profile/nobody-123456")
        assert resp.status_code == 404
        assert resp.json()["code"] == "coach_not_found"
