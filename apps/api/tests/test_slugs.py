"""
Tests for public slugs
"""
import pytest

from core.document_store import ATHLETES, COACH_PROFILES, SLUG_MAPPINGS
from services.slugs import SlugCollisionError, clean_name, ensure_slug, generate_slug, resolve_slug


class TestGenerateSlug:

    def test_coach_with_first_and_last_name(self):
        assert generate_slug("Jasmine Aikey", "uid-abc123") == "jasmine-aikey-abc123"

    def test_coach_middle_names_are_dropped(self):
        assert generate_slug("Mary Ann Smith", "uid-abc123") == "mary-smith-abc123"

    def test_single_name_uses_longer_suffix(self):
        assert generate_slug("Cher", "uid-9f8e7d6c") == "cher-9f8e7d6c"

    def test_athlete_prefix(self):
        assert generate_slug("Sam Lee", "athlete-x1y2z3", "athlete") == "athlete-sam-lee-x1y2z3"

    def test_empty_name(self):
        assert generate_slug("", "uid-9f8e7d6c") == "coach-9f8e7d6c"
        assert generate_slug(None, "abc123", "athlete") == "athlete-profile-abc123"

    def test_clean_name(self):
        assert clean_name("  José   O'Neil!! ") == "jos-oneil"


class TestEnsureSlug:

    def test_creates_mapping_and_denormalizes(self, store):
        slug = ensure_slug(store, "uid-abc123", "Jasmine Aikey", "coach")

        assert slug == "jasmine-aikey-abc123"
        mapping = store.get(SLUG_MAPPINGS, slug)
        assert mapping["originalId"] == "uid-abc123"
        assert mapping["entityType"] == "coach"
        assert store.get(COACH_PROFILES, "uid-abc123")["slug"] == slug

    def test_existing_mapping_is_reused_even_after_rename(self, store):
        first = ensure_slug(store, "uid-abc123", "Jasmine Aikey", "coach")
        assert ensure_slug(store, "uid-abc123", "Jasmine Smith", "coach") == first

    def test_collision_regenerates(self, store):
        store.set(SLUG_MAPPINGS, "sam-lee-abc123", {"originalId": "someone-else", "entityType": "coach"})

        slug = ensure_slug(store, "uid-abc123", "Sam Lee", "coach", clock=lambda: 1_700_000_000.5)

        assert slug != "sam-lee-abc123"
        assert slug.startswith("sam-lee-")
        assert store.get(SLUG_MAPPINGS, slug)["originalId"] == "uid-abc123"

    def test_gives_up_after_repeated_collisions(self, store, monkeypatch):
        store.set(SLUG_MAPPINGS, "taken", {"originalId": "someone-else"})
        monkeypatch.setattr("services.slugs.generate_slug", lambda *args, **kwargs: "taken")

        with pytest.raises(SlugCollisionError):
            ensure_slug(store, "uid-abc123", "Sam Lee", "coach")

    def test_athlete_slug_lands_on_athlete_doc(self, store):
        store.set(ATHLETES, "ath-x1y2z3", {"uid": "u1"})
        slug = ensure_slug(store, "ath-x1y2z3", "Sam Lee", "athlete")
        athlete = store.get(ATHLETES, "ath-x1y2z3")
        assert athlete["slug"] == slug == "athlete-sam-lee-x1y2z3"
        assert athlete["uid"] == "u1"

    def test_unknown_entity_type(self, store):
        with pytest.raises(ValueError):
            ensure_slug(store, "x", "X", "team")


class TestResolveSlug:

    def test_resolve_touches_last_used(self, store):
        slug = ensure_slug(store, "uid-abc123", "Jasmine Aikey", "coach")
        before = store.get(SLUG_MAPPINGS, slug)["lastUsed"]

        assert resolve_slug(store, slug, "coach") == "uid-abc123"
        assert store.get(SLUG_MAPPINGS, slug)["lastUsed"] >= before

    def test_entity_type_must_match(self, store):
        slug = ensure_slug(store, "uid-abc123", "Jasmine Aikey", "coach")
        assert resolve_slug(store, slug, "athlete") is None

    def test_unknown(self, store):
        assert resolve_slug(store, "nobody-000000") is None
