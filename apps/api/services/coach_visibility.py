"""
Coach visibility synchronization.

A coach's profile is written to several documents over time (the users
doc, the legacy `creator_profiles` doc, the canonical `coach_profiles`
doc). Browse Coaches reads `creators_index`, older pages read
`creatorPublic`. This module merges the sources into one profile and
projects it into both public views.

Precedence, lowest first: users doc subset < creator_profiles <
coach_profiles < explicit overrides. Only non-empty values override.

A coach is listed when `isActive and profileComplete and status ==
"approved"`. A missing status counts as approved unless
COACH_VISIBILITY_REQUIRE_EXPLICIT_APPROVAL is set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from core.config import settings
from core.document_store import (
    COACH_PROFILES,
    CREATOR_PROFILES,
    CREATOR_PUBLIC,
    CREATORS_INDEX,
    USERS,
    DocumentStore,
    utcnow,
)
from core.exceptions import NotFoundError
from services import audit_logger
from services.slugs import ensure_slug, resolve_slug

logger = logging.getLogger(__name__)

SOCIAL_NETWORKS = ("instagram", "facebook", "twitter", "linkedin", "youtube")
STATUS_APPROVED = "approved"

# Field subsets that may be hidden on the public profile via profile["visibility"].
PUBLIC_TOGGLES = {
    "tagline": ("tagline",),
    "bio": ("bio",),
    "philosophy": ("philosophy",),
    "credentials": ("credentials",),
    "specialties": ("specialties",),
    "achievements": ("achievements",),
    "heroImage": ("heroImageUrl",),
    "headshot": ("headshotUrl",),
}


def _present(value: Any) -> bool:
    return value is not None and value != "" and value != [] and value != {}


class ProfileSource:
    """One place a coach profile can be read from."""

    name = "source"

    def load(self, store: DocumentStore, uid: str) -> Dict[str, Any]:
        raise NotImplementedError


class CollectionSource(ProfileSource):
    def __init__(self, collection: str):
        self.collection = collection
        self.name = collection

    def load(self, store: DocumentStore, uid: str) -> Dict[str, Any]:
        return store.get(self.collection, uid) or {}


class UserDocumentSource(ProfileSource):
    """Identity fields denormalized on users/{uid}; never visibility flags."""

    name = USERS
    FIELDS = ("displayName", "firstName", "lastName", "email", "sport", "photoURL", "profileImageUrl", "bio")

    def load(self, store: DocumentStore, uid: str) -> Dict[str, Any]:
        user = store.get(USERS, uid) or {}
        return {k: user[k] for k in self.FIELDS if k in user}


class OverrideSource(ProfileSource):
    name = "overrides"

    def __init__(self, data: Optional[Dict[str, Any]]):
        self.data = data or {}

    def load(self, store: DocumentStore, uid: str) -> Dict[str, Any]:
        return dict(self.data)


DEFAULT_SOURCES: Sequence[ProfileSource] = (
    UserDocumentSource(),
    CollectionSource(CREATOR_PROFILES),
    CollectionSource(COACH_PROFILES),
)


def merge_profile_sources(
    store: DocumentStore,
    uid: str,
    overrides: Optional[Dict[str, Any]] = None,
    sources: Sequence[ProfileSource] = DEFAULT_SOURCES,
) -> Dict[str, Any]:
    """Merged coach profile; empty dict when no source has anything for the uid."""
    merged: Dict[str, Any] = {}
    for source in list(sources) + [OverrideSource(overrides)]:
        for key, value in source.load(store, uid).items():
            if not _present(value):
                continue
            if key == "socialLinks" and isinstance(value, dict):
                links = dict(merged.get("socialLinks") or {})
                links.update({k: v for k, v in value.items() if _present(v)})
                merged["socialLinks"] = links
            else:
                merged[key] = value
    if merged:
        merged["uid"] = uid
    return merged


def is_visible(profile: Dict[str, Any], require_explicit_approval: Optional[bool] = None) -> bool:
    if require_explicit_approval is None:
        require_explicit_approval = settings.COACH_VISIBILITY_REQUIRE_EXPLICIT_APPROVAL
    status = profile.get("status")
    status_ok = status == STATUS_APPROVED if status is not None else not require_explicit_approval
    return profile.get("isActive") is True and profile.get("profileComplete") is True and status_ok


def _first(profile: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if _present(profile.get(key)):
            return profile[key]
    return ""


def _photo_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [url.strip() for url in value if isinstance(url, str) and url.strip()]


def _display_name(profile: Dict[str, Any]) -> str:
    full = " ".join(p for p in (profile.get("firstName"), profile.get("lastName")) if p)
    return _first(profile, "displayName", "name") or full


def project_index_entry(profile: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Browse Coaches card (`creators_index`)."""
    links = profile.get("socialLinks") or {}
    social = {net: _first(profile, net) or links.get(net) or "" for net in SOCIAL_NETWORKS}
    headshot = _first(profile, "profileImageUrl", "headshotUrl", "photoURL")
    gallery = _photo_list(profile.get("galleryPhotos")) or _photo_list(profile.get("actionPhotos"))
    name = _display_name(profile)
    bio = _first(profile, "bio", "description")

    entry = {
        "uid": profile["uid"],
        "displayName": name,
        "name": name,
        "firstName": profile.get("firstName") or "",
        "lastName": profile.get("lastName") or "",
        "email": profile.get("email") or "",
        "sport": profile.get("sport") or "",
        "location": profile.get("location") or "",
        "bio": bio,
        "description": bio,
        "tagline": profile.get("tagline") or "",
        "credentials": profile.get("credentials") or "",
        "philosophy": profile.get("philosophy") or "",
        "experience": profile.get("experience") or "",
        "specialties": profile.get("specialties") if isinstance(profile.get("specialties"), list) else [],
        "achievements": profile.get("achievements") if isinstance(profile.get("achievements"), list) else [],
        "profileImageUrl": headshot,
        "headshotUrl": _first(profile, "headshotUrl", "profileImageUrl", "photoURL"),
        "photoURL": headshot,
        "bannerUrl": _first(profile, "heroImageUrl", "bannerUrl", "coverImageUrl"),
        "heroImageUrl": profile.get("heroImageUrl") or "",
        "coverImageUrl": _first(profile, "coverImageUrl", "heroImageUrl"),
        "showcasePhoto1": profile.get("showcasePhoto1") or "",
        "showcasePhoto2": profile.get("showcasePhoto2") or "",
        "galleryPhotos": gallery,
        "actionPhotos": _photo_list(profile.get("actionPhotos")),
        "highlightVideo": profile.get("highlightVideo") or "",
        "socialLinks": social,
        "isActive": True,
        "profileComplete": True,
        "status": STATUS_APPROVED,
        "role": profile.get("role") or "coach",
        "isVerified": bool(profile.get("isVerified", False)),
        "verified": bool(profile.get("verified", profile.get("isVerified", False))),
        "featured": bool(profile.get("featured", False)),
        "lastUpdated": now,
    }
    entry.update(social)
    if profile.get("slug"):
        entry["slug"] = profile["slug"]
    return entry


def project_public_profile(profile: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Legacy public profile (`creatorPublic`), honoring per-field visibility toggles."""
    toggles = profile.get("visibility") or {}
    public = {
        "id": profile["uid"],
        "uid": profile["uid"],
        "name": _display_name(profile),
        "displayName": _display_name(profile),
        "firstName": profile.get("firstName") or "",
        "sport": (profile.get("sport") or "").lower(),
        "experience": profile.get("experience") or "coach",
        "tagline": profile.get("tagline") or "",
        "bio": _first(profile, "bio", "description"),
        "philosophy": profile.get("philosophy") or "",
        "credentials": profile.get("credentials") or "",
        "specialties": profile.get("specialties") or [],
        "achievements": profile.get("achievements") or [],
        "heroImageUrl": _first(profile, "heroImageUrl", "profileImageUrl"),
        "headshotUrl": _first(profile, "headshotUrl", "profileImageUrl"),
        "badges": profile.get("badges") or [],
        "lessonCount": profile.get("lessonCount") or 0,
        "verified": profile.get("verified") is not False,
        "featured": bool(profile.get("featured", False)),
        "isActive": True,
        "profileComplete": True,
        "status": STATUS_APPROVED,
        "updatedAt": now,
        "lastSyncedAt": now,
        "syncSource": "automatic",
    }
    for toggle, fields in PUBLIC_TOGGLES.items():
        if toggles.get(toggle) is False:
            for field_name in fields:
                public[field_name] = [] if isinstance(public[field_name], list) else ""
    if profile.get("slug"):
        public["slug"] = profile["slug"]
    return public


@dataclass
class SyncOutcome:
    uid: str
    visible: bool
    action: str  # published | hidden
    slug: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"uid": self.uid, "visible": self.visible, "action": self.action, "slug": self.slug}


def sync_coach(
    store: DocumentStore,
    uid: str,
    overrides: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> SyncOutcome:
    """
    Publish a coach to the browse index and public profile, or withdraw them.

    Visible coaches get a slug if they have none. Coaches failing the
    visibility predicate are removed from `creators_index` and marked
    inactive on `creatorPublic`.
    """
    now = now or utcnow()
    profile = merge_profile_sources(store, uid, overrides)
    if not profile:
        raise NotFoundError("Coach profile", uid, error_code="coach_profile_not_found")

    if not is_visible(profile):
        removed = store.delete(CREATORS_INDEX, uid)
        if store.exists(CREATOR_PUBLIC, uid):
            store.set(CREATOR_PUBLIC, uid, {"isActive": False, "updatedAt": now}, merge=True)
        store.commit()
        if removed:
            logger.info(f"Removed coach {uid} from browse index (not visible)")
        return SyncOutcome(uid=uid, visible=False, action="hidden")

    profile["slug"] = ensure_slug(store, uid, _display_name(profile), "coach")
    store.set(CREATORS_INDEX, uid, project_index_entry(profile, now), merge=True)
    store.set(CREATOR_PUBLIC, uid, project_public_profile(profile, now), merge=True)
    store.commit()

    audit_logger.log_audit(
        action="coach.synced_to_public",
        actor_uid=uid,
        metadata={"collections": [CREATORS_INDEX, CREATOR_PUBLIC], "slug": profile["slug"]},
    )
    return SyncOutcome(uid=uid, visible=True, action="published", slug=profile["slug"])


def _coach_ids(store: DocumentStore) -> List[str]:
    ids = {snap.id for snap in store.stream(COACH_PROFILES)}
    ids.update(snap.id for snap in store.stream(CREATOR_PROFILES))
    return sorted(ids)


def sync_all_coaches(store: DocumentStore, uids: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Run `sync_coach` for every coach profile; failures are reported per coach."""
    targets = list(uids) if uids is not None else _coach_ids(store)
    results: List[Dict[str, Any]] = []
    published = hidden = errors = 0

    for uid in targets:
        try:
            outcome = sync_coach(store, uid)
        except Exception as e:
            store.rollback()
            logger.exception(f"Failed to sync coach {uid}")
            errors += 1
            results.append({"uid": uid, "visible": False, "action": "error", "error": str(e)})
            continue
        if outcome.visible:
            published += 1
        else:
            hidden += 1
        results.append(outcome.to_dict())

    logger.info(f"Coach sync complete: {published} published, {hidden} hidden, {errors} errors")
    return {
        "totalCoaches": len(targets),
        "syncedCount": published,
        "hiddenCount": hidden,
        "errorCount": errors,
        "results": results,
    }


def list_visible_coaches(store: DocumentStore, sport: Optional[str] = None) -> List[Dict[str, Any]]:
    coaches = [snap.data for snap in store.stream(CREATORS_INDEX) if is_visible(snap.data)]
    if sport:
        wanted = sport.strip().lower()
        coaches = [c for c in coaches if (c.get("sport") or "").lower() == wanted]
    coaches.sort(key=lambda c: (not c.get("featured"), (c.get("displayName") or "").lower()))
    return coaches


def get_public_coach(store: DocumentStore, slug: str) -> Dict[str, Any]:
    uid = resolve_slug(store, slug, entity_type="coach")
    entry = store.get(CREATORS_INDEX, uid) if uid else None
    if not entry or not is_visible(entry):
        raise NotFoundError("Coach", slug, error_code="coach_not_found")
    store.commit()
    return entry
