"""
Human-readable slugs for public URLs.

Public pages never expose raw document ids. Each athlete/coach gets a slug
derived from the display name plus trailing id characters:

    coach "Jasmine Aikey", uid ...abc123   -> jasmine-aikey-abc123
    coach "Cher", uid ...9f8e7d6c          -> cher-9f8e7d6c
    athlete "Sam Lee", id ...x1y2z3        -> athlete-sam-lee-x1y2z3

The mapping lives in `secure_slug_mappings/{slug}` and the slug is copied
onto the owning document.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Callable, Optional

from core.document_store import (
    ATHLETES,
    COACH_PROFILES,
    SLUG_MAPPINGS,
    DocumentStore,
    utcnow,
)

logger = logging.getLogger(__name__)

ENTITY_COLLECTIONS = {
    "athlete": ATHLETES,
    "coach": COACH_PROFILES,
}

MAX_SLUG_ATTEMPTS = 5


class SlugCollisionError(RuntimeError):
    pass


def clean_name(display_name: Optional[str]) -> str:
    name = (display_name or "").lower().strip()
    name = re.sub(r"[^a-z0-9\s-]", "", name)
    name = re.sub(r"\s+", "-", name)
    name = re.sub(r"-+", "-", name)
    return name.strip("-")


def generate_slug(display_name: Optional[str], seed_id: str, entity_type: str = "coach") -> str:
    cleaned = clean_name(display_name)
    if entity_type == "athlete":
        return f"athlete-{cleaned or 'profile'}-{seed_id[-6:]}"

    parts = [p for p in cleaned.split("-") if p]
    if len(parts) >= 2:
        return f"{parts[0]}-{parts[-1]}-{seed_id[-6:]}"
    return f"{cleaned or entity_type}-{seed_id[-8:]}"


def find_slug(store: DocumentStore, original_id: str, entity_type: str) -> Optional[str]:
    for snap in store.where(SLUG_MAPPINGS, "originalId", "==", original_id):
        if snap.data.get("entityType") == entity_type:
            return snap.data.get("slug") or snap.id
    return None


def ensure_slug(
    store: DocumentStore,
    original_id: str,
    display_name: Optional[str],
    entity_type: str,
    clock: Callable[[], float] = time.time,
) -> str:
    """
    Return the entity's slug, creating the mapping when it has none.

    A slug already owned by another entity is regenerated from the id plus
    a timestamp until a free one is found.
    """
    if entity_type not in ENTITY_COLLECTIONS:
        raise ValueError(f"Unknown slug entity type: {entity_type}")

    existing = find_slug(store, original_id, entity_type)
    if existing:
        return existing

    seed = original_id
    for attempt in range(MAX_SLUG_ATTEMPTS):
        slug = generate_slug(display_name, seed, entity_type)
        mapping = store.get(SLUG_MAPPINGS, slug)
        if mapping is None or mapping.get("originalId") == original_id:
            break
        logger.info(f"Slug {slug} already taken, regenerating")
        seed = f"{original_id}{int(clock() * 1000)}{attempt}"
    else:
        raise SlugCollisionError(f"Could not find a free slug for {entity_type} {original_id}")

    now = utcnow()
    store.set(
        SLUG_MAPPINGS,
        slug,
        {
            "slug": slug,
            "originalId": original_id,
            "entityType": entity_type,
            "displayName": display_name or "",
            "createdAt": now,
            "lastUsed": now,
        },
        merge=True,
    )
    store.set(ENTITY_COLLECTIONS[entity_type], original_id, {"slug": slug, "lastUpdated": now}, merge=True)
    logger.info(f"Created slug mapping {slug} ({entity_type})")
    return slug


def resolve_slug(store: DocumentStore, slug: str, entity_type: Optional[str] = None) -> Optional[str]:
    """Original id behind a slug (None when unknown); touches lastUsed."""
    mapping = store.get(SLUG_MAPPINGS, slug)
    if not mapping:
        return None
    if entity_type and mapping.get("entityType") != entity_type:
        return None
    store.update(SLUG_MAPPINGS, slug, {"lastUsed": utcnow()})
    return mapping.get("originalId")
