"""
Coach profile router.

Coaches edit their own canonical profile (`coach_profiles/{uid}`); every
write is followed by a visibility sync so Browse Coaches and the public
profile page stay current. Browse and public profile reads need no token.
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from core.auth import CurrentUser, require_role
from core.document_store import COACH_PROFILES, DocumentStore, get_document_store, utcnow
from core.roles import Role
from services.coach_visibility import get_public_coach, list_visible_coaches, sync_coach

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["coaches"])

require_coach_profile_owner = require_role([Role.ASSISTANT, Role.COACH, Role.ADMIN, Role.SUPERADMIN])


class CoachProfileUpdate(BaseModel):
    """Editable coach profile fields. Approval status is admin-owned and not accepted here."""

    displayName: Optional[str] = Field(default=None, max_length=120)
    firstName: Optional[str] = Field(default=None, max_length=60)
    lastName: Optional[str] = Field(default=None, max_length=60)
    sport: Optional[str] = None
    location: Optional[str] = None
    tagline: Optional[str] = Field(default=None, max_length=200)
    bio: Optional[str] = Field(default=None, max_length=5000)
    philosophy: Optional[str] = None
    credentials: Optional[str] = None
    experience: Optional[str] = None
    specialties: Optional[List[str]] = None
    achievements: Optional[List[str]] = None
    profileImageUrl: Optional[str] = None
    headshotUrl: Optional[str] = None
    heroImageUrl: Optional[str] = None
    coverImageUrl: Optional[str] = None
    showcasePhoto1: Optional[str] = None
    showcasePhoto2: Optional[str] = None
    galleryPhotos: Optional[List[str]] = None
    actionPhotos: Optional[List[str]] = None
    highlightVideo: Optional[str] = None
    socialLinks: Optional[Dict[str, str]] = None
    visibility: Optional[Dict[str, bool]] = None
    isActive: Optional[bool] = None
    profileComplete: Optional[bool] = None


@router.put("/coach-profile")
def update_coach_profile(
    request: CoachProfileUpdate,
    current_user: CurrentUser = Depends(require_coach_profile_owner),
    store: DocumentStore = Depends(get_document_store),
):
    changes = request.model_dump(exclude_unset=True)
    now = utcnow()
    store.set(COACH_PROFILES, current_user.uid, {**changes, "uid": current_user.uid, "updatedAt": now}, merge=True)
    store.commit()
    logger.info(f"Coach {current_user.uid} updated profile fields {sorted(changes)}")

    outcome = sync_coach(store, current_user.uid, now=now)
    return {
        "success": True,
        "data": {
            "uid": current_user.uid,
            "updatedFields": sorted(changes),
            "visible": outcome.visible,
            "slug": outcome.slug,
        },
    }


@router.get("/coaches")
def browse_coaches(
    sport: Optional[str] = Query(default=None),
    store: DocumentStore = Depends(get_document_store),
):
    coaches = list_visible_coaches(store, sport)
    return {"success": True, "data": {"count": len(coaches), "coaches": coaches}}


@router.get("/coach-profile/{slug}")
def public_coach_profile(slug: str, store: DocumentStore = Depends(get_document_store)):
    return {"success": True, "data": get_public_coach(store, slug)}
