"""
Seed data builders for onboarding tests.

Every builder commits, so documents are visible to requests made through
the TestClient (which use their own sessions).
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from core.document_store import INVITATIONS, USERS, DocumentStore
from core.security import create_access_token
from services.identity import IdentityDirectory


ATHLETE_PROFILE = {
    "firstName": "Sam",
    "lastName": "Lee",
    "email": "invitee@example.com",
    "primarySport": "Soccer",
    "skillLevel": "intermediate",
    "trainingGoals": ["speed"],
}

COACH_PROFILE = {
    "firstName": "Jasmine",
    "lastName": "Aikey",
    "email": "jasmine@example.com",
    "sport": "Soccer",
    "tagline": "Play fast",
    "bio": "Former national team midfielder.",
    "specialties": ["midfield"],
    "voiceCaptureData": {
        "communicationStyle": "direct",
        "catchphrases": ["Next play"],
        "personalityTraits": ["calm"],
    },
}


def auth_headers(uid: str, email: Optional[str] = None) -> Dict[str, str]:
    claims = {"sub": uid}
    if email:
        claims["email"] = email
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


def make_user(
    store: DocumentStore,
    uid: str,
    role: Optional[str],
    email: Optional[str] = None,
    display_name: Optional[str] = None,
    **fields,
) -> Dict[str, Any]:
    """users/{uid} plus the matching identity-provider account."""
    email = email or f"{uid}@example.com"
    data = {"uid": uid, "email": email, "displayName": display_name or uid.title(), **fields}
    if role is not None:
        data["role"] = role
    store.set(USERS, uid, data)
    IdentityDirectory(store).register(uid, email, display_name)
    store.commit()
    return data


def make_account(store: DocumentStore, uid: str, email: str) -> None:
    """Identity-provider account that has no platform user document yet."""
    IdentityDirectory(store).register(uid, email)
    store.commit()


def make_invitation(
    store: DocumentStore,
    code: str,
    *,
    role: str = "athlete",
    inv_type: str = "athlete_invitation",
    coach_uid: Optional[str] = "coach-1",
    email: str = "invitee@example.com",
    name: str = "Sam Lee",
    expires_in: timedelta = timedelta(days=7),
    **fields,
) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    data = {
        "id": code,
        "code": code,
        "type": inv_type,
        "role": role,
        "recipientEmail": email,
        "recipientName": name,
        "status": "pending",
        "used": False,
        "createdBy": coach_uid or "admin-1",
        "createdAt": now,
        "expiresAt": now + expires_in,
        "resendCount": 0,
        **fields,
    }
    if coach_uid:
        data["creatorUid"] = coach_uid
        data["coachId"] = coach_uid
    store.set(INVITATIONS, code, data)
    store.commit()
    return data
