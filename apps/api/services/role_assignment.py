"""
Role assignment on invitation completion.

After the invitee has an account with the identity provider, onboarding
calls one of the completion operations below. They turn the invitation
(and the questionnaire answers stored on it) into:

- the profile document (`athletes/{id}` or the coach profile set)
- the merged `users/{uid}` document carrying the final role
- a consumed invitation

Roles are never downgraded: the final role is the higher of the user's
current role and the invitation's target role.

Athlete completions also link the athlete to the inviting coach (roster,
dual coach fields) and verify the link after writing. Coach completions
publish the coach to the browse index.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.document_store import (
    ATHLETES,
    COACH_PROFILES,
    CREATOR_PROFILES,
    CREATOR_PUBLIC,
    USERS,
    DocumentStore,
    utcnow,
)
from core.exceptions import ForbiddenError, IntegrityFailure, ValidationError
from core.roles import Role, resolve_final_role, user_role
from services import audit_logger
from services.coach_athlete_links import LinkCheck, add_athlete_to_roster, roster_entry, verify_and_repair_link
from services.coach_visibility import sync_coach
from services.email_service import NOTIFY_ATHLETE_JOINED, EmailService
from services.identity import IdentityDirectory, normalize_email
from services.invitation_service import (
    ATHLETE_INVITATION,
    COACH_INVITATION,
    Invitation,
    consume_invitation,
    load_consumable_invitation,
    lock_consumable_invitation,
)
from services.slugs import SlugCollisionError, ensure_slug

logger = logging.getLogger(__name__)

# Written on every users doc touched by an invitation completion.
ROLE_PROTECTION_FLAGS = {
    "manuallySetRole": True,
    "roleProtected": True,
    "roleSource": "invitation",
    "roleLockedByInvitation": True,
}

COACH_PROFILE_ROLES = (Role.COACH, Role.ASSISTANT)


@dataclass
class AthleteOnboarding:
    athlete_id: str
    uid: str
    role: Role
    coach_id: str
    slug: Optional[str] = None
    link_check: Optional[LinkCheck] = None


@dataclass
class CoachOnboarding:
    uid: str
    role: Role
    slug: Optional[str] = None
    visible: bool = False
    warnings: List[str] = field(default_factory=list)


def _resolve_account(
    identities: IdentityDirectory,
    email: str,
    token_claims: Optional[Dict[str, Any]],
) -> str:
    identities.remember_token(token_claims)
    uid = identities.get_uid_by_email(email)
    if not uid:
        raise ValidationError("No account found. Please create your account first.", "account_not_found")
    if token_claims and token_claims.get("sub") != uid:
        raise ForbiddenError("Signed-in account does not match the email being onboarded")
    return uid


def _profile_payload(invitation: Invitation, key: str) -> Dict[str, Any]:
    payload = invitation.data.get(key)
    if not payload:
        raise ValidationError(
            "No profile data found. Please complete the onboarding questionnaire first.",
            "invitation_missing_profile_data",
        )
    return payload


def _display_name(profile: Dict[str, Any]) -> str:
    full = " ".join(p for p in (profile.get("firstName"), profile.get("lastName")) if p).strip()
    return profile.get("displayName") or full


def complete_athlete_profile(
    store: DocumentStore,
    identities: IdentityDirectory,
    email_service: EmailService,
    *,
    invitation_id: str,
    email: str,
    coach_id: Optional[str] = None,
    token_claims: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> AthleteOnboarding:
    now = now or utcnow()
    email = normalize_email(email)
    if not invitation_id or not email:
        raise ValidationError("Missing required fields: invitationId and email", "missing_fields")

    # 1. Invitation must exist, carry the questionnaire and still be consumable.
    invitation = load_consumable_invitation(store, invitation_id, now)
    profile = _profile_payload(invitation, "athleteProfile")
    target_role = invitation.target_role
    if target_role != Role.ATHLETE:
        raise ValidationError("This invitation is not an athlete invitation", "invitation_role_mismatch")

    # 2. Account created with the identity provider.
    uid = _resolve_account(identities, email, token_claims)

    # 3-4. Never downgrade an existing role.
    existing_user = store.get(USERS, uid)
    final_role = resolve_final_role(user_role(existing_user), target_role)

    # 5. The invitation is the only source of the coach.
    coach_uid = invitation.coach_uid
    if coach_id and coach_uid and coach_id != coach_uid:
        logger.warning(
            f"Coach reference mismatch on invitation {invitation_id}: request={coach_id} invitation={coach_uid}; "
            "using invitation",
            extra={"extra_fields": {"code": "coach_reference_mismatch", "invitation_id": invitation_id}},
        )
    if not coach_uid:
        logger.error(f"CRITICAL: no coach on athlete invitation {invitation_id}")
        raise IntegrityFailure(
            "Critical error: No coach found in invitation. Please contact support.",
            "coach_reference_missing",
            details={"reason": "Invitation is missing creatorUid - athlete cannot be assigned to coach"},
        )

    athlete_id = uuid.uuid4().hex
    athlete_email = normalize_email(profile.get("email")) or email
    display_name = _display_name(profile)
    athletic_profile = {
        "primarySport": profile.get("primarySport") or invitation.data.get("sport") or "",
        "secondarySports": profile.get("secondarySports") or [],
        "skillLevel": profile.get("skillLevel") or "",
        "trainingGoals": profile.get("trainingGoals") or [],
        "achievements": profile.get("achievements") or "",
        "availability": profile.get("availability") or [],
        "learningStyle": profile.get("learningStyle") or "",
        "specialNotes": profile.get("specialNotes") or "",
    }

    user_data: Dict[str, Any] = {
        "uid": uid,
        "email": athlete_email,
        "displayName": display_name,
        "firstName": profile.get("firstName") or "",
        "lastName": profile.get("lastName") or "",
        "role": final_role.value,
        "athleteId": athlete_id,
        "creatorUid": coach_uid,
        "coachId": coach_uid,
        "assignedCoachId": coach_uid,
        "lastLoginAt": now,
        "invitationId": invitation_id,
        "invitationRole": target_role.value,
        "invitationType": ATHLETE_INVITATION,
        **ROLE_PROTECTION_FLAGS,
    }
    if not existing_user or not existing_user.get("createdAt"):
        user_data["createdAt"] = now

    # 6-8 (+ roster). One transaction: all of it lands or none of it does.
    with store.transaction():
        invitation = lock_consumable_invitation(store, invitation_id, now)
        store.set(ATHLETES, athlete_id, {
            "id": athlete_id,
            "uid": uid,
            "invitationId": invitation_id,
            "creatorUid": coach_uid,
            "coachId": coach_uid,
            "assignedCoachId": coach_uid,
            "status": "active",
            "createdAt": now,
            "updatedAt": now,
            "email": athlete_email,
            "displayName": display_name,
            "firstName": profile.get("firstName") or "",
            "lastName": profile.get("lastName") or "",
            "athleticProfile": athletic_profile,
        })
        store.set(USERS, uid, user_data, merge=True)
        consume_invitation(store, invitation, uid=uid, now=now, extra={"athleteId": athlete_id})
        add_athlete_to_roster(store, coach_uid, roster_entry(
            athlete_id=athlete_id,
            uid=uid,
            name=display_name,
            email=athlete_email,
            sport=athletic_profile["primarySport"],
            skill_level=athletic_profile["skillLevel"],
            joined_at=now,
        ))

    # 9. Slug and coach notification are not part of the commit.
    slug = None
    try:
        slug = ensure_slug(store, athlete_id, display_name, "athlete")
        store.commit()
    except SlugCollisionError as e:
        store.rollback()
        logger.error(f"Failed to create slug for athlete {athlete_id}: {e}")

    _notify_coach_of_new_athlete(store, email_service, coach_uid, display_name, athletic_profile["primarySport"])

    # 11. Read back and repair the coach link.
    link_check = verify_and_repair_link(store, athlete_id=athlete_id, uid=uid, coach_uid=coach_uid)

    audit_logger.log_profile_completed(uid, invitation_id, target_role.value, final_role.value)
    logger.info(
        f"Athlete onboarding complete for invitation {invitation_id}",
        extra={"extra_fields": {"athlete_id": athlete_id, "coach_uid": coach_uid, "role": final_role.value}},
    )
    return AthleteOnboarding(
        athlete_id=athlete_id,
        uid=uid,
        role=final_role,
        coach_id=coach_uid,
        slug=slug,
        link_check=link_check,
    )


def _notify_coach_of_new_athlete(
    store: DocumentStore,
    email_service: EmailService,
    coach_uid: str,
    athlete_name: str,
    sport: Optional[str],
) -> None:
    coach = store.get(USERS, coach_uid) or {}
    if not coach.get("email"):
        return
    try:
        result = email_service.send_coach_notification(
            to_email=coach["email"],
            coach_name=coach.get("displayName") or "Coach",
            kind=NOTIFY_ATHLETE_JOINED,
            athlete_names=[athlete_name],
            sport=sport,
        )
        if not result.sent:
            logger.warning(f"Coach {coach_uid} not notified of new athlete: {result.error}")
    except Exception as e:
        logger.warning(f"Coach {coach_uid} notification failed: {e}")


def _voice_traits(voice_data: Optional[Dict[str, Any]]) -> List[str]:
    if not voice_data:
        return []
    traits: List[str] = []
    for key in ("communicationStyle", "motivationApproach"):
        if voice_data.get(key):
            traits.append(voice_data[key])
    for key in ("catchphrases", "personalityTraits"):
        if isinstance(voice_data.get(key), list):
            traits.extend(voice_data[key])
    return traits


def complete_coach_profile(
    store: DocumentStore,
    identities: IdentityDirectory,
    *,
    invitation_id: str,
    email: str,
    token_claims: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> CoachOnboarding:
    now = now or utcnow()
    email = normalize_email(email)
    if not invitation_id or not email:
        raise ValidationError("Missing required fields: invitationId and email", "missing_fields")

    invitation = load_consumable_invitation(store, invitation_id, now)
    profile = _profile_payload(invitation, "coachProfile")
    target_role = invitation.target_role
    if target_role == Role.ATHLETE:
        raise ValidationError("This invitation is an athlete invitation", "invitation_role_mismatch")

    uid = _resolve_account(identities, email, token_claims)

    existing_user = store.get(USERS, uid)
    final_role = resolve_final_role(user_role(existing_user), target_role)

    coach_email = normalize_email(profile.get("email")) or email
    display_name = _display_name(profile)
    voice_data = profile.get("voiceCaptureData") or None
    completeness = profile.get("voiceCaptureCompleteness") or "none"

    user_data: Dict[str, Any] = {
        "uid": uid,
        "email": coach_email,
        "displayName": display_name,
        "firstName": profile.get("firstName") or "",
        "lastName": profile.get("lastName") or "",
        "phone": profile.get("phone") or "",
        "location": profile.get("location") or "",
        "sport": profile.get("sport") or "",
        "role": final_role.value,
        "lastLoginAt": now,
        "invitationId": invitation_id,
        "invitationRole": target_role.value,
        "invitationType": invitation.type if invitation.type != ATHLETE_INVITATION else COACH_INVITATION,
        "voiceTraits": _voice_traits(voice_data),
        "voiceCaptureData": voice_data,
        "voiceCaptureCompleteness": completeness,
        **ROLE_PROTECTION_FLAGS,
    }
    if not existing_user or not existing_user.get("createdAt"):
        user_data["createdAt"] = now

    writes_profile = target_role in COACH_PROFILE_ROLES
    private_profile = {
        "uid": uid,
        "email": coach_email,
        "displayName": display_name,
        "firstName": profile.get("firstName") or "",
        "lastName": profile.get("lastName") or "",
        "phone": profile.get("phone") or "",
        "location": profile.get("location") or "",
        "sport": profile.get("sport") or "",
        "experience": profile.get("experience") or "",
        "credentials": profile.get("credentials") or "",
        "tagline": profile.get("tagline") or "",
        "philosophy": profile.get("philosophy") or "",
        "specialties": profile.get("specialties") or [],
        "achievements": profile.get("achievements") or [],
        "references": profile.get("references") or [],
        "sampleQuestions": profile.get("sampleQuestions") or [],
        "bio": profile.get("bio") or "",
        "voiceCaptureData": voice_data,
        "voiceCaptureCompleteness": completeness,
        "isActive": True,
        "profileComplete": True,
        "status": "approved",
        "createdAt": now,
        "updatedAt": now,
    }

    with store.transaction():
        invitation = lock_consumable_invitation(store, invitation_id, now)
        store.set(USERS, uid, user_data, merge=True)
        if writes_profile:
            store.set(CREATOR_PROFILES, uid, private_profile, merge=True)
            store.set(COACH_PROFILES, uid, private_profile, merge=True)
            store.set(CREATOR_PUBLIC, uid, {
                "id": uid,
                "name": display_name,
                "firstName": profile.get("firstName") or "",
                "sport": (profile.get("sport") or "").lower(),
                "tagline": profile.get("tagline") or "",
                "specialties": profile.get("specialties") or [],
                "experience": "coach",
                "verified": True,
                "featured": False,
                "createdAt": now,
                "updatedAt": now,
            }, merge=True)
        consume_invitation(store, invitation, uid=uid, now=now)

    result = CoachOnboarding(uid=uid, role=final_role)

    # 10. Publish to Browse Coaches. The account is already onboarded, so a
    # failed sync is reported and left for the admin resync.
    if writes_profile:
        try:
            outcome = sync_coach(store, uid, now=now)
            result.slug = outcome.slug
            result.visible = outcome.visible
        except Exception as e:
            store.rollback()
            logger.error(f"Coach {uid} onboarded but visibility sync failed: {e}", exc_info=True)
            result.warnings.append("visibility_sync_failed")

    audit_logger.log_profile_completed(uid, invitation_id, target_role.value, final_role.value)
    logger.info(
        f"Coach onboarding complete for invitation {invitation_id}",
        extra={"extra_fields": {"uid": uid, "role": final_role.value, "visible": result.visible}},
    )
    return result
