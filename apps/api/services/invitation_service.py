"""
Invitation records.

An invitation is the only way onto the platform. Admins invite coaches,
admins and athletes; coaches invite athletes onto their own roster.

Lifecycle:
- created `pending` (`used=False`) with an expiry
- `pending -> accepted` exactly once, when onboarding consumes it
- `pending -> declined | expired | cancelled` on explicit status changes
  or by the stale sweep
- a resend moves a non-accepted invitation back to `pending`

Invitations are never deleted. Athlete invitations always name the inviting
coach, under both `creatorUid` and `coachId`.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from core.auth import CurrentUser
from core.config import settings
from core.document_store import (
    INVITATIONS,
    USERS,
    DocumentStore,
    parse_timestamp,
    to_timestamp,
    utcnow,
)
from core.exceptions import ForbiddenError, NotFoundError, RateLimitedError, ValidationError
from core.rate_limit import ActionRateLimiter
from core.roles import Role, normalize_role, role_rank, user_role
from services import audit_logger
from services.email_service import (
    NOTIFY_INVITATION_DECLINED,
    NOTIFY_INVITATION_EXPIRED,
    NOTIFY_INVITATION_SENT,
    EmailResult,
    EmailService,
)
from services.identity import normalize_email

logger = logging.getLogger(__name__)

# Invitation types
ADMIN_INVITATION = "admin"
COACH_INVITATION = "coach_invitation"
BULK_INVITATION = "bulk_invitation"
ATHLETE_INVITATION = "athlete_invitation"
INVITATION_TYPES = (ADMIN_INVITATION, COACH_INVITATION, BULK_INVITATION, ATHLETE_INVITATION)

# Statuses
STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"
STATUS_DECLINED = "declined"
STATUS_EXPIRED = "expired"
STATUS_CANCELLED = "cancelled"
INVITATION_STATUSES = (STATUS_PENDING, STATUS_ACCEPTED, STATUS_DECLINED, STATUS_EXPIRED, STATUS_CANCELLED)

# Role implied by a type when the record has no explicit role.
TYPE_DEFAULT_ROLES = {
    ADMIN_INVITATION: Role.ADMIN,
    COACH_INVITATION: Role.COACH,
    BULK_INVITATION: Role.ATHLETE,
    ATHLETE_INVITATION: Role.ATHLETE,
}

CODE_PREFIXES = {
    ADMIN_INVITATION: "admin",
    COACH_INVITATION: "coach",
    BULK_INVITATION: "bulk",
    ATHLETE_INVITATION: "athlete-invite",
}

ONBOARD_PATHS = {
    Role.ATHLETE: "athlete-onboard",
    Role.ASSISTANT: "coach-onboard",
    Role.COACH: "coach-onboard",
    Role.ADMIN: "admin-onboard",
    Role.SUPERADMIN: "admin-onboard",
}

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_CODE_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class Invitation:
    """Read view over an invitations/{code} document."""

    id: str
    data: Dict[str, Any]

    @classmethod
    def load(cls, store: DocumentStore, invitation_id: str) -> Optional["Invitation"]:
        data = store.get(INVITATIONS, invitation_id)
        if data is None:
            return None
        return cls(id=invitation_id, data=data)

    @property
    def type(self) -> str:
        return self.data.get("type") or ATHLETE_INVITATION

    @property
    def status(self) -> str:
        return self.data.get("status") or STATUS_PENDING

    @property
    def used(self) -> bool:
        return bool(self.data.get("used"))

    @property
    def recipient_email(self) -> str:
        return normalize_email(
            self.data.get("recipientEmail") or self.data.get("athleteEmail") or self.data.get("email")
        )

    @property
    def recipient_name(self) -> str:
        return self.data.get("recipientName") or self.data.get("athleteName") or self.data.get("name") or ""

    @property
    def coach_uid(self) -> Optional[str]:
        return self.data.get("creatorUid") or self.data.get("coachId") or None

    @property
    def owner_uid(self) -> Optional[str]:
        return self.coach_uid or self.data.get("createdBy")

    @property
    def expires_at(self) -> Optional[datetime]:
        return parse_timestamp(self.data.get("expiresAt"))

    @property
    def target_role(self) -> Role:
        return normalize_role(self.data.get("role")) or TYPE_DEFAULT_ROLES.get(self.type, Role.ATHLETE)

    def is_expired(self, now: datetime) -> bool:
        expires_at = self.expires_at
        return expires_at is not None and expires_at <= now

    def ensure_consumable(self, now: datetime) -> None:
        """Raise unless this invitation can still be accepted. Never writes."""
        if self.used or self.status == STATUS_ACCEPTED:
            raise ValidationError("This invitation has already been used", "invitation_already_used")
        if self.status != STATUS_PENDING and self.status != STATUS_EXPIRED:
            raise ValidationError(f"This invitation is {self.status}", "invitation_not_pending")
        if self.status == STATUS_EXPIRED or self.is_expired(now):
            raise ValidationError("This invitation has expired", "invitation_expired")


@dataclass
class InvitationCreated:
    invitation: Invitation
    email: EmailResult


def generate_invitation_code(invitation_type: str, now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(13))
    return f"{CODE_PREFIXES[invitation_type]}-{now_ms}-{suffix}"


def invitation_url(code: str, role: Role) -> str:
    base = settings.WEB_APP_BASE_URL.rstrip("/")
    return f"{base}/{ONBOARD_PATHS[role]}/{code}"


def default_expiry_days(invitation_type: str) -> int:
    if invitation_type in (ATHLETE_INVITATION, BULK_INVITATION):
        return settings.INVITATION_EXPIRY_DAYS_ATHLETE
    return settings.INVITATION_EXPIRY_DAYS_STAFF


def _resolve_type(role: Role, requested_type: Optional[str], actor: CurrentUser) -> str:
    if requested_type is None:
        if role in (Role.ADMIN, Role.SUPERADMIN):
            return ADMIN_INVITATION
        if role == Role.ATHLETE:
            return ATHLETE_INVITATION
        return COACH_INVITATION

    if requested_type not in INVITATION_TYPES:
        raise ValidationError(f"Unknown invitation type: {requested_type}", "invalid_invitation_type")
    if requested_type == BULK_INVITATION:
        if not actor.is_staff:
            raise ForbiddenError("Only admins can send bulk invitations")
        if role in (Role.ADMIN, Role.SUPERADMIN):
            raise ValidationError("Bulk invitations cannot grant admin roles", "invalid_invitation_type")
        return BULK_INVITATION

    implied = TYPE_DEFAULT_ROLES[requested_type]
    compatible = role == implied or (requested_type == COACH_INVITATION and role == Role.ASSISTANT) or (
        requested_type == ADMIN_INVITATION and role == Role.SUPERADMIN
    )
    if not compatible:
        raise ValidationError(
            f"Invitation type {requested_type} cannot grant role {role.value}", "invalid_invitation_type"
        )
    return requested_type


def _resolve_inviting_coach(
    store: DocumentStore, actor: CurrentUser, coach_id: Optional[str]
) -> Dict[str, Any]:
    """Coach for an athlete invitation: coaches invite onto their own roster, staff must name one."""
    if actor.role == Role.COACH:
        if coach_id and coach_id != actor.uid:
            raise ForbiddenError("Coaches can only invite athletes to their own roster")
        return {"uid": actor.uid, **actor.data}

    if not coach_id:
        raise ValidationError("coachId is required for athlete invitations", "coach_required")
    coach_doc = store.get(USERS, coach_id)
    if not coach_doc:
        raise NotFoundError("Coach", coach_id, error_code="coach_not_found")
    if role_rank(user_role(coach_doc)) < role_rank(Role.COACH):
        raise ValidationError("Selected user is not a coach", "not_a_coach")
    return {"uid": coach_id, **coach_doc}


def create_invitation(
    store: DocumentStore,
    email_service: EmailService,
    *,
    actor: CurrentUser,
    recipient_email: str,
    recipient_name: str,
    role: str,
    invitation_type: Optional[str] = None,
    sport: Optional[str] = None,
    custom_message: Optional[str] = None,
    expires_in_days: Optional[int] = None,
    coach_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> InvitationCreated:
    """
    Create and persist an invitation, then email it.

    An email failure is reported in the result; the invitation is kept.
    """
    now = now or utcnow()
    email = normalize_email(recipient_email)
    name = (recipient_name or "").strip()
    if not email or not name or not role:
        raise ValidationError("Missing required fields: recipientEmail, recipientName, role", "missing_fields")
    if not _EMAIL_RE.match(email):
        raise ValidationError("recipientEmail is not a valid email address", "invalid_email")

    target_role = normalize_role(role)
    if target_role is None:
        raise ValidationError(f"Unknown role: {role}", "invalid_role")

    # Coaches only grow their own roster; only staff hand out staff roles.
    if actor.role == Role.COACH and target_role != Role.ATHLETE:
        raise ForbiddenError("Coaches can only invite athletes")
    if target_role in (Role.ADMIN, Role.SUPERADMIN) and role_rank(actor.role) < role_rank(target_role):
        raise ForbiddenError(f"Only {target_role.value}s can invite {target_role.value}s")

    inv_type = _resolve_type(target_role, invitation_type, actor)

    if store.where(USERS, "email", "==", email, limit=1):
        raise ValidationError("A user with this email already exists in the system", "user_already_exists")

    days = expires_in_days or default_expiry_days(inv_type)
    code = generate_invitation_code(inv_type, int(now.timestamp() * 1000))
    url = invitation_url(code, target_role)

    data: Dict[str, Any] = {
        "id": code,
        "code": code,
        "type": inv_type,
        "role": target_role.value,
        "recipientEmail": email,
        "recipientName": name,
        "sport": sport,
        "customMessage": custom_message,
        "invitationUrl": url,
        "status": STATUS_PENDING,
        "used": False,
        "usedAt": None,
        "usedBy": None,
        "createdBy": actor.uid,
        "createdByName": actor.display_name,
        "createdAt": now,
        "expiresAt": now + timedelta(days=days),
        "resendCount": 0,
    }

    inviter_name = actor.display_name
    if target_role == Role.ATHLETE:
        coach = _resolve_inviting_coach(store, actor, coach_id)
        inviter_name = coach.get("displayName") or coach.get("email") or "Coach"
        data.update({
            "creatorUid": coach["uid"],
            "coachId": coach["uid"],
            "coachName": inviter_name,
        })

    store.set(INVITATIONS, code, data)
    store.commit()

    result = email_service.send_invitation(
        to_email=email,
        recipient_name=name,
        inviter_name=inviter_name,
        role=target_role.value,
        invitation_url=url,
        expires_at=to_timestamp(data["expiresAt"]),
        sport=sport,
        custom_message=custom_message,
    )
    if not result.sent:
        logger.warning(
            f"Invitation {code} created but email was not sent: {result.error}",
            extra={"extra_fields": {"invitation_id": code, "email_error": result.error}},
        )
    store.update(INVITATIONS, code, {
        "emailSent": result.sent,
        "emailError": result.error,
        "lastEmailSentAt": now if result.sent else None,
    })
    store.commit()

    audit_logger.log_invitation_created(actor.uid, code, target_role.value, result.sent)
    logger.info(f"Created {inv_type} invitation {code}", extra={"extra_fields": {"invitation_id": code}})
    return InvitationCreated(invitation=Invitation.load(store, code), email=result)


def get_invitation(store: DocumentStore, invitation_id: str) -> Invitation:
    invitation = Invitation.load(store, invitation_id)
    if invitation is None:
        raise NotFoundError("Invitation", invitation_id, error_code="invitation_not_found")
    return invitation


def _ensure_can_manage(invitation: Invitation, actor: CurrentUser) -> None:
    if actor.is_staff:
        return
    if invitation.owner_uid != actor.uid:
        raise ForbiddenError("You can only manage your own invitations")


def _notify_coach(
    store: DocumentStore,
    email_service: EmailService,
    invitation: Invitation,
    kind: str,
) -> None:
    """Best-effort coach notification; failures are logged only."""
    coach_uid = invitation.coach_uid
    coach = store.get(USERS, coach_uid) if coach_uid else None
    if not coach or not coach.get("email"):
        return
    try:
        result = email_service.send_coach_notification(
            to_email=coach["email"],
            coach_name=coach.get("displayName") or "Coach",
            kind=kind,
            athlete_names=[invitation.recipient_name],
            sport=invitation.data.get("sport"),
        )
        if not result.sent:
            logger.warning(f"Coach notification ({kind}) not sent for {invitation.id}: {result.error}")
    except Exception as e:
        logger.warning(f"Coach notification ({kind}) failed for {invitation.id}: {e}")


def resend_invitation(
    store: DocumentStore,
    email_service: EmailService,
    limiter: ActionRateLimiter,
    *,
    actor: CurrentUser,
    invitation_id: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Re-send an invitation email.

    Order of checks: exists (404), caller may manage it (403), not yet
    accepted (400), resend budget for (invitation, caller) (429).
    """
    now = now or utcnow()
    invitation = get_invitation(store, invitation_id)
    _ensure_can_manage(invitation, actor)

    if invitation.used or invitation.status == STATUS_ACCEPTED:
        raise ValidationError("This invitation has already been accepted", "invitation_already_used")
    if invitation.status == STATUS_CANCELLED:
        raise ValidationError("This invitation was cancelled", "invitation_not_pending")

    decision = limiter.hit(f"{invitation_id}:{actor.uid}")
    if not decision.allowed:
        audit_logger.log_resend_rate_limited(actor.uid, invitation_id, decision.attempts)
        raise RateLimitedError(
            "Too many resend attempts. Please wait 1 minute before trying again.",
            retry_after=decision.retry_after,
        )

    resend_count = int(invitation.data.get("resendCount") or 0) + 1
    changes: Dict[str, Any] = {
        "status": STATUS_PENDING,
        "lastResendAt": now,
        "resendCount": resend_count,
    }
    expires_at = invitation.expires_at
    if expires_at is not None and expires_at <= now:
        changes["expiresAt"] = now + timedelta(days=default_expiry_days(invitation.type))
    store.update(INVITATIONS, invitation_id, changes)
    store.commit()

    new_expiry = changes.get("expiresAt") or expires_at
    inviter = store.get(USERS, invitation.owner_uid) if invitation.owner_uid else None
    inviter_name = (inviter or {}).get("displayName") or invitation.data.get("coachName") or "Coach"
    result = email_service.send_invitation(
        to_email=invitation.recipient_email,
        recipient_name=invitation.recipient_name,
        inviter_name=inviter_name,
        role=invitation.target_role.value,
        invitation_url=invitation.data.get("invitationUrl") or invitation_url(invitation_id, invitation.target_role),
        expires_at=to_timestamp(new_expiry) if new_expiry else None,
        sport=invitation.data.get("sport"),
        custom_message=invitation.data.get("customMessage"),
    )
    if not result.sent:
        logger.error(f"Failed to resend invitation email for {invitation_id}: {result.error}")

    store.update(INVITATIONS, invitation_id, {
        "lastEmailSentAt": now if result.sent else None,
        "lastEmailError": result.error,
    })
    store.commit()

    audit_logger.log_invitation_resent(actor.uid, invitation_id, resend_count, result.sent, result.error)

    if result.sent:
        _notify_coach(store, email_service, invitation, NOTIFY_INVITATION_SENT)

    return {
        "invitationId": invitation_id,
        "recipientEmail": invitation.recipient_email,
        "recipientName": invitation.recipient_name,
        "emailSent": result.sent,
        "emailId": result.message_id,
        "emailError": result.error,
        "resendCount": resend_count,
        "timestamp": to_timestamp(now),
    }


def load_consumable_invitation(store: DocumentStore, invitation_id: str, now: datetime) -> Invitation:
    """
    Load an invitation for onboarding, rejecting it before any write
    when it is missing, already used, not pending or expired (all 400).
    """
    invitation = Invitation.load(store, invitation_id) if invitation_id else None
    if invitation is None:
        raise ValidationError("Invalid invitation", "invitation_not_found")
    invitation.ensure_consumable(now)
    return invitation


def lock_consumable_invitation(store: DocumentStore, invitation_id: str, now: datetime) -> Invitation:
    """
    Re-read an invitation under a row lock and check it again.

    The first statement of every onboarding transaction: a completion that
    raced another one sees the winner's commit here and is rejected.
    """
    data = store.get_for_update(INVITATIONS, invitation_id)
    if data is None:
        raise ValidationError("Invalid invitation", "invitation_not_found")
    invitation = Invitation(id=invitation_id, data=data)
    invitation.ensure_consumable(now)
    return invitation


def consume_invitation(
    store: DocumentStore,
    invitation: Invitation,
    *,
    uid: str,
    now: datetime,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """Mark accepted. Callers run this inside the onboarding transaction."""
    fields: Dict[str, Any] = {
        "used": True,
        "status": STATUS_ACCEPTED,
        "usedAt": now,
        "usedBy": uid,
    }
    if extra:
        fields.update(extra)
    store.update(INVITATIONS, invitation.id, fields)


def save_questionnaire(
    store: DocumentStore,
    invitation_id: str,
    *,
    athlete_profile: Optional[Dict[str, Any]] = None,
    coach_profile: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Invitation:
    """Attach the onboarding questionnaire answers to a still-usable invitation."""
    now = now or utcnow()
    invitation = load_consumable_invitation(store, invitation_id, now)

    if invitation.target_role == Role.ATHLETE:
        if not athlete_profile:
            raise ValidationError("athleteProfile is required for athlete invitations", "missing_fields")
        fields = {"athleteProfile": athlete_profile}
    else:
        if not coach_profile:
            raise ValidationError("coachProfile is required for this invitation", "missing_fields")
        fields = {"coachProfile": coach_profile}

    fields["profileSubmittedAt"] = now
    store.update(INVITATIONS, invitation_id, fields)
    store.commit()
    return Invitation.load(store, invitation_id)


def update_invitation_status(
    store: DocumentStore,
    email_service: EmailService,
    *,
    invitation_id: str,
    new_status: str,
    actor_uid: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Invitation:
    """Recipient-side transitions: pending -> declined | expired."""
    now = now or utcnow()
    if new_status not in (STATUS_DECLINED, STATUS_EXPIRED):
        raise ValidationError("Status must be 'declined' or 'expired'", "invalid_status")

    invitation = get_invitation(store, invitation_id)
    if invitation.used or invitation.status != STATUS_PENDING:
        raise ValidationError(
            f"Cannot change status of a {invitation.status} invitation", "invalid_status_transition"
        )

    old_status = invitation.status
    store.update(INVITATIONS, invitation_id, {"status": new_status, f"{new_status}At": now})
    store.commit()
    audit_logger.log_invitation_status_changed(actor_uid, invitation_id, old_status, new_status)

    kind = NOTIFY_INVITATION_DECLINED if new_status == STATUS_DECLINED else NOTIFY_INVITATION_EXPIRED
    _notify_coach(store, email_service, invitation, kind)
    return Invitation.load(store, invitation_id)


def cancel_invitation(
    store: DocumentStore,
    *,
    actor: CurrentUser,
    invitation_id: str,
    now: Optional[datetime] = None,
) -> Invitation:
    now = now or utcnow()
    invitation = get_invitation(store, invitation_id)
    _ensure_can_manage(invitation, actor)
    if invitation.used or invitation.status not in (STATUS_PENDING, STATUS_EXPIRED):
        raise ValidationError(
            f"Cannot cancel a {invitation.status} invitation", "invalid_status_transition"
        )
    store.update(INVITATIONS, invitation_id, {
        "status": STATUS_CANCELLED,
        "cancelledAt": now,
        "cancelledBy": actor.uid,
    })
    store.commit()
    audit_logger.log_invitation_status_changed(actor.uid, invitation_id, invitation.status, STATUS_CANCELLED)
    return Invitation.load(store, invitation_id)


def expire_stale_invitations(store: DocumentStore, now: Optional[datetime] = None) -> List[str]:
    """Move pending invitations past their expiry to `expired`. Returns their ids."""
    now = now or utcnow()
    expired: List[str] = []
    # Legacy records without a status field are pending too, so filter on
    # Invitation.status rather than querying the stored field.
    for snap in store.stream(INVITATIONS):
        invitation = Invitation(id=snap.id, data=snap.data)
        if invitation.status != STATUS_PENDING or invitation.used or not invitation.is_expired(now):
            continue
        store.update(INVITATIONS, snap.id, {"status": STATUS_EXPIRED, "expiredAt": now})
        expired.append(snap.id)
    store.commit()
    if expired:
        logger.info(f"Expired {len(expired)} stale invitations")
    return expired


def list_invitations(
    store: DocumentStore,
    *,
    status: Optional[str] = None,
    created_by: Optional[str] = None,
) -> List[Invitation]:
    if status is not None and status not in INVITATION_STATUSES:
        raise ValidationError(f"Unknown status: {status}", "invalid_status")
    if status and status != STATUS_PENDING:
        snaps = store.where(INVITATIONS, "status", "==", status)
    else:
        snaps = store.stream(INVITATIONS)
    invitations = [Invitation(id=s.id, data=s.data) for s in snaps]
    if status == STATUS_PENDING:
        invitations = [i for i in invitations if i.status == STATUS_PENDING]
    if created_by:
        invitations = [i for i in invitations if i.owner_uid == created_by]
    invitations.sort(key=lambda i: i.data.get("createdAt") or "", reverse=True)
    return invitations


def public_view(invitation: Invitation, now: Optional[datetime] = None) -> Dict[str, Any]:
    """What the onboarding page may show about an invitation (no internal ids)."""
    now = now or utcnow()
    expired = invitation.status == STATUS_EXPIRED or invitation.is_expired(now)
    return {
        "invitationId": invitation.id,
        "type": invitation.type,
        "role": invitation.target_role.value,
        "recipientEmail": invitation.recipient_email,
        "recipientName": invitation.recipient_name,
        "sport": invitation.data.get("sport"),
        "coachName": invitation.data.get("coachName"),
        "customMessage": invitation.data.get("customMessage"),
        "status": invitation.status,
        "expiresAt": invitation.data.get("expiresAt"),
        "expired": expired,
        "usable": not invitation.used and invitation.status == STATUS_PENDING and not expired,
        "profileSubmitted": bool(invitation.data.get("athleteProfile") or invitation.data.get("coachProfile")),
    }
