"""
Invitations API Router

Coaches invite athletes onto their roster; admins invite coaches, admins
and athletes. Lookup, questionnaire submission and decline are public:
the invitation code is the credential.
"""

from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from core.auth import CurrentUser, get_optional_token_claims, require_inviter
from core.document_store import DocumentStore, get_document_store
from core.rate_limit import ActionRateLimiter, get_resend_limiter
from services.email_service import EmailService, get_email_service
from services.invitation_service import (
    cancel_invitation,
    create_invitation,
    get_invitation,
    public_view,
    resend_invitation,
    save_questionnaire,
    update_invitation_status,
)

router = APIRouter(prefix="/v1/invitations", tags=["invitations"])


class InvitationCreateRequest(BaseModel):
    recipientEmail: str
    recipientName: str
    role: str
    type: Optional[str] = None
    sport: Optional[str] = None
    customMessage: Optional[str] = Field(default=None, max_length=2000)
    expiresInDays: Optional[int] = Field(default=None, ge=1, le=30)
    coachId: Optional[str] = None


class QuestionnaireRequest(BaseModel):
    athleteProfile: Optional[Dict[str, Any]] = None
    coachProfile: Optional[Dict[str, Any]] = None


class StatusUpdateRequest(BaseModel):
    status: Literal["declined", "expired"]


@router.post("")
def create(
    request: InvitationCreateRequest,
    current_user: CurrentUser = Depends(require_inviter),
    store: DocumentStore = Depends(get_document_store),
    email_service: EmailService = Depends(get_email_service),
):
    created = create_invitation(
        store,
        email_service,
        actor=current_user,
        recipient_email=request.recipientEmail,
        recipient_name=request.recipientName,
        role=request.role,
        invitation_type=request.type,
        sport=request.sport,
        custom_message=request.customMessage,
        expires_in_days=request.expiresInDays,
        coach_id=request.coachId,
    )
    invitation = created.invitation
    return {
        "success": True,
        "data": {
            "invitationId": invitation.id,
            "url": invitation.data.get("invitationUrl"),
            "role": invitation.target_role.value,
            "type": invitation.type,
            "expiresAt": invitation.data.get("expiresAt"),
            "emailSent": created.email.sent,
            "emailError": created.email.error,
        },
    }


@router.get("/{invitation_id}")
def lookup(invitation_id: str, store: DocumentStore = Depends(get_document_store)):
    """Public invitation summary for the onboarding page."""
    invitation = get_invitation(store, invitation_id)
    return {"success": True, "data": public_view(invitation)}


@router.post("/{invitation_id}/profile")
def submit_questionnaire(
    invitation_id: str,
    request: QuestionnaireRequest,
    store: DocumentStore = Depends(get_document_store),
):
    invitation = save_questionnaire(
        store,
        invitation_id,
        athlete_profile=request.athleteProfile,
        coach_profile=request.coachProfile,
    )
    return {
        "success": True,
        "data": {
            "invitationId": invitation.id,
            "profileSubmittedAt": invitation.data.get("profileSubmittedAt"),
        },
    }


@router.post("/{invitation_id}/resend")
def resend(
    invitation_id: str,
    current_user: CurrentUser = Depends(require_inviter),
    store: DocumentStore = Depends(get_document_store),
    email_service: EmailService = Depends(get_email_service),
    limiter: ActionRateLimiter = Depends(get_resend_limiter),
):
    result = resend_invitation(
        store,
        email_service,
        limiter,
        actor=current_user,
        invitation_id=invitation_id,
    )
    message = (
        f"Invitation resent to {result['recipientEmail']}"
        if result["emailSent"]
        else "Invitation updated but the email could not be sent"
    )
    return {"success": True, "message": message, "data": result}


@router.post("/{invitation_id}/status")
def change_status(
    invitation_id: str,
    request: StatusUpdateRequest,
    claims: Optional[Dict[str, Any]] = Depends(get_optional_token_claims),
    store: DocumentStore = Depends(get_document_store),
    email_service: EmailService = Depends(get_email_service),
):
    """Recipient declines, or a client marks a lapsed invitation expired."""
    invitation = update_invitation_status(
        store,
        email_service,
        invitation_id=invitation_id,
        new_status=request.status,
        actor_uid=claims["sub"] if claims else None,
    )
    return {"success": True, "data": {"invitationId": invitation.id, "status": invitation.status}}


@router.post("/{invitation_id}/cancel")
def cancel(
    invitation_id: str,
    current_user: CurrentUser = Depends(require_inviter),
    store: DocumentStore = Depends(get_document_store),
):
    invitation = cancel_invitation(store, actor=current_user, invitation_id=invitation_id)
    return {
        "success": True,
        "data": {
            "invitationId": invitation.id,
            "status": invitation.status,
            "cancelledAt": invitation.data.get("cancelledAt"),
        },
    }
