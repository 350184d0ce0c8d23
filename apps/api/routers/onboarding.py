"""
Onboarding router.

Final step of an invitation: the invitee has created an account with the
identity provider and submitted the questionnaire. These endpoints assign
the role and write the profile.

A bearer token is optional here (the web app may call before the session
is established); when sent it must belong to the account being onboarded.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from core.auth import get_optional_token_claims
from core.document_store import DocumentStore, get_document_store
from services.email_service import EmailService, get_email_service
from services.identity import IdentityDirectory, get_identity_directory
from services.role_assignment import complete_athlete_profile, complete_coach_profile

router = APIRouter(prefix="/v1/onboarding", tags=["onboarding"])


class CompleteAthleteRequest(BaseModel):
    invitationId: str
    email: str
    coachId: Optional[str] = None


class CompleteCoachRequest(BaseModel):
    invitationId: str
    email: str


@router.post("/complete-athlete-profile")
def complete_athlete(
    request: CompleteAthleteRequest,
    claims: Optional[Dict[str, Any]] = Depends(get_optional_token_claims),
    store: DocumentStore = Depends(get_document_store),
    identities: IdentityDirectory = Depends(get_identity_directory),
    email_service: EmailService = Depends(get_email_service),
):
    result = complete_athlete_profile(
        store,
        identities,
        email_service,
        invitation_id=request.invitationId,
        email=request.email,
        coach_id=request.coachId,
        token_claims=claims,
    )
    return {
        "success": True,
        "message": "Athlete profile created successfully",
        "data": {
            "athleteId": result.athlete_id,
            "userId": result.uid,
            "role": result.role.value,
            "coachId": result.coach_id,
            "slug": result.slug,
        },
    }


@router.post("/complete-coach-profile")
def complete_coach(
    request: CompleteCoachRequest,
    claims: Optional[Dict[str, Any]] = Depends(get_optional_token_claims),
    store: DocumentStore = Depends(get_document_store),
    identities: IdentityDirectory = Depends(get_identity_directory),
):
    result = complete_coach_profile(
        store,
        identities,
        invitation_id=request.invitationId,
        email=request.email,
        token_claims=claims,
    )
    data: Dict[str, Any] = {
        "userId": result.uid,
        "role": result.role.value,
        "slug": result.slug,
        "visible": result.visible,
    }
    if result.warnings:
        data["warnings"] = result.warnings
    return {"success": True, "message": "Coach profile created successfully", "data": data}
