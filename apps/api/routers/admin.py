"""
Admin API Router

Maintenance endpoints for platform staff: invitation oversight, coach link
backfill and coach visibility resync. Admin or superadmin role only.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel

from core.auth import CurrentUser, require_admin
from core.document_store import DocumentStore, get_document_store
from services import audit_logger
from services.coach_athlete_links import fix_all_athlete_coach_assignments
from services.coach_visibility import sync_all_coaches, sync_coach
from services.invitation_service import expire_stale_invitations, list_invitations

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])


class SyncCoachesRequest(BaseModel):
    uids: Optional[List[str]] = None


@router.get("/invitations")
def admin_list_invitations(
    status: Optional[str] = Query(default=None),
    created_by: Optional[str] = Query(default=None, alias="createdBy"),
    current_user: CurrentUser = Depends(require_admin),
    store: DocumentStore = Depends(get_document_store),
):
    invitations = list_invitations(store, status=status, created_by=created_by)
    return {
        "success": True,
        "data": {
            "count": len(invitations),
            "invitations": [{"id": i.id, **i.data} for i in invitations],
        },
    }


@router.post("/invitations/expire-stale")
def admin_expire_stale(
    current_user: CurrentUser = Depends(require_admin),
    store: DocumentStore = Depends(get_document_store),
):
    expired = expire_stale_invitations(store)
    audit_logger.log_audit(
        action="invitation.expire_sweep",
        actor_uid=current_user.uid,
        metadata={"expired_count": len(expired)},
    )
    return {"success": True, "data": {"expiredCount": len(expired), "invitationIds": expired}}


@router.post("/fix-athlete-coach-assignment")
def admin_fix_athlete_coach_assignment(
    current_user: CurrentUser = Depends(require_admin),
    store: DocumentStore = Depends(get_document_store),
):
    """Backfill coachId/assignedCoachId and rosters for every athlete."""
    logger.info(f"Athlete coach assignment backfill requested by {current_user.uid}")
    summary = fix_all_athlete_coach_assignments(store)
    return {
        "success": True,
        "message": (
            f"Fixed {summary['fixedCount']} athletes, skipped {summary['skippedCount']}, "
            f"{summary['errorCount']} errors"
        ),
        "data": summary,
    }


@router.post("/sync-coaches")
def admin_sync_coaches(
    request: Optional[SyncCoachesRequest] = Body(default=None),
    current_user: CurrentUser = Depends(require_admin),
    store: DocumentStore = Depends(get_document_store),
):
    """Re-project every coach (or the given uids) into the public views."""
    summary = sync_all_coaches(store, request.uids if request else None)
    return {"success": True, "data": summary}


@router.post("/coaches/{uid}/sync")
def admin_sync_coach(
    uid: str,
    current_user: CurrentUser = Depends(require_admin),
    store: DocumentStore = Depends(get_document_store),
):
    outcome = sync_coach(store, uid)
    return {"success": True, "data": outcome.to_dict()}
