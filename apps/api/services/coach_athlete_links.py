"""
Coach-athlete link maintenance.

An athlete is linked to exactly one coach, recorded in four places that
must agree:

    athletes/{id}.coachId == athletes/{id}.assignedCoachId
        == users/{uid}.coachId == users/{uid}.assignedCoachId

plus one entry in the coach's `users/{coachUid}.athletes` roster.

This module appends roster entries, verifies a freshly written link and
repairs it in place, and backfills links for every athlete from the
invitation that brought them in.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.document_store import ATHLETES, USERS, DocumentSnapshot, DocumentStore, utcnow
from services import audit_logger
from services.invitation_service import Invitation

logger = logging.getLogger(__name__)

FIX_FIXED = "fixed"
FIX_SKIPPED = "skipped"
FIX_ERROR = "error"


def roster_entry(
    *,
    athlete_id: str,
    uid: str,
    name: str,
    email: str,
    sport: Optional[str],
    skill_level: Optional[str],
    joined_at: datetime,
) -> Dict[str, Any]:
    return {
        "id": athlete_id,
        "uid": uid,
        "name": name,
        "email": email,
        "sport": sport,
        "skillLevel": skill_level,
        "joinedAt": joined_at,
    }


def add_athlete_to_roster(store: DocumentStore, coach_uid: str, entry: Dict[str, Any]) -> bool:
    """
    Append an athlete to the coach's roster unless already present.

    Entries are matched on athlete id, or on uid when the athlete was
    re-profiled under a new id. Returns True when an entry was added.
    """
    coach = store.get(USERS, coach_uid)
    if coach is None:
        logger.error(f"Coach {coach_uid} has no user document; roster not updated for athlete {entry['id']}")
        return False

    roster: List[Dict[str, Any]] = list(coach.get("athletes") or [])
    present = any(
        item.get("id") == entry["id"] or (entry.get("uid") and item.get("uid") == entry["uid"])
        for item in roster
    )
    if not present:
        roster.append(entry)

    if present and coach.get("athleteCount") == len(roster):
        return False

    store.update(USERS, coach_uid, {
        "athletes": roster,
        "athleteCount": len(roster),
        "lastUpdated": utcnow(),
    })
    return not present


def _links_to(doc: Optional[Dict[str, Any]], coach_uid: str) -> bool:
    return bool(doc) and doc.get("coachId") == coach_uid and doc.get("assignedCoachId") == coach_uid


@dataclass
class LinkCheck:
    athlete_id: str
    uid: str
    coach_uid: str
    repaired: List[str]

    @property
    def ok(self) -> bool:
        return not self.repaired


def verify_and_repair_link(
    store: DocumentStore,
    *,
    athlete_id: str,
    uid: str,
    coach_uid: str,
) -> LinkCheck:
    """
    Re-read both documents after onboarding and correct any coach reference
    that is empty or disagrees with `coach_uid`.
    """
    repaired: List[str] = []
    fields = {"coachId": coach_uid, "assignedCoachId": coach_uid}

    if not _links_to(store.get(ATHLETES, athlete_id), coach_uid):
        store.set(ATHLETES, athlete_id, {**fields, "lastUpdated": utcnow()}, merge=True)
        repaired.append(ATHLETES)

    if not _links_to(store.get(USERS, uid), coach_uid):
        store.set(USERS, uid, fields, merge=True)
        repaired.append(USERS)

    if repaired:
        store.commit()
        logger.error(
            f"EMERGENCY: coach link for athlete {athlete_id} was incomplete after onboarding; corrected {repaired}",
            extra={"extra_fields": {"athlete_id": athlete_id, "coach_uid": coach_uid, "repaired": repaired}},
        )
        audit_logger.log_link_repaired(athlete_id, coach_uid, source="onboarding_verification")

    return LinkCheck(athlete_id=athlete_id, uid=uid, coach_uid=coach_uid, repaired=repaired)


@dataclass
class FixResult:
    athleteId: str
    athleteEmail: Optional[str]
    status: str
    coachUid: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None or k == "athleteEmail"}


def _athlete_name(athlete: Dict[str, Any], user: Optional[Dict[str, Any]]) -> str:
    full = " ".join(p for p in (athlete.get("firstName"), athlete.get("lastName")) if p)
    return athlete.get("displayName") or full or (user or {}).get("displayName") or "Athlete"


def _fix_one(store: DocumentStore, snap: DocumentSnapshot) -> FixResult:
    athlete = snap.data
    uid = athlete.get("uid")
    user = store.get(USERS, uid) if uid else None
    email = athlete.get("email") or (user or {}).get("email")

    current = athlete.get("coachId")
    if current and _links_to(athlete, current) and (user is None or _links_to(user, current)):
        return FixResult(snap.id, email, FIX_SKIPPED, coachUid=current, reason="Already assigned")

    coach_uid = None
    source = None
    invitation_id = athlete.get("invitationId")
    invitation = Invitation.load(store, invitation_id) if invitation_id else None
    if invitation is not None and invitation.coach_uid:
        coach_uid, source = invitation.coach_uid, "invitation"
    else:
        coach_uid = athlete.get("coachId") or athlete.get("assignedCoachId") or athlete.get("creatorUid")
        source = "athlete_profile"

    if not coach_uid:
        if invitation_id and invitation is None:
            reason = f"Invitation {invitation_id} not found"
        elif invitation is not None:
            reason = "No coach found in invitation"
        else:
            reason = "Athlete has no invitation and no coach reference"
        return FixResult(snap.id, email, FIX_ERROR, reason=reason)

    coach = store.get(USERS, coach_uid)
    if coach is None:
        return FixResult(snap.id, email, FIX_ERROR, coachUid=coach_uid, reason="Coach account not found")

    now = utcnow()
    link = {"coachId": coach_uid, "assignedCoachId": coach_uid}
    athletic = athlete.get("athleticProfile") or {}
    with store.transaction():
        store.set(ATHLETES, snap.id, {**link, "creatorUid": coach_uid, "lastUpdated": now}, merge=True)
        if user is not None:
            store.set(USERS, uid, link, merge=True)
        add_athlete_to_roster(store, coach_uid, roster_entry(
            athlete_id=snap.id,
            uid=uid,
            name=_athlete_name(athlete, user),
            email=email,
            sport=athletic.get("primarySport") or athlete.get("sport"),
            skill_level=athletic.get("skillLevel"),
            joined_at=athlete.get("createdAt") or now,
        ))

    audit_logger.log_link_repaired(snap.id, coach_uid, source=source)
    return FixResult(snap.id, email, FIX_FIXED, coachUid=coach_uid, reason=f"Coach taken from {source}")


def fix_all_athlete_coach_assignments(store: DocumentStore) -> Dict[str, Any]:
    """
    Backfill coach links for every athlete.

    Idempotent: athletes whose documents already agree on a coach are
    skipped, so a second run reports everything fixed by the first as skipped.
    """
    results: List[FixResult] = []
    for snap in store.stream(ATHLETES):
        try:
            result = _fix_one(store, snap)
        except Exception as e:
            store.rollback()
            logger.exception(f"Failed to fix coach assignment for athlete {snap.id}")
            result = FixResult(snap.id, snap.data.get("email"), FIX_ERROR, reason=str(e))
        results.append(result)

    summary = {
        "totalAthletes": len(results),
        "fixedCount": sum(1 for r in results if r.status == FIX_FIXED),
        "skippedCount": sum(1 for r in results if r.status == FIX_SKIPPED),
        "errorCount": sum(1 for r in results if r.status == FIX_ERROR),
        "results": [r.to_dict() for r in results],
    }
    logger.info(
        f"Athlete coach assignment backfill: {summary['fixedCount']} fixed, "
        f"{summary['skippedCount']} skipped, {summary['errorCount']} errors"
    )
    return summary
