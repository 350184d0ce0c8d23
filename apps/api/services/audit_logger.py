"""
Audit Logger

Structured logging for invitation and onboarding actions.
Used for debugging, compliance, and tracing who did what to which invitation.

Format: one JSON object per event with:
- timestamp
- action
- actor_hash (anonymized uid)
- success / severity
- metadata
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

audit_logger = logging.getLogger("athleap.audit")
audit_logger.setLevel(logging.INFO)

SEVERITIES = ("low", "medium", "high", "critical")


def _anonymize_id(uid: Optional[str]) -> Optional[str]:
    """Hash identity-provider uids for privacy in logs."""
    if not uid:
        return None
    return hashlib.sha256(str(uid).encode()).hexdigest()[:12]


def log_audit(
    action: str,
    actor_uid: Optional[str] = None,
    success: bool = True,
    severity: str = "low",
    metadata: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Log an audit event and return it.

    Args:
        action: Action type (e.g., "invitation.resent", "onboarding.athlete_completed")
        actor_uid: uid of the user performing the action (anonymized)
        success: Whether the action succeeded
        severity: low | medium | high | critical
        metadata: Additional context
        error: Error message if failed
    """
    if severity not in SEVERITIES:
        severity = "low"

    event: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "actor_hash": _anonymize_id(actor_uid),
        "success": success,
        "severity": severity,
    }

    if metadata:
        event["metadata"] = metadata

    if error:
        event["error"] = error

    level = logging.ERROR if severity in ("high", "critical") and not success else logging.INFO
    audit_logger.log(level, json.dumps(event, default=str))
    return event


# =============================================================================
# INVITATION AUDIT
# =============================================================================

def log_invitation_created(actor_uid: str, invitation_id: str, role: str, email_sent: bool) -> None:
    log_audit(
        action="invitation.created",
        actor_uid=actor_uid,
        metadata={"invitation_id": invitation_id, "role": role, "email_sent": email_sent},
    )


def log_invitation_resent(
    actor_uid: str,
    invitation_id: str,
    resend_count: int,
    email_sent: bool,
    email_error: Optional[str] = None,
) -> None:
    log_audit(
        action="invitation.resent",
        actor_uid=actor_uid,
        metadata={
            "invitation_id": invitation_id,
            "resend_count": resend_count,
            "email_sent": email_sent,
            "email_error": email_error,
        },
    )


def log_resend_rate_limited(actor_uid: str, invitation_id: str, attempts: int) -> None:
    log_audit(
        action="invitation.resend_rate_limited",
        actor_uid=actor_uid,
        success=False,
        severity="medium",
        metadata={"invitation_id": invitation_id, "attempts": attempts},
    )


def log_invitation_status_changed(actor_uid: Optional[str], invitation_id: str, old: str, new: str) -> None:
    log_audit(
        action="invitation.status_changed",
        actor_uid=actor_uid,
        metadata={"invitation_id": invitation_id, "from": old, "to": new},
    )


# =============================================================================
# ONBOARDING AUDIT
# =============================================================================

def log_profile_completed(uid: str, invitation_id: str, role: str, final_role: str) -> None:
    log_audit(
        action="onboarding.profile_completed",
        actor_uid=uid,
        metadata={"invitation_id": invitation_id, "target_role": role, "final_role": final_role},
    )


def log_link_repaired(athlete_id: str, coach_uid: str, source: str) -> None:
    log_audit(
        action="coach_link.repaired",
        severity="high",
        metadata={"athlete_id": athlete_id, "coach_uid": coach_uid, "source": source},
    )
