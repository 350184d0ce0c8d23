"""
Identity directory.

Accounts are created by the external identity provider. This service keeps
a lookup of provider accounts in the `auth_identities` collection
(`{uid, email, displayName, lastSeenAt}`) so onboarding can resolve the
account that belongs to an invited email address.

Entries are refreshed whenever a verified token is presented, and can be
registered directly by provisioning scripts.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import Depends

from core.document_store import AUTH_IDENTITIES, DocumentStore, get_document_store, utcnow

logger = logging.getLogger(__name__)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class IdentityDirectory:
    def __init__(self, store: DocumentStore):
        self.store = store

    def register(self, uid: str, email: str, display_name: Optional[str] = None) -> None:
        norm = normalize_email(email)
        if not uid or not norm:
            raise ValueError("uid and email are required")
        data: Dict[str, Any] = {"uid": uid, "email": norm, "lastSeenAt": utcnow()}
        if display_name:
            data["displayName"] = display_name
        self.store.set(AUTH_IDENTITIES, uid, data, merge=True)

    def remember_token(self, claims: Optional[Dict[str, Any]]) -> None:
        """Record the uid/email pair carried by a verified token, if any."""
        if not claims:
            return
        uid = claims.get("sub")
        email = normalize_email(claims.get("email"))
        if uid and email:
            self.register(uid, email, claims.get("name"))

    def get_uid_by_email(self, email: str) -> Optional[str]:
        norm = normalize_email(email)
        if not norm:
            return None
        matches = self.store.where(AUTH_IDENTITIES, "email", "==", norm)
        if not matches:
            return None
        if len(matches) > 1:
            # Provider emails are unique; duplicates mean a stale mirror entry.
            logger.warning(f"Multiple identities registered for one email, using most recent ({len(matches)} found)")
            matches.sort(key=lambda snap: snap.data.get("lastSeenAt") or "", reverse=True)
        return matches[0].data.get("uid") or matches[0].id


def get_identity_directory(store: DocumentStore = Depends(get_document_store)) -> IdentityDirectory:
    return IdentityDirectory(store)
