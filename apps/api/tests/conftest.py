"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite document store that is dropped and
recreated before every test, so nothing leaks between tests. Email goes
to a recording fake and the resend limiter is rebuilt per test.
"""
import os
import sys
from typing import Any, Dict, List, Optional

import pytest

# Settings are read on first import of core.config.
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-onboarding-api-0123456789")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RESEND_RATE_LIMIT_BACKEND"] = "memory"
os.environ["EMAIL_ENABLED"] = "false"
os.environ["LOG_FORMAT"] = "text"
os.environ["WEB_APP_BASE_URL"] = "https://app.example.test"

# Add the parent directory to the path so we can import from core/services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import core.rate_limit as rate_limit  # noqa: E402
from core.database import Base, SessionLocal, engine  # noqa: E402
from core.document_store import DocumentStore  # noqa: E402
from services.email_service import EmailResult, get_email_service  # noqa: E402
import models  # noqa: E402,F401


class FakeEmailService:
    """Records every message instead of sending it."""

    def __init__(self):
        self.invitations: List[Dict[str, Any]] = []
        self.notifications: List[Dict[str, Any]] = []
        self.fail_with: Optional[str] = None

    def _result(self) -> EmailResult:
        if self.fail_with:
            return EmailResult(sent=False, error=self.fail_with)
        return EmailResult(sent=True, message_id=f"<msg-{len(self.invitations) + len(self.notifications)}@test>")

    def send_invitation(self, **kwargs) -> EmailResult:
        self.invitations.append(kwargs)
        return self._result()

    def send_coach_notification(self, **kwargs) -> EmailResult:
        self.notifications.append(kwargs)
        return self._result()


@pytest.fixture(autouse=True)
def _fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    rate_limit._resend_limiter = None
    yield
    rate_limit._resend_limiter = None


@pytest.fixture
def fake_email():
    from main import app

    fake = FakeEmailService()
    app.dependency_overrides[get_email_service] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_email_service, None)


@pytest.fixture
def store():
    db = SessionLocal()
    yield DocumentStore(db)
    db.close()


@pytest.fixture
def read_doc():
    """Read a document through a new session (sees what requests committed)."""

    def _read(collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        db = SessionLocal()
        try:
            return DocumentStore(db).get(collection, doc_id)
        finally:
            db.close()

    return _read
