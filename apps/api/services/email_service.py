"""
Email Service

Sends invitation emails and coach notifications over SMTP.

Email is a side channel: callers record the EmailResult on the
invitation and carry on. Nothing here raises on delivery failure.
"""

import logging
import smtplib
import uuid
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import List, Optional

from core.config import settings

logger = logging.getLogger(__name__)

# Coach notification kinds
NOTIFY_INVITATION_SENT = "invitation_sent"
NOTIFY_ATHLETE_JOINED = "athlete_joined"
NOTIFY_INVITATION_DECLINED = "invitation_declined"
NOTIFY_INVITATION_EXPIRED = "invitation_expired"


@dataclass
class EmailResult:
    sent: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class EmailService:
    """Service for sending emails"""

    def __init__(self):
        self.smtp_server = settings.SMTP_SERVER
        self.smtp_port = settings.SMTP_PORT
        self.smtp_username = settings.SMTP_USERNAME
        self.smtp_password = settings.SMTP_PASSWORD
        self.from_email = settings.FROM_EMAIL
        self.from_name = settings.FROM_NAME
        self.enabled = settings.EMAIL_ENABLED

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None
    ) -> EmailResult:
        """Send one email. Never raises; failures come back in the result."""
        if not self.enabled:
            logger.info(f"Email disabled, would send to {to_email}: {subject}")
            return EmailResult(sent=False, error="Email delivery is disabled")

        message_id = f"<{uuid.uuid4()}@{self.from_email.split('@')[-1]}>"
        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = subject
            msg['From'] = f"{self.from_name} <{self.from_email}>"
            msg['To'] = to_email
            msg['Message-ID'] = message_id

            if text_content:
                msg.attach(MIMEText(text_content, 'plain'))
            msg.attach(MIMEText(html_content, 'html'))

            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=10) as server:
                if self.smtp_username and self.smtp_password:
                    server.starttls()
                    server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)

            return EmailResult(sent=True, message_id=message_id)

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending email to {to_email}: {str(e)}")
            return EmailResult(sent=False, error=str(e) or type(e).__name__)

    def send_invitation(
        self,
        *,
        to_email: str,
        recipient_name: str,
        inviter_name: str,
        role: str,
        invitation_url: str,
        expires_at: Optional[str] = None,
        sport: Optional[str] = None,
        custom_message: Optional[str] = None,
    ) -> EmailResult:
        if role == "athlete":
            subject = f"{inviter_name} invited you to train on Athleap"
            intro = f"{inviter_name} has invited you to join their {sport + ' ' if sport else ''}team on Athleap."
        else:
            subject = f"You're invited to join Athleap as {'an' if role[:1] in 'aeiou' else 'a'} {role}"
            intro = f"{inviter_name} has invited you to join Athleap as {role}."

        html_parts = [
            f"<h2>Hi {escape(recipient_name or 'there')},</h2>",
            f"<p>{escape(intro)}</p>",
        ]
        if custom_message:
            html_parts.append(f"<blockquote>{escape(custom_message)}</blockquote>")
        html_parts.append(f'<p><a href="{escape(invitation_url, quote=True)}">Accept your invitation</a></p>')
        if expires_at:
            html_parts.append(f"<p>This invitation expires on {escape(expires_at[:10])}.</p>")

        text_parts = [f"Hi {recipient_name or 'there'},", "", intro]
        if custom_message:
            text_parts += ["", custom_message]
        text_parts += ["", f"Accept your invitation: {invitation_url}"]
        if expires_at:
            text_parts.append(f"This invitation expires on {expires_at[:10]}.")

        return self.send_email(to_email, subject, "\n".join(html_parts), "\n".join(text_parts))

    def send_coach_notification(
        self,
        *,
        to_email: str,
        coach_name: str,
        kind: str,
        athlete_names: Optional[List[str]] = None,
        sport: Optional[str] = None,
    ) -> EmailResult:
        names = ", ".join(athlete_names or []) or "An athlete"
        subjects = {
            NOTIFY_INVITATION_SENT: "Invitation sent",
            NOTIFY_ATHLETE_JOINED: f"{names} joined your team",
            NOTIFY_INVITATION_DECLINED: f"{names} declined your invitation",
            NOTIFY_INVITATION_EXPIRED: f"Invitation for {names} expired",
        }
        bodies = {
            NOTIFY_INVITATION_SENT: f"Your invitation to {names} is on its way.",
            NOTIFY_ATHLETE_JOINED: f"{names} accepted your invitation and completed onboarding.",
            NOTIFY_INVITATION_DECLINED: f"{names} declined your invitation.",
            NOTIFY_INVITATION_EXPIRED: f"Your invitation to {names} expired. You can resend it from your dashboard.",
        }
        if kind not in subjects:
            return EmailResult(sent=False, error=f"Unknown notification kind: {kind}")

        body = bodies[kind]
        if sport:
            body = f"{body} Sport: {sport}."
        html_content = f"<h2>Hi {escape(coach_name or 'Coach')},</h2>\n<p>{escape(body)}</p>"
        text_content = f"Hi {coach_name or 'Coach'},\n\n{body}"
        return self.send_email(to_email, subjects[kind], html_content, text_content)


# Singleton instance
email_service = EmailService()


def get_email_service() -> EmailService:
    """FastAPI dependency (overridden in tests)."""
    return email_service
