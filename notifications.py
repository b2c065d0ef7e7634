"""
Notification services for Kleanr.

Every workflow message goes out through ``notify_user``: a stored
``Notification`` row and a Socket.IO event to the user's room, plus APNs
push and email when asked for.  Invitation emails have their own helpers
below because the recipient may not have an account yet.

Nothing here raises.  A failed notification is logged and dropped; it
must never undo the invitation or job change that triggered it.
"""

import os
import logging
import threading
from collections import namedtuple

from flask import current_app

from email_templates import (
    client_invitation_html,
    invitation_reminder_html,
    invitation_accepted_html,
    notification_html,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Email transport
# ---------------------------------------------------------------------------
RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
SENDGRID_API_KEY = os.environ.get("SENDGRID_API_KEY", "")
EMAIL_FROM = os.environ.get("EMAIL_FROM", "hello@kleanr.app")
EMAIL_FROM_NAME = os.environ.get("EMAIL_FROM_NAME", "Kleanr")

OutgoingEmail = namedtuple("OutgoingEmail", ["to", "subject", "html"])


def _deliver_resend(message):
    import resend

    resend.api_key = RESEND_API_KEY
    sent = resend.Emails.send({
        "from": "{} <{}>".format(EMAIL_FROM_NAME, EMAIL_FROM),
        "to": [message.to],
        "subject": message.subject,
        "html": message.html,
    })
    return sent.get("id")


def _deliver_sendgrid(message):
    from sendgrid import SendGridAPIClient
    from sendgrid.helpers.mail import Mail

    mail = Mail(
        from_email=(EMAIL_FROM, EMAIL_FROM_NAME),
        to_emails=message.to,
        subject=message.subject,
        html_content=message.html,
    )
    return SendGridAPIClient(SENDGRID_API_KEY).send(mail).status_code


def _email_provider():
    """Resend wins when both keys are set; None means log-only (dev)."""
    if RESEND_API_KEY:
        return "resend", _deliver_resend
    if SENDGRID_API_KEY:
        return "sendgrid", _deliver_sendgrid
    return None, None


def deliver_email(message):
    """Send one ``OutgoingEmail`` on the calling thread.

    Returns the provider's message id / status, or None. Never raises.
    """
    name, deliver = _email_provider()
    if deliver is None:
        logger.info("[DEV] Email to %s: %s", message.to, message.subject)
        return None
    try:
        receipt = deliver(message)
    except Exception:
        logger.exception("%s rejected email to %s", name, message.to)
        return None
    logger.info("Email to %s sent via %s (%s)", message.to, name, receipt)
    return receipt


def send_email(to_email, subject, html_content):
    """Queue an email on a daemon thread so request handlers never wait on the provider."""
    message = OutgoingEmail(to_email, subject, html_content)
    try:
        threading.Thread(target=deliver_email, args=(message,), daemon=True).start()
    except Exception:
        logger.exception("Could not queue email to %s", to_email)


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------
def send_push_notification(user_id, title, body, data=None, category=None):
    """Send an APNs push to all of a user's devices. Never raises."""
    try:
        from push_notifications import send_push_notification as _apns_send
        return _apns_send(user_id, title, body, data=data, category=category)
    except Exception:
        logger.exception("Failed to send push notification to user %s", user_id)
        return 0


# ---------------------------------------------------------------------------
# In-app notifications (+ optional push / email fan-out)
# ---------------------------------------------------------------------------
def notify_user(user_id, notification_type, title, body, data=None, action_required=False,
                related_appointment_id=None, push=False, email=False):
    """Record an in-app notification and fan it out.

    The row is committed on its own, so callers should commit their own
    state first.  Returns the Notification or None. Never raises.
    """
    from models import db, Notification, User

    notification = None
    try:
        notification = Notification(
            user_id=user_id,
            type=notification_type,
            title=title,
            body=body,
            data=data,
            action_required=action_required,
            related_appointment_id=related_appointment_id,
        )
        db.session.add(notification)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed to store %s notification for user %s", notification_type, user_id)
        notification = None

    if notification is not None:
        try:
            from socket_events import emit_to_user
            emit_to_user(user_id, "notification", notification.to_dict())
        except Exception:
            logger.exception("Failed to emit notification to user %s", user_id)

    if push:
        send_push_notification(user_id, title, body, data=data)

    if email:
        try:
            user = db.session.get(User, user_id)
            if user and user.email:
                html = notification_html(user.first_name, title, body, action_required=action_required)
                send_email(user.email, title, html)
        except Exception:
            logger.exception("Failed to email %s notification to user %s", notification_type, user_id)

    return notification


# ---------------------------------------------------------------------------
# Invitation emails
# ---------------------------------------------------------------------------
def invite_url(invite_token):
    base = current_app.config.get("FRONTEND_URL", "").rstrip("/")
    return "{}/accept-invite/{}".format(base, invite_token)


def send_client_invitation_email(to_email, client_name, cleaner_name, invite_token, address=None):
    """Email a prospective client their invitation link. Never raises."""
    try:
        subject = "{} invited you to Kleanr".format(cleaner_name or "Your cleaner")
        html = client_invitation_html(client_name, cleaner_name, invite_url(invite_token), address=address)
        return send_email(to_email, subject, html)
    except Exception:
        logger.exception("Failed in send_client_invitation_email for %s", to_email)
        return None


def send_invitation_reminder_email(to_email, client_name, cleaner_name, invite_token):
    """Re-send an invitation link. Never raises."""
    try:
        subject = "Reminder: {} invited you to Kleanr".format(cleaner_name or "Your cleaner")
        html = invitation_reminder_html(client_name, cleaner_name, invite_url(invite_token))
        return send_email(to_email, subject, html)
    except Exception:
        logger.exception("Failed in send_invitation_reminder_email for %s", to_email)
        return None


def send_invitation_accepted_email(to_email, cleaner_name, client_name, home_address):
    """Tell a cleaner their client signed up. Never raises."""
    try:
        subject = "{} accepted your invitation".format(client_name or "Your client")
        html = invitation_accepted_html(cleaner_name, client_name, home_address)
        return send_email(to_email, subject, html)
    except Exception:
        logger.exception("Failed in send_invitation_accepted_email for %s", to_email)
        return None
