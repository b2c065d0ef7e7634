"""
Invitation Service
Cleaner -> client invitations and the relationship lifecycle that follows.

A ``CleanerClient`` row starts as ``pending_invite`` and only moves along the
edges in ``models.INVITATION_TRANSITIONS``; every status change in this
module goes through ``transition`` (or ``check_transition`` for the
conditional UPDATE used when accepting).
"""

import json
import math
import logging
import secrets
from dataclasses import dataclass
from datetime import date

from sqlalchemy import case, func

from models import (
    db, User, UserBill, UserHome, CleanerClient, RecurringSchedule, UserAppointment,
    UserCleanerAppointment, EmployeeJobAssignment, GuestNotLeftReport, Payout,
    InvitationStatus, INVITATION_TRANSITIONS, utcnow,
)
from services.errors import (
    ServiceError, InvalidToken, AlreadyAccepted, Declined, DuplicateInvitation,
    AlreadyLinked, AccountExists, InvalidTransition, TokenGenerationError, NotFound,
)

logger = logging.getLogger(__name__)

INVITE_TOKEN_LENGTH = 32
MAX_TOKEN_ATTEMPTS = 10

# camelCase request key -> (CleanerClient column, value kind)
_EDITABLE_RELATIONSHIP_FIELDS = {
    "defaultFrequency": ("default_frequency", "text"),
    "defaultPrice": ("default_price", "price"),
    "defaultDayOfWeek": ("default_day_of_week", "day"),
    "defaultTimeWindow": ("default_time_window", "text"),
    "autoPayEnabled": ("auto_pay_enabled", "flag"),
    "autoScheduleEnabled": ("auto_schedule_enabled", "flag"),
    "invitedNotes": ("invited_notes", "text"),
}

_EDITABLE_HOME_FIELDS = {
    "specialNotes": "special_notes",
    "keyPadCode": "key_pad_code",
    "keyLocation": "key_location",
    "sheetsProvided": "sheets_provided",
    "towelsProvided": "towels_provided",
    "timeToBeCompleted": "time_to_be_completed",
    "cleanersNeeded": "cleaners_needed",
}


@dataclass
class TokenValidation:
    """Result of looking up an invitation token."""
    invitation: CleanerClient
    is_cancelled: bool = False
    is_already_accepted: bool = False
    is_expired: bool = False


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

def check_transition(current, target):
    current = InvitationStatus(current)
    target = InvitationStatus(target)
    if target not in INVITATION_TRANSITIONS[current]:
        raise InvalidTransition(
            "Cannot change invitation from {} to {}".format(current.value, target.value)
        )
    return target


def transition(cleaner_client, target):
    """Move ``cleaner_client`` to ``target`` or raise ``InvalidTransition``."""
    target = check_transition(cleaner_client.status, target)
    cleaner_client.status = target.value
    return cleaner_client


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

def _token_exists(token):
    return db.session.query(CleanerClient.id).filter_by(invite_token=token).first() is not None


def _find_by_token(token):
    return CleanerClient.query.filter_by(invite_token=token).first()


def generate_invite_token():
    for _ in range(MAX_TOKEN_ATTEMPTS):
        token = secrets.token_hex(INVITE_TOKEN_LENGTH // 2)
        if not _token_exists(token):
            return token
    logger.error("Could not generate a unique invite token after %d attempts", MAX_TOKEN_ATTEMPTS)
    raise TokenGenerationError()


def validate_invite_token(token):
    """Look up an invitation by token.

    Returns None for malformed or unknown tokens.  Otherwise returns a
    ``TokenValidation`` whose flags describe why the invitation can or can
    not be redeemed.
    """
    if not token or len(token) != INVITE_TOKEN_LENGTH:
        return None

    cleaner_client = _find_by_token(token)
    if not cleaner_client:
        return None

    status = cleaner_client.invitation_status
    if status == InvitationStatus.PENDING_INVITE:
        return TokenValidation(invitation=cleaner_client)
    if status == InvitationStatus.CANCELLED:
        return TokenValidation(invitation=cleaner_client, is_cancelled=True)
    if status in (InvitationStatus.ACTIVE, InvitationStatus.INACTIVE):
        return TokenValidation(invitation=cleaner_client, is_already_accepted=True)
    return TokenValidation(invitation=cleaner_client, is_expired=True)


# ---------------------------------------------------------------------------
# Create / accept / decline / resend
# ---------------------------------------------------------------------------

def normalize_email(email):
    return (email or "").strip().lower()


def create_invitation(cleaner_id, name, email, phone=None, address=None, beds=None,
                      baths=None, frequency=None, price=None, day_of_week=None,
                      time_window=None, notes=None):
    email = normalize_email(email)

    existing = CleanerClient.query.filter(
        CleanerClient.cleaner_id == cleaner_id,
        CleanerClient.invited_email == email,
        CleanerClient.status.in_([
            InvitationStatus.PENDING_INVITE.value,
            InvitationStatus.ACTIVE.value,
        ]),
    ).first()
    if existing:
        if existing.status == InvitationStatus.PENDING_INVITE.value:
            raise DuplicateInvitation()
        raise AlreadyLinked()

    if isinstance(address, dict):
        address = json.dumps(address)

    cleaner_client = CleanerClient(
        cleaner_id=cleaner_id,
        invite_token=generate_invite_token(),
        invited_email=email,
        invited_name=(name or "").strip(),
        invited_phone=phone,
        invited_address=address,
        invited_beds=beds,
        invited_baths=baths,
        invited_notes=notes,
        status=InvitationStatus.PENDING_INVITE.value,
        invited_at=utcnow(),
        default_frequency=frequency,
        default_price=price,
        default_day_of_week=day_of_week,
        default_time_window=time_window,
        auto_pay_enabled=True,
        auto_schedule_enabled=True,
    )
    db.session.add(cleaner_client)
    db.session.commit()

    logger.info("Invitation %s created by cleaner %s", cleaner_client.id, cleaner_id)
    return cleaner_client


def split_name(full_name):
    """First word is the first name; the rest (or the first name again) is the last name."""
    parts = (full_name or "").strip().split()
    first_name = parts[0] if parts else ""
    last_name = " ".join(parts[1:]) or first_name
    return first_name, last_name


def parse_address(raw):
    if not raw:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {"address": raw}
    return parsed if isinstance(parsed, dict) else {}


def merge_address(invited_address, corrections):
    merged = parse_address(invited_address)
    for key, value in (corrections or {}).items():
        if value is not None:
            merged[key] = value
    return merged


def _claim_invitation(cleaner_client, is_cancelled):
    """Conditionally stamp the invitation as accepted.

    The UPDATE only matches while the row is still claimable, so of two
    concurrent acceptances exactly one wins.
    """
    now = utcnow()
    query = CleanerClient.query.filter(CleanerClient.id == cleaner_client.id)
    if is_cancelled:
        query = query.filter(
            CleanerClient.status == InvitationStatus.CANCELLED.value,
            CleanerClient.accepted_at.is_(None),
        )
        values = {"accepted_at": now}
    else:
        target = check_transition(cleaner_client.status, InvitationStatus.ACTIVE)
        query = query.filter(CleanerClient.status == InvitationStatus.PENDING_INVITE.value)
        values = {"status": target.value, "accepted_at": now}

    claimed = query.update(values, synchronize_session=False)
    if claimed != 1:
        raise AlreadyAccepted()
    db.session.refresh(cleaner_client)


def accept_invitation(token, password, hash_password, phone=None, address_corrections=None):
    """Redeem an invitation and create the homeowner's account.

    ``hash_password`` is called with the plain password and must return the
    stored hash.  Returns ``{"user", "home", "cleaner_client"}``; ``home``
    is None when the invitation carried no street address.
    """
    validation = validate_invite_token(token)
    if validation is None:
        raise InvalidToken("Invalid or expired invitation")
    if validation.is_already_accepted:
        raise AlreadyAccepted()
    if validation.is_expired:
        raise Declined()

    cleaner_client = validation.invitation
    is_cancelled = validation.is_cancelled
    email = normalize_email(cleaner_client.invited_email)

    if User.query.filter(func.lower(User.email) == email).first():
        raise AccountExists()

    try:
        _claim_invitation(cleaner_client, is_cancelled)

        first_name, last_name = split_name(cleaner_client.invited_name)
        user = User(
            type="homeowner",
            email=email,
            first_name=first_name,
            last_name=last_name,
            phone=phone or cleaner_client.invited_phone,
            password_hash=hash_password(password),
        )
        db.session.add(user)
        db.session.flush()

        db.session.add(UserBill(
            user_id=user.id,
            appointment_due=0.0,
            cancellation_due=0.0,
            total_due=0.0,
        ))

        home = None
        address = merge_address(cleaner_client.invited_address, address_corrections)
        if address.get("address"):
            home = UserHome(
                user_id=user.id,
                address=address.get("address"),
                city=address.get("city"),
                state=address.get("state"),
                zipcode=address.get("zipcode"),
                latitude=address.get("latitude"),
                longitude=address.get("longitude"),
                num_beds=cleaner_client.invited_beds or 1,
                num_baths=cleaner_client.invited_baths or 1,
                special_notes=cleaner_client.invited_notes,
                is_setup_complete=False,
                preferred_cleaner_id=None if is_cancelled else cleaner_client.cleaner_id,
            )
            db.session.add(home)
            db.session.flush()

        if not is_cancelled:
            cleaner_client.client_id = user.id
            cleaner_client.home_id = home.id if home else None

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Invitation %s accepted by new user %s (linked=%s)",
        cleaner_client.id, user.id, not is_cancelled,
    )
    return {"user": user, "home": home, "cleaner_client": cleaner_client}


def decline_invitation(token):
    cleaner_client = CleanerClient.query.filter_by(
        invite_token=token, status=InvitationStatus.PENDING_INVITE.value
    ).first() if token else None
    if not cleaner_client:
        raise InvalidTransition("Invitation not found or already processed")

    transition(cleaner_client, InvitationStatus.DECLINED)
    db.session.commit()
    logger.info("Invitation %s declined", cleaner_client.id)
    return cleaner_client


def resend_invitation(cleaner_client_id, cleaner_id):
    cleaner_client = CleanerClient.query.filter_by(
        id=cleaner_client_id,
        cleaner_id=cleaner_id,
        status=InvitationStatus.PENDING_INVITE.value,
    ).first()
    if not cleaner_client:
        raise ServiceError("Invitation not found or already accepted")

    cleaner_client.last_invite_reminder_at = utcnow()
    db.session.commit()
    return cleaner_client


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_cleaner_clients(cleaner_id, status=None):
    """Relationships for a cleaner, active ones first, then newest invitations."""
    query = CleanerClient.query.filter_by(cleaner_id=cleaner_id)
    if status:
        query = query.filter_by(status=status)
    active_first = case((CleanerClient.status == InvitationStatus.ACTIVE.value, 0), else_=1)
    return query.order_by(active_first, CleanerClient.invited_at.desc()).all()


def get_owned_relationship(cleaner_client_id, cleaner_id):
    """Load a relationship owned by ``cleaner_id``; foreign rows look missing."""
    cleaner_client = CleanerClient.query.filter_by(id=cleaner_client_id, cleaner_id=cleaner_id).first()
    if not cleaner_client:
        raise NotFound("Client not found")
    return cleaner_client


def get_client_relationship(client_id):
    return CleanerClient.query.filter_by(
        client_id=client_id, status=InvitationStatus.ACTIVE.value
    ).first()


# ---------------------------------------------------------------------------
# Relationship lifecycle
# ---------------------------------------------------------------------------

def cancel_invitation(cleaner_client):
    """Withdraw a pending invitation.  The token still works for sign-up."""
    transition(cleaner_client, InvitationStatus.CANCELLED)
    db.session.commit()
    logger.info("Invitation %s cancelled", cleaner_client.id)
    return cleaner_client


def _delete_appointments(appointment_ids):
    assignment_ids = [
        row.id for row in db.session.query(EmployeeJobAssignment.id)
        .filter(EmployeeJobAssignment.appointment_id.in_(appointment_ids))
    ]
    GuestNotLeftReport.query.filter(
        GuestNotLeftReport.appointment_id.in_(appointment_ids)
    ).delete(synchronize_session=False)
    if assignment_ids:
        EmployeeJobAssignment.query.filter(
            EmployeeJobAssignment.id.in_(assignment_ids)
        ).delete(synchronize_session=False)
    UserCleanerAppointment.query.filter(
        UserCleanerAppointment.appointment_id.in_(appointment_ids)
    ).delete(synchronize_session=False)
    Payout.query.filter(Payout.appointment_id.in_(appointment_ids)).delete(synchronize_session=False)
    UserAppointment.query.filter(UserAppointment.id.in_(appointment_ids)).delete(synchronize_session=False)


def _reduce_bill(user_id, amount):
    bill = UserBill.query.filter_by(user_id=user_id).first()
    if not bill or not amount:
        return
    bill.appointment_due = max(0.0, (bill.appointment_due or 0.0) - amount)
    bill.total_due = max(0.0, (bill.total_due or 0.0) - amount)


def deactivate_relationship(cleaner_client, today=None):
    """End an active relationship and remove its unpaid future appointments.

    Every recurring schedule of the relationship is deactivated.  Future
    appointments generated from those schedules that are not completed,
    cancelled or paid are deleted together with their cleaner links, job
    assignments, reports and payouts, and their price is taken off the
    client's bill.  Paid ones are left alone and counted.
    """
    today = today or date.today()
    try:
        transition(cleaner_client, InvitationStatus.INACTIVE)

        schedules = RecurringSchedule.query.filter_by(cleaner_client_id=cleaner_client.id).all()
        for schedule in schedules:
            schedule.is_active = False
        schedule_ids = [s.id for s in schedules]

        cancelled, skipped_paid = 0, 0
        if schedule_ids:
            upcoming = UserAppointment.query.filter(
                UserAppointment.recurring_schedule_id.in_(schedule_ids),
                UserAppointment.date > today,
                UserAppointment.completed.is_(False),
                UserAppointment.was_cancelled.is_(False),
            ).all()

            to_delete = [a for a in upcoming if not a.paid]
            skipped_paid = len(upcoming) - len(to_delete)

            owed = {}
            for appointment in to_delete:
                owed[appointment.user_id] = owed.get(appointment.user_id, 0.0) + (appointment.price or 0.0)

            if to_delete:
                _delete_appointments([a.id for a in to_delete])
                for user_id, amount in owed.items():
                    _reduce_bill(user_id, amount)
            cancelled = len(to_delete)

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Relationship %s deactivated: %d schedules, %d appointments removed, %d paid kept",
        cleaner_client.id, len(schedule_ids), cancelled, skipped_paid,
    )
    return {"cancelled_appointments": cancelled, "skipped_paid_appointments": skipped_paid}


def parse_price(price):
    if price is None:
        raise ServiceError("Price is required")
    if isinstance(price, bool):
        raise ServiceError("Price must be a positive number")
    try:
        numeric_price = float(price)
    except (TypeError, ValueError):
        raise ServiceError("Price must be a positive number")
    if math.isnan(numeric_price) or math.isinf(numeric_price) or numeric_price < 0:
        raise ServiceError("Price must be a positive number")
    return numeric_price


def _coerce_setting(key, kind, value):
    if value is None:
        if kind == "flag":
            raise ServiceError("{} must be true or false".format(key))
        return None
    if kind == "flag":
        if not isinstance(value, bool):
            raise ServiceError("{} must be true or false".format(key))
        return value
    if kind == "day":
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 6:
            raise ServiceError("{} must be a whole number from 0 to 6".format(key))
        return value
    if kind == "price":
        return parse_price(value)
    if not isinstance(value, str):
        raise ServiceError("{} must be a string".format(key))
    return value


def update_relationship(cleaner_client, data):
    """Apply the editable settings in ``data``; nothing is written if any value is invalid."""
    changes = {}
    for key, (column, kind) in _EDITABLE_RELATIONSHIP_FIELDS.items():
        if key in data:
            changes[column] = _coerce_setting(key, kind, data[key])

    for column, value in changes.items():
        setattr(cleaner_client, column, value)
    db.session.commit()
    return cleaner_client


def update_default_price(cleaner_client, price):
    cleaner_client.default_price = parse_price(price)
    db.session.commit()
    return cleaner_client


# ---------------------------------------------------------------------------
# Booking and client detail
# ---------------------------------------------------------------------------

def book_appointment(cleaner_client, appointment_date, price=None, time_window=None):
    """Book a one-off clean for an active client and add it to their bill.

    ``price`` falls back to the relationship's default price.  Returns the
    new ``UserAppointment``.
    """
    if cleaner_client.status != InvitationStatus.ACTIVE.value:
        raise NotFound("Active client relationship not found")
    if appointment_date is None:
        raise ServiceError("Date is required")

    client = cleaner_client.client
    home = cleaner_client.home
    if not client or not home:
        raise ServiceError("Client must have an account and home set up before booking")

    if UserAppointment.query.filter_by(home_id=home.id, date=appointment_date).first():
        raise ServiceError("An appointment already exists for this date")

    amount = parse_price(price if price is not None else cleaner_client.default_price)

    try:
        appointment = UserAppointment(
            user_id=client.id,
            home_id=home.id,
            cleaner_id=cleaner_client.cleaner_id,
            date=appointment_date,
            time_constraint=time_window or home.time_to_be_completed or "anytime",
            price=amount,
        )
        db.session.add(appointment)
        db.session.flush()

        db.session.add(UserCleanerAppointment(
            appointment_id=appointment.id,
            employee_id=cleaner_client.cleaner_id,
        ))

        bill = UserBill.query.filter_by(user_id=client.id).first()
        if bill is None:
            bill = UserBill(user_id=client.id, appointment_due=0.0, cancellation_due=0.0, total_due=0.0)
            db.session.add(bill)
        bill.appointment_due = (bill.appointment_due or 0.0) + amount
        bill.total_due = (bill.total_due or 0.0) + amount
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Cleaner %s booked appointment %s for client %s on %s",
        cleaner_client.cleaner_id, appointment.id, client.id, appointment_date,
    )
    return appointment


def get_client_appointments(cleaner_client, today=None):
    """The client's appointments at the linked home, split around ``today``.

    ``history`` is newest first; ``today`` and ``upcoming`` run soonest first.
    """
    grouped = {"history": [], "today": [], "upcoming": []}
    if not cleaner_client.home_id:
        return grouped

    today = today or date.today()
    appointments = (
        UserAppointment.query
        .filter_by(home_id=cleaner_client.home_id)
        .order_by(UserAppointment.date.asc())
        .all()
    )
    for appointment in appointments:
        if appointment.date < today:
            grouped["history"].insert(0, appointment)
        elif appointment.date == today:
            grouped["today"].append(appointment)
        else:
            grouped["upcoming"].append(appointment)
    return grouped


def update_client_home(cleaner_client, data):
    """Pending invitations only keep notes; active clients get their home edited."""
    if cleaner_client.status == InvitationStatus.PENDING_INVITE.value:
        if "specialNotes" in data:
            cleaner_client.invited_notes = data["specialNotes"]
            db.session.commit()
        return "Invitation notes updated"

    if not cleaner_client.home_id:
        raise ServiceError("No home associated with this client")
    home = db.session.get(UserHome, cleaner_client.home_id)
    if not home:
        raise NotFound("Home not found")

    for key, column in _EDITABLE_HOME_FIELDS.items():
        if key in data:
            setattr(home, column, data[key])
    db.session.commit()
    return "Home updated successfully"
