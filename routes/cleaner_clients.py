"""
Cleaner-Clients API Routes

Cleaners invite their existing customers to Kleanr and manage the
relationship afterwards.  Invitation links are public: the client opens
``/accept-invite/<token>`` in the web app, which calls the
``/invitations/<token>`` endpoints here.
"""

import logging
import re
from datetime import date

from flask import Blueprint, request, jsonify
from sqlalchemy import func
from werkzeug.security import generate_password_hash

from auth_routes import require_cleaner, require_homeowner, generate_token
from extensions import limiter
from models import db, User, Review, RecurringSchedule, InvitationStatus
from notifications import (
    notify_user,
    send_client_invitation_email,
    send_invitation_reminder_email,
    send_invitation_accepted_email,
)
from services import invitation_service
from services.errors import ServiceError

logger = logging.getLogger(__name__)

cleaner_clients_bp = Blueprint("cleaner_clients", __name__, url_prefix="/api/v1/cleaner-clients")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 8


def _address_line(raw_address):
    parts = invitation_service.parse_address(raw_address)
    return ", ".join(str(parts[k]) for k in ("address", "city", "state", "zipcode") if parts.get(k))


def _cleaner_summary(cleaner):
    average, total = (
        db.session.query(func.avg(Review.rating), func.count(Review.id))
        .filter(Review.cleaner_id == cleaner.id)
        .one()
    )
    return {
        "id": cleaner.id,
        "firstName": cleaner.first_name,
        "lastName": cleaner.last_name,
        "profilePhoto": cleaner.profile_photo,
        "averageRating": round(float(average), 1) if average is not None else None,
        "totalReviews": total,
    }


# ---------------------------------------------------------------------------
# POST /api/v1/cleaner-clients/invite
# ---------------------------------------------------------------------------
@cleaner_clients_bp.route("/invite", methods=["POST"])
@require_cleaner
def invite_client(user_id):
    """Invite a client by email.

    Body JSON: name, email (required); phone, address, beds, baths,
    frequency, price, dayOfWeek, timeWindow, notes (optional).
    """
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip()

    if not name:
        return jsonify({"error": "Client name is required"}), 400
    if not email:
        return jsonify({"error": "Client email is required"}), 400
    if not EMAIL_RE.match(email):
        return jsonify({"error": "Invalid email format"}), 400

    cleaner_client = invitation_service.create_invitation(
        cleaner_id=user_id,
        name=name,
        email=email,
        phone=data.get("phone"),
        address=data.get("address"),
        beds=data.get("beds"),
        baths=data.get("baths"),
        frequency=data.get("frequency"),
        price=data.get("price"),
        day_of_week=data.get("dayOfWeek"),
        time_window=data.get("timeWindow"),
        notes=data.get("notes"),
    )

    cleaner = db.session.get(User, user_id)
    send_client_invitation_email(
        cleaner_client.invited_email,
        cleaner_client.invited_name,
        cleaner.full_name if cleaner else None,
        cleaner_client.invite_token,
        address=_address_line(cleaner_client.invited_address) or None,
    )

    return jsonify({
        "success": True,
        "message": "Invitation sent successfully",
        "cleanerClient": {
            "id": cleaner_client.id,
            "inviteToken": cleaner_client.invite_token,
            "invitedName": cleaner_client.invited_name,
            "invitedEmail": cleaner_client.invited_email,
            "status": cleaner_client.status,
            "invitedAt": cleaner_client.invited_at.isoformat(),
        },
    }), 201


# ---------------------------------------------------------------------------
# GET /api/v1/cleaner-clients
# ---------------------------------------------------------------------------
@cleaner_clients_bp.route("", methods=["GET"])
@cleaner_clients_bp.route("/", methods=["GET"])
@require_cleaner
def list_clients(user_id):
    status = request.args.get("status")
    if status and status not in InvitationStatus.values():
        return jsonify({"error": "Invalid status filter"}), 400

    clients = []
    for cc in invitation_service.get_cleaner_clients(user_id, status=status):
        entry = cc.to_dict()
        entry["client"] = cc.client.to_dict() if cc.client else None
        entry["home"] = cc.home.to_dict() if cc.home else None
        clients.append(entry)
    return jsonify({"clients": clients})


# ---------------------------------------------------------------------------
# Public invitation endpoints
# ---------------------------------------------------------------------------
@cleaner_clients_bp.route("/invitations/<token>", methods=["GET"])
def get_invitation(token):
    validation = invitation_service.validate_invite_token(token)
    if validation is None:
        return jsonify({"valid": False, "error": "Invalid invitation link"}), 404
    if validation.is_already_accepted:
        return jsonify({
            "valid": False,
            "error": "This invitation has already been accepted. Please log in.",
        }), 400
    if validation.is_expired:
        return jsonify({"valid": False, "error": "This invitation has been declined."}), 400

    cc = validation.invitation
    cleaner = cc.cleaner
    cleaner_name = None
    if cleaner and not validation.is_cancelled:
        cleaner_name = cleaner.full_name or None

    return jsonify({
        "valid": True,
        "isCancelled": validation.is_cancelled,
        "invitation": {
            "name": cc.invited_name,
            "email": cc.invited_email,
            "phone": cc.invited_phone,
            "address": invitation_service.parse_address(cc.invited_address),
            "beds": cc.invited_beds,
            "baths": cc.invited_baths,
            "cleanerName": cleaner_name,
        },
    })


@cleaner_clients_bp.route("/invitations/<token>/accept", methods=["POST"])
@limiter.limit("5 per minute")
def accept_invitation(token):
    """Create the homeowner account behind an invitation.

    Body JSON: password (required, min 8 chars), phone, addressCorrections.
    """
    data = request.get_json(silent=True) or {}
    password = data.get("password") or ""
    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({"error": "Password must be at least 8 characters"}), 400

    result = invitation_service.accept_invitation(
        token,
        password,
        generate_password_hash,
        phone=data.get("phone"),
        address_corrections=data.get("addressCorrections"),
    )
    user, home, cc = result["user"], result["home"], result["cleaner_client"]

    if cc.client_id == user.id:
        cleaner = cc.cleaner
        client_name = user.full_name
        home_address = _address_line({"address": home.address, "city": home.city,
                                      "state": home.state, "zipcode": home.zipcode}) if home else None
        if cleaner and cleaner.email:
            send_invitation_accepted_email(cleaner.email, cleaner.first_name, client_name, home_address)
        notify_user(
            cc.cleaner_id,
            "client_invitation_accepted",
            "Invitation Accepted",
            "{} accepted your invitation and joined Kleanr.".format(client_name or "Your client"),
            data={"cleanerClientId": cc.id, "clientId": user.id},
            push=True,
        )

    return jsonify({
        "success": True,
        "message": "Account created successfully",
        "user": user.to_dict(),
        "token": generate_token(user.id),
        "home": home.to_dict() if home else None,
    }), 201


@cleaner_clients_bp.route("/invitations/<token>/decline", methods=["POST"])
def decline_invitation(token):
    invitation_service.decline_invitation(token)
    return jsonify({"success": True, "message": "Invitation declined"})


# ---------------------------------------------------------------------------
# GET /api/v1/cleaner-clients/my-cleaner  (homeowner)
# ---------------------------------------------------------------------------
@cleaner_clients_bp.route("/my-cleaner", methods=["GET"])
@require_homeowner
def my_cleaner(user_id):
    cc = invitation_service.get_client_relationship(user_id)
    if not cc or not cc.cleaner:
        return jsonify({"cleaner": None})

    return jsonify({
        "cleaner": _cleaner_summary(cc.cleaner),
        "relationship": {
            "id": cc.id,
            "status": cc.status,
            "acceptedAt": cc.accepted_at.isoformat() if cc.accepted_at else None,
            "defaultFrequency": cc.default_frequency,
            "defaultPrice": cc.default_price,
            "defaultDayOfWeek": cc.default_day_of_week,
            "defaultTimeWindow": cc.default_time_window,
        },
    })


# ---------------------------------------------------------------------------
# /api/v1/cleaner-clients/<id>  (owning cleaner)
# ---------------------------------------------------------------------------
@cleaner_clients_bp.route("/<cleaner_client_id>", methods=["GET"])
@require_cleaner
def get_client(user_id, cleaner_client_id):
    cc = invitation_service.get_owned_relationship(cleaner_client_id, user_id)
    schedules = (
        RecurringSchedule.query
        .filter_by(cleaner_client_id=cc.id, is_active=True)
        .order_by(RecurringSchedule.created_at.asc())
        .all()
    )
    result = cc.to_dict()
    result["client"] = cc.client.to_dict() if cc.client else None
    result["home"] = cc.home.to_dict() if cc.home else None
    result["recurringSchedules"] = [s.to_dict() for s in schedules]
    return jsonify({"cleanerClient": result})


@cleaner_clients_bp.route("/<cleaner_client_id>/full", methods=["GET"])
@require_cleaner
def get_client_full(user_id, cleaner_client_id):
    """Relationship, client, home, every schedule and appointments grouped by date."""
    cc = invitation_service.get_owned_relationship(cleaner_client_id, user_id)
    grouped = invitation_service.get_client_appointments(cc)
    schedules = RecurringSchedule.query.filter_by(cleaner_client_id=cc.id).order_by(
        RecurringSchedule.created_at.asc()
    ).all()
    return jsonify({
        "cleanerClient": cc.to_dict(),
        "client": cc.client.to_dict() if cc.client else None,
        "home": cc.home.to_dict() if cc.home else None,
        "appointments": {
            group: [a.to_dict() for a in appointments] for group, appointments in grouped.items()
        },
        "recurringSchedules": [s.to_dict() for s in schedules],
    })


# ---------------------------------------------------------------------------
# POST /api/v1/cleaner-clients/<id>/book
# ---------------------------------------------------------------------------
@cleaner_clients_bp.route("/<cleaner_client_id>/book", methods=["POST"])
@require_cleaner
def book_for_client(user_id, cleaner_client_id):
    """Book a clean for a linked client.

    Body JSON: date (YYYY-MM-DD, required); price (defaults to the
    relationship's default price); timeWindow.
    """
    cc = invitation_service.get_owned_relationship(cleaner_client_id, user_id)
    data = request.get_json(silent=True) or {}

    appointment_date = None
    if data.get("date"):
        try:
            appointment_date = date.fromisoformat(str(data["date"])[:10])
        except ValueError:
            return jsonify({"error": "Invalid date"}), 400

    appointment = invitation_service.book_appointment(
        cc,
        appointment_date,
        price=data.get("price"),
        time_window=data.get("timeWindow"),
    )
    home = cc.home
    return jsonify({
        "success": True,
        "message": "Appointment booked successfully",
        "appointment": {
            "id": appointment.id,
            "date": appointment.date.isoformat(),
            "price": appointment.price,
            "clientName": cc.client.full_name,
            "homeAddress": ", ".join(part for part in (home.address, home.city) if part),
            "timeWindow": appointment.time_constraint,
        },
    }), 201


@cleaner_clients_bp.route("/<cleaner_client_id>", methods=["PATCH"])
@require_cleaner
def update_client(user_id, cleaner_client_id):
    cc = invitation_service.get_owned_relationship(cleaner_client_id, user_id)
    data = request.get_json(silent=True) or {}
    invitation_service.update_relationship(cc, data)
    return jsonify({"success": True, "cleanerClient": cc.to_dict()})


@cleaner_clients_bp.route("/<cleaner_client_id>/default-price", methods=["PATCH"])
@require_cleaner
def update_default_price(user_id, cleaner_client_id):
    cc = invitation_service.get_owned_relationship(cleaner_client_id, user_id)
    data = request.get_json(silent=True) or {}
    invitation_service.update_default_price(cc, data.get("price"))
    return jsonify({"success": True, "defaultPrice": cc.default_price})


@cleaner_clients_bp.route("/<cleaner_client_id>/home", methods=["PATCH"])
@require_cleaner
def update_client_home(user_id, cleaner_client_id):
    cc = invitation_service.get_owned_relationship(cleaner_client_id, user_id)
    data = request.get_json(silent=True) or {}
    message = invitation_service.update_client_home(cc, data)
    return jsonify({"success": True, "message": message})


@cleaner_clients_bp.route("/<cleaner_client_id>", methods=["DELETE"])
@require_cleaner
def remove_client(user_id, cleaner_client_id):
    """Cancel a pending invitation or end an active relationship."""
    cc = invitation_service.get_owned_relationship(cleaner_client_id, user_id)

    if cc.status == InvitationStatus.PENDING_INVITE.value:
        invitation_service.cancel_invitation(cc)
        return jsonify({"success": True, "message": "Invitation cancelled"})

    if cc.status != InvitationStatus.ACTIVE.value:
        raise ServiceError("Cannot remove a client with status {}".format(cc.status))

    outcome = invitation_service.deactivate_relationship(cc)
    response = {
        "success": True,
        "message": "Client relationship deactivated",
        "cancelledAppointments": outcome["cancelled_appointments"],
        "skippedPaidAppointments": outcome["skipped_paid_appointments"],
    }
    if outcome["skipped_paid_appointments"] > 0:
        response["note"] = (
            "{} paid appointment(s) were kept. Refund or complete them separately.".format(
                outcome["skipped_paid_appointments"]
            )
        )
    return jsonify(response)


@cleaner_clients_bp.route("/<cleaner_client_id>/resend-invite", methods=["POST"])
@require_cleaner
def resend_invite(user_id, cleaner_client_id):
    cc = invitation_service.resend_invitation(cleaner_client_id, user_id)
    cleaner = db.session.get(User, user_id)
    send_invitation_reminder_email(
        cc.invited_email,
        cc.invited_name,
        cleaner.full_name if cleaner else None,
        cc.invite_token,
    )
    return jsonify({"success": True, "message": "Invitation resent successfully"})
