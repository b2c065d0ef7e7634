"""
Guest-Not-Left API Routes

Assignment-level reports from business employees, plus the appointment
level tenant-present workflow shared by the reporting cleaner and the
homeowner.
"""

import logging
from datetime import datetime, timezone

from flask import Blueprint, request, jsonify

from auth_routes import require_auth, require_homeowner
from services import guest_not_left_service, tenant_present_service
from services.errors import ServiceError

logger = logging.getLogger(__name__)

guest_not_left_bp = Blueprint("guest_not_left", __name__, url_prefix="/api/v1/guest-not-left")


def _body():
    return request.get_json(silent=True) or {}


def _location(data):
    if data.get("latitude") is None or data.get("longitude") is None:
        return None
    try:
        return {"latitude": float(data["latitude"]), "longitude": float(data["longitude"])}
    except (TypeError, ValueError):
        raise ServiceError("Latitude and longitude must be numbers")


def _parse_time(value):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ServiceError("Invalid return time")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


# ===========================================================================
# Assignment reports (business employees)
# ===========================================================================

@guest_not_left_bp.route("/assignments/<assignment_id>/report", methods=["POST"])
@require_auth
def report_guest_not_left(user_id, assignment_id):
    """Report that guests are still at the property.

    Body JSON: latitude, longitude, notes (all optional).
    """
    data = _body()
    result = guest_not_left_service.report_guest_not_left(
        assignment_id,
        user_id,
        location=_location(data),
        notes=data.get("notes"),
    )
    return jsonify({
        "success": True,
        "message": result["message"],
        "report": result["report"].to_dict(),
        "reportCount": result["report_count"],
        "homeownerNotified": result["homeowner_notified"],
    }), 201


@guest_not_left_bp.route("/assignments/<assignment_id>/status", methods=["GET"])
@require_auth
def assignment_status(user_id, assignment_id):
    guest_not_left_service.get_visible_assignment(assignment_id, user_id)
    return jsonify(guest_not_left_service.get_guest_not_left_status(assignment_id))


@guest_not_left_bp.route("/assignments/<assignment_id>/history", methods=["GET"])
@require_auth
def assignment_history(user_id, assignment_id):
    guest_not_left_service.get_visible_assignment(assignment_id, user_id)
    reports = guest_not_left_service.get_report_history(assignment_id)
    return jsonify({"reports": [r.to_dict() for r in reports]})


@guest_not_left_bp.route("/assignments/<assignment_id>/start", methods=["POST"])
@require_auth
def start_assignment(user_id, assignment_id):
    assignment = guest_not_left_service.start_assignment(assignment_id, user_id)
    return jsonify({"success": True, "assignment": assignment.to_dict()})


# ===========================================================================
# Tenant present (appointment level)
# ===========================================================================

@guest_not_left_bp.route("/appointments/<appointment_id>/tenant-present", methods=["POST"])
@require_auth
def report_tenant_present(user_id, appointment_id):
    data = _body()
    result = tenant_present_service.report_tenant_present(
        appointment_id,
        user_id,
        location=_location(data),
        notes=data.get("notes"),
    )
    return jsonify({"success": True, **result}), 201


@guest_not_left_bp.route("/appointments/<appointment_id>/active-report", methods=["GET"])
@require_auth
def active_report(user_id, appointment_id):
    tenant_present_service.get_visible_appointment(appointment_id, user_id)
    return jsonify({"report": tenant_present_service.get_active_report_for_appointment(appointment_id)})


@guest_not_left_bp.route("/pending", methods=["GET"])
@require_homeowner
def pending_reports(user_id):
    return jsonify({"reports": tenant_present_service.get_pending_reports_for_homeowner(user_id)})


# ---------------------------------------------------------------------------
# Reporting cleaner
# ---------------------------------------------------------------------------

@guest_not_left_bp.route("/reports/<report_id>/wait", methods=["POST"])
@require_auth
def cleaner_wait(user_id, report_id):
    return jsonify({"success": True, "report": tenant_present_service.cleaner_will_wait(report_id, user_id)})


@guest_not_left_bp.route("/reports/<report_id>/return", methods=["POST"])
@require_auth
def cleaner_return(user_id, report_id):
    return_time = _parse_time(_body().get("returnTime"))
    report = tenant_present_service.cleaner_will_return(report_id, user_id, return_time=return_time)
    return jsonify({"success": True, "report": report})


@guest_not_left_bp.route("/reports/<report_id>/returned", methods=["POST"])
@require_auth
def cleaner_returned(user_id, report_id):
    report = tenant_present_service.cleaner_returned(report_id, user_id, location=_location(_body()))
    return jsonify({"success": True, "report": report})


@guest_not_left_bp.route("/reports/<report_id>/proceed", methods=["POST"])
@require_auth
def cleaner_proceed(user_id, report_id):
    return jsonify({"success": True, "report": tenant_present_service.cleaner_proceeding(report_id, user_id)})


@guest_not_left_bp.route("/reports/<report_id>/cancel", methods=["POST"])
@require_auth
def cleaner_cancel(user_id, report_id):
    return jsonify({"success": True, "report": tenant_present_service.cleaner_cancelling(report_id, user_id)})


# ---------------------------------------------------------------------------
# Homeowner
# ---------------------------------------------------------------------------

@guest_not_left_bp.route("/reports/<report_id>/resolved", methods=["POST"])
@require_homeowner
def homeowner_resolved(user_id, report_id):
    report = tenant_present_service.homeowner_resolved(report_id, user_id, note=_body().get("note"))
    return jsonify({"success": True, "report": report})


@guest_not_left_bp.route("/reports/<report_id>/need-time", methods=["POST"])
@require_homeowner
def homeowner_need_time(user_id, report_id):
    data = _body()
    report = tenant_present_service.homeowner_needs_time(
        report_id, user_id, data.get("additionalMinutes"), note=data.get("note")
    )
    return jsonify({"success": True, "report": report})


@guest_not_left_bp.route("/reports/<report_id>/cannot-resolve", methods=["POST"])
@require_homeowner
def homeowner_cannot_resolve(user_id, report_id):
    report = tenant_present_service.homeowner_cannot_resolve(report_id, user_id, note=_body().get("note"))
    return jsonify({"success": True, "report": report})
