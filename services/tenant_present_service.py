"""
Tenant-Present Service

Appointment-level version of the guest-not-left report.  The cleaner says
someone is still at the property; the homeowner has a response deadline;
the cleaner then waits, leaves and comes back, proceeds or cancels.
Cancellations caused by an occupied property carry no penalty, but they
are counted against both the cleaner (scrutiny) and the home (incidents)
so repeat patterns can be spotted.

Tuning values come from ``TENANT_PRESENT_*`` keys in the app config.
"""

import calendar
import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta

from flask import current_app
from sqlalchemy import func

from models import (
    db, User, UserHome, UserAppointment, EmployeeJobAssignment, GuestNotLeftReport,
    utcnow,
)
from geofencing import distance_from_home, is_on_site
from notifications import notify_user
from services.guest_not_left_service import works_assignment
from services.errors import ServiceError, NotFound, NotAuthorized

logger = logging.getLogger(__name__)

# Resolutions that mean the clean did not happen.
NO_CLEAN_RESOLUTIONS = ("cancelled_no_penalty", "cleaner_no_return", "expired")

CLEANER_STATS_MONTHS = 6
HOME_STATS_MONTHS = 12

_TIME_RE = re.compile(r"(\d{1,2}):?(\d{2})?\s*(AM|PM)?", re.IGNORECASE)


@dataclass(frozen=True)
class TenantPresentSettings:
    response_deadline_minutes: int = 30
    min_hours_for_return: float = 2
    gps_verification_meters: float = 200
    scrutiny_watch_count: int = 3
    scrutiny_high_risk_count: int = 5
    max_extra_minutes: int = 60

    @classmethod
    def from_config(cls, config):
        return cls(
            response_deadline_minutes=config.get("TENANT_PRESENT_RESPONSE_DEADLINE_MINUTES", 30),
            min_hours_for_return=config.get("TENANT_PRESENT_MIN_HOURS_FOR_RETURN", 2),
            gps_verification_meters=config.get("TENANT_PRESENT_GPS_VERIFICATION_METERS", 200),
            scrutiny_watch_count=config.get("TENANT_PRESENT_SCRUTINY_WATCH_COUNT", 3),
            scrutiny_high_risk_count=config.get("TENANT_PRESENT_SCRUTINY_HIGH_RISK_COUNT", 5),
            max_extra_minutes=config.get("TENANT_PRESENT_MAX_EXTRA_MINUTES", 60),
        )


def _settings(settings=None):
    return settings or TenantPresentSettings.from_config(current_app.config)


def _iso(value):
    return value.isoformat() if value else None


def _months_ago(now, months):
    month_index = now.year * 12 + (now.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def _commit():
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _broadcast(report, appointment=None):
    from socket_events import broadcast_report_update
    broadcast_report_update(report.appointment_id, serialize_tenant_present_report(report, appointment))


# ---------------------------------------------------------------------------
# Time window
# ---------------------------------------------------------------------------

def calculate_time_window_end(appointment):
    """End of the appointment's time window as a naive UTC datetime.

    ``time_constraint`` looks like ``"10am-3pm"`` or ``"9:00 AM - 1:30 PM"``;
    anything unparseable falls back to the end of the appointment day.
    """
    end_of_day = datetime.combine(appointment.date, time(23, 59, 59))
    constraint = appointment.time_constraint or ""
    if "-" not in constraint:
        return end_of_day

    match = _TIME_RE.search(constraint.split("-", 1)[1])
    if not match:
        return end_of_day

    hours = int(match.group(1))
    minutes = int(match.group(2) or 0)
    meridiem = (match.group(3) or "").upper()
    if meridiem == "PM" and hours != 12:
        hours += 12
    elif meridiem == "AM" and hours == 12:
        hours = 0

    if hours > 23 or minutes > 59:
        return end_of_day
    return datetime.combine(appointment.date, time(hours, minutes))


# ---------------------------------------------------------------------------
# Serialization and lookups
# ---------------------------------------------------------------------------

def serialize_tenant_present_report(report, appointment=None, now=None):
    now = now or utcnow()
    appointment = appointment or db.session.get(UserAppointment, report.appointment_id)
    reporter = report.reporter

    deadline_remaining = None
    if report.response_deadline:
        deadline_remaining = max(0, int((report.response_deadline - now).total_seconds()))

    time_window_remaining = None
    if report.time_window_end:
        time_window_remaining = max(0, int((report.time_window_end - now).total_seconds()))

    home = appointment.home if appointment else None
    return {
        "id": report.id,
        "appointmentId": report.appointment_id,
        "employeeJobAssignmentId": report.employee_job_assignment_id,
        "reportedBy": report.reported_by,
        "reporterName": reporter.full_name if reporter else None,
        "reportedAt": _iso(report.reported_at),
        "notes": report.notes,
        "gpsVerifiedOnSite": report.gps_verified_on_site,
        "distanceFromHome": report.distance_from_home,
        "homeownerNotifiedAt": _iso(report.homeowner_notified_at),
        "responseDeadline": _iso(report.response_deadline),
        "responseDeadlineRemainingSeconds": deadline_remaining,
        "timeWindowEnd": _iso(report.time_window_end),
        "timeWindowRemainingSeconds": time_window_remaining,
        "homeownerResponse": report.homeowner_response,
        "homeownerResponseAt": _iso(report.homeowner_response_at),
        "homeownerResponseNote": report.homeowner_response_note,
        "additionalTimeRequested": report.additional_time_requested,
        "cleanerAction": report.cleaner_action,
        "cleanerActionAt": _iso(report.cleaner_action_at),
        "scheduledReturnTime": _iso(report.scheduled_return_time),
        "actualReturnTime": _iso(report.actual_return_time),
        "resolved": bool(report.resolved),
        "resolvedAt": _iso(report.resolved_at),
        "resolution": report.resolution,
        "appointment": {
            "id": appointment.id,
            "date": _iso(appointment.date),
            "timeConstraint": appointment.time_constraint,
            "address": home.address if home else None,
            "nickname": home.nickname if home else None,
        } if appointment else None,
    }


def can_view_appointment(appointment, user_id):
    """Homeowner, booked cleaner, and the owner or employee on any of its job assignments."""
    if appointment is None or not user_id:
        return False
    if user_id in (appointment.user_id, appointment.cleaner_id):
        return True
    assignments = EmployeeJobAssignment.query.filter_by(appointment_id=appointment.id).all()
    return any(works_assignment(a, user_id) for a in assignments)


def get_visible_appointment(appointment_id, user_id):
    appointment = db.session.get(UserAppointment, appointment_id)
    if not can_view_appointment(appointment, user_id):
        raise NotFound("Appointment not found")
    return appointment


def _active_report_query(appointment_id):
    return GuestNotLeftReport.query.filter(
        GuestNotLeftReport.appointment_id == appointment_id,
        GuestNotLeftReport.resolved.is_(False),
        GuestNotLeftReport.response_deadline.isnot(None),
    )


def get_active_report_for_appointment(appointment_id):
    report = _active_report_query(appointment_id).order_by(GuestNotLeftReport.reported_at.desc()).first()
    return serialize_tenant_present_report(report) if report else None


def get_pending_reports_for_homeowner(homeowner_id):
    reports = (
        GuestNotLeftReport.query
        .join(UserAppointment, GuestNotLeftReport.appointment_id == UserAppointment.id)
        .filter(
            UserAppointment.user_id == homeowner_id,
            GuestNotLeftReport.resolved.is_(False),
            GuestNotLeftReport.response_deadline.isnot(None),
        )
        .order_by(GuestNotLeftReport.reported_at.desc())
        .all()
    )
    return [serialize_tenant_present_report(r) for r in reports]


def get_reports_with_expired_deadline(now=None):
    """Open reports the homeowner never answered before the deadline."""
    now = now or utcnow()
    return GuestNotLeftReport.query.filter(
        GuestNotLeftReport.resolved.is_(False),
        GuestNotLeftReport.homeowner_response.is_(None),
        GuestNotLeftReport.response_deadline.isnot(None),
        GuestNotLeftReport.response_deadline < now,
    ).all()


def get_expired_return_reports(now=None):
    """Open reports where the cleaner promised to return and the window closed."""
    now = now or utcnow()
    return GuestNotLeftReport.query.filter(
        GuestNotLeftReport.resolved.is_(False),
        GuestNotLeftReport.cleaner_action == "will_return",
        GuestNotLeftReport.actual_return_time.is_(None),
        GuestNotLeftReport.time_window_end.isnot(None),
        GuestNotLeftReport.time_window_end < now,
    ).all()


def validate_report_access(report_id, user_id, role):
    """Load an open report and check ``user_id`` may act on it as ``role``.

    ``role`` is ``"cleaner"`` (the reporter) or ``"homeowner"`` (the
    appointment's owner).  Returns ``(report, appointment)``.
    """
    report = db.session.get(GuestNotLeftReport, report_id)
    if not report:
        raise NotFound("Report not found")
    if report.resolved:
        raise ServiceError("Report already resolved")

    appointment = db.session.get(UserAppointment, report.appointment_id)
    if role == "cleaner":
        allowed = report.reported_by == user_id
    elif role == "homeowner":
        allowed = appointment is not None and appointment.user_id == user_id
    else:
        allowed = False
    if not allowed:
        raise NotAuthorized("Not authorized")
    return report, appointment


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def _can_work_appointment(appointment, assignment, cleaner_id):
    if appointment.cleaner_id == cleaner_id:
        return True
    if assignment is None:
        return False
    if assignment.is_self_assignment and assignment.business_owner_id == cleaner_id:
        return True
    return assignment.employee is not None and assignment.employee.user_id == cleaner_id


def report_tenant_present(appointment_id, cleaner_id, location=None, notes=None, settings=None):
    """Open a tenant-present report and start the homeowner's response clock."""
    settings = _settings(settings)

    appointment = db.session.get(UserAppointment, appointment_id)
    if not appointment:
        raise NotFound("Appointment not found")
    if appointment.job_started_at:
        raise ServiceError("Cannot report tenant present after job has started")
    if _active_report_query(appointment_id).first():
        raise ServiceError("There is already an active tenant present report for this appointment")

    assignment = EmployeeJobAssignment.query.filter_by(appointment_id=appointment_id, status="assigned").first()
    if not _can_work_appointment(appointment, assignment, cleaner_id):
        raise NotAuthorized("You are not assigned to this appointment")

    location = location or {}
    home = appointment.home
    distance = distance_from_home(location, home)
    now = utcnow()

    report = GuestNotLeftReport(
        employee_job_assignment_id=assignment.id if assignment else None,
        appointment_id=appointment.id,
        reported_by=cleaner_id,
        reported_at=now,
        cleaner_latitude=location.get("latitude"),
        cleaner_longitude=location.get("longitude"),
        distance_from_home=distance,
        gps_verified_on_site=is_on_site(distance, settings.gps_verification_meters),
        notes=notes,
        homeowner_notified_at=now,
        response_deadline=now + timedelta(minutes=settings.response_deadline_minutes),
        time_window_end=calculate_time_window_end(appointment),
    )
    db.session.add(report)

    cleaner = db.session.get(User, cleaner_id)
    if cleaner:
        cleaner.tenant_present_report_count = (cleaner.tenant_present_report_count or 0) + 1
        cleaner.last_tenant_present_report_at = now
    _commit()

    logger.info("Tenant-present report %s on appointment %s by %s", report.id, appointment.id, cleaner_id)

    cleaner_name = (cleaner.first_name if cleaner else None) or "Your cleaner"
    address = (home.address if home else None) or "your property"
    notify_user(
        appointment.user_id,
        "tenant_present",
        "Tenant Still Present",
        "{} arrived but someone is still at {}. Please respond within {} minutes.".format(
            cleaner_name, address, settings.response_deadline_minutes
        ),
        data={
            "appointmentId": appointment.id,
            "reportId": report.id,
            "responseDeadline": _iso(report.response_deadline),
            "requiresResponse": True,
        },
        action_required=True,
        related_appointment_id=appointment.id,
        push=True,
        email=True,
    )
    _broadcast(report, appointment)

    return {
        "report": serialize_tenant_present_report(report, appointment),
        "message": "Tenant present reported. Homeowner has been notified.",
    }


# ---------------------------------------------------------------------------
# Cleaner actions
# ---------------------------------------------------------------------------

def cleaner_will_wait(report_id, cleaner_id):
    report, appointment = validate_report_access(report_id, cleaner_id, "cleaner")
    report.cleaner_action = "waiting"
    report.cleaner_action_at = utcnow()
    _commit()
    _broadcast(report, appointment)
    return serialize_tenant_present_report(report, appointment)


def cleaner_will_return(report_id, cleaner_id, return_time=None, settings=None):
    """Leave and come back later; requires enough of the window to remain."""
    settings = _settings(settings)
    report, appointment = validate_report_access(report_id, cleaner_id, "cleaner")

    now = utcnow()
    window_end = report.time_window_end or calculate_time_window_end(appointment)
    hours_left = (window_end - now).total_seconds() / 3600.0
    if hours_left < settings.min_hours_for_return:
        raise ServiceError(
            "Not enough time remaining. At least {:g} hours required.".format(settings.min_hours_for_return)
        )

    report.cleaner_action = "will_return"
    report.cleaner_action_at = now
    report.scheduled_return_time = return_time or (window_end - timedelta(hours=1))
    _commit()

    notify_user(
        appointment.user_id,
        "tenant_present_cleaner_returning",
        "Cleaner Will Return",
        "Your cleaner will come back around {}.".format(report.scheduled_return_time.strftime("%I:%M %p").lstrip("0")),
        data={"appointmentId": appointment.id, "reportId": report.id},
        related_appointment_id=appointment.id,
        push=True,
    )
    _broadcast(report, appointment)
    return serialize_tenant_present_report(report, appointment)


def cleaner_returned(report_id, cleaner_id, location=None):
    report, appointment = validate_report_access(report_id, cleaner_id, "cleaner")
    if report.cleaner_action != "will_return":
        raise ServiceError("Cleaner did not indicate they would return")

    location = location or {}
    report.actual_return_time = utcnow()
    report.cleaner_returned_gps_lat = location.get("latitude")
    report.cleaner_returned_gps_lng = location.get("longitude")
    _commit()
    _broadcast(report, appointment)
    return serialize_tenant_present_report(report, appointment)


def cleaner_proceeding(report_id, cleaner_id):
    """The property is clear; the clean goes ahead."""
    report, appointment = validate_report_access(report_id, cleaner_id, "cleaner")
    now = utcnow()
    report.cleaner_action = "proceeded"
    report.cleaner_action_at = now
    report.resolved = True
    report.resolved_at = now
    report.resolved_by = cleaner_id
    report.resolution = "completed"
    _commit()
    _broadcast(report, appointment)
    return serialize_tenant_present_report(report, appointment)


def _record_no_clean(report, appointment, resolution, resolved_by, cancellation_type, reason):
    """Resolve the report and cancel the appointment without penalty."""
    now = utcnow()
    report.resolved = True
    report.resolved_at = now
    report.resolved_by = resolved_by
    report.resolution = resolution

    appointment.was_cancelled = True
    appointment.cancellation_type = cancellation_type
    appointment.cancellation_category = "tenant_present"
    appointment.cancellation_reason = reason
    appointment.cancellation_confirmed_at = now
    appointment.reviews_blocked = True

    cleaner = db.session.get(User, report.reported_by)
    if cleaner:
        cleaner.tenant_present_no_clean_count = (cleaner.tenant_present_no_clean_count or 0) + 1

    home = db.session.get(UserHome, appointment.home_id) if appointment.home_id else None
    if home:
        home.tenant_present_incident_count = (home.tenant_present_incident_count or 0) + 1
        home.last_tenant_present_incident_at = now

    if cleaner:
        update_cleaner_scrutiny(cleaner.id, commit=False)
    _commit()


def cleaner_cancelling(report_id, cleaner_id):
    report, appointment = validate_report_access(report_id, cleaner_id, "cleaner")
    report.cleaner_action = "cancelled"
    report.cleaner_action_at = utcnow()
    _record_no_clean(
        report, appointment,
        resolution="cancelled_no_penalty",
        resolved_by=cleaner_id,
        cancellation_type="system",
        reason="Tenant present - cleaner cancelled",
    )

    notify_user(
        appointment.user_id,
        "tenant_present_cancelled",
        "Cleaning Cancelled",
        "Your cleaning was cancelled because someone was still at the property. You will not be charged.",
        data={"appointmentId": appointment.id, "reportId": report.id},
        related_appointment_id=appointment.id,
        push=True,
        email=True,
    )
    _broadcast(report, appointment)
    return serialize_tenant_present_report(report, appointment)


# ---------------------------------------------------------------------------
# Homeowner responses
# ---------------------------------------------------------------------------

def _record_response(report, response, note):
    report.homeowner_response = response
    report.homeowner_response_at = utcnow()
    report.homeowner_response_note = note


def homeowner_resolved(report_id, homeowner_id, note=None):
    report, appointment = validate_report_access(report_id, homeowner_id, "homeowner")
    _record_response(report, "resolved", note)
    _commit()

    notify_user(
        report.reported_by,
        "tenant_present_resolved",
        "Tenant Leaving",
        "The homeowner says the property is being cleared. You can proceed shortly.",
        data={"appointmentId": appointment.id, "reportId": report.id},
        related_appointment_id=appointment.id,
        push=True,
    )
    _broadcast(report, appointment)
    return serialize_tenant_present_report(report, appointment)


def homeowner_needs_time(report_id, homeowner_id, additional_minutes, note=None, settings=None):
    settings = _settings(settings)
    try:
        minutes = int(additional_minutes)
    except (TypeError, ValueError):
        raise ServiceError("Additional minutes must be a positive number")
    if minutes <= 0:
        raise ServiceError("Additional minutes must be a positive number")
    minutes = min(minutes, settings.max_extra_minutes)

    report, appointment = validate_report_access(report_id, homeowner_id, "homeowner")
    _record_response(report, "need_time", note)
    report.additional_time_requested = minutes
    _commit()

    notify_user(
        report.reported_by,
        "tenant_present_need_time",
        "More Time Needed",
        "The homeowner needs about {} more minutes before you can start.".format(minutes),
        data={"appointmentId": appointment.id, "reportId": report.id, "additionalMinutes": minutes},
        related_appointment_id=appointment.id,
        push=True,
    )
    _broadcast(report, appointment)
    return serialize_tenant_present_report(report, appointment)


def homeowner_cannot_resolve(report_id, homeowner_id, note=None):
    report, appointment = validate_report_access(report_id, homeowner_id, "homeowner")
    _record_response(report, "cannot_resolve", note)
    _record_no_clean(
        report, appointment,
        resolution="cancelled_no_penalty",
        resolved_by=homeowner_id,
        cancellation_type="homeowner",
        reason="Tenant present - homeowner could not resolve",
    )

    notify_user(
        report.reported_by,
        "tenant_present_cancelled",
        "Cleaning Cancelled",
        "The homeowner could not clear the property. This cleaning is cancelled with no penalty to you.",
        data={"appointmentId": appointment.id, "reportId": report.id},
        related_appointment_id=appointment.id,
        push=True,
    )
    _broadcast(report, appointment)
    return serialize_tenant_present_report(report, appointment)


# ---------------------------------------------------------------------------
# Timeouts (scheduler)
# ---------------------------------------------------------------------------

def handle_response_timeout(report_id):
    """Mark an unanswered report ``no_response`` and tell the cleaner."""
    report = db.session.get(GuestNotLeftReport, report_id)
    if not report or report.resolved or report.homeowner_response:
        return None

    report.homeowner_response = "no_response"
    report.homeowner_response_at = utcnow()
    _commit()

    notify_user(
        report.reported_by,
        "tenant_present_no_response",
        "No Response from Homeowner",
        "The homeowner did not respond in time. You can wait, come back later or cancel without penalty.",
        data={"appointmentId": report.appointment_id, "reportId": report.id},
        action_required=True,
        related_appointment_id=report.appointment_id,
        push=True,
    )
    _broadcast(report)
    return report


def handle_return_timeout(report_id):
    """The cleaner said they would return and the window closed without them."""
    report = db.session.get(GuestNotLeftReport, report_id)
    if not report or report.resolved or report.cleaner_action != "will_return" or report.actual_return_time:
        return None
    if report.time_window_end and utcnow() < report.time_window_end:
        return None

    appointment = db.session.get(UserAppointment, report.appointment_id)
    _record_no_clean(
        report, appointment,
        resolution="cleaner_no_return",
        resolved_by=None,
        cancellation_type="system",
        reason="Tenant present - cleaner did not return",
    )
    _broadcast(report, appointment)
    return report


# ---------------------------------------------------------------------------
# Scrutiny and stats
# ---------------------------------------------------------------------------

def get_cleaner_report_stats(cleaner_id, months=CLEANER_STATS_MONTHS, now=None):
    since = _months_ago(now or utcnow(), months)
    base = GuestNotLeftReport.query.filter(
        GuestNotLeftReport.reported_by == cleaner_id,
        GuestNotLeftReport.response_deadline.isnot(None),
        GuestNotLeftReport.reported_at >= since,
    )
    total = base.count()
    no_clean = base.filter(GuestNotLeftReport.resolution.in_(NO_CLEAN_RESOLUTIONS)).count()
    completed = base.filter(GuestNotLeftReport.resolution == "completed").count()
    return {
        "totalReports": total,
        "noCleanReports": no_clean,
        "completedAfterReport": completed,
        "months": months,
    }


def update_cleaner_scrutiny(cleaner_id, settings=None, commit=True):
    """Recompute the cleaner's scrutiny level from recent no-clean reports."""
    settings = _settings(settings)
    cleaner = db.session.get(User, cleaner_id)
    if not cleaner:
        return None

    no_clean = get_cleaner_report_stats(cleaner_id)["noCleanReports"]
    if no_clean >= settings.scrutiny_high_risk_count:
        level = "high_risk"
    elif no_clean >= settings.scrutiny_watch_count:
        level = "watch"
    else:
        level = "none"

    if cleaner.tenant_report_scrutiny_level != level:
        logger.info("Cleaner %s scrutiny %s -> %s", cleaner_id, cleaner.tenant_report_scrutiny_level, level)
        cleaner.tenant_report_scrutiny_level = level
    if commit:
        _commit()
    return level


def get_home_incident_stats(home_id, months=HOME_STATS_MONTHS, now=None):
    """Incidents at one home.  Several different cleaners reporting suggests a real issue."""
    since = _months_ago(now or utcnow(), months)
    base = (
        GuestNotLeftReport.query
        .join(UserAppointment, GuestNotLeftReport.appointment_id == UserAppointment.id)
        .filter(
            UserAppointment.home_id == home_id,
            GuestNotLeftReport.response_deadline.isnot(None),
            GuestNotLeftReport.reported_at >= since,
        )
    )
    total = base.count()
    unique_cleaners = base.with_entities(func.count(func.distinct(GuestNotLeftReport.reported_by))).scalar() or 0
    return {
        "totalIncidents": total,
        "uniqueCleaners": unique_cleaners,
        "likelyRealIssue": unique_cleaners >= 2,
        "months": months,
    }
