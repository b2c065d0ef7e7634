"""
Guest-Not-Left Service

A cleaner who arrives to find the previous guests still in the property
files a report against their job assignment instead of starting the job.
The assignment keeps a running count; the homeowner hears about every
report and the business owner is pulled in once the count reaches
``ESCALATION_THRESHOLD``.  Starting the job clears the flag, and a daily
sweep expires assignments whose date passed with guests still present.
"""

import logging
from datetime import date

from models import (
    db, User, BusinessEmployee, EmployeeJobAssignment, GuestNotLeftReport, UserAppointment,
    utcnow,
)
from geofencing import distance_from_home
from notifications import notify_user
from services.errors import NotFound, NotAuthorized

logger = logging.getLogger(__name__)

ESCALATION_THRESHOLD = 3

REPORTED_MESSAGE = "Guest not left reported. Job remains in your queue."


def _property_name(home, fallback):
    if home is None:
        return fallback
    return home.nickname or home.address or fallback


def _is_assigned(assignment, employee, user_id):
    if employee is not None and assignment.business_employee_id == employee.id:
        return True
    return bool(assignment.is_self_assignment and assignment.business_owner_id == user_id)


def _active_employee(user_id):
    employee = BusinessEmployee.query.filter_by(user_id=user_id, status="active").first()
    if not employee:
        raise NotFound("Employee record not found")
    return employee


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def report_guest_not_left(assignment_id, employee_user_id, location=None, notes=None):
    """Record that guests are still on site for a not-yet-started assignment.

    Returns ``{"report", "report_count", "homeowner_notified", "message"}``.
    """
    employee = _active_employee(employee_user_id)

    assignment = EmployeeJobAssignment.query.filter_by(id=assignment_id, status="assigned").first()
    if not assignment:
        raise NotFound("Assignment not found or job already started")

    if not _is_assigned(assignment, employee, employee_user_id):
        raise NotAuthorized("You are not assigned to this job")

    appointment = assignment.appointment
    home = appointment.home if appointment else None
    location = location or {}

    try:
        now = utcnow()
        report = GuestNotLeftReport(
            employee_job_assignment_id=assignment.id,
            appointment_id=assignment.appointment_id,
            reported_by=employee_user_id,
            reported_at=now,
            cleaner_latitude=location.get("latitude"),
            cleaner_longitude=location.get("longitude"),
            distance_from_home=distance_from_home(location, home),
            notes=notes,
        )
        db.session.add(report)

        report_count = (assignment.guest_not_left_report_count or 0) + 1
        assignment.guest_not_left_reported = True
        assignment.guest_not_left_report_count = report_count
        assignment.last_guest_not_left_at = now
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Guest-not-left report #%d on assignment %s by %s", report_count, assignment.id, employee_user_id)

    homeowner = appointment.user if appointment else None
    if homeowner:
        cleaner_name = employee.first_name or "Your cleaner"
        property_name = _property_name(home, "your property")
        if report_count > 1:
            body = "{} reports guests are still at {}. This is report #{}. They will try again later.".format(
                cleaner_name, property_name, report_count
            )
        else:
            body = "{} arrived at {} but guests haven't left yet. They will try again later.".format(
                cleaner_name, property_name
            )
        notify_user(
            homeowner.id,
            "guest_not_left",
            "Guest Still Present",
            body,
            data={
                "appointmentId": assignment.appointment_id,
                "assignmentId": assignment.id,
                "reportCount": report_count,
                "cleanerName": cleaner_name,
                "propertyName": property_name,
            },
            action_required=False,
            related_appointment_id=assignment.appointment_id,
            push=True,
            email=False,
        )

    if report_count >= ESCALATION_THRESHOLD:
        escalate_guest_not_left(assignment, report_count)

    return {
        "report": report,
        "report_count": report_count,
        "homeowner_notified": homeowner is not None,
        "message": REPORTED_MESSAGE,
    }


def escalate_guest_not_left(assignment, report_count):
    """Alert the business owner about repeated reports on one assignment."""
    owner = db.session.get(User, assignment.business_owner_id)
    if not owner:
        logger.warning("No business owner %s to escalate assignment %s to",
                       assignment.business_owner_id, assignment.id)
        return None

    appointment = assignment.appointment
    home = appointment.home if appointment else None
    homeowner = appointment.user if appointment else None
    property_name = _property_name(home, "a property")
    client_name = (homeowner.full_name if homeowner else "") or "client"

    return notify_user(
        owner.id,
        "guest_not_left_escalation",
        "Repeated Guest Present Reports",
        "{} guest-not-left reports for {}'s property at {}. May need intervention.".format(
            report_count, client_name, property_name
        ),
        data={
            "appointmentId": assignment.appointment_id,
            "assignmentId": assignment.id,
            "reportCount": report_count,
            "clientName": client_name,
            "propertyName": property_name,
        },
        action_required=True,
        related_appointment_id=assignment.appointment_id,
        push=True,
        email=True,
    )


# ---------------------------------------------------------------------------
# Clearing
# ---------------------------------------------------------------------------

def _clear_flag(assignment):
    if not assignment.guest_not_left_reported:
        return False
    assignment.guest_not_left_reported = False
    GuestNotLeftReport.query.filter_by(
        employee_job_assignment_id=assignment.id, resolved=False
    ).update(
        {"resolved": True, "resolved_at": utcnow(), "resolution": "job_completed"},
        synchronize_session=False,
    )
    return True


def clear_guest_not_left_flag(assignment_id):
    """Clear the flag and resolve open reports.  Returns True if anything changed.

    The report count is kept as history.
    """
    assignment = db.session.get(EmployeeJobAssignment, assignment_id)
    if not assignment or not assignment.guest_not_left_reported:
        return False

    try:
        _clear_flag(assignment)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return True


def start_assignment(assignment_id, user_id):
    """Begin the job on an assignment; the guests are evidently gone.

    The status change and the flag clearing commit together.
    """
    assignment = EmployeeJobAssignment.query.filter_by(id=assignment_id, status="assigned").first()
    if not assignment:
        raise NotFound("Assignment not found or job already started")

    employee = BusinessEmployee.query.filter_by(user_id=user_id, status="active").first()
    if not _is_assigned(assignment, employee, user_id):
        raise NotAuthorized("You are not assigned to this job")

    try:
        now = utcnow()
        assignment.status = "started"
        assignment.started_at = now
        if assignment.appointment and not assignment.appointment.job_started_at:
            assignment.appointment.job_started_at = now
        _clear_flag(assignment)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return assignment


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def works_assignment(assignment, user_id):
    """True for the assignment's business owner and its assigned employee."""
    if assignment.business_owner_id == user_id:
        return True
    employee = assignment.employee
    return employee is not None and employee.user_id == user_id


def get_visible_assignment(assignment_id, user_id):
    """Load an assignment for someone on the job or on its appointment.

    Everyone else gets the same ``NotFound`` as for a missing assignment.
    """
    assignment = db.session.get(EmployeeJobAssignment, assignment_id)
    if assignment is not None:
        appointment = assignment.appointment
        if works_assignment(assignment, user_id):
            return assignment
        if appointment is not None and user_id in (appointment.user_id, appointment.cleaner_id):
            return assignment
    raise NotFound("Assignment not found")


def get_report_history(assignment_id):
    return (
        GuestNotLeftReport.query
        .filter_by(employee_job_assignment_id=assignment_id)
        .order_by(GuestNotLeftReport.reported_at.desc())
        .all()
    )


def get_guest_not_left_status(assignment_id):
    assignment = db.session.get(EmployeeJobAssignment, assignment_id)
    if not assignment:
        return None
    return {
        "guestNotLeftReported": bool(assignment.guest_not_left_reported),
        "reportCount": assignment.guest_not_left_report_count or 0,
        "lastReportedAt": assignment.last_guest_not_left_at.isoformat() if assignment.last_guest_not_left_at else None,
    }


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------

def handle_expired_guest_not_left_jobs(today=None):
    """Expire flagged assignments whose appointment date has passed.

    Returns the number of assignments expired.  Running it again finds
    nothing, since the flags are cleared.
    """
    today = today or date.today()

    expired = (
        EmployeeJobAssignment.query
        .join(UserAppointment, EmployeeJobAssignment.appointment_id == UserAppointment.id)
        .filter(
            EmployeeJobAssignment.guest_not_left_reported.is_(True),
            EmployeeJobAssignment.status == "assigned",
            UserAppointment.date < today,
        )
        .all()
    )
    if not expired:
        return 0

    try:
        now = utcnow()
        for assignment in expired:
            GuestNotLeftReport.query.filter_by(
                employee_job_assignment_id=assignment.id, resolved=False
            ).update(
                {"resolved": True, "resolved_at": now, "resolution": "expired"},
                synchronize_session=False,
            )
            assignment.guest_not_left_reported = False
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    for assignment in expired:
        if not db.session.get(User, assignment.business_owner_id):
            continue
        notify_user(
            assignment.business_owner_id,
            "guest_not_left_expired",
            "Job Expired - Guest Never Left",
            "A job could not be completed because guests never left the property. "
            "Please review and reschedule if needed.",
            data={"appointmentId": assignment.appointment_id, "assignmentId": assignment.id},
            action_required=True,
            related_appointment_id=assignment.appointment_id,
            push=True,
            email=True,
        )

    logger.info("Expired %d guest-not-left assignments", len(expired))
    return len(expired)
