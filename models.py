"""
Kleanr SQLAlchemy Models
Database entities for the residential cleaning marketplace.
"""

import enum
import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import (
    Column, String, Float, Boolean, Integer, Text, Date, DateTime, ForeignKey, JSON,
    CheckConstraint,
)
from sqlalchemy.orm import relationship
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()


def generate_uuid():
    return str(uuid.uuid4())


def utcnow():
    # Columns are timezone-naive; everything is stored as UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Invitation status
# ---------------------------------------------------------------------------
class InvitationStatus(str, enum.Enum):
    PENDING_INVITE = "pending_invite"
    ACTIVE = "active"
    INACTIVE = "inactive"
    DECLINED = "declined"
    CANCELLED = "cancelled"

    @classmethod
    def values(cls):
        return [s.value for s in cls]


# Allowed status changes for a cleaner/client relationship.  Anything not
# listed here is rejected.
INVITATION_TRANSITIONS = {
    InvitationStatus.PENDING_INVITE: frozenset({
        InvitationStatus.ACTIVE,
        InvitationStatus.DECLINED,
        InvitationStatus.CANCELLED,
    }),
    InvitationStatus.ACTIVE: frozenset({InvitationStatus.INACTIVE}),
    InvitationStatus.INACTIVE: frozenset(),
    InvitationStatus.DECLINED: frozenset(),
    InvitationStatus.CANCELLED: frozenset(),
}


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------
class User(db.Model):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    # None and "homeowner" both mean a homeowner account.
    type = Column(String(30), nullable=True)
    is_marketplace_cleaner = Column(Boolean, default=False)
    username = Column(String(100), unique=True, nullable=True, index=True)
    # Several accounts of different types may share one email address.
    email = Column(String(255), nullable=True, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)
    password_hash = Column(String(255), nullable=True)
    profile_photo = Column(Text, nullable=True)

    # Tenant-present history (cleaners)
    tenant_present_report_count = Column(Integer, default=0)
    tenant_present_no_clean_count = Column(Integer, default=0)
    last_tenant_present_report_at = Column(DateTime, nullable=True)
    tenant_report_scrutiny_level = Column(String(20), default="none")

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    bill = relationship("UserBill", back_populates="user", uselist=False)
    homes = relationship("UserHome", foreign_keys="UserHome.user_id", back_populates="user", lazy="dynamic")
    notifications = relationship("Notification", back_populates="user", lazy="dynamic")
    device_tokens = relationship("DeviceToken", back_populates="user", lazy="dynamic", cascade="all, delete-orphan")

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    @property
    def full_name(self):
        return " ".join(p for p in (self.first_name, self.last_name) if p).strip()

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type or "homeowner",
            "username": self.username,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "phone": self.phone,
            "isMarketplaceCleaner": bool(self.is_marketplace_cleaner),
            "profilePhoto": self.profile_photo,
            "createdAt": _iso(self.created_at),
        }


# ---------------------------------------------------------------------------
# UserBill
# ---------------------------------------------------------------------------
class UserBill(db.Model):
    __tablename__ = "user_bills"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    appointment_due = Column(Float, default=0.0)
    cancellation_due = Column(Float, default=0.0)
    total_due = Column(Float, default=0.0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="bill")

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "appointmentDue": self.appointment_due,
            "cancellationDue": self.cancellation_due,
            "totalDue": self.total_due,
        }


# ---------------------------------------------------------------------------
# UserHome
# ---------------------------------------------------------------------------
class UserHome(db.Model):
    __tablename__ = "user_homes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    nickname = Column(String(100), nullable=True)
    address = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    state = Column(String(50), nullable=True)
    zipcode = Column(String(20), nullable=True)
    num_beds = Column(Integer, default=1)
    num_baths = Column(Float, default=1)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    special_notes = Column(Text, nullable=True)
    key_pad_code = Column(String(50), nullable=True)
    key_location = Column(String(255), nullable=True)
    sheets_provided = Column(String(20), nullable=True)
    towels_provided = Column(String(20), nullable=True)
    time_to_be_completed = Column(String(50), nullable=True)
    cleaners_needed = Column(Integer, nullable=True)

    is_setup_complete = Column(Boolean, default=True)
    preferred_cleaner_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    tenant_present_incident_count = Column(Integer, default=0)
    last_tenant_present_incident_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", foreign_keys=[user_id], back_populates="homes")
    preferred_cleaner = relationship("User", foreign_keys=[preferred_cleaner_id])

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "nickname": self.nickname,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "zipcode": self.zipcode,
            "numBeds": self.num_beds,
            "numBaths": self.num_baths,
            "specialNotes": self.special_notes,
            "keyLocation": self.key_location,
            "sheetsProvided": self.sheets_provided,
            "towelsProvided": self.towels_provided,
            "timeToBeCompleted": self.time_to_be_completed,
            "cleanersNeeded": self.cleaners_needed,
            "isSetupComplete": self.is_setup_complete,
            "preferredCleanerId": self.preferred_cleaner_id,
        }


# ---------------------------------------------------------------------------
# CleanerClient (invitation + relationship)
# ---------------------------------------------------------------------------
class CleanerClient(db.Model):
    __tablename__ = "cleaner_clients"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    cleaner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    home_id = Column(String(36), ForeignKey("user_homes.id", ondelete="SET NULL"), nullable=True)

    invite_token = Column(String(32), unique=True, nullable=False, index=True)
    invited_email = Column(String(255), nullable=False, index=True)
    invited_name = Column(String(255), nullable=True)
    invited_phone = Column(String(20), nullable=True)
    invited_address = Column(Text, nullable=True)  # JSON-encoded address fields
    invited_beds = Column(Integer, nullable=True)
    invited_baths = Column(Float, nullable=True)
    invited_notes = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default=InvitationStatus.PENDING_INVITE.value)
    invited_at = Column(DateTime, default=utcnow)
    accepted_at = Column(DateTime, nullable=True)
    last_invite_reminder_at = Column(DateTime, nullable=True)

    default_frequency = Column(String(20), nullable=True)  # weekly, biweekly, monthly
    default_price = Column(Float, nullable=True)
    default_day_of_week = Column(Integer, nullable=True)
    default_time_window = Column(String(50), nullable=True)
    auto_pay_enabled = Column(Boolean, default=True)
    auto_schedule_enabled = Column(Boolean, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_invite', 'active', 'inactive', 'declined', 'cancelled')",
            name="ck_cleaner_client_status",
        ),
    )

    cleaner = relationship("User", foreign_keys=[cleaner_id])
    client = relationship("User", foreign_keys=[client_id])
    home = relationship("UserHome", foreign_keys=[home_id])
    recurring_schedules = relationship("RecurringSchedule", back_populates="cleaner_client", lazy="dynamic")

    @property
    def invitation_status(self):
        return InvitationStatus(self.status)

    def to_dict(self, include_token=False):
        data = {
            "id": self.id,
            "cleanerId": self.cleaner_id,
            "clientId": self.client_id,
            "homeId": self.home_id,
            "invitedEmail": self.invited_email,
            "invitedName": self.invited_name,
            "invitedPhone": self.invited_phone,
            "invitedAddress": self.invited_address,
            "invitedBeds": self.invited_beds,
            "invitedBaths": self.invited_baths,
            "invitedNotes": self.invited_notes,
            "status": self.status,
            "invitedAt": _iso(self.invited_at),
            "acceptedAt": _iso(self.accepted_at),
            "lastInviteReminderAt": _iso(self.last_invite_reminder_at),
            "defaultFrequency": self.default_frequency,
            "defaultPrice": self.default_price,
            "defaultDayOfWeek": self.default_day_of_week,
            "defaultTimeWindow": self.default_time_window,
            "autoPayEnabled": self.auto_pay_enabled,
            "autoScheduleEnabled": self.auto_schedule_enabled,
        }
        if include_token:
            data["inviteToken"] = self.invite_token
        return data


# ---------------------------------------------------------------------------
# RecurringSchedule
# ---------------------------------------------------------------------------
class RecurringSchedule(db.Model):
    __tablename__ = "recurring_schedules"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    cleaner_client_id = Column(String(36), ForeignKey("cleaner_clients.id", ondelete="CASCADE"), nullable=False, index=True)
    cleaner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    home_id = Column(String(36), ForeignKey("user_homes.id", ondelete="SET NULL"), nullable=True)
    frequency = Column(String(20), nullable=False, default="weekly")
    day_of_week = Column(Integer, nullable=True)
    time_window = Column(String(50), nullable=True)
    price = Column(Float, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("frequency IN ('weekly', 'biweekly', 'monthly')", name="ck_recurring_schedule_frequency"),
    )

    cleaner_client = relationship("CleanerClient", back_populates="recurring_schedules")

    def to_dict(self):
        return {
            "id": self.id,
            "cleanerClientId": self.cleaner_client_id,
            "frequency": self.frequency,
            "dayOfWeek": self.day_of_week,
            "timeWindow": self.time_window,
            "price": self.price,
            "isActive": self.is_active,
        }


# ---------------------------------------------------------------------------
# UserAppointment
# ---------------------------------------------------------------------------
class UserAppointment(db.Model):
    __tablename__ = "user_appointments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    home_id = Column(String(36), ForeignKey("user_homes.id", ondelete="CASCADE"), nullable=True)
    cleaner_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    recurring_schedule_id = Column(String(36), ForeignKey("recurring_schedules.id", ondelete="SET NULL"), nullable=True, index=True)
    date = Column(Date, nullable=False)
    time_constraint = Column(String(50), nullable=True)  # e.g. "10am-3pm"
    price = Column(Float, default=0.0)
    completed = Column(Boolean, default=False)
    paid = Column(Boolean, default=False)

    job_started_at = Column(DateTime, nullable=True)

    was_cancelled = Column(Boolean, default=False)
    cancellation_type = Column(String(20), nullable=True)  # system, homeowner, cleaner
    cancellation_category = Column(String(50), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancellation_confirmed_at = Column(DateTime, nullable=True)
    reviews_blocked = Column(Boolean, default=False)

    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", foreign_keys=[user_id])
    home = relationship("UserHome", foreign_keys=[home_id])

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "homeId": self.home_id,
            "cleanerId": self.cleaner_id,
            "recurringScheduleId": self.recurring_schedule_id,
            "date": _iso(self.date),
            "timeConstraint": self.time_constraint,
            "price": self.price,
            "completed": self.completed,
            "paid": self.paid,
            "wasCancelled": self.was_cancelled,
            "cancellationType": self.cancellation_type,
            "cancellationReason": self.cancellation_reason,
        }


class UserCleanerAppointment(db.Model):
    __tablename__ = "user_cleaner_appointments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    appointment_id = Column(String(36), ForeignKey("user_appointments.id", ondelete="CASCADE"), nullable=False, index=True)
    employee_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Business employees and job assignments
# ---------------------------------------------------------------------------
class BusinessEmployee(db.Model):
    __tablename__ = "business_employees"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    business_owner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default="active")  # pending_invite, active, inactive
    created_at = Column(DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "businessOwnerId": self.business_owner_id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "status": self.status,
        }


class EmployeeJobAssignment(db.Model):
    __tablename__ = "employee_job_assignments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    appointment_id = Column(String(36), ForeignKey("user_appointments.id", ondelete="CASCADE"), nullable=False, index=True)
    business_employee_id = Column(String(36), ForeignKey("business_employees.id", ondelete="SET NULL"), nullable=True)
    business_owner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    is_self_assignment = Column(Boolean, default=False)
    status = Column(String(20), nullable=False, default="assigned")  # assigned, started, completed, cancelled
    started_at = Column(DateTime, nullable=True)

    guest_not_left_reported = Column(Boolean, default=False)
    guest_not_left_report_count = Column(Integer, default=0)
    last_guest_not_left_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    appointment = relationship("UserAppointment")
    employee = relationship("BusinessEmployee")

    def to_dict(self):
        return {
            "id": self.id,
            "appointmentId": self.appointment_id,
            "businessEmployeeId": self.business_employee_id,
            "businessOwnerId": self.business_owner_id,
            "isSelfAssignment": self.is_self_assignment,
            "status": self.status,
            "guestNotLeftReported": self.guest_not_left_reported,
            "guestNotLeftReportCount": self.guest_not_left_report_count,
            "lastGuestNotLeftAt": _iso(self.last_guest_not_left_at),
        }


# ---------------------------------------------------------------------------
# GuestNotLeftReport
# ---------------------------------------------------------------------------
class GuestNotLeftReport(db.Model):
    __tablename__ = "guest_not_left_reports"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    # Null for independent cleaners working a direct appointment.
    employee_job_assignment_id = Column(String(36), ForeignKey("employee_job_assignments.id", ondelete="CASCADE"), nullable=True, index=True)
    appointment_id = Column(String(36), ForeignKey("user_appointments.id", ondelete="CASCADE"), nullable=False, index=True)
    reported_by = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    reported_at = Column(DateTime, default=utcnow)

    cleaner_latitude = Column(Float, nullable=True)
    cleaner_longitude = Column(Float, nullable=True)
    distance_from_home = Column(Float, nullable=True)  # metres
    gps_verified_on_site = Column(Boolean, nullable=True)
    notes = Column(Text, nullable=True)

    resolved = Column(Boolean, default=False)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(36), nullable=True)
    resolution = Column(String(30), nullable=True)  # job_completed, expired, completed, cancelled_no_penalty, cleaner_no_return

    # Tenant-present workflow
    homeowner_notified_at = Column(DateTime, nullable=True)
    response_deadline = Column(DateTime, nullable=True)
    time_window_end = Column(DateTime, nullable=True)
    homeowner_response = Column(String(20), nullable=True)  # resolved, need_time, cannot_resolve, no_response
    homeowner_response_at = Column(DateTime, nullable=True)
    homeowner_response_note = Column(Text, nullable=True)
    additional_time_requested = Column(Integer, nullable=True)
    cleaner_action = Column(String(20), nullable=True)  # waiting, will_return, cancelled, proceeded
    cleaner_action_at = Column(DateTime, nullable=True)
    scheduled_return_time = Column(DateTime, nullable=True)
    actual_return_time = Column(DateTime, nullable=True)
    cleaner_returned_gps_lat = Column(Float, nullable=True)
    cleaner_returned_gps_lng = Column(Float, nullable=True)

    reporter = relationship("User", foreign_keys=[reported_by])

    def to_dict(self):
        return {
            "id": self.id,
            "employeeJobAssignmentId": self.employee_job_assignment_id,
            "appointmentId": self.appointment_id,
            "reportedBy": self.reported_by,
            "reportedAt": _iso(self.reported_at),
            "cleanerLatitude": self.cleaner_latitude,
            "cleanerLongitude": self.cleaner_longitude,
            "distanceFromHome": self.distance_from_home,
            "notes": self.notes,
            "resolved": self.resolved,
            "resolvedAt": _iso(self.resolved_at),
            "resolution": self.resolution,
            "reporter": {
                "id": self.reporter.id,
                "firstName": self.reporter.first_name,
                "lastName": self.reporter.last_name,
            } if self.reporter else None,
        }


# ---------------------------------------------------------------------------
# Payout
# ---------------------------------------------------------------------------
class Payout(db.Model):
    __tablename__ = "payouts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    appointment_id = Column(String(36), ForeignKey("user_appointments.id", ondelete="CASCADE"), nullable=False, index=True)
    cleaner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    amount = Column(Float, default=0.0)
    status = Column(String(20), default="pending")
    created_at = Column(DateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------
class Review(db.Model):
    __tablename__ = "reviews"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    cleaner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    reviewer_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    appointment_id = Column(String(36), ForeignKey("user_appointments.id", ondelete="SET NULL"), nullable=True)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
    )


# ---------------------------------------------------------------------------
# Notification
# ---------------------------------------------------------------------------
class Notification(db.Model):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=True)
    data = Column(JSON, nullable=True)
    action_required = Column(Boolean, default=False)
    related_appointment_id = Column(String(36), nullable=True)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="notifications")

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type,
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "actionRequired": self.action_required,
            "relatedAppointmentId": self.related_appointment_id,
            "isRead": self.is_read,
            "createdAt": _iso(self.created_at),
        }


# ---------------------------------------------------------------------------
# DeviceToken (APNs push notification tokens)
# ---------------------------------------------------------------------------
class DeviceToken(db.Model):
    __tablename__ = "device_tokens"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token = Column(String(512), unique=True, nullable=False)
    platform = Column(String(10), nullable=False, default="ios")  # "ios" or "android"
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("platform IN ('ios', 'android')", name="ck_device_token_platform"),
    )

    user = relationship("User", back_populates="device_tokens")

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "token": self.token,
            "platform": self.platform,
            "createdAt": _iso(self.created_at),
        }
