"""
Socket.IO event handlers for Kleanr real-time features.
- Per-user rooms for in-app notifications
- Appointment rooms for live tenant-present updates
"""

import logging

from flask_socketio import SocketIO, emit, join_room, leave_room
from flask import request

from auth_routes import verify_token

logger = logging.getLogger(__name__)

socketio = SocketIO()


def user_room(user_id):
    return "user:{}".format(user_id)


def appointment_room(appointment_id):
    return "appointment:{}".format(appointment_id)


@socketio.on("connect")
def handle_connect():
    logger.debug("[socket] Client connected: %s", request.sid)


@socketio.on("disconnect")
def handle_disconnect():
    logger.debug("[socket] Client disconnected: %s", request.sid)


@socketio.on("user:join")
def handle_user_join(data):
    """Join the caller's own notification room. data = { token: "<jwt>" }"""
    user_id = verify_token((data or {}).get("token", ""))
    if not user_id:
        emit("error", {"error": "Unauthorized"}, room=request.sid)
        return
    room = user_room(user_id)
    join_room(room)
    emit("joined", {"room": room}, room=request.sid)


@socketio.on("user:leave")
def handle_user_leave(data):
    user_id = verify_token((data or {}).get("token", ""))
    if user_id:
        leave_room(user_room(user_id))


@socketio.on("appointment:join")
def handle_appointment_join(data):
    """Follow tenant-present updates for one appointment. data = { token: "<jwt>", appointment_id }"""
    from models import db, UserAppointment
    from services.tenant_present_service import can_view_appointment

    data = data or {}
    user_id = verify_token(data.get("token", ""))
    if not user_id:
        emit("error", {"error": "Unauthorized"}, room=request.sid)
        return

    appointment_id = data.get("appointment_id")
    appointment = db.session.get(UserAppointment, appointment_id) if appointment_id else None
    if not can_view_appointment(appointment, user_id):
        emit("error", {"error": "Appointment not found"}, room=request.sid)
        return

    room = appointment_room(appointment_id)
    join_room(room)
    emit("joined", {"room": room}, room=request.sid)


@socketio.on("appointment:leave")
def handle_appointment_leave(data):
    appointment_id = (data or {}).get("appointment_id")
    if appointment_id:
        leave_room(appointment_room(appointment_id))


def emit_to_user(user_id, event, payload):
    """Utility called from services to push an event to one user's devices. Never raises."""
    try:
        socketio.emit(event, payload, room=user_room(user_id))
    except Exception:
        logger.exception("Failed to emit %s to user %s", event, user_id)


def broadcast_report_update(appointment_id, report):
    """Tell everyone watching an appointment that its tenant-present report changed. Never raises."""
    try:
        socketio.emit("tenant_present:updated", report, room=appointment_room(appointment_id))
    except Exception:
        logger.exception("Failed to broadcast report update for appointment %s", appointment_id)
