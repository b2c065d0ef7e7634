"""
Device token routes.

Kleanr apps register their APNs token after sign-in so invitation,
guest-not-left and tenant-present alerts reach the phone.
"""

import logging
import os

from flask import Blueprint, request, jsonify

from auth_routes import require_auth
from models import db, DeviceToken
from notifications import send_push_notification

logger = logging.getLogger(__name__)

push_bp = Blueprint("push", __name__, url_prefix="/api/v1/push")

PLATFORMS = ("ios", "android")


def _token_from_body():
    data = request.get_json(silent=True) or {}
    return (data.get("token") or "").strip(), (data.get("platform") or "ios").strip().lower()


# ---------------------------------------------------------------------------
# POST /api/v1/push/register-token
# ---------------------------------------------------------------------------
@push_bp.route("/register-token", methods=["POST"])
@require_auth
def register_token(user_id):
    """Register a device token for the signed-in user.

    Body JSON:
        token    (str, required)
        platform (str, optional) - "ios" (default) or "android"

    A token already held by another account moves to this one, since only
    the last person signed in on a device should get its alerts.
    """
    token, platform = _token_from_body()
    if not token:
        return jsonify({"error": "token is required"}), 400
    if platform not in PLATFORMS:
        return jsonify({"error": "platform must be 'ios' or 'android'"}), 400

    device = DeviceToken.query.filter_by(token=token).first()
    if device and device.user_id == user_id and device.platform == platform:
        return jsonify({"success": True, "deviceToken": device.to_dict()}), 200

    if device:
        logger.info("Moving device token %s... from user=%s to user=%s", token[:12], device.user_id, user_id)
        device.user_id = user_id
        device.platform = platform
        status = 200
    else:
        device = DeviceToken(user_id=user_id, token=token, platform=platform)
        db.session.add(device)
        status = 201
    db.session.commit()

    logger.info("Device token registered: user=%s platform=%s token=%s...", user_id, platform, token[:12])
    return jsonify({"success": True, "deviceToken": device.to_dict()}), status


# ---------------------------------------------------------------------------
# DELETE /api/v1/push/unregister-token
# ---------------------------------------------------------------------------
@push_bp.route("/unregister-token", methods=["DELETE"])
@require_auth
def unregister_token(user_id):
    token, _ = _token_from_body()
    if not token:
        return jsonify({"error": "token is required"}), 400

    device = DeviceToken.query.filter_by(token=token, user_id=user_id).first()
    if not device:
        return jsonify({"error": "Token not found"}), 404

    db.session.delete(device)
    db.session.commit()
    return jsonify({"success": True, "message": "Token removed"}), 200


# ---------------------------------------------------------------------------
# GET /api/v1/push/test  (development only)
# ---------------------------------------------------------------------------
@push_bp.route("/test", methods=["GET"])
@require_auth
def test_push(user_id):
    if os.environ.get("FLASK_ENV", "development") != "development":
        return jsonify({"error": "Test push is only available in development mode"}), 403

    count = send_push_notification(
        user_id,
        "Kleanr Test",
        "Push notifications are working.",
        data={"type": "test"},
    )
    return jsonify({"success": True, "devicesReached": count}), 200
