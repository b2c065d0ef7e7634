"""
Sign-in routes.

GET  /api/v1/user-sessions/check-accounts?email=  - which accounts share an email
POST /api/v1/user-sessions/login                  - sign in, choosing an account if needed
"""

import logging

from flask import Blueprint, request, jsonify

from auth_routes import generate_token
from extensions import limiter
from services.account_service import check_accounts, linked_accounts, resolve_login

logger = logging.getLogger(__name__)

user_sessions_bp = Blueprint("user_sessions", __name__, url_prefix="/api/v1/user-sessions")


@user_sessions_bp.route("/check-accounts", methods=["GET"])
def check_accounts_route():
    email = request.args.get("email", "")
    try:
        return jsonify(check_accounts(email)), 200
    except Exception:
        # The form treats this as a single account and lets login sort it out.
        logger.exception("Account lookup failed")
        return jsonify({"multipleAccounts": False}), 200


@user_sessions_bp.route("/login", methods=["POST"])
@limiter.limit("5 per minute")
def login():
    """Sign in by username or email.

    Body JSON: ``identifier`` (or ``email``/``username``), ``password`` and,
    when an email is shared by several accounts, ``accountType``.
    """
    data = request.get_json(silent=True) or {}
    identifier = data.get("identifier") or data.get("email") or data.get("username")

    result = resolve_login(identifier, data.get("password"), data.get("accountType"))
    if result.get("requires_account_selection"):
        return jsonify({
            "requiresAccountSelection": True,
            "accountOptions": result["account_options"],
            "message": "Multiple accounts found. Please choose one.",
        }), 300

    user = result["user"]
    logger.info("User %s signed in", user.id)
    return jsonify({
        "user": user.to_dict(),
        "token": generate_token(user.id),
        "linkedAccounts": linked_accounts(user),
    }), 201
