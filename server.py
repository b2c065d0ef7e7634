"""
Kleanr API server.

``create_app`` builds the Flask app for a named config (development,
production or testing); ``run.py`` starts it under Socket.IO.
"""

import os
import logging

import click
from flask import Flask, request, jsonify
from flask_cors import CORS

from sanitize import sanitize_dict
from extensions import limiter
from models import db
from socket_events import socketio
from services.errors import ServiceError
from auth_routes import auth_bp
from routes import cleaner_clients_bp, guest_not_left_bp, user_sessions_bp, push_bp

_startup_logger = logging.getLogger("kleanr.startup")

_CRITICAL_ENV_VARS = [
    "JWT_SECRET",
    "SECRET_KEY",
    "DATABASE_URL",
]

_RECOMMENDED_ENV_VARS = [
    "CORS_ORIGINS",
    "FRONTEND_URL",
    "RESEND_API_KEY",
    "APNS_KEY_ID",
]

_DEFAULT_ORIGINS = [
    "https://kleanr.app",
    "https://www.kleanr.app",
    "https://app.kleanr.app",
]


# ---------------------------------------------------------------------------
# Sentry error monitoring (optional -- only active when SENTRY_DSN is set)
# ---------------------------------------------------------------------------
def _init_sentry():
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return False
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    sentry_sdk.init(dsn=dsn, integrations=[FlaskIntegration()], traces_sample_rate=0.1)
    return True


# ---------------------------------------------------------------------------
# Production startup checks
# ---------------------------------------------------------------------------
def _check_environment(config_name, sentry_enabled):
    if config_name in ("development", "testing"):
        return

    missing_critical = [v for v in _CRITICAL_ENV_VARS if not os.environ.get(v)]
    missing_recommended = [v for v in _RECOMMENDED_ENV_VARS if not os.environ.get(v)]
    if missing_critical:
        _startup_logger.critical(
            "MISSING CRITICAL ENV VARS (app may not work correctly): %s",
            ", ".join(missing_critical),
        )
    if missing_recommended:
        _startup_logger.warning("Missing recommended env vars: %s", ", ".join(missing_recommended))
    if not sentry_enabled:
        _startup_logger.warning("SENTRY_DSN is not set -- error monitoring is disabled.")


def _allowed_origins(app, is_development):
    configured = [o.strip() for o in (app.config.get("CORS_ORIGINS") or "").split(",") if o.strip()]
    if configured:
        # Wildcard CORS must be an explicit list outside development
        if not is_development and "*" in configured:
            _startup_logger.critical(
                "CORS_ORIGINS is set to '*' in a non-development environment! "
                "Falling back to the default allow-list."
            )
            return _DEFAULT_ORIGINS
        return configured
    return "*" if is_development else _DEFAULT_ORIGINS


# Keys whose values are never HTML-escaped (hashing must see what the user typed).
_SANITIZE_SKIP_KEYS = ("password",)


def create_app(config_name=None):
    """Flask application factory"""
    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    from config import config
    app = Flask(__name__)
    app.config.from_object(config.get(config_name, config["default"]))

    sentry_enabled = _init_sentry()
    _check_environment(config_name, sentry_enabled)
    is_development = config_name == "development"

    # -----------------------------------------------------------------------
    # Extensions
    # -----------------------------------------------------------------------
    origins = _allowed_origins(app, is_development)
    CORS(app, resources={r"/api/*": {"origins": origins}})
    db.init_app(app)
    limiter.init_app(app)
    socketio.init_app(app, cors_allowed_origins=origins, async_mode=app.config["SOCKETIO_ASYNC_MODE"])

    # -----------------------------------------------------------------------
    # Error handlers
    # -----------------------------------------------------------------------
    @app.errorhandler(ServiceError)
    def service_error_handler(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(429)
    def ratelimit_handler(e):
        retry_after = e.get_headers().get("Retry-After") if hasattr(e, "get_headers") else None
        return jsonify({
            "error": "Too many requests. Please try again later.",
            "retry_after": int(retry_after) if retry_after else 60,
        }), 429

    @app.errorhandler(500)
    def internal_error_handler(e):
        logging.getLogger(__name__).error("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500

    # -----------------------------------------------------------------------
    # Blueprints
    # -----------------------------------------------------------------------
    app.register_blueprint(auth_bp)
    app.register_blueprint(user_sessions_bp)
    app.register_blueprint(cleaner_clients_bp)
    app.register_blueprint(guest_not_left_bp)
    app.register_blueprint(push_bp)

    # -----------------------------------------------------------------------
    # Input sanitization middleware (XSS / injection prevention)
    # -----------------------------------------------------------------------
    @app.before_request
    def sanitize_json_input():
        """HTML-escape string values in JSON bodies before handlers see them."""
        if not request.is_json:
            return
        raw = request.get_json(silent=True)
        if raw is None:
            return
        sanitized = sanitize_dict(raw, skip_keys=_SANITIZE_SKIP_KEYS)
        # get_json() serves later calls from this cache
        request._cached_json = (sanitized, sanitized)

    # -----------------------------------------------------------------------
    # Security headers middleware
    # -----------------------------------------------------------------------
    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'"
        if not is_development and not app.testing:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    @app.route("/health", methods=["GET"])
    @limiter.exempt
    def health_check():
        return jsonify({"status": "healthy", "service": "Kleanr API"}), 200

    # -----------------------------------------------------------------------
    # Flask CLI
    # -----------------------------------------------------------------------
    @app.cli.command("expire-guest-reports")
    def cli_expire_guest_reports():
        """Run the expired guest-not-left sweep once."""
        from services.guest_not_left_service import handle_expired_guest_not_left_jobs
        count = handle_expired_guest_not_left_jobs()
        click.echo("Expired {} guest-not-left assignment(s).".format(count))

    with app.app_context():
        db.create_all()

    from scheduler import init_scheduler
    init_scheduler(app)

    return app
