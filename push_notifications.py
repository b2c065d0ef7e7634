"""
Kleanr APNs push delivery.

Sends iOS alerts through Apple's HTTP/2 gateway using token-based auth: an
ES256 JWT signed with the team's .p8 key (PyJWT) and an HTTP/2 client
(httpx).

Environment:
    APNS_KEY_ID, APNS_TEAM_ID, APNS_AUTH_KEY_PATH, APNS_BUNDLE_ID
    FLASK_ENV   - "development" targets the sandbox gateway
"""

import logging
import os
import time

import jwt  # PyJWT

logger = logging.getLogger(__name__)

APNS_PRODUCTION_URL = "https://api.push.apple.com"
APNS_SANDBOX_URL = "https://api.sandbox.push.apple.com"

# Apple accepts a provider token for an hour; refresh a little earlier.
_TOKEN_REFRESH_INTERVAL = 50 * 60

_token_cache = {"token": None, "issued_at": 0.0}
_key_cache = {}


def _settings():
    return {
        "key_id": os.environ.get("APNS_KEY_ID", ""),
        "team_id": os.environ.get("APNS_TEAM_ID", ""),
        "key_path": os.environ.get("APNS_AUTH_KEY_PATH", ""),
        "bundle_id": os.environ.get("APNS_BUNDLE_ID", ""),
        "sandbox": os.environ.get("FLASK_ENV", "development") == "development",
    }


def is_configured(settings=None):
    settings = settings or _settings()
    return all(settings[k] for k in ("key_id", "team_id", "key_path", "bundle_id"))


def _signing_key(path):
    if path not in _key_cache:
        with open(path, "rb") as f:
            _key_cache[path] = f.read()
        logger.info("APNs auth key loaded from %s", path)
    return _key_cache[path]


def _provider_token(settings):
    now = time.time()
    if _token_cache["token"] and now - _token_cache["issued_at"] < _TOKEN_REFRESH_INTERVAL:
        return _token_cache["token"]

    token = jwt.encode(
        {"iss": settings["team_id"], "iat": int(now)},
        _signing_key(settings["key_path"]),
        algorithm="ES256",
        headers={"kid": settings["key_id"]},
    )
    _token_cache.update(token=token, issued_at=now)
    return token


def build_payload(title, body, data=None, badge=None, category=None, sound="default"):
    """APNs JSON body: the ``aps`` dictionary plus custom keys from ``data``."""
    aps = {"alert": {"title": title, "body": body}, "sound": sound}
    if badge is not None:
        aps["badge"] = badge
    if category:
        aps["category"] = category
    payload = {"aps": aps}
    if data:
        payload.update({k: v for k, v in data.items() if k != "aps"})
    return payload


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def send_push_to_token(token, title, body, data=None, badge=None, category=None):
    """Deliver one alert to one device token.  Returns True on success. Never raises."""
    settings = _settings()
    if not is_configured(settings):
        logger.info("[DEV] Push to %s...: %s", (token or "")[:12], title)
        return False

    try:
        import httpx

        base_url = APNS_SANDBOX_URL if settings["sandbox"] else APNS_PRODUCTION_URL
        headers = {
            "authorization": "bearer {}".format(_provider_token(settings)),
            "apns-topic": settings["bundle_id"],
            "apns-push-type": "alert",
            "apns-priority": "10",
        }
        with httpx.Client(http2=True, timeout=10.0) as client:
            response = client.post(
                "{}/3/device/{}".format(base_url, token),
                json=build_payload(title, body, data=data, badge=badge, category=category),
                headers=headers,
            )

        if response.status_code == 200:
            return True

        try:
            reason = response.json().get("reason")
        except Exception:
            reason = response.text
        logger.warning("APNs rejected push (status=%d reason=%s) token=%s...",
                       response.status_code, reason, token[:12])
        if response.status_code == 410 or reason in ("BadDeviceToken", "Unregistered"):
            _forget_token(token)
        return False
    except Exception:
        logger.exception("APNs push failed for token=%s...", (token or "")[:12])
        return False


def send_push_notification(user_id, title, body, data=None, badge=None, category=None):
    """Push to every iOS device registered for ``user_id``.

    Returns how many devices accepted the alert. Never raises.
    """
    try:
        from models import DeviceToken

        tokens = [dt.token for dt in DeviceToken.query.filter_by(user_id=user_id, platform="ios")]
        if not tokens:
            logger.debug("No iOS device tokens for user_id=%s", user_id)
            return 0

        delivered = sum(
            1 for token in tokens
            if send_push_to_token(token, title, body, data=data, badge=badge, category=category)
        )
        logger.info("Push %r to user_id=%s: %d/%d delivered", title, user_id, delivered, len(tokens))
        return delivered
    except Exception:
        logger.exception("send_push_notification failed for user_id=%s", user_id)
        return 0


def _forget_token(token):
    """Drop a device token APNs reports as gone."""
    from models import db, DeviceToken

    try:
        DeviceToken.query.filter_by(token=token).delete()
        db.session.commit()
        logger.info("Removed stale device token %s...", token[:12])
    except Exception:
        db.session.rollback()
        logger.exception("Failed to remove device token %s...", token[:12])
