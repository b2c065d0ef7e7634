"""
Authentication helpers and token routes for the Kleanr backend.
JWT issuing/verification plus the auth decorators every blueprint uses.
"""

import datetime
import logging
from functools import wraps

import jwt
from flask import Blueprint, request, jsonify, current_app

from models import db, User

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/api/v1/auth')

# Tokens expired less than this long ago can still be refreshed.
REFRESH_GRACE_PERIOD = datetime.timedelta(days=7)


# MARK: - Tokens

def _jwt_secret():
    return current_app.config['JWT_SECRET']


def generate_token(user_id):
    """Generate JWT token for user"""
    days = current_app.config.get('JWT_EXPIRES_DAYS', 30)
    payload = {
        'user_id': user_id,
        'exp': datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(days=days),
    }
    return jwt.encode(payload, _jwt_secret(), algorithm='HS256')


def verify_token(token):
    """Verify JWT token and return user_id"""
    if not token:
        return None
    try:
        payload = jwt.decode(token, _jwt_secret(), algorithms=['HS256'])
        return payload.get('user_id')
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def _bearer_token():
    return request.headers.get('Authorization', '').replace('Bearer ', '')


# MARK: - Decorators

def require_auth(f):
    """Decorator to require authentication"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = verify_token(_bearer_token())
        if not user_id or not db.session.get(User, user_id):
            return jsonify({'error': 'Unauthorized'}), 401
        return f(user_id=user_id, *args, **kwargs)
    return decorated_function


def require_cleaner(f):
    """Wrap require_auth and check the user is a cleaner."""
    @wraps(f)
    @require_auth
    def wrapper(user_id, *args, **kwargs):
        user = db.session.get(User, user_id)
        if not user or user.type != 'cleaner':
            return jsonify({'error': 'Cleaner access required'}), 403
        return f(user_id=user_id, *args, **kwargs)
    return wrapper


def require_homeowner(f):
    """Wrap require_auth and check the user is a homeowner (type unset or 'homeowner')."""
    @wraps(f)
    @require_auth
    def wrapper(user_id, *args, **kwargs):
        user = db.session.get(User, user_id)
        if not user or user.type not in (None, 'homeowner'):
            return jsonify({'error': 'Homeowner access required'}), 403
        return f(user_id=user_id, *args, **kwargs)
    return wrapper


# MARK: - Token Routes

@auth_bp.route('/me', methods=['GET'])
@require_auth
def get_current_user(user_id):
    """Get current authenticated user profile"""
    user = db.session.get(User, user_id)
    return jsonify({'success': True, 'user': user.to_dict()})


@auth_bp.route('/validate', methods=['POST'])
def validate_token_endpoint():
    """Validate existing auth token"""
    user_id = verify_token(_bearer_token())
    if not user_id:
        return jsonify({'error': 'Invalid token'}), 401

    user = db.session.get(User, user_id)
    if not user:
        return jsonify({'error': 'User not found'}), 404
    return jsonify({'success': True, 'user': user.to_dict()})


@auth_bp.route('/refresh', methods=['POST'])
def refresh_token_endpoint():
    """Refresh JWT token (allowed within 7 days of expiry)"""
    try:
        payload = jwt.decode(_bearer_token(), _jwt_secret(), algorithms=['HS256'],
                             options={'verify_exp': False})
    except jwt.InvalidTokenError:
        return jsonify({'error': 'Invalid token'}), 401

    user_id = payload.get('user_id')
    exp = payload.get('exp')
    if not user_id or not exp:
        return jsonify({'error': 'Invalid token'}), 401

    expires_at = datetime.datetime.fromtimestamp(exp, tz=datetime.timezone.utc)
    if datetime.datetime.now(datetime.timezone.utc) > expires_at + REFRESH_GRACE_PERIOD:
        return jsonify({'error': 'Token expired beyond refresh period'}), 401

    if not db.session.get(User, user_id):
        return jsonify({'error': 'User not found'}), 404

    return jsonify({'success': True, 'token': generate_token(user_id)})
