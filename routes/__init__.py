"""
Kleanr API Route Blueprints
"""
from .cleaner_clients import cleaner_clients_bp
from .guest_not_left import guest_not_left_bp
from .user_sessions import user_sessions_bp
from .push import push_bp

__all__ = [
    "cleaner_clients_bp",
    "guest_not_left_bp",
    "user_sessions_bp",
    "push_bp",
]
