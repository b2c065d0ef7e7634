"""
Shared Flask extension instances.

Kept apart from server.py so blueprints can import them without a
circular import; ``init_app`` happens in ``create_app``.
"""

import os

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Redis-backed limits when REDIS_URL is set, otherwise per-process memory.
# RATELIMIT_ENABLED in the app config switches limiting off (tests).
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=os.environ.get("REDIS_URL") or "memory://",
    default_limits=["200 per minute"],
)
