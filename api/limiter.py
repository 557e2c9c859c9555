"""
api/limiter.py -- The process-wide slowapi Limiter.

api/main.py mounts it (SlowAPIMiddleware + app.state.limiter) and
api/routes/auth.py marks POST /api/auth/refresh with it. Both must see this
one instance: limits are counted in its memory:// storage, keyed by client IP.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def refresh_rate_limit() -> str:
    """Limit string for POST /api/auth/refresh, read at request time from Settings."""
    return get_settings().refresh_rate_limit
