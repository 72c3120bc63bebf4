"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the route modules
that apply tighter per-route limits with @limiter.limit().

One shared instance means every route counts against the same in-memory
store. default_limits applies API_RATE_LIMIT to every route that has no
explicit limit; RATE_LIMIT_ENABLED=false turns limiting off (tests).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[_settings.api_rate_limit],
    storage_uri="memory://",
    enabled=_settings.rate_limit_enabled,
)

AUTH_RATE_LIMIT = _settings.auth_rate_limit
