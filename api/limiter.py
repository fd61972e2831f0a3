"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware) and api/routes/v1/auth.py
(to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. Route limits are callables so they follow SIGN_IN_RATE_LIMIT
and FORGOT_PASSWORD_RATE_LIMIT from settings.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def sign_in_limit() -> str:
    return get_settings().sign_in_rate_limit


def forgot_password_limit() -> str:
    return get_settings().forgot_password_rate_limit
