"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware), in the api/routes/
modules and in web/routes.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same counter
store. If this were instantiated in each module separately, each module would
get its own isolated counter and rate limits would never trigger.

Limits come from settings (limits syntax, e.g. "5 per 15 minutes"):
  default_limits    -- GENERAL_RATE_LIMIT, every non-exempt, undecorated route
  LOGIN_LIMIT       -- LOGIN_RATE_LIMIT, POST /auth/login and POST /login
  CERTIFICATE_LIMIT -- CERTIFICATE_RATE_LIMIT, POST /certificates/generate

Decorator order: @router.post(...) first, @limiter.limit(...) directly below
it, so the router registers the rate-limited wrapper. slowapi's middleware
skips routes that carry their own limit and leaves them to the wrapper.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

LOGIN_LIMIT = _settings.login_rate_limit
CERTIFICATE_LIMIT = _settings.certificate_rate_limit

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[_settings.general_rate_limit],
    storage_uri=_settings.rate_limit_storage_uri,
)
