# rate_limit.py — Per-client request limits for the public auth endpoints
import os
import logging

from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger("cumpliros.rate_limit")

RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() in ("1", "true", "yes")
# memory:// keeps counters per process; point at redis:// when running several workers
RATE_LIMIT_STORAGE_URI = os.getenv("RATE_LIMIT_STORAGE_URI", "memory://")

REGISTER_LIMIT = "3/minute"
LOGIN_LIMIT = "5/minute"
REFRESH_LIMIT = "10/minute"
FORGOT_PASSWORD_LIMIT = "3/minute"

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=RATE_LIMIT_STORAGE_URI,
    enabled=RATE_LIMIT_ENABLED,
)

if not RATE_LIMIT_ENABLED:
    logger.warning("Rate limiting is disabled (RATE_LIMIT_ENABLED=false)")
