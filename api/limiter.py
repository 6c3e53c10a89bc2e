"""
api/limiter.py -- Shared slowapi rate limiter for the SIGRISK API.

Every router under api/routes/v1/ applies its per-route limits through this
one instance, and api/main.py mounts it as middleware. One instance means one
in-memory counter store per process.

RATE_LIMIT_ENABLED=false turns every limit off (single-user deployments,
load tests). Limits are keyed by client address.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=get_settings().rate_limit_enabled,
)
