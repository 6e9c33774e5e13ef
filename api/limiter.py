"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in
api/routes/v1/presave.py (to apply per-route limits with @limiter.limit()).

One shared instance means every route counts against the same in-memory
store. Separate instances per module would each keep their own counters.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
