"""
Request actor resolution.

Authentication is terminated by the fronting reverse proxy, which forwards the
authenticated username in ``X-Remote-User``. The name is recorded on the records
an actor creates and in the logs.
"""

from typing import Optional
from fastapi import Header
import re

ANONYMOUS_ACTOR = "unknown"
ACTOR_RE = re.compile(r"^[A-Za-z0-9._@\\-]{1,255}$")


async def get_actor(x_remote_user: Optional[str] = Header(None)) -> str:
    """Username of the caller, or ``unknown`` when absent or malformed."""
    if x_remote_user and ACTOR_RE.fullmatch(x_remote_user.strip()):
        return x_remote_user.strip()
    return ANONYMOUS_ACTOR
