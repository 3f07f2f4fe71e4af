"""Admin access control — FastAPI dependency for elevated routes.

Admin routes (manual retry, breaker reset, budget inspection) require the
configured admin API key in the ``X-Admin-Key`` header.
"""

from __future__ import annotations

from fastapi import Depends, Header

from herald.dependencies import Container, get_container
from herald.domain.exceptions import AuthorisationError
from herald.shared.security import validate_api_key

ADMIN_KEY_HEADER = "X-Admin-Key"


async def require_admin(
    x_admin_key: str | None = Header(None, alias=ADMIN_KEY_HEADER),
    container: Container = Depends(get_container),
) -> None:
    """Reject the request unless it carries the admin API key.

    Usage:
        @router.post("/admin/...", dependencies=[Depends(require_admin)])
    """
    if not validate_api_key(x_admin_key or "", container.settings.admin_api_key):
        raise AuthorisationError("Admin API key required")
