"""Acting-user resolution for the BroadbandX API."""

from broadbandx.auth.core import (
    ADMIN_ROLE,
    JWTService,
    UserInfo,
    get_current_user,
    require_admin,
)

__all__ = [
    "ADMIN_ROLE",
    "JWTService",
    "UserInfo",
    "get_current_user",
    "require_admin",
]
