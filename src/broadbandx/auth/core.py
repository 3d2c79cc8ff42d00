"""
Acting-user resolution.

Tokens are issued elsewhere; this module only verifies bearer tokens with
Authlib and turns their claims into a ``UserInfo`` the billing services use
for ``performed_by`` and owner-or-admin decisions.
"""

from typing import Any, cast

import structlog
from authlib.jose import JoseError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from broadbandx.settings import settings

logger = structlog.get_logger(__name__)

ADMIN_ROLE = "admin"

bearer_scheme = HTTPBearer(auto_error=False)


class UserInfo(BaseModel):
    """User information carried by an access token."""

    model_config = ConfigDict(extra="forbid")

    user_id: str
    email: EmailStr | None = None
    username: str | None = None
    roles: list[str] = Field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


class JWTService:
    """Verifies access tokens using Authlib."""

    def __init__(self, secret: str | None = None, algorithm: str | None = None) -> None:
        self.secret = secret or settings.jwt.secret_key
        self.algorithm = algorithm or settings.jwt.algorithm
        self.header = {"alg": self.algorithm}

    def create_token(self, subject: str, additional_claims: dict[str, Any] | None = None) -> str:
        """Sign a token for ``subject``. Used by tooling and tests."""
        data: dict[str, Any] = {"sub": subject}
        if additional_claims:
            data.update(additional_claims)
        token = jwt.encode(self.header, data, self.secret)
        return token.decode("utf-8") if isinstance(token, bytes) else token

    def verify_token(self, token: str) -> dict[str, Any]:
        """Verify and decode a token.

        Raises:
            HTTPException: If the token is malformed, badly signed or expired
        """
        try:
            claims_raw = jwt.decode(token, self.secret)
            claims_raw.validate()
            return cast(dict[str, Any], dict(claims_raw))
        except JoseError as e:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"Invalid token: {e}",
                headers={"WWW-Authenticate": "Bearer"},
            )


def claims_to_user_info(claims: dict[str, Any]) -> UserInfo:
    """Convert JWT claims to UserInfo."""
    roles = claims.get("roles")
    if roles is None and claims.get("role"):
        roles = [claims["role"]]
    return UserInfo(
        user_id=str(claims.get("sub", "")),
        email=claims.get("email"),
        username=claims.get("username"),
        roles=list(roles or []),
    )


def get_jwt_service() -> JWTService:
    """Dependency returning a verifier configured from settings."""
    return JWTService()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    jwt_service: JWTService = Depends(get_jwt_service),
) -> UserInfo:
    """Get the current authenticated user from the Bearer token."""
    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    claims = jwt_service.verify_token(credentials.credentials)
    user = claims_to_user_info(claims)
    if not user.user_id:
        logger.warning("auth.token.missing_subject")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def require_admin(current_user: UserInfo = Depends(get_current_user)) -> UserInfo:
    """Reject non-admin users."""
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return current_user
