"""Bearer-token identity: verify the caller and attach who they are.

Tokens are HS256 JWTs issued elsewhere; this module only checks them. The
raw `Authorization` header is kept on the identity so it can be forwarded
unchanged to downstream services.
"""

import jwt
from fastapi import Header
from pydantic import BaseModel

from minicrm.common.config import settings
from minicrm.common.errors import AuthenticationError


class Identity(BaseModel):
    """Verified caller attached to a request."""

    subject: str
    email: str | None = None
    role: str | None = None
    authorization: str

    def forward_headers(self) -> dict[str, str]:
        return {"Authorization": self.authorization}


def verify_bearer(authorization: str | None) -> Identity:
    """Decode and check a `Bearer <jwt>` header value."""

    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Bearer token required")
    token = authorization[len("Bearer "):].strip()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError(f"Invalid token: {exc}") from exc

    subject = claims.get("sub")
    if not subject:
        raise AuthenticationError("Invalid token: missing subject")
    return Identity(
        subject=str(subject),
        email=claims.get("email"),
        role=claims.get("role"),
        authorization=authorization,
    )


def require_identity(authorization: str | None = Header(default=None)) -> Identity:
    """FastAPI dependency for routes that need an authenticated caller."""

    return verify_bearer(authorization)


def issue_token(subject: str, email: str | None = None, role: str | None = None, **claims) -> str:
    """Sign a token with the shared secret (scripts and tests)."""

    payload = {"sub": subject, **claims}
    if email is not None:
        payload["email"] = email
    if role is not None:
        payload["role"] = role
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
