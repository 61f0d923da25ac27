"""
Bearer token issuer and verifier (JWT, HS256)

A token binds identity id, username and role with an expiry. The core never
reads tokens itself; the API resolves the caller's role from one before
invoking an operation.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from .errors import TokenError, TokenExpiredError
from .identity import Identity
from .policy import Role


@dataclass
class TokenClaims:
    """Verified contents of a bearer token"""
    identity_id: str
    username: str
    role: Role
    expires_at: datetime


class TokenService:
    """Signs and verifies bearer tokens with a shared secret"""

    def __init__(self, secret: str, algorithm: str = "HS256", expiry_hours: int = 24):
        self.secret = secret
        self.algorithm = algorithm
        self.expiry = timedelta(hours=expiry_hours)

    def issue_token(self, identity: Identity, now: Optional[datetime] = None) -> str:
        """Sign a token for an authenticated identity"""
        now = now or datetime.now(timezone.utc)
        payload = {
            "sub": identity.id,
            "username": identity.username,
            "role": identity.role.value,
            "iat": now,
            "exp": now + self.expiry,
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify_token(self, token: str) -> TokenClaims:
        """
        Verify a token's signature and expiry

        Raises:
            TokenExpiredError: If the token is past its expiry
            TokenError: If the token is malformed, tampered with or incomplete
        """
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError("Token expired")
        except jwt.InvalidTokenError:
            raise TokenError("Invalid token")

        try:
            return TokenClaims(
                identity_id=payload["sub"],
                username=payload["username"],
                role=Role(payload["role"]),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
            )
        except (KeyError, ValueError):
            raise TokenError("Invalid token")
