"""Bearer token verification for chat connections.

Access tokens are issued by the storefront's auth API; this service only needs
to check them. ``issue`` exists for development seeding and tests.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Connection refused during the handshake.

    The message is the reason reported to the client.
    """


class InvalidTokenError(AuthenticationError):
    def __init__(self, message: str = "Invalid or expired token") -> None:
        super().__init__(message)


class VerifiedToken(BaseModel):
    user_id: str
    iat: Optional[int] = None


class TokenService:
    """Verifies (and for tests, signs) HS256 access tokens."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", expire_minutes: int = 15):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expire_minutes = expire_minutes

    def verify(self, token: str) -> VerifiedToken:
        """Decode *token* and return its subject.

        Raises:
            InvalidTokenError: Malformed, badly signed or expired token, or a
                token without a subject.
        """
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            logger.info("Rejected expired token")
            raise InvalidTokenError()
        except jwt.InvalidTokenError as e:
            logger.info(f"Rejected invalid token: {e}")
            raise InvalidTokenError()

        user_id = payload.get("userId") or payload.get("sub")
        if not user_id or not isinstance(user_id, str):
            raise InvalidTokenError()
        return VerifiedToken(user_id=user_id, iat=payload.get("iat"))

    def issue(self, user_id: str, role: str, expires_in: Optional[timedelta] = None) -> str:
        now = datetime.now(timezone.utc)
        lifetime = expires_in if expires_in is not None else timedelta(minutes=self.expire_minutes)
        payload = {
            "userId": user_id,
            "role": role,
            "iat": now,
            "exp": now + lifetime,
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)
