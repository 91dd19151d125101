"""
JWT token management and caller identity.

Schools confirm deliveries with a bearer token whose claims name the school
the caller acts for; admins operate the allocation lifecycle.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

import jwt

from mealfund.core.exceptions import AuthenticationError, ErrorCode

logger = logging.getLogger(__name__)


class UserRole(str, Enum):
    ADMIN = "admin"
    SCHOOL = "school"
    CATERING = "catering"


@dataclass(frozen=True)
class CurrentUser:
    """Identity extracted from a verified access token."""

    user_id: str
    role: UserRole
    school_id: Optional[int] = None
    catering_id: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def can_act_for_school(self, school_id: int) -> bool:
        if self.is_admin:
            return True
        return self.role == UserRole.SCHOOL and self.school_id == school_id


class JWTManager:
    """
    JWT token manager for authentication.

    Handles creation and validation of access tokens.
    """

    DEFAULT_ALGORITHM = "HS256"
    DEFAULT_ACCESS_TOKEN_EXPIRE_MINUTES = 60

    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: str = DEFAULT_ALGORITHM,
        access_token_expire_minutes: int = DEFAULT_ACCESS_TOKEN_EXPIRE_MINUTES,
    ):
        """
        Initialize JWT manager.

        Args:
            secret_key: Secret key for signing tokens (auto-generated if None)
            algorithm: JWT algorithm (default: HS256)
            access_token_expire_minutes: Access token lifetime in minutes
        """
        self.secret_key = secret_key or self._generate_secret_key()
        self.algorithm = algorithm
        self.access_token_expire_minutes = access_token_expire_minutes

    def create_access_token(
        self,
        user_id: Union[int, str],
        role: UserRole,
        school_id: Optional[int] = None,
        catering_id: Optional[int] = None,
        expires_delta: Optional[timedelta] = None,
    ) -> str:
        """
        Create JWT access token.

        Args:
            user_id: User identifier
            role: Role claim
            school_id: School the user acts for (school role)
            catering_id: Caterer the user acts for (catering role)
            expires_delta: Custom expiration time

        Returns:
            Encoded JWT token
        """
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(minutes=self.access_token_expire_minutes))

        payload: Dict[str, Any] = {
            "user_id": str(user_id),
            "role": UserRole(role).value,
            "token_type": "access",
            "iat": now,
            "exp": expire,
            "jti": secrets.token_hex(16),  # Token ID for revocation
        }
        if school_id is not None:
            payload["school_id"] = school_id
        if catering_id is not None:
            payload["catering_id"] = catering_id

        token = jwt.encode(payload, self.secret_key, algorithm=self.algorithm)
        logger.debug(f"Access token created for user {user_id}")
        return token

    def verify_token(self, token: str) -> Dict[str, Any]:
        """
        Verify and decode JWT token.

        Raises:
            AuthenticationError: If the token is expired or invalid
        """
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm]
            )
        except jwt.ExpiredSignatureError as e:
            logger.warning("Token verification failed: token expired")
            raise AuthenticationError("Token expired", ErrorCode.TOKEN_INVALID) from e
        except jwt.InvalidTokenError as e:
            logger.warning(f"Token verification failed: {e}")
            raise AuthenticationError("Invalid token", ErrorCode.TOKEN_INVALID) from e

        if payload.get("token_type") != "access":
            raise AuthenticationError("Invalid token type", ErrorCode.TOKEN_INVALID)
        return payload

    def current_user(self, token: str) -> CurrentUser:
        payload = self.verify_token(token)
        try:
            role = UserRole(payload.get("role"))
        except ValueError as e:
            raise AuthenticationError("Unknown role claim", ErrorCode.TOKEN_INVALID) from e

        return CurrentUser(
            user_id=payload["user_id"],
            role=role,
            school_id=payload.get("school_id"),
            catering_id=payload.get("catering_id"),
        )

    @staticmethod
    def _generate_secret_key() -> str:
        """Generate a secure random secret key."""
        return secrets.token_urlsafe(32)


__all__ = ["JWTManager", "CurrentUser", "UserRole"]
