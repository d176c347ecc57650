"""
============================================================================
BarterBay Live Trade
Security Module - HS256 JWT Session Token Verification
============================================================================

Reliability Level: L6 Critical
Input Constraints: Token string from the WebSocket handshake
Side Effects: Optional users-table lookup

TOKEN FORMAT:
    The BarterBay backend login token: an HS256 JWT signed with JWT_SECRET,
    claims {"userId": int, "iat": ..., "exp": ...}. A "username" claim is
    honoured when present and no user directory is configured.

MANDATE:
- Every live-trade socket is bound only after its token verifies
- Only HS256 is accepted; "none" and asymmetric algorithms are refused
- No silent failures - explicit error codes

============================================================================
"""

import logging
import os
import time
from typing import Any, Callable, Dict, Optional

import jwt
from dotenv import load_dotenv
from sqlalchemy import select

from app.database.models import users_table
from services.live_trade_models import UserRef

# Load environment variables
load_dotenv()

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

# Environment variable name for the secret key, shared with the backend
SECRET_KEY_ENV_VAR = "JWT_SECRET"

# RFC 7518 3.2: HS256 keys must be at least as long as the hash output
MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"

# Backend login tokens live for 7 days
DEFAULT_TOKEN_TTL_SECONDS = 7 * 24 * 3600


# ============================================================================
# EXCEPTIONS
# ============================================================================

class AuthErrorCode:
    """Authentication error codes for audit logging."""
    MISSING_TOKEN = "AUTH-001"
    SECRET_MISCONFIGURED = "AUTH-002"
    INVALID_FORMAT = "AUTH-003"
    SIGNATURE_MISMATCH = "AUTH-004"
    EXPIRED = "AUTH-005"
    UNKNOWN_USER = "AUTH-006"


class AuthenticationError(Exception):
    """
    Exception raised when a session token cannot be verified.

    Error Codes:
        AUTH-001: Missing token
        AUTH-002: Missing or invalid secret key
        AUTH-003: Invalid token format or claims
        AUTH-004: Signature mismatch
        AUTH-005: Token expired
        AUTH-006: Token names a user that does not exist
    """

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message}")


# ============================================================================
# HELPERS
# ============================================================================

def get_secret_key() -> str:
    """
    Retrieve JWT_SECRET from the environment.

    Raises:
        AuthenticationError: If the secret is missing or too short (AUTH-002)
    """
    secret_key = os.getenv(SECRET_KEY_ENV_VAR)
    _check_secret(secret_key)
    return secret_key


def _check_secret(secret_key: Optional[str]) -> None:
    if not secret_key:
        raise AuthenticationError(
            AuthErrorCode.SECRET_MISCONFIGURED,
            f"{SECRET_KEY_ENV_VAR} environment variable is not set. "
            f"Live-trade tokens cannot be verified without it."
        )
    if len(secret_key) < MIN_SECRET_LENGTH:
        raise AuthenticationError(
            AuthErrorCode.SECRET_MISCONFIGURED,
            f"{SECRET_KEY_ENV_VAR} is too short ({len(secret_key)} chars). "
            f"Minimum {MIN_SECRET_LENGTH} characters required."
        )


def issue_token(
    user_id: int,
    username: Optional[str] = None,
    secret_key: Optional[str] = None,
    ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
    now: Optional[float] = None,
) -> str:
    """
    Mint a backend-shaped login token for development tooling and tests.

    The claims match the backend login flow ({"userId"} plus iat/exp);
    `username` is added only when given.
    """
    if secret_key is None:
        secret_key = get_secret_key()
    else:
        _check_secret(secret_key)

    issued_at = int(time.time() if now is None else now)
    payload: Dict[str, Any] = {
        "userId": user_id,
        "iat": issued_at,
        "exp": issued_at + ttl_seconds,
    }
    if username is not None:
        payload["username"] = username
    return jwt.encode(payload, secret_key, algorithm=JWT_ALGORITHM)


# ============================================================================
# USER LOOKUP
# ============================================================================

class SqlUserDirectory:
    """Resolves user ids to usernames from the shared users table."""

    def __init__(self, session_factory: Callable[[], Any]) -> None:
        self._session_factory = session_factory

    def __call__(self, user_id: int) -> Optional[str]:
        session = self._session_factory()
        try:
            return session.execute(
                select(users_table.c.username).where(users_table.c.id == user_id)
            ).scalar_one_or_none()
        finally:
            session.close()


# ============================================================================
# TOKEN VERIFIER
# ============================================================================

class TokenVerifier:
    """
    Resolves a handshake token to an authenticated user.

    The secret is read from the environment on each call unless one was
    passed in, so rotating JWT_SECRET needs no restart. With a
    `user_lookup` the username comes from the users table and unknown ids
    are refused; without one the token's "username" claim is used.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        user_lookup: Optional[Callable[[int], Optional[str]]] = None,
    ) -> None:
        if secret_key is not None:
            _check_secret(secret_key)
        self._secret_key = secret_key
        self._user_lookup = user_lookup

    def verify_token(self, token: Optional[str]) -> UserRef:
        """
        Verify a token and return the user it names.

        Raises:
            AuthenticationError: With the specific error code on any failure
        """
        if not token or not token.strip():
            raise AuthenticationError(
                AuthErrorCode.MISSING_TOKEN,
                "Missing live-trade token."
            )

        secret_key = self._secret_key or get_secret_key()

        try:
            payload = jwt.decode(
                token.strip(),
                secret_key,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError(AuthErrorCode.EXPIRED, "Token has expired.")
        except jwt.InvalidSignatureError:
            raise AuthenticationError(
                AuthErrorCode.SIGNATURE_MISMATCH,
                "Token signature mismatch."
            )
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(
                AuthErrorCode.INVALID_FORMAT,
                f"Invalid token: {str(e)}"
            )

        user_id = payload.get("userId")
        if not isinstance(user_id, int) or isinstance(user_id, bool) or user_id <= 0:
            raise AuthenticationError(
                AuthErrorCode.INVALID_FORMAT,
                "Token payload requires a positive integer userId."
            )

        claimed = payload.get("username")
        if claimed is not None and (not isinstance(claimed, str) or not claimed):
            raise AuthenticationError(
                AuthErrorCode.INVALID_FORMAT,
                "Token username claim must be a non-empty string."
            )

        return UserRef(id=user_id, username=self._resolve_username(user_id, claimed))

    def _resolve_username(self, user_id: int, claimed: Optional[str]) -> str:
        if self._user_lookup is None:
            return claimed or f"user-{user_id}"

        username = self._user_lookup(user_id)
        if not username:
            logger.warning(
                f"[AUTH] Token for unknown user | "
                f"user_id={user_id}"
            )
            raise AuthenticationError(
                AuthErrorCode.UNKNOWN_USER,
                "Invalid user."
            )
        return username
