# ============================================================================
# BarterBay Live Trade
# Authentication & Security Module
# ============================================================================

from app.auth.security import (
    AuthenticationError,
    AuthErrorCode,
    SqlUserDirectory,
    TokenVerifier,
    issue_token,
)

__all__ = [
    "AuthenticationError",
    "AuthErrorCode",
    "SqlUserDirectory",
    "TokenVerifier",
    "issue_token",
]
