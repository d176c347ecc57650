"""
============================================================================
Unit Tests - Live Trade Token Security
============================================================================

Reliability Level: L6 Critical

Tests verification of backend login JWTs, username resolution and every
AUTH-00x failure path.
============================================================================
"""

import os
import sys
import time

import jwt
import pytest
from sqlalchemy import create_engine, insert
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.auth.security import (
    SECRET_KEY_ENV_VAR,
    AuthenticationError,
    AuthErrorCode,
    SqlUserDirectory,
    TokenVerifier,
    get_secret_key,
    issue_token,
)
from app.database.models import create_schema, users_table
from services.live_trade_models import UserRef


SECRET = "unit-test-secret-that-is-long-enough-000"
OTHER_SECRET = "another-secret-that-is-also-long-enough-1"


def _backend_token(payload, secret: str = SECRET, algorithm: str = "HS256") -> str:
    """Token shaped like the backend login flow: jwt.sign({userId}, secret)."""
    return jwt.encode(payload, secret, algorithm=algorithm)


def _in_a_day() -> int:
    return int(time.time()) + 86400


@pytest.fixture
def verifier() -> TokenVerifier:
    return TokenVerifier(secret_key=SECRET)


def _error_code(verifier: TokenVerifier, token) -> str:
    with pytest.raises(AuthenticationError) as exc_info:
        verifier.verify_token(token)
    return exc_info.value.error_code


class TestBackendTokens:
    """Tokens issued by the BarterBay login flow."""

    def test_user_id_only_token(self, verifier) -> None:
        token = _backend_token({"userId": 7, "iat": int(time.time()), "exp": _in_a_day()})

        assert verifier.verify_token(token) == UserRef(id=7, username="user-7")

    def test_username_claim_used_without_directory(self, verifier) -> None:
        token = _backend_token({"userId": 7, "username": "bob", "exp": _in_a_day()})

        assert verifier.verify_token(token).username == "bob"

    def test_directory_supplies_username(self) -> None:
        verifier = TokenVerifier(secret_key=SECRET, user_lookup={7: "bob"}.get)
        token = _backend_token({"userId": 7, "exp": _in_a_day()})

        assert verifier.verify_token(token) == UserRef(id=7, username="bob")

    def test_directory_wins_over_claim(self) -> None:
        verifier = TokenVerifier(secret_key=SECRET, user_lookup={7: "bob"}.get)
        token = _backend_token({"userId": 7, "username": "mallory", "exp": _in_a_day()})

        assert verifier.verify_token(token).username == "bob"

    def test_unknown_user_rejected(self) -> None:
        verifier = TokenVerifier(secret_key=SECRET, user_lookup={}.get)
        token = _backend_token({"userId": 99, "exp": _in_a_day()})

        assert _error_code(verifier, token) == AuthErrorCode.UNKNOWN_USER

    def test_surrounding_whitespace_ignored(self, verifier) -> None:
        token = issue_token(7, "bob", secret_key=SECRET)

        assert verifier.verify_token(f"  {token}\n").username == "bob"


class TestIssueToken:
    """issue_token() mints backend-shaped tokens."""

    def test_claims(self) -> None:
        token = issue_token(3, secret_key=SECRET, ttl_seconds=60, now=1_800_000_000)

        claims = jwt.decode(
            token, SECRET, algorithms=["HS256"], options={"verify_exp": False, "verify_iat": False}
        )
        assert claims == {"userId": 3, "iat": 1_800_000_000, "exp": 1_800_000_060}

    def test_secret_from_environment(self, monkeypatch) -> None:
        monkeypatch.setenv(SECRET_KEY_ENV_VAR, SECRET)
        token = issue_token(3, "carol")

        assert TokenVerifier().verify_token(token).id == 3
        assert get_secret_key() == SECRET


class TestFailures:
    """Every rejection carries its error code."""

    @pytest.mark.parametrize("token", [None, "", "   "])
    def test_missing(self, verifier, token) -> None:
        assert _error_code(verifier, token) == AuthErrorCode.MISSING_TOKEN

    @pytest.mark.parametrize("token", [
        "no-dot-at-all",
        "a.b.c",
        "abc.123",
    ])
    def test_bad_format(self, verifier, token) -> None:
        assert _error_code(verifier, token) == AuthErrorCode.INVALID_FORMAT

    def test_wrong_secret(self, verifier) -> None:
        token = issue_token(7, "bob", secret_key=OTHER_SECRET)

        assert _error_code(verifier, token) == AuthErrorCode.SIGNATURE_MISMATCH

    def test_tampered_payload(self, verifier) -> None:
        header, _, signature = issue_token(7, "bob", secret_key=SECRET).split(".")
        _, forged, _ = _backend_token(
            {"userId": 1, "username": "admin", "exp": _in_a_day()},
            secret=OTHER_SECRET,
        ).split(".")

        assert _error_code(verifier, f"{header}.{forged}.{signature}") == (
            AuthErrorCode.SIGNATURE_MISMATCH
        )

    def test_expired(self, verifier) -> None:
        token = issue_token(7, "bob", secret_key=SECRET, ttl_seconds=60, now=time.time() - 120)

        assert _error_code(verifier, token) == AuthErrorCode.EXPIRED

    def test_unsigned_token_refused(self, verifier) -> None:
        token = jwt.encode({"userId": 7, "exp": _in_a_day()}, None, algorithm="none")

        assert _error_code(verifier, token) == AuthErrorCode.INVALID_FORMAT

    def test_other_hmac_algorithm_refused(self, verifier) -> None:
        token = _backend_token({"userId": 7, "exp": _in_a_day()}, algorithm="HS512")

        assert _error_code(verifier, token) == AuthErrorCode.INVALID_FORMAT

    @pytest.mark.parametrize("payload", [
        {"username": "bob", "exp": 4_000_000_000},
        {"userId": "7", "exp": 4_000_000_000},
        {"userId": True, "exp": 4_000_000_000},
        {"userId": 0, "exp": 4_000_000_000},
        {"userId": 7, "username": "", "exp": 4_000_000_000},
        {"userId": 7, "username": 42, "exp": 4_000_000_000},
        {"userId": 7},
    ])
    def test_signed_but_invalid_claims(self, verifier, payload) -> None:
        assert _error_code(verifier, _backend_token(payload)) == AuthErrorCode.INVALID_FORMAT


class TestSecretConfiguration:
    """AUTH-002 when the secret is unusable."""

    def test_short_secret_rejected(self) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            TokenVerifier(secret_key="short")

        assert exc_info.value.error_code == AuthErrorCode.SECRET_MISCONFIGURED

    def test_missing_environment_secret(self, monkeypatch) -> None:
        monkeypatch.delenv(SECRET_KEY_ENV_VAR, raising=False)
        token = issue_token(7, "bob", secret_key=SECRET)

        with pytest.raises(AuthenticationError) as exc_info:
            TokenVerifier().verify_token(token)

        assert exc_info.value.error_code == AuthErrorCode.SECRET_MISCONFIGURED


class TestSqlUserDirectory:
    """Username lookup against the users table."""

    @pytest.fixture
    def directory(self) -> SqlUserDirectory:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        create_schema(engine)
        with engine.begin() as conn:
            conn.execute(insert(users_table).values(id=7, username="bob"))
        return SqlUserDirectory(sessionmaker(bind=engine))

    def test_known_user(self, directory) -> None:
        assert directory(7) == "bob"

    def test_unknown_user(self, directory) -> None:
        assert directory(8) is None

    def test_verifier_with_directory(self, directory) -> None:
        verifier = TokenVerifier(secret_key=SECRET, user_lookup=directory)

        assert verifier.verify_token(issue_token(7, secret_key=SECRET)).username == "bob"
        assert _error_code(verifier, issue_token(8, secret_key=SECRET)) == (
            AuthErrorCode.UNKNOWN_USER
        )
