from __future__ import annotations

from dataclasses import replace

import jwt
import pytest

from account_service.domain.errors import Err, ErrorKind, Ok
from account_service.security.tokens import TokenIssuer, TokenKind

ACCOUNT_ID = "6f1c1f2e-8d1a-4a53-9c55-8c1f6c1f2e8d"


def test_access_token_round_trip(tokens):
    token = tokens.issue_access(account_id=ACCOUNT_ID, email="alan@turing.dev")
    result = tokens.verify(token, TokenKind.ACCESS)
    assert isinstance(result, Ok)
    claims = result.value
    assert claims["sub"] == ACCOUNT_ID
    assert claims["email"] == "alan@turing.dev"
    assert claims["typ"] == "access"
    assert claims["iss"] == "account-service"
    assert claims["exp"] - claims["iat"] == 24 * 60 * 60


def test_each_token_is_unique(tokens):
    first = tokens.issue_access(account_id=ACCOUNT_ID, email="alan@turing.dev")
    second = tokens.issue_access(account_id=ACCOUNT_ID, email="alan@turing.dev")
    assert first != second


def test_refresh_token_is_not_an_access_token(tokens):
    refresh = tokens.issue_refresh(account_id=ACCOUNT_ID, email="alan@turing.dev")
    assert isinstance(tokens.verify(refresh, TokenKind.REFRESH), Ok)

    result = tokens.verify(refresh, TokenKind.ACCESS)
    assert isinstance(result, Err)
    assert result.error.code == "token_invalid"


def test_token_type_claim_is_checked(settings):
    shared = TokenIssuer(replace(settings, jwt_refresh_secret=settings.jwt_secret))
    refresh = shared.issue_refresh(account_id=ACCOUNT_ID, email="alan@turing.dev")
    result = shared.verify(refresh, TokenKind.ACCESS)
    assert isinstance(result, Err)
    assert result.error.code == "token_invalid"


def test_expired_token_is_reported_as_expired(settings):
    issuer = TokenIssuer(replace(settings, access_ttl_seconds=-5))
    token = issuer.issue_access(account_id=ACCOUNT_ID, email="alan@turing.dev")
    result = issuer.verify(token)
    assert isinstance(result, Err)
    assert result.error.kind is ErrorKind.UNAUTHORIZED
    assert result.error.code == "token_expired"
    assert result.error.message == "Invalid or expired token"


@pytest.mark.parametrize(
    "mutate",
    [
        lambda token: token.rsplit(".", 1)[0] + ".c2lnbmF0dXJlLW1pc21hdGNo",
        lambda token: "garbage",
        lambda token: "",
    ],
)
def test_tampered_tokens_are_invalid(tokens, mutate):
    token = tokens.issue_access(account_id=ACCOUNT_ID, email="alan@turing.dev")
    result = tokens.verify(mutate(token))
    assert isinstance(result, Err)
    assert result.error.code == "token_invalid"


def test_foreign_issuer_is_rejected(settings, tokens):
    token = jwt.encode(
        {"sub": ACCOUNT_ID, "typ": "access", "iss": "someone-else", "iat": 0, "exp": 4102444800},
        settings.jwt_secret,
        algorithm="HS256",
    )
    result = tokens.verify(token)
    assert isinstance(result, Err)
    assert result.error.code == "token_invalid"


def test_extra_claims_cannot_override_reserved(tokens):
    token = tokens.issue_access(account_id=ACCOUNT_ID, email="alan@turing.dev", extra={"sub": "other", "role": "admin"})
    claims = tokens.verify(token).value
    assert claims["sub"] == ACCOUNT_ID
    assert claims["role"] == "admin"
