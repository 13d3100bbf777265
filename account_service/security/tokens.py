"""Utilities for issuing and validating application JWTs."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

import jwt

from ..config import Settings
from ..domain.errors import Err, Ok, Result, ServiceError

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ["exp", "iat", "sub"]


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True, slots=True)
class SigningContext:
    """Secret and lifetime for one class of token."""

    secret: str
    ttl_seconds: int


class TokenIssuer:
    """Signs and verifies access and refresh tokens under separate secrets."""

    def __init__(self, settings: Settings) -> None:
        self._issuer = settings.jwt_issuer
        self._contexts = {
            TokenKind.ACCESS: SigningContext(settings.jwt_secret, settings.access_ttl_seconds),
            TokenKind.REFRESH: SigningContext(settings.jwt_refresh_secret, settings.refresh_ttl_seconds),
        }

    def ttl_seconds(self, kind: TokenKind) -> int:
        return self._contexts[kind].ttl_seconds

    def _issue(self, kind: TokenKind, *, account_id: str, email: str, extra: dict[str, Any] | None) -> str:
        context = self._contexts[kind]
        now = int(time.time())
        payload: dict[str, Any] = {
            **(extra or {}),
            "iss": self._issuer,
            "sub": account_id,
            "email": email,
            "typ": kind.value,
            "jti": secrets.token_urlsafe(16),
            "iat": now,
            "exp": now + context.ttl_seconds,
        }
        return jwt.encode(payload, context.secret, algorithm=_ALGORITHM)

    def issue_access(self, *, account_id: str, email: str, extra: dict[str, Any] | None = None) -> str:
        """Create a short-lived access token for an authenticated account.

        Parameters
        ----------
        account_id:
            Account identifier to embed in the token ``sub`` claim.
        email:
            Account email, carried for downstream display and logging.
        extra:
            Optional additional claims; reserved claim names are overwritten.
        """
        return self._issue(TokenKind.ACCESS, account_id=account_id, email=email, extra=extra)

    def issue_refresh(self, *, account_id: str, email: str, extra: dict[str, Any] | None = None) -> str:
        """Create a long-lived refresh token signed with the refresh secret."""
        return self._issue(TokenKind.REFRESH, account_id=account_id, email=email, extra=extra)

    def verify(self, token: str, kind: TokenKind = TokenKind.ACCESS) -> Result[dict[str, Any]]:
        """Decode and verify a token, returning its claims.

        Returns
        -------
        Result[dict[str, Any]]
            ``Ok(claims)`` when signature, issuer, expiry and token type check
            out. Otherwise ``Err`` with code ``token_expired`` for an expired
            signature and ``token_invalid`` for anything else.
        """
        context = self._contexts[kind]
        try:
            claims = jwt.decode(
                token,
                context.secret,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            return Err(ServiceError.unauthorized("token_expired"))
        except jwt.PyJWTError:
            return Err(ServiceError.unauthorized("token_invalid"))

        if claims.get("typ") != kind.value or not isinstance(claims.get("sub"), str):
            return Err(ServiceError.unauthorized("token_invalid"))
        return Ok(claims)
