"""Domain-level request and response contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .account import Account


@dataclass(slots=True)
class RegisterInput:
    """Validated inputs required to open an account."""

    email: str
    name: str
    password: str


@dataclass(slots=True)
class AccountSummary:
    """Outward projection of an account; never carries the digest or tokens."""

    account_id: str
    email: str
    name: str
    is_active: bool
    is_updated: bool
    created_at: datetime
    last_login_at: datetime | None = None
    last_updated_at: datetime | None = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountSummary":
        return cls(
            account_id=account.account_id,
            email=account.email,
            name=account.name,
            is_active=account.is_active,
            is_updated=account.is_updated,
            created_at=account.created_at,
            last_login_at=account.last_login_at,
            last_updated_at=account.last_updated_at,
        )


@dataclass(slots=True)
class TokenBundle:
    """Encapsulates the access/refresh token pair returned to API consumers."""

    access_token: str
    access_expires_in: int
    refresh_token: str
    refresh_expires_in: int


@dataclass(slots=True)
class AuthResult:
    account: AccountSummary
    tokens: TokenBundle


@dataclass(slots=True)
class AccountIdentity:
    """Verified caller identity attached to a request after authorization."""

    account_id: str
    email: str
    claims: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DeletionReceipt:
    account_id: str
    email: str
    name: str
    deleted_at: datetime


@dataclass(slots=True)
class AuditEvent:
    """Row projection for items in account_audit_log."""

    audit_id: int
    account_id: str | None
    event_type: str
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class AuditPage:
    items: list[AuditEvent]
    next_cursor: str | None = None
