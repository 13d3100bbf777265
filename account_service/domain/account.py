from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class AccountState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DELETED = "deleted"


@dataclass(slots=True)
class Account:
    """Aggregate root for a user identity and its single current session."""

    account_id: str
    email: str
    name: str
    password_hash: str
    created_at: datetime
    access_token: str | None = None
    refresh_token: str | None = None
    is_active: bool = True
    is_deleted: bool = False
    deleted_at: datetime | None = None
    is_updated: bool = False
    last_updated_at: datetime | None = None
    last_login_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def state(self) -> AccountState:
        if self.is_deleted:
            return AccountState.DELETED
        if not self.is_active:
            return AccountState.INACTIVE
        return AccountState.ACTIVE


def normalize_email(email: str) -> str:
    """Return the identity key form of an email address."""
    return email.strip().lower()
