from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

from account_service.config import Settings
from account_service.domain.account import Account
from account_service.domain.contracts import AuditEvent
from account_service.domain.service import AccountService
from account_service.main import create_app
from account_service.repository import UPDATABLE_COLUMNS, DuplicateAccountError, StorageError
from account_service.security.passwords import PasswordHasher
from account_service.security.tokens import TokenIssuer


class FakeTransaction:
    """In-memory unit of work mimicking the Postgres-backed transaction."""

    def __init__(self, repository: "FakeRepository") -> None:
        self._repo = repository

    def _check(self, operation: str) -> None:
        if self._repo.fail_on == operation:
            raise StorageError(f"simulated failure in {operation}")

    async def find_by_email(self, email: str) -> Account | None:
        self._check("find_by_email")
        if self._repo.hide_live_emails:
            return None
        for account in self._repo.accounts.values():
            if account.email == email and not account.is_deleted:
                return replace(account)
        return None

    async def find_by_id(self, account_id: str, *, include_deleted: bool = False) -> Account | None:
        self._check("find_by_id")
        account = self._repo.accounts.get(account_id)
        if account is None or (account.is_deleted and not include_deleted):
            return None
        return replace(account)

    async def insert_account(self, *, email: str, name: str, password_hash: str) -> Account:
        self._check("insert_account")
        if any(a.email == email and not a.is_deleted for a in self._repo.accounts.values()):
            raise DuplicateAccountError(email)
        now = datetime.now(timezone.utc)
        account = Account(
            account_id=str(uuid.uuid4()),
            email=email,
            name=name,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )
        self._repo.accounts[account.account_id] = account
        return replace(account)

    def _live(self, account_id: str) -> Account | None:
        account = self._repo.accounts.get(account_id)
        if account is None or account.is_deleted:
            return None
        return account

    async def store_tokens(
        self,
        account_id: str,
        *,
        access_token: str,
        refresh_token: str,
        last_login_at: datetime | None = None,
    ) -> Account | None:
        self._check("store_tokens")
        if self._repo.lose_token_writes:
            return None
        account = self._live(account_id)
        if account is None:
            return None
        account.access_token = access_token
        account.refresh_token = refresh_token
        if last_login_at is not None:
            account.last_login_at = last_login_at
        account.updated_at = datetime.now(timezone.utc)
        return replace(account)

    async def update_profile(self, account_id: str, fields: dict[str, Any]) -> Account | None:
        self._check("update_profile")
        account = self._live(account_id)
        if account is None:
            return None
        for column in UPDATABLE_COLUMNS:
            if column in fields:
                setattr(account, column, fields[column])
        now = datetime.now(timezone.utc)
        account.is_updated = True
        account.last_updated_at = now
        account.updated_at = now
        return replace(account)

    async def clear_tokens(self, account_id: str) -> Account | None:
        self._check("clear_tokens")
        account = self._live(account_id)
        if account is None:
            return None
        account.access_token = None
        account.refresh_token = None
        return replace(account)

    async def soft_delete(self, account_id: str) -> Account | None:
        self._check("soft_delete")
        account = self._live(account_id)
        if account is None:
            return None
        account.is_deleted = True
        account.deleted_at = datetime.now(timezone.utc)
        account.is_active = False
        account.access_token = None
        account.refresh_token = None
        return replace(account)

    async def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._check("write_audit_event")
        self._repo.audit_seq += 1
        self._repo.audit_log.append(
            AuditEvent(
                audit_id=self._repo.audit_seq,
                account_id=account_id,
                event_type=event_type,
                metadata=metadata or {},
                created_at=datetime.now(timezone.utc),
            )
        )

    async def list_audit_events(
        self,
        *,
        account_id: str,
        limit: int = 50,
        cursor: tuple[datetime, int] | None = None,
    ):
        results = [record for record in self._repo.audit_log if record.account_id == account_id]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [record for record in results if (record.created_at, record.audit_id) < cursor]
        slice_ = results[:limit]
        next_cursor = None
        if len(slice_) == limit:
            last = slice_[-1]
            next_cursor = (last.created_at, last.audit_id)
        return slice_, next_cursor


class FakeRepository:
    """In-memory repository with commit/rollback semantics per transaction."""

    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}
        self.audit_log: list[AuditEvent] = []
        self.audit_seq = 0
        self.fail_on: str | None = None
        self.hide_live_emails = False
        self.lose_token_writes = False
        self.healthy = True

    async def ensure_schema(self) -> None:
        return None

    async def ping(self) -> bool:
        return self.healthy

    @asynccontextmanager
    async def transaction(self):
        accounts = {key: replace(value) for key, value in self.accounts.items()}
        audit_log = list(self.audit_log)
        audit_seq = self.audit_seq
        try:
            yield FakeTransaction(self)
        except BaseException:
            self.accounts = accounts
            self.audit_log = audit_log
            self.audit_seq = audit_seq
            raise

    def by_email(self, email: str) -> Account:
        return next(a for a in self.accounts.values() if a.email == email and not a.is_deleted)


@pytest.fixture()
def settings() -> Settings:
    return Settings(bcrypt_rounds=4, log_level="WARNING")


@pytest.fixture()
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture()
def tokens(settings: Settings) -> TokenIssuer:
    return TokenIssuer(settings)


@pytest.fixture()
def service(repository: FakeRepository, settings: Settings, tokens: TokenIssuer) -> AccountService:
    return AccountService(repository, PasswordHasher(settings.bcrypt_rounds), tokens)


@pytest.fixture()
def client(repository: FakeRepository, settings: Settings):
    app = create_app(settings, repository=repository)
    with TestClient(app) as test_client:
        yield test_client
