"""Database repository for account data."""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Tuple

import psycopg
from psycopg import AsyncConnection, sql
from psycopg.rows import dict_row
from psycopg.types.json import Json
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from .domain.account import Account
from .domain.contracts import AuditEvent

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    account_id uuid PRIMARY KEY,
    email text NOT NULL,
    name text NOT NULL,
    password_hash text NOT NULL,
    access_token text,
    refresh_token text,
    is_active boolean NOT NULL DEFAULT true,
    is_deleted boolean NOT NULL DEFAULT false,
    deleted_at timestamptz,
    is_updated boolean NOT NULL DEFAULT false,
    last_updated_at timestamptz,
    last_login_at timestamptz,
    created_at timestamptz NOT NULL,
    updated_at timestamptz NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS accounts_live_email_key ON accounts (email) WHERE NOT is_deleted;
CREATE INDEX IF NOT EXISTS accounts_created_at_idx ON accounts (created_at DESC);
CREATE TABLE IF NOT EXISTS account_audit_log (
    audit_id bigserial PRIMARY KEY,
    account_id uuid,
    event_type text NOT NULL,
    metadata jsonb NOT NULL DEFAULT '{}'::jsonb,
    created_at timestamptz NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS account_audit_log_account_idx
    ON account_audit_log (account_id, created_at DESC, audit_id DESC);
"""

_ACCOUNT_COLUMNS = sql.SQL(
    "account_id::text AS account_id, email, name, password_hash, created_at, access_token, "
    "refresh_token, is_active, is_deleted, deleted_at, is_updated, last_updated_at, "
    "last_login_at, updated_at"
)

# Columns an owner may change through a profile update.
UPDATABLE_COLUMNS = ("name",)


class StorageError(Exception):
    """The data store could not complete an operation (timeouts, driver errors)."""


class DuplicateAccountError(Exception):
    """A live account already holds the email being inserted."""


class AccountTransaction:
    """Account reads and writes bound to one open database transaction."""

    def __init__(self, conn: AsyncConnection) -> None:
        self._conn = conn

    async def _fetch_account(self, query: sql.Composable, params: tuple[Any, ...]) -> Account | None:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(query, params)
            row = await cur.fetchone()
        if not row:
            return None
        return self._map_record(row)

    def _map_record(self, row: dict[str, Any]) -> Account:
        """Convert a raw database row into the domain ``Account`` dataclass."""
        return Account(**row)

    async def find_by_email(self, email: str) -> Account | None:
        """Return the live (non-deleted) account holding ``email``."""
        query = sql.SQL("SELECT {} FROM accounts WHERE email = %s AND NOT is_deleted").format(_ACCOUNT_COLUMNS)
        return await self._fetch_account(query, (email,))

    async def find_by_id(self, account_id: str, *, include_deleted: bool = False) -> Account | None:
        if not _is_uuid(account_id):
            return None
        if include_deleted:
            query = sql.SQL("SELECT {} FROM accounts WHERE account_id = %s").format(_ACCOUNT_COLUMNS)
        else:
            query = sql.SQL("SELECT {} FROM accounts WHERE account_id = %s AND NOT is_deleted").format(
                _ACCOUNT_COLUMNS
            )
        return await self._fetch_account(query, (account_id,))

    async def insert_account(self, *, email: str, name: str, password_hash: str) -> Account:
        """Persist a new active account; raises ``DuplicateAccountError`` on a live email clash."""
        now = datetime.now(timezone.utc)
        query = sql.SQL(
            """
            INSERT INTO accounts (account_id, email, name, password_hash, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING {}
            """
        ).format(_ACCOUNT_COLUMNS)
        try:
            account = await self._fetch_account(
                query, (str(uuid.uuid4()), email, name, password_hash, now, now)
            )
        except psycopg.errors.UniqueViolation as exc:
            raise DuplicateAccountError(email) from exc
        if account is None:
            raise StorageError("insert returned no row")
        return account

    async def store_tokens(
        self,
        account_id: str,
        *,
        access_token: str,
        refresh_token: str,
        last_login_at: datetime | None = None,
    ) -> Account | None:
        """Overwrite the account's token pair, revoking whatever it held before."""
        query = sql.SQL(
            """
            UPDATE accounts
            SET access_token = %s,
                refresh_token = %s,
                last_login_at = COALESCE(%s, last_login_at),
                updated_at = %s
            WHERE account_id = %s AND NOT is_deleted
            RETURNING {}
            """
        ).format(_ACCOUNT_COLUMNS)
        now = datetime.now(timezone.utc)
        return await self._fetch_account(query, (access_token, refresh_token, last_login_at, now, account_id))

    async def update_profile(self, account_id: str, fields: dict[str, Any]) -> Account | None:
        """Apply whitelisted profile fields and stamp the update-tracking columns."""
        if not _is_uuid(account_id):
            return None
        now = datetime.now(timezone.utc)
        assignments = [sql.SQL("is_updated = true"), sql.SQL("last_updated_at = %s"), sql.SQL("updated_at = %s")]
        params: list[Any] = [now, now]
        for column in UPDATABLE_COLUMNS:
            if column in fields:
                assignments.append(sql.SQL("{} = %s").format(sql.Identifier(column)))
                params.append(fields[column])
        params.append(account_id)
        query = sql.SQL("UPDATE accounts SET {} WHERE account_id = %s AND NOT is_deleted RETURNING {}").format(
            sql.SQL(", ").join(assignments), _ACCOUNT_COLUMNS
        )
        return await self._fetch_account(query, tuple(params))

    async def clear_tokens(self, account_id: str) -> Account | None:
        if not _is_uuid(account_id):
            return None
        query = sql.SQL(
            """
            UPDATE accounts
            SET access_token = NULL, refresh_token = NULL, updated_at = %s
            WHERE account_id = %s AND NOT is_deleted
            RETURNING {}
            """
        ).format(_ACCOUNT_COLUMNS)
        return await self._fetch_account(query, (datetime.now(timezone.utc), account_id))

    async def soft_delete(self, account_id: str) -> Account | None:
        """Flag a live account deleted, clear its tokens and deactivate it."""
        if not _is_uuid(account_id):
            return None
        now = datetime.now(timezone.utc)
        query = sql.SQL(
            """
            UPDATE accounts
            SET is_deleted = true,
                deleted_at = %s,
                access_token = NULL,
                refresh_token = NULL,
                is_active = false,
                updated_at = %s
            WHERE account_id = %s AND NOT is_deleted
            RETURNING {}
            """
        ).format(_ACCOUNT_COLUMNS)
        return await self._fetch_account(query, (now, now, account_id))

    async def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing account lifecycle activity."""
        async with self._conn.cursor() as cur:
            await cur.execute(
                """
                INSERT INTO account_audit_log (account_id, event_type, metadata, created_at)
                VALUES (%s, %s, %s, %s)
                """,
                (account_id, event_type, Json(metadata or {}), datetime.now(timezone.utc)),
            )

    async def list_audit_events(
        self,
        *,
        account_id: str,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditEvent], Optional[Tuple[datetime, int]]]:
        """Return an account's audit entries, newest first, with cursor pagination."""
        limit = max(1, min(limit, 100))
        clauses = [sql.SQL("account_id = %s")]
        params: list[Any] = [account_id]
        if cursor:
            clauses.append(sql.SQL("(created_at, audit_id) < (%s, %s)"))
            params.extend(cursor)
        query = sql.SQL(
            """
            SELECT audit_id, account_id::text AS account_id, event_type, metadata, created_at
            FROM account_audit_log
            WHERE {}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
            """
        ).format(sql.SQL(" AND ").join(clauses))
        params.append(limit)

        records: list[AuditEvent] = []
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(query, params)
            for row in await cur.fetchall():
                records.append(
                    AuditEvent(
                        audit_id=row["audit_id"],
                        account_id=row["account_id"],
                        event_type=row["event_type"],
                        metadata=row["metadata"] or {},
                        created_at=row["created_at"],
                    )
                )

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor


class AccountRepository:
    """Postgres-backed account persistence; every unit of work is one transaction."""

    def __init__(self, pool: AsyncConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.connection() as conn:
            await conn.execute(SCHEMA_SQL)

    async def ping(self) -> bool:
        try:
            async with self._pool.connection() as conn:
                await conn.execute("SELECT 1")
        except (PoolTimeout, psycopg.Error) as exc:
            logger.warning("database ping failed: %s", exc)
            return False
        return True

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AccountTransaction]:
        """Open a transaction that commits on clean exit and rolls back on any exception.

        Driver failures surface as ``StorageError``; the driver exception is
        chained and logged here so callers only see the generic condition.
        """
        try:
            async with self._pool.connection() as conn:
                async with conn.transaction():
                    yield AccountTransaction(conn)
        except PoolTimeout as exc:
            logger.error("timed out waiting for a database connection: %s", exc)
            raise StorageError("connection pool timeout") from exc
        except psycopg.errors.QueryCanceled as exc:
            logger.error("database statement timed out: %s", exc)
            raise StorageError("statement timeout") from exc
        except psycopg.Error as exc:
            logger.exception("database operation failed")
            raise StorageError("database error") from exc


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def build_pool(
    conninfo: str,
    *,
    min_size: int,
    max_size: int,
    timeout: float,
    statement_timeout_ms: int,
) -> AsyncConnectionPool:
    """Create a closed pool; ``timeout`` bounds connection acquisition, the
    server-side ``statement_timeout`` bounds each query."""
    return AsyncConnectionPool(
        conninfo,
        min_size=min_size,
        max_size=max_size,
        timeout=timeout,
        kwargs={"options": f"-c statement_timeout={statement_timeout_ms}"},
        open=False,
    )
