"""Account lifecycle engine: registration, sign-in, profile changes, sign-out, deletion.

Every operation runs inside a single repository transaction and returns a
``Result``; storage failures are logged here and reported as ``INTERNAL``.
"""

from __future__ import annotations

import functools
import hmac
import json
import logging
from base64 import urlsafe_b64decode, urlsafe_b64encode
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

from .account import Account, AccountState, normalize_email
from .contracts import (
    AccountIdentity,
    AccountSummary,
    AuditPage,
    AuthResult,
    DeletionReceipt,
    RegisterInput,
    TokenBundle,
)
from .errors import Err, Messages, Ok, Result, ServiceError
from ..metrics import ACCOUNT_OPERATIONS
from ..repository import UPDATABLE_COLUMNS, AccountRepository, DuplicateAccountError, StorageError
from ..security.passwords import PasswordHasher
from ..security.tokens import TokenIssuer, TokenKind

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Result[Any]]])

# Never writable through a profile patch, whatever spelling the client uses.
PROTECTED_FIELDS = frozenset(
    {
        "password",
        "password_hash",
        "email",
        "access_token",
        "accessToken",
        "refresh_token",
        "refreshToken",
        "is_deleted",
        "isDeleted",
        "deleted_at",
        "deletedAt",
        "account_id",
        "id",
    }
)


def _guarded(operation: str) -> Callable[[F], F]:
    """Convert storage failures into ``INTERNAL`` results and count outcomes."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(self: "AccountService", *args: Any, **kwargs: Any) -> Result[Any]:
            try:
                result = await func(self, *args, **kwargs)
            except StorageError as exc:
                logger.error("%s aborted, storage unavailable: %s", operation, exc)
                result = Err(ServiceError.internal("storage_unavailable"))
            outcome = "ok" if isinstance(result, Ok) else result.error.kind.value
            ACCOUNT_OPERATIONS.labels(operation=operation, outcome=outcome).inc()
            return result

        return wrapper  # type: ignore[return-value]

    return decorator


class AccountService:
    """Account workflows backed by transactional storage."""

    def __init__(self, repository: AccountRepository, hasher: PasswordHasher, tokens: TokenIssuer) -> None:
        """Store dependencies used to orchestrate persistence and token issuance."""
        self._repository = repository
        self._hasher = hasher
        self._tokens = tokens

    def _issue_pair(self, account: Account) -> TokenBundle:
        return TokenBundle(
            access_token=self._tokens.issue_access(account_id=account.account_id, email=account.email),
            access_expires_in=self._tokens.ttl_seconds(TokenKind.ACCESS),
            refresh_token=self._tokens.issue_refresh(account_id=account.account_id, email=account.email),
            refresh_expires_in=self._tokens.ttl_seconds(TokenKind.REFRESH),
        )

    @_guarded("register")
    async def register(self, payload: RegisterInput) -> Result[AuthResult]:
        """Open an account and bind its first token pair, all or nothing."""
        email = normalize_email(payload.email)
        logger.info("starting registration for %s", email)
        try:
            async with self._repository.transaction() as tx:
                if await tx.find_by_email(email) is not None:
                    logger.warning("registration rejected, account already exists: %s", email)
                    return Err(ServiceError.conflict())

                password_hash = await self._hasher.hash(payload.password)
                created = await tx.insert_account(email=email, name=payload.name.strip(), password_hash=password_hash)
                tokens = self._issue_pair(created)
                account = await tx.store_tokens(
                    created.account_id,
                    access_token=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                )
                if account is None:
                    raise StorageError("account disappeared before its tokens were stored")
                await tx.write_audit_event(
                    account_id=account.account_id,
                    event_type="account.registered",
                    metadata={"email": account.email},
                )
        except DuplicateAccountError:
            logger.warning("registration lost a race for %s", email)
            return Err(ServiceError.conflict())

        logger.info("account registered: %s (%s)", email, account.account_id)
        return Ok(AuthResult(account=AccountSummary.from_account(account), tokens=tokens))

    @_guarded("authenticate")
    async def authenticate(self, email: str, password: str) -> Result[AuthResult]:
        """Verify credentials and rotate the token pair, revoking any previous session."""
        email = normalize_email(email)
        invalid = Err(ServiceError.unauthorized("invalid_credentials", Messages.INVALID_CREDENTIALS))
        logger.info("starting login for %s", email)
        async with self._repository.transaction() as tx:
            account = await tx.find_by_email(email)
            if account is None:
                await self._hasher.burn(password)
                logger.warning("login failed, no live account: %s", email)
                return invalid
            if account.state is AccountState.INACTIVE:
                logger.warning("login refused, account deactivated: %s", email)
                return Err(ServiceError.forbidden("account_deactivated", Messages.ACCOUNT_DEACTIVATED))
            if not await self._hasher.verify(password, account.password_hash):
                logger.warning("login failed, bad password: %s", email)
                return invalid

            tokens = self._issue_pair(account)
            updated = await tx.store_tokens(
                account.account_id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                last_login_at=datetime.now(timezone.utc),
            )
            if updated is None:
                raise StorageError("account disappeared during login")
            await tx.write_audit_event(account_id=updated.account_id, event_type="account.logged_in")

        logger.info("login succeeded: %s (%s)", email, updated.account_id)
        return Ok(AuthResult(account=AccountSummary.from_account(updated), tokens=tokens))

    @_guarded("get_by_id")
    async def get_by_id(self, account_id: str) -> Result[AccountSummary]:
        async with self._repository.transaction() as tx:
            account = await tx.find_by_id(account_id)
        if account is None:
            logger.warning("account not found: %s", account_id)
            return Err(ServiceError.not_found())
        return Ok(AccountSummary.from_account(account))

    @_guarded("get_by_email")
    async def get_by_email(self, email: str) -> Result[AccountSummary]:
        async with self._repository.transaction() as tx:
            account = await tx.find_by_email(normalize_email(email))
        if account is None:
            logger.warning("account not found by email: %s", email)
            return Err(ServiceError.not_found())
        return Ok(AccountSummary.from_account(account))

    @_guarded("update_profile")
    async def update_profile(self, account_id: str, patch: dict[str, Any]) -> Result[AccountSummary]:
        """Apply profile fields from ``patch``; identity, credential and deletion fields are dropped."""
        stripped = sorted(key for key in patch if key in PROTECTED_FIELDS)
        if stripped:
            logger.warning("dropping protected fields from update of %s: %s", account_id, ", ".join(stripped))
        fields = {key: patch[key] for key in UPDATABLE_COLUMNS if patch.get(key) is not None}
        if isinstance(fields.get("name"), str):
            fields["name"] = fields["name"].strip()

        async with self._repository.transaction() as tx:
            account = await tx.update_profile(account_id, fields)
            if account is None:
                logger.warning("update failed, account not found: %s", account_id)
                return Err(ServiceError.not_found())
            await tx.write_audit_event(
                account_id=account.account_id,
                event_type="account.updated",
                metadata={"fields": sorted(fields)},
            )
        logger.info("account updated: %s", account_id)
        return Ok(AccountSummary.from_account(account))

    @_guarded("logout")
    async def logout(self, account_id: str) -> Result[None]:
        """Clear the stored token pair; repeating it on a live account is a harmless write."""
        async with self._repository.transaction() as tx:
            account = await tx.clear_tokens(account_id)
            if account is None:
                logger.warning("logout failed, account not found: %s", account_id)
                return Err(ServiceError.not_found())
            await tx.write_audit_event(account_id=account.account_id, event_type="account.logged_out")
        logger.info("account logged out: %s", account_id)
        return Ok(None)

    @_guarded("soft_delete")
    async def soft_delete(self, account_id: str) -> Result[DeletionReceipt]:
        """Mark the account deleted; a second call finds nothing and reports ``NOT_FOUND``."""
        async with self._repository.transaction() as tx:
            account = await tx.soft_delete(account_id)
            if account is None:
                logger.warning("delete failed, account not found or already deleted: %s", account_id)
                return Err(ServiceError.not_found())
            if account.deleted_at is None:
                raise StorageError("soft delete returned no deletion timestamp")
            await tx.write_audit_event(account_id=account.account_id, event_type="account.deleted")
        logger.info("account soft deleted: %s (%s)", account_id, account.email)
        return Ok(
            DeletionReceipt(
                account_id=account.account_id,
                email=account.email,
                name=account.name,
                deleted_at=account.deleted_at,
            )
        )

    @_guarded("authorize")
    async def authorize(self, token: str | None) -> Result[AccountIdentity]:
        """Resolve a bearer token to the account it was issued to.

        The token must verify, belong to a live active account, and be the
        exact token currently stored on that account. A newer login, a logout
        or a deletion therefore revokes it before it expires.
        """
        if not token:
            return Err(ServiceError.unauthorized("token_missing", Messages.TOKEN_REQUIRED))

        verified = self._tokens.verify(token, TokenKind.ACCESS)
        if isinstance(verified, Err):
            logger.warning("token rejected: %s", verified.error.code)
            return verified
        claims = verified.value

        async with self._repository.transaction() as tx:
            account = await tx.find_by_id(claims["sub"], include_deleted=True)

        if account is None:
            logger.warning("token names an unknown account: %s", claims["sub"])
            return Err(ServiceError.unauthorized("account_missing"))
        if account.state is AccountState.DELETED:
            logger.warning("deleted account attempted access: %s", account.account_id)
            return Err(ServiceError.unauthorized("account_deleted"))
        if account.state is AccountState.INACTIVE:
            logger.warning("inactive account attempted access: %s", account.account_id)
            return Err(ServiceError.forbidden("account_deactivated", Messages.ACCOUNT_DEACTIVATED))
        if account.access_token is None or not hmac.compare_digest(
            account.access_token.encode("utf-8"), token.encode("utf-8")
        ):
            logger.warning("token no longer current for account: %s", account.account_id)
            return Err(ServiceError.unauthorized("token_revoked"))

        return Ok(AccountIdentity(account_id=account.account_id, email=account.email, claims=claims))

    @_guarded("list_audit_events")
    async def list_audit_events(
        self, account_id: str, *, limit: int = 50, cursor: str | None = None
    ) -> Result[AuditPage]:
        """Return the account's audit events, newest first, with an opaque cursor."""
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
            if decoded_cursor is None:
                return Err(ServiceError.validation(["cursor is invalid"]))
        async with self._repository.transaction() as tx:
            records, next_cursor_tuple = await tx.list_audit_events(
                account_id=account_id, limit=limit, cursor=decoded_cursor
            )
        return Ok(AuditPage(items=records, next_cursor=self._encode_cursor(next_cursor_tuple)))

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int] | None:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            created_at = datetime.fromisoformat(data["created_at"])
            audit_id = int(data["audit_id"])
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("rejecting audit cursor: %s", exc)
            return None
        return created_at, audit_id
